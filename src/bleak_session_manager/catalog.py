"""Target service filter and characteristic classification.

A :class:`ServiceCatalog` answers three questions for the session state
machine:

1. Does an advertisement match the services we care about?
2. Which role does a characteristic UUID play (a small closed set of
   known roles plus ``UNCLASSIFIED``)?
3. Which capabilities (read / write / notify) does a characteristic
   offer, derived from its advertised GATT properties?

UUIDs are normalised to bleak's 128-bit lower-case form, so ``"180D"``,
``"0x180d"`` and ``"0000180d-0000-1000-8000-00805f9b34fb"`` compare
equal.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum

from bleak.uuids import normalize_uuid_str

from .const import (
    BATTERY_LEVEL_UUID,
    BATTERY_SERVICE_UUID,
    BODY_SENSOR_LOCATION_UUID,
    HEART_RATE_CONTROL_POINT_UUID,
    HEART_RATE_MEASUREMENT_UUID,
    HEART_RATE_SERVICE_UUID,
)


class Capability(str, Enum):
    """What a characteristic can be used for."""

    READ = "read"
    WRITE = "write"
    NOTIFY = "notify"


class CharacteristicRole(str, Enum):
    """Known characteristic roles."""

    HEART_RATE_MEASUREMENT = "heart_rate_measurement"
    BODY_SENSOR_LOCATION = "body_sensor_location"
    HEART_RATE_CONTROL_POINT = "heart_rate_control_point"
    BATTERY_LEVEL = "battery_level"
    UNCLASSIFIED = "unclassified"


# GATT property names as reported by bleak -> capability
_PROPERTY_CAPABILITIES = {
    "read": Capability.READ,
    "write": Capability.WRITE,
    "write-without-response": Capability.WRITE,
    "notify": Capability.NOTIFY,
    "indicate": Capability.NOTIFY,
}

DEFAULT_ROLES: dict[str, CharacteristicRole] = {
    HEART_RATE_MEASUREMENT_UUID: CharacteristicRole.HEART_RATE_MEASUREMENT,
    BODY_SENSOR_LOCATION_UUID: CharacteristicRole.BODY_SENSOR_LOCATION,
    HEART_RATE_CONTROL_POINT_UUID: CharacteristicRole.HEART_RATE_CONTROL_POINT,
    BATTERY_LEVEL_UUID: CharacteristicRole.BATTERY_LEVEL,
}


def normalize_uuid(uuid: str) -> str:
    """Return the 128-bit lower-case form of a 16-, 32- or 128-bit UUID.

    Raises ``ValueError`` for strings that are not UUIDs.
    """
    value = uuid.strip()
    if value[:2].lower() == "0x":
        value = value[2:]
    return normalize_uuid_str(value)


def uuid_key(uuid: str) -> str:
    """Lenient form of :func:`normalize_uuid` for use as a lookup key.

    Strings that are not UUIDs are lower-cased instead of rejected, so a
    malformed identifier from the transport never breaks event handling.
    """
    try:
        return normalize_uuid(uuid)
    except ValueError:
        return uuid.strip().lower()


def capabilities_from_properties(properties: Iterable[str]) -> frozenset[Capability]:
    """Map GATT property names to the capabilities the session acts on.

    Unknown property names (``broadcast``, ``authenticated-signed-writes``
    and friends) are ignored.
    """
    caps = set()
    for prop in properties:
        cap = _PROPERTY_CAPABILITIES.get(prop.lower())
        if cap is not None:
            caps.add(cap)
    return frozenset(caps)


class ServiceCatalog:
    """The set of services and characteristics a session cares about.

    Parameters
    ----------
    service_uuids:
        Services to scan for and discover.  An empty collection matches
        every advertisement and discovers every service.
    roles:
        Characteristic UUID -> role.  Anything missing is
        ``UNCLASSIFIED``.
    characteristic_uuids:
        Optional characteristic filter passed to characteristic
        discovery.  ``None`` discovers all characteristics.
    initial_writes:
        Characteristic UUID -> payload written once when a
        write-capable characteristic with that UUID is discovered.
    """

    def __init__(
        self,
        service_uuids: Iterable[str] = (),
        *,
        roles: Mapping[str, CharacteristicRole] | None = None,
        characteristic_uuids: Iterable[str] | None = None,
        initial_writes: Mapping[str, bytes] | None = None,
    ) -> None:
        self._service_uuids = tuple(
            dict.fromkeys(normalize_uuid(u) for u in service_uuids)
        )
        source_roles = DEFAULT_ROLES if roles is None else roles
        self._roles = {normalize_uuid(u): r for u, r in source_roles.items()}
        self._characteristic_uuids = (
            None
            if characteristic_uuids is None
            else tuple(normalize_uuid(u) for u in characteristic_uuids)
        )
        self._initial_writes = {
            normalize_uuid(u): bytes(p) for u, p in (initial_writes or {}).items()
        }

    @property
    def service_filter(self) -> tuple[str, ...]:
        """Service UUIDs used for scanning and service discovery."""
        return self._service_uuids

    @property
    def characteristic_filter(self) -> tuple[str, ...] | None:
        return self._characteristic_uuids

    def matches(self, advertised_services: Iterable[str]) -> bool:
        """Return whether an advertisement carries a target service."""
        if not self._service_uuids:
            return True
        return any(uuid_key(u) in self._service_uuids for u in advertised_services)

    def wants_service(self, service_uuid: str) -> bool:
        """Return whether a discovered service should be negotiated."""
        if not self._service_uuids:
            return True
        return uuid_key(service_uuid) in self._service_uuids

    def role_for(self, characteristic_uuid: str) -> CharacteristicRole:
        return self._roles.get(
            uuid_key(characteristic_uuid), CharacteristicRole.UNCLASSIFIED
        )

    def initial_write_for(self, characteristic_uuid: str) -> bytes | None:
        """Return the payload to write on discovery, if one is configured."""
        return self._initial_writes.get(uuid_key(characteristic_uuid))


# Pre-built catalog for the standard Heart Rate profile
HEART_RATE_CATALOG = ServiceCatalog([HEART_RATE_SERVICE_UUID])

# Heart Rate plus Battery Service for sensors that expose both
HEART_RATE_WITH_BATTERY_CATALOG = ServiceCatalog(
    [HEART_RATE_SERVICE_UUID, BATTERY_SERVICE_UUID]
)
