# MIT License
#
# Copyright (c) 2025 Reticulum BLE Interface Contributors
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in
# all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.


"""
BLEUUIDs - GATT identifiers and protocol profiles

A ProtocolProfile describes everything that differs between deployments of
the messaging service: the service UUID, which characteristics exist, their
property/permission matrix, and the manufacturer id used to carry the local
MSISDN in the scan response.

Two profiles are built in:
- DEFAULT_PROFILE ("dual"): bidirectional + write + notify + read
  characteristics, used by devices that switch between central and
  peripheral roles.
- LEGACY_PROFILE ("legacy"): NUS-style service with write + notify + read
  only, used by peripheral-only devices.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional


# Service and characteristic identifiers
SERVICE_UUID = "bb21801d-a324-418f-abc7-f23d10e7d588"
BIDIRECTIONAL_CHAR_UUID = "b6a0912e-e715-438b-96a2-b21149015db1"
WRITE_CHAR_UUID = "b6a0912e-e715-438b-96a2-b21149015db2"
NOTIFY_CHAR_UUID = "b6a0912e-e715-438b-96a2-b21149015db3"
READ_CHAR_UUID = "00001104-0000-1000-8000-00805f9b34fb"

LEGACY_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
LEGACY_WRITE_CHAR_UUID = "00001102-0000-1000-8000-00805f9b34fb"
LEGACY_NOTIFY_CHAR_UUID = "00001103-0000-1000-8000-00805f9b34fb"

# Client Characteristic Configuration Descriptor
CCCD_UUID = "00002902-0000-1000-8000-00805f9b34fb"

# Company identifier carrying the MSISDN in the scan response
MANUFACTURER_ID = 0x1234

# Characteristic properties (Bluetooth core values, also used by bless)
PROPERTY_READ = 0x02
PROPERTY_WRITE_NO_RESPONSE = 0x04
PROPERTY_WRITE = 0x08
PROPERTY_NOTIFY = 0x10
PROPERTY_INDICATE = 0x20

# Attribute permissions
PERMISSION_READ = 0x01
PERMISSION_WRITE = 0x10

# CCCD values
ENABLE_NOTIFICATION_VALUE = b"\x01\x00"
ENABLE_INDICATION_VALUE = b"\x02\x00"
DISABLE_NOTIFICATION_VALUE = b"\x00\x00"


def normalize_uuid(uuid) -> Optional[str]:
    """Return a lower-case string form of a UUID, or None."""
    if uuid is None:
        return None
    return str(uuid).lower()


@dataclass(frozen=True)
class CharacteristicSpec:
    """Property/permission definition of one characteristic in a profile."""
    uuid: str
    properties: int
    permissions: int
    has_cccd: bool = False

    def supports(self, prop: int) -> bool:
        return bool(self.properties & prop)


@dataclass(frozen=True)
class ProtocolProfile:
    """
    A single description of the GATT layout and identifiers.

    Any of the four characteristic roles may be absent (None). Engines look
    characteristics up through the helpers here instead of comparing raw
    UUID constants, so every profile goes through the same code path.
    """
    name: str
    service_uuid: str
    bidirectional: Optional[CharacteristicSpec] = None
    write: Optional[CharacteristicSpec] = None
    notify: Optional[CharacteristicSpec] = None
    read: Optional[CharacteristicSpec] = None
    cccd_uuid: str = CCCD_UUID
    manufacturer_id: int = MANUFACTURER_ID

    @property
    def characteristics(self) -> List[CharacteristicSpec]:
        """Characteristics in the order they are added to the service."""
        return [c for c in (self.bidirectional, self.write, self.read, self.notify) if c is not None]

    def characteristic_role(self, uuid) -> Optional[str]:
        """
        Resolve a characteristic UUID to its role in this profile.

        Returns:
            "bidirectional", "write", "notify", "read" or None if unknown
        """
        uuid = normalize_uuid(uuid)
        for role in ("bidirectional", "write", "notify", "read"):
            spec = getattr(self, role)
            if spec is not None and spec.uuid == uuid:
                return role
        return None

    def uuid_for(self, role: str) -> Optional[str]:
        spec = getattr(self, role, None)
        return spec.uuid if spec is not None else None

    def is_cccd(self, uuid) -> bool:
        return normalize_uuid(uuid) == self.cccd_uuid


DEFAULT_PROFILE = ProtocolProfile(
    name="dual",
    service_uuid=SERVICE_UUID,
    bidirectional=CharacteristicSpec(
        BIDIRECTIONAL_CHAR_UUID,
        PROPERTY_READ | PROPERTY_WRITE,
        PERMISSION_READ | PERMISSION_WRITE,
    ),
    write=CharacteristicSpec(
        WRITE_CHAR_UUID,
        PROPERTY_WRITE | PROPERTY_WRITE_NO_RESPONSE,
        PERMISSION_WRITE,
    ),
    notify=CharacteristicSpec(
        NOTIFY_CHAR_UUID,
        PROPERTY_READ | PROPERTY_NOTIFY,
        PERMISSION_READ,
        has_cccd=True,
    ),
    read=CharacteristicSpec(
        READ_CHAR_UUID,
        PROPERTY_READ,
        PERMISSION_READ,
        has_cccd=True,
    ),
)

LEGACY_PROFILE = ProtocolProfile(
    name="legacy",
    service_uuid=LEGACY_SERVICE_UUID,
    write=CharacteristicSpec(
        LEGACY_WRITE_CHAR_UUID,
        PROPERTY_WRITE | PROPERTY_WRITE_NO_RESPONSE,
        PERMISSION_WRITE,
    ),
    notify=CharacteristicSpec(
        LEGACY_NOTIFY_CHAR_UUID,
        PROPERTY_READ | PROPERTY_NOTIFY,
        PERMISSION_READ,
        has_cccd=True,
    ),
    read=CharacteristicSpec(
        READ_CHAR_UUID,
        PROPERTY_READ,
        PERMISSION_READ,
        has_cccd=True,
    ),
)

PROFILES: Dict[str, ProtocolProfile] = {
    DEFAULT_PROFILE.name: DEFAULT_PROFILE,
    LEGACY_PROFILE.name: LEGACY_PROFILE,
}


def get_profile(name: Optional[str]) -> ProtocolProfile:
    """
    Look up a built-in profile by name.

    Raises:
        ValueError: if the name is not a known profile
    """
    if name is None:
        return DEFAULT_PROFILE
    key = str(name).lower()
    if key not in PROFILES:
        raise ValueError(f"Unknown protocol profile '{name}' (known: {', '.join(sorted(PROFILES))})")
    return PROFILES[key]
