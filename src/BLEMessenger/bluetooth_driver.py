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
Bluetooth driver abstraction

Defines the platform-independent contract between the messaging engines and
a BLE stack. Engines issue requests on a BLEDriverInterface; outcomes are
delivered later through one of four named receiver interfaces:

- ScanEventReceiver: scan results and scan failures
- AdvertiseEventReceiver: advertising start success/failure
- GattClientEventReceiver: central-side link, discovery, read/write/notify events
- GattServerEventReceiver: peripheral-side connection and request events

Requests return True when they were issued and False when the stack refused
them outright. They never block waiting for the radio.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from BLEMessenger.BLEUUIDs import normalize_uuid


class DriverState(Enum):
    """Radio activity state of a driver."""
    IDLE = "idle"
    SCANNING = "scanning"
    ADVERTISING = "advertising"


# GATT status codes
GATT_SUCCESS = 0x00
GATT_READ_NOT_PERMITTED = 0x02
GATT_WRITE_NOT_PERMITTED = 0x03
GATT_REQUEST_NOT_SUPPORTED = 0x06
GATT_INVALID_OFFSET = 0x07
GATT_CONNECTION_TIMEOUT = 0x93
GATT_FAILURE = 0x101

# Link states
STATE_DISCONNECTED = 0
STATE_CONNECTING = 1
STATE_CONNECTED = 2
STATE_DISCONNECTING = 3

STATE_NAMES = {
    STATE_DISCONNECTED: "disconnected",
    STATE_CONNECTING: "connecting",
    STATE_CONNECTED: "connected",
    STATE_DISCONNECTING: "disconnecting",
}

# Write types
WRITE_TYPE_NO_RESPONSE = 1
WRITE_TYPE_DEFAULT = 2

# Advertising failure codes
ADVERTISE_FAILED_DATA_TOO_LARGE = 1
ADVERTISE_FAILED_TOO_MANY_ADVERTISERS = 2
ADVERTISE_FAILED_ALREADY_STARTED = 3
ADVERTISE_FAILED_INTERNAL_ERROR = 4
ADVERTISE_FAILED_FEATURE_UNSUPPORTED = 5

# Scan failure codes
SCAN_FAILED_ALREADY_STARTED = 1
SCAN_FAILED_APPLICATION_REGISTRATION_FAILED = 2
SCAN_FAILED_INTERNAL_ERROR = 3
SCAN_FAILED_FEATURE_UNSUPPORTED = 4

# Legacy advertising PDU payload limit
MAX_ADVERTISE_PAYLOAD = 31


@dataclass
class BLEDevice:
    """A remote device as seen in a scan result or an inbound connection."""
    address: str
    name: Optional[str] = None
    rssi: int = 0
    service_uuids: List[str] = field(default_factory=list)
    manufacturer_data: Dict[int, bytes] = field(default_factory=dict)


@dataclass
class GattDescriptor:
    uuid: str
    permissions: int
    value: bytes = b""


@dataclass
class GattCharacteristic:
    """A characteristic in a local service table or a discovered remote service."""
    uuid: str
    properties: int
    permissions: int = 0
    descriptors: List[GattDescriptor] = field(default_factory=list)
    value: bytes = b""

    def __post_init__(self):
        self.uuid = normalize_uuid(self.uuid)

    def get_descriptor(self, uuid) -> Optional[GattDescriptor]:
        uuid = normalize_uuid(uuid)
        for descriptor in self.descriptors:
            if descriptor.uuid == uuid:
                return descriptor
        return None


@dataclass
class GattService:
    uuid: str
    characteristics: List[GattCharacteristic] = field(default_factory=list)
    primary: bool = True

    def __post_init__(self):
        self.uuid = normalize_uuid(self.uuid)

    def get_characteristic(self, uuid) -> Optional[GattCharacteristic]:
        uuid = normalize_uuid(uuid)
        for characteristic in self.characteristics:
            if characteristic.uuid == uuid:
                return characteristic
        return None


@dataclass
class AdvertiseSettings:
    connectable: bool = True
    timeout: int = 0
    low_latency: bool = True
    high_tx_power: bool = True


@dataclass
class AdvertiseData:
    """Advertisement or scan response content."""
    service_uuids: List[str] = field(default_factory=list)
    include_device_name: bool = False
    manufacturer_data: Dict[int, bytes] = field(default_factory=dict)

    def payload_size(self, device_name: Optional[str] = None) -> int:
        """
        Estimate the encoded AD structure size in bytes.

        Each AD structure costs a length byte and a type byte on top of its
        data. 128-bit service UUIDs take 16 bytes, manufacturer data takes
        the 2 byte company id plus payload.
        """
        size = 0
        if self.service_uuids:
            size += 2 + 16 * len(self.service_uuids)
        if self.include_device_name and device_name:
            size += 2 + len(device_name.encode("utf-8"))
        for payload in self.manufacturer_data.values():
            size += 2 + 2 + len(payload)
        return size


class GattLink:
    """
    Handle for one central-side GATT link.

    A link is owned by exactly one connected-peer entry. After close() the
    handle is dead and drivers must refuse to use it.
    """

    def __init__(self, address: str):
        self.address = address
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> bool:
        """Mark the link released. Returns False if it was already closed."""
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            return True

    def __repr__(self):
        return f"GattLink({self.address}{', closed' if self._closed else ''})"


# ============================================================================
# Driver event receivers
# ============================================================================

class ScanEventReceiver:
    def on_scan_result(self, device: BLEDevice):
        pass

    def on_batch_scan_results(self, devices: List[BLEDevice]):
        for device in devices:
            self.on_scan_result(device)

    def on_scan_failed(self, error_code: int):
        pass


class AdvertiseEventReceiver:
    def on_start_success(self):
        pass

    def on_start_failure(self, error_code: int):
        pass


class GattClientEventReceiver:
    """Central-side link events. All events carry the remote address."""

    def on_connection_state_change(self, address: str, status: int, new_state: int):
        pass

    def on_services_discovered(self, address: str, status: int, services: Dict[str, GattService]):
        pass

    def on_characteristic_write(self, address: str, char_uuid: str, status: int):
        pass

    def on_characteristic_read(self, address: str, char_uuid: str, value: bytes, status: int):
        pass

    def on_characteristic_changed(self, address: str, char_uuid: str, value: bytes):
        pass


class GattServerEventReceiver:
    """
    Peripheral-side events.

    Read and write handlers run synchronously on the driver thread and must
    answer through BLEDriverInterface.send_response() when a response is
    required.
    """

    def on_connection_state_change(self, device: BLEDevice, status: int, new_state: int):
        pass

    def on_characteristic_read_request(self, device: BLEDevice, request_id: int, offset: int, char_uuid: str):
        pass

    def on_characteristic_write_request(self, device: BLEDevice, request_id: int, char_uuid: str,
                                        prepared_write: bool, response_needed: bool, offset: int,
                                        value: bytes):
        pass

    def on_descriptor_read_request(self, device: BLEDevice, request_id: int, offset: int,
                                   char_uuid: str, descriptor_uuid: str):
        pass

    def on_descriptor_write_request(self, device: BLEDevice, request_id: int, char_uuid: str,
                                    descriptor_uuid: str, prepared_write: bool,
                                    response_needed: bool, offset: int, value: bytes):
        pass

    def on_notification_sent(self, device: BLEDevice, status: int):
        pass


# ============================================================================
# Driver interface
# ============================================================================

class BLEDriverInterface(ABC):
    """
    Abstract BLE stack used by the messaging engines.

    Implementations deliver every event from their own thread(s). Receivers
    are expected to be thread safe.
    """

    # --- Lifecycle & Adapter ---

    @abstractmethod
    def start(self):
        """Bring the stack up (event loop, adapter handles)."""
        pass

    @abstractmethod
    def stop(self):
        """Release every radio resource held by the driver."""
        pass

    @abstractmethod
    def is_enabled(self) -> bool:
        """Return True if a powered adapter is available."""
        pass

    @property
    @abstractmethod
    def state(self) -> DriverState:
        pass

    # --- Scanning (Central) ---

    @abstractmethod
    def start_scan(self, service_uuid: str, receiver: ScanEventReceiver) -> bool:
        """
        Start a filtered scan.

        Args:
            service_uuid: Only peripherals advertising this service are reported
            receiver: Gets scan results and failures

        Returns:
            False if no scanner could be obtained
        """
        pass

    @abstractmethod
    def stop_scan(self):
        pass

    # --- Advertising (Peripheral) ---

    @abstractmethod
    def start_advertising(self, device_name: str, settings: AdvertiseSettings,
                          advertise_data: AdvertiseData, scan_response: AdvertiseData,
                          receiver: AdvertiseEventReceiver) -> bool:
        """
        Start advertising. The outcome arrives on the receiver.

        Returns:
            False if no advertiser could be obtained
        """
        pass

    @abstractmethod
    def stop_advertising(self):
        pass

    # --- GATT server (Peripheral) ---

    @abstractmethod
    def open_gatt_server(self, receiver: GattServerEventReceiver) -> bool:
        pass

    @abstractmethod
    def add_service(self, service: GattService) -> bool:
        pass

    @abstractmethod
    def send_response(self, device: BLEDevice, request_id: int, status: int, offset: int,
                      value: Optional[bytes]) -> bool:
        pass

    @abstractmethod
    def notify_characteristic_changed(self, device: BLEDevice, characteristic: GattCharacteristic,
                                      confirm: bool) -> bool:
        """
        Push the characteristic's current value to one subscribed central.

        Args:
            confirm: True for an indication, False for a notification
        """
        pass

    @abstractmethod
    def close_gatt_server(self):
        pass

    # --- GATT client (Central) ---

    @abstractmethod
    def connect_gatt(self, address: str, receiver: GattClientEventReceiver) -> Optional[GattLink]:
        """
        Request a link to a peripheral.

        Returns:
            A new link handle, or None if the request could not be issued
        """
        pass

    @abstractmethod
    def discover_services(self, link: GattLink) -> bool:
        pass

    @abstractmethod
    def write_characteristic(self, link: GattLink, char_uuid: str, value: bytes, write_type: int) -> bool:
        pass

    @abstractmethod
    def read_characteristic(self, link: GattLink, char_uuid: str) -> bool:
        pass

    @abstractmethod
    def set_characteristic_notification(self, link: GattLink, char_uuid: str, enable: bool) -> bool:
        pass

    @abstractmethod
    def disconnect(self, link: GattLink):
        pass

    @abstractmethod
    def close(self, link: GattLink):
        """Release a link handle. The handle must not be used afterwards."""
        pass


def check_advertise_payload(device_name: Optional[str], advertise_data: AdvertiseData,
                            scan_response: AdvertiseData) -> Optional[int]:
    """
    Validate advertisement sizes against the legacy PDU limit.

    Returns:
        ADVERTISE_FAILED_DATA_TOO_LARGE if either payload is too big, else None
    """
    # Advertisement also carries the 3 byte flags structure
    if advertise_data.payload_size(device_name) + 3 > MAX_ADVERTISE_PAYLOAD:
        return ADVERTISE_FAILED_DATA_TOO_LARGE
    if scan_response.payload_size(device_name) > MAX_ADVERTISE_PAYLOAD:
        return ADVERTISE_FAILED_DATA_TOO_LARGE
    return None
