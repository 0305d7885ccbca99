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
BLEGATTServer - peripheral-side GATT engine

Owns the local service table for the active protocol profile and answers
every request a connected central makes against it:

- reads of the read characteristic return a fresh "Time: <millis>" string
- reads of the bidirectional characteristic return the local MSISDN,
  regardless of what was last written to it
- writes to the write (and read) characteristic are inbound text messages
- writes to the bidirectional characteristic carry the central's MSISDN
- CCCD writes are acknowledged and classified for logging

Outbound data goes through send_to_clients(), which pushes one value to
every connected central as a notification (or indication when the
characteristic is configured for it).
"""

import threading
import time
from typing import List, Optional

import RNS

from BLEMessenger.BLECollaborators import CAPABILITY_CONNECT, StaticPermissions
from BLEMessenger.BLEErrors import (
    NotReady,
    PermissionDenied,
    ResourceUnavailable,
    UnknownCharacteristic,
    WriteFailure,
)
from BLEMessenger.BLEPeers import ConnectedClient, PeerIdentity, PeerTable
from BLEMessenger.BLEUUIDs import (
    DEFAULT_PROFILE,
    DISABLE_NOTIFICATION_VALUE,
    ENABLE_INDICATION_VALUE,
    ENABLE_NOTIFICATION_VALUE,
    PERMISSION_READ,
    PERMISSION_WRITE,
    PROPERTY_INDICATE,
    ProtocolProfile,
)
from BLEMessenger.bluetooth_driver import (
    GATT_FAILURE,
    GATT_INVALID_OFFSET,
    GATT_SUCCESS,
    GATT_WRITE_NOT_PERMITTED,
    STATE_CONNECTED,
    STATE_DISCONNECTED,
    STATE_NAMES,
    BLEDevice,
    BLEDriverInterface,
    GattCharacteristic,
    GattDescriptor,
    GattServerEventReceiver,
    GattService,
)


SUBSCRIPTION_NOTIFICATIONS = "notifications"
SUBSCRIPTION_INDICATIONS = "indications"
SUBSCRIPTION_DISABLED = "disabled"
SUBSCRIPTION_UNKNOWN = "unknown"


def classify_cccd_value(value: bytes) -> str:
    """Map a client-config descriptor value to a subscription kind."""
    value = bytes(value or b"")
    if value == ENABLE_NOTIFICATION_VALUE:
        return SUBSCRIPTION_NOTIFICATIONS
    if value == ENABLE_INDICATION_VALUE:
        return SUBSCRIPTION_INDICATIONS
    if value == DISABLE_NOTIFICATION_VALUE:
        return SUBSCRIPTION_DISABLED
    return SUBSCRIPTION_UNKNOWN


def build_service(profile: ProtocolProfile) -> GattService:
    """Construct the primary service for a profile."""
    characteristics = []
    for spec in profile.characteristics:
        descriptors = []
        if spec.has_cccd:
            descriptors.append(GattDescriptor(
                uuid=profile.cccd_uuid,
                permissions=PERMISSION_READ | PERMISSION_WRITE,
                value=DISABLE_NOTIFICATION_VALUE,
            ))
        characteristics.append(GattCharacteristic(
            uuid=spec.uuid,
            properties=spec.properties,
            permissions=spec.permissions,
            descriptors=descriptors,
        ))
    return GattService(uuid=profile.service_uuid, characteristics=characteristics, primary=True)


class BLEGATTServer(GattServerEventReceiver):
    """
    GATT server engine for the peripheral role.

    THREADING:
    - Request handlers run on the driver thread
    - _server_lock guards the provisioned state and the notify value
    - connected_clients is a PeerTable keyed by central address
    """

    DEFAULT_LOCAL_MSISDN = "01000000000"
    READ_VALUE_PREFIX = "Time: "

    def __init__(self, driver: BLEDriverInterface, events, profile: ProtocolProfile = DEFAULT_PROFILE,
                 permissions=None, inbound=None, local_msisdn: str = DEFAULT_LOCAL_MSISDN,
                 name: str = "BLEMessenger"):
        """
        Args:
            driver: Platform driver
            events: BLEEventDispatcher receiving client updates and failures
            profile: GATT layout to serve
            permissions: PermissionProvider (defaults to all granted)
            inbound: Receiver of inbound text, anything with handle_inbound(text, sender)
            local_msisdn: Answer to reads of the bidirectional characteristic
        """
        self.driver = driver
        self.events = events
        self.profile = profile
        self.permissions = permissions or StaticPermissions()
        self.inbound = inbound
        self.local_msisdn = local_msisdn
        self.name = name

        self.connected_clients: PeerTable[ConnectedClient] = PeerTable("clients")

        self._server_lock = threading.RLock()
        self._provisioned = False
        self._service: Optional[GattService] = None
        self._notify_characteristic: Optional[GattCharacteristic] = None

    # --- Lifecycle ---

    @property
    def provisioned(self) -> bool:
        return self._provisioned

    @property
    def service(self) -> Optional[GattService]:
        return self._service

    @property
    def notify_characteristic(self) -> Optional[GattCharacteristic]:
        return self._notify_characteristic

    def provision(self) -> bool:
        """
        Open the server and register the profile's service.

        Idempotent: returns True without rebuilding when already provisioned.
        On failure the server context is closed so a later call can retry.
        """
        with self._server_lock:
            if self._provisioned:
                return True

            if not self.permissions.has_permission(CAPABILITY_CONNECT):
                return self.events.failure(PermissionDenied(CAPABILITY_CONNECT, "server"), self)

            try:
                opened = self.driver.open_gatt_server(self)
            except Exception as e:
                RNS.log(f"{self} Error opening GATT server: {e}", RNS.LOG_ERROR)
                opened = False
            if not opened:
                return self.events.failure(ResourceUnavailable("GATT server", "server"), self)

            service = build_service(self.profile)
            try:
                added = self.driver.add_service(service)
            except Exception as e:
                RNS.log(f"{self} Error adding service {service.uuid}: {e}", RNS.LOG_ERROR)
                added = False

            if not added:
                self._close_driver_server()
                self._service = None
                self._notify_characteristic = None
                return self.events.failure(ResourceUnavailable("GATT service", "server"), self)

            self._service = service
            notify_uuid = self.profile.uuid_for("notify")
            self._notify_characteristic = service.get_characteristic(notify_uuid) if notify_uuid else None
            self._provisioned = True

        self.events.log(f"GATT server provisioned with service {service.uuid} "
                        f"({len(service.characteristics)} characteristics)", RNS.LOG_INFO, self)
        return True

    def teardown(self):
        """Close the server, forget all clients and emit the empty client list."""
        with self._server_lock:
            was_provisioned = self._provisioned
            self._provisioned = False
            self._service = None
            self._notify_characteristic = None
            if was_provisioned:
                self._close_driver_server()

        dropped = self.connected_clients.pop_all()
        if was_provisioned:
            self.events.log(f"GATT server closed ({len(dropped)} client(s) dropped)", RNS.LOG_INFO, self)
        self.events.emit("on_connected_clients_updated", [])

    def _close_driver_server(self):
        try:
            self.driver.close_gatt_server()
        except Exception as e:
            RNS.log(f"{self} Error closing GATT server: {e}", RNS.LOG_WARNING)

    # --- Queries ---

    @property
    def clients(self) -> List[ConnectedClient]:
        return self.connected_clients.snapshot()

    def _sender_name(self, device: BLEDevice) -> str:
        client = self.connected_clients.get(device.address)
        if client is not None:
            return client.display_name
        return device.name or device.address

    def _emit_clients(self):
        self.events.emit("on_connected_clients_updated", self.connected_clients.snapshot())

    # --- Connection events ---

    def on_connection_state_change(self, device: BLEDevice, status: int, new_state: int):
        state_name = STATE_NAMES.get(new_state, str(new_state))
        RNS.log(f"{self} Connection state for {device.address}: {state_name} (status {status})", RNS.LOG_DEBUG)

        if new_state == STATE_CONNECTED and status == GATT_SUCCESS:
            client = ConnectedClient(identity=PeerIdentity(device.address, device.name), device=device)
            if self.connected_clients.insert(device.address, client):
                self.events.log(f"Device connected: {device.name or device.address}", RNS.LOG_INFO, self)
                self._emit_clients()

        elif new_state == STATE_DISCONNECTED or status != GATT_SUCCESS:
            if self.connected_clients.remove(device.address) is not None:
                self.events.log(f"Device disconnected: {device.name or device.address}", RNS.LOG_INFO, self)
                self._emit_clients()

    # --- Characteristic requests ---

    def _respond(self, device: BLEDevice, request_id: int, status: int, offset: int, value: Optional[bytes]):
        try:
            self.driver.send_response(device, request_id, status, offset, value)
        except Exception as e:
            RNS.log(f"{self} Error sending response to {device.address}: {e}", RNS.LOG_ERROR)

    def read_value(self, char_uuid) -> Optional[bytes]:
        """
        Value served for a read of char_uuid, or None for unknown UUIDs.

        The bidirectional characteristic always answers with the local
        MSISDN. A central that just wrote its own MSISDN there reads ours back.
        """
        role = self.profile.characteristic_role(char_uuid)
        if role == "read":
            return f"{BLEGATTServer.READ_VALUE_PREFIX}{int(time.time() * 1000)}".encode("utf-8")
        if role == "bidirectional":
            return self.local_msisdn.encode("utf-8")
        if role == "notify":
            with self._server_lock:
                if self._notify_characteristic is not None:
                    return bytes(self._notify_characteristic.value)
            return b""
        return None

    def on_characteristic_read_request(self, device: BLEDevice, request_id: int, offset: int, char_uuid: str):
        value = self.read_value(char_uuid)
        if value is None:
            self.events.failure(UnknownCharacteristic(char_uuid, device.address), self)
            self._respond(device, request_id, GATT_FAILURE, 0, b"")
            return

        if offset > len(value):
            self._respond(device, request_id, GATT_INVALID_OFFSET, offset, b"")
            return

        RNS.log(f"{self} Read of {char_uuid} by {device.address}", RNS.LOG_DEBUG)
        self._respond(device, request_id, GATT_SUCCESS, offset, value[offset:])

    def on_characteristic_write_request(self, device: BLEDevice, request_id: int, char_uuid: str,
                                        prepared_write: bool, response_needed: bool, offset: int,
                                        value: bytes):
        value = bytes(value or b"")
        role = self.profile.characteristic_role(char_uuid)

        if role in ("write", "read", "bidirectional"):
            status = GATT_SUCCESS
        elif role == "notify":
            status = GATT_WRITE_NOT_PERMITTED
        else:
            self.events.failure(UnknownCharacteristic(char_uuid, device.address), self)
            status = GATT_FAILURE

        if response_needed:
            self._respond(device, request_id, status, offset, value)

        if status != GATT_SUCCESS:
            return

        try:
            text = value.decode("utf-8")
        except UnicodeDecodeError:
            self.events.log(f"Dropped non-UTF-8 write of {len(value)} bytes from {device.address}",
                            RNS.LOG_WARNING, self)
            return

        if role == "bidirectional":
            self._handle_msisdn(device, text)
        else:
            self._handle_message(device, text)

    def _handle_msisdn(self, device: BLEDevice, msisdn: str):
        def set_msisdn(client):
            client.msisdn = msisdn

        self.events.log(f"MSISDN received from {device.name or device.address}: {msisdn}", RNS.LOG_INFO, self)
        if self.connected_clients.update(device.address, set_msisdn) is not None:
            self._emit_clients()

    def _handle_message(self, device: BLEDevice, text: str):
        sender = self._sender_name(device)
        if self.inbound is None:
            RNS.log(f"{self} No inbound handler, dropping message from {sender}", RNS.LOG_WARNING)
            return
        try:
            self.inbound.handle_inbound(text, sender)
        except Exception as e:
            RNS.log(f"{self} Error handling message from {sender}: {e}", RNS.LOG_ERROR)

    # --- Descriptor requests ---

    def on_descriptor_read_request(self, device: BLEDevice, request_id: int, offset: int,
                                   char_uuid: str, descriptor_uuid: str):
        if self.profile.is_cccd(descriptor_uuid):
            self._respond(device, request_id, GATT_SUCCESS, offset, DISABLE_NOTIFICATION_VALUE)
        else:
            self.events.failure(UnknownCharacteristic(descriptor_uuid, device.address), self)
            self._respond(device, request_id, GATT_FAILURE, offset, b"")

    def on_descriptor_write_request(self, device: BLEDevice, request_id: int, char_uuid: str,
                                    descriptor_uuid: str, prepared_write: bool,
                                    response_needed: bool, offset: int, value: bytes):
        if not self.profile.is_cccd(descriptor_uuid):
            self.events.failure(UnknownCharacteristic(descriptor_uuid, device.address), self)
            if response_needed:
                self._respond(device, request_id, GATT_FAILURE, offset, value)
            return

        kind = classify_cccd_value(value)

        def set_subscription(client):
            client.subscription = kind

        self.connected_clients.update(device.address, set_subscription)
        self.events.log(f"{device.name or device.address} {kind} on {char_uuid}", RNS.LOG_INFO, self)

        if response_needed:
            self._respond(device, request_id, GATT_SUCCESS, offset, value)

    def on_notification_sent(self, device: BLEDevice, status: int):
        if status == GATT_SUCCESS:
            RNS.log(f"{self} Notification sent to {device.address}", RNS.LOG_DEBUG)
        else:
            self.events.failure(WriteFailure(status, device.address, self.profile.uuid_for("notify"), "server"), self)

    # --- Outbound ---

    def send_to_clients(self, payload: bytes) -> bool:
        """
        Notify every connected central of a new value.

        The notify characteristic value is set once, then one notification
        (or indication) is issued per client. A failing client does not stop
        delivery to the rest.

        Returns:
            True if at least one notification was issued
        """
        payload = bytes(payload)
        with self._server_lock:
            if not self._provisioned or self._notify_characteristic is None:
                return self.events.failure(NotReady("GATT server not provisioned", "server"), self)

            clients = self.connected_clients.snapshot()
            if not clients:
                return self.events.failure(NotReady("no connected clients", "server"), self)

            characteristic = self._notify_characteristic
            characteristic.value = payload
            confirm = bool(characteristic.properties & PROPERTY_INDICATE)

            sent = 0
            for client in clients:
                try:
                    if self.driver.notify_characteristic_changed(client.device, characteristic, confirm):
                        sent += 1
                    else:
                        self.events.failure(WriteFailure(GATT_FAILURE, client.address, characteristic.uuid, "server"), self)
                except Exception as e:
                    RNS.log(f"{self} Error notifying {client.address}: {e}", RNS.LOG_ERROR)
                    self.events.failure(WriteFailure(GATT_FAILURE, client.address, characteristic.uuid, "server"), self)

        RNS.log(f"{self} Sent {len(payload)} bytes to {sent}/{len(clients)} client(s)", RNS.LOG_DEBUG)
        return sent > 0

    def __str__(self):
        return f"BLEGATTServer[{self.name}]"
