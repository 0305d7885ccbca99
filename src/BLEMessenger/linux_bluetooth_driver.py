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
Linux Bluetooth Driver for BLEMessenger

Implements BLEDriverInterface on Linux/BlueZ using:
- bleak: scanning, connecting and the GATT client
- bless: GATT server and advertising

ARCHITECTURE:
-------------

The driver owns a dedicated asyncio event loop running in a daemon thread.
Public methods are called from any thread and only schedule coroutines on
that loop with run_coroutine_threadsafe; results are reported to the
receivers from the loop thread. Nothing except stop() waits for the radio.

Per-link operations are serialised with an asyncio.Lock per peer so the
write/read/subscribe order requested by the engine is the order BlueZ sees.

PLATFORM NOTES:
---------------

bless does not report which central issued a request, nor connection
events. The driver reports all requests as coming from one synthetic
central (REMOTE_CENTRAL_ADDRESS), reports it connected on its first
request, and polls BlessServer.is_connected() to report it disconnected.
BlueZ answers CCCD reads and writes itself. Opening the server only
records the service; BlueZ registers it together with the advertisement
when advertising starts.
"""

import asyncio
import itertools
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

import RNS
from bleak import BleakClient, BleakScanner
from bless import BlessServer, GATTAttributePermissions, GATTCharacteristicProperties

from BLEMessenger.BLEUUIDs import (
    PERMISSION_READ,
    PERMISSION_WRITE,
    PROPERTY_INDICATE,
    PROPERTY_NOTIFY,
    PROPERTY_READ,
    PROPERTY_WRITE,
    PROPERTY_WRITE_NO_RESPONSE,
    normalize_uuid,
)
from BLEMessenger.bluetooth_driver import (
    ADVERTISE_FAILED_ALREADY_STARTED,
    ADVERTISE_FAILED_INTERNAL_ERROR,
    GATT_FAILURE,
    GATT_SUCCESS,
    SCAN_FAILED_ALREADY_STARTED,
    SCAN_FAILED_INTERNAL_ERROR,
    STATE_CONNECTED,
    STATE_DISCONNECTED,
    WRITE_TYPE_DEFAULT,
    AdvertiseData,
    AdvertiseEventReceiver,
    AdvertiseSettings,
    BLEDevice,
    BLEDriverInterface,
    DriverState,
    GattCharacteristic,
    GattClientEventReceiver,
    GattLink,
    GattServerEventReceiver,
    GattService,
    ScanEventReceiver,
    check_advertise_payload,
)


BLEAK_PROPERTY_MAP = {
    "read": PROPERTY_READ,
    "write-without-response": PROPERTY_WRITE_NO_RESPONSE,
    "write": PROPERTY_WRITE,
    "notify": PROPERTY_NOTIFY,
    "indicate": PROPERTY_INDICATE,
}


def properties_from_bleak(properties) -> int:
    """Convert bleak's property name list to a property bitmask."""
    mask = 0
    for name in properties or []:
        mask |= BLEAK_PROPERTY_MAP.get(name, 0)
    return mask


def permissions_to_bless(permissions: int) -> GATTAttributePermissions:
    value = GATTAttributePermissions(0)
    if permissions & PERMISSION_READ:
        value |= GATTAttributePermissions.readable
    if permissions & PERMISSION_WRITE:
        value |= GATTAttributePermissions.writeable
    return value


@dataclass
class PeerConnection:
    """Tracks one central-side link."""
    address: str
    link: GattLink
    receiver: GattClientEventReceiver
    client: Optional[BleakClient] = None
    connected_at: float = 0.0
    op_lock: Optional[asyncio.Lock] = None
    subscriptions: set = field(default_factory=set)


class LinuxBluetoothDriver(BLEDriverInterface):
    """
    Linux implementation of the BLE driver using bleak and bless.

    Architecture:
    - Main thread: engine-facing API
    - Event loop thread: every bleak/bless coroutine
    - Cross-thread communication via run_coroutine_threadsafe
    """

    CONNECTION_TIMEOUT = 10.0
    STOP_TIMEOUT = 5.0
    CONNECTION_POLL_INTERVAL = 2.0
    REMOTE_CENTRAL_ADDRESS = "00:00:00:00:00:00"

    def __init__(self, adapter: str = "hci0", connection_timeout: float = CONNECTION_TIMEOUT):
        """
        Args:
            adapter: BlueZ adapter name (hci0, hci1, ...)
            connection_timeout: Seconds allowed for a central-side connect
        """
        self.adapter = adapter
        self.connection_timeout = connection_timeout

        self._state = DriverState.IDLE
        self._running = False

        # Central side
        self._scanner: Optional[BleakScanner] = None
        self._scan_receiver: Optional[ScanEventReceiver] = None
        # Bumped by every stop; a start that sees a different value after an await was cancelled
        self._scan_generation = 0
        self._peers: Dict[str, PeerConnection] = {}
        self._peers_lock = threading.RLock()

        # Peripheral side
        self._server: Optional[BlessServer] = None
        self._server_receiver: Optional[GattServerEventReceiver] = None
        self._services: Dict[str, GattService] = {}
        self._advertising = False
        self._request_ids = itertools.count(1)
        self._responses: Dict[int, tuple] = {}
        self._responses_lock = threading.Lock()
        self._remote_central: Optional[BLEDevice] = None
        self._monitor_task = None
        self._server_generation = 0

        # Event loop management
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.loop_thread: Optional[threading.Thread] = None

        self.log_prefix = "LinuxBLEDriver"

    def _log(self, message: str, level: str = "INFO"):
        """Log message with appropriate level."""
        level_map = {
            "DEBUG": RNS.LOG_DEBUG,
            "INFO": RNS.LOG_INFO,
            "WARNING": RNS.LOG_WARNING,
            "ERROR": RNS.LOG_ERROR,
            "CRITICAL": RNS.LOG_CRITICAL,
            "EXTREME": RNS.LOG_EXTREME,
        }
        RNS.log(f"{self.log_prefix} {message}", level_map.get(level.upper(), RNS.LOG_INFO))

    def _deliver(self, callback, *args):
        """Invoke a receiver callback, containing any exception it raises."""
        try:
            callback(*args)
        except Exception as e:
            self._log(f"Error in {getattr(callback, '__name__', 'receiver')} callback: {e}", "ERROR")

    def _submit(self, coro):
        if not self._running or self.loop is None:
            coro.close()
            return None
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self):
        """Create the event loop thread."""
        if self._running:
            self._log("Driver already running", "WARNING")
            return

        self._log("Starting Linux BLE driver...")
        self.loop_thread = threading.Thread(target=self._run_event_loop, daemon=True, name="BLE-EventLoop")
        self.loop_thread.start()

        timeout = 5.0
        start_time = time.time()
        while self.loop is None and (time.time() - start_time) < timeout:
            time.sleep(0.1)

        if self.loop is None:
            raise RuntimeError("Failed to start event loop within timeout")

        self._running = True
        self._state = DriverState.IDLE
        self._log("Driver started successfully")

    def stop(self):
        """Stop all BLE activity and release resources."""
        if not self._running:
            return

        self._log("Stopping Linux BLE driver...")
        pending = [
            self._submit(self._stop_scanner()),
            self._submit(self._stop_server()),
        ]
        with self._peers_lock:
            peers = list(self._peers.values())
            self._peers.clear()
        for peer in peers:
            peer.link.close()
            if peer.client is not None:
                pending.append(self._submit(self._disconnect_client(peer)))

        for future in pending:
            if future is None:
                continue
            try:
                future.result(timeout=LinuxBluetoothDriver.STOP_TIMEOUT)
            except Exception as e:
                self._log(f"Error during shutdown: {e}", "WARNING")

        self._running = False
        if self.loop and self.loop.is_running():
            self.loop.call_soon_threadsafe(self.loop.stop)
        if self.loop_thread and self.loop_thread.is_alive():
            self.loop_thread.join(timeout=LinuxBluetoothDriver.STOP_TIMEOUT)

        self._state = DriverState.IDLE
        self._log("Driver stopped")

    def is_enabled(self) -> bool:
        """True if the driver is running and BlueZ exposes the adapter."""
        if not self._running:
            return False
        return os.path.exists(os.path.join("/sys/class/bluetooth", self.adapter))

    @property
    def state(self) -> DriverState:
        return self._state

    def _update_state(self):
        if self._scanner is not None:
            self._state = DriverState.SCANNING
        elif self._advertising:
            self._state = DriverState.ADVERTISING
        else:
            self._state = DriverState.IDLE

    # ========================================================================
    # Scanning (Central Mode)
    # ========================================================================

    def start_scan(self, service_uuid: str, receiver: ScanEventReceiver) -> bool:
        if not self._running:
            self._log("Cannot start scanning: driver not running", "ERROR")
            return False

        self._scan_receiver = receiver
        future = self._submit(self._start_scanner(service_uuid, receiver))
        return future is not None

    async def _start_scanner(self, service_uuid: str, receiver: ScanEventReceiver):
        if self._scanner is not None:
            self._deliver(receiver.on_scan_failed, SCAN_FAILED_ALREADY_STARTED)
            return

        def detection_callback(device, advertisement_data):
            """Called for each advertisement matching the service filter."""
            ble_device = BLEDevice(
                address=device.address,
                name=advertisement_data.local_name or device.name,
                rssi=advertisement_data.rssi,
                service_uuids=[normalize_uuid(u) for u in advertisement_data.service_uuids],
                manufacturer_data={k: bytes(v) for k, v in advertisement_data.manufacturer_data.items()},
            )
            self._deliver(receiver.on_scan_result, ble_device)

        generation = self._scan_generation
        scanner = BleakScanner(
            detection_callback=detection_callback,
            service_uuids=[service_uuid],
            adapter=self.adapter,
        )
        try:
            await scanner.start()
        except Exception as e:
            self._log(f"Scanner failed to start: {e}", "ERROR")
            self._deliver(receiver.on_scan_failed, SCAN_FAILED_INTERNAL_ERROR)
            return

        if generation != self._scan_generation:
            self._log("Scan stopped while starting, stopping scanner", "DEBUG")
            await self._stop_bleak_scanner(scanner)
            return

        self._scanner = scanner
        self._update_state()
        self._log(f"Scanning for {service_uuid}", "DEBUG")

    def stop_scan(self):
        self._submit(self._stop_scanner())

    async def _stop_scanner(self):
        self._scan_generation += 1
        scanner = self._scanner
        self._scanner = None
        if scanner is not None:
            await self._stop_bleak_scanner(scanner)
        self._update_state()

    async def _stop_bleak_scanner(self, scanner: BleakScanner):
        try:
            await scanner.stop()
        except Exception as e:
            self._log(f"Error stopping scanner: {e}", "WARNING")

    # ========================================================================
    # Connection Management (Central Mode)
    # ========================================================================

    def connect_gatt(self, address: str, receiver: GattClientEventReceiver) -> Optional[GattLink]:
        if not self._running:
            self._log("Cannot connect: driver not running", "ERROR")
            return None

        with self._peers_lock:
            if address in self._peers:
                self._log(f"Connection already in progress to {address}", "DEBUG")
                return None
            link = GattLink(address)
            self._peers[address] = PeerConnection(address=address, link=link, receiver=receiver)

        self._submit(self._connect_to_peer(address, link))
        return link

    def _peer_for(self, link: GattLink) -> Optional[PeerConnection]:
        if link is None or link.closed:
            self._log(f"Refusing request on released link {link}", "DEBUG")
            return None
        with self._peers_lock:
            peer = self._peers.get(link.address)
        if peer is None or peer.link is not link:
            return None
        return peer

    async def _connect_to_peer(self, address: str, link: GattLink):
        """Connect to a peripheral (runs in event loop thread)."""
        with self._peers_lock:
            peer = self._peers.get(address)
        if peer is None or peer.link is not link:
            return

        peer.op_lock = asyncio.Lock()

        def disconnected_callback(client_obj):
            """Called by bleak when the link drops."""
            if link.closed:
                return
            self._log(f"Device {address} disconnected", "INFO")
            self._deliver(peer.receiver.on_connection_state_change, address, GATT_SUCCESS, STATE_DISCONNECTED)

        client = BleakClient(
            address,
            disconnected_callback=disconnected_callback,
            timeout=self.connection_timeout,
            adapter=self.adapter,
        )

        try:
            await client.connect()
        except Exception as e:
            self._log(f"Connection to {address} failed: {e}", "WARNING")
            if not link.closed:
                self._deliver(peer.receiver.on_connection_state_change, address, GATT_FAILURE, STATE_DISCONNECTED)
            return

        if link.closed:
            # Released while connecting
            await self._disconnect_client(peer, client)
            return

        peer.client = client
        peer.connected_at = time.time()
        self._log(f"Connected to {address}", "INFO")
        self._deliver(peer.receiver.on_connection_state_change, address, GATT_SUCCESS, STATE_CONNECTED)

    async def _disconnect_client(self, peer: PeerConnection, client: Optional[BleakClient] = None):
        client = client or peer.client
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception as e:
            self._log(f"Error disconnecting from {peer.address}: {e}", "WARNING")

    def disconnect(self, link: GattLink):
        if link.closed:
            return
        with self._peers_lock:
            peer = self._peers.get(link.address)
        if peer is not None and peer.link is link and peer.client is not None:
            self._submit(self._disconnect_client(peer))

    def close(self, link: GattLink):
        """Release the link. A still-connected client is disconnected."""
        if not link.close():
            return
        with self._peers_lock:
            peer = self._peers.get(link.address)
            if peer is not None and peer.link is link:
                del self._peers[link.address]
            else:
                peer = None
        if peer is not None and peer.client is not None:
            self._submit(self._disconnect_client(peer))

    # ========================================================================
    # GATT Client Operations
    # ========================================================================

    def discover_services(self, link: GattLink) -> bool:
        peer = self._peer_for(link)
        if peer is None or peer.client is None:
            return False
        return self._submit(self._discover_services(peer)) is not None

    async def _discover_services(self, peer: PeerConnection):
        async with peer.op_lock:
            services = {}
            try:
                for service in peer.client.services:
                    characteristics = [
                        GattCharacteristic(uuid=char.uuid, properties=properties_from_bleak(char.properties))
                        for char in service.characteristics
                    ]
                    services[normalize_uuid(service.uuid)] = GattService(uuid=service.uuid, characteristics=characteristics)
                status = GATT_SUCCESS
            except Exception as e:
                self._log(f"Service discovery on {peer.address} failed: {e}", "ERROR")
                status = GATT_FAILURE

            if not peer.link.closed:
                self._deliver(peer.receiver.on_services_discovered, peer.address, status, services)

    def write_characteristic(self, link: GattLink, char_uuid: str, value: bytes, write_type: int) -> bool:
        peer = self._peer_for(link)
        if peer is None or peer.client is None:
            return False
        response = write_type == WRITE_TYPE_DEFAULT
        return self._submit(self._write(peer, char_uuid, bytes(value), response)) is not None

    async def _write(self, peer: PeerConnection, char_uuid: str, value: bytes, response: bool):
        async with peer.op_lock:
            try:
                await peer.client.write_gatt_char(char_uuid, value, response=response)
                status = GATT_SUCCESS
            except Exception as e:
                self._log(f"Error writing characteristic {char_uuid} to {peer.address}: {e}", "ERROR")
                status = GATT_FAILURE

            if not peer.link.closed:
                self._deliver(peer.receiver.on_characteristic_write, peer.address, char_uuid, status)

    def read_characteristic(self, link: GattLink, char_uuid: str) -> bool:
        peer = self._peer_for(link)
        if peer is None or peer.client is None:
            return False
        return self._submit(self._read(peer, char_uuid)) is not None

    async def _read(self, peer: PeerConnection, char_uuid: str):
        async with peer.op_lock:
            value = b""
            try:
                value = bytes(await peer.client.read_gatt_char(char_uuid))
                status = GATT_SUCCESS
            except Exception as e:
                self._log(f"Error reading characteristic {char_uuid} from {peer.address}: {type(e).__name__}: {e}", "ERROR")
                status = GATT_FAILURE

            if not peer.link.closed:
                self._deliver(peer.receiver.on_characteristic_read, peer.address, char_uuid, value, status)

    def set_characteristic_notification(self, link: GattLink, char_uuid: str, enable: bool) -> bool:
        peer = self._peer_for(link)
        if peer is None or peer.client is None:
            return False
        return self._submit(self._set_notify(peer, char_uuid, enable)) is not None

    async def _set_notify(self, peer: PeerConnection, char_uuid: str, enable: bool):
        def notification_handler(sender, data):
            if not peer.link.closed:
                self._deliver(peer.receiver.on_characteristic_changed, peer.address, char_uuid, bytes(data))

        async with peer.op_lock:
            try:
                if enable and char_uuid not in peer.subscriptions:
                    await peer.client.start_notify(char_uuid, notification_handler)
                    peer.subscriptions.add(char_uuid)
                elif not enable and char_uuid in peer.subscriptions:
                    await peer.client.stop_notify(char_uuid)
                    peer.subscriptions.discard(char_uuid)
            except Exception as e:
                self._log(f"Error {'starting' if enable else 'stopping'} notifications for {char_uuid} "
                          f"from {peer.address}: {e}", "ERROR")

    # ========================================================================
    # GATT Server (Peripheral Mode)
    # ========================================================================

    def open_gatt_server(self, receiver: GattServerEventReceiver) -> bool:
        if not self._running:
            self._log("Cannot open GATT server: driver not running", "ERROR")
            return False
        self._server_receiver = receiver
        self._services = {}
        return True

    def add_service(self, service: GattService) -> bool:
        if self._server_receiver is None:
            return False
        self._services[service.uuid] = service
        return True

    def close_gatt_server(self):
        self._server_receiver = None
        self._services = {}
        self._submit(self._stop_server())

    def start_advertising(self, device_name: str, settings: AdvertiseSettings,
                          advertise_data: AdvertiseData, scan_response: AdvertiseData,
                          receiver: AdvertiseEventReceiver) -> bool:
        if not self._running or self._server_receiver is None:
            return False

        error_code = check_advertise_payload(device_name, advertise_data, scan_response)
        if error_code is not None:
            self._deliver(receiver.on_start_failure, error_code)
            return True

        if scan_response.manufacturer_data:
            self._log("Manufacturer data is not advertised by the bless backend", "DEBUG")

        return self._submit(self._start_server(device_name, receiver)) is not None

    async def _start_server(self, device_name: str, receiver: AdvertiseEventReceiver):
        if self._advertising:
            self._deliver(receiver.on_start_failure, ADVERTISE_FAILED_ALREADY_STARTED)
            return

        generation = self._server_generation
        started = False
        try:
            server = BlessServer(name=device_name, loop=self.loop)
            server.read_request_func = self._handle_read_request
            server.write_request_func = self._handle_write_request

            for service in list(self._services.values()):
                await server.add_new_service(service.uuid)
                if generation != self._server_generation:
                    break
                for characteristic in service.characteristics:
                    await server.add_new_characteristic(
                        service.uuid,
                        characteristic.uuid,
                        GATTCharacteristicProperties(characteristic.properties),
                        None,
                        permissions_to_bless(characteristic.permissions),
                    )

            if generation == self._server_generation:
                await server.start()
                started = True
        except Exception as e:
            self._log(f"Failed to start GATT server: {e}", "ERROR")
            if generation == self._server_generation:
                self._deliver(receiver.on_start_failure, ADVERTISE_FAILED_INTERNAL_ERROR)
            return

        if generation != self._server_generation:
            # stop_advertising() or close_gatt_server() ran during the awaits above
            self._log("Advertising stopped while starting, stopping GATT server", "DEBUG")
            if started:
                try:
                    await server.stop()
                except Exception as e:
                    self._log(f"Error stopping GATT server: {e}", "WARNING")
            return

        self._server = server
        self._advertising = True
        self._update_state()
        self._monitor_task = self.loop.create_task(self._monitor_connections())
        self._log(f"Advertising as '{device_name}'")
        self._deliver(receiver.on_start_success)

    def stop_advertising(self):
        self._submit(self._stop_server())

    async def _stop_server(self):
        self._server_generation += 1
        server = self._server
        self._server = None
        self._advertising = False
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            self._monitor_task = None
        if server is not None:
            try:
                await server.stop()
            except Exception as e:
                self._log(f"Error stopping GATT server: {e}", "WARNING")
        self._report_central_disconnected()
        self._update_state()

    async def _monitor_connections(self):
        """Poll bless for central connections (it has no connection callbacks)."""
        while self._server is not None:
            try:
                connected = await self._server.is_connected()
            except Exception as e:
                self._log(f"Error polling connection state: {e}", "DEBUG")
                connected = self._remote_central is not None

            if connected and self._remote_central is None:
                self._remote_central_device()
            elif not connected and self._remote_central is not None:
                self._report_central_disconnected()

            await asyncio.sleep(LinuxBluetoothDriver.CONNECTION_POLL_INTERVAL)

    def _remote_central_device(self) -> BLEDevice:
        if self._remote_central is None:
            self._remote_central = BLEDevice(address=LinuxBluetoothDriver.REMOTE_CENTRAL_ADDRESS, name="central")
            if self._server_receiver is not None:
                self._deliver(self._server_receiver.on_connection_state_change,
                              self._remote_central, GATT_SUCCESS, STATE_CONNECTED)
        return self._remote_central

    def _report_central_disconnected(self):
        device = self._remote_central
        self._remote_central = None
        if device is not None and self._server_receiver is not None:
            self._deliver(self._server_receiver.on_connection_state_change, device, GATT_SUCCESS, STATE_DISCONNECTED)

    def _handle_read_request(self, characteristic, **kwargs) -> bytearray:
        """bless read callback: route through the receiver and return its response."""
        receiver = self._server_receiver
        if receiver is None:
            return bytearray()

        device = self._remote_central_device()
        request_id = next(self._request_ids)
        self._deliver(receiver.on_characteristic_read_request, device, request_id, 0,
                      normalize_uuid(characteristic.uuid))

        with self._responses_lock:
            status, value = self._responses.pop(request_id, (GATT_FAILURE, b""))
        if status != GATT_SUCCESS:
            self._log(f"Read of {characteristic.uuid} answered with status {status}", "DEBUG")
        return bytearray(value or b"")

    def _handle_write_request(self, characteristic, value, **kwargs):
        """bless write callback."""
        receiver = self._server_receiver
        if receiver is None:
            return

        device = self._remote_central_device()
        request_id = next(self._request_ids)
        self._deliver(receiver.on_characteristic_write_request, device, request_id,
                      normalize_uuid(characteristic.uuid), False, True, 0, bytes(value))

        with self._responses_lock:
            status, _ = self._responses.pop(request_id, (GATT_SUCCESS, b""))
        if status == GATT_SUCCESS:
            characteristic.value = bytearray(value)

    def send_response(self, device: BLEDevice, request_id: int, status: int, offset: int,
                      value: Optional[bytes]) -> bool:
        with self._responses_lock:
            self._responses[request_id] = (status, bytes(value or b""))
        return True

    def notify_characteristic_changed(self, device: BLEDevice, characteristic: GattCharacteristic,
                                      confirm: bool) -> bool:
        if self._server is None or not self._running:
            return False
        self.loop.call_soon_threadsafe(self._notify, device, characteristic.uuid, bytes(characteristic.value))
        return True

    def _notify(self, device: BLEDevice, char_uuid: str, value: bytes):
        server = self._server
        status = GATT_FAILURE
        if server is not None:
            try:
                service_uuid = next(
                    (s.uuid for s in self._services.values() if s.get_characteristic(char_uuid) is not None), None
                )
                server.get_characteristic(char_uuid).value = bytearray(value)
                if server.update_value(service_uuid, char_uuid):
                    status = GATT_SUCCESS
            except Exception as e:
                self._log(f"Error sending notification on {char_uuid}: {e}", "ERROR")

        if self._server_receiver is not None:
            self._deliver(self._server_receiver.on_notification_sent, device, status)

    # ========================================================================
    # Event Loop Management
    # ========================================================================

    def _run_event_loop(self):
        """Run asyncio event loop in separate thread."""
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self._log("Event loop thread started", "DEBUG")
        self.loop.run_forever()
        self._log("Event loop thread stopped", "DEBUG")
