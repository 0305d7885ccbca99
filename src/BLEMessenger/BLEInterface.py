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
BLEInterface - dual-role BLE messaging endpoint

The interface owns one instance of every engine and a role state machine
that decides which of them may hold radio resources:

    Idle  <->  Central     (scanner + GATT client)
    Idle  <->  Peripheral  (advertiser + GATT server)
    Central <-> Peripheral

Every transition releases the previous role's resources before the new
role becomes current. Hosts drive it through the command methods below and
observe it by registering a BLEEventListener.

THREADING MODEL:
- Driver events arrive on the driver thread(s)
- Host commands run on the caller's thread and never wait for the radio
- _role_lock serialises role transitions; peer collections are PeerTables
"""

import threading
from typing import Iterable, List, Optional

import RNS

from BLEMessenger.BLEAdvertiser import BLEAdvertiser
from BLEMessenger.BLECollaborators import DirectoryImageSink, LogNotificationSink, StaticPermissions
from BLEMessenger.BLEConfig import as_bool, configure_logging, get_config_obj, load_configuration
from BLEMessenger.BLEErrors import InvalidRole
from BLEMessenger.BLEEvents import BLEEventDispatcher, BLEEventListener
from BLEMessenger.BLEGATTClient import BLEGATTClient
from BLEMessenger.BLEGATTServer import BLEGATTServer
from BLEMessenger.BLEPeers import ConnectedClient, ConnectedPeer, DiscoveredPeer, PeerIdentity, Role
from BLEMessenger.BLEScanner import BLEScanner
from BLEMessenger.BLETransfer import (
    DEFAULT_CHUNK_DELAY,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_END_DELAY,
    DEFAULT_REASSEMBLY_TIMEOUT,
    DEFAULT_START_DELAY,
    BLETransfer,
)
from BLEMessenger.BLEUUIDs import DEFAULT_PROFILE, get_profile


class _RoleEventHandler(BLEEventListener):
    """Internal subscriber applying role policies to engine events."""

    def __init__(self, owner: "BLEInterface"):
        self.owner = owner

    def on_connected_clients_updated(self, clients):
        self.owner._clients_changed(clients)

    def on_connected_peers_updated(self, peers):
        self.owner._peers_changed(peers)

    def on_advertising_state_changed(self, advertising):
        if advertising:
            self.owner._show("Advertising - Waiting for connections")


class BLEInterface:
    """
    Role coordinator and host command interface.

    Configuration keys (see BLEConfig.DEFAULT_CONFIG):
        name, device_name, profile, local_msisdn, handshake_msisdn,
        handshake_on_connect, auto_connect, auto_advertise,
        advertise_while_connected, include_msisdn_in_advertisement,
        scan_timeout, image_chunk_size, image_start_delay,
        image_chunk_delay, image_end_delay, image_directory,
        reassembly_timeout, adapter, connection_timeout
    """

    DEFAULT_IMAGE_DIRECTORY = "~/.blemessenger/images"

    def __init__(self, configuration=None, driver=None, permissions=None, image_sink=None, notifier=None):
        """
        Args:
            configuration: dict or ConfigObj with interface settings
            driver: BLEDriverInterface; defaults to LinuxBluetoothDriver
            permissions: PermissionProvider; defaults to all granted
            image_sink: ImageSink for received images; defaults to DirectoryImageSink
            notifier: NotificationSink for status lines; defaults to the log
        """
        c = get_config_obj(configuration)

        self.name = c.get("name", "BLEMessenger")
        self.device_name = c.get("device_name", self.name)
        self.profile = get_profile(c.get("profile", DEFAULT_PROFILE.name))
        self.local_msisdn = str(c.get("local_msisdn", BLEGATTServer.DEFAULT_LOCAL_MSISDN))
        self.handshake_msisdn = str(c.get("handshake_msisdn", BLEGATTClient.DEFAULT_HANDSHAKE_MSISDN))
        self.handshake_on_connect = as_bool(c.get("handshake_on_connect"), True)
        self.auto_connect = as_bool(c.get("auto_connect"), True)
        self.auto_advertise = as_bool(c.get("auto_advertise"), False)
        self.advertise_while_connected = as_bool(c.get("advertise_while_connected"), True)
        self.include_msisdn = as_bool(c.get("include_msisdn_in_advertisement"), True)

        scan_timeout = float(c.get("scan_timeout", 0))
        self.scan_timeout = scan_timeout if scan_timeout > 0 else None

        if driver is None:
            from BLEMessenger.linux_bluetooth_driver import LinuxBluetoothDriver
            driver = LinuxBluetoothDriver(
                adapter=c.get("adapter", "hci0"),
                connection_timeout=float(c.get("connection_timeout", LinuxBluetoothDriver.CONNECTION_TIMEOUT)),
            )
        self.driver = driver

        self.permissions = permissions or StaticPermissions()
        self.notifier = notifier or LogNotificationSink()
        self.image_sink = image_sink or DirectoryImageSink(c.get("image_directory", BLEInterface.DEFAULT_IMAGE_DIRECTORY))
        self.events = BLEEventDispatcher(self.name)

        self.transfer = BLETransfer(
            self.events,
            send_text=self._send_text,
            image_sink=self.image_sink,
            notifier=self.notifier,
            chunk_size=int(c.get("image_chunk_size", DEFAULT_CHUNK_SIZE)),
            start_delay=float(c.get("image_start_delay", DEFAULT_START_DELAY)),
            chunk_delay=float(c.get("image_chunk_delay", DEFAULT_CHUNK_DELAY)),
            end_delay=float(c.get("image_end_delay", DEFAULT_END_DELAY)),
            reassembly_timeout=float(c.get("reassembly_timeout", DEFAULT_REASSEMBLY_TIMEOUT)),
            name=self.name,
        )
        self.gatt_server = BLEGATTServer(
            self.driver, self.events, self.profile, self.permissions,
            inbound=self.transfer, local_msisdn=self.local_msisdn, name=self.name,
        )
        self.advertiser = BLEAdvertiser(
            self.driver, self.gatt_server, self.events, self.permissions,
            device_name=self.device_name, local_msisdn=self.local_msisdn,
            include_msisdn=self.include_msisdn, name=self.name,
        )
        self.scanner = BLEScanner(
            self.driver, self.events, self.profile, self.permissions,
            scan_timeout=self.scan_timeout, name=self.name,
        )
        self.gatt_client = BLEGATTClient(
            self.driver, self.events, self.profile, self.permissions,
            inbound=self.transfer, role_active=lambda: self._role == Role.CENTRAL,
            handshake_msisdn=self.handshake_msisdn, handshake_on_connect=self.handshake_on_connect,
            name=self.name,
        )
        self.scanner.on_new_peer = self._new_peer_discovered

        self._role = Role.IDLE
        self._role_lock = threading.RLock()
        self._transitioning = False
        self._advertising_paused = False
        self.online = False

        self.events.add_listener(_RoleEventHandler(self))

        RNS.log(f"{self} initializing with profile '{self.profile.name}' (service {self.profile.service_uuid})", RNS.LOG_INFO)
        RNS.log(f"{self} auto-connect: {'ENABLED' if self.auto_connect else 'DISABLED'}, "
                f"auto-advertise: {'ENABLED' if self.auto_advertise else 'DISABLED'}", RNS.LOG_DEBUG)

    @classmethod
    def from_config_dir(cls, configdir: str = None, **kwargs) -> "BLEInterface":
        """Load (or create) the configuration file, apply its log level and build an interface."""
        configuration = load_configuration(configdir)
        configure_logging(configuration)
        return cls(configuration, **kwargs)

    # --- Lifecycle ---

    def start(self) -> bool:
        """Start the driver. The interface stays Idle until a role is set."""
        if self.online:
            return True

        RNS.log(f"{self} starting BLE operations", RNS.LOG_INFO)
        try:
            self.driver.start()
        except Exception as e:
            RNS.log(f"{self} failed to start driver: {e}", RNS.LOG_ERROR)
            return False

        self.transfer.start_cleanup_timer()
        self.online = True
        RNS.log(f"{self} interface online", RNS.LOG_INFO)
        return True

    def shutdown(self):
        """Release every role resource and stop the driver."""
        RNS.log(f"{self} shutting down", RNS.LOG_INFO)
        self.set_role(Role.IDLE)
        self.transfer.stop_cleanup_timer()
        self.transfer.cancel()

        try:
            self.driver.stop()
        except Exception as e:
            RNS.log(f"{self} Error stopping driver: {e}", RNS.LOG_WARNING)

        self.online = False
        RNS.log(f"{self} shutdown complete", RNS.LOG_INFO)

    # --- Subscribers ---

    def add_listener(self, listener: BLEEventListener):
        self.events.add_listener(listener)

    def remove_listener(self, listener: BLEEventListener):
        self.events.remove_listener(listener)

    # --- Role state machine ---

    @property
    def role(self) -> Role:
        return self._role

    def set_role(self, next_role) -> bool:
        """
        Switch to next_role, releasing the current role's resources first.

        Setting the current role again is a no-op. Entering Peripheral
        forgets discovered peers; entering Central forgets connected clients.
        """
        if isinstance(next_role, str):
            try:
                next_role = Role(next_role.lower())
            except ValueError:
                RNS.log(f"{self} Unknown role '{next_role}'", RNS.LOG_ERROR)
                return False

        with self._role_lock:
            if next_role == self._role:
                return True

            previous = self._role
            self._transitioning = True
            try:
                self._release_role(previous)

                self._role = next_role
                if next_role == Role.PERIPHERAL:
                    self.scanner.clear()
                elif next_role == Role.CENTRAL:
                    self.gatt_server.connected_clients.clear()
            finally:
                self._transitioning = False

        self.events.log(f"Role changed: {previous} -> {next_role}", RNS.LOG_INFO, self)
        self.events.emit("on_role_changed", next_role)
        self._show(f"Mode: {next_role}")

        if next_role == Role.PERIPHERAL and self.auto_advertise:
            self.start_advertising()
        return True

    def _release_role(self, role: Role):
        """Stop everything the given role may hold. Safe to call on inactive engines."""
        self.transfer.cancel()

        if role == Role.CENTRAL:
            self.scanner.stop_scan()
            self.gatt_client.disconnect_all()
            self.scanner.clear()

        elif role == Role.PERIPHERAL:
            self._advertising_paused = False
            self.advertiser.stop_advertising()
            self.gatt_server.teardown()

    def _require(self, role: Role) -> bool:
        if self._role != role:
            return self.events.failure(InvalidRole(role, self._role), self)
        return True

    # --- Central commands ---

    def start_scan(self, timeout: Optional[float] = None) -> bool:
        if not self._require(Role.CENTRAL):
            return False
        return self.scanner.start_scan(timeout)

    def stop_scan(self):
        self.scanner.stop_scan()

    def connect(self, peer) -> bool:
        """
        Connect to a peer.

        Args:
            peer: DiscoveredPeer, PeerIdentity, or the key/address of a discovered peer
        """
        if not self._require(Role.CENTRAL):
            return False

        if isinstance(peer, str):
            key = peer
            peer = self.scanner.discovered_peers.get(key) or \
                self.scanner.discovered_peers.find(lambda p: p.identity.address == key)
            if peer is None:
                peer = PeerIdentity(address=key)

        return self.gatt_client.connect(peer)

    def disconnect_all(self) -> bool:
        if not self._require(Role.CENTRAL):
            return False
        self.gatt_client.disconnect_all()
        return True

    def _new_peer_discovered(self, peer: DiscoveredPeer):
        if self.auto_connect and self._role == Role.CENTRAL:
            self.gatt_client.connect(peer)

    # --- Peripheral commands ---

    def start_advertising(self) -> bool:
        if not self._require(Role.PERIPHERAL):
            return False
        self._advertising_paused = False
        return self.advertiser.start_advertising()

    def stop_advertising(self):
        self._advertising_paused = False
        self.advertiser.stop_advertising()

    def _clients_changed(self, clients: List[ConnectedClient]):
        if self._role != Role.PERIPHERAL or self._transitioning:
            return

        if clients:
            self._show("Connected: " + ", ".join(c.display_name for c in clients))
            if not self.advertise_while_connected and self.advertiser.advertising:
                RNS.log(f"{self} Pausing advertising while centrals are connected", RNS.LOG_DEBUG)
                self.advertiser.stop_advertising()
                self._advertising_paused = True

        elif self._advertising_paused:
            RNS.log(f"{self} Last central left, resuming advertising", RNS.LOG_DEBUG)
            self._advertising_paused = False
            self.advertiser.start_advertising()

    def _peers_changed(self, peers: List[ConnectedPeer]):
        if self._role != Role.CENTRAL or self._transitioning:
            return
        connected = [p for p in peers if p.connected]
        if connected:
            self._show("Connected: " + ", ".join(p.display_name for p in connected))

    # --- Messaging ---

    def send_message(self, text: str, targets: Optional[Iterable[str]] = None,
                     as_identifier: bool = False) -> bool:
        """
        Send a text message in the active role.

        Args:
            text: UTF-8 text
            targets: MSISDNs to deliver to (central role only); None for everyone
            as_identifier: Write to the bidirectional characteristic (central role only)
        """
        if self._role == Role.IDLE:
            return self.events.failure(InvalidRole("central or peripheral", self._role), self)

        if as_identifier:
            if not self._require(Role.CENTRAL):
                return False
            return self.gatt_client.send_to_peers(text.encode("utf-8"), targets, as_identifier_write=True) > 0

        sent = self.transfer.send_message(text, targets)
        if sent:
            self.events.log(f"Sent: {text}", RNS.LOG_VERBOSE, self)
        return sent

    def send_image(self, image_bytes: bytes, targets: Optional[Iterable[str]] = None,
                   blocking: bool = False) -> bool:
        if self._role == Role.IDLE:
            return self.events.failure(InvalidRole("central or peripheral", self._role), self)
        return self.transfer.send_image(image_bytes, targets, blocking=blocking)

    def _send_text(self, text: str, targets: Optional[Iterable[str]] = None) -> bool:
        payload = text.encode("utf-8")
        role = self._role
        if role == Role.CENTRAL:
            return self.gatt_client.send_to_peers(payload, targets) > 0
        if role == Role.PERIPHERAL:
            if targets is not None:
                RNS.log(f"{self} Target filter ignored in peripheral role", RNS.LOG_DEBUG)
            return self.gatt_server.send_to_clients(payload)
        return False

    def _show(self, text: str):
        try:
            self.notifier.show(text)
        except Exception as e:
            RNS.log(f"{self} Error updating notification: {e}", RNS.LOG_WARNING)

    # --- State queries ---

    @property
    def scanning(self) -> bool:
        return self.scanner.scanning

    @property
    def advertising(self) -> bool:
        return self.advertiser.advertising

    @property
    def discovered_peers(self) -> List[DiscoveredPeer]:
        return self.scanner.peers

    @property
    def connected_peers(self) -> List[ConnectedPeer]:
        return self.gatt_client.peers

    @property
    def connected_clients(self) -> List[ConnectedClient]:
        return self.gatt_server.clients

    @property
    def recent_log(self) -> List[str]:
        return self.events.recent_log

    def __str__(self):
        return f"BLEInterface[{self.name}]"
