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
BLEGATTClient - central-side GATT engine

Connection flow per peripheral:

1. connect() issues the link request and inserts a placeholder
   ConnectedPeer so hosts can show it as "connecting"
2. connected -> service discovery is requested on the link
3. services discovered -> characteristic handles are cached, the notify
   characteristic is subscribed, and (when enabled) the local handshake
   MSISDN is written to the bidirectional characteristic
4. that write completing -> the bidirectional characteristic is read back;
   the value read is the peripheral's own MSISDN, not the one written

A disconnect (or a failed connect) removes the entry and closes its link.
"""

import threading
from typing import Dict, Iterable, List, Optional

import RNS

from BLEMessenger.BLECollaborators import CAPABILITY_CONNECT, StaticPermissions
from BLEMessenger.BLEErrors import (
    ConnectionFailure,
    DiscoveryFailure,
    InvalidRole,
    NotReady,
    PermissionDenied,
    ReadFailure,
    WriteFailure,
)
from BLEMessenger.BLEPeers import ConnectedPeer, DiscoveredPeer, PeerIdentity, PeerTable, Role
from BLEMessenger.BLEUUIDs import DEFAULT_PROFILE, PROPERTY_WRITE_NO_RESPONSE, ProtocolProfile
from BLEMessenger.bluetooth_driver import (
    GATT_FAILURE,
    GATT_SUCCESS,
    STATE_CONNECTED,
    STATE_DISCONNECTED,
    STATE_NAMES,
    WRITE_TYPE_DEFAULT,
    WRITE_TYPE_NO_RESPONSE,
    BLEDriverInterface,
    GattClientEventReceiver,
    GattService,
)


class BLEGATTClient(GattClientEventReceiver):
    """
    GATT client engine for the central role.

    connected_peers is keyed by address. Event handlers run on the driver
    thread; host sends run on the caller's thread. Both only touch peers
    through the PeerTable.
    """

    DEFAULT_HANDSHAKE_MSISDN = "01012345678"

    def __init__(self, driver: BLEDriverInterface, events, profile: ProtocolProfile = DEFAULT_PROFILE,
                 permissions=None, inbound=None, role_active=None,
                 handshake_msisdn: str = DEFAULT_HANDSHAKE_MSISDN, handshake_on_connect: bool = True,
                 name: str = "BLEMessenger"):
        """
        Args:
            inbound: Receiver of notification text, anything with handle_inbound(text, sender)
            role_active: Callable returning True while the central role is active
            handshake_msisdn: Written to the bidirectional characteristic after discovery
            handshake_on_connect: Perform the write/read-back handshake after discovery
        """
        self.driver = driver
        self.events = events
        self.profile = profile
        self.permissions = permissions or StaticPermissions()
        self.inbound = inbound
        self.role_active = role_active or (lambda: True)
        self.handshake_msisdn = handshake_msisdn
        self.handshake_on_connect = handshake_on_connect
        self.name = name

        self.connected_peers: PeerTable[ConnectedPeer] = PeerTable("connected")
        self._connect_lock = threading.Lock()

    @property
    def peers(self) -> List[ConnectedPeer]:
        return self.connected_peers.snapshot()

    def _emit_peers(self):
        self.events.emit("on_connected_peers_updated", self.connected_peers.snapshot())

    # --- Connection management ---

    def connect(self, peer) -> bool:
        """
        Connect to a discovered peer (DiscoveredPeer or PeerIdentity).

        Refused when the central role is inactive, the connect permission is
        missing, or a peer with the same identity is already tracked.
        """
        identity = peer.identity if isinstance(peer, DiscoveredPeer) else peer

        if not self.role_active():
            return self.events.failure(InvalidRole(Role.CENTRAL, "inactive"), self)

        if not self.permissions.has_permission(CAPABILITY_CONNECT):
            return self.events.failure(PermissionDenied(CAPABILITY_CONNECT, "client"), self)

        with self._connect_lock:
            existing = self.connected_peers.find(lambda p: p.identity.matches(identity))
            if existing is not None:
                self.events.log(f"Already connected to {identity}", RNS.LOG_DEBUG, self)
                return False

            try:
                link = self.driver.connect_gatt(identity.address, self)
            except Exception as e:
                RNS.log(f"{self} Error connecting to {identity.address}: {e}", RNS.LOG_ERROR)
                link = None

            if link is None:
                return self.events.failure(ConnectionFailure(GATT_FAILURE, identity.address), self)

            placeholder = ConnectedPeer(identity=identity, link=link)
            if isinstance(peer, DiscoveredPeer):
                placeholder.msisdn = peer.msisdn
            self.connected_peers.put(identity.address, placeholder)

        self.events.log(f"Connecting to {identity}", RNS.LOG_INFO, self)
        self._emit_peers()
        return True

    def _release(self, entry: ConnectedPeer, disconnect: bool = False):
        """Close the link owned by entry. The handle is dead afterwards."""
        link = entry.link
        if link is None or link.closed:
            return
        try:
            if disconnect:
                self.driver.disconnect(link)
            self.driver.close(link)
        except Exception as e:
            RNS.log(f"{self} Error releasing link to {entry.address}: {e}", RNS.LOG_WARNING)

    def disconnect_all(self):
        """Disconnect and release every link, then emit the empty list."""
        entries = self.connected_peers.pop_all()
        for entry in entries:
            self._release(entry, disconnect=True)
        if entries:
            self.events.log(f"Disconnected {len(entries)} peer(s)", RNS.LOG_INFO, self)
        self.events.emit("on_connected_peers_updated", [])

    # --- Link events ---

    def on_connection_state_change(self, address: str, status: int, new_state: int):
        state_name = STATE_NAMES.get(new_state, str(new_state))
        RNS.log(f"{self} Connection state for {address}: {state_name} (status {status})", RNS.LOG_DEBUG)

        if new_state == STATE_CONNECTED and status == GATT_SUCCESS:
            def mark_connected(p):
                p.connected = True

            entry = self.connected_peers.update(address, mark_connected)
            if entry is None:
                # Torn down while the connect was in flight
                RNS.log(f"{self} Ignoring connection to untracked peer {address}", RNS.LOG_DEBUG)
                return

            self.events.log(f"Connected to {entry.display_name}", RNS.LOG_INFO, self)
            self._emit_peers()

            try:
                requested = self.driver.discover_services(entry.link)
            except Exception as e:
                RNS.log(f"{self} Error requesting service discovery on {address}: {e}", RNS.LOG_ERROR)
                requested = False

            if not requested:
                self._drop(address)
                self.events.failure(DiscoveryFailure(GATT_FAILURE, address), self)

        elif new_state == STATE_CONNECTED or new_state == STATE_DISCONNECTED:
            entry = self._drop(address)
            if status != GATT_SUCCESS:
                self.events.failure(ConnectionFailure(status, address), self)
            elif entry is not None:
                self.events.log(f"Disconnected from {entry.display_name}", RNS.LOG_INFO, self)

    def _drop(self, address: str) -> Optional[ConnectedPeer]:
        entry = self.connected_peers.remove(address)
        if entry is not None:
            self._release(entry)
            self._emit_peers()
        return entry

    def on_services_discovered(self, address: str, status: int, services: Dict[str, GattService]):
        if status != GATT_SUCCESS:
            self._drop(address)
            self.events.failure(DiscoveryFailure(status, address), self)
            return

        service = (services or {}).get(self.profile.service_uuid)
        if service is None:
            self.events.log(f"Service {self.profile.service_uuid} not found on {address}", RNS.LOG_WARNING, self)
            return

        def cache_handles(p):
            for role in ("bidirectional", "write", "read", "notify"):
                uuid = self.profile.uuid_for(role)
                setattr(p, role, service.get_characteristic(uuid) if uuid else None)

        entry = self.connected_peers.update(address, cache_handles)
        if entry is None:
            return

        RNS.log(f"{self} Cached characteristics for {address}: "
                f"bidirectional={entry.bidirectional is not None}, write={entry.write is not None}, "
                f"read={entry.read is not None}, notify={entry.notify is not None}", RNS.LOG_DEBUG)
        self._emit_peers()

        if entry.notify is not None:
            try:
                if not self.driver.set_characteristic_notification(entry.link, entry.notify.uuid, True):
                    RNS.log(f"{self} Could not subscribe to notifications on {address}", RNS.LOG_WARNING)
            except Exception as e:
                RNS.log(f"{self} Error subscribing to notifications on {address}: {e}", RNS.LOG_WARNING)

        if self.handshake_on_connect and entry.bidirectional is not None and self.handshake_msisdn:
            self._write(entry, self.handshake_msisdn.encode("utf-8"), as_identifier_write=True)

    def on_characteristic_write(self, address: str, char_uuid: str, status: int):
        role = self.profile.characteristic_role(char_uuid)
        entry = self.connected_peers.get(address)

        if status != GATT_SUCCESS:
            self.events.failure(WriteFailure(status, address, char_uuid), self)
            return

        if entry is None:
            return

        if role == "bidirectional":
            # Read back: the peripheral answers with its own MSISDN
            try:
                if not self.driver.read_characteristic(entry.link, char_uuid):
                    self.events.failure(ReadFailure(GATT_FAILURE, address, char_uuid), self)
            except Exception as e:
                RNS.log(f"{self} Error reading {char_uuid} from {address}: {e}", RNS.LOG_ERROR)
                self.events.failure(ReadFailure(GATT_FAILURE, address, char_uuid), self)
        elif role == "write":
            RNS.log(f"{self} Message delivered to {entry.display_name}", RNS.LOG_DEBUG)

    def on_characteristic_read(self, address: str, char_uuid: str, value: bytes, status: int):
        if status != GATT_SUCCESS:
            self.events.failure(ReadFailure(status, address, char_uuid), self)
            return

        try:
            text = bytes(value or b"").decode("utf-8")
        except UnicodeDecodeError:
            self.events.log(f"Dropped non-UTF-8 read value from {address}", RNS.LOG_WARNING, self)
            return

        role = self.profile.characteristic_role(char_uuid)
        if role == "bidirectional":
            def set_msisdn(p):
                p.msisdn = text

            if self.connected_peers.update(address, set_msisdn) is not None:
                self.events.log(f"MSISDN of {address}: {text}", RNS.LOG_INFO, self)
                self._emit_peers()
        else:
            self.events.log(f"Read from {address}: {text}", RNS.LOG_INFO, self)

    def on_characteristic_changed(self, address: str, char_uuid: str, value: bytes):
        try:
            text = bytes(value or b"").decode("utf-8")
        except UnicodeDecodeError:
            self.events.log(f"Dropped non-UTF-8 notification from {address}", RNS.LOG_WARNING, self)
            return

        entry = self.connected_peers.get(address)
        sender = entry.display_name if entry is not None else address
        if self.inbound is None:
            RNS.log(f"{self} No inbound handler, dropping notification from {sender}", RNS.LOG_WARNING)
            return
        try:
            self.inbound.handle_inbound(text, sender)
        except Exception as e:
            RNS.log(f"{self} Error handling notification from {sender}: {e}", RNS.LOG_ERROR)

    # --- Outbound ---

    def _write(self, entry: ConnectedPeer, payload: bytes, as_identifier_write: bool = False) -> bool:
        characteristic = entry.bidirectional if as_identifier_write else entry.write
        if characteristic is None:
            kind = "bidirectional" if as_identifier_write else "write"
            self.events.failure(NotReady(f"{kind} characteristic not available on {entry.address}", "client"), self)
            return False

        if characteristic.properties & PROPERTY_WRITE_NO_RESPONSE and not as_identifier_write:
            write_type = WRITE_TYPE_NO_RESPONSE
        else:
            write_type = WRITE_TYPE_DEFAULT

        try:
            issued = self.driver.write_characteristic(entry.link, characteristic.uuid, payload, write_type)
        except Exception as e:
            RNS.log(f"{self} Error writing to {entry.address}: {e}", RNS.LOG_ERROR)
            issued = False

        if not issued:
            self.events.failure(WriteFailure(GATT_FAILURE, entry.address, characteristic.uuid), self)
        return issued

    def send_to_peers(self, payload: bytes, targets: Optional[Iterable[str]] = None,
                      as_identifier_write: bool = False) -> int:
        """
        Write payload to every connected peer, optionally filtered.

        Args:
            payload: Bytes to write
            targets: MSISDNs to deliver to; None means every peer
            as_identifier_write: Use the bidirectional characteristic

        Returns:
            Number of writes issued
        """
        payload = bytes(payload)
        peers = self.connected_peers.snapshot()
        if targets is not None:
            targets = set(targets)
            peers = [p for p in peers if p.msisdn in targets]

        if not peers:
            self.events.failure(NotReady("no connected peers to send to", "client"), self)
            return 0

        issued = 0
        for entry in peers:
            if self._write(entry, payload, as_identifier_write):
                issued += 1

        RNS.log(f"{self} Wrote {len(payload)} bytes to {issued}/{len(peers)} peer(s)", RNS.LOG_DEBUG)
        return issued

    def __str__(self):
        return f"BLEGATTClient[{self.name}]"
