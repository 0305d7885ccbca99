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
Peer bookkeeping: roles, peer records and the lock-guarded peer table.

Scan results, link callbacks and host-initiated sends all arrive on
different threads. Every shared collection of peers is therefore a
PeerTable, which exposes only insert/put/remove/get/snapshot style
operations and never hands out its internal dict.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Generic, List, Optional, TypeVar

from BLEMessenger.bluetooth_driver import BLEDevice, GattCharacteristic, GattLink


class Role(Enum):
    IDLE = "idle"
    CENTRAL = "central"
    PERIPHERAL = "peripheral"

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class PeerIdentity:
    """
    Radio address plus optional declared name and advertised MSISDN.

    Addresses may be randomised by the remote platform. Two identities are
    the same peer when both carry an MSISDN and it matches; otherwise when
    both declare a name and it matches; otherwise when the addresses match.
    Devices often share a default name, so the MSISDN wins over the name.
    """
    address: str
    name: Optional[str] = None
    msisdn: Optional[str] = None

    def matches(self, other: "PeerIdentity") -> bool:
        if self.msisdn and other.msisdn:
            return self.msisdn == other.msisdn
        if self.name and other.name:
            return self.name == other.name
        return self.address == other.address

    def __str__(self):
        return f"{self.name} ({self.address})" if self.name else self.address


@dataclass
class DiscoveredPeer:
    identity: PeerIdentity
    advertised_name: str
    msisdn: Optional[str] = None
    device: Optional[BLEDevice] = None
    rssi: int = 0
    first_seen: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        """De-duplication key: the advertised MSISDN when present, else the address."""
        return self.msisdn or self.identity.address

    def __repr__(self):
        return f"DiscoveredPeer({self.identity.address}, {self.advertised_name}, msisdn={self.msisdn}, RSSI={self.rssi})"


@dataclass
class ConnectedPeer:
    """
    Central-side link to a peripheral.

    Created as a placeholder when the connect request is issued. The
    characteristic handles stay None until service discovery succeeds on
    this link.
    """
    identity: PeerIdentity
    link: Optional[GattLink] = None
    bidirectional: Optional[GattCharacteristic] = None
    write: Optional[GattCharacteristic] = None
    read: Optional[GattCharacteristic] = None
    notify: Optional[GattCharacteristic] = None
    msisdn: Optional[str] = None
    connected: bool = False
    created_at: float = field(default_factory=time.time)

    @property
    def address(self) -> str:
        return self.identity.address

    @property
    def ready(self) -> bool:
        return self.connected and (self.write is not None or self.bidirectional is not None)

    @property
    def display_name(self) -> str:
        return self.identity.name or self.msisdn or self.identity.address

    def __repr__(self):
        state = "connected" if self.connected else "connecting"
        return f"ConnectedPeer({self.identity}, {state}, msisdn={self.msisdn})"


@dataclass
class ConnectedClient:
    """Peripheral-side record of a central connected to our GATT server."""
    identity: PeerIdentity
    device: BLEDevice
    msisdn: Optional[str] = None
    subscription: Optional[str] = None
    connected_at: float = field(default_factory=time.time)

    @property
    def address(self) -> str:
        return self.identity.address

    @property
    def display_name(self) -> str:
        return self.msisdn or self.identity.name or self.identity.address

    def __repr__(self):
        return f"ConnectedClient({self.identity}, msisdn={self.msisdn})"


T = TypeVar("T")


class PeerTable(Generic[T]):
    """
    Mutex-guarded, insertion-ordered map of peers.

    All access goes through the methods below. snapshot() returns a copy,
    so callers can iterate and perform I/O without holding the lock.
    """

    def __init__(self, name: str = "peers"):
        self.name = name
        self._entries: "OrderedDict[str, T]" = OrderedDict()
        self._lock = threading.RLock()

    def insert(self, key: str, value: T) -> bool:
        """Insert if absent. Returns False when the key is already present."""
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = value
            return True

    def put(self, key: str, value: T) -> bool:
        """Insert or replace, keeping the key's position. Returns True when the key was new."""
        with self._lock:
            added = key not in self._entries
            self._entries[key] = value
            return added

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            return self._entries.get(key)

    def remove(self, key: str) -> Optional[T]:
        with self._lock:
            return self._entries.pop(key, None)

    def pop_all(self) -> List[T]:
        """Remove every entry and return them."""
        with self._lock:
            values = list(self._entries.values())
            self._entries.clear()
            return values

    def clear(self):
        with self._lock:
            self._entries.clear()

    def snapshot(self) -> List[T]:
        with self._lock:
            return list(self._entries.values())

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def find(self, predicate: Callable[[T], bool]) -> Optional[T]:
        """Return the first entry matching predicate, or None."""
        with self._lock:
            for value in self._entries.values():
                if predicate(value):
                    return value
            return None

    def update(self, key: str, mutator: Callable[[T], None]) -> Optional[T]:
        """
        Apply mutator to the entry under the table lock.

        Returns:
            The updated entry, or None if the key is absent
        """
        with self._lock:
            value = self._entries.get(key)
            if value is None:
                return None
            mutator(value)
            return value

    def __contains__(self, key) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __repr__(self):
        return f"PeerTable({self.name}, {len(self)} entries)"
