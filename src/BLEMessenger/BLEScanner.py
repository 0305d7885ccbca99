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
BLEScanner - central-side discovery

Scans with a service UUID filter and keeps a de-duplicated set of
discovered peers for the current scan session. Peers are keyed by the
MSISDN carried in their manufacturer data when present, otherwise by
address, so a peer that rotates its address is still listed once.
"""

import threading
from typing import Callable, List, Optional

import RNS

from BLEMessenger.BLECollaborators import CAPABILITY_SCAN, StaticPermissions
from BLEMessenger.BLEErrors import (
    AdapterUnavailable,
    AlreadyActive,
    PermissionDenied,
    ResourceUnavailable,
    StartFailure,
)
from BLEMessenger.BLEPeers import DiscoveredPeer, PeerIdentity, PeerTable
from BLEMessenger.BLEUUIDs import DEFAULT_PROFILE, ProtocolProfile
from BLEMessenger.bluetooth_driver import BLEDevice, BLEDriverInterface, ScanEventReceiver


class BLEScanner(ScanEventReceiver):

    UNKNOWN_NAME = "Unknown"

    def __init__(self, driver: BLEDriverInterface, events, profile: ProtocolProfile = DEFAULT_PROFILE,
                 permissions=None, scan_timeout: Optional[float] = None, name: str = "BLEMessenger"):
        """
        Args:
            scan_timeout: Default seconds before a scan stops itself, None for no limit
        """
        self.driver = driver
        self.events = events
        self.profile = profile
        self.permissions = permissions or StaticPermissions()
        self.scan_timeout = scan_timeout
        self.name = name

        self.discovered_peers: PeerTable[DiscoveredPeer] = PeerTable("discovered")

        # Called with each newly discovered peer (auto-connect policy)
        self.on_new_peer: Optional[Callable[[DiscoveredPeer], None]] = None

        self._lock = threading.Lock()
        self._scanning = False
        self._stop_timer: Optional[threading.Timer] = None

    @property
    def scanning(self) -> bool:
        return self._scanning

    @property
    def peers(self) -> List[DiscoveredPeer]:
        return self.discovered_peers.snapshot()

    def start_scan(self, timeout: Optional[float] = None) -> bool:
        """
        Start a new scan session. Clears previously discovered peers.

        Args:
            timeout: Seconds until auto-stop; falls back to scan_timeout
        """
        with self._lock:
            if self._scanning:
                return self.events.failure(AlreadyActive("scanner"), self)

            if not self.permissions.has_permission(CAPABILITY_SCAN):
                return self.events.failure(PermissionDenied(CAPABILITY_SCAN, "scanner"), self)

            if not self.driver.is_enabled():
                return self.events.failure(AdapterUnavailable("scanner"), self)

            self.discovered_peers.clear()
            self._scanning = True

        self.events.emit("on_discovered_peers_updated", [])

        try:
            issued = self.driver.start_scan(self.profile.service_uuid, self)
        except Exception as e:
            RNS.log(f"{self} Error starting scan: {e}", RNS.LOG_ERROR)
            issued = False

        if not issued:
            with self._lock:
                self._scanning = False
            return self.events.failure(ResourceUnavailable("scanner"), self)

        timeout = timeout if timeout is not None else self.scan_timeout
        if timeout:
            self._start_stop_timer(timeout)

        self.events.log(f"Scanning for service {self.profile.service_uuid}"
                        + (f" ({timeout:.0f}s)" if timeout else ""), RNS.LOG_INFO, self)
        self.events.emit("on_scanning_state_changed", True)
        return True

    def _start_stop_timer(self, timeout: float):
        self._cancel_stop_timer()
        self._stop_timer = threading.Timer(timeout, self._scan_timeout_expired)
        self._stop_timer.daemon = True
        self._stop_timer.start()

    def _cancel_stop_timer(self):
        if self._stop_timer:
            self._stop_timer.cancel()
            self._stop_timer = None

    def _scan_timeout_expired(self):
        RNS.log(f"{self} Scan timeout reached", RNS.LOG_DEBUG)
        self.stop_scan()

    def stop_scan(self):
        """Stop scanning and cancel the auto-stop timer. No-op when inactive."""
        with self._lock:
            if not self._scanning:
                return
            self._scanning = False
            self._cancel_stop_timer()

        try:
            self.driver.stop_scan()
        except Exception as e:
            RNS.log(f"{self} Error stopping scan: {e}", RNS.LOG_WARNING)

        self.events.log(f"Scan stopped ({len(self.discovered_peers)} peer(s) found)", RNS.LOG_INFO, self)
        self.events.emit("on_scanning_state_changed", False)

    def clear(self):
        """Forget every discovered peer."""
        self.discovered_peers.clear()
        self.events.emit("on_discovered_peers_updated", [])

    def extract_msisdn(self, device: BLEDevice) -> Optional[str]:
        payload = (device.manufacturer_data or {}).get(self.profile.manufacturer_id)
        if not payload:
            return None
        try:
            return bytes(payload).decode("utf-8")
        except UnicodeDecodeError:
            RNS.log(f"{self} Ignoring non-UTF-8 manufacturer data from {device.address}", RNS.LOG_DEBUG)
            return None

    def _record(self, device: BLEDevice) -> Optional[DiscoveredPeer]:
        """
        Store the latest sighting of this device under its key.

        A repeat sighting replaces the stored record, so a peer keyed by
        MSISDN follows its current address. Returns the peer only when the
        key is new.
        """
        name = device.name or BLEScanner.UNKNOWN_NAME
        msisdn = self.extract_msisdn(device)
        peer = DiscoveredPeer(
            identity=PeerIdentity(device.address, device.name, msisdn),
            advertised_name=name,
            msisdn=msisdn,
            device=device,
            rssi=device.rssi,
        )
        previous = self.discovered_peers.get(peer.key)
        if previous is not None:
            peer.first_seen = previous.first_seen
        if self.discovered_peers.put(peer.key, peer):
            RNS.log(f"{self} Discovered {name} ({device.address}) RSSI={device.rssi}"
                    + (f" MSISDN={peer.msisdn}" if peer.msisdn else ""), RNS.LOG_VERBOSE)
            return peer
        return None

    def on_scan_result(self, device: BLEDevice):
        if not self._scanning:
            return
        peer = self._record(device)
        if peer is not None:
            self.events.emit("on_discovered_peers_updated", self.discovered_peers.snapshot())
            self._notify_new_peer(peer)

    def on_batch_scan_results(self, devices: List[BLEDevice]):
        if not self._scanning:
            return
        new_peers = [peer for peer in (self._record(device) for device in devices) if peer is not None]
        if new_peers:
            self.events.emit("on_discovered_peers_updated", self.discovered_peers.snapshot())
            for peer in new_peers:
                self._notify_new_peer(peer)

    def _notify_new_peer(self, peer: DiscoveredPeer):
        if self.on_new_peer:
            try:
                self.on_new_peer(peer)
            except Exception as e:
                RNS.log(f"{self} Error in new peer handler for {peer.key}: {e}", RNS.LOG_ERROR)

    def on_scan_failed(self, error_code: int):
        with self._lock:
            was_scanning = self._scanning
            self._scanning = False
            self._cancel_stop_timer()

        self.events.failure(StartFailure("scanner", error_code), self)
        if was_scanning:
            self.events.emit("on_scanning_state_changed", False)

    def __str__(self):
        return f"BLEScanner[{self.name}]"
