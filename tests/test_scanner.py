"""
Tests for the scanner engine: session lifecycle, de-duplication and
failure reporting.
"""

import time

import pytest

from BLEMessenger.BLECollaborators import CAPABILITY_SCAN, StaticPermissions
from BLEMessenger.BLEEvents import BLEEventDispatcher
from BLEMessenger.BLEScanner import BLEScanner
from BLEMessenger.BLEUUIDs import DEFAULT_PROFILE, LEGACY_PROFILE, MANUFACTURER_ID
from BLEMessenger.bluetooth_driver import (
    SCAN_FAILED_ALREADY_STARTED,
    SCAN_FAILED_APPLICATION_REGISTRATION_FAILED,
    BLEDevice,
)
from conftest import RecordingListener
from mock_ble_driver import MockBLEDriver


@pytest.fixture
def scanner_setup():
    driver = MockBLEDriver()
    driver.start()
    events = BLEEventDispatcher("test")
    listener = RecordingListener()
    events.add_listener(listener)
    scanner = BLEScanner(driver, events, DEFAULT_PROFILE)
    return scanner, driver, listener


class TestScanLifecycle:
    """Test starting and stopping scan sessions."""

    def test_start_scan_filters_by_service(self, scanner_setup):
        scanner, driver, listener = scanner_setup

        assert scanner.start_scan()
        assert scanner.scanning
        assert driver.scan_requests == [DEFAULT_PROFILE.service_uuid]
        assert listener.scanning == [True]

    def test_legacy_profile_filter(self):
        driver = MockBLEDriver()
        scanner = BLEScanner(driver, BLEEventDispatcher("test"), LEGACY_PROFILE)

        scanner.start_scan()
        assert driver.scan_requests == [LEGACY_PROFILE.service_uuid]

    def test_start_scan_clears_previous_peers(self, scanner_setup):
        scanner, driver, listener = scanner_setup
        scanner.start_scan()
        driver.simulate_device_discovered("AA:BB:CC:DD:EE:01", "Peer-1")
        driver.flush()
        scanner.stop_scan()

        scanner.start_scan()

        assert scanner.peers == []
        assert listener.discovered[-1] == []

    def test_double_start_rejected(self, scanner_setup):
        scanner, driver, listener = scanner_setup
        scanner.start_scan()

        assert not scanner.start_scan()
        assert listener.failure_types() == ["AlreadyActive"]
        assert len(driver.scan_requests) == 1

    def test_stop_scan(self, scanner_setup):
        scanner, driver, listener = scanner_setup
        scanner.start_scan()
        scanner.stop_scan()

        assert not scanner.scanning
        assert listener.scanning == [True, False]

    def test_stop_when_idle_is_noop(self, scanner_setup):
        scanner, driver, listener = scanner_setup
        scanner.stop_scan()
        assert listener.scanning == []

    def test_scan_timeout_stops_scan(self, scanner_setup):
        scanner, driver, listener = scanner_setup

        scanner.start_scan(timeout=0.05)
        deadline = time.time() + 2.0
        while scanner.scanning and time.time() < deadline:
            time.sleep(0.01)

        assert not scanner.scanning
        assert listener.scanning == [True, False]

    def test_permission_denied(self):
        permissions = StaticPermissions()
        permissions.revoke(CAPABILITY_SCAN)
        driver = MockBLEDriver()
        events = BLEEventDispatcher("test")
        listener = RecordingListener()
        events.add_listener(listener)
        scanner = BLEScanner(driver, events, permissions=permissions)

        assert not scanner.start_scan()
        assert listener.failure_types() == ["PermissionDenied"]
        assert driver.scan_requests == []

    def test_adapter_disabled(self, scanner_setup):
        scanner, driver, listener = scanner_setup
        driver.enabled = False

        assert not scanner.start_scan()
        assert listener.failure_types() == ["AdapterUnavailable"]

    def test_no_scanner_available(self, scanner_setup):
        scanner, driver, listener = scanner_setup
        driver.fail_start_scan = True

        assert not scanner.start_scan()
        assert not scanner.scanning
        assert listener.failure_types() == ["ResourceUnavailable"]

    def test_scan_failed_callback(self, scanner_setup):
        scanner, driver, listener = scanner_setup
        driver.scan_error_code = SCAN_FAILED_APPLICATION_REGISTRATION_FAILED

        assert scanner.start_scan()
        driver.flush()

        assert not scanner.scanning
        failure = listener.failures[0]
        assert type(failure).__name__ == "StartFailure"
        assert failure.reason == "registration-failed"
        assert listener.scanning == [True, False]

    def test_unknown_failure_code(self, scanner_setup):
        scanner, driver, listener = scanner_setup
        scanner.on_scan_failed(99)
        assert listener.failures[0].reason == "unknown"

    def test_already_started_code(self, scanner_setup):
        scanner, driver, listener = scanner_setup
        scanner.on_scan_failed(SCAN_FAILED_ALREADY_STARTED)
        assert listener.failures[0].reason == "already-started"


class TestDiscovery:
    """Test result handling and de-duplication."""

    def test_result_recorded(self, scanner_setup):
        scanner, driver, listener = scanner_setup
        scanner.start_scan()

        driver.simulate_device_discovered("AA:BB:CC:DD:EE:01", "Peer-1", rssi=-42)
        driver.flush()

        peer = scanner.peers[0]
        assert peer.identity.address == "AA:BB:CC:DD:EE:01"
        assert peer.advertised_name == "Peer-1"
        assert peer.rssi == -42
        assert listener.discovered[-1] == [peer]

    def test_nameless_device_is_unknown(self, scanner_setup):
        scanner, driver, _ = scanner_setup
        scanner.start_scan()

        driver.simulate_device_discovered("AA:BB:CC:DD:EE:01")
        driver.flush()

        assert scanner.peers[0].advertised_name == "Unknown"

    def test_repeated_advertisements_deduplicated(self, scanner_setup):
        scanner, driver, listener = scanner_setup
        scanner.start_scan()

        for _ in range(3):
            driver.simulate_device_discovered("AA:BB:CC:DD:EE:01", "Peer-1")
        driver.flush()

        assert len(scanner.peers) == 1
        # Initial clear plus one update
        assert len(listener.discovered) == 2

    def test_msisdn_extracted_and_used_as_key(self, scanner_setup):
        scanner, driver, _ = scanner_setup
        scanner.start_scan()

        msisdn = {MANUFACTURER_ID: b"01000000000"}
        driver.simulate_device_discovered("AA:BB:CC:DD:EE:01", "Peer", manufacturer_data=msisdn)
        # Same MSISDN from a rotated address is the same peer
        driver.simulate_device_discovered("AA:BB:CC:DD:EE:02", "Peer", manufacturer_data=msisdn)
        driver.flush()

        assert len(scanner.peers) == 1
        assert scanner.peers[0].msisdn == "01000000000"
        assert scanner.peers[0].key == "01000000000"

    def test_repeat_sighting_replaces_record(self, scanner_setup):
        scanner, driver, listener = scanner_setup
        new_peers = []
        scanner.on_new_peer = new_peers.append
        scanner.start_scan()

        msisdn = {MANUFACTURER_ID: b"01000000001"}
        driver.simulate_device_discovered("AA:BB:CC:DD:EE:01", "Peer", rssi=-80, manufacturer_data=msisdn)
        driver.simulate_device_discovered("AA:BB:CC:DD:EE:02", "Peer", rssi=-50, manufacturer_data=msisdn)
        driver.flush()

        peer = scanner.discovered_peers.get("01000000001")
        assert peer.identity.address == "AA:BB:CC:DD:EE:02"
        assert peer.device.address == "AA:BB:CC:DD:EE:02"
        assert peer.rssi == -50
        assert peer.identity.msisdn == "01000000001"
        # Only the first sighting is new
        assert [p.identity.address for p in new_peers] == ["AA:BB:CC:DD:EE:01"]
        assert len(listener.discovered) == 2

    def test_foreign_manufacturer_data_ignored(self, scanner_setup):
        scanner, driver, _ = scanner_setup
        scanner.start_scan()

        driver.simulate_device_discovered("AA:BB:CC:DD:EE:01", "Peer", manufacturer_data={0x004C: b"\x02\x15"})
        driver.flush()

        assert scanner.peers[0].msisdn is None

    def test_results_after_stop_ignored(self, scanner_setup):
        scanner, driver, _ = scanner_setup
        scanner.start_scan()
        scanner.stop_scan()

        scanner.on_scan_result(BLEDevice("AA:BB:CC:DD:EE:01", "Late"))
        assert scanner.peers == []

    def test_batch_results(self, scanner_setup):
        scanner, driver, listener = scanner_setup
        scanner.start_scan()
        new_peers = []
        scanner.on_new_peer = new_peers.append

        scanner.on_batch_scan_results([
            BLEDevice("AA:BB:CC:DD:EE:01", "Peer-1"),
            BLEDevice("AA:BB:CC:DD:EE:02", "Peer-2"),
            BLEDevice("AA:BB:CC:DD:EE:01", "Peer-1"),
        ])

        assert [p.advertised_name for p in scanner.peers] == ["Peer-1", "Peer-2"]
        assert len(new_peers) == 2
        assert len(listener.discovered) == 2

    def test_new_peer_hook_errors_contained(self, scanner_setup):
        scanner, driver, _ = scanner_setup
        scanner.start_scan()

        def broken(peer):
            raise RuntimeError("host bug")

        scanner.on_new_peer = broken
        scanner.on_scan_result(BLEDevice("AA:BB:CC:DD:EE:01", "Peer-1"))

        assert len(scanner.peers) == 1

    def test_clear(self, scanner_setup):
        scanner, driver, listener = scanner_setup
        scanner.start_scan()
        scanner.on_scan_result(BLEDevice("AA:BB:CC:DD:EE:01", "Peer-1"))

        scanner.clear()
        assert scanner.peers == []
        assert listener.discovered[-1] == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
