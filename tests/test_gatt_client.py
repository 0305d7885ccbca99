"""
Tests for the central-side GATT client engine.

The peripheral side is a real BLEGATTServer on a linked MockBLEDriver, so
the connect / discover / handshake sequence runs end to end.
"""

import pytest

from BLEMessenger.BLECollaborators import CAPABILITY_CONNECT, StaticPermissions
from BLEMessenger.BLEEvents import BLEEventDispatcher
from BLEMessenger.BLEGATTClient import BLEGATTClient
from BLEMessenger.BLEGATTServer import BLEGATTServer
from BLEMessenger.BLEPeers import DiscoveredPeer, PeerIdentity
from BLEMessenger.BLEUUIDs import (
    BIDIRECTIONAL_CHAR_UUID,
    DEFAULT_PROFILE,
    LEGACY_PROFILE,
    LEGACY_WRITE_CHAR_UUID,
    NOTIFY_CHAR_UUID,
    WRITE_CHAR_UUID,
)
from BLEMessenger.bluetooth_driver import (
    GATT_CONNECTION_TIMEOUT,
    GATT_FAILURE,
    WRITE_TYPE_DEFAULT,
    WRITE_TYPE_NO_RESPONSE,
)
from conftest import RecordingListener
from mock_ble_driver import MockBLEDriver


PERIPHERAL_ADDRESS = "AA:BB:CC:DD:EE:FF"


class RecordingInbound:
    def __init__(self):
        self.received = []

    def handle_inbound(self, text, sender):
        self.received.append((text, sender))


class ClientHarness:
    """A client engine connected through mock drivers to a server engine."""

    def __init__(self, profile=DEFAULT_PROFILE, permissions=None, role_active=None, **client_kwargs):
        self.central = MockBLEDriver("11:22:33:44:55:66", "Central-1")
        self.peripheral = MockBLEDriver(PERIPHERAL_ADDRESS, "Peripheral-1")
        MockBLEDriver.link_drivers(self.central, self.peripheral)

        self.server_inbound = RecordingInbound()
        self.server = BLEGATTServer(self.peripheral, BLEEventDispatcher("server"), profile,
                                    inbound=self.server_inbound)
        assert self.server.provision()

        self.events = BLEEventDispatcher("client")
        self.listener = RecordingListener()
        self.events.add_listener(self.listener)
        self.inbound = RecordingInbound()
        self.client = BLEGATTClient(self.central, self.events, profile, permissions,
                                    inbound=self.inbound, role_active=role_active, **client_kwargs)

    def flush(self):
        MockBLEDriver.flush_all(self.central, self.peripheral)

    def connect(self, identity=None):
        result = self.client.connect(identity or PeerIdentity(PERIPHERAL_ADDRESS, "Peripheral-1"))
        self.flush()
        return result


@pytest.fixture
def harness():
    return ClientHarness()


class TestConnect:
    """Test connection setup."""

    def test_placeholder_inserted_before_connect_completes(self, harness):
        assert harness.client.connect(PeerIdentity(PERIPHERAL_ADDRESS, "Peripheral-1"))

        peers = harness.client.peers
        assert len(peers) == 1
        assert not peers[0].connected
        assert harness.listener.peers[0][0].address == PERIPHERAL_ADDRESS

    def test_connect_discovers_and_caches_handles(self, harness):
        assert harness.connect()

        peer = harness.client.peers[0]
        assert peer.connected
        assert peer.ready
        assert peer.bidirectional.uuid == BIDIRECTIONAL_CHAR_UUID
        assert peer.write.uuid == WRITE_CHAR_UUID
        assert peer.notify.uuid == NOTIFY_CHAR_UUID

    def test_handshake_exchanges_msisdns(self, harness):
        harness.connect()

        # Written: our handshake MSISDN; read back: the peripheral's own
        assert harness.central.written[0] == (PERIPHERAL_ADDRESS, BIDIRECTIONAL_CHAR_UUID, b"01012345678",
                                              WRITE_TYPE_DEFAULT)
        assert harness.central.reads == [(PERIPHERAL_ADDRESS, BIDIRECTIONAL_CHAR_UUID)]
        assert harness.client.peers[0].msisdn == "01000000000"
        assert harness.server.clients[0].msisdn == "01012345678"

    def test_handshake_disabled(self):
        harness = ClientHarness(handshake_on_connect=False)
        harness.connect()

        assert harness.central.written == []
        assert harness.client.peers[0].msisdn is None

    def test_subscribes_to_notifications(self, harness):
        harness.connect()

        assert NOTIFY_CHAR_UUID in harness.central._subscriptions[PERIPHERAL_ADDRESS]
        assert harness.server.clients[0].subscription == "notifications"

    def test_msisdn_copied_from_discovered_peer(self):
        harness = ClientHarness(handshake_on_connect=False)
        peer = DiscoveredPeer(identity=PeerIdentity(PERIPHERAL_ADDRESS, "Peripheral-1"),
                              advertised_name="Peripheral-1", msisdn="01000000001")

        assert harness.client.connect(peer)
        assert harness.client.peers[0].msisdn == "01000000001"

    def test_duplicate_connect_refused(self, harness):
        assert harness.client.connect(PeerIdentity(PERIPHERAL_ADDRESS, "Peripheral-1"))
        assert not harness.client.connect(PeerIdentity(PERIPHERAL_ADDRESS, "Peripheral-1"))
        assert len(harness.client.peers) == 1

    def test_same_name_new_address_is_same_peer(self, harness):
        harness.connect()
        assert not harness.client.connect(PeerIdentity("AA:BB:CC:DD:EE:01", "Peripheral-1"))

    def test_shared_name_with_different_msisdn_is_another_peer(self, harness):
        first = PeerIdentity("AA:BB:CC:DD:EE:01", "BLEMessenger", "01000000001")
        second = PeerIdentity("AA:BB:CC:DD:EE:02", "BLEMessenger", "01000000002")

        assert harness.client.connect(first)
        assert harness.client.connect(second)
        assert len(harness.client.peers) == 2

    def test_same_msisdn_new_address_is_same_peer(self, harness):
        assert harness.client.connect(PeerIdentity("AA:BB:CC:DD:EE:01", "BLEMessenger", "01000000001"))
        assert not harness.client.connect(PeerIdentity("AA:BB:CC:DD:EE:02", "BLEMessenger", "01000000001"))
        assert len(harness.client.peers) == 1

    def test_role_inactive(self):
        harness = ClientHarness(role_active=lambda: False)

        assert not harness.connect()
        assert harness.listener.failure_types() == ["InvalidRole"]
        assert harness.central.written == []

    def test_permission_denied(self):
        permissions = StaticPermissions()
        permissions.revoke(CAPABILITY_CONNECT)
        harness = ClientHarness(permissions=permissions)

        assert not harness.connect()
        assert harness.listener.failure_types() == ["PermissionDenied"]

    def test_connect_request_refused(self, harness):
        harness.central.fail_connect = True

        assert not harness.connect()
        assert harness.client.peers == []
        assert harness.listener.failure_types() == ["ConnectionFailure"]

    def test_connect_timeout_removes_entry(self, harness):
        harness.central.connect_status = GATT_CONNECTION_TIMEOUT

        assert harness.connect()
        assert harness.client.peers == []
        assert harness.listener.failures[0].status == GATT_CONNECTION_TIMEOUT
        assert harness.central.closed_links

    def test_unreachable_peer(self, harness):
        assert harness.client.connect(PeerIdentity("00:11:22:33:44:55"))
        harness.flush()

        assert harness.client.peers == []
        assert harness.listener.failure_types() == ["ConnectionFailure"]

    def test_discovery_failure_drops_peer(self, harness):
        harness.central.fail_discovery = True

        harness.connect()
        assert harness.client.peers == []
        assert harness.listener.failure_types() == ["DiscoveryFailure"]


class TestDisconnect:
    """Test link teardown."""

    def test_disconnect_all(self, harness):
        harness.connect()
        link = harness.client.peers[0].link

        harness.client.disconnect_all()
        harness.flush()

        assert harness.client.peers == []
        assert link.closed
        assert harness.listener.peers[-1] == []
        assert harness.server.clients == []

    def test_disconnect_all_when_empty_emits(self, harness):
        harness.client.disconnect_all()
        assert harness.listener.peers == [[]]

    def test_remote_disconnect(self, harness):
        harness.connect()

        harness.server.teardown()
        harness.flush()

        assert harness.client.peers == []
        assert harness.listener.failures == []

    def test_remote_disconnect_with_error_status(self, harness):
        harness.connect()

        harness.central.simulate_peer_lost(PERIPHERAL_ADDRESS, GATT_FAILURE)
        harness.flush()

        assert harness.client.peers == []
        assert harness.listener.failure_types() == ["ConnectionFailure"]

    def test_events_for_closed_link_ignored(self, harness):
        harness.connect()
        harness.client.disconnect_all()

        # A late notification on the released link is never delivered
        harness.central.simulate_notification(PERIPHERAL_ADDRESS, NOTIFY_CHAR_UUID, b"late")
        harness.flush()
        assert harness.inbound.received == []


class TestDataTransfer:
    """Test writes and notifications."""

    def test_message_written_without_response(self, harness):
        harness.connect()

        assert harness.client.send_to_peers(b"hello") == 1
        harness.flush()

        assert harness.central.written[-1] == (PERIPHERAL_ADDRESS, WRITE_CHAR_UUID, b"hello", WRITE_TYPE_NO_RESPONSE)
        assert harness.server_inbound.received == [("hello", "01012345678")]

    def test_identifier_write_uses_bidirectional(self, harness):
        harness.connect()

        harness.client.send_to_peers(b"01099999999", as_identifier_write=True)
        harness.flush()

        assert harness.server.clients[0].msisdn == "01099999999"
        assert harness.server_inbound.received == []

    def test_target_filter(self, harness):
        harness.connect()

        assert harness.client.send_to_peers(b"x", targets=["01000000000"]) == 1
        assert harness.client.send_to_peers(b"y", targets=["01555555555"]) == 0
        assert harness.listener.failure_types() == ["NotReady"]

    def test_send_without_peers(self, harness):
        assert harness.client.send_to_peers(b"x") == 0
        assert harness.listener.failure_types() == ["NotReady"]

    def test_send_before_discovery(self, harness):
        harness.client.connect(PeerIdentity(PERIPHERAL_ADDRESS, "Peripheral-1"))

        assert harness.client.send_to_peers(b"too early") == 0
        assert harness.listener.failure_types() == ["NotReady"]

    def test_notification_delivered_inbound(self, harness):
        harness.connect()

        harness.server.send_to_clients(b"from peripheral")
        harness.flush()

        assert harness.inbound.received == [("from peripheral", "Peripheral-1")]

    def test_non_utf8_notification_dropped(self, harness):
        harness.connect()

        harness.central.simulate_notification(PERIPHERAL_ADDRESS, NOTIFY_CHAR_UUID, b"\xff\xfe")
        harness.flush()

        assert harness.inbound.received == []

    def test_write_failure_status(self, harness):
        harness.connect()

        harness.client.on_characteristic_write(PERIPHERAL_ADDRESS, WRITE_CHAR_UUID, GATT_FAILURE)
        assert harness.listener.failure_types() == ["WriteFailure"]

    def test_read_failure_status(self, harness):
        harness.connect()

        harness.client.on_characteristic_read(PERIPHERAL_ADDRESS, BIDIRECTIONAL_CHAR_UUID, b"", GATT_FAILURE)
        assert harness.listener.failure_types() == ["ReadFailure"]
        assert harness.client.peers[0].msisdn == "01000000000"


class TestLegacyProfile:
    """Test the NUS-style profile without a bidirectional characteristic."""

    def test_no_handshake_and_message_delivery(self):
        harness = ClientHarness(profile=LEGACY_PROFILE)
        harness.connect()

        peer = harness.client.peers[0]
        assert peer.bidirectional is None
        assert peer.ready
        assert harness.central.reads == []

        harness.client.send_to_peers(b"legacy hello")
        harness.flush()

        assert harness.central.written[-1][1] == LEGACY_WRITE_CHAR_UUID
        assert harness.server_inbound.received == [("legacy hello", "Central-1")]

    def test_identifier_write_not_available(self):
        harness = ClientHarness(profile=LEGACY_PROFILE)
        harness.connect()

        assert harness.client.send_to_peers(b"x", as_identifier_write=True) == 0
        assert harness.listener.failure_types() == ["NotReady"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
