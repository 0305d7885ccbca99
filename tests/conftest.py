"""
pytest configuration for BLEMessenger tests.

This file is automatically loaded by pytest before test collection begins.
It sets up the Python path to allow imports from src/ and provides mock
drivers and interface builders shared by the test modules.
"""

import sys
import os

# Calculate paths relative to this file's location
tests_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(tests_dir)
src_dir = os.path.join(project_root, 'src')

# Add src/ and tests/ to path so BLEMessenger and mock_ble_driver import
for path in (src_dir, tests_dir):
    if path not in sys.path:
        sys.path.insert(0, path)

import pytest
import RNS

from mock_ble_driver import MockBLEDriver

# Keep test output readable; failures are asserted through listeners
RNS.loglevel = RNS.LOG_CRITICAL


# ============================================================================
# Recording collaborators
# ============================================================================

class RecordingListener:
    """BLEEventListener that records every event for assertions."""

    def __init__(self):
        self.events = []
        self.failures = []
        self.messages = []
        self.images = []
        self.clients = []
        self.peers = []
        self.discovered = []
        self.roles = []
        self.advertising = []
        self.scanning = []
        self.log_lines = []

    def on_role_changed(self, role):
        self.roles.append(role)

    def on_scanning_state_changed(self, scanning):
        self.scanning.append(scanning)

    def on_advertising_state_changed(self, advertising):
        self.advertising.append(advertising)

    def on_discovered_peers_updated(self, peers):
        self.discovered.append(list(peers))

    def on_connected_peers_updated(self, peers):
        self.peers.append(list(peers))

    def on_connected_clients_updated(self, clients):
        self.clients.append(list(clients))

    def on_log_message(self, message):
        self.log_lines.append(message)

    def on_message_received(self, text, sender):
        self.messages.append((text, sender))

    def on_image_received(self, image_bytes, sender, location):
        self.images.append((image_bytes, sender, location))

    def on_failure(self, failure):
        self.failures.append(failure)

    def failure_types(self):
        return [type(f).__name__ for f in self.failures]


class MemoryImageSink:
    """ImageSink keeping images in memory."""

    def __init__(self):
        self.saved = []

    def save(self, image_bytes, sender=None):
        self.saved.append((image_bytes, sender))
        return f"memory://{len(self.saved)}"


class RecordingNotifier:
    def __init__(self):
        self.lines = []

    def show(self, text):
        self.lines.append(text)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def image_sink():
    return MemoryImageSink()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def mock_driver():
    driver = MockBLEDriver("11:22:33:44:55:66", "Central-1")
    driver.start()
    return driver


@pytest.fixture
def linked_drivers():
    """A central-side and a peripheral-side driver on one simulated radio."""
    central = MockBLEDriver("11:22:33:44:55:66", "Central-1")
    peripheral = MockBLEDriver("AA:BB:CC:DD:EE:FF", "Peripheral-1")
    MockBLEDriver.link_drivers(central, peripheral)
    central.start()
    peripheral.start()
    return central, peripheral


@pytest.fixture
def sample_configuration():
    """Interface configuration with transfer delays removed."""
    return {
        'name': 'TestBLE',
        'device_name': 'Test-Node',
        'profile': 'dual',
        'local_msisdn': '01000000000',
        'handshake_msisdn': '01012345678',
        'auto_connect': False,
        'auto_advertise': False,
        'image_start_delay': 0,
        'image_chunk_delay': 0,
        'image_end_delay': 0,
    }


# ============================================================================
# Helper Functions
# ============================================================================

def create_interface(driver, config=None, listener=None, image_sink=None, notifier=None, **overrides):
    """
    Build a BLEInterface on a mock driver.

    Args:
        driver: MockBLEDriver (already linked if needed)
        config: Base configuration dict
        listener: Optional RecordingListener to register
        overrides: Configuration keys to override
    """
    from BLEMessenger.BLEInterface import BLEInterface

    configuration = {
        'name': driver.name,
        'device_name': driver.name,
        'image_start_delay': 0,
        'image_chunk_delay': 0,
        'image_end_delay': 0,
    }
    configuration.update(config or {})
    configuration.update(overrides)

    interface = BLEInterface(
        configuration,
        driver=driver,
        image_sink=image_sink or MemoryImageSink(),
        notifier=notifier or RecordingNotifier(),
    )
    if listener is not None:
        interface.add_listener(listener)
    interface.start()
    return interface
