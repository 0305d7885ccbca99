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
Failure taxonomy for the BLE messaging engines.

Failures are reported, not raised: engines build one of these and hand it to
BLEEventDispatcher.failure(), which logs it and delivers it to subscribers.
Every failure leaves the affected subsystem inactive or the affected peer
removed, so the host can always retry.
"""

import RNS

from BLEMessenger.bluetooth_driver import (
    ADVERTISE_FAILED_ALREADY_STARTED,
    ADVERTISE_FAILED_DATA_TOO_LARGE,
    ADVERTISE_FAILED_FEATURE_UNSUPPORTED,
    ADVERTISE_FAILED_INTERNAL_ERROR,
    ADVERTISE_FAILED_TOO_MANY_ADVERTISERS,
    SCAN_FAILED_ALREADY_STARTED,
    SCAN_FAILED_APPLICATION_REGISTRATION_FAILED,
    SCAN_FAILED_FEATURE_UNSUPPORTED,
    SCAN_FAILED_INTERNAL_ERROR,
)


ADVERTISE_FAILURE_REASONS = {
    ADVERTISE_FAILED_ALREADY_STARTED: "already-started",
    ADVERTISE_FAILED_DATA_TOO_LARGE: "data-too-large",
    ADVERTISE_FAILED_FEATURE_UNSUPPORTED: "feature-unsupported",
    ADVERTISE_FAILED_INTERNAL_ERROR: "internal-error",
    ADVERTISE_FAILED_TOO_MANY_ADVERTISERS: "too-many-advertisers",
}

SCAN_FAILURE_REASONS = {
    SCAN_FAILED_ALREADY_STARTED: "already-started",
    SCAN_FAILED_APPLICATION_REGISTRATION_FAILED: "registration-failed",
    SCAN_FAILED_FEATURE_UNSUPPORTED: "feature-unsupported",
    SCAN_FAILED_INTERNAL_ERROR: "internal-error",
}


class BLEFailure(Exception):
    """Base class of every reported failure."""

    log_level = RNS.LOG_ERROR

    def __init__(self, message: str, subsystem: str = None):
        super().__init__(message)
        self.message = message
        self.subsystem = subsystem

    def __str__(self):
        name = type(self).__name__
        if self.subsystem:
            return f"{name}({self.subsystem}): {self.message}"
        return f"{name}: {self.message}"


class PermissionDenied(BLEFailure):
    def __init__(self, capability: str, subsystem: str = None):
        super().__init__(f"missing permission '{capability}'", subsystem)
        self.capability = capability


class AdapterUnavailable(BLEFailure):
    def __init__(self, subsystem: str = None):
        super().__init__("Bluetooth adapter is not available or not powered", subsystem)


class AlreadyActive(BLEFailure):
    log_level = RNS.LOG_WARNING

    def __init__(self, subsystem: str):
        super().__init__(f"{subsystem} already running", subsystem)


class ResourceUnavailable(BLEFailure):
    def __init__(self, resource: str, subsystem: str = None):
        super().__init__(f"could not obtain {resource}", subsystem or resource)
        self.resource = resource


class StartFailure(BLEFailure):
    """Advertising or scanning was refused by the stack."""

    def __init__(self, subsystem: str, reason_code: int):
        table = ADVERTISE_FAILURE_REASONS if subsystem == "advertiser" else SCAN_FAILURE_REASONS
        self.reason_code = reason_code
        self.reason = table.get(reason_code, "unknown")
        super().__init__(f"start failed: {self.reason} (code {reason_code})", subsystem)


class StatusFailure(BLEFailure):
    """A GATT operation completed with a non-success status."""

    def __init__(self, message: str, status: int, address: str = None, subsystem: str = None):
        self.status = status
        self.address = address
        where = f" on {address}" if address else ""
        super().__init__(f"{message}{where} (status {status})", subsystem)


class ConnectionFailure(StatusFailure):
    def __init__(self, status: int, address: str = None):
        super().__init__("connection failed", status, address, "client")


class DiscoveryFailure(StatusFailure):
    def __init__(self, status: int, address: str = None):
        super().__init__("service discovery failed", status, address, "client")


class WriteFailure(StatusFailure):
    def __init__(self, status: int, address: str = None, char_uuid: str = None, subsystem: str = "client"):
        self.char_uuid = char_uuid
        super().__init__(f"write to {char_uuid or 'characteristic'} failed", status, address, subsystem)


class ReadFailure(StatusFailure):
    def __init__(self, status: int, address: str = None, char_uuid: str = None):
        self.char_uuid = char_uuid
        super().__init__(f"read of {char_uuid or 'characteristic'} failed", status, address, "client")


class UnknownCharacteristic(BLEFailure):
    log_level = RNS.LOG_WARNING

    def __init__(self, char_uuid: str, address: str = None, subsystem: str = "server"):
        self.char_uuid = char_uuid
        self.address = address
        where = f" from {address}" if address else ""
        super().__init__(f"request for unknown characteristic {char_uuid}{where}", subsystem)


class InvalidRole(BLEFailure):
    log_level = RNS.LOG_WARNING

    def __init__(self, required_role, current_role):
        self.required_role = required_role
        self.current_role = current_role
        super().__init__(f"requires {required_role} role, currently {current_role}. Switch role first.",
                         "coordinator")


class NotReady(BLEFailure):
    """A send was attempted with nothing to send to."""
    log_level = RNS.LOG_WARNING

    def __init__(self, message: str, subsystem: str = None):
        super().__init__(message, subsystem)


class TransferFailure(BLEFailure):
    log_level = RNS.LOG_WARNING

    def __init__(self, message: str, sender: str = None):
        self.sender = sender
        super().__init__(f"{message}" + (f" from {sender}" if sender else ""), "transfer")
