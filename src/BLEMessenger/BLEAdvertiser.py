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
BLEAdvertiser - peripheral-side advertising lifecycle

The advertisement carries only the service UUID, which keeps it within the
31 byte legacy payload. The scan response carries the device name and,
when configured, the local MSISDN as manufacturer data so scanners can key
peers by MSISDN instead of by a randomised address.
"""

import threading

import RNS

from BLEMessenger.BLECollaborators import CAPABILITY_ADVERTISE, CAPABILITY_CONNECT, StaticPermissions
from BLEMessenger.BLEErrors import (
    AdapterUnavailable,
    AlreadyActive,
    PermissionDenied,
    ResourceUnavailable,
    StartFailure,
)
from BLEMessenger.bluetooth_driver import (
    AdvertiseData,
    AdvertiseEventReceiver,
    AdvertiseSettings,
    BLEDriverInterface,
)


class BLEAdvertiser(AdvertiseEventReceiver):

    def __init__(self, driver: BLEDriverInterface, gatt_server, events, permissions=None,
                 device_name: str = "BLEMessenger", local_msisdn: str = None,
                 include_msisdn: bool = True, name: str = "BLEMessenger"):
        self.driver = driver
        self.gatt_server = gatt_server
        self.events = events
        self.permissions = permissions or StaticPermissions()
        self.device_name = device_name
        self.local_msisdn = local_msisdn
        self.include_msisdn = include_msisdn
        self.name = name

        self._lock = threading.Lock()
        self._advertising = False
        self._pending = False

    @property
    def advertising(self) -> bool:
        return self._advertising

    @property
    def pending(self) -> bool:
        return self._pending

    def build_advertise_data(self) -> AdvertiseData:
        return AdvertiseData(service_uuids=[self.gatt_server.profile.service_uuid])

    def build_scan_response(self) -> AdvertiseData:
        manufacturer_data = {}
        if self.include_msisdn and self.local_msisdn:
            manufacturer_data[self.gatt_server.profile.manufacturer_id] = self.local_msisdn.encode("utf-8")
        return AdvertiseData(include_device_name=True, manufacturer_data=manufacturer_data)

    def start_advertising(self) -> bool:
        """
        Request advertising. Success or failure arrives on the receiver
        callbacks; a False return means the request was never issued.
        """
        with self._lock:
            if self._advertising or self._pending:
                return self.events.failure(AlreadyActive("advertiser"), self)

            for capability in (CAPABILITY_ADVERTISE, CAPABILITY_CONNECT):
                if not self.permissions.has_permission(capability):
                    return self.events.failure(PermissionDenied(capability, "advertiser"), self)

            if not self.driver.is_enabled():
                return self.events.failure(AdapterUnavailable("advertiser"), self)

            if not self.gatt_server.provision():
                self.events.log("Cannot advertise without a GATT server", RNS.LOG_ERROR, self)
                return False

            settings = AdvertiseSettings(connectable=True, timeout=0)
            self._pending = True

        try:
            issued = self.driver.start_advertising(
                self.device_name, settings, self.build_advertise_data(), self.build_scan_response(), self
            )
        except Exception as e:
            RNS.log(f"{self} Error starting advertising: {e}", RNS.LOG_ERROR)
            issued = False

        if not issued:
            with self._lock:
                self._pending = False
            return self.events.failure(ResourceUnavailable("advertiser"), self)

        RNS.log(f"{self} Advertising requested as '{self.device_name}'", RNS.LOG_DEBUG)
        return True

    def on_start_success(self):
        with self._lock:
            late = not self._pending
            active = self._advertising
            if not late:
                self._pending = False
                self._advertising = True

        if late:
            if active:
                RNS.log(f"{self} Duplicate advertising start ignored", RNS.LOG_DEBUG)
                return
            # Stop was requested while the start was in flight
            RNS.log(f"{self} Late advertising start, stopping it again", RNS.LOG_DEBUG)
            try:
                self.driver.stop_advertising()
            except Exception as e:
                RNS.log(f"{self} Error stopping advertising: {e}", RNS.LOG_WARNING)
            return

        self.events.log(f"Advertising started as '{self.device_name}'", RNS.LOG_INFO, self)
        self.events.emit("on_advertising_state_changed", True)

    def on_start_failure(self, error_code: int):
        with self._lock:
            was_advertising = self._advertising
            self._pending = False
            self._advertising = False
        self.events.failure(StartFailure("advertiser", error_code), self)
        if was_advertising:
            self.events.emit("on_advertising_state_changed", False)

    def stop_advertising(self):
        """Stop advertising. No-op when neither active nor starting."""
        with self._lock:
            if not self._advertising and not self._pending:
                return
            was_advertising = self._advertising
            self._advertising = False
            self._pending = False

        try:
            self.driver.stop_advertising()
        except Exception as e:
            RNS.log(f"{self} Error stopping advertising: {e}", RNS.LOG_WARNING)

        self.events.log("Advertising stopped", RNS.LOG_INFO, self)
        if was_advertising:
            self.events.emit("on_advertising_state_changed", False)

    def __str__(self):
        return f"BLEAdvertiser[{self.name}]"
