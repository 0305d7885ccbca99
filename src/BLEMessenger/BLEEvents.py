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
Host event interface

BLEEventListener is the single subscriber interface offered to hosts (UI,
CLI, tests). Each method is one event category; the default implementations
do nothing, so a host overrides only what it needs.

BLEEventDispatcher fans events out to every registered listener. A listener
that raises is logged and skipped; it never breaks delivery to the others or
unwinds into the radio thread that produced the event.
"""

import threading
import time
from collections import deque
from typing import List

import RNS


class BLEEventListener:
    def on_role_changed(self, role):
        pass

    def on_scanning_state_changed(self, scanning: bool):
        pass

    def on_advertising_state_changed(self, advertising: bool):
        pass

    def on_discovered_peers_updated(self, peers: List):
        pass

    def on_connected_peers_updated(self, peers: List):
        pass

    def on_connected_clients_updated(self, clients: List):
        pass

    def on_log_message(self, message: str):
        pass

    def on_message_received(self, text: str, sender: str):
        pass

    def on_image_received(self, image_bytes: bytes, sender: str, location):
        pass

    def on_failure(self, failure):
        pass


class BLEEventDispatcher:
    """
    Delivers events to listeners and keeps a short log history.

    The log history holds the last LOG_HISTORY formatted lines so a host
    that subscribes late can still show recent activity.
    """

    LOG_HISTORY = 100

    def __init__(self, name: str = "BLEMessenger"):
        self.name = name
        self._listeners = []
        self._listeners_lock = threading.Lock()
        self._log_history = deque(maxlen=BLEEventDispatcher.LOG_HISTORY)
        self._log_lock = threading.Lock()

    def add_listener(self, listener: BLEEventListener):
        with self._listeners_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: BLEEventListener):
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def listeners(self) -> List[BLEEventListener]:
        with self._listeners_lock:
            return list(self._listeners)

    def emit(self, event: str, *args):
        """
        Call listener.<event>(*args) on every listener.

        Listeners are snapshotted before delivery, so a listener may add or
        remove listeners from inside a callback.
        """
        for listener in self.listeners:
            handler = getattr(listener, event, None)
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception as e:
                RNS.log(f"{self} Error in {event} listener {listener}: {e}", RNS.LOG_ERROR)

    def log(self, message: str, level: int = RNS.LOG_INFO, source=None):
        """Log through RNS and forward the line to listeners."""
        prefix = str(source) if source is not None else str(self)
        RNS.log(f"{prefix} {message}", level)

        line = f"[{time.strftime('%H:%M:%S')}] {message}"
        with self._log_lock:
            self._log_history.append(line)
        self.emit("on_log_message", line)

    def failure(self, failure, source=None):
        """Report a BLEFailure: log it at its own severity, then emit it."""
        self.log(str(failure), failure.log_level, source)
        self.emit("on_failure", failure)
        return False

    @property
    def recent_log(self) -> List[str]:
        with self._log_lock:
            return list(self._log_history)

    def clear_log(self):
        with self._log_lock:
            self._log_history.clear()

    def __str__(self):
        return f"BLEEvents[{self.name}]"
