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
External collaborators the engines call into.

These are the seams to the host platform: runtime permission checks,
persisting received images, and a foreground status line. Each comes with
a default that works on a desktop Linux host.
"""

import os
import time
from typing import Iterable, Optional

import RNS


# Capabilities checked before touching the radio
CAPABILITY_SCAN = "scan"
CAPABILITY_CONNECT = "connect"
CAPABILITY_ADVERTISE = "advertise"

ALL_CAPABILITIES = (CAPABILITY_SCAN, CAPABILITY_CONNECT, CAPABILITY_ADVERTISE)


class PermissionProvider:
    def has_permission(self, capability: str) -> bool:
        raise NotImplementedError


class StaticPermissions(PermissionProvider):
    """
    Fixed set of granted capabilities.

    Desktop BlueZ has no runtime permission prompts, so the default grants
    everything. Tests use a reduced set to exercise PermissionDenied paths.
    """

    def __init__(self, granted: Iterable[str] = ALL_CAPABILITIES):
        self.granted = set(granted)

    def has_permission(self, capability: str) -> bool:
        return capability in self.granted

    def grant(self, capability: str):
        self.granted.add(capability)

    def revoke(self, capability: str):
        self.granted.discard(capability)


class ImageSink:
    def save(self, image_bytes: bytes, sender: Optional[str] = None):
        """
        Persist a received image.

        Returns:
            A location (path or URI) for the stored image

        Raises:
            OSError: if the image could not be stored
        """
        raise NotImplementedError


class DirectoryImageSink(ImageSink):
    """Writes images as BLE_IMG_<epoch millis>.jpg into a directory."""

    FILENAME_PREFIX = "BLE_IMG_"
    FILENAME_SUFFIX = ".jpg"

    def __init__(self, directory: str):
        self.directory = os.path.expanduser(directory)

    def save(self, image_bytes: bytes, sender: Optional[str] = None) -> str:
        os.makedirs(self.directory, exist_ok=True)
        filename = f"{self.FILENAME_PREFIX}{int(time.time() * 1000)}{self.FILENAME_SUFFIX}"
        path = os.path.join(self.directory, filename)
        # Two images in the same millisecond must not overwrite each other
        counter = 1
        while os.path.exists(path):
            path = os.path.join(self.directory, f"{filename[:-len(self.FILENAME_SUFFIX)]}_{counter}{self.FILENAME_SUFFIX}")
            counter += 1

        with open(path, "wb") as f:
            f.write(image_bytes)

        RNS.log(f"Saved {len(image_bytes)} byte image from {sender or 'unknown'} to {path}", RNS.LOG_VERBOSE)
        return path


class NotificationSink:
    def show(self, text: str):
        raise NotImplementedError


class LogNotificationSink(NotificationSink):
    """Shows status lines in the log. Keeps the last line for inspection."""

    def __init__(self):
        self.last = None

    def show(self, text: str):
        self.last = text
        RNS.log(f"[status] {text}", RNS.LOG_NOTICE)
