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
BLETransfer - message and image transfer over the GATT text channel

Plain messages are sent as one UTF-8 write/notification. Images are
base64-encoded and split into fixed-size chunks framed as text:

    IMG_START:<chunk_count>
    IMG_CHUNK:<index>:<base64 data>     (index 0..count-1, ascending)
    IMG_END

Short pauses between frames keep the link buffer from overflowing. No
per-chunk acknowledgment is used.

Receiving side: chunks are buffered per sender and keyed by index, so
out-of-order arrival is reordered on IMG_END. A buffer that does not hold
exactly the indices announced by IMG_START is corrupt and is discarded.
"""

import base64
import binascii
import math
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

import RNS

from BLEMessenger.BLEErrors import TransferFailure


IMG_START = "IMG_START"
IMG_CHUNK = "IMG_CHUNK"
IMG_END = "IMG_END"

DEFAULT_CHUNK_SIZE = 180
DEFAULT_START_DELAY = 0.05
DEFAULT_CHUNK_DELAY = 0.02
DEFAULT_END_DELAY = 0.05
DEFAULT_REASSEMBLY_TIMEOUT = 30.0


def is_image_frame(text: str) -> bool:
    return text == IMG_END or text.startswith(IMG_START + ":") or text.startswith(IMG_CHUNK + ":")


class ImageChunker:
    """Splits binary images into IMG_* text frames."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size

    def encode(self, image_bytes: bytes) -> List[str]:
        """Base64-encode and split into chunk strings."""
        encoded = base64.b64encode(bytes(image_bytes)).decode("ascii")
        return [encoded[i:i + self.chunk_size] for i in range(0, len(encoded), self.chunk_size)]

    def get_chunk_count(self, image_size: int) -> int:
        """Number of IMG_CHUNK frames for an image of image_size bytes."""
        encoded_length = 4 * math.ceil(image_size / 3)
        return math.ceil(encoded_length / self.chunk_size)

    def frames(self, image_bytes: bytes) -> List[str]:
        chunks = self.encode(image_bytes)
        frames = [f"{IMG_START}:{len(chunks)}"]
        frames.extend(f"{IMG_CHUNK}:{index}:{chunk}" for index, chunk in enumerate(chunks))
        frames.append(IMG_END)
        return frames


class ImageBuffer:
    def __init__(self, expected: int):
        self.expected = expected
        self.chunks: Dict[int, str] = {}
        self.started_at = time.time()
        self.last_update = self.started_at

    def add(self, index: int, data: str):
        self.chunks[index] = data
        self.last_update = time.time()

    def missing(self) -> List[int]:
        return [i for i in range(self.expected) if i not in self.chunks]

    def assemble(self) -> str:
        return "".join(self.chunks[i] for i in range(self.expected))


class ImageReassembler:
    """
    Per-sender reassembly of IMG_* frames.

    handle_frame() returns the decoded image on a valid IMG_END, None for
    frames that only update state, and raises TransferFailure for frames
    that cannot be used. A failure discards that sender's buffer.
    """

    def __init__(self, timeout: float = DEFAULT_REASSEMBLY_TIMEOUT):
        self.timeout = timeout
        self._buffers: Dict[str, ImageBuffer] = {}
        self._lock = threading.Lock()

    @property
    def pending_senders(self) -> List[str]:
        with self._lock:
            return list(self._buffers.keys())

    def get_buffer(self, sender: str) -> Optional[ImageBuffer]:
        with self._lock:
            return self._buffers.get(sender)

    def handle_frame(self, text: str, sender: str) -> Optional[bytes]:
        if text == IMG_END:
            return self._finish(sender)

        kind, _, rest = text.partition(":")
        if kind == IMG_START:
            try:
                expected = int(rest)
            except ValueError:
                raise TransferFailure(f"malformed {IMG_START} frame '{text[:32]}'", sender)
            if expected < 0:
                raise TransferFailure(f"negative chunk count {expected}", sender)
            with self._lock:
                self._buffers[sender] = ImageBuffer(expected)
            return None

        if kind == IMG_CHUNK:
            index_text, separator, data = rest.partition(":")
            try:
                index = int(index_text)
            except ValueError:
                index = None
            if index is None or not separator:
                raise TransferFailure(f"malformed {IMG_CHUNK} frame", sender)

            with self._lock:
                buffer = self._buffers.get(sender)
                if buffer is None:
                    raise TransferFailure(f"chunk {index} without {IMG_START}", sender)
                if index < 0 or index >= buffer.expected:
                    del self._buffers[sender]
                    raise TransferFailure(f"chunk index {index} outside 0..{buffer.expected - 1}", sender)
                buffer.add(index, data)
            return None

        raise TransferFailure(f"unrecognised image frame '{text[:32]}'", sender)

    def _finish(self, sender: str) -> bytes:
        with self._lock:
            buffer = self._buffers.pop(sender, None)

        if buffer is None:
            raise TransferFailure(f"{IMG_END} without {IMG_START}", sender)

        missing = buffer.missing()
        if missing:
            raise TransferFailure(f"image incomplete, {len(missing)} of {buffer.expected} chunk(s) missing", sender)

        try:
            return base64.b64decode(buffer.assemble(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise TransferFailure(f"image data is not valid base64 ({e})", sender)

    def discard(self, sender: str) -> bool:
        with self._lock:
            return self._buffers.pop(sender, None) is not None

    def clear(self):
        with self._lock:
            self._buffers.clear()

    def cleanup_stale_buffers(self) -> int:
        """Drop buffers that received no frame within the timeout. Returns the number dropped."""
        now = time.time()
        with self._lock:
            stale = [s for s, b in self._buffers.items() if now - b.last_update > self.timeout]
            for sender in stale:
                del self._buffers[sender]
        return len(stale)


class BLETransfer:
    """
    Transfer protocol endpoint shared by both roles.

    Outbound frames go through send_text(text, targets), which the role
    coordinator binds to the active role's send path. Inbound text arrives
    through handle_inbound() from the GATT server or client engine.
    """

    CLEANUP_INTERVAL = 30.0

    def __init__(self, events, send_text: Callable[[str, Optional[Iterable[str]]], bool] = None,
                 image_sink=None, notifier=None, chunk_size: int = DEFAULT_CHUNK_SIZE,
                 start_delay: float = DEFAULT_START_DELAY, chunk_delay: float = DEFAULT_CHUNK_DELAY,
                 end_delay: float = DEFAULT_END_DELAY,
                 reassembly_timeout: float = DEFAULT_REASSEMBLY_TIMEOUT, name: str = "BLEMessenger"):
        self.events = events
        self.send_text = send_text
        self.image_sink = image_sink
        self.notifier = notifier
        self.chunker = ImageChunker(chunk_size)
        self.reassembler = ImageReassembler(reassembly_timeout)
        self.start_delay = start_delay
        self.chunk_delay = chunk_delay
        self.end_delay = end_delay
        self.name = name

        self._sends_lock = threading.Lock()
        self._active_sends = set()
        self.cleanup_timer = None
        self._cleanup_enabled = False

    # --- Inbound ---

    def handle_inbound(self, text: str, sender: str):
        """Route one inbound text: image frames to reassembly, the rest to the host."""
        if is_image_frame(text):
            self._handle_image_frame(text, sender)
            return

        self.events.log(f"Message from {sender}: {text}", RNS.LOG_INFO, self)
        self.events.emit("on_message_received", text, sender)
        self._show(f"{sender}: {text}")

    def _handle_image_frame(self, text: str, sender: str):
        try:
            image_bytes = self.reassembler.handle_frame(text, sender)
        except TransferFailure as failure:
            self.events.failure(failure, self)
            return

        if text.startswith(IMG_START):
            buffer = self.reassembler.get_buffer(sender)
            expected = buffer.expected if buffer else 0
            self.events.log(f"Receiving image from {sender} ({expected} chunks)", RNS.LOG_INFO, self)

        if image_bytes is None:
            return

        location = None
        if self.image_sink is not None:
            try:
                location = self.image_sink.save(image_bytes, sender)
            except OSError as e:
                self.events.failure(TransferFailure(f"could not save image ({e})", sender), self)
                return

        self.events.log(f"Image received from {sender} ({len(image_bytes)} bytes)", RNS.LOG_INFO, self)
        self.events.emit("on_image_received", image_bytes, sender, location)
        self._show(f"Image received from {sender}")

    def _show(self, text: str):
        if self.notifier is None:
            return
        try:
            self.notifier.show(text)
        except Exception as e:
            RNS.log(f"{self} Error updating notification: {e}", RNS.LOG_WARNING)

    # --- Outbound ---

    def send_message(self, text: str, targets: Optional[Iterable[str]] = None) -> bool:
        if self.send_text is None:
            RNS.log(f"{self} No send path bound, dropping message", RNS.LOG_WARNING)
            return False
        return self.send_text(text, targets)

    def send_image(self, image_bytes: bytes, targets: Optional[Iterable[str]] = None,
                   blocking: bool = False) -> bool:
        """
        Send an image as IMG_* frames.

        The send runs on a background thread unless blocking is set. It is
        aborted by cancel() or when a frame cannot be sent.

        Returns:
            True when the send was started (or, if blocking, completed)
        """
        if self.send_text is None:
            RNS.log(f"{self} No send path bound, dropping image", RNS.LOG_WARNING)
            return False

        frames = self.chunker.frames(image_bytes)
        cancel_event = threading.Event()
        with self._sends_lock:
            self._active_sends.add(cancel_event)

        self.events.log(f"Sending image: {len(image_bytes)} bytes in {len(frames) - 2} chunks", RNS.LOG_INFO, self)

        if blocking:
            return self._send_frames(frames, targets, cancel_event)

        sender_thread = threading.Thread(
            target=self._send_frames,
            args=(frames, targets, cancel_event),
            daemon=True,
            name="BLE-ImageSender",
        )
        sender_thread.start()
        return True

    def _delay_for(self, index: int, count: int) -> float:
        """Pause after frame index of count frames."""
        if index == 0:
            return self.start_delay
        if index == count - 2:
            return self.chunk_delay + self.end_delay
        return self.chunk_delay

    def _send_frames(self, frames: List[str], targets, cancel_event: threading.Event) -> bool:
        try:
            for index, frame in enumerate(frames):
                if cancel_event.is_set():
                    self.events.log("Image send cancelled", RNS.LOG_INFO, self)
                    return False

                if not self.send_text(frame, targets):
                    self.events.failure(TransferFailure(f"image send aborted at frame {index + 1}/{len(frames)}"), self)
                    return False

                if index < len(frames) - 1:
                    delay = self._delay_for(index, len(frames))
                    if delay > 0 and cancel_event.wait(delay):
                        self.events.log("Image send cancelled", RNS.LOG_INFO, self)
                        return False

            self.events.log("Image sent", RNS.LOG_INFO, self)
            return True
        finally:
            with self._sends_lock:
                self._active_sends.discard(cancel_event)

    @property
    def sending(self) -> bool:
        with self._sends_lock:
            return len(self._active_sends) > 0

    def cancel(self):
        """Abort every in-flight image send and drop partial reassembly state."""
        with self._sends_lock:
            for cancel_event in self._active_sends:
                cancel_event.set()
        self.reassembler.clear()

    # --- Stale buffer cleanup ---

    def start_cleanup_timer(self):
        self._cleanup_enabled = True
        self._schedule_cleanup()

    def _schedule_cleanup(self):
        if self.cleanup_timer:
            self.cleanup_timer.cancel()

        self.cleanup_timer = threading.Timer(BLETransfer.CLEANUP_INTERVAL, self._periodic_cleanup_task)
        self.cleanup_timer.daemon = True
        self.cleanup_timer.start()

    def stop_cleanup_timer(self):
        self._cleanup_enabled = False
        if self.cleanup_timer:
            self.cleanup_timer.cancel()
            self.cleanup_timer = None

    def _periodic_cleanup_task(self):
        """Discard reassembly buffers of senders that went quiet mid-image."""
        if not self._cleanup_enabled:
            return

        cleaned = self.reassembler.cleanup_stale_buffers()
        if cleaned > 0:
            RNS.log(f"{self} Discarded {cleaned} stale image buffer(s)", RNS.LOG_DEBUG)
        self._schedule_cleanup()

    def __str__(self):
        return f"BLETransfer[{self.name}]"
