"""
Tests for image chunking, reassembly and the transfer endpoint.

The IMG_* framing is the wire format shared with other implementations, so
the frame text itself is asserted here, not only round trips.
"""

import base64

import pytest

from BLEMessenger.BLEErrors import TransferFailure
from BLEMessenger.BLEEvents import BLEEventDispatcher
from BLEMessenger.BLETransfer import (
    BLETransfer,
    ImageChunker,
    ImageReassembler,
    is_image_frame,
)
from conftest import MemoryImageSink, RecordingListener, RecordingNotifier


class TestImageChunker:
    """Test frame construction."""

    def test_chunk_count_for_256_bytes(self):
        """256 bytes encode to 344 base64 characters, two 180-character chunks."""
        chunker = ImageChunker(180)
        assert chunker.get_chunk_count(256) == 2
        assert len(chunker.encode(bytes(256))) == 2

    def test_chunk_count_matches_encoding(self):
        chunker = ImageChunker(180)
        for size in (1, 2, 3, 134, 135, 136, 1000, 5000):
            assert chunker.get_chunk_count(size) == len(chunker.encode(bytes(size)))

    def test_frames_layout(self):
        chunker = ImageChunker(4)
        frames = chunker.frames(b"abcdef")

        encoded = base64.b64encode(b"abcdef").decode("ascii")
        assert frames[0] == "IMG_START:2"
        assert frames[1] == f"IMG_CHUNK:0:{encoded[:4]}"
        assert frames[2] == f"IMG_CHUNK:1:{encoded[4:]}"
        assert frames[-1] == "IMG_END"

    def test_empty_image(self):
        frames = ImageChunker(180).frames(b"")
        assert frames == ["IMG_START:0", "IMG_END"]

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            ImageChunker(0)

    def test_is_image_frame(self):
        assert is_image_frame("IMG_START:3")
        assert is_image_frame("IMG_CHUNK:0:QUJD")
        assert is_image_frame("IMG_END")
        assert not is_image_frame("IMG_ENDING soon")
        assert not is_image_frame("hello")


class TestImageReassembler:
    """Test per-sender reassembly policy."""

    def test_in_order_reassembly(self):
        image = bytes(range(256)) * 4
        reassembler = ImageReassembler()

        result = None
        for frame in ImageChunker(100).frames(image):
            result = reassembler.handle_frame(frame, "peer")

        assert result == image
        assert reassembler.pending_senders == []

    def test_out_of_order_chunks_are_reordered(self):
        image = b"out of order image payload" * 10
        frames = ImageChunker(50).frames(image)
        start, chunks, end = frames[0], frames[1:-1], frames[-1]

        reassembler = ImageReassembler()
        reassembler.handle_frame(start, "peer")
        for frame in reversed(chunks):
            assert reassembler.handle_frame(frame, "peer") is None

        assert reassembler.handle_frame(end, "peer") == image

    def test_gap_rejects_image(self):
        frames = ImageChunker(10).frames(b"x" * 100)
        reassembler = ImageReassembler()

        reassembler.handle_frame(frames[0], "peer")
        for frame in frames[1:-1]:
            if not frame.startswith("IMG_CHUNK:3:"):
                reassembler.handle_frame(frame, "peer")

        with pytest.raises(TransferFailure):
            reassembler.handle_frame("IMG_END", "peer")
        assert reassembler.get_buffer("peer") is None

    def test_chunk_without_start_is_dropped(self):
        reassembler = ImageReassembler()
        with pytest.raises(TransferFailure):
            reassembler.handle_frame("IMG_CHUNK:0:QUJD", "peer")

    def test_end_without_start_is_dropped(self):
        reassembler = ImageReassembler()
        with pytest.raises(TransferFailure):
            reassembler.handle_frame("IMG_END", "peer")

    def test_index_out_of_range_discards_buffer(self):
        reassembler = ImageReassembler()
        reassembler.handle_frame("IMG_START:2", "peer")

        with pytest.raises(TransferFailure):
            reassembler.handle_frame("IMG_CHUNK:2:QUJD", "peer")
        assert reassembler.get_buffer("peer") is None

    def test_malformed_frames(self):
        reassembler = ImageReassembler()
        with pytest.raises(TransferFailure):
            reassembler.handle_frame("IMG_START:many", "peer")

        reassembler.handle_frame("IMG_START:1", "peer")
        with pytest.raises(TransferFailure):
            reassembler.handle_frame("IMG_CHUNK:zero:QUJD", "peer")

    def test_invalid_base64_rejected(self):
        reassembler = ImageReassembler()
        reassembler.handle_frame("IMG_START:1", "peer")
        reassembler.handle_frame("IMG_CHUNK:0:not*base64!", "peer")

        with pytest.raises(TransferFailure):
            reassembler.handle_frame("IMG_END", "peer")

    def test_duplicate_index_overwrites(self):
        reassembler = ImageReassembler()
        reassembler.handle_frame("IMG_START:1", "peer")
        reassembler.handle_frame("IMG_CHUNK:0:QUJD", "peer")
        reassembler.handle_frame("IMG_CHUNK:0:WFla", "peer")

        assert reassembler.handle_frame("IMG_END", "peer") == b"XYZ"

    def test_senders_are_independent(self):
        reassembler = ImageReassembler()
        reassembler.handle_frame("IMG_START:1", "alice")
        reassembler.handle_frame("IMG_START:1", "bob")
        reassembler.handle_frame("IMG_CHUNK:0:QUJD", "bob")
        reassembler.handle_frame("IMG_CHUNK:0:WFla", "alice")

        assert reassembler.handle_frame("IMG_END", "alice") == b"XYZ"
        assert reassembler.handle_frame("IMG_END", "bob") == b"ABC"

    def test_restart_replaces_buffer(self):
        reassembler = ImageReassembler()
        reassembler.handle_frame("IMG_START:2", "peer")
        reassembler.handle_frame("IMG_CHUNK:0:QUJD", "peer")
        reassembler.handle_frame("IMG_START:1", "peer")

        assert reassembler.get_buffer("peer").expected == 1
        assert reassembler.get_buffer("peer").chunks == {}

    def test_stale_buffers_cleaned(self):
        reassembler = ImageReassembler(timeout=10)
        reassembler.handle_frame("IMG_START:2", "old")
        reassembler.handle_frame("IMG_START:2", "fresh")
        reassembler.get_buffer("old").last_update -= 60

        assert reassembler.cleanup_stale_buffers() == 1
        assert reassembler.pending_senders == ["fresh"]


class TestBLETransfer:
    """Test the transfer endpoint with a recording send path."""

    def _transfer(self, sent=None, result=True, **kwargs):
        events = BLEEventDispatcher("test")
        listener = RecordingListener()
        events.add_listener(listener)

        def send_text(text, targets=None):
            if sent is not None:
                sent.append((text, targets))
            return result

        transfer = BLETransfer(
            events,
            send_text=send_text,
            image_sink=kwargs.pop("image_sink", MemoryImageSink()),
            notifier=kwargs.pop("notifier", RecordingNotifier()),
            start_delay=0, chunk_delay=0, end_delay=0,
            **kwargs,
        )
        return transfer, listener

    def test_inbound_message_emitted(self):
        notifier = RecordingNotifier()
        transfer, listener = self._transfer(notifier=notifier)

        transfer.handle_inbound("hello", "01012345678")

        assert listener.messages == [("hello", "01012345678")]
        assert notifier.lines == ["01012345678: hello"]

    def test_inbound_image_saved_and_emitted(self):
        sink = MemoryImageSink()
        transfer, listener = self._transfer(image_sink=sink)
        image = b"\xff\xd8\xff\xe0" + bytes(500)

        for frame in ImageChunker(180).frames(image):
            transfer.handle_inbound(frame, "peer")

        assert sink.saved == [(image, "peer")]
        assert listener.images == [(image, "peer", "memory://1")]
        assert listener.messages == []

    def test_bad_frame_reported_not_raised(self):
        transfer, listener = self._transfer()
        transfer.handle_inbound("IMG_END", "peer")

        assert listener.failure_types() == ["TransferFailure"]
        assert listener.images == []

    def test_image_save_error_reported(self):
        class FailingSink:
            def save(self, image_bytes, sender=None):
                raise OSError("disk full")

        transfer, listener = self._transfer(image_sink=FailingSink())
        for frame in ImageChunker(180).frames(b"abc"):
            transfer.handle_inbound(frame, "peer")

        assert listener.failure_types() == ["TransferFailure"]
        assert listener.images == []

    def test_send_message_passes_targets(self):
        sent = []
        transfer, _ = self._transfer(sent)

        assert transfer.send_message("hi", ["01000000000"])
        assert sent == [("hi", ["01000000000"])]

    def test_blocking_image_send_frames(self):
        sent = []
        transfer, _ = self._transfer(sent, chunk_size=8)

        assert transfer.send_image(b"0123456789", blocking=True)

        frames = [text for text, _ in sent]
        assert frames[0] == "IMG_START:2"
        assert frames[1].startswith("IMG_CHUNK:0:")
        assert frames[2].startswith("IMG_CHUNK:1:")
        assert frames[-1] == "IMG_END"
        assert not transfer.sending

    def test_image_send_aborts_on_failure(self):
        sent = []
        transfer, listener = self._transfer(sent, result=False)

        assert not transfer.send_image(b"abc", blocking=True)
        assert len(sent) == 1
        assert "TransferFailure" in listener.failure_types()

    def test_frame_delays(self):
        transfer = BLETransfer(BLEEventDispatcher("test"), start_delay=0.05, chunk_delay=0.02, end_delay=0.05)
        # START, CHUNK 0, CHUNK 1, END
        assert transfer._delay_for(0, 4) == 0.05
        assert transfer._delay_for(1, 4) == 0.02
        assert transfer._delay_for(2, 4) == pytest.approx(0.07)

    def test_cancel_clears_reassembly(self):
        transfer, _ = self._transfer()
        transfer.handle_inbound("IMG_START:3", "peer")
        transfer.cancel()

        assert transfer.reassembler.pending_senders == []

    def test_cleanup_timer_lifecycle(self):
        transfer, _ = self._transfer()
        transfer.start_cleanup_timer()
        assert transfer.cleanup_timer is not None

        transfer.stop_cleanup_timer()
        assert transfer.cleanup_timer is None
        # A late timer callback does nothing once stopped
        transfer._periodic_cleanup_task()
        assert transfer.cleanup_timer is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
