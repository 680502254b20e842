"""Tests for the aiortc media sink adapter."""

import asyncio
import logging
from unittest.mock import MagicMock, patch

import pytest
from aiortc.mediastreams import MediaStreamError

from media_sink import PeerConnectionRecorder


class FakePeerConnection:
    """Stands in for RTCPeerConnection's event emitter."""

    def __init__(self):
        self.handlers = {}
        self.connectionState = "new"

    def on(self, event, handler):
        self.handlers[event] = handler

    def emit_track(self, track):
        self.handlers["track"](track)

    async def set_state(self, state):
        self.connectionState = state
        await self.handlers["connectionstatechange"]()


class FakeTrack:
    """Yields queued frames, then ends; or blocks forever if ``endless``."""

    def __init__(self, kind, frames=(), endless=False):
        self.kind = kind
        self.id = f"{kind}-track"
        self.frames = list(frames)
        self.endless = endless

    async def recv(self):
        if self.frames:
            await asyncio.sleep(0)
            return self.frames.pop(0)
        if self.endless:
            await asyncio.Event().wait()
        raise MediaStreamError


def video_frame(width, height, payload):
    frame = MagicMock(width=width, height=height)
    frame.to_ndarray.return_value.tobytes.return_value = payload
    return frame


async def drain(recorder):
    await asyncio.gather(*list(recorder._tasks), return_exceptions=True)


@pytest.mark.unit
class TestPeerConnectionRecorder:
    """Test frame delivery and disconnect reporting."""

    def test_video_frames_delivered_with_geometry(self):
        controller = MagicMock()
        track = FakeTrack("video", [video_frame(4, 2, b"A" * 12), video_frame(2, 2, b"B" * 6)])

        async def scenario():
            pc = FakePeerConnection()
            recorder = PeerConnectionRecorder(controller, pc, session_id="s1")
            pc.emit_track(track)
            await recorder.start()
            await drain(recorder)

        asyncio.run(scenario())

        controller.session_start.assert_called_once_with("s1", audio=False)
        assert [c.args for c in controller.frame.call_args_list] == [
            ("s1", "4x2", b"A" * 12),
            ("s1", "2x2", b"B" * 6),
        ]
        controller.on_disconnect.assert_called_once_with("s1", "video track ended")

    def test_video_converted_to_configured_pixel_format(self):
        controller = MagicMock()
        frame = video_frame(4, 2, b"A" * 12)

        async def scenario():
            pc = FakePeerConnection()
            recorder = PeerConnectionRecorder(controller, pc, session_id="s1")
            pc.emit_track(FakeTrack("video", [frame]))
            await recorder.start()
            await drain(recorder)

        asyncio.run(scenario())

        frame.to_ndarray.assert_called_once_with(format="yuv420p")

    @patch('media_sink.AudioResampler')
    def test_audio_resampled_and_forwarded(self, mock_resampler_class):
        controller = MagicMock()
        resampled = MagicMock()
        resampled.to_ndarray.return_value.tobytes.return_value = b"pcm"
        mock_resampler_class.return_value.resample.return_value = [resampled]

        async def scenario():
            pc = FakePeerConnection()
            recorder = PeerConnectionRecorder(controller, pc, session_id="s1")
            pc.emit_track(FakeTrack("video", endless=True))
            pc.emit_track(FakeTrack("audio", [MagicMock(), MagicMock()]))
            await recorder.start()
            await drain(recorder)

        asyncio.run(scenario())

        controller.session_start.assert_called_once_with("s1", audio=True)
        mock_resampler_class.assert_called_once_with(format="s16", layout="mono", rate=48000)
        assert controller.audio.call_count == 2
        controller.audio.assert_called_with("s1", b"pcm")
        # The audio track ending stops the whole session
        controller.on_disconnect.assert_called_once_with("s1", "audio track ended")

    def test_connection_failure_disconnects(self):
        controller = MagicMock()

        async def scenario():
            pc = FakePeerConnection()
            recorder = PeerConnectionRecorder(controller, pc, session_id="s1")
            pc.emit_track(FakeTrack("video", endless=True))
            await recorder.start()
            tasks = list(recorder._tasks)
            await pc.set_state("connected")
            await pc.set_state("failed")
            await pc.set_state("closed")
            return tasks

        tasks = asyncio.run(scenario())

        controller.on_disconnect.assert_called_once_with("s1", "connection failed")
        assert all(task.cancelled() for task in tasks)

    def test_stop_before_start_does_not_notify(self):
        controller = MagicMock()

        async def scenario():
            recorder = PeerConnectionRecorder(controller, FakePeerConnection(), session_id="s1")
            await recorder.stop()

        asyncio.run(scenario())

        controller.on_disconnect.assert_not_called()

    def test_track_after_start_is_consumed(self):
        controller = MagicMock()

        async def scenario():
            pc = FakePeerConnection()
            recorder = PeerConnectionRecorder(controller, pc, session_id="s1")
            await recorder.start()
            pc.emit_track(FakeTrack("video", [video_frame(4, 2, b"A" * 12)]))
            await drain(recorder)

        asyncio.run(scenario())

        controller.frame.assert_called_once_with("s1", "4x2", b"A" * 12)

    def test_non_media_tracks_ignored(self):
        controller = MagicMock()

        async def scenario():
            pc = FakePeerConnection()
            recorder = PeerConnectionRecorder(controller, pc, session_id="s1")
            pc.emit_track(FakeTrack("data"))
            await recorder.start()
            return recorder

        recorder = asyncio.run(scenario())

        assert recorder._tasks == []
        controller.session_start.assert_called_once_with("s1", audio=False)

    def test_session_id_generated(self):
        recorder = PeerConnectionRecorder(MagicMock(), FakePeerConnection())
        assert len(recorder.session_id) == 32

    def test_failing_frame_dropped_and_track_continues(self, caplog):
        controller = MagicMock()
        controller.frame.side_effect = [ValueError("bad frame"), True, True]
        frames = [video_frame(4, 2, b"A" * 12) for _ in range(3)]

        async def scenario():
            pc = FakePeerConnection()
            recorder = PeerConnectionRecorder(controller, pc, session_id="s1")
            pc.emit_track(FakeTrack("video", frames))
            await recorder.start()
            await drain(recorder)

        with caplog.at_level(logging.WARNING, logger="media_sink"):
            asyncio.run(scenario())

        assert controller.frame.call_count == 3
        assert "Dropped video frame for session s1: bad frame" in caplog.text
        controller.on_disconnect.assert_called_once_with("s1", "video track ended")

    def test_odd_frame_size_reformatted_to_even(self):
        controller = MagicMock()
        odd = video_frame(5, 3, b"")
        odd.reformat.return_value = video_frame(4, 2, b"A" * 12)

        async def scenario():
            pc = FakePeerConnection()
            recorder = PeerConnectionRecorder(controller, pc, session_id="s1")
            pc.emit_track(FakeTrack("video", [odd]))
            await recorder.start()
            await drain(recorder)

        asyncio.run(scenario())

        odd.reformat.assert_called_once_with(width=4, height=2)
        odd.to_ndarray.assert_not_called()
        controller.frame.assert_called_once_with("s1", "4x2", b"A" * 12)
