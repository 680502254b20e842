#!/usr/bin/env python3
"""
WebRTC media sink: feeds aiortc tracks into the session controller.

Video frames are converted to planar yuv420p bytes tagged with their
``WIDTHxHEIGHT`` geometry; audio is resampled to interleaved s16 PCM at the
configured rate and channel count. Connection failure, connection close and
track end are all reported to the controller as disconnects.
"""

import asyncio
import logging
import uuid
from typing import List, Optional

from aiortc import MediaStreamTrack, RTCPeerConnection
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame
from av.audio.resampler import AudioResampler

from config import AUDIO_CHANNELS, AUDIO_SAMPLE_RATE, VIDEO_PIXEL_FORMAT
from models import Session

logger = logging.getLogger(__name__)

_TERMINAL_CONNECTION_STATES = ("failed", "closed")


class PeerConnectionRecorder:
    """Records one peer connection as one session.

    Attach it before ``setRemoteDescription`` so the ``track`` events are
    seen, then call ``start()`` once the remote description is applied.
    """

    def __init__(
        self,
        controller,
        pc: RTCPeerConnection,
        session_id: Optional[str] = None,
        sample_rate: int = AUDIO_SAMPLE_RATE,
        channels: int = AUDIO_CHANNELS
    ):
        self.controller = controller
        self.pc = pc
        self.session_id = session_id or uuid.uuid4().hex
        self.sample_rate = sample_rate
        self.layout = "mono" if channels == 1 else "stereo"
        self._tracks: List[MediaStreamTrack] = []
        self._tasks: List[asyncio.Task] = []
        self._resampler: Optional[AudioResampler] = None
        self._started = False
        self._stopped = False

        pc.on("track", self._on_track)
        pc.on("connectionstatechange", self._on_connection_state_change)

    @property
    def has_audio(self) -> bool:
        return any(track.kind == "audio" for track in self._tracks)

    async def start(self) -> Session:
        """Open the session and start pulling frames from every track."""
        session = self.controller.session_start(self.session_id, audio=self.has_audio)
        self._started = True
        for track in self._tracks:
            self._consume_later(track)
        logger.info(
            f"Recording peer connection as session {self.session_id} "
            f"({len(self._tracks)} track(s))"
        )
        return session

    async def stop(self, reason: str = "closed") -> None:
        """Stop consuming tracks and tell the controller the session ended."""
        if self._stopped:
            return
        self._stopped = True

        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

        if self._started:
            self.controller.on_disconnect(self.session_id, reason)

    def _on_track(self, track: MediaStreamTrack) -> None:
        if track.kind not in ("audio", "video"):
            return
        logger.debug(f"Track received for session {self.session_id}: {track.kind} {track.id}")
        self._tracks.append(track)
        if self._started:
            self._consume_later(track)

    async def _on_connection_state_change(self) -> None:
        state = self.pc.connectionState
        logger.info(f"Session {self.session_id} connection state: {state}")
        if state in _TERMINAL_CONNECTION_STATES:
            await self.stop(reason=f"connection {state}")

    def _consume_later(self, track: MediaStreamTrack) -> None:
        self._tasks.append(asyncio.ensure_future(self._consume(track)))

    async def _consume(self, track: MediaStreamTrack) -> None:
        handler = self._handle_video if track.kind == "video" else self._handle_audio
        try:
            while True:
                frame = await track.recv()
                try:
                    handler(frame)
                except Exception as e:
                    # One bad frame is dropped; the track keeps recording
                    logger.warning(
                        f"Dropped {track.kind} frame for session {self.session_id}: {e}",
                        exc_info=True
                    )
        except MediaStreamError:
            logger.info(f"{track.kind} track ended for session {self.session_id}")
            await self.stop(reason=f"{track.kind} track ended")

    def _handle_video(self, frame: VideoFrame) -> None:
        if frame.width % 2 or frame.height % 2:
            # 4:2:0 chroma planes need even dimensions
            frame = frame.reformat(width=frame.width & ~1, height=frame.height & ~1)
        payload = frame.to_ndarray(format=VIDEO_PIXEL_FORMAT).tobytes()
        self.controller.frame(self.session_id, f"{frame.width}x{frame.height}", payload)

    def _handle_audio(self, frame: AudioFrame) -> None:
        if self._resampler is None:
            self._resampler = AudioResampler(
                format="s16", layout=self.layout, rate=self.sample_rate
            )
        for resampled in self._resampler.resample(frame):
            self.controller.audio(self.session_id, resampled.to_ndarray().tobytes())
