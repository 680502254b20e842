#!/usr/bin/env python3
"""
In-memory data model for recording sessions and their segments.

Sessions and segments are never persisted; only the files they point at
survive a restart.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from config import (
    AUDIO_CHANNELS,
    AUDIO_SAMPLE_RATE,
    ENABLE_AUDIO,
    VIDEO_FRAME_RATE,
    VIDEO_PIXEL_FORMAT,
    parse_geometry,
)
from exceptions import InvalidTransitionError

# Geometry key used by byte-stream sessions, which never rotate
STREAM_GEOMETRY = "stream"

RAW_INPUT_HINTS = {None, "", "raw", "rawvideo"}

# Bytes per pixel for packed formats; 4:2:0 planar formats are handled apart
_PACKED_BYTES_PER_PIXEL = {
    'rgb24': 3,
    'bgr24': 3,
    'rgba': 4,
    'bgra': 4,
    'argb': 4,
    'abgr': 4,
}
_PLANAR_420_FORMATS = {'yuv420p', 'nv12', 'nv21'}


class SessionState(str, Enum):
    CONNECTING = 'connecting'
    STREAMING = 'streaming'
    DRAINING = 'draining'
    MERGING = 'merging'
    CLOSED = 'closed'


class SegmentStatus(str, Enum):
    RECORDING = 'recording'
    FINALIZING = 'finalizing'
    FINALIZED = 'finalized'
    FAILED = 'failed'


_SESSION_TRANSITIONS = {
    SessionState.CONNECTING: {SessionState.STREAMING, SessionState.DRAINING},
    SessionState.STREAMING: {SessionState.DRAINING},
    SessionState.DRAINING: {SessionState.MERGING, SessionState.CLOSED},
    SessionState.MERGING: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}

_SEGMENT_RANK = {
    SegmentStatus.RECORDING: 0,
    SegmentStatus.FINALIZING: 1,
    SegmentStatus.FINALIZED: 2,
    SegmentStatus.FAILED: 2,
}


class Frame(NamedTuple):
    """One unit of media delivered by the media sink."""
    geometry: str
    payload: bytes


@dataclass(frozen=True)
class InputSpec:
    """Describes what a session feeds into its encoders."""

    mode: str = 'raw'  # 'raw' frames or pre-encoded 'stream' bytes
    container: Optional[str] = None
    frame_rate: int = VIDEO_FRAME_RATE
    pixel_format: str = VIDEO_PIXEL_FORMAT
    audio: bool = ENABLE_AUDIO
    sample_rate: int = AUDIO_SAMPLE_RATE
    channels: int = AUDIO_CHANNELS

    @classmethod
    def from_hint(cls, encoding_hint: Optional[str]) -> 'InputSpec':
        """Build an input spec from the encoding hint given at session start.

        No hint (or ``raw``) means decoded frames; anything else names the
        container of a pre-encoded byte stream, e.g. ``webm``.
        """
        hint = encoding_hint.strip().lower() if encoding_hint else encoding_hint
        if hint in RAW_INPUT_HINTS:
            return cls()
        return cls(mode='stream', container=hint, audio=False)

    @property
    def rotates(self) -> bool:
        return self.mode == 'raw'

    def geometry_key(self, frame_geometry: str) -> str:
        if not self.rotates:
            return STREAM_GEOMETRY
        return frame_geometry

    def expected_frame_size(self, geometry: str) -> Optional[int]:
        """Expected payload size for a raw frame, or None if unknown."""
        size = parse_geometry(geometry)
        if size is None:
            return None
        width, height = size
        if self.pixel_format in _PLANAR_420_FORMATS:
            chroma = ((width + 1) // 2) * ((height + 1) // 2)
            return width * height + 2 * chroma
        bytes_per_pixel = _PACKED_BYTES_PER_PIXEL.get(self.pixel_format)
        if bytes_per_pixel is None:
            return None
        return width * height * bytes_per_pixel


@dataclass
class Segment:
    """One contiguous encoding unit with a stable geometry."""

    session_id: str
    sequence_index: int
    geometry: str
    path: str
    created_at: datetime
    status: SegmentStatus = SegmentStatus.RECORDING
    data_channel: Optional[Any] = None
    audio_channel: Optional[Any] = None
    error: Optional[str] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def transition(self, status: SegmentStatus) -> bool:
        """Move the segment forward in its lifecycle.

        Returns False when the segment is already in ``status`` or already
        settled; raises InvalidTransitionError on a backward move.
        """
        with self._lock:
            if self.status == status:
                return False
            if _SEGMENT_RANK[status] < _SEGMENT_RANK[self.status]:
                raise InvalidTransitionError(
                    f"segment {self.sequence_index}", self.status.value, status.value
                )
            # First settlement wins: finalized never flips to failed or back
            if self.settled:
                return False
            self.status = status
            return True

    @property
    def settled(self) -> bool:
        return self.status in (SegmentStatus.FINALIZED, SegmentStatus.FAILED)

    def is_accepting(self) -> bool:
        """True while frames may still be routed to this segment."""
        if self.status != SegmentStatus.RECORDING:
            return False
        return self.data_channel is not None and self.data_channel.writable

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence_index': self.sequence_index,
            'geometry': self.geometry,
            'path': self.path,
            'status': self.status.value,
            'created_at': self.created_at.isoformat(),
            'error': self.error,
        }


@dataclass
class Session:
    """One real-time connection and the segments recorded for it."""

    session_id: str
    input_spec: InputSpec
    created_at: datetime
    state: SessionState = SessionState.CONNECTING
    segments: List[Segment] = field(default_factory=list)
    history: List[Tuple[str, float]] = field(default_factory=list)
    end_reason: Optional[str] = None
    artifact_path: Optional[str] = None
    merge_error: Optional[str] = None
    closed_at: Optional[float] = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._state_changed = threading.Condition(self.lock)
        if not self.history:
            self.history.append((self.state.value, time.time()))

    @property
    def head(self) -> Optional[Segment]:
        """The most recently created segment, if any."""
        return self.segments[-1] if self.segments else None

    def next_sequence_index(self) -> int:
        if not self.segments:
            return 0
        return max(segment.sequence_index for segment in self.segments) + 1

    def all_segments_settled(self) -> bool:
        return all(segment.settled for segment in self.segments)

    def transition(self, new_state: SessionState) -> None:
        """Move to ``new_state``, raising InvalidTransitionError if not allowed."""
        with self._state_changed:
            if new_state not in _SESSION_TRANSITIONS[self.state]:
                raise InvalidTransitionError(
                    f"session {self.session_id}", self.state.value, new_state.value
                )
            self.state = new_state
            self.history.append((new_state.value, time.time()))
            if new_state == SessionState.CLOSED:
                self.closed_at = time.monotonic()
            self._state_changed.notify_all()

    def wait_for_state(self, *states: SessionState, timeout: Optional[float] = None) -> bool:
        """Block until the session reaches one of ``states``."""
        with self._state_changed:
            return self._state_changed.wait_for(lambda: self.state in states, timeout)

    def state_history(self) -> List[str]:
        return [state for state, _ in self.history]

    def to_dict(self) -> Dict[str, Any]:
        with self.lock:
            return {
                'session_id': self.session_id,
                'state': self.state.value,
                'mode': self.input_spec.mode,
                'created_at': self.created_at.isoformat(),
                'end_reason': self.end_reason,
                'artifact_path': self.artifact_path,
                'merge_error': self.merge_error,
                'history': [
                    {'state': state, 'at': datetime.fromtimestamp(at).isoformat()}
                    for state, at in self.history
                ],
                'segments': [segment.to_dict() for segment in self.segments],
            }
