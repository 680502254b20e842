#!/usr/bin/env python3
"""
Recording path manager for segment, manifest and artifact file names.
"""

import itertools
import os
import re
import threading
from datetime import datetime
from typing import Any, Optional

from config import (
    OUTPUT_DIR,
    RECORDING_FORMAT,
    RECORDING_TZ,
    SEGMENT_PREFIX,
    ARTIFACT_PREFIX,
    MANIFEST_PREFIX,
)

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9_.-]+')


def safe_name(value: str, max_length: int = 48) -> str:
    """Reduce an arbitrary id to something safe inside a file name."""
    cleaned = _UNSAFE_CHARS.sub('-', value).strip('-.')
    return cleaned[:max_length] or 'session'


class RecordingPathManager:
    """Manages output file paths for segments and merged recordings.

    Segment paths are unique process-wide: they combine the session id, a
    timestamp and a monotonic counter shared by every session.
    """

    def __init__(
        self,
        output_dir: str = OUTPUT_DIR,
        format_ext: str = RECORDING_FORMAT,
        timezone: Any = RECORDING_TZ
    ):
        self.output_dir = output_dir
        self.format_ext = format_ext if format_ext in ['mkv', 'mp4', 'ts'] else 'mp4'
        self.timezone = timezone
        self._counter = itertools.count(1)
        self._counter_lock = threading.Lock()

    def _timestamp(self, when: Optional[datetime] = None) -> str:
        moment = when or datetime.now(self.timezone)
        return moment.strftime("%Y%m%d_%H%M%S_%f")

    def _next_counter(self) -> int:
        with self._counter_lock:
            return next(self._counter)

    def segment_path(self, session_id: str, geometry: str, when: Optional[datetime] = None) -> str:
        """Build a fresh, unique path for a new segment."""
        name = (
            f"{SEGMENT_PREFIX}{safe_name(session_id)}_{self._timestamp(when)}_"
            f"{self._next_counter():06d}_{safe_name(geometry, 16)}.{self.format_ext}"
        )
        return os.path.join(self.output_dir, name)

    def audio_pipe_path(self, segment_path: str) -> str:
        """Named pipe carrying PCM audio for a segment."""
        return f"{os.path.splitext(segment_path)[0]}.audio.fifo"

    def artifact_path(self, session_id: str, when: Optional[datetime] = None) -> str:
        """Path of the merged recording for a session."""
        name = f"{ARTIFACT_PREFIX}{safe_name(session_id)}_{self._timestamp(when)}.{self.format_ext}"
        return os.path.join(self.output_dir, name)

    def manifest_path(self, session_id: str, when: Optional[datetime] = None) -> str:
        """Path of the transient concat list for a session's merge."""
        name = f"{MANIFEST_PREFIX}{safe_name(session_id)}_{self._timestamp(when)}.txt"
        return os.path.join(self.output_dir, name)

    def ensure_output_directory(self) -> None:
        """Ensure the output directory exists."""
        os.makedirs(self.output_dir, exist_ok=True)
