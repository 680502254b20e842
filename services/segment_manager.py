#!/usr/bin/env python3
"""
Segment manager: decides segment boundaries from incoming frame geometry.
"""

import logging
from datetime import datetime
from functools import partial
from typing import Any, Callable, Optional

from config import RECORDING_TZ, parse_geometry
from exceptions import EncoderStartError, FrameError
from logging_config import log_event, SEGMENT_CREATED
from models import Frame, Segment, Session, SessionState

from .encoder_supervisor import EncoderJob, EncoderProcessSupervisor, JobResult
from .recording_path_manager import RecordingPathManager

JobListener = Callable[[Session, EncoderJob, JobResult], None]

_ACCEPTING_STATES = (SessionState.CONNECTING, SessionState.STREAMING)


class SegmentManager:
    """Rotates segments when the incoming geometry changes.

    Callers must hold the session's lock; every method here mutates the
    session's segment list or its head segment.
    """

    def __init__(
        self,
        supervisor: EncoderProcessSupervisor,
        path_manager: Optional[RecordingPathManager] = None,
        job_listener: Optional[JobListener] = None,
        timezone: Any = RECORDING_TZ
    ):
        self.supervisor = supervisor
        self.path_manager = path_manager or supervisor.path_manager
        self.job_listener = job_listener
        self.timezone = timezone
        self.logger = logging.getLogger(__name__)

    def validate_frame(self, session: Session, frame: Frame) -> None:
        """Reject malformed frames before they reach an encoder.

        Raises:
            FrameError: If the payload is empty or does not match its geometry
        """
        if not frame.payload:
            raise FrameError(session.session_id, "empty payload")

        spec = session.input_spec
        if not spec.rotates:
            return

        if parse_geometry(frame.geometry) is None:
            raise FrameError(session.session_id, f"unsupported geometry '{frame.geometry}'")

        expected = spec.expected_frame_size(frame.geometry)
        if expected is not None and len(frame.payload) != expected:
            raise FrameError(
                session.session_id,
                f"{spec.pixel_format} frame {frame.geometry} should be {expected} bytes, "
                f"got {len(frame.payload)}"
            )

    def on_frame(self, session: Session, frame: Frame) -> bool:
        """Route one frame to the head segment, rotating first if needed.

        Returns:
            True if the payload was queued for an encoder
        """
        self.validate_frame(session, frame)
        geometry_key = session.input_spec.geometry_key(frame.geometry)

        head = self.rotate_if_needed(session, geometry_key)
        if head is None:
            return False

        job = self.supervisor.job_for(head)
        if job is None:
            self.logger.debug(f"Encoder for segment {head.sequence_index} already exited, frame dropped")
            return False
        return self.supervisor.feed(job, frame.payload)

    def on_audio(self, session: Session, payload: bytes) -> bool:
        """Route PCM audio to the head segment. Audio never causes a rotation."""
        head = session.head
        if session.state not in _ACCEPTING_STATES or head is None or not head.is_accepting():
            return False
        job = self.supervisor.job_for(head)
        if job is None:
            return False
        return self.supervisor.feed_audio(job, payload)

    def rotate_if_needed(self, session: Session, geometry_key: str) -> Optional[Segment]:
        """Return the segment that should receive frames with ``geometry_key``.

        A new segment is opened when there is no head, the geometry changed,
        or the head can no longer accept frames (finished or failed). The old
        head is finished before the new segment is created.

        Returns:
            The head segment, or None if no segment can accept frames
        """
        if session.state not in _ACCEPTING_STATES:
            self.logger.debug(
                f"Session {session.session_id} is {session.state.value}, not opening segments"
            )
            return None

        head = session.head
        if head is not None and head.geometry == geometry_key and head.is_accepting():
            return head

        if head is not None:
            if head.geometry != geometry_key:
                self.logger.info(
                    f"Geometry changed {head.geometry} -> {geometry_key} "
                    f"for session {session.session_id}, rotating"
                )
            else:
                self.logger.info(
                    f"Segment {head.sequence_index} of session {session.session_id} "
                    f"is {head.status.value}, starting a fresh one"
                )
            self.finish_segment(head)

        return self._open_segment(session, geometry_key)

    def finish_segment(self, segment: Segment) -> bool:
        """Signal end-of-input to a segment's encoder, if it is still running."""
        job = self.supervisor.job_for(segment)
        if job is None:
            # Subprocess already exited; its watcher closed the channels
            return False
        return self.supervisor.finish(job)

    def _open_segment(self, session: Session, geometry_key: str) -> Optional[Segment]:
        created_at = datetime.now(self.timezone)
        segment = Segment(
            session_id=session.session_id,
            sequence_index=session.next_sequence_index(),
            geometry=geometry_key,
            path=self.path_manager.segment_path(session.session_id, geometry_key, created_at),
            created_at=created_at,
        )
        session.segments.append(segment)
        log_event(
            self.logger, SEGMENT_CREATED,
            session=session.session_id, seq=segment.sequence_index,
            geometry=geometry_key, path=segment.path
        )

        try:
            job = self.supervisor.start_job(segment, session.input_spec)
        except EncoderStartError as e:
            self.logger.error(f"Segment {segment.sequence_index} of session {session.session_id}: {e}")
            return None

        if self.job_listener is not None:
            job.add_done_callback(partial(self.job_listener, session))
        return segment
