#!/usr/bin/env python3
"""
Session lifecycle controller for orchestrating recording sessions.

State machine per session:

    connecting -> streaming -> draining -> merging -> closed

A session may be ended or disconnected while connecting or streaming. A
draining session with no finalized segment skips merging and closes directly.

Only this controller moves a session into draining (finishing the head
segment) or merging (invoking the merger). Transport disconnects arrive as
plain calls to ``on_disconnect``.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Optional

from config import (
    CLOSED_SESSION_RETENTION,
    FINALIZE_CHECK_INTERVAL,
    MERGE_WORKERS,
    RECORDING_TZ,
)
from exceptions import FrameError, MergeError, SessionError
from models import Frame, InputSpec, Session, SessionState
from session_store import SessionStore

from .encoder_supervisor import EncoderJob, EncoderProcessSupervisor, JobResult
from .recording_path_manager import RecordingPathManager
from .segment_manager import SegmentManager
from .segment_merger import SegmentMerger

_LIVE_STATES = (SessionState.CONNECTING, SessionState.STREAMING)


class SessionLifecycleController:
    """Owns per-session state and drives draining and merging."""

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        path_manager: Optional[RecordingPathManager] = None,
        supervisor: Optional[EncoderProcessSupervisor] = None,
        merger: Optional[SegmentMerger] = None,
        segment_manager: Optional[SegmentManager] = None,
        finalize_check_interval: float = FINALIZE_CHECK_INTERVAL,
        merge_workers: int = MERGE_WORKERS,
        closed_session_retention: float = CLOSED_SESSION_RETENTION,
        timezone: Any = RECORDING_TZ
    ):
        self.store = store or SessionStore()
        self.path_manager = path_manager or RecordingPathManager()
        self.supervisor = supervisor or EncoderProcessSupervisor(path_manager=self.path_manager)
        self.merger = merger or SegmentMerger(self.path_manager)
        self.segment_manager = segment_manager or SegmentManager(self.supervisor, self.path_manager)
        self.segment_manager.job_listener = self._on_job_done
        self.finalize_check_interval = finalize_check_interval
        self.closed_session_retention = closed_session_retention
        self.timezone = timezone
        self.logger = logging.getLogger(__name__)

        self._merge_pool = ThreadPoolExecutor(max_workers=merge_workers, thread_name_prefix="merge")
        self._merges: Dict[str, Future] = {}
        self._accepting = True
        self._stop = threading.Event()
        self._checker: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    def start(self) -> 'SessionLifecycleController':
        """Prepare the output directory and start the fallback finalize checker."""
        self.path_manager.ensure_output_directory()
        if self._checker is None:
            self._checker = threading.Thread(
                target=self._checker_loop, name="finalize-checker", daemon=True
            )
            self._checker.start()
        return self

    def shutdown(self, timeout: float = 30.0) -> None:
        """Drain every live session, wait for merges, then stop background work."""
        self._accepting = False
        self.logger.info("Shutting down: draining live sessions")
        for session in self.store.in_state(*_LIVE_STATES):
            self.session_end(session.session_id, reason="shutdown")

        if not self.wait_idle(timeout):
            self.logger.warning("Sessions still draining at shutdown, terminating encoders")

        leaked = self.supervisor.shutdown()
        if leaked:
            self.logger.error(f"{len(leaked)} encoder process(es) could not be reaped")

        # Terminated encoders settle their segments; give their merges a chance
        self.check_draining_sessions()
        self.wait_idle(timeout)

        self._merge_pool.shutdown(wait=True)
        self._stop.set()
        if self._checker is not None:
            self._checker.join(timeout=self.finalize_check_interval * 2)

        for session in self.store.in_state(SessionState.DRAINING, SessionState.MERGING):
            self.logger.error(
                f"Session {session.session_id} left in {session.state.value} at shutdown; "
                f"segment files stay on disk"
            )

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no session is draining and no merge is running."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            busy = self.store.in_state(SessionState.DRAINING) or any(
                not future.done() for future in list(self._merges.values())
            )
            if not busy:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.05)

    # ------------------------------------------------------------------
    # Inbound interface
    # ------------------------------------------------------------------

    def session_start(
        self,
        session_id: str,
        encoding_hint: Optional[str] = None,
        audio: Optional[bool] = None
    ) -> Session:
        """Begin a session in ``connecting``.

        Args:
            session_id: Stable id of the connection
            encoding_hint: None/``raw`` for decoded frames, or the container of
                a pre-encoded byte stream (e.g. ``webm``)
            audio: Whether raw-frame segments get an audio input; defaults to
                the configured setting

        Raises:
            SessionError: If the controller is shutting down
            DuplicateSessionError: If the id is already registered
        """
        if not self._accepting:
            raise SessionError("Controller is shutting down", f"rejected session {session_id}")

        spec = InputSpec.from_hint(encoding_hint)
        if audio is not None:
            spec = replace(spec, audio=spec.audio and audio)

        session = Session(session_id, spec, created_at=datetime.now(self.timezone))
        self.store.add(session)
        self.logger.info(
            f"Session {session_id} connecting (mode={spec.mode}, audio={spec.audio})"
        )
        return session

    def mark_streaming(self, session_id: str) -> bool:
        """Explicit start signal from the media sink."""
        session = self.store.get(session_id)
        if session is None:
            self.logger.warning(f"Start signal for unknown session {session_id}")
            return False
        with session.lock:
            if session.state != SessionState.CONNECTING:
                return False
            session.transition(SessionState.STREAMING)
        self.logger.info(f"Session {session_id} streaming")
        return True

    def frame(self, session_id: str, geometry_key: str, payload: bytes) -> bool:
        """Deliver one video frame (or byte-stream chunk).

        Returns:
            True if the payload was queued for an encoder
        """
        session = self.store.get(session_id)
        if session is None:
            self.logger.warning(f"Frame for unknown session {session_id} dropped")
            return False

        with session.lock:
            if session.state not in _LIVE_STATES:
                self.logger.debug(f"Frame for {session.state.value} session {session_id} dropped")
                return False
            try:
                queued = self.segment_manager.on_frame(session, Frame(geometry_key, payload))
            except FrameError as e:
                self.logger.warning(str(e))
                return False
            if session.state == SessionState.CONNECTING:
                session.transition(SessionState.STREAMING)
                self.logger.info(f"Session {session_id} streaming")
            return queued

    def audio(self, session_id: str, payload: bytes) -> bool:
        """Deliver PCM audio for the session's current segment."""
        session = self.store.get(session_id)
        if session is None:
            return False
        with session.lock:
            return self.segment_manager.on_audio(session, payload)

    def session_end(self, session_id: str, reason: str = "client") -> bool:
        """Begin draining. Repeat triggers are ignored.

        Returns:
            True if this call started the drain
        """
        session = self.store.get(session_id)
        if session is None:
            self.logger.warning(f"End requested for unknown session {session_id}")
            return False

        with session.lock:
            if session.state not in _LIVE_STATES:
                self.logger.debug(
                    f"Session {session_id} already {session.state.value}, ignoring end ({reason})"
                )
                return False

            session.end_reason = reason
            session.transition(SessionState.DRAINING)
            self.logger.info(
                f"Session {session_id} draining ({reason}), {len(session.segments)} segment(s)"
            )
            for segment in session.segments:
                job = self.supervisor.job_for(segment)
                if job is not None:
                    self.supervisor.finish(job)
            self._check_drained(session)
        return True

    def on_disconnect(self, session_id: str, reason: str = "disconnect") -> bool:
        """Transport-level disconnect, failure or timeout."""
        return self.session_end(session_id, reason=reason)

    # ------------------------------------------------------------------
    # Draining and merging
    # ------------------------------------------------------------------

    def merge_future(self, session_id: str) -> Optional[Future]:
        return self._merges.get(session_id)

    def check_draining_sessions(self) -> None:
        """Re-evaluate every draining session; the timer backstop."""
        for session in self.store.in_state(SessionState.DRAINING):
            with session.lock:
                self._check_drained(session)

    def _on_job_done(self, session: Session, job: EncoderJob, result: JobResult) -> None:
        with session.lock:
            if not result.success:
                self.logger.warning(
                    f"Segment {job.segment.sequence_index} of session {session.session_id} failed; "
                    f"session continues"
                )
            self._check_drained(session)

    def _check_drained(self, session: Session) -> bool:
        # Caller holds session.lock
        if session.state != SessionState.DRAINING or not session.all_segments_settled():
            return False

        if not session.segments:
            session.transition(SessionState.CLOSED)
            self.logger.info(f"Session {session.session_id} closed with no segments")
            return True

        if not self.merger.merge_inputs(session):
            session.transition(SessionState.CLOSED)
            self.logger.warning(
                f"Session {session.session_id} closed with no finalized segments; "
                f"{len(session.segments)} failed segment(s) left on disk"
            )
            return True

        session.transition(SessionState.MERGING)
        try:
            self._merges[session.session_id] = self._merge_pool.submit(self._run_merge, session)
        except RuntimeError as e:
            session.merge_error = f"merge not scheduled: {e}"
            self.logger.error(f"Could not schedule merge for session {session.session_id}: {e}")
        return True

    def _run_merge(self, session: Session) -> Optional[str]:
        try:
            artifact = self.merger.merge(session)
        except MergeError as e:
            with session.lock:
                session.merge_error = str(e)
            self.logger.error(
                f"Session {session.session_id} held in merging for inspection: {e}"
            )
            return None
        except Exception as e:
            with session.lock:
                session.merge_error = str(e)
            self.logger.error(f"Unexpected merge error for session {session.session_id}: {e}", exc_info=True)
            return None

        with session.lock:
            session.artifact_path = artifact
            session.transition(SessionState.CLOSED)
        if artifact:
            self.logger.info(f"Session {session.session_id} closed, recording saved: {artifact}")
        else:
            self.logger.info(f"Session {session.session_id} closed, no finalized segments")
        return artifact

    def _checker_loop(self) -> None:
        while not self._stop.wait(self.finalize_check_interval):
            try:
                self.check_draining_sessions()
                for session_id in self.store.prune_closed(self.closed_session_retention):
                    self._merges.pop(session_id, None)
                    self.logger.debug(f"Pruned closed session {session_id}")
            except Exception as e:
                self.logger.error(f"Finalize check failed: {e}", exc_info=True)
