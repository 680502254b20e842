#!/usr/bin/env python3
"""
Encoder process supervisor: one external encoder subprocess per segment.
"""

import logging
import os
import subprocess
import threading
import time
from concurrent.futures import Future, wait
from typing import Callable, Dict, List, NamedTuple, Optional

from config import CHANNEL_QUEUE_SIZE, PROCESS_STOP_TIMEOUT
from exceptions import EncoderProcessError, EncoderStartError, InvalidTransitionError
from logging_config import log_event, SEGMENT_FAILED, SEGMENT_FINALIZED
from models import InputSpec, Segment, SegmentStatus
from resource_managers import (
    create_named_pipe,
    release_pipe_writer,
    remove_named_pipe,
    terminate_process,
)

from .data_channel import DataChannel
from .ffmpeg_command_builder import FFmpegCommandBuilder
from .recording_path_manager import RecordingPathManager

STDERR_TAIL_BYTES = 4096


class JobResult(NamedTuple):
    """Outcome of one encoder subprocess."""
    success: bool
    returncode: Optional[int]
    error: Optional[str] = None


class EncoderJob:
    """Runtime binding between a segment and its encoder subprocess."""

    def __init__(
        self,
        segment: Segment,
        process: subprocess.Popen,
        audio_pipe: Optional[str] = None
    ):
        self.segment = segment
        self.process = process
        self.audio_pipe = audio_pipe
        self.started_at = time.monotonic()
        self.completion: "Future[JobResult]" = Future()
        self.completion.set_running_or_notify_cancel()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def finished(self) -> bool:
        """True once end-of-input has been signalled."""
        channel = self.segment.data_channel
        return channel is not None and channel.closed

    def done(self) -> bool:
        return self.completion.done()

    def add_done_callback(self, callback: Callable[['EncoderJob', JobResult], None]) -> None:
        """Call ``callback(job, result)`` once the subprocess has exited.

        Runs immediately in the calling thread if the job already finished.
        """
        self.completion.add_done_callback(lambda future: callback(self, future.result()))


class EncoderProcessSupervisor:
    """Owns the lifecycle of encoder subprocesses.

    Each job gets a watcher thread that waits for the subprocess to exit,
    settles the segment status and resolves the job's completion future.
    """

    def __init__(
        self,
        command_builder: Optional[FFmpegCommandBuilder] = None,
        path_manager: Optional[RecordingPathManager] = None,
        stop_timeout: float = PROCESS_STOP_TIMEOUT,
        channel_queue_size: int = CHANNEL_QUEUE_SIZE
    ):
        self.command_builder = command_builder or FFmpegCommandBuilder()
        self.path_manager = path_manager or RecordingPathManager()
        self.stop_timeout = stop_timeout
        self.channel_queue_size = channel_queue_size
        self.logger = logging.getLogger(__name__)
        self._jobs: Dict[str, EncoderJob] = {}
        self._lock = threading.Lock()

    def start_job(self, segment: Segment, input_spec: InputSpec) -> EncoderJob:
        """Launch the encoder for ``segment`` and wire its data channels.

        Raises:
            EncoderStartError: If the subprocess could not be launched; the
                segment is marked failed before the error is raised.
        """
        audio_pipe = None
        try:
            if input_spec.rotates and input_spec.audio:
                audio_pipe = create_named_pipe(self.path_manager.audio_pipe_path(segment.path))
            cmd = self.command_builder.build_encoder_command(
                segment.path, segment.geometry, input_spec, audio_pipe
            )
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE
            )
        except (OSError, ValueError) as e:
            if audio_pipe:
                remove_named_pipe(audio_pipe)
            segment.error = str(e)
            segment.transition(SegmentStatus.FAILED)
            log_event(
                self.logger, SEGMENT_FAILED, logging.ERROR,
                session=segment.session_id, seq=segment.sequence_index,
                path=segment.path, reason=f"start failed: {e}"
            )
            raise EncoderStartError(segment.path, str(e)) from e

        name = os.path.basename(segment.path)
        segment.data_channel = DataChannel(
            f"{name}:video", lambda: process.stdin, self.channel_queue_size
        ).start()
        if audio_pipe:
            segment.audio_channel = DataChannel(
                f"{name}:audio", lambda: open(audio_pipe, 'wb'), self.channel_queue_size
            ).start()

        job = EncoderJob(segment, process, audio_pipe)
        with self._lock:
            self._jobs[segment.path] = job

        watcher = threading.Thread(
            target=self._watch, args=(job,), name=f"encoder-{process.pid}", daemon=True
        )
        watcher.start()

        self.logger.info(f"Encoder started (PID: {process.pid}) >> {segment.path}")
        return job

    def feed(self, job: EncoderJob, chunk: bytes) -> bool:
        """Queue video/stream bytes for the job. False if dropped."""
        return job.segment.data_channel.write(chunk)

    def feed_audio(self, job: EncoderJob, chunk: bytes) -> bool:
        """Queue PCM audio for the job. False if dropped or no audio input."""
        channel = job.segment.audio_channel
        if channel is None:
            return False
        return channel.write(chunk)

    def finish(self, job: EncoderJob) -> bool:
        """Signal end-of-input so the encoder can complete.

        Calling it again on the same job is a no-op.

        Returns:
            True if this call closed the job's data channel
        """
        segment = job.segment
        closed = segment.data_channel.close()
        if segment.audio_channel is not None:
            segment.audio_channel.close()
        if not closed:
            self.logger.debug(f"Segment already finished: {segment.path}")
            return False

        try:
            segment.transition(SegmentStatus.FINALIZING)
        except InvalidTransitionError:
            self.logger.debug(f"Segment settled before finish: {segment.path} ({segment.status.value})")

        self.logger.info(f"Finishing segment {segment.sequence_index} >> {segment.path}")
        return True

    def job_for(self, segment: Segment) -> Optional[EncoderJob]:
        """Running job for a segment, or None once its subprocess exited."""
        with self._lock:
            return self._jobs.get(segment.path)

    def active_jobs(self) -> List[EncoderJob]:
        with self._lock:
            return list(self._jobs.values())

    def shutdown(self, timeout: Optional[float] = None) -> List[EncoderJob]:
        """Finish every running job and terminate the ones that won't exit.

        Returns:
            Jobs whose subprocess could not be reaped
        """
        wait_for = self.stop_timeout if timeout is None else timeout
        jobs = self.active_jobs()
        for job in jobs:
            self.finish(job)

        leaked = []
        wait([job.completion for job in jobs], timeout=wait_for)
        for job in jobs:
            if job.done():
                continue
            self.logger.warning(
                f"Encoder {job.pid} did not complete within {wait_for}s: {job.segment.path}"
            )
            if not terminate_process(job.process, self.stop_timeout):
                self.logger.error(f"Encoder {job.pid} leaked for segment {job.segment.path}")
                leaked.append(job)
        return leaked

    def _watch(self, job: EncoderJob) -> None:
        process = job.process
        stderr_tail = b''
        returncode = None
        try:
            if process.stderr is not None:
                for chunk in iter(lambda: process.stderr.read(1024), b''):
                    stderr_tail = (stderr_tail + chunk)[-STDERR_TAIL_BYTES:]
            returncode = process.wait()
        except Exception as e:
            self.logger.error(f"Error watching encoder {process.pid}: {e}", exc_info=True)
            stderr_tail = str(e).encode()
        finally:
            self._release_channels(job)

        error = stderr_tail.decode('utf-8', errors='replace').strip() or None
        self._settle(job, returncode, error)

    def _release_channels(self, job: EncoderJob) -> None:
        segment = job.segment
        for channel in (segment.data_channel, segment.audio_channel):
            if channel is not None:
                channel.close()

        if job.audio_pipe:
            audio = segment.audio_channel
            # A writer still blocked opening the FIFO needs a reader to return
            for _ in range(10):
                if audio is None or audio.opened or audio.wait_drained(0):
                    break
                release_pipe_writer(job.audio_pipe)
                if audio.wait_drained(0.1):
                    break
            remove_named_pipe(job.audio_pipe)

    def _settle(self, job: EncoderJob, returncode: Optional[int], error: Optional[str]) -> None:
        segment = job.segment
        if returncode == 0:
            segment.transition(SegmentStatus.FINALIZED)
            size = os.path.getsize(segment.path) if os.path.exists(segment.path) else 0
            log_event(
                self.logger, SEGMENT_FINALIZED,
                session=segment.session_id, seq=segment.sequence_index,
                path=segment.path, size=size
            )
            result = JobResult(True, returncode)
        else:
            failure = EncoderProcessError(segment.path, returncode, error)
            segment.error = str(failure)
            segment.transition(SegmentStatus.FAILED)
            log_event(
                self.logger, SEGMENT_FAILED, logging.ERROR,
                session=segment.session_id, seq=segment.sequence_index,
                path=segment.path, returncode=returncode, reason=error or failure.message
            )
            result = JobResult(False, returncode, segment.error)

        with self._lock:
            self._jobs.pop(segment.path, None)
        job.completion.set_result(result)
