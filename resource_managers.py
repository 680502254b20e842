#!/usr/bin/env python3
"""
Resource management helpers for the segment recorder.
Provides guaranteed cleanup for encoder processes, named pipes and concat manifests.
"""

import os
import signal
import subprocess
import logging
from contextlib import contextmanager
from typing import Iterable, Iterator


logger = logging.getLogger(__name__)


def terminate_process(process: subprocess.Popen, timeout: float) -> bool:
    """
    Stop a subprocess with escalating termination signals.

    SIGINT goes first so ffmpeg can write its trailer, then SIGTERM and
    finally SIGKILL.

    Args:
        process: Process to stop
        timeout: Maximum seconds to wait for graceful shutdown

    Returns:
        True if the process is gone afterwards, False if it could not be reaped
    """
    if process.poll() is not None:
        logger.debug(f"Process {process.pid} already terminated with code {process.returncode}")
        return True

    logger.info(f"Stopping process {process.pid} gracefully with SIGINT...")
    try:
        if hasattr(signal, 'SIGINT'):
            process.send_signal(signal.SIGINT)
        else:
            process.terminate()
    except OSError as e:
        logger.warning(f"Could not send SIGINT to {process.pid}: {e}")
        process.terminate()

    try:
        process.wait(timeout=timeout)
        logger.info(f"Process {process.pid} stopped gracefully")
        return True
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {process.pid} did not stop within {timeout}s, escalating...")

    if process.poll() is None:
        logger.warning(f"Sending SIGTERM to {process.pid}...")
        process.terminate()
        try:
            process.wait(timeout=2)
            logger.info(f"Process {process.pid} terminated")
            return True
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {process.pid} did not respond to SIGTERM")

    if process.poll() is None:
        logger.warning(f"Force killing process {process.pid} with SIGKILL...")
        process.kill()
        try:
            process.wait(timeout=1)
            logger.warning(f"Process {process.pid} killed")
        except subprocess.TimeoutExpired:
            logger.error(f"Process {process.pid} could not be killed - may be zombie")
            return False

    return True


@contextmanager
def concat_manifest(manifest_path: str, entries: Iterable[str]) -> Iterator[str]:
    """
    Write an ffmpeg concat demuxer list and remove it after a clean exit.

    The manifest is left on disk when the body raises so a failed merge can
    be reproduced by hand.

    Args:
        manifest_path: Where to write the list
        entries: Segment file paths in merge order

    Yields:
        str: Path to the manifest
    """
    with open(manifest_path, 'w', encoding='utf-8') as f:
        for entry in entries:
            escaped = os.path.abspath(entry).replace("'", "'\\''")
            f.write(f"file '{escaped}'\n")
    logger.debug(f"Wrote concat manifest: {manifest_path}")

    yield manifest_path

    try:
        os.remove(manifest_path)
        logger.debug(f"Cleaned up concat manifest: {manifest_path}")
    except OSError as e:
        logger.warning(f"Could not remove concat manifest {manifest_path}: {e}")


def create_named_pipe(pipe_path: str) -> str:
    """Create a FIFO at ``pipe_path``, replacing a stale one left by a crash."""
    if os.path.exists(pipe_path):
        logger.warning(f"Removing stale named pipe: {pipe_path}")
        os.remove(pipe_path)
    os.mkfifo(pipe_path, 0o600)
    return pipe_path


def remove_named_pipe(pipe_path: str) -> None:
    """Remove a FIFO if it still exists."""
    try:
        os.remove(pipe_path)
        logger.debug(f"Removed named pipe: {pipe_path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove named pipe {pipe_path}: {e}")


def release_pipe_writer(pipe_path: str) -> None:
    """
    Unblock a writer stuck opening ``pipe_path`` because no reader ever came.

    Opening the read end without blocking lets the pending ``open()`` for
    writing return; closing it straight away makes the writer's next write
    fail with a broken pipe.
    """
    try:
        fd = os.open(pipe_path, os.O_RDONLY | os.O_NONBLOCK)
    except FileNotFoundError:
        return
    except OSError as e:
        logger.warning(f"Could not release writer on {pipe_path}: {e}")
        return
    os.close(fd)

