#!/usr/bin/env python3
"""
Tests for process, manifest and named pipe cleanup helpers.
"""

import os
import stat
import subprocess
import sys
import threading
import time
import pytest
from unittest.mock import Mock

from resource_managers import (
    concat_manifest,
    create_named_pipe,
    release_pipe_writer,
    remove_named_pipe,
    terminate_process,
)


def spawn_script(tmp_path, script):
    path = tmp_path / "child.py"
    path.write_text(script)
    process = subprocess.Popen([sys.executable, str(path)])
    # Give the interpreter time to install its signal handlers
    time.sleep(0.3)
    return process


@pytest.mark.integration
class TestTerminateProcess:
    """Tests for escalating process termination."""

    def test_already_terminated_process(self):
        """Test cleanup of process that already exited."""
        process = subprocess.Popen([sys.executable, '-c', 'pass'])
        process.wait()

        assert terminate_process(process, timeout=1)

    def test_graceful_shutdown_with_sigint(self, tmp_path):
        """Test that SIGINT is sent first for graceful shutdown."""
        process = spawn_script(tmp_path, """
import signal
import sys
import time

def handler(signum, frame):
    sys.exit(0)

signal.signal(signal.SIGINT, handler)
time.sleep(10)
""")
        start_time = time.time()

        assert terminate_process(process, timeout=2)

        assert time.time() - start_time < 2
        assert process.returncode == 0

    def test_timeout_escalation(self, tmp_path):
        """Test that process is killed if it doesn't respond to SIGINT."""
        process = spawn_script(tmp_path, """
import signal
import time

signal.signal(signal.SIGINT, signal.SIG_IGN)
time.sleep(30)
""")
        start_time = time.time()

        assert terminate_process(process, timeout=1)

        assert time.time() - start_time < 5
        assert process.poll() is not None

    def test_unkillable_process_reported(self):
        """A process that never exits is reported as not reaped."""
        process = Mock()
        process.pid = 4242
        process.poll.return_value = None
        process.wait.side_effect = subprocess.TimeoutExpired(cmd='encoder', timeout=1)

        assert terminate_process(process, timeout=0.1) is False
        process.kill.assert_called_once()


@pytest.mark.unit
class TestConcatManifest:
    """Tests for the concat manifest context manager."""

    def test_writes_entries_in_order(self, tmp_path):
        manifest = tmp_path / "concat.txt"
        entries = [str(tmp_path / "b.mp4"), str(tmp_path / "a.mp4")]

        with concat_manifest(str(manifest), entries) as path:
            lines = manifest.read_text().splitlines()
            assert path == str(manifest)
            assert lines == [f"file '{entries[0]}'", f"file '{entries[1]}'"]

        assert not manifest.exists()

    def test_quotes_are_escaped(self, tmp_path):
        manifest = tmp_path / "concat.txt"
        entry = str(tmp_path / "it's.mp4")

        with concat_manifest(str(manifest), [entry]):
            content = manifest.read_text()

        assert "it'\\''s.mp4" in content

    def test_relative_entries_made_absolute(self, tmp_path):
        manifest = tmp_path / "concat.txt"

        with concat_manifest(str(manifest), ["segment.mp4"]):
            content = manifest.read_text()

        assert os.path.abspath("segment.mp4") in content

    def test_manifest_kept_on_exception(self, tmp_path):
        manifest = tmp_path / "concat.txt"

        with pytest.raises(RuntimeError):
            with concat_manifest(str(manifest), ["a.mp4"]):
                raise RuntimeError("merge failed")

        assert manifest.exists()


@pytest.mark.unit
class TestNamedPipes:
    """Tests for the audio FIFO helpers."""

    def test_create_and_remove(self, tmp_path):
        pipe = str(tmp_path / "audio.fifo")

        assert create_named_pipe(pipe) == pipe
        assert stat.S_ISFIFO(os.stat(pipe).st_mode)

        remove_named_pipe(pipe)
        assert not os.path.exists(pipe)

    def test_create_replaces_stale_file(self, tmp_path):
        pipe = tmp_path / "audio.fifo"
        pipe.write_text("stale")

        create_named_pipe(str(pipe))

        assert stat.S_ISFIFO(os.stat(pipe).st_mode)

    def test_remove_missing_pipe_is_noop(self, tmp_path):
        remove_named_pipe(str(tmp_path / "missing.fifo"))

    def test_release_unblocks_pending_writer(self, tmp_path):
        pipe = create_named_pipe(str(tmp_path / "audio.fifo"))
        opened = threading.Event()

        def open_writer():
            with open(pipe, 'wb'):
                opened.set()

        writer = threading.Thread(target=open_writer, daemon=True)
        writer.start()
        time.sleep(0.1)
        assert not opened.is_set()

        release_pipe_writer(pipe)

        assert opened.wait(2)
        writer.join(2)

    def test_release_missing_pipe_is_noop(self, tmp_path):
        release_pipe_writer(str(tmp_path / "missing.fifo"))
