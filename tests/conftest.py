"""Pytest configuration and shared fixtures."""

import sys
from typing import Dict, Iterable, Optional

import pytest

from models import InputSpec
from services.encoder_supervisor import EncoderProcessSupervisor
from services.ffmpeg_command_builder import FFmpegCommandBuilder
from services.recording_path_manager import RecordingPathManager
from services.segment_merger import SegmentMerger
from services.session_controller import SessionLifecycleController

# Stands in for the encoder: copies stdin to the output file, optionally
# drains an audio FIFO, sleeps, or exits non-zero after writing.
FAKE_ENCODER = """
import sys
import threading
import time

output = sys.argv[1]
args = sys.argv[2:]
audio = args[args.index('--audio') + 1] if '--audio' in args else None
delay = float(args[args.index('--delay') + 1]) if '--delay' in args else 0.0

def drain_audio():
    with open(audio, 'rb') as f:
        while f.read(65536):
            pass

reader = None
if audio:
    reader = threading.Thread(target=drain_audio, daemon=True)
    reader.start()

data = sys.stdin.buffer.read()
time.sleep(delay)
with open(output, 'wb') as f:
    f.write(data)
if reader is not None:
    reader.join(5)

if '--fail' in args:
    sys.stderr.write('simulated encoder failure\\n')
    sys.exit(1)
"""

# Stands in for the concat demuxer: joins manifest entries byte for byte.
FAKE_CONCAT = """
import sys

manifest, output = sys.argv[1], sys.argv[2]
if '--fail' in sys.argv[3:]:
    sys.stderr.write('simulated concat failure\\n')
    sys.exit(1)

paths = []
with open(manifest, encoding='utf-8') as f:
    for line in f:
        line = line.strip()
        if line.startswith('file '):
            paths.append(line[5:].strip()[1:-1].replace("'\\\\''", "'"))

with open(output, 'wb') as dst:
    for path in paths:
        with open(path, 'rb') as src:
            dst.write(src.read())
"""


class ScriptCommandBuilder(FFmpegCommandBuilder):
    """Command builder that launches the fake scripts instead of ffmpeg.

    Encoder invocations are numbered in launch order; ``fail_on`` and
    ``delays`` are keyed by that number.
    """

    def __init__(
        self,
        encoder_script: str,
        concat_script: str,
        fail_on: Iterable[int] = (),
        delays: Optional[Dict[int, float]] = None,
        concat_fail: bool = False
    ):
        super().__init__(ffmpeg_command=sys.executable)
        self.encoder_script = encoder_script
        self.concat_script = concat_script
        self.fail_on = set(fail_on)
        self.delays = delays or {}
        self.concat_fail = concat_fail
        self.launched = 0

    def build_encoder_command(self, output_file, geometry, input_spec, audio_pipe=None):
        index = self.launched
        self.launched += 1
        cmd = [sys.executable, self.encoder_script, output_file]
        if audio_pipe:
            cmd.extend(['--audio', audio_pipe])
        if index in self.delays:
            cmd.extend(['--delay', str(self.delays[index])])
        if index in self.fail_on:
            cmd.append('--fail')
        return cmd

    def build_concat_command(self, manifest_file, output_file):
        cmd = [sys.executable, self.concat_script, manifest_file, output_file]
        if self.concat_fail:
            cmd.append('--fail')
        return cmd


@pytest.fixture
def temp_output_dir(tmp_path):
    """Provide a temporary output directory for recordings."""
    output_dir = tmp_path / "recordings"
    output_dir.mkdir()
    return str(output_dir)


@pytest.fixture
def encoder_script(tmp_path):
    path = tmp_path / "fake_encoder.py"
    path.write_text(FAKE_ENCODER)
    return str(path)


@pytest.fixture
def concat_script(tmp_path):
    path = tmp_path / "fake_concat.py"
    path.write_text(FAKE_CONCAT)
    return str(path)


@pytest.fixture
def path_manager(temp_output_dir):
    return RecordingPathManager(output_dir=temp_output_dir, format_ext='mp4')


@pytest.fixture
def make_builder(encoder_script, concat_script):
    """Factory for script-backed command builders."""
    def factory(**kwargs):
        return ScriptCommandBuilder(encoder_script, concat_script, **kwargs)
    return factory


@pytest.fixture
def command_builder(make_builder):
    return make_builder()


@pytest.fixture
def make_controller(path_manager, make_builder):
    """Factory for a started controller wired to the fake scripts.

    Every controller built here is shut down after the test.
    """
    controllers = []

    def factory(**builder_kwargs):
        builder = make_builder(**builder_kwargs)
        supervisor = EncoderProcessSupervisor(
            command_builder=builder,
            path_manager=path_manager,
            stop_timeout=2
        )
        controller = SessionLifecycleController(
            path_manager=path_manager,
            supervisor=supervisor,
            merger=SegmentMerger(path_manager, builder),
            finalize_check_interval=0.05
        ).start()
        controller.command_builder = builder
        controllers.append(controller)
        return controller

    yield factory

    for controller in controllers:
        controller.shutdown(timeout=5)


@pytest.fixture
def controller(make_controller):
    return make_controller()


@pytest.fixture
def raw_spec():
    """Raw yuv420p input without audio."""
    return InputSpec(audio=False)


@pytest.fixture
def yuv_frame():
    """Build a yuv420p payload of the right size filled with one byte."""
    def factory(geometry: str, fill: bytes = b'a') -> bytes:
        size = InputSpec(pixel_format='yuv420p').expected_frame_size(geometry)
        return fill * size
    return factory
