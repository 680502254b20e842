#!/usr/bin/env python3
"""
Tests for configuration validation.

Tests the AppConfig dataclass and validation logic to ensure proper configuration
validation at startup.
"""

import os
import pytest
from dataclasses import replace
from importlib import reload
from unittest.mock import patch
from config import AppConfig, parse_geometry, RECORDING_TZ


@pytest.fixture
def reload_config():
    """Reload the config module, restoring env defaults after the test."""
    import config as config_module

    def do_reload():
        return reload(config_module)

    yield do_reload
    reload(config_module)


@pytest.fixture
def valid_config(tmp_path):
    """A configuration that passes validation."""
    return AppConfig(
        output_dir=str(tmp_path / "recordings"),
        log_dir=str(tmp_path / "logs"),
        log_level="INFO",
        web_host="127.0.0.1",
        web_port=3000,
        ffmpeg_command="ffmpeg",
        recording_format="mp4",
        output_video_size="320x240",
        video_frame_rate=30,
        video_pixel_format="yuv420p",
        video_codec="libx264",
        audio_codec="aac",
        enable_audio=True,
        audio_sample_rate=48000,
        audio_channels=1,
        encoder_thread_queue_size=8192,
        channel_queue_size=120,
        process_stop_timeout=10,
        finalize_check_interval=1.0,
        merge_workers=2,
        closed_session_retention=3600,
        timezone=RECORDING_TZ
    )


@pytest.mark.unit
class TestAppConfigValidation:
    """Test configuration validation logic."""

    def test_valid_config_from_defaults(self, tmp_path, reload_config):
        """Test that default configuration is valid."""
        with patch.dict(os.environ, {"OUTPUT_DIR": str(tmp_path / "output")}):
            config_module = reload_config()

            config = config_module.validate_config()
            assert isinstance(config, config_module.AppConfig)
            assert config.recording_format == "mp4"
            assert config.output_video_size == "320x240"
            assert config.web_port == 3000

    def test_explicit_config_is_valid(self, valid_config):
        valid_config.validate()

    def test_output_dir_created_if_not_exists(self, valid_config, tmp_path):
        """Test that OUTPUT_DIR is created if it doesn't exist."""
        new_dir = tmp_path / "new_output"
        assert not new_dir.exists()
        replace(valid_config, output_dir=str(new_dir)).validate()
        assert new_dir.is_dir()

    def test_output_dir_must_be_writable(self, valid_config, tmp_path):
        """Test that OUTPUT_DIR must be writable."""
        readonly_dir = tmp_path / "readonly"
        readonly_dir.mkdir()
        readonly_dir.chmod(0o555)
        try:
            if os.access(readonly_dir, os.W_OK):
                pytest.skip("running with privileges that ignore directory permissions")
            with pytest.raises(ValueError, match="not writable"):
                replace(valid_config, output_dir=str(readonly_dir)).validate()
        finally:
            readonly_dir.chmod(0o755)

    def test_recording_format_must_be_valid(self, valid_config):
        """Test that RECORDING_FORMAT must be a valid format."""
        with pytest.raises(ValueError, match="RECORDING_FORMAT must be one of"):
            replace(valid_config, recording_format="avi").validate()

    @pytest.mark.parametrize("fmt", ["mkv", "mp4", "ts"])
    def test_valid_recording_formats(self, valid_config, fmt):
        """Test that all valid recording formats are accepted."""
        replace(valid_config, recording_format=fmt).validate()

    @pytest.mark.parametrize("size", ["", "320", "320x", "x240", "0x240", "axb"])
    def test_output_video_size_must_be_geometry(self, valid_config, size):
        with pytest.raises(ValueError, match="OUTPUT_VIDEO_SIZE"):
            replace(valid_config, output_video_size=size).validate()

    def test_audio_channels_checked_only_when_audio_enabled(self, valid_config):
        with pytest.raises(ValueError, match="AUDIO_CHANNELS must be 1 or 2"):
            replace(valid_config, audio_channels=6).validate()
        replace(valid_config, audio_channels=6, enable_audio=False).validate()

    def test_merge_workers_must_be_positive(self, valid_config):
        with pytest.raises(ValueError, match="MERGE_WORKERS must be at least 1"):
            replace(valid_config, merge_workers=0).validate()

    def test_finalize_check_interval_must_be_positive(self, valid_config):
        with pytest.raises(ValueError, match="FINALIZE_CHECK_INTERVAL must be positive"):
            replace(valid_config, finalize_check_interval=0).validate()

    @pytest.mark.parametrize("port", [0, 65536, -1, 99999])
    def test_web_port_must_be_valid(self, valid_config, port):
        """Test that WEB_PORT must be between 1 and 65535."""
        with pytest.raises(ValueError, match="WEB_PORT must be between"):
            replace(valid_config, web_port=port).validate()

    def test_all_errors_reported_together(self, valid_config):
        with pytest.raises(ValueError) as exc_info:
            replace(valid_config, web_port=0, merge_workers=0, recording_format="avi").validate()
        message = str(exc_info.value)
        assert message.startswith("Configuration validation failed:")
        assert "WEB_PORT" in message
        assert "MERGE_WORKERS" in message
        assert "RECORDING_FORMAT" in message

    def test_env_overrides(self, tmp_path, reload_config):
        with patch.dict(os.environ, {
            "OUTPUT_DIR": str(tmp_path / "output"),
            "OUTPUT_VIDEO_SIZE": "640x360",
            "ENABLE_AUDIO": "false",
            "MERGE_WORKERS": "4",
        }):
            config_module = reload_config()

            config = config_module.validate_config()
            assert config.output_video_size == "640x360"
            assert config.enable_audio is False
            assert config.merge_workers == 4


@pytest.mark.unit
class TestParseGeometry:
    """Test WIDTHxHEIGHT parsing."""

    def test_valid(self):
        assert parse_geometry("640x480") == (640, 480)

    @pytest.mark.parametrize("value", [None, "", "640", "640x", "-1x2", "0x10", "1.5x2", "axb"])
    def test_invalid(self, value):
        assert parse_geometry(value) is None
