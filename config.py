#!/usr/bin/env python3
"""
Configuration module for the adaptive segment recorder.
Centralizes all configuration values for easier testing and maintenance.
"""

import os
import logging
import pytz
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# Timezone used for timestamp-derived file names
RECORDING_TZ = pytz.timezone(os.getenv("RECORDING_TZ", "UTC"))

# Directory paths
OUTPUT_DIR = os.getenv("OUTPUT_DIR", "./recordings")
LOG_DIR = os.getenv("LOG_DIR", "./logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# File naming
SEGMENT_PREFIX = "segment_"
ARTIFACT_PREFIX = "recording_"
MANIFEST_PREFIX = "concat_"

# Web server settings (operator status API)
WEB_HOST = os.getenv("WEB_HOST", "0.0.0.0")
WEB_PORT = int(os.getenv("WEB_PORT", "3000"))

# External command settings
FFMPEG_COMMAND = os.getenv("FFMPEG_COMMAND", "ffmpeg")

# Encoding profile. Kept fixed across rotations so segments can be
# concatenated without re-encoding; only the input geometry varies.
RECORDING_FORMAT = os.getenv("RECORDING_FORMAT", "mp4")  # mp4, mkv or ts
OUTPUT_VIDEO_SIZE = os.getenv("OUTPUT_VIDEO_SIZE", "320x240")
VIDEO_FRAME_RATE = int(os.getenv("VIDEO_FRAME_RATE", "30"))
VIDEO_PIXEL_FORMAT = os.getenv("VIDEO_PIXEL_FORMAT", "yuv420p")
VIDEO_CODEC = os.getenv("VIDEO_CODEC", "libx264")
AUDIO_CODEC = os.getenv("AUDIO_CODEC", "aac")

# Raw PCM audio fed next to raw video frames
ENABLE_AUDIO = os.getenv("ENABLE_AUDIO", "true").lower() == "true"
AUDIO_SAMPLE_RATE = int(os.getenv("AUDIO_SAMPLE_RATE", "48000"))
AUDIO_CHANNELS = int(os.getenv("AUDIO_CHANNELS", "1"))
AUDIO_SAMPLE_FORMAT = "s16le"

# Pipe and process tuning
ENCODER_THREAD_QUEUE_SIZE = int(os.getenv("ENCODER_THREAD_QUEUE_SIZE", "8192"))
CHANNEL_QUEUE_SIZE = int(os.getenv("CHANNEL_QUEUE_SIZE", "120"))
PROCESS_STOP_TIMEOUT = int(os.getenv("PROCESS_STOP_TIMEOUT", "10"))

# Session lifecycle
FINALIZE_CHECK_INTERVAL = float(os.getenv("FINALIZE_CHECK_INTERVAL", "1.0"))
MERGE_WORKERS = int(os.getenv("MERGE_WORKERS", "2"))
CLOSED_SESSION_RETENTION = int(os.getenv("CLOSED_SESSION_RETENTION", "3600"))

VALID_RECORDING_FORMATS = ["mp4", "mkv", "ts"]


@dataclass
class AppConfig:
    """
    Type-safe configuration with validation.

    Ensures all settings are present and consistent before the recorder
    starts accepting sessions.
    """

    # Directory paths
    output_dir: str
    log_dir: str
    log_level: str

    # Web server settings
    web_host: str
    web_port: int

    # External command settings
    ffmpeg_command: str

    # Encoding profile
    recording_format: str
    output_video_size: str
    video_frame_rate: int
    video_pixel_format: str
    video_codec: str
    audio_codec: str

    # Audio input
    enable_audio: bool
    audio_sample_rate: int
    audio_channels: int

    # Pipe and process tuning
    encoder_thread_queue_size: int
    channel_queue_size: int
    process_stop_timeout: int

    # Session lifecycle
    finalize_check_interval: float
    merge_workers: int
    closed_session_retention: int

    # Timezone
    timezone: pytz.tzinfo.BaseTzInfo = field(default_factory=lambda: RECORDING_TZ)

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """
        Create an AppConfig instance from environment variables.

        Returns:
            AppConfig: Validated configuration instance

        Raises:
            ValueError: If any configuration validation fails
        """
        config = cls(
            output_dir=OUTPUT_DIR,
            log_dir=LOG_DIR,
            log_level=LOG_LEVEL,
            web_host=WEB_HOST,
            web_port=WEB_PORT,
            ffmpeg_command=FFMPEG_COMMAND,
            recording_format=RECORDING_FORMAT,
            output_video_size=OUTPUT_VIDEO_SIZE,
            video_frame_rate=VIDEO_FRAME_RATE,
            video_pixel_format=VIDEO_PIXEL_FORMAT,
            video_codec=VIDEO_CODEC,
            audio_codec=AUDIO_CODEC,
            enable_audio=ENABLE_AUDIO,
            audio_sample_rate=AUDIO_SAMPLE_RATE,
            audio_channels=AUDIO_CHANNELS,
            encoder_thread_queue_size=ENCODER_THREAD_QUEUE_SIZE,
            channel_queue_size=CHANNEL_QUEUE_SIZE,
            process_stop_timeout=PROCESS_STOP_TIMEOUT,
            finalize_check_interval=FINALIZE_CHECK_INTERVAL,
            merge_workers=MERGE_WORKERS,
            closed_session_retention=CLOSED_SESSION_RETENTION,
            timezone=RECORDING_TZ,
        )

        config.validate()

        return config

    def validate(self) -> None:
        """
        Validate the configuration.

        Raises:
            ValueError: If any validation check fails with a descriptive message
        """
        errors = []

        # Validate output directory
        if not self.output_dir:
            errors.append("OUTPUT_DIR must not be empty")
        else:
            output_path = Path(self.output_dir)
            try:
                output_path.mkdir(parents=True, exist_ok=True)
                test_file = output_path / ".write_test"
                try:
                    test_file.touch()
                    test_file.unlink()
                except (OSError, PermissionError) as e:
                    errors.append(f"OUTPUT_DIR '{self.output_dir}' is not writable: {e}")
            except (OSError, PermissionError) as e:
                errors.append(f"Cannot create OUTPUT_DIR '{self.output_dir}': {e}")

        if not self.ffmpeg_command:
            errors.append("FFMPEG_COMMAND must not be empty")

        # Validate encoding profile
        if self.recording_format not in VALID_RECORDING_FORMATS:
            errors.append(
                f"RECORDING_FORMAT must be one of {VALID_RECORDING_FORMATS} "
                f"(got '{self.recording_format}')"
            )

        if parse_geometry(self.output_video_size) is None:
            errors.append(
                f"OUTPUT_VIDEO_SIZE must look like WIDTHxHEIGHT "
                f"(got '{self.output_video_size}')"
            )

        if self.video_frame_rate <= 0:
            errors.append(f"VIDEO_FRAME_RATE must be positive (got {self.video_frame_rate})")

        # Validate audio input
        if self.enable_audio:
            if self.audio_sample_rate <= 0:
                errors.append(
                    f"AUDIO_SAMPLE_RATE must be positive (got {self.audio_sample_rate})"
                )
            if self.audio_channels not in (1, 2):
                errors.append(f"AUDIO_CHANNELS must be 1 or 2 (got {self.audio_channels})")

        # Validate pipe and process tuning
        if self.channel_queue_size <= 0:
            errors.append(f"CHANNEL_QUEUE_SIZE must be positive (got {self.channel_queue_size})")

        if self.process_stop_timeout <= 0:
            errors.append(
                f"PROCESS_STOP_TIMEOUT must be positive (got {self.process_stop_timeout})"
            )

        # Validate session lifecycle settings
        if self.finalize_check_interval <= 0:
            errors.append(
                f"FINALIZE_CHECK_INTERVAL must be positive (got {self.finalize_check_interval})"
            )

        if self.merge_workers < 1:
            errors.append(f"MERGE_WORKERS must be at least 1 (got {self.merge_workers})")

        if self.closed_session_retention < 0:
            errors.append(
                f"CLOSED_SESSION_RETENTION must be non-negative "
                f"(got {self.closed_session_retention})"
            )

        # Validate web server settings
        if self.web_port < 1 or self.web_port > 65535:
            errors.append(
                f"WEB_PORT must be between 1 and 65535 (got {self.web_port})"
            )

        if errors:
            error_message = "Configuration validation failed:\n" + "\n".join(
                f"  - {error}" for error in errors
            )
            logger.error(error_message)
            raise ValueError(error_message)

        logger.info("Configuration validation passed")


def parse_geometry(value: str):
    """Parse a ``WIDTHxHEIGHT`` string into a ``(width, height)`` tuple.

    Returns None when the value is not a positive resolution.
    """
    if not value or 'x' not in value:
        return None
    width, _, height = value.partition('x')
    if not (width.isdigit() and height.isdigit()):
        return None
    width_px, height_px = int(width), int(height)
    if width_px <= 0 or height_px <= 0:
        return None
    return width_px, height_px


def validate_config() -> AppConfig:
    """
    Convenience function to validate configuration from environment.

    Returns:
        AppConfig: Validated configuration instance

    Raises:
        ValueError: If any configuration validation fails
    """
    return AppConfig.from_env()
