#!/usr/bin/env python3
"""
Entry point for the adaptive segment recorder.

Builds the recording pipeline, serves the operator status API and drains
every live session on SIGINT/SIGTERM before exiting.
"""

import logging
import signal
import sys

from config import AppConfig, validate_config
from logging_config import setup_logging
from services import (
    EncoderProcessSupervisor,
    FFmpegCommandBuilder,
    RecordingPathManager,
    SegmentManager,
    SegmentMerger,
    SessionLifecycleController,
)
from session_store import SessionStore
import web_server

logger = logging.getLogger(__name__)


def build_controller(config: AppConfig) -> SessionLifecycleController:
    """Wire the pipeline components from a validated configuration."""
    path_manager = RecordingPathManager(
        output_dir=config.output_dir,
        format_ext=config.recording_format,
        timezone=config.timezone
    )
    command_builder = FFmpegCommandBuilder(
        ffmpeg_command=config.ffmpeg_command,
        output_size=config.output_video_size,
        video_codec=config.video_codec,
        audio_codec=config.audio_codec,
        thread_queue_size=config.encoder_thread_queue_size
    )
    supervisor = EncoderProcessSupervisor(
        command_builder=command_builder,
        path_manager=path_manager,
        stop_timeout=config.process_stop_timeout,
        channel_queue_size=config.channel_queue_size
    )
    return SessionLifecycleController(
        store=SessionStore(),
        path_manager=path_manager,
        supervisor=supervisor,
        merger=SegmentMerger(path_manager, command_builder),
        segment_manager=SegmentManager(supervisor, path_manager, timezone=config.timezone),
        finalize_check_interval=config.finalize_check_interval,
        merge_workers=config.merge_workers,
        closed_session_retention=config.closed_session_retention,
        timezone=config.timezone
    )


def install_signal_handlers(controller: SessionLifecycleController) -> None:
    """Drain sessions and exit on SIGINT/SIGTERM."""
    def handle_signal(signum, frame):
        logger.info(f"Received signal {signal.Signals(signum).name}, shutting down recorder...")
        controller.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


def main() -> int:
    """Main entry point."""
    try:
        config = validate_config()
    except ValueError as e:
        setup_logging()
        logger.critical(str(e))
        return 1

    setup_logging(log_level=config.log_level, log_dir=config.log_dir)

    logger.info("=" * 70)
    logger.info("Adaptive Segment Recorder")
    logger.info("=" * 70)
    logger.info(f"Output directory: {config.output_dir}")
    logger.info(f"Encoder: {config.ffmpeg_command} ({config.video_codec}, {config.output_video_size})")
    logger.info(f"Container: {config.recording_format}, audio: {config.enable_audio}")
    logger.info(f"Status API: http://{config.web_host}:{config.web_port}/api/health")
    logger.info("-" * 70)

    controller = build_controller(config).start()
    web_server.set_session_controller(controller)
    install_signal_handlers(controller)

    web_server.run_server(host=config.web_host, port=config.web_port)
    return 0


if __name__ == '__main__':
    sys.exit(main())
