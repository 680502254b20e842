#!/usr/bin/env python3
"""
Services module for the adaptive segment recorder.
Provides the encoder supervisor, segment rotation, merging and session lifecycle.
"""

from .session_controller import SessionLifecycleController
from .segment_manager import SegmentManager
from .segment_merger import SegmentMerger
from .encoder_supervisor import EncoderJob, EncoderProcessSupervisor, JobResult

# Export building blocks for advanced usage
from .recording_path_manager import RecordingPathManager
from .ffmpeg_command_builder import FFmpegCommandBuilder
from .data_channel import DataChannel

__all__ = [
    'SessionLifecycleController',
    'SegmentManager',
    'SegmentMerger',
    'EncoderJob',
    'EncoderProcessSupervisor',
    'JobResult',
    'RecordingPathManager',
    'FFmpegCommandBuilder',
    'DataChannel',
]
