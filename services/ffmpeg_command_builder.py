#!/usr/bin/env python3
"""
FFmpeg command builder for segment encoders and the final concatenation.
"""

from typing import Optional

from config import (
    FFMPEG_COMMAND,
    OUTPUT_VIDEO_SIZE,
    VIDEO_CODEC,
    AUDIO_CODEC,
    AUDIO_SAMPLE_FORMAT,
    ENCODER_THREAD_QUEUE_SIZE,
    parse_geometry,
)
from exceptions import ConfigurationError
from models import InputSpec


class FFmpegCommandBuilder:
    """Builds ffmpeg commands for segment recording and merging.

    Every segment is encoded with the same output profile (size, codecs) so
    the concat demuxer can join them without re-encoding.
    """

    def __init__(
        self,
        ffmpeg_command: str = FFMPEG_COMMAND,
        output_size: str = OUTPUT_VIDEO_SIZE,
        video_codec: str = VIDEO_CODEC,
        audio_codec: str = AUDIO_CODEC,
        thread_queue_size: int = ENCODER_THREAD_QUEUE_SIZE
    ):
        if parse_geometry(output_size) is None:
            raise ConfigurationError(
                "Output video size must look like WIDTHxHEIGHT", f"got '{output_size}'"
            )
        self.ffmpeg_command = ffmpeg_command
        self.output_size = output_size
        self.video_codec = video_codec
        self.audio_codec = audio_codec
        self.thread_queue_size = thread_queue_size

    def _base(self) -> list[str]:
        return [self.ffmpeg_command, '-hide_banner', '-loglevel', 'error', '-y']

    def build_encoder_command(
        self,
        output_file: str,
        geometry: str,
        input_spec: InputSpec,
        audio_pipe: Optional[str] = None
    ) -> list[str]:
        """Build the encoder command for one segment.

        Video (raw frames or the pre-encoded byte stream) always arrives on
        stdin; raw PCM audio, when enabled, arrives on a named pipe.

        Args:
            output_file: Segment file to write
            geometry: Geometry key of the segment (``WxH`` for raw input)
            input_spec: Description of the session's input
            audio_pipe: Path of the audio FIFO, if the segment has audio

        Returns:
            List of command arguments for ffmpeg
        """
        if not output_file:
            raise ValueError("output_file cannot be empty")

        cmd = self._base()

        if input_spec.rotates:
            if parse_geometry(geometry) is None:
                raise ValueError(f"Raw video input needs a WIDTHxHEIGHT geometry, got '{geometry}'")
            cmd.extend([
                '-f', 'rawvideo',
                '-pix_fmt', input_spec.pixel_format,
                '-s', geometry,
                '-r', str(input_spec.frame_rate),
                '-thread_queue_size', str(self.thread_queue_size),
                '-i', 'pipe:0',
            ])
            if audio_pipe:
                cmd.extend([
                    '-f', AUDIO_SAMPLE_FORMAT,
                    '-ar', str(input_spec.sample_rate),
                    '-ac', str(input_spec.channels),
                    '-thread_queue_size', str(self.thread_queue_size),
                    '-i', audio_pipe,
                ])
        else:
            # Let ffmpeg probe the container of the pre-encoded stream
            cmd.extend([
                '-thread_queue_size', str(self.thread_queue_size),
                '-i', 'pipe:0',
            ])

        cmd.extend([
            '-s', self.output_size,
            '-c:v', self.video_codec,
            '-preset', 'veryfast',
            '-pix_fmt', 'yuv420p',
        ])

        if audio_pipe or not input_spec.rotates:
            cmd.extend(['-c:a', self.audio_codec])
        else:
            cmd.append('-an')

        cmd.append(output_file)
        return cmd

    def build_concat_command(self, manifest_file: str, output_file: str) -> list[str]:
        """Build a lossless concat command over a manifest of segment files.

        Args:
            manifest_file: ffmpeg concat demuxer list
            output_file: Final artifact path

        Returns:
            List of command arguments for ffmpeg
        """
        return self._base() + [
            '-f', 'concat',
            '-safe', '0',
            '-i', manifest_file,
            '-c', 'copy',
            output_file,
        ]
