#!/usr/bin/env python3
"""
Segment merger for combining a session's finalized segments into one recording.
"""

import os
import logging
import subprocess
from typing import List, Optional

from exceptions import MergeError, MergeInputMissingError, MergeProcessError
from logging_config import log_event, MERGE_COMPLETED, MERGE_FAILED, MERGE_STARTED
from models import Segment, SegmentStatus, Session
from resource_managers import concat_manifest

from .ffmpeg_command_builder import FFmpegCommandBuilder
from .recording_path_manager import RecordingPathManager


class SegmentMerger:
    """Merges finalized segments, in sequence order, into a single file.

    Merging is not idempotent: inputs are deleted after a successful merge,
    so running it twice for one session fails on missing input.
    """

    def __init__(
        self,
        path_manager: Optional[RecordingPathManager] = None,
        command_builder: Optional[FFmpegCommandBuilder] = None
    ):
        self.path_manager = path_manager or RecordingPathManager()
        self.command_builder = command_builder or FFmpegCommandBuilder()
        self.logger = logging.getLogger(__name__)

    def merge_inputs(self, session: Session) -> List[Segment]:
        """Finalized segments of a session in merge order."""
        finalized = [s for s in session.segments if s.status == SegmentStatus.FINALIZED]
        return sorted(finalized, key=lambda s: s.sequence_index)

    def merge(self, session: Session) -> Optional[str]:
        """Merge a session's finalized segments into a single file.

        Args:
            session: Session whose segments have all settled

        Returns:
            Path to the merged file, or None if there was nothing to merge

        Raises:
            MergeError: If a segment is unsettled, an input is missing or the
                concatenation fails. Inputs are left in place.
        """
        unsettled = [s.sequence_index for s in session.segments if not s.settled]
        if unsettled:
            raise MergeError(
                f"Session {session.session_id} still has unsettled segments",
                f"sequence indexes: {unsettled}"
            )

        for segment in session.segments:
            if segment.status == SegmentStatus.FAILED:
                self.logger.warning(
                    f"Skipping failed segment {segment.sequence_index}, left on disk: {segment.path}"
                )

        segments = self.merge_inputs(session)
        if not segments:
            self.logger.info(f"No finalized segments for session {session.session_id}, nothing to merge")
            return None

        output_file = self.path_manager.artifact_path(session.session_id)
        log_event(
            self.logger, MERGE_STARTED,
            session=session.session_id, segments=len(segments), output=output_file
        )

        try:
            self._merge_files([s.path for s in segments], session.session_id, output_file)
        except MergeError as e:
            log_event(
                self.logger, MERGE_FAILED, logging.ERROR,
                session=session.session_id, output=output_file, reason=e.message
            )
            raise

        self._remove_inputs(segments)
        log_event(
            self.logger, MERGE_COMPLETED,
            session=session.session_id, segments=len(segments), output=output_file
        )
        return output_file

    def _merge_files(self, paths: List[str], session_id: str, output_file: str) -> None:
        missing = [path for path in paths if not os.path.exists(path)]
        if missing:
            for path in missing:
                self.logger.warning(f"Merge input missing: {path}")
            raise MergeInputMissingError(missing)

        if len(paths) == 1:
            # Only one segment, just rename it
            try:
                os.replace(paths[0], output_file)
            except OSError as e:
                self.logger.error(f"Error renaming single segment: {e}", exc_info=True)
                raise MergeProcessError(output_file, str(e)) from e
            return

        manifest_file = self.path_manager.manifest_path(session_id)
        with concat_manifest(manifest_file, paths) as manifest:
            merge_cmd = self.command_builder.build_concat_command(manifest, output_file)
            try:
                result = subprocess.run(merge_cmd, capture_output=True, text=True)
            except OSError as e:
                raise MergeProcessError(output_file, str(e)) from e

            if result.returncode != 0:
                self.logger.error(f"Merge failed, manifest kept at {manifest}: {result.stderr}")
                raise MergeProcessError(output_file, result.stderr.strip()[-2000:] or None)

    def _remove_inputs(self, segments: List[Segment]) -> None:
        for segment in segments:
            try:
                os.remove(segment.path)
            except FileNotFoundError:
                # Renamed into place as the artifact
                pass
            except OSError as e:
                self.logger.warning(f"Could not remove merged segment {segment.path}: {e}")
