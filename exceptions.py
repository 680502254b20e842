"""Custom exception types for the segment recorder.

This module defines a hierarchy of domain-specific exceptions that provide
clear error handling and improved debugging capabilities.

Exception Hierarchy:
    SegmentRecorderError (base)
    ├── ConfigurationError
    ├── SessionError
    │   ├── SessionNotFoundError
    │   ├── DuplicateSessionError
    │   └── InvalidTransitionError
    ├── FrameError
    ├── EncoderError
    │   ├── EncoderStartError
    │   └── EncoderProcessError
    └── MergeError
        ├── MergeInputMissingError
        └── MergeProcessError
"""


class SegmentRecorderError(Exception):
    """Base exception for all segment recorder errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception with a message and optional details.

        Args:
            message: Human-readable error message
            details: Additional technical details about the error
        """
        self.message = message
        self.details = details
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the complete error message."""
        if self.details:
            return f"{self.message}\nDetails: {self.details}"
        return self.message


# Configuration Errors
class ConfigurationError(SegmentRecorderError):
    """Raised when there's an issue with application configuration."""
    pass


# Session Errors
class SessionError(SegmentRecorderError):
    """Base class for session orchestration errors."""
    pass


class SessionNotFoundError(SessionError):
    """Raised when a session id is not present in the session store."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Unknown session: {session_id}")


class DuplicateSessionError(SessionError):
    """Raised when a session id is started twice."""

    def __init__(self, session_id: str, state: str = None):
        self.session_id = session_id
        message = f"Session already exists: {session_id}"
        super().__init__(message, f"current state: {state}" if state else None)


class InvalidTransitionError(SessionError):
    """Raised when a session or segment is moved against its lifecycle."""

    def __init__(self, subject: str, current: str, requested: str):
        self.subject = subject
        self.current = current
        self.requested = requested
        message = f"Invalid transition for {subject}: {current} -> {requested}"
        super().__init__(message)


# Input Errors
class FrameError(SegmentRecorderError):
    """Raised when an incoming frame is malformed or has unsupported geometry."""

    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        super().__init__(f"Dropped frame for session {session_id}", reason)


# Encoder Errors
class EncoderError(SegmentRecorderError):
    """Base class for encoder subprocess errors."""
    pass


class EncoderStartError(EncoderError):
    """Raised when the encoder subprocess cannot be launched."""

    def __init__(self, segment_path: str, error: str = None):
        self.segment_path = segment_path
        message = f"Failed to start encoder for segment: {segment_path}"
        super().__init__(message, error)


class EncoderProcessError(EncoderError):
    """Raised when the encoder subprocess exits unsuccessfully."""

    def __init__(self, segment_path: str, returncode: int = None, error: str = None):
        self.segment_path = segment_path
        self.returncode = returncode
        message = f"Encoder failed for segment: {segment_path}"
        if returncode is not None:
            message += f" (exit code {returncode})"
        super().__init__(message, error)


# Merge Errors
class MergeError(SegmentRecorderError):
    """Base class for segment merge errors."""
    pass


class MergeInputMissingError(MergeError):
    """Raised when a finalized segment file is missing at merge time."""

    def __init__(self, missing_paths: list):
        self.missing_paths = list(missing_paths)
        message = f"Missing {len(self.missing_paths)} segment file(s) for merge"
        super().__init__(message, ", ".join(self.missing_paths))


class MergeProcessError(MergeError):
    """Raised when the concatenation tool fails."""

    def __init__(self, output_path: str, error: str = None):
        self.output_path = output_path
        message = f"Failed to merge segments into: {output_path}"
        super().__init__(message, error)
