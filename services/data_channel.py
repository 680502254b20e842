#!/usr/bin/env python3
"""
Data channel feeding bytes into one encoder input pipe.
"""

import logging
import queue
import threading
from typing import BinaryIO, Callable, Optional

from config import CHANNEL_QUEUE_SIZE

_EOF = object()


class DataChannel:
    """Write end of a pipe feeding one encoder input.

    Writes are queued and drained by a dedicated writer thread so a slow
    encoder never blocks the caller delivering frames. A full queue or a
    closed/broken channel drops the chunk instead of waiting.
    """

    def __init__(
        self,
        name: str,
        opener: Callable[[], BinaryIO],
        max_queued: int = CHANNEL_QUEUE_SIZE,
        poll_interval: float = 0.25
    ):
        self.name = name
        self.bytes_written = 0
        self.dropped = 0
        self.logger = logging.getLogger(__name__)
        self._opener = opener
        self._poll_interval = poll_interval
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max_queued)
        self._close_lock = threading.Lock()
        self._closed = threading.Event()
        self._broken = threading.Event()
        self._opened = threading.Event()
        self._drained = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> 'DataChannel':
        """Start the writer thread."""
        self._thread = threading.Thread(
            target=self._run, name=f"channel-{self.name}", daemon=True
        )
        self._thread.start()
        return self

    @property
    def writable(self) -> bool:
        return not self._closed.is_set() and not self._broken.is_set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def broken(self) -> bool:
        return self._broken.is_set()

    @property
    def opened(self) -> bool:
        return self._opened.is_set()

    def write(self, chunk: bytes) -> bool:
        """Queue a chunk for the encoder.

        Returns:
            True if queued, False if the chunk was dropped
        """
        if not self.writable:
            self.dropped += 1
            self.logger.debug(f"Dropped write on closed channel {self.name}")
            return False
        try:
            self._queue.put_nowait(chunk)
        except queue.Full:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                self.logger.warning(
                    f"Channel {self.name} is backed up, dropped {self.dropped} chunk(s) so far"
                )
            return False
        return True

    def close(self) -> bool:
        """Signal end-of-input. Only the first call has any effect.

        Returns:
            True if this call closed the channel
        """
        with self._close_lock:
            if self._closed.is_set():
                return False
            self._closed.set()
        try:
            self._queue.put_nowait(_EOF)
        except queue.Full:
            # The writer notices the closed flag once the backlog drains
            pass
        return True

    def wait_drained(self, timeout: Optional[float] = None) -> bool:
        """Wait for the writer thread to flush and close the pipe."""
        return self._drained.wait(timeout)

    def _run(self) -> None:
        target = None
        try:
            target = self._opener()
            self._opened.set()
            while True:
                try:
                    chunk = self._queue.get(timeout=self._poll_interval)
                except queue.Empty:
                    if self._closed.is_set():
                        break
                    continue
                if chunk is _EOF:
                    break
                target.write(chunk)
                target.flush()
                self.bytes_written += len(chunk)
        except OSError as e:
            self._broken.set()
            self.logger.warning(f"Channel {self.name} broken after {self.bytes_written} bytes: {e}")
        finally:
            if target is not None:
                try:
                    target.close()
                except OSError as e:
                    self.logger.debug(f"Error closing channel {self.name}: {e}")
            self._drained.set()
