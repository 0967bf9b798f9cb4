"""Running-query indicator for slow statements."""
from __future__ import annotations
import sys
import threading
import time
from contextlib import contextmanager

from otsql.utils.constants import PROGRESS_DELAY


class QueryProgress:
    """Shows elapsed time on stderr once a statement has run for ``delay`` seconds."""

    def __init__(self, delay: float = PROGRESS_DELAY, enabled: bool = True, interval: float = 0.5):
        self.delay = delay
        self.enabled = enabled and sys.stderr.isatty()
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._started = 0.0
        self._finished: float | None = None
        self._width = 0

    def _message(self) -> str:
        return f"(running, so far {time.monotonic() - self._started:.0f}s)"

    def _run(self):
        if self._stop.wait(self.delay):
            return
        while not self._stop.is_set():
            message = self._message()
            self._width = len(message)
            sys.stderr.write(f"\r{message}")
            sys.stderr.flush()
            self._stop.wait(self.interval)
        # clear line
        sys.stderr.write("\r" + ' ' * self._width + "\r")
        sys.stderr.flush()

    @property
    def elapsed(self) -> float:
        end = self._finished if self._finished is not None else time.monotonic()
        return end - self._started

    def __enter__(self):
        self._started = time.monotonic()
        self._finished = None
        if self.enabled:
            self._thread = threading.Thread(target=self._run, daemon=True)
            self._thread.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self._finished = time.monotonic()
        self._stop.set()
        if self._thread:
            self._thread.join()


@contextmanager
def query_progress(delay: float = PROGRESS_DELAY, enabled: bool = True):
    progress = QueryProgress(delay, enabled=enabled)
    with progress:
        yield progress
