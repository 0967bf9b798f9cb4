"""Line input with readline history."""
from __future__ import annotations
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence
import logging
import os

try:
    import readline  # type: ignore
except Exception:  # pragma: no cover
    readline = None
# Attempt gnureadline fallback if readline missing
if readline is None:
    try:
        import gnureadline as readline  # type: ignore
    except Exception:  # pragma: no cover
        readline = None

logger = logging.getLogger(__name__)

HISTORY_LENGTH = 1000


class LineReader:
    """Reads operator input; raises EOFError on Ctrl-D and KeyboardInterrupt on Ctrl-C."""

    def __init__(self, history_file: Optional[str] = None):
        self.history_file = os.path.expanduser(history_file) if history_file else None
        if readline:
            # Only complete statements go into history, and never OTS phrases.
            readline.set_auto_history(False)
        if readline and self.history_file:
            try:
                readline.set_history_length(HISTORY_LENGTH)
                if os.path.exists(self.history_file):
                    readline.read_history_file(self.history_file)
            except OSError as e:
                logger.warning("Could not read history file %s: %s", self.history_file, e)

    def readline(self, prompt: str) -> str:
        return input(prompt)

    def add_history(self, line: str) -> None:
        if readline and line.strip():
            readline.add_history(line)

    def history(self) -> List[str]:
        if not readline:
            return []
        return [readline.get_history_item(i) for i in range(1, readline.get_current_history_length() + 1)]

    def last_entry(self) -> Optional[str]:
        items = self.history()
        return items[-1] if items else None

    @contextmanager
    def scoped_history(self, entries: Sequence[str]) -> Iterator[None]:
        """Temporarily replace the history with ``entries`` (most recent first).

        The first entry is what the up arrow recalls first. The session
        history is put back afterwards, whatever happens in between.
        """
        if not readline:
            yield
            return
        saved = self.history()
        readline.clear_history()
        for entry in reversed(entries):
            readline.add_history(entry)
        try:
            yield
        finally:
            readline.clear_history()
            for item in saved:
                if item is not None:
                    readline.add_history(item)

    def save(self) -> None:
        if readline and self.history_file:
            try:
                readline.write_history_file(self.history_file)
            except OSError as e:
                logger.warning("Could not write history file %s: %s", self.history_file, e)
