"""Session state shared by the REPL handlers."""
from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, Optional, TextIO
import logging
import threading

from otsql.core.errors import ResourceError
from otsql.core.snippets import SnippetStore

logger = logging.getLogger(__name__)


@dataclass
class ReplState:
    db_user: str
    sys_user: str
    snippets: SnippetStore = field(default_factory=SnippetStore)
    expanded_mode: bool = False
    write_mode: bool = False
    redact_mode: bool = False
    ots: Optional[str] = None
    output_file: Optional[TextIO] = None
    output_path: Optional[str] = None
    vars: Dict[str, str] = field(default_factory=dict)
    from_snippet_or_include: bool = False

    def check_invariants(self) -> None:
        if self.write_mode != (self.ots is not None):
            raise AssertionError(
                f"write_mode={self.write_mode} but ots={'set' if self.ots else 'unset'}")

    # write_mode and ots only ever change together, through these two
    def enable_write_mode(self, ots: str) -> None:
        if not ots:
            raise ValueError("An OTS phrase is required for write mode")
        self.write_mode = True
        self.ots = ots

    def disable_write_mode(self) -> None:
        self.write_mode = False
        self.ots = None

    def set_output(self, path: str) -> None:
        """Redirect results to ``path``, closing any previous redirection first."""
        self.close_output()
        try:
            self.output_file = open(path, 'a', encoding='utf-8')
        except OSError as e:
            raise ResourceError(f"Cannot open output file {path}: {e}")
        self.output_path = path

    def close_output(self) -> None:
        if self.output_file is not None:
            try:
                self.output_file.flush()
                self.output_file.close()
            except OSError as e:
                logger.warning("Failed to close output file %s: %s", self.output_path, e)
        self.output_file = None
        self.output_path = None

    def describe(self) -> Dict[str, object]:
        """Plain view of the state for ``\\debug state``."""
        return {
            'db_user': self.db_user,
            'sys_user': self.sys_user,
            'expanded_mode': self.expanded_mode,
            'write_mode': self.write_mode,
            'redact_mode': self.redact_mode,
            'ots': self.ots,
            'output_file': self.output_path,
            'vars': dict(self.vars),
            'snippet_dirs': [str(d) for d in self.snippets.dirs],
            'snippet_savedir': str(self.snippets.savedir) if self.snippets.savedir else None,
            'from_snippet_or_include': self.from_snippet_or_include,
        }


class StateHandle:
    """Owns the single ReplState behind a lock.

    Decisions read one ``snapshot()``; mutations happen inside ``locked()``.
    Never hold ``locked()`` across a database call or a prompt.
    """

    def __init__(self, state: ReplState):
        self._state = state
        self._lock = threading.Lock()

    def snapshot(self) -> ReplState:
        with self._lock:
            return replace(self._state, vars=dict(self._state.vars))

    @contextmanager
    def locked(self) -> Iterator[ReplState]:
        with self._lock:
            yield self._state
            self._state.check_invariants()

    @contextmanager
    def scoped_vars(self, bindings: Dict[str, str]) -> Iterator[None]:
        """Install ``bindings`` and mark nested execution until the block exits.

        Prior values are restored (or the names removed) however the block
        ends, including on KeyboardInterrupt.
        """
        with self._lock:
            saved = [(name, self._state.vars.get(name)) for name in bindings]
            was_nested = self._state.from_snippet_or_include
            self._state.vars.update(bindings)
            self._state.from_snippet_or_include = True
        try:
            yield
        finally:
            with self._lock:
                for name, previous in saved:
                    if previous is None:
                        self._state.vars.pop(name, None)
                    else:
                        self._state.vars[name] = previous
                self._state.from_snippet_or_include = was_nested
