"""Named SQL snippets stored as ``<name>.sql`` files."""
from __future__ import annotations
from pathlib import Path
from typing import List, Optional, Sequence
import logging
import os

from otsql.core.errors import ResourceError, SnippetNotFound
from otsql.utils.constants import SNIPPET_SUFFIX
from otsql.utils.validation import ValidationError, validate_snippet_name

logger = logging.getLogger(__name__)


class SnippetStore:
    """Searches ``dirs`` in order for snippets and saves into ``savedir``."""

    def __init__(self, dirs: Sequence[str] = (), savedir: Optional[str] = None):
        self.dirs: List[Path] = [Path(os.path.expanduser(d)) for d in dirs]
        self.savedir: Optional[Path] = Path(os.path.expanduser(savedir)) if savedir else None
        if self.savedir is not None and self.savedir not in self.dirs:
            self.dirs.insert(0, self.savedir)

    @classmethod
    def from_config(cls, cfg) -> 'SnippetStore':
        return cls(cfg.snippet_dirs(), cfg.path('snippet_savedir'))

    def path(self, name: str) -> Path:
        """Return the file of snippet ``name``, raising SnippetNotFound."""
        try:
            validate_snippet_name(name)
        except ValidationError:
            raise SnippetNotFound(name)
        filename = name + SNIPPET_SUFFIX
        for directory in self.dirs:
            candidate = directory / filename
            if candidate.is_file():
                return candidate
        raise SnippetNotFound(name)

    def load(self, name: str) -> str:
        return self.path(name).read_text(encoding='utf-8')

    def save(self, name: str, content: str) -> Path:
        """Write ``content`` as snippet ``name`` and return its path."""
        try:
            validate_snippet_name(name)
        except ValidationError as e:
            raise ResourceError(str(e))
        if self.savedir is None:
            raise ResourceError("No snippet save directory configured")
        try:
            self.savedir.mkdir(parents=True, exist_ok=True)
            target = self.savedir / (name + SNIPPET_SUFFIX)
            text = content if content.endswith('\n') else content + '\n'
            target.write_text(text, encoding='utf-8')
        except OSError as e:
            raise ResourceError(f"Failed to save snippet '{name}': {e}")
        logger.info("Saved snippet %s to %s", name, target)
        return target

    def names(self) -> List[str]:
        """Snippet names across all directories; earlier directories shadow later ones."""
        seen = []
        for directory in self.dirs:
            if not directory.is_dir():
                continue
            for entry in sorted(directory.glob('*' + SNIPPET_SUFFIX)):
                if entry.stem not in seen:
                    seen.append(entry.stem)
        return sorted(seen)
