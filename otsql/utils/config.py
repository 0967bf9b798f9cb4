"""Configuration management for otsql."""
from __future__ import annotations
from typing import Dict, Any, List, Optional
import os
import json
import logging

from otsql.utils.constants import AUDIT_SYNC_INTERVAL

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CONFIG = {
    "audit_dir": os.path.join(os.environ.get("XDG_STATE_HOME", "~/.local/state"), "otsql"),
    "history_file": "~/.otsql_history",
    "snippet_dirs": ["~/.config/otsql/snippets", "~/.local/share/otsql/snippets"],
    "snippet_savedir": "~/.local/share/otsql/snippets",
    "redactions": [],
    "editor": None,
    "sync_interval": AUDIT_SYNC_INTERVAL,
    "use_colours": True,
    "max_col_width": 50,
    "log_level": "WARNING",
    "log_file": None,
}

# Environment variable -> setting
ENV_OVERRIDES = {
    "OTSQL_AUDIT_DIR": "audit_dir",
    "OTSQL_EDITOR": "editor",
    "OTSQL_LOG_LEVEL": "log_level",
}


class Config:
    """Configuration manager for otsql settings."""

    def __init__(self, config_file: Optional[str] = None):
        self.settings: Dict[str, Any] = DEFAULT_CONFIG.copy()
        self.config_file = os.path.expanduser(
            config_file or os.environ.get("OTSQL_CONFIG", "~/.otsql_config.json"))
        self._load_config()
        self._apply_env()

    def _load_config(self) -> None:
        """Load configuration from file if exists."""
        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, 'r') as f:
                    self.settings.update(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load config: {e}")

    def _apply_env(self) -> None:
        for var, key in ENV_OVERRIDES.items():
            value = os.environ.get(var)
            if value:
                self.settings[key] = value

    def save(self) -> None:
        """Save current configuration to file."""
        try:
            with open(self.config_file, 'w') as f:
                json.dump(self.settings, f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to save config: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self.settings.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value."""
        self.settings[key] = value

    def path(self, key: str) -> Optional[str]:
        """Return a path setting with ``~`` expanded."""
        value = self.settings.get(key)
        return os.path.expanduser(value) if value else None

    def snippet_dirs(self) -> List[str]:
        dirs = self.settings.get("snippet_dirs") or []
        if isinstance(dirs, str):
            dirs = [d for d in dirs.split(os.pathsep) if d]
        return [os.path.expanduser(d) for d in dirs]

    def ensure_audit_dir(self) -> str:
        """Ensure the audit directory exists and return its path."""
        audit_dir = os.path.expanduser(self.settings.get("audit_dir") or DEFAULT_CONFIG["audit_dir"])
        os.makedirs(audit_dir, exist_ok=True)
        return audit_dir


# Global config instance
config = Config()
