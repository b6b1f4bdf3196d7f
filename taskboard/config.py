# Taskboard - configuration
# Defaults, overridden by taskboard.yaml (or TASKBOARD_CONFIG), then by env vars.

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_PATH = Path("taskboard.yaml")

# env var -> config key
ENV_OVERRIDES = {
    "TASKBOARD_BOARDS_DIR": "boards_dir",
    "TASKBOARD_DEFAULT_BOARD": "default_board",
    "TASKBOARD_TEMPLATE": "template_path",
    "TASKBOARD_API_SECRET": "api_secret",
}


@dataclass
class Config:
    """Runtime configuration for the board engine and its surfaces."""

    # Storage
    boards_dir: str = "~/.local/share/taskboard/boards"
    default_board: str = "kanban"
    template_path: Optional[str] = None     # None = packaged template
    max_backups: int = 10
    terminal_columns: List[str] = field(default_factory=lambda: ["done"])

    # Rate limiting
    read_window_ms: int = 60_000
    read_max_requests: int = 120
    write_window_ms: int = 60_000
    write_max_requests: int = 60
    max_clients: int = 1000
    cleanup_interval_ms: int = 300_000

    # HTTP surface
    api_secret: str = ""
    host: str = "127.0.0.1"
    port: int = 3001

    # Webhooks: list of {url, events, secret}
    webhooks: List[Dict[str, Any]] = field(default_factory=list)

    def resolve_paths(self):
        """Expand ~ in filesystem paths."""
        self.boards_dir = str(Path(self.boards_dir).expanduser())
        if self.template_path:
            self.template_path = str(Path(self.template_path).expanduser())

    def apply_env(self, environ=None):
        environ = os.environ if environ is None else environ
        for var, key in ENV_OVERRIDES.items():
            value = environ.get(var)
            if value:
                setattr(self, key, value)

    @classmethod
    def load(cls, path: Optional[str] = None, environ=None) -> "Config":
        """Load config from YAML file, falling back to defaults."""
        environ = os.environ if environ is None else environ
        cfg_path = Path(path or environ.get("TASKBOARD_CONFIG") or CONFIG_PATH)
        known = {f.name for f in fields(cls)}
        cfg = cls()
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
                cfg = cls(**{k: v for k, v in data.items() if k in known})
            except (OSError, yaml.YAMLError, TypeError, AttributeError) as e:
                logger.warning(f"Ignoring unreadable config {cfg_path}: {e}")
                cfg = cls()
        cfg.apply_env(environ)
        cfg.resolve_paths()
        return cfg
