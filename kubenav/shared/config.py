"""Persistent user configuration for kubenav.

Settings live in ``$XDG_CONFIG_HOME/kubenav/config.yaml`` (defaulting to
``~/.config/kubenav``). The file is optional; missing keys fall back to the
defaults in :class:`Settings`.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

_APP_NAME = "kubenav"
_CONFIG_FILE = "config.yaml"


@dataclass
class Settings:
    """Typed view of the configuration file."""

    kubeconfig: Optional[str] = None
    worker_budget: int = 4
    stream_budget: int = 10
    retry_budget: int = 3
    retry_backoff: float = 0.2
    request_timeout: float = 30.0
    cancel_grace: float = 2.0
    terminal: str = "xterm -e"
    pkcs12_passphrases: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known and v is not None})

    def resolve_kubeconfig(self) -> str:
        """Return the kubeconfig path to use for bootstrap."""

        if self.kubeconfig:
            return os.path.expanduser(self.kubeconfig)
        env_path = os.environ.get("KUBECONFIG")
        if env_path:
            # Only the first entry of a path list is honoured.
            return env_path.split(os.pathsep)[0]
        return str(Path.home() / ".kube" / "config")


_NUMERIC_KEYS = {
    "worker_budget": int,
    "stream_budget": int,
    "retry_budget": int,
    "retry_backoff": float,
    "request_timeout": float,
    "cancel_grace": float,
}


class ConfigManager:
    """Read and write the kubenav configuration file."""

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        if config_dir is None:
            base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
            config_dir = Path(base) / _APP_NAME
        self.config_dir = Path(config_dir)
        self.config_path = self.config_dir / _CONFIG_FILE

    @property
    def history_path(self) -> Path:
        return self.config_dir / "history"

    def ensure_dir(self) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    def load_config(self) -> Dict[str, Any]:
        """Load the raw configuration mapping (empty if absent)."""

        if not self.config_path.exists():
            return {}
        with open(self.config_path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.config_path} must contain a mapping")
        return data

    def save_config(self, config: Dict[str, Any]) -> None:
        self.ensure_dir()
        with open(self.config_path, "w") as f:
            yaml.safe_dump(config, f, default_flow_style=False, sort_keys=True)
        os.chmod(self.config_path, 0o600)

    def settings(self) -> Settings:
        return Settings.from_dict(self.load_config())

    def set_value(self, key: str, value: str) -> None:
        """Persist a single scalar setting, validating numeric keys."""

        if key in _NUMERIC_KEYS:
            try:
                parsed: Any = _NUMERIC_KEYS[key](value)
            except ValueError as exc:
                raise ValueError(f"'{key}' expects a number, got '{value}'") from exc
            if parsed <= 0:
                raise ValueError(f"'{key}' must be positive")
        elif key == "kubeconfig":
            parsed = value
        elif key == "terminal":
            try:
                words = shlex.split(value)
            except ValueError as exc:
                raise ValueError(f"'terminal' is not a valid command line: {exc}") from exc
            if not words:
                raise ValueError("'terminal' must name a command")
            parsed = value
        else:
            raise ValueError(f"Unknown setting '{key}'")

        config = self.load_config()
        config[key] = parsed
        self.save_config(config)

    def set_pkcs12_passphrase(self, user: str, passphrase: str) -> None:
        config = self.load_config()
        config.setdefault("pkcs12_passphrases", {})[user] = passphrase
        self.save_config(config)


def get_config_manager() -> ConfigManager:
    """Return a manager bound to the current environment's config directory."""

    return ConfigManager()
