"""Global configuration — XDG paths, env vars, defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from sharewatch.session.tracker import DEFAULT_STALE_TIMEOUT


def _default_data_dir() -> Path:
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "sharewatch"
    return Path.home() / ".local" / "share" / "sharewatch"


def _default_config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "sharewatch"
    return Path.home() / ".config" / "sharewatch"


@dataclass
class ShareWatchConfig:
    """Application-wide configuration."""

    data_dir: Path = field(default_factory=_default_data_dir)
    config_dir: Path = field(default_factory=_default_config_dir)
    rules_dirs: list[Path] = field(default_factory=list)
    poll_interval: float = 10.0
    rule_timeout: float = 2.0
    recent_window_hours: float = 24.0
    stale_timeout: float = DEFAULT_STALE_TIMEOUT
    geo_table: Path | None = None

    @property
    def db_path(self) -> Path:
        return self.data_dir / "sharewatch.db"

    @classmethod
    def load(cls) -> ShareWatchConfig:
        """Load config from environment variables with XDG defaults."""
        config = cls()

        env_interval = os.environ.get("SHAREWATCH_POLL_INTERVAL")
        if env_interval:
            config.poll_interval = float(env_interval)

        env_timeout = os.environ.get("SHAREWATCH_RULE_TIMEOUT")
        if env_timeout:
            config.rule_timeout = float(env_timeout)

        env_window = os.environ.get("SHAREWATCH_RECENT_WINDOW_HOURS")
        if env_window:
            config.recent_window_hours = float(env_window)

        env_geo = os.environ.get("SHAREWATCH_GEO_TABLE")
        if env_geo:
            config.geo_table = Path(env_geo)

        # Add config dir's rules/ subdirectory if it exists
        rules_dir = config.config_dir / "rules"
        if rules_dir.is_dir():
            config.rules_dirs.append(rules_dir)

        return config
