"""
Configuration management for Xedis
"""

import os
import yaml
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, asdict, fields
from pathlib import Path


FSYNC_POLICIES = ("always", "everysec", "no")


def default_data_dir() -> str:
    return str(Path.home() / "xedis")


@dataclass
class XedisConfig:
    """Store configuration"""

    # Namespaces the on-disk files: <data_dir>/<name>.aof and <name>.json
    name: str = "default"
    data_dir: Optional[str] = None
    log_level: str = "INFO"

    # Snapshots
    snapshot_interval: float = 90.0  # seconds, 0 disables the timer

    # Journal
    fsync_policy: str = "everysec"  # always, everysec, no
    journal_rewrite_percentage: int = 100
    journal_rewrite_min_size: int = 1024 * 1024  # 1MB

    def __post_init__(self):
        if not self.data_dir:
            self.data_dir = default_data_dir()

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def journal_path(self) -> Path:
        return self.data_path / f"{self.name}.aof"

    @property
    def snapshot_path(self) -> Path:
        return self.data_path / f"{self.name}.json"

    @classmethod
    def from_file(cls, config_path: str) -> "XedisConfig":
        """Load configuration from YAML file"""
        config_path = Path(config_path)
        if not config_path.exists():
            return cls()

        with open(config_path, "r") as f:
            data = yaml.safe_load(f)

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "XedisConfig":
        """Create config from dictionary, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_env(cls) -> "XedisConfig":
        """Load configuration from environment variables"""
        config = cls()

        config.name = os.getenv("XEDIS_NAME", config.name)
        config.data_dir = os.getenv("XEDIS_DATA_DIR", config.data_dir)
        config.log_level = os.getenv("XEDIS_LOG_LEVEL", config.log_level)
        config.snapshot_interval = float(
            os.getenv("XEDIS_SNAPSHOT_INTERVAL", config.snapshot_interval)
        )
        config.fsync_policy = os.getenv("XEDIS_FSYNC_POLICY", config.fsync_policy)
        config.journal_rewrite_percentage = int(
            os.getenv(
                "XEDIS_JOURNAL_REWRITE_PERCENTAGE", config.journal_rewrite_percentage
            )
        )
        config.journal_rewrite_min_size = int(
            os.getenv("XEDIS_JOURNAL_REWRITE_MIN_SIZE", config.journal_rewrite_min_size)
        )

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary"""
        return asdict(self)

    def save_to_file(self, config_path: str):
        """Save configuration to YAML file"""
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, indent=2)

    def validate(self) -> List[str]:
        """Validate configuration and return any errors"""
        errors = []

        if not self.name:
            errors.append("name must not be empty")
        elif os.sep in self.name or (os.altsep and os.altsep in self.name):
            errors.append(f"name must not contain a path separator: {self.name}")

        if self.fsync_policy not in FSYNC_POLICIES:
            errors.append(f"Invalid fsync policy: {self.fsync_policy}")

        if self.snapshot_interval < 0:
            errors.append("snapshot_interval must be >= 0")

        if self.journal_rewrite_percentage < 0:
            errors.append("journal_rewrite_percentage must be >= 0")

        return errors
