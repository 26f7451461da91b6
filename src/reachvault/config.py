"""
Vault configuration — ``<home>/config/config.yaml``.

Everything here is non-secret: connection strategy, retry tuning,
Argon2id cost, UI preferences. Sync tokens live with their vault, not
in this file.
"""

from __future__ import annotations

import logging
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field

from .models import KdfParams

logger = logging.getLogger("reachvault.config")

CONFIG_FILE = Path("config") / "config.yaml"


class ConnectionStrategy(str, Enum):
    """How shared vaults reach their remote database."""

    AUTO = "auto"
    REPLICA = "replica"
    REMOTE_ONLY = "remote_only"


def platform_strategy(platform: Optional[str] = None) -> ConnectionStrategy:
    """Strategy for a platform. The local replica is unreliable on Windows."""
    platform = platform or sys.platform
    if platform.startswith("win"):
        return ConnectionStrategy.REMOTE_ONLY
    return ConnectionStrategy.REPLICA


class VaultConfig(BaseModel):
    """Settings for one vault home."""

    connection_strategy: ConnectionStrategy = ConnectionStrategy.AUTO
    remote_root: Optional[Path] = Field(
        default=None, description="Directory backing the file remote store"
    )
    sync_max_retries: int = Field(default=5, ge=0)
    sync_base_delay: float = Field(default=1.0, ge=0)
    sync_max_delay: float = Field(default=60.0, ge=0)
    sync_timeout: float = Field(default=30.0, gt=0)
    kdf: KdfParams = Field(default_factory=KdfParams)
    theme: str = "system"
    custom: dict[str, Any] = Field(default_factory=dict)

    def resolved_strategy(self, platform: Optional[str] = None) -> ConnectionStrategy:
        """The concrete strategy, with ``auto`` resolved per platform."""
        if self.connection_strategy == ConnectionStrategy.AUTO:
            return platform_strategy(platform)
        return self.connection_strategy


def load_config(home: Path) -> VaultConfig:
    """Load config.yaml, falling back to defaults when absent or empty."""
    path = home / CONFIG_FILE
    if not path.exists():
        return VaultConfig()
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return VaultConfig.model_validate(data)


def save_config(home: Path, config: VaultConfig) -> Path:
    """Write config.yaml and return its path."""
    path = home / CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        yaml.dump(config.model_dump(mode="json"), default_flow_style=False),
        encoding="utf-8",
    )
    logger.debug("Saved config to %s", path)
    return path
