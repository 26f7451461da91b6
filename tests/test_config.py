"""Tests for config.yaml handling and connection strategy resolution."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from reachvault.config import (
    ConnectionStrategy,
    VaultConfig,
    load_config,
    platform_strategy,
    save_config,
)
from reachvault.service import VaultService


class TestLoadSave:
    """Reading and writing config.yaml."""

    def test_defaults_when_missing(self, vault_home: Path) -> None:
        config = load_config(vault_home)
        assert config.connection_strategy == ConnectionStrategy.AUTO
        assert config.kdf.memory_kib == 262144
        assert config.kdf.time_cost == 4
        assert config.kdf.parallelism == 4
        assert config.theme == "system"

    def test_empty_file(self, vault_home: Path) -> None:
        (vault_home / "config").mkdir()
        (vault_home / "config" / "config.yaml").write_text("")
        assert load_config(vault_home) == VaultConfig()

    def test_round_trip(self, vault_home: Path, config: VaultConfig) -> None:
        config.theme = "dark"
        config.custom = {"font_size": 14}
        path = save_config(vault_home, config)

        assert path == vault_home / "config" / "config.yaml"
        loaded = load_config(vault_home)
        assert loaded == config

    def test_file_is_plain_yaml(self, vault_home: Path, config: VaultConfig) -> None:
        save_config(vault_home, config)
        data = yaml.safe_load((vault_home / "config" / "config.yaml").read_text())
        assert data["connection_strategy"] == "replica"
        assert data["kdf"] == {"memory_kib": 64, "time_cost": 1, "parallelism": 1}

    def test_invalid_value(self, vault_home: Path) -> None:
        (vault_home / "config").mkdir()
        (vault_home / "config" / "config.yaml").write_text("sync_timeout: -1\n")
        with pytest.raises(ValidationError):
            load_config(vault_home)

    def test_kdf_memory_capped(self, vault_home: Path) -> None:
        (vault_home / "config").mkdir()
        (vault_home / "config" / "config.yaml").write_text("kdf:\n  memory_kib: 4194304\n")
        with pytest.raises(ValidationError):
            load_config(vault_home)


class TestStrategy:
    """Platform-dependent connection strategy."""

    @pytest.mark.parametrize(
        ("platform", "expected"),
        [
            ("win32", ConnectionStrategy.REMOTE_ONLY),
            ("linux", ConnectionStrategy.REPLICA),
            ("darwin", ConnectionStrategy.REPLICA),
        ],
    )
    def test_platform_strategy(self, platform: str, expected: ConnectionStrategy) -> None:
        assert platform_strategy(platform) == expected
        assert VaultConfig().resolved_strategy(platform) == expected

    def test_explicit_strategy_wins(self) -> None:
        config = VaultConfig(connection_strategy=ConnectionStrategy.REPLICA)
        assert config.resolved_strategy("win32") == ConnectionStrategy.REPLICA


class TestServiceSettings:
    """Settings changes through the service."""

    def test_update_settings_persists(self, alice: VaultService) -> None:
        alice.update_settings(theme="dark", connection_strategy="remote_only")
        assert alice.sync.strategy == ConnectionStrategy.REMOTE_ONLY
        loaded = load_config(alice.home)
        assert loaded.theme == "dark"
        assert loaded.connection_strategy == ConnectionStrategy.REMOTE_ONLY

    def test_update_settings_validates(self, alice: VaultService) -> None:
        with pytest.raises(ValidationError):
            alice.update_settings(sync_max_retries=-3)
        assert alice.config.sync_max_retries == 2
