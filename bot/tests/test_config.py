from __future__ import annotations

from pathlib import Path

import pytest

from core.config import ConfigError, load_config

_ENV_KEYS = (
    "DISCORD_TOKEN",
    "GUILD_ID",
    "ADMIN_ROLE_ID",
    "BOT_PREFIX",
    "DATABASE_URL",
    "TICKET_CHANNEL_ID",
    "LOGS_CHANNEL_ID",
    "RECONCILE_INTERVAL_SECONDS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def _write_config(tmp_path: Path, body: str) -> Path:
    config_dir = tmp_path / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / "config.yaml"
    config_path.write_text(body.strip(), encoding="utf-8")
    return config_path


def test_load_config_reads_yaml(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
discord:
  token: test-token
  guild_id: 111111111111111111
  admin_role_id: 222222222222222222
  prefix: "?"
database:
  url: "sqlite:///./data/test.db"
tickets:
  channel_prefix: PCRP
  close_delay_seconds: 2.5
keywords:
  enabled: true
  responses:
    "  Whitelist ": "See #how-to-join"
""",
    )

    cfg = load_config(config_path)

    assert cfg.discord.token == "test-token"
    assert cfg.discord.guild_id == 111111111111111111
    assert cfg.discord.admin_role_id == 222222222222222222
    assert cfg.discord.prefix == "?"
    assert cfg.database.url.startswith("sqlite:///")
    assert cfg.tickets.channel_prefix == "pcrp"
    assert cfg.tickets.close_delay_seconds == 2.5
    assert cfg.keywords.responses == {"whitelist": "See #how-to-join"}


def test_env_overrides_yaml(tmp_path: Path, monkeypatch) -> None:
    config_path = _write_config(
        tmp_path,
        """
discord:
  token: yaml-token
  guild_id: 1
  admin_role_id: 2
""",
    )
    monkeypatch.setenv("DISCORD_TOKEN", "env-token")
    monkeypatch.setenv("GUILD_ID", "333333333333333333")
    monkeypatch.setenv("ADMIN_ROLE_ID", "444444444444444444")

    cfg = load_config(config_path)

    assert cfg.discord.token == "env-token"
    assert cfg.discord.guild_id == 333333333333333333
    assert cfg.discord.admin_role_id == 444444444444444444


def test_unresolved_token_placeholder_is_rejected(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
discord:
  token: "${DISCORD_TOKEN}"
  guild_id: 1
  admin_role_id: 2
""",
    )

    with pytest.raises(ConfigError, match="DISCORD_TOKEN"):
        load_config(config_path)


def test_missing_guild_is_rejected(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
discord:
  token: test-token
  admin_role_id: 2
""",
    )

    with pytest.raises(ConfigError, match="GUILD_ID"):
        load_config(config_path)


def test_prefix_must_be_channel_safe(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
discord:
  token: test-token
  guild_id: 1
  admin_role_id: 2
tickets:
  channel_prefix: "tick ets"
""",
    )

    with pytest.raises(ConfigError, match="channel_prefix"):
        load_config(config_path)


def test_missing_file_is_a_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "config" / "missing.yaml")
