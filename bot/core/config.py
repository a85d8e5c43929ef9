from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv


class ConfigError(RuntimeError):
    pass


@dataclass(slots=True)
class DiscordConfig:
    token: str
    guild_id: int
    admin_role_id: int
    prefix: str = "!"
    application_id: int | None = None
    sync_commands_on_start: bool = True
    status_text: str = "Support tickets"
    activity_type: str = "watching"
    ticket_channel_id: int | None = None
    logs_channel_id: int | None = None


@dataclass(slots=True)
class DatabaseConfig:
    url: str = "sqlite:///./data/tickets.db"
    pool_min_size: int = 2
    pool_max_size: int = 10
    timeout_seconds: int = 30


@dataclass(slots=True)
class RedisConfig:
    enabled: bool = False
    url: str = "redis://localhost:6379/0"
    default_ttl: int = 120


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    directory: str = "logs"
    file_name: str = "bot.log"
    max_bytes: int = 10_000_000
    backup_count: int = 10
    json_console: bool = False


@dataclass(slots=True)
class TicketConfig:
    channel_prefix: str = "pcrp"
    category_channel_id: int | None = None
    close_delay_seconds: float = 5.0
    transcript_message_limit: int = 100
    reconcile_interval_seconds: int = 300
    auto_panel_on_start: bool = True


@dataclass(slots=True)
class TranscriptConfig:
    txt_enabled: bool = True
    attach_to_audit: bool = True
    storage_directory: str = "artifacts/transcripts"


@dataclass(slots=True)
class KeywordConfig:
    enabled: bool = False
    cooldown_seconds: int = 60
    cache_max_entries: int = 1024
    responses: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class WebhookLogConfig:
    enabled: bool = False
    url: str = ""


@dataclass(slots=True)
class FastApiConfig:
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    api_key: str = ""


@dataclass(slots=True)
class AppConfig:
    discord: DiscordConfig
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    tickets: TicketConfig = field(default_factory=TicketConfig)
    transcripts: TranscriptConfig = field(default_factory=TranscriptConfig)
    keywords: KeywordConfig = field(default_factory=KeywordConfig)
    webhook_log: WebhookLogConfig = field(default_factory=WebhookLogConfig)
    fastapi: FastApiConfig = field(default_factory=FastApiConfig)
    enabled_extensions: list[str] = field(
        default_factory=lambda: [
            "cogs.events",
            "cogs.tickets",
            "cogs.admin",
        ]
    )


_PREFIX_PATTERN = re.compile(r"^[a-z0-9]+$")


def _get_env_str(key: str, fallback: str | None = None) -> str | None:
    value = os.getenv(key)
    if value is None:
        return fallback
    cleaned = value.strip()
    return cleaned if cleaned else fallback


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_optional_id(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _deep_get(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    node: Any = data
    for key in keys:
        if not isinstance(node, dict):
            return default
        node = node.get(key)
        if node is None:
            return default
    return node


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing config file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return raw


def _required_id(env_key: str, raw_value: Any, label: str) -> int:
    value = _as_optional_id(_get_env_str(env_key)) or _as_optional_id(raw_value)
    if value is None:
        raise ConfigError(f"{label} is required")
    return value


def _load_discord(raw: dict[str, Any]) -> DiscordConfig:
    token = _get_env_str("DISCORD_TOKEN", _deep_get(raw, "discord", "token"))
    if not token or "${" in token:
        raise ConfigError("DISCORD_TOKEN is required")

    return DiscordConfig(
        token=token,
        guild_id=_required_id("GUILD_ID", _deep_get(raw, "discord", "guild_id"), "GUILD_ID"),
        admin_role_id=_required_id(
            "ADMIN_ROLE_ID", _deep_get(raw, "discord", "admin_role_id"), "ADMIN_ROLE_ID"
        ),
        prefix=str(_get_env_str("BOT_PREFIX", _deep_get(raw, "discord", "prefix", default="!"))),
        application_id=_as_optional_id(
            _get_env_str("DISCORD_APPLICATION_ID", _deep_get(raw, "discord", "application_id"))
        ),
        sync_commands_on_start=_as_bool(
            _get_env_str("SYNC_COMMANDS"),
            _as_bool(_deep_get(raw, "discord", "sync_commands_on_start"), True),
        ),
        status_text=str(_deep_get(raw, "discord", "status_text", default="Support tickets")),
        activity_type=str(_deep_get(raw, "discord", "activity_type", default="watching")),
        ticket_channel_id=_as_optional_id(
            _get_env_str("TICKET_CHANNEL_ID", _deep_get(raw, "discord", "ticket_channel_id"))
        ),
        logs_channel_id=_as_optional_id(
            _get_env_str("LOGS_CHANNEL_ID", _deep_get(raw, "discord", "logs_channel_id"))
        ),
    )


def _load_tickets(raw: dict[str, Any]) -> TicketConfig:
    prefix = str(_deep_get(raw, "tickets", "channel_prefix", default="pcrp")).strip().lower()
    if not _PREFIX_PATTERN.match(prefix):
        raise ConfigError("tickets.channel_prefix must only contain a-z and 0-9")

    delay_raw = _deep_get(raw, "tickets", "close_delay_seconds", default=5)
    try:
        close_delay = max(float(delay_raw), 0.0)
    except (TypeError, ValueError):
        close_delay = 5.0

    return TicketConfig(
        channel_prefix=prefix,
        category_channel_id=_as_optional_id(_deep_get(raw, "tickets", "category_channel_id")),
        close_delay_seconds=close_delay,
        transcript_message_limit=max(
            _as_int(_deep_get(raw, "tickets", "transcript_message_limit"), 100), 1
        ),
        reconcile_interval_seconds=max(
            _as_int(
                _get_env_str("RECONCILE_INTERVAL_SECONDS"),
                _as_int(_deep_get(raw, "tickets", "reconcile_interval_seconds"), 300),
            ),
            30,
        ),
        auto_panel_on_start=_as_bool(_deep_get(raw, "tickets", "auto_panel_on_start"), True),
    )


def load_config(config_path: Path) -> AppConfig:
    env_path = config_path.parent.parent / ".env"
    load_dotenv(env_path)
    raw = _load_yaml(config_path)

    discord_cfg = _load_discord(raw)

    database_cfg = DatabaseConfig(
        url=str(_get_env_str("DATABASE_URL", _deep_get(raw, "database", "url", default="sqlite:///./data/tickets.db"))),
        pool_min_size=_as_int(
            _get_env_str("DB_POOL_MIN", None),
            _as_int(_deep_get(raw, "database", "pool_min_size"), 2),
        ),
        pool_max_size=_as_int(
            _get_env_str("DB_POOL_MAX", None),
            _as_int(_deep_get(raw, "database", "pool_max_size"), 10),
        ),
        timeout_seconds=_as_int(
            _get_env_str("DB_TIMEOUT_SECONDS", None),
            _as_int(_deep_get(raw, "database", "timeout_seconds"), 30),
        ),
    )

    redis_cfg = RedisConfig(
        enabled=_as_bool(_get_env_str("REDIS_ENABLED"), _as_bool(_deep_get(raw, "redis", "enabled"), False)),
        url=str(_get_env_str("REDIS_URL", _deep_get(raw, "redis", "url", default="redis://localhost:6379/0"))),
        default_ttl=_as_int(_deep_get(raw, "redis", "default_ttl"), 120),
    )

    logging_cfg = LoggingConfig(
        level=str(_get_env_str("LOG_LEVEL", _deep_get(raw, "logging", "level", default="INFO"))),
        directory=str(_deep_get(raw, "logging", "directory", default="logs")),
        file_name=str(_deep_get(raw, "logging", "file_name", default="bot.log")),
        max_bytes=_as_int(_deep_get(raw, "logging", "max_bytes"), 10_000_000),
        backup_count=_as_int(_deep_get(raw, "logging", "backup_count"), 10),
        json_console=_as_bool(_deep_get(raw, "logging", "json_console"), False),
    )

    transcript_cfg = TranscriptConfig(
        txt_enabled=_as_bool(_deep_get(raw, "transcripts", "txt_enabled"), True),
        attach_to_audit=_as_bool(_deep_get(raw, "transcripts", "attach_to_audit"), True),
        storage_directory=str(
            _deep_get(raw, "transcripts", "storage_directory", default="artifacts/transcripts")
        ),
    )

    keyword_cfg = KeywordConfig(
        enabled=_as_bool(_deep_get(raw, "keywords", "enabled"), False),
        cooldown_seconds=max(_as_int(_deep_get(raw, "keywords", "cooldown_seconds"), 60), 1),
        cache_max_entries=max(_as_int(_deep_get(raw, "keywords", "cache_max_entries"), 1024), 1),
        responses={
            str(trigger).strip().lower(): str(reply)
            for trigger, reply in dict(_deep_get(raw, "keywords", "responses", default={})).items()
            if str(trigger).strip()
        },
    )

    webhook_cfg = WebhookLogConfig(
        enabled=_as_bool(_deep_get(raw, "webhook_log", "enabled"), False),
        url=str(_get_env_str("WEBHOOK_LOG_URL", _deep_get(raw, "webhook_log", "url", default=""))),
    )

    fastapi_cfg = FastApiConfig(
        enabled=_as_bool(_deep_get(raw, "fastapi", "enabled"), False),
        host=str(_deep_get(raw, "fastapi", "host", default="0.0.0.0")),
        port=_as_int(_deep_get(raw, "fastapi", "port"), 8000),
        api_key=str(_get_env_str("STATUS_API_KEY", _deep_get(raw, "fastapi", "api_key", default=""))),
    )

    enabled_extensions = [
        str(ext)
        for ext in list(
            _deep_get(
                raw,
                "enabled_extensions",
                default=["cogs.events", "cogs.tickets", "cogs.admin"],
            )
        )
    ]

    return AppConfig(
        discord=discord_cfg,
        database=database_cfg,
        redis=redis_cfg,
        logging=logging_cfg,
        tickets=_load_tickets(raw),
        transcripts=transcript_cfg,
        keywords=keyword_cfg,
        webhook_log=webhook_cfg,
        fastapi=fastapi_cfg,
        enabled_extensions=enabled_extensions,
    )
