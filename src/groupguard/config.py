from __future__ import annotations

import os
from dataclasses import dataclass, field


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _get_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip() or default


def _get_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _parse_tokens(items: tuple[str, ...]) -> dict[str, str]:
    # "token:user" pairs; entries without a user part are ignored
    tokens: dict[str, str] = {}
    for item in items:
        token, sep, user = item.partition(":")
        if sep and token and user:
            tokens[token] = user
    return tokens


@dataclass(frozen=True)
class Settings:
    sqlite_path: str = "groupguard.sqlite3"
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8080
    # "package.module:callable" returning a ConnectionProvider
    provider_factory: str = ""

    reconnect_delay_seconds: float = 5.0
    reconnect_max_delay_seconds: float = 60.0

    action_retry_attempts: int = 2
    action_retry_base_delay: float = 0.5
    # Upper bound on each outbound provider call made from a conversation lane
    provider_call_timeout_seconds: float = 10.0

    metadata_cache_ttl_seconds: int = 30

    realtime_queue_size: int = 100
    realtime_send_timeout_seconds: float = 5.0
    realtime_tokens: dict[str, str] = field(default_factory=dict)

    # Platform accounts that always pass the owner tier
    owner_account_ids: tuple[str, ...] = ()
    # Appended to bare numbers given as command arguments ("@123" -> "123<suffix>")
    account_id_suffix: str = ""

    bot_name: str = "GroupGuard"
    bot_version: str = "0.1.0"
    welcome_enabled: bool = True


def load_settings() -> Settings:
    return Settings(
        sqlite_path=_get_str("SQLITE_PATH", "groupguard.sqlite3"),
        log_level=_get_str("LOG_LEVEL", "INFO"),
        host=_get_str("HOST", "127.0.0.1"),
        port=_get_int("PORT", 8080),
        provider_factory=_get_str("PROVIDER_FACTORY", ""),
        reconnect_delay_seconds=_get_float("RECONNECT_DELAY_SECONDS", 5.0),
        reconnect_max_delay_seconds=_get_float("RECONNECT_MAX_DELAY_SECONDS", 60.0),
        action_retry_attempts=max(1, _get_int("ACTION_RETRY_ATTEMPTS", 2)),
        action_retry_base_delay=_get_float("ACTION_RETRY_BASE_DELAY", 0.5),
        provider_call_timeout_seconds=_get_float("PROVIDER_CALL_TIMEOUT_SECONDS", 10.0),
        metadata_cache_ttl_seconds=_get_int("METADATA_CACHE_TTL_SECONDS", 30),
        realtime_queue_size=max(1, _get_int("REALTIME_QUEUE_SIZE", 100)),
        realtime_send_timeout_seconds=_get_float("REALTIME_SEND_TIMEOUT_SECONDS", 5.0),
        realtime_tokens=_parse_tokens(_get_list("REALTIME_TOKENS")),
        owner_account_ids=_get_list("OWNER_ACCOUNT_IDS"),
        account_id_suffix=os.getenv("ACCOUNT_ID_SUFFIX", "").strip(),
        bot_name=_get_str("BOT_NAME", "GroupGuard"),
        bot_version=_get_str("BOT_VERSION", "0.1.0"),
        welcome_enabled=_get_bool("WELCOME_ENABLED", True),
    )
