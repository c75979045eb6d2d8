"""famcal configuration loading and validation.

Reads famcal.toml from a config directory, parses all sections, and returns
a validated FamcalConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from famcal.calendar.colors import DEFAULT_EVENT_COLOR, DEFAULT_FAMILY_COLOR

CONFIG_FILENAME = "famcal.toml"

DEFAULT_GOOGLE_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/userinfo.email",
)

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")


class ConfigError(Exception):
    """Raised when famcal configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [famcal.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class GoogleConfig:
    """OAuth client and API settings from the [google] section."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str | None = None
    scopes: tuple[str, ...] = DEFAULT_GOOGLE_SCOPES
    request_timeout_s: float = 30.0


@dataclass
class SyncConfig:
    """Synchronization tunables from the [sync] section.

    ``race_guard_seconds`` is the window after a local write during which
    remote copies of that event are not written back over it.
    ``token_skew_seconds`` is how early before expiry an access token is
    refreshed.
    """

    race_guard_seconds: float = 5.0
    token_skew_seconds: int = 60
    page_size: int = 250
    default_color: str = DEFAULT_EVENT_COLOR
    family_color: str = DEFAULT_FAMILY_COLOR


@dataclass
class NotificationConfig:
    """Real-time fan-out collaborator from the [notifications] section."""

    url: str | None = None
    timeout_s: float = 5.0


@dataclass
class FamcalConfig:
    """Parsed and validated famcal configuration."""

    name: str = "famcal"
    host: str = "127.0.0.1"
    port: int = 8400
    db_url: str | None = None
    db_name: str = "famcal"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(data: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    raw = data.get(key, {})
    if not isinstance(raw, dict):
        raise ConfigError(f"[{path}] must be a TOML table")
    return raw


def _positive_number(raw: Any, path: str, *, cast: type = float) -> Any:
    try:
        value = cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}: {raw!r}. Expected a number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}: {raw!r}. Must be positive.")
    return value


def _hex_color(raw: Any, path: str) -> str:
    if not isinstance(raw, str) or _HEX_COLOR_PATTERN.fullmatch(raw.strip()) is None:
        raise ConfigError(f"Invalid {path}: {raw!r}. Expected a '#RRGGBB' color.")
    return raw.strip().upper()


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid famcal.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(level=log_level, format=log_format, log_root=section.get("log_root"))


def _parse_google(section: dict[str, Any]) -> GoogleConfig:
    raw_scopes = section.get("scopes")
    if raw_scopes is None:
        scopes = DEFAULT_GOOGLE_SCOPES
    elif isinstance(raw_scopes, list) and all(isinstance(s, str) for s in raw_scopes):
        scopes = tuple(s.strip() for s in raw_scopes if s.strip())
    else:
        raise ConfigError("google.scopes must be a list of strings")

    redirect_uri = section.get("redirect_uri")
    if redirect_uri is not None and not isinstance(redirect_uri, str):
        raise ConfigError("google.redirect_uri must be a string when set")

    return GoogleConfig(
        client_id=str(section.get("client_id", "")).strip(),
        client_secret=str(section.get("client_secret", "")).strip(),
        redirect_uri=redirect_uri,
        scopes=scopes,
        request_timeout_s=_positive_number(
            section.get("request_timeout_s", 30.0), "google.request_timeout_s"
        ),
    )


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    race_guard = section.get("race_guard_seconds", 5.0)
    try:
        race_guard_seconds = float(race_guard)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid sync.race_guard_seconds: {race_guard!r}") from exc
    if race_guard_seconds < 0:
        raise ConfigError("sync.race_guard_seconds must not be negative")

    token_skew = section.get("token_skew_seconds", 60)
    try:
        token_skew_seconds = int(token_skew)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid sync.token_skew_seconds: {token_skew!r}") from exc
    if token_skew_seconds < 0:
        raise ConfigError("sync.token_skew_seconds must not be negative")

    page_size = _positive_number(section.get("page_size", 250), "sync.page_size", cast=int)
    if page_size > 2500:
        raise ConfigError("sync.page_size must not exceed 2500")

    return SyncConfig(
        race_guard_seconds=race_guard_seconds,
        token_skew_seconds=token_skew_seconds,
        page_size=page_size,
        default_color=_hex_color(
            section.get("default_color", DEFAULT_EVENT_COLOR), "sync.default_color"
        ),
        family_color=_hex_color(
            section.get("family_color", DEFAULT_FAMILY_COLOR), "sync.family_color"
        ),
    )


def _parse_notifications(section: dict[str, Any]) -> NotificationConfig:
    url = section.get("url")
    if url is not None:
        if not isinstance(url, str):
            raise ConfigError("notifications.url must be a string when set")
        url = url.strip() or None
    return NotificationConfig(
        url=url,
        timeout_s=_positive_number(section.get("timeout_s", 5.0), "notifications.timeout_s"),
    )


def parse_config(data: dict[str, Any]) -> FamcalConfig:
    """Validate an already-parsed TOML document and build a :class:`FamcalConfig`."""
    data = resolve_env_vars(data)

    famcal_section = _section(data, "famcal", "famcal")
    name = str(famcal_section.get("name", "famcal")).strip()
    if not name:
        raise ConfigError("famcal.name must be a non-empty string")

    port_raw = famcal_section.get("port", 8400)
    if isinstance(port_raw, bool) or not isinstance(port_raw, int):
        raise ConfigError(f"Invalid famcal.port: {port_raw!r}. Expected an integer.")
    if not 0 < port_raw < 65536:
        raise ConfigError(f"Invalid famcal.port: {port_raw!r}. Expected 1-65535.")

    db_section = _section(famcal_section, "db", "famcal.db")
    db_url = db_section.get("url")
    if db_url is not None and (not isinstance(db_url, str) or not db_url.strip()):
        raise ConfigError("famcal.db.url must be a non-empty string when set")
    db_name = str(db_section.get("name", "famcal")).strip()
    if not db_name:
        raise ConfigError("famcal.db.name must be a non-empty string")

    return FamcalConfig(
        name=name,
        host=str(famcal_section.get("host", "127.0.0.1")),
        port=port_raw,
        db_url=db_url.strip() if isinstance(db_url, str) else None,
        db_name=db_name,
        logging=_parse_logging(_section(famcal_section, "logging", "famcal.logging")),
        google=_parse_google(_section(data, "google", "google")),
        sync=_parse_sync(_section(data, "sync", "sync")),
        notifications=_parse_notifications(_section(data, "notifications", "notifications")),
    )


def load_config(config_dir: Path) -> FamcalConfig:
    """Load and validate a famcal.toml from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    raw_bytes = toml_path.read_bytes()
    try:
        data = tomllib.loads(raw_bytes.decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
