"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → encrypted secrets → raw config value.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import jsonschema
import orjson

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"


@dataclass
class ReconnectConfig:
    """Reconnection backoff parameters."""

    initial_delay_ms: int = 1000
    max_delay_ms: int = 60000
    backoff_multiplier: int = 2
    jitter_pct: int = 20


@dataclass
class HubConfig:
    """Where the shared board document lives."""

    url: str = "ws://localhost:8765"
    auth_token: str = ""
    document_path: str = "imgStates"
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)


@dataclass
class HubServerConfig:
    """Settings for ``shopfloor-board hub``."""

    host: str = "0.0.0.0"
    port: int = 8765
    data_file: str = "/var/lib/shopfloor-board/documents.json"
    auth_token: str = ""


@dataclass
class PushConfig:
    """Push fan-out settings, client and server side."""

    api_url: str = "http://localhost:4000/api/send-fcm"
    fcm_endpoint: str = "https://fcm.googleapis.com/fcm/send"
    server_key: str = ""
    tokens_path: str = "fcmTokens"
    batch_size: int = 500
    icon_url: str = "https://cdn-icons-png.flaticon.com/512/190/190411.png"
    badge_url: str = "https://cdn-icons-png.flaticon.com/512/190/190411.png"
    vibrate: list[int] = field(default_factory=lambda: [200, 100, 200])
    link: str = "/"
    urgency: str = "high"
    ttl_seconds: int = 86400


@dataclass
class PushServerConfig:
    """Settings for ``shopfloor-board push-server``."""

    host: str = "0.0.0.0"
    port: int = 4000


@dataclass
class NotificationConfig:
    """Duplicate suppression and dispatch rate limiting."""

    dedup_policy: str = "global_lock"
    dedup_window_ms: int = 2000
    lock_ms: dict[str, int] = field(default_factory=lambda: {
        "foreground": 1000,
        "background": 2000,
        "push": 2000,
    })
    dispatch_interval_ms: int = 2000
    user_agent: str = ""


@dataclass
class SnapshotConfig:
    """Shift handover snapshot settings."""

    operators: list[str] = field(default_factory=lambda: [
        "Turno mañana", "Turno tarde", "Turno noche", "Observaciones",
    ])
    observations_only_operator: str = "Observaciones"
    exclude_categories: list[str] = field(default_factory=lambda: ["producing"])


@dataclass
class MirrorConfig:
    """Local write-through copy of the board."""

    enabled: bool = True
    path: str = "~/.local/state/shopfloor-board/board.json"
    poll_interval_ms: int = 1000


@dataclass
class WatchConfig:
    """Which machines ``shopfloor-board watch`` reports."""

    exclude_categories: list[str] = field(default_factory=list)
    drop_machine_ids: list[str] = field(default_factory=list)
    keep_machine_ids: list[str] = field(default_factory=list)


@dataclass
class RotationConfig:
    """File rotation thresholds."""

    interval_seconds: int = 600
    max_size_bytes: int = 52428800


@dataclass
class FlushConfig:
    """File flush settings."""

    interval_ms: int = 1000
    every_n_events: int = 50


@dataclass
class FileOutputConfig:
    """File-mode output settings for ``watch``."""

    output_dir: str = "/var/lib/shopfloor-board/changes"
    file_prefix: str = "changes"
    rotation: RotationConfig = field(default_factory=RotationConfig)
    flush: FlushConfig = field(default_factory=FlushConfig)


@dataclass
class OutputConfig:
    """Output section wrapper."""

    file: FileOutputConfig = field(default_factory=FileOutputConfig)


@dataclass
class LogFileConfig:
    """Optional rotating log file, written in addition to stderr."""

    enabled: bool = False
    path: str = "/var/log/shopfloor-board/app.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(
        default_factory=lambda: ["*_key", "*auth_token*", "*secret*", "*password*"]
    )


@dataclass
class AppConfig:
    """Top-level application configuration."""

    client_id: str = "board-01"
    hub: HubConfig = field(default_factory=HubConfig)
    hub_server: HubServerConfig = field(default_factory=HubServerConfig)
    push: PushConfig = field(default_factory=PushConfig)
    push_server: PushServerConfig = field(default_factory=PushServerConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    mirror: MirrorConfig = field(default_factory=MirrorConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _lookup_chain(
    overrides: dict[str, str] | None,
    secrets: dict[str, str] | None,
) -> list[Mapping[str, str]]:
    return [overrides or {}, os.environ, secrets or {}]


def _interpolate_value(
    value: str,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> str:
    """Substitute every placeholder in *value*.

    Raises
    ------
    ValueError
        If a placeholder without a default resolves nowhere.
    """
    sources = _lookup_chain(overrides, secrets)

    def _resolve(match: re.Match) -> str:
        name, fallback = match.group(1), match.group(2)
        for source in sources:
            found = source.get(name)
            if found is not None:
                return found
        if fallback is None:
            raise ValueError(
                f"${{{name}}} is required but was not given as an override, "
                f"found in the environment, or stored in the secrets file"
            )
        return fallback

    return _VAR_RE.sub(_resolve, value)


def _interpolate_tree(
    node: Any,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> Any:
    if isinstance(node, dict):
        return {key: _interpolate_tree(child, overrides, secrets) for key, child in node.items()}
    if isinstance(node, list):
        return [_interpolate_tree(child, overrides, secrets) for child in node]
    if isinstance(node, str) and "${" in node:
        return _interpolate_value(node, overrides, secrets)
    return node


def _build(cls: type, raw: Optional[dict[str, Any]]) -> Any:
    """Instantiate dataclass *cls* from *raw*, recursing into nested sections.

    Unknown keys are ignored; missing keys keep their defaults.
    """
    raw = raw or {}
    kwargs: dict[str, Any] = {}
    defaults = cls()
    for f in fields(cls):
        if f.name not in raw:
            continue
        current = getattr(defaults, f.name)
        if is_dataclass(current):
            kwargs[f.name] = _build(type(current), raw[f.name])
        else:
            kwargs[f.name] = raw[f.name]
    return cls(**kwargs)


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    return _build(AppConfig, raw)


def load_config(
    path: str | Path,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to ``config.json``.
    overrides:
        CLI-supplied variable overrides.
    secrets:
        Values from the encrypted secrets file.
    schema_path:
        Path to the JSON Schema file.  Defaults to
        ``config/config.schema.json`` relative to the project root.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    raw: dict[str, Any] = orjson.loads(Path(path).read_bytes())

    interpolated = _interpolate_tree(raw, overrides, secrets)

    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    return _dict_to_config(interpolated)
