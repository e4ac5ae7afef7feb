"""Tests for configuration loading and interpolation."""

from pathlib import Path

import jsonschema
import orjson
import pytest

from shopfloor_board.config import AppConfig, _interpolate_value, load_config

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"
SCHEMA = CONFIG_DIR / "config.schema.json"


def _write(tmp_path: Path, raw: dict) -> Path:
    path = tmp_path / "config.json"
    path.write_bytes(orjson.dumps(raw))
    return path


def test_example_config_loads(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("SHOPFLOOR_HUB_URL", "SHOPFLOOR_HUB_TOKEN", "SHOPFLOOR_PUSH_API", "FCM_SERVER_KEY",
                "SHOPFLOOR_USER_AGENT"):
        monkeypatch.delenv(var, raising=False)
    cfg = load_config(CONFIG_DIR / "config.example.json", schema_path=SCHEMA)

    assert cfg.client_id == "board-planta-1"
    assert cfg.hub.url == "ws://localhost:8765"
    assert cfg.hub.auth_token == ""
    assert cfg.hub.reconnect.initial_delay_ms == 1000
    assert cfg.notifications.lock_ms["foreground"] == 1000
    assert cfg.notifications.user_agent == ""
    assert cfg.snapshot.observations_only_operator == "Observaciones"


class TestInterpolation:
    def test_precedence(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """CLI overrides beat env, env beats secrets, secrets beat the default."""
        value = "${HUB_TOKEN:-fallback}"
        monkeypatch.delenv("HUB_TOKEN", raising=False)
        assert _interpolate_value(value) == "fallback"
        assert _interpolate_value(value, secrets={"HUB_TOKEN": "s"}) == "s"
        monkeypatch.setenv("HUB_TOKEN", "e")
        assert _interpolate_value(value, secrets={"HUB_TOKEN": "s"}) == "e"
        assert _interpolate_value(value, overrides={"HUB_TOKEN": "o"}, secrets={"HUB_TOKEN": "s"}) == "o"

    def test_required_variable_missing(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("FCM_SERVER_KEY", raising=False)
        with pytest.raises(ValueError, match="FCM_SERVER_KEY"):
            _interpolate_value("${FCM_SERVER_KEY}")

    def test_embedded(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HOST", "hub.local")
        assert _interpolate_value("ws://${HOST}:8765") == "ws://hub.local:8765"


def test_nested_sections_keep_defaults(tmp_path: Path) -> None:
    path = _write(tmp_path, {
        "hub": {"url": "wss://hub.example.com", "reconnect": {"jitter_pct": 0}},
        "watch": {"exclude_categories": ["producing"]},
    })
    cfg = load_config(path, schema_path=SCHEMA)
    assert cfg.hub.url == "wss://hub.example.com"
    assert cfg.hub.reconnect.jitter_pct == 0
    assert cfg.hub.reconnect.max_delay_ms == AppConfig().hub.reconnect.max_delay_ms
    assert cfg.hub.document_path == "imgStates"
    assert cfg.watch.exclude_categories == ["producing"]


def test_secrets_feed_interpolation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FCM_SERVER_KEY", raising=False)
    path = _write(tmp_path, {"push": {"server_key": "${FCM_SERVER_KEY}"}})
    cfg = load_config(path, secrets={"FCM_SERVER_KEY": "AAAA-key"}, schema_path=SCHEMA)
    assert cfg.push.server_key == "AAAA-key"


@pytest.mark.parametrize("raw", [
    {"unknown_section": {}},
    {"hub": {"url": "http://not-a-websocket"}},
    {"notifications": {"dedup_policy": "sometimes"}},
    {"push": {"batch_size": 1000}},
    {"snapshot": {"exclude_categories": ["welding"]}},
])
def test_schema_violations(tmp_path: Path, raw: dict) -> None:
    with pytest.raises(jsonschema.ValidationError):
        load_config(_write(tmp_path, raw), schema_path=SCHEMA)


def test_missing_schema_skips_validation(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path, {"client_id": "x"}), schema_path=tmp_path / "nope.json")
    assert cfg.client_id == "x"
