"""Tests for the secret-redacting log filter."""

import logging
from dataclasses import asdict

from shopfloor_board.config import AppConfig, LoggingConfig
from shopfloor_board.redactor import REDACTED, SecretRedactingFilter, collect_secret_values


def _record(msg: str, *args) -> logging.LogRecord:
    return logging.LogRecord("test", logging.INFO, __file__, 1, msg, args, None)


def test_redacts_message_and_args() -> None:
    f = SecretRedactingFilter(["AAAA-server-key", "hubsecret"])
    record = _record("posting with %s to %s", "AAAA-server-key", "hub")
    record.msg = "key AAAA-server-key, token hubsecret"
    assert f.filter(record) is True
    assert record.msg == f"key {REDACTED}, token {REDACTED}"
    assert record.args == (REDACTED, "hub")


def test_short_values_are_not_treated_as_secrets() -> None:
    f = SecretRedactingFilter(["", "abc"])
    assert f.redact("abc abc") == "abc abc"


def test_longest_secret_wins() -> None:
    f = SecretRedactingFilter(["token", "token-extended"])
    assert f.redact("token-extended") == REDACTED


def test_authorization_forms_are_masked() -> None:
    f = SecretRedactingFilter()
    assert f.redact("Authorization: Bearer abcdef123456") == f"Authorization: Bearer {REDACTED}"
    assert f.redact("header key=AAAAxyz0987654") == f"header key={REDACTED}"


def test_add_secret() -> None:
    f = SecretRedactingFilter()
    f.add_secret("late-secret")
    assert f.redact("x late-secret y") == f"x {REDACTED} y"


def test_non_strings_pass_through() -> None:
    f = SecretRedactingFilter(["1234"])
    assert f.redact(1234) == 1234


def test_collect_from_config() -> None:
    cfg = AppConfig()
    cfg.hub.auth_token = "hub-token-value"
    cfg.push.server_key = "fcm-server-key"
    found = collect_secret_values(asdict(cfg), LoggingConfig().redact_patterns)
    assert "hub-token-value" in found
    assert "fcm-server-key" in found
    assert "fcmTokens" not in found


def test_collect_without_patterns() -> None:
    assert collect_secret_values({"server_key": "x" * 10}, []) == []
