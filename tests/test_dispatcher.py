"""Tests for the notification dispatcher."""

import asyncio
import logging

import aiohttp

from shopfloor_board.dispatcher import NotificationDispatcher


class FakeClock:
    def __init__(self) -> None:
        self.now = 50.0

    def __call__(self) -> float:
        return self.now


class RecordingPoster:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.error = error

    async def __call__(self, url: str, payload: dict):
        self.calls.append((url, payload))
        if self.error is not None:
            raise self.error
        return {"success": True}


URL = "http://push.local/api/send-fcm"


def test_no_token_means_no_request() -> None:
    poster = RecordingPoster()
    dispatcher = NotificationDispatcher(URL, poster=poster)
    assert asyncio.run(dispatcher.dispatch("Máquina S1", "Barrado", "S1")) is False
    assert poster.calls == []


def test_dispatch_posts_title_and_body() -> None:
    poster = RecordingPoster()
    dispatcher = NotificationDispatcher(URL, poster=poster)
    dispatcher.set_token("tok-123456789")
    assert asyncio.run(dispatcher.dispatch("Máquina S1", "Mecánico - Selectores", "S1")) is True
    assert poster.calls == [(URL, {"title": "Máquina S1", "body": "Mecánico - Selectores"})]
    assert dispatcher.sent_count == 1


def test_same_key_rate_limited() -> None:
    clock = FakeClock()
    poster = RecordingPoster()
    dispatcher = NotificationDispatcher(URL, interval_ms=2000, poster=poster, clock=clock)
    dispatcher.set_token("tok")

    async def scenario() -> list[bool]:
        results = [await dispatcher.dispatch("t", "b", "S1")]
        clock.now += 1.0
        results.append(await dispatcher.dispatch("t", "b", "S1"))
        results.append(await dispatcher.dispatch("t", "b", "S2"))
        clock.now += 2.5
        results.append(await dispatcher.dispatch("t", "b", "S2"))
        return results

    assert asyncio.run(scenario()) == [True, False, True, True]
    assert len(poster.calls) == 3


def test_failure_is_logged_not_raised(caplog) -> None:
    poster = RecordingPoster(error=aiohttp.ClientConnectionError("refused"))
    dispatcher = NotificationDispatcher(URL, poster=poster)
    dispatcher.set_token("tok")
    with caplog.at_level(logging.ERROR, logger="shopfloor_board.dispatcher"):
        assert asyncio.run(dispatcher.dispatch("t", "b", "S1")) is True
    assert "failed" in caplog.text


def test_fire_does_not_block() -> None:
    poster = RecordingPoster()
    dispatcher = NotificationDispatcher(URL, poster=poster)
    dispatcher.set_token("tok")

    async def scenario() -> int:
        dispatcher.fire("t", "b", "S1")
        before = len(poster.calls)
        await dispatcher.drain()
        return before

    assert asyncio.run(scenario()) == 0
    assert len(poster.calls) == 1


def test_set_token_none_disarms() -> None:
    dispatcher = NotificationDispatcher(URL, poster=RecordingPoster())
    dispatcher.set_token("tok")
    dispatcher.set_token(None)
    assert dispatcher.token is None
