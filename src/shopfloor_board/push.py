"""Push registration and delivery.

Registered endpoints live in the shared document tree under
``fcmTokens/<token>``; the token is the key so re-registering the same
browser does not create duplicates.

Delivery goes through a :class:`PushTransport`.  :class:`FcmTransport`
posts to the FCM HTTP endpoint with the server key; web-push options
(icon, badge, vibration, actions, urgency, TTL) are passed through as-is.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

import aiohttp

from shopfloor_board.config import PushConfig
from shopfloor_board.documents import DocumentStore, child_keys

logger = logging.getLogger(__name__)

# FCM accepts at most this many registration ids per multicast.
MAX_BATCH_SIZE = 500


@dataclass
class DeliveryResult:
    """Outcome for one registration token."""

    token: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class PushTransport(Protocol):
    async def send_multicast(
        self, tokens: Sequence[str], message: dict[str, Any]
    ) -> list[DeliveryResult]: ...

    async def send_to(self, target: str, notification: dict[str, Any]) -> dict[str, Any]: ...


def build_push_message(title: str, body: str, config: PushConfig) -> dict[str, Any]:
    """Notification payload plus the opaque web-push options."""
    return {
        "notification": {"title": title, "body": body},
        "webpush": {
            "notification": {
                "icon": config.icon_url,
                "badge": config.badge_url,
                "vibrate": list(config.vibrate),
                "actions": [{"action": "open", "title": "Abrir App"}],
            },
            "headers": {
                "Urgency": config.urgency,
                "TTL": str(config.ttl_seconds),
            },
            "fcm_options": {"link": config.link},
        },
    }


def batched(tokens: Sequence[str], size: int = MAX_BATCH_SIZE) -> list[list[str]]:
    size = max(1, min(size, MAX_BATCH_SIZE))
    return [list(tokens[i:i + size]) for i in range(0, len(tokens), size)]


def mask_token(token: str) -> str:
    """Shorten a registration token for log output."""
    return token if len(token) <= 12 else f"{token[:6]}…{token[-4:]}"


async def register_endpoint(
    documents: DocumentStore,
    token: str,
    user_agent: str = "",
    tokens_path: str = "fcmTokens",
) -> None:
    """Record *token* as a delivery target."""
    if not token:
        raise ValueError("Empty registration token")
    await documents.write(f"{tokens_path}/{token}", {
        "registeredAt": int(time.time() * 1000),
        "userAgent": user_agent,
    })
    logger.info("Registered push endpoint %s", mask_token(token))


async def registered_tokens(documents: DocumentStore, tokens_path: str = "fcmTokens") -> list[str]:
    return child_keys(await documents.read(tokens_path))


class FcmTransport:
    """:class:`PushTransport` over the FCM HTTP API.

    Parameters
    ----------
    config:
        Push settings (endpoint, server key).
    session:
        Shared :class:`aiohttp.ClientSession`; the caller owns its lifetime.
    """

    def __init__(self, config: PushConfig, session: aiohttp.ClientSession) -> None:
        self._endpoint = config.fcm_endpoint
        self._server_key = config.server_key
        self._session = session

    async def send_multicast(
        self, tokens: Sequence[str], message: dict[str, Any]
    ) -> list[DeliveryResult]:
        data = await self._post({"registration_ids": list(tokens), **message})
        results = data.get("results") or []
        out: list[DeliveryResult] = []
        for idx, token in enumerate(tokens):
            entry = results[idx] if idx < len(results) and isinstance(results[idx], dict) else {}
            error = entry.get("error")
            out.append(DeliveryResult(
                token=token,
                success=error is None and bool(entry),
                message_id=entry.get("message_id"),
                error=error if entry else "missing result",
            ))
        failed = sum(1 for r in out if not r.success)
        if failed:
            logger.warning("FCM multicast: %d of %d deliveries failed", failed, len(out))
        return out

    async def send_to(self, target: str, notification: dict[str, Any]) -> dict[str, Any]:
        return await self._post({"to": target, "notification": notification})

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        async with self._session.post(
            self._endpoint,
            json=payload,
            headers={"Authorization": f"key={self._server_key}"},
        ) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)
