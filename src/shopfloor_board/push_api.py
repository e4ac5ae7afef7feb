"""HTTP API that fans a notification out to every registered endpoint.

Routes::

    POST    /api/send-fcm           {title, body}       → {success, results | message}
    POST    /api/send-fcm-external  {title, body, to?}  → {ok, fcm}
    OPTIONS /api/send-fcm-external                      → 200 (CORS preflight)
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Optional

from aiohttp import web

from shopfloor_board.config import PushConfig
from shopfloor_board.documents import DocumentStore
from shopfloor_board.push import (
    PushTransport,
    batched,
    build_push_message,
    registered_tokens,
)

logger = logging.getLogger(__name__)

DOCUMENTS_KEY = web.AppKey("documents", object)
TRANSPORT_KEY = web.AppKey("transport", object)
PUSH_CONFIG_KEY = web.AppKey("push_config", PushConfig)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

DEFAULT_TARGET = "/topics/all"


async def _read_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


async def send_fcm(request: web.Request) -> web.Response:
    body = await _read_body(request)
    title, text = body.get("title"), body.get("body")
    if not title or not text:
        return web.json_response({"error": "Missing title or body"}, status=400)

    documents: DocumentStore = request.app[DOCUMENTS_KEY]
    transport: PushTransport = request.app[TRANSPORT_KEY]
    config = request.app[PUSH_CONFIG_KEY]

    try:
        tokens = await registered_tokens(documents, config.tokens_path)
        if not tokens:
            return web.json_response({"success": False, "message": "No registered tokens"})

        logger.info("Sending %r to %d endpoints", title, len(tokens))
        message = build_push_message(title, text, config)
        results = []
        for batch in batched(tokens, config.batch_size):
            results.extend(await transport.send_multicast(batch, message))
    except Exception as exc:
        logger.exception("Push fan-out failed")
        return web.json_response({"error": str(exc)}, status=500)

    return web.json_response({
        "success": True,
        "sent": sum(1 for r in results if r.success),
        "results": [asdict(r) for r in results],
    })


async def send_fcm_external(request: web.Request) -> web.Response:
    if request.method == "OPTIONS":
        return web.Response(status=200, headers=CORS_HEADERS)
    if request.method != "POST":
        return web.json_response({"error": "Method not allowed"}, status=405, headers=CORS_HEADERS)

    body = await _read_body(request)
    title, text = body.get("title"), body.get("body")
    target = body.get("to") or DEFAULT_TARGET
    if not title or not text:
        return web.json_response({"error": "Missing title or body"}, status=400, headers=CORS_HEADERS)

    transport: PushTransport = request.app[TRANSPORT_KEY]
    try:
        data = await transport.send_to(target, {"title": title, "body": text})
    except Exception as exc:
        logger.exception("External push to %s failed", target)
        return web.json_response({"error": str(exc)}, status=500, headers=CORS_HEADERS)

    return web.json_response({"ok": True, "fcm": data}, headers=CORS_HEADERS)


def create_app(
    documents: DocumentStore,
    transport: PushTransport,
    config: Optional[PushConfig] = None,
) -> web.Application:
    app = web.Application()
    app[DOCUMENTS_KEY] = documents
    app[TRANSPORT_KEY] = transport
    app[PUSH_CONFIG_KEY] = config or PushConfig()
    app.router.add_post("/api/send-fcm", send_fcm)
    app.router.add_route("*", "/api/send-fcm-external", send_fcm_external)
    return app

