from __future__ import annotations

import inspect
import json
import logging
from typing import Awaitable, Callable, Mapping, Optional, Union

from aiohttp import WSMsgType, web

from .hub import RealtimeHub

log = logging.getLogger("groupguard.realtime.server")

# Returns the user id for a token, or None to refuse the connection
TokenVerifier = Callable[[str], Union[Optional[str], Awaitable[Optional[str]]]]

HUB_KEY = web.AppKey("realtime_hub", RealtimeHub)
VERIFIER_KEY = web.AppKey("token_verifier", object)


def static_token_verifier(tokens: Mapping[str, str]) -> TokenVerifier:
    """Verifier backed by a fixed ``token -> user id`` table."""
    table = dict(tokens)

    def verify(token: str) -> Optional[str]:
        return table.get(token)

    return verify


async def _verify(verifier: TokenVerifier, token: str) -> Optional[str]:
    result = verifier(token)
    if inspect.isawaitable(result):
        result = await result
    return result


async def websocket_handler(request: web.Request) -> web.StreamResponse:
    hub = request.app[HUB_KEY]
    verifier: TokenVerifier = request.app[VERIFIER_KEY]  # type: ignore[assignment]

    token = request.query.get("token", "")
    user_id = await _verify(verifier, token) if token else None
    if not user_id:
        raise web.HTTPUnauthorized(text="invalid token")

    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)
    log.info("WebSocket connected: %s", user_id)

    hub.register(user_id, ws)
    hub.send_to_user(user_id, "connected", {"message": "WebSocket connected successfully"})
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except ValueError:
                    log.debug("Unparseable realtime message from %s", user_id)
                    continue
                hub.handle_client_message(user_id, data)
            elif msg.type == WSMsgType.ERROR:
                log.warning("WebSocket error for %s: %s", user_id, ws.exception())
                break
    finally:
        hub.unregister(user_id, ws)
        log.info("WebSocket disconnected: %s", user_id)
    return ws


def add_realtime_routes(app: web.Application, hub: RealtimeHub, verifier: TokenVerifier) -> None:
    app[HUB_KEY] = hub
    app[VERIFIER_KEY] = verifier
    app.router.add_get("/ws", websocket_handler)
