"""
WebSocket EventSource for the session server.
"""
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import websockets

from chamber_cache import config
from chamber_cache.errors import ProtocolViolation, TransientNetworkError
from chamber_cache.protocol import StreamEvent, parse_event

logger = logging.getLogger("chamber_cache.websocket")


class WebSocketEventSource:
    """Subscribes to one session's events over a websocket connection."""

    def __init__(self, uri: Optional[str] = None):
        self.uri = uri or config.event_source_url()
        self.ws = None
        self._request_id_counter = 0

    async def open(self, session_id: str, resume_token: Optional[str] = None) -> AsyncIterator[StreamEvent]:
        await self.close()
        try:
            self.ws = await websockets.connect(self.uri)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise TransientNetworkError(f"connect to {self.uri} failed: {e}") from e
        logger.info("Connected to %s for %s", self.uri, session_id)

        params: Dict[str, Any] = {"sessionId": session_id}
        if resume_token:
            params["resumeToken"] = resume_token
        await self._send_request("session.subscribe", params)
        return self._events(self.ws, session_id)

    async def request_resync(self, session_id: str, message_ids: List[str]) -> None:
        await self._send_request("session.resync", {"sessionId": session_id, "messageIds": list(message_ids)})

    async def close(self) -> None:
        ws, self.ws = self.ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("Error closing websocket: %s", e)

    async def _send_request(self, method: str, params: Dict[str, Any]) -> None:
        if self.ws is None:
            raise TransientNetworkError("Not connected to session server")
        request = {"type": "req", "id": self._next_request_id(), "method": method, "params": params}
        try:
            await self.ws.send(json.dumps(request))
        except websockets.exceptions.ConnectionClosed as e:
            raise TransientNetworkError(f"{method} failed: connection closed") from e

    async def _events(self, ws, session_id: str) -> AsyncIterator[StreamEvent]:
        while True:
            try:
                data = await ws.recv()
            except websockets.exceptions.ConnectionClosedOK:
                logger.info("Connection closed by server")
                return
            except websockets.exceptions.ConnectionClosed as e:
                raise TransientNetworkError(f"connection lost: {e}") from e

            try:
                message = json.loads(data)
            except ValueError:
                logger.warning("Dropping non-JSON frame from server")
                continue

            msg_type = message.get("type") if isinstance(message, dict) else None
            if msg_type == "res":
                if not message.get("ok"):
                    raise TransientNetworkError(f"request {message.get('id')} rejected: {message.get('error')}")
                continue
            if msg_type != "event":
                continue

            try:
                event = parse_event(message)
            except ProtocolViolation as e:
                logger.warning("Dropping malformed event: %s", e)
                continue
            if event.session_id and event.session_id != session_id:
                continue
            yield event

    def _next_request_id(self) -> str:
        self._request_id_counter += 1
        return f"req-{self._request_id_counter}"
