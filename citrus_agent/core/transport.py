"""Websocket transport used by the control channel."""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Dict, Optional, Protocol

import aiohttp

logger = logging.getLogger("transport")


class TransportError(ConnectionError):
    """Raised when the controller cannot be reached."""


class Connection(Protocol):
    """An open duplex session with the controller."""

    @property
    def closed(self) -> bool: ...

    def frames(self) -> AsyncIterator[str]:
        """Yield inbound text frames until the session ends."""
        ...

    async def send_text(self, data: str) -> None: ...

    async def close(self) -> None: ...


class Transport(Protocol):
    async def connect(self, url: str, headers: Dict[str, str]) -> Connection: ...


class WebSocketConnection:
    """aiohttp websocket wrapped in the Connection interface."""

    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._session = session
        self._ws = ws

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def frames(self) -> AsyncIterator[str]:
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    yield msg.data
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    yield msg.data.decode("utf-8", errors="replace")
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    # Only the close path triggers reconnection.
                    logger.error(
                        "WebSocket error",
                        extra={"service": "transport", "error": str(self._ws.exception())},
                    )
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING):
                    break
        finally:
            await self.close()

    async def send_text(self, data: str) -> None:
        await self._ws.send_str(data)

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()
        if not self._session.closed:
            await self._session.close()


class WebSocketTransport:
    """Opens websocket sessions to the controller, one client session per connection."""

    def __init__(self, *, heartbeat: Optional[float] = 30.0) -> None:
        self._heartbeat = heartbeat

    async def connect(self, url: str, headers: Dict[str, str]) -> WebSocketConnection:
        session = aiohttp.ClientSession(headers=headers)
        try:
            ws = await session.ws_connect(url, heartbeat=self._heartbeat)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            await session.close()
            raise TransportError(f"Could not connect to {url}: {exc}") from exc
        return WebSocketConnection(session, ws)
