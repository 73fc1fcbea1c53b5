"""Persistent, self-healing control channel to the controller."""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from citrus_agent.core.models import AgentIdentity, ConnectionState
from citrus_agent.core.transport import Connection, Transport, TransportError

logger = logging.getLogger("channel")

MessageHandler = Callable[[Dict[str, Any]], Any]
StatusCollector = Callable[[], Awaitable[Dict[str, Any]]]


class ControlChannel:
    """Keeps exactly one logical connection to the controller alive.

    Every session starts with an ``agent_connected`` announcement followed by
    ``clear_command_state`` and a heartbeat task. When the transport closes,
    the heartbeat is cancelled and a new connect is attempted after a fixed
    delay, forever.
    """

    def __init__(
        self,
        *,
        url: str,
        identity: AgentIdentity,
        transport: Transport,
        collect_status: StatusCollector,
        reconnect_delay: float = 5.0,
        heartbeat_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._url = url
        self._identity = identity
        self._transport = transport
        self._collect_status = collect_status
        self._reconnect_delay = reconnect_delay
        self._heartbeat_interval = heartbeat_interval
        self._clock = clock
        self._state = ConnectionState.DISCONNECTED
        self._connection: Optional[Connection] = None
        self._heartbeat: Optional[asyncio.Task[None]] = None
        self._runner: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._on_message: Optional[MessageHandler] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def identity(self) -> AgentIdentity:
        return self._identity

    def set_message_handler(self, handler: MessageHandler) -> None:
        """Set the callback receiving every decoded inbound message."""
        self._on_message = handler

    def rotate_secret(self, new_secret: str) -> None:
        """Use ``new_secret`` from the next connect on; the live session is untouched."""
        self._identity = self._identity.rotated(new_secret)

    async def start(self) -> None:
        if self._runner is not None:
            return
        self._stop_event.clear()
        self._runner = asyncio.create_task(self.run())

    async def stop(self) -> None:
        self._stop_event.set()
        self._stop_heartbeat()
        connection = self._connection
        if connection is not None:
            await connection.close()
        if self._runner is not None:
            if self._state is ConnectionState.CONNECTING:
                self._runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._runner
            self._runner = None

    async def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.connect_once()
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Connection attempt crashed",
                    extra={"service": "channel", "error": str(exc)},
                    exc_info=True,
                )
                self._state = ConnectionState.DISCONNECTED
            if self._stop_event.is_set():
                break
            logger.info(
                "Disconnected from controller, reconnecting",
                extra={"service": "channel", "delay": self._reconnect_delay},
            )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._reconnect_delay)
            except asyncio.TimeoutError:
                pass

    async def connect_once(self) -> None:
        """Run one session: connect, handshake, read frames until the transport ends."""
        self._state = ConnectionState.CONNECTING
        identity = self._identity
        logger.info(
            "Connecting to controller",
            extra={"service": "channel", "url": self._url, "agent_id": identity.agent_id},
        )
        try:
            connection = await self._transport.connect(self._url, identity.headers())
        except TransportError as exc:
            logger.error("Connection failed", extra={"service": "channel", "error": str(exc)})
            self._state = ConnectionState.DISCONNECTED
            return

        self._connection = connection
        self._state = ConnectionState.CONNECTED
        logger.info("Connected to controller", extra={"service": "channel"})
        try:
            await self.send({"type": "agent_connected"})
            await self.send({"type": "clear_command_state"})
            self._start_heartbeat()
            async for frame in connection.frames():
                await self._handle_frame(frame)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Control channel session failed",
                extra={"service": "channel", "error": str(exc)},
                exc_info=True,
            )
        finally:
            self._stop_heartbeat()
            self._connection = None
            self._state = ConnectionState.DISCONNECTED
            await connection.close()

    async def send(self, payload: Dict[str, Any]) -> None:
        """Transmit a payload if the session is open; otherwise drop it."""
        connection = self._connection
        if (
            connection is None
            or connection.closed
            or self._state is not ConnectionState.CONNECTED
        ):
            logger.debug(
                "Dropping outbound message while disconnected",
                extra={"service": "channel", "command_type": payload.get("type")},
            )
            return
        frame = json.dumps(
            {
                **payload,
                "agentId": self._identity.agent_id,
                "timestamp": int(self._clock() * 1000),
            },
            default=str,
        )
        try:
            await connection.send_text(frame)
        except OSError as exc:
            logger.warning(
                "Outbound message lost",
                extra={"service": "channel", "command_type": payload.get("type"), "error": str(exc)},
            )

    async def _handle_frame(self, frame: str) -> None:
        try:
            message = json.loads(frame)
        except json.JSONDecodeError as exc:
            problem = f"Invalid JSON: {exc}"
        else:
            problem = None if isinstance(message, dict) else "Message must be a JSON object"

        if problem is not None:
            logger.warning("Undecodable message", extra={"service": "channel", "error": problem})
            await self.send({"type": "error", "error": problem, "originalMessage": frame})
            return

        if self._on_message is None:
            logger.warning(
                "No message handler registered, dropping message",
                extra={"service": "channel", "command_type": message.get("type")},
            )
            return
        self._on_message(message)

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat = asyncio.create_task(self._heartbeat_loop())

    def _stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                snapshot = await self._collect_status()
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Status collection failed",
                    extra={"service": "channel", "error": str(exc)},
                    exc_info=True,
                )
                continue
            await self.send({"type": "status_update", "status": snapshot})
