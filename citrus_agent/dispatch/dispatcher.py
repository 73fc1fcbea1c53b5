"""Routes controller commands to site, certificate and self-update handlers."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from pydantic import ValidationError

from citrus_agent.core.commands import (
    CreateSiteCommand,
    DomainCommand,
    KeyRotationCommand,
    RollbackCommand,
)
from citrus_agent.core.models import InboundCommand, OperationReport, Phase, ProcessResult
from citrus_agent.services.process import ProcessFailed
from citrus_agent.services.secrets import SecretStore
from citrus_agent.services.sites import SiteInfoError, SiteManager
from citrus_agent.services.updater import SelfUpdater

logger = logging.getLogger("dispatch")

Send = Callable[[Dict[str, Any]], Awaitable[None]]
Handler = Callable[[InboundCommand], Awaitable[None]]


async def _as_result(action: Awaitable[str]) -> ProcessResult:
    try:
        output = await action
    except ProcessFailed as exc:
        return ProcessResult(success=False, error=str(exc), exit_code=exc.exit_code)
    return ProcessResult(success=True, output=output)


class CommandDispatcher:
    """Maps inbound command kinds to handlers and reports every outcome."""

    def __init__(
        self,
        *,
        send: Send,
        sites: SiteManager,
        updater: SelfUpdater,
        secret_store: SecretStore,
        rotate_secret: Callable[[str], None],
    ) -> None:
        self._send = send
        self._sites = sites
        self._updater = updater
        self._secret_store = secret_store
        self._rotate_secret = rotate_secret
        self._in_flight: Set[asyncio.Task[None]] = set()
        self._handlers: Dict[str, Handler] = {
            "create_site": self._create_site,
            "delete_site": self._delete_site,
            "deploy_ssl": self._deploy_ssl,
            "redeploy_ssl": self._redeploy_ssl,
            "turn_off_ssl": self._turn_off_ssl,
            "site_info": self._site_info,
            "update_agent": self._update_agent,
            "system_update": self._system_update,
            "rollback_agent": self._rollback_agent,
            "key_rotation": self._key_rotation,
        }

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def submit(self, message: Dict[str, Any]) -> asyncio.Task[None]:
        """Dispatch in the background so the receive loop keeps reading frames."""
        task = asyncio.create_task(self.dispatch(message))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def drain(self, timeout: float = 2.0) -> None:
        """Wait for running commands, cancelling whatever outlives ``timeout``."""
        if not self._in_flight:
            return
        _, pending = await asyncio.wait(set(self._in_flight), timeout=timeout)
        for task in pending:
            task.cancel()
        with contextlib.suppress(Exception):
            await asyncio.gather(*pending, return_exceptions=True)

    async def dispatch(self, message: Dict[str, Any]) -> None:
        command = InboundCommand.from_message(message)
        handler = self._handlers.get(command.kind) if isinstance(command.kind, str) else None
        if handler is None:
            logger.warning(
                "Unknown command type",
                extra={"service": "dispatch", "command_type": command.kind},
            )
            await self._send({"type": "error", "error": f"Unknown command type: {command.kind}"})
            return

        logger.info("Received command", extra={"service": "dispatch", "command_type": command.kind})
        try:
            await handler(command)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Handler error",
                extra={"service": "dispatch", "command_type": command.kind, "error": str(exc)},
                exc_info=True,
            )
            payload: Dict[str, Any] = {
                "type": "error",
                "error": str(exc),
                "originalMessage": command.raw,
            }
            if isinstance(command.fields.get("domain"), str):
                payload["domain"] = command.fields["domain"]
            await self._send(payload)

    async def _site_report(
        self,
        operation: str,
        domain: str,
        phase: Phase,
        *,
        output: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        report = OperationReport(
            "site_operation",
            phase,
            operation=operation,
            domain=domain,
            output=output,
            error=error,
        )
        await self._send(report.to_payload())

    async def _site_operation(
        self,
        operation: str,
        domain: str,
        run: Callable[[], Awaitable[ProcessResult]],
    ) -> None:
        await self._site_report(operation, domain, Phase.STARTING)
        result = await run()
        if result.success:
            await self._site_report(operation, domain, Phase.COMPLETED, output=result.output)
        else:
            logger.error(
                "Site operation failed",
                extra={
                    "service": "dispatch",
                    "operation": operation,
                    "domain": domain,
                    "error": result.error,
                },
            )
            await self._site_report(operation, domain, Phase.FAILED, error=result.error)

    async def _create_site(self, command: InboundCommand) -> None:
        params = CreateSiteCommand.model_validate(command.fields)
        await self._site_operation(
            "create",
            params.domain,
            lambda: _as_result(self._sites.create(params.domain, params.options)),
        )

    async def _delete_site(self, command: InboundCommand) -> None:
        params = DomainCommand.model_validate(command.fields)
        await self._site_operation(
            "delete", params.domain, lambda: _as_result(self._sites.delete(params.domain))
        )

    async def _deploy_ssl(self, command: InboundCommand) -> None:
        params = DomainCommand.model_validate(command.fields)
        await self._site_operation(
            "deploy_ssl", params.domain, lambda: self._sites.deploy_ssl(params.domain)
        )

    async def _turn_off_ssl(self, command: InboundCommand) -> None:
        params = DomainCommand.model_validate(command.fields)
        await self._site_operation(
            "turn_off_ssl", params.domain, lambda: self._sites.turn_off_ssl(params.domain)
        )

    async def _redeploy_ssl(self, command: InboundCommand) -> None:
        params = DomainCommand.model_validate(command.fields)

        async def redeploying() -> None:
            await self._site_report("redeploy_ssl", params.domain, Phase.SSL_REDEPLOYING)

        await self._site_operation(
            "redeploy_ssl",
            params.domain,
            lambda: self._sites.redeploy_ssl(params.domain, on_redeploying=redeploying),
        )

    async def _site_info(self, command: InboundCommand) -> None:
        params = DomainCommand.model_validate(command.fields)
        try:
            ssl = await self._sites.info(params.domain)
        except SiteInfoError as exc:
            logger.error(
                "Site info query failed",
                extra={"service": "dispatch", "domain": params.domain, "error": str(exc)},
            )
            await self._send({"type": "error", "error": str(exc), "domain": params.domain})
            return
        await self._send(
            {"type": "site_info_response", "domain": params.domain, "ssl": ssl.to_payload()}
        )

    async def _key_rotation(self, command: InboundCommand) -> None:
        try:
            params = KeyRotationCommand.model_validate(command.fields)
        except ValidationError as exc:
            await self._key_rotation_failed("; ".join(err["msg"] for err in exc.errors()))
            return
        if not params.new_key:
            await self._key_rotation_failed("No new key provided for rotation")
            return
        try:
            await self._secret_store.save(params.new_key)
        except OSError as exc:
            await self._key_rotation_failed(str(exc))
            return
        self._rotate_secret(params.new_key)
        logger.info("Agent key rotated, applies on next connect", extra={"service": "dispatch"})
        await self._send(OperationReport("key_rotation", Phase.COMPLETED).to_payload())

    async def _key_rotation_failed(self, error: str) -> None:
        logger.error("Key rotation failed", extra={"service": "dispatch", "error": error})
        await self._send(OperationReport("key_rotation", Phase.FAILED, error=error).to_payload())

    async def _update_agent(self, command: InboundCommand) -> None:
        await self._updater.update_agent()

    async def _rollback_agent(self, command: InboundCommand) -> None:
        params = RollbackCommand.model_validate(command.fields)
        await self._updater.rollback_agent(params.commit_id)

    async def _system_update(self, command: InboundCommand) -> None:
        await self._updater.system_update()
