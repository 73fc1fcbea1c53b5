"""Self-update manager: moves the agent's code forward or back and restarts it."""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Sequence

from citrus_agent.core.models import OperationReport, Phase, StreamKind
from citrus_agent.services.git import GitRepository
from citrus_agent.services.process import ProcessEngine, ProcessFailed

logger = logging.getLogger("updater")

Send = Callable[[Dict[str, Any]], Awaitable[None]]

# git reports some failures on stderr while still exiting 0
FAILURE_MARKERS = (
    "fatal:",
    "error:",
    "cannot",
    "denied",
    "could not",
    "not found",
    "failed",
    "unable to",
    "unresolved",
    "permission denied",
)
ROLLBACK_FAILURE_MARKERS = FAILURE_MARKERS + ("unknown revision",)

UP_TO_DATE = "Agent already up to date"


class UpdateError(RuntimeError):
    """A self-update step failed."""


def find_failure_marker(text: str, markers: Sequence[str] = FAILURE_MARKERS) -> Optional[str]:
    lowered = text.lower()
    return next((marker for marker in markers if marker in lowered), None)


class Restarter(Protocol):
    async def restart(self) -> None: ...


class ServiceRestarter:
    """Asks the service manager to restart the agent unit."""

    def __init__(self, engine: ProcessEngine, service_name: str) -> None:
        self._engine = engine
        self._service_name = service_name

    async def restart(self) -> None:
        try:
            await self._engine.run("systemctl", "restart", self._service_name)
        except ProcessFailed as exc:
            # The update already landed; the next supervised start picks it up.
            logger.error(
                "Service restart failed",
                extra={"service": "updater", "error": str(exc)},
            )
            return
        logger.info("Restart command sent", extra={"service": "updater"})


class ExitRestarter:
    """Exits with status 0 so the supervisor relaunches the agent."""

    def __init__(self, exit_func: Callable[[int], Any] = os._exit) -> None:
        self._exit = exit_func

    async def restart(self) -> None:
        logger.info("Exiting for supervised restart", extra={"service": "updater"})
        for handler in logging.getLogger().handlers:
            handler.flush()
        self._exit(0)


class SelfUpdater:
    """Runs update_agent, rollback_agent and system_update one at a time."""

    def __init__(
        self,
        *,
        git: GitRepository,
        engine: ProcessEngine,
        restarter: Restarter,
        send: Send,
        update_ref: str = "origin/main",
        update_script: Optional[Path] = None,
    ) -> None:
        self._git = git
        self._engine = engine
        self._restarter = restarter
        self._send = send
        self._update_ref = update_ref
        self._update_script = update_script
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def _report(self, report: OperationReport) -> None:
        await self._send(report.to_payload())

    async def update_agent(self) -> None:
        async with self._lock:
            await self._report(OperationReport("update_operation", Phase.STARTING))
            try:
                before = await self._git.current_revision()
                result = await self._git.fetch_and_reset(self._update_ref)
                marker = find_failure_marker(result.diagnostics)
                if marker:
                    raise UpdateError(f"Git update error: {result.diagnostics}")
            except (ProcessFailed, UpdateError) as exc:
                logger.error(
                    "Agent update failed",
                    extra={"service": "updater", "error": str(exc)},
                )
                await self._report(
                    OperationReport("update_operation", Phase.FAILED, error=str(exc))
                )
                await self._send({"type": "agent_updated", "success": False, "message": str(exc)})
                return

            if result.version == before:
                logger.info(UP_TO_DATE, extra={"service": "updater", "revision": before})
                await self._report(
                    OperationReport(
                        "update_operation",
                        Phase.COMPLETED,
                        output=UP_TO_DATE,
                        extra={"gitVersion": result.version},
                    )
                )
                await self._send({"type": "agent_updated", "success": True, "message": UP_TO_DATE})
                return

            await self._report(
                OperationReport(
                    "update_operation",
                    Phase.COMPLETED,
                    output=result.log,
                    extra={"gitVersion": result.version},
                )
            )
            await self._send({"type": "agent_updated", "success": True, "version": result.version})
            logger.info(
                "Agent updated, restarting",
                extra={"service": "updater", "revision": result.version},
            )
            await self._restarter.restart()

    async def rollback_agent(self, commit_id: Optional[str]) -> None:
        if not commit_id:
            await self._report(
                OperationReport(
                    "rollback_operation",
                    Phase.FAILED,
                    error="No commit ID provided for rollback",
                )
            )
            return

        async with self._lock:
            await self._report(
                OperationReport("rollback_operation", Phase.STARTING, extra={"commitId": commit_id})
            )
            try:
                result = await self._git.fetch_and_reset(commit_id)
                if find_failure_marker(result.diagnostics, ROLLBACK_FAILURE_MARKERS):
                    raise UpdateError(f"Git rollback error: {result.diagnostics}")
            except (ProcessFailed, UpdateError) as exc:
                logger.error(
                    "Agent rollback failed",
                    extra={"service": "updater", "error": str(exc), "revision": commit_id},
                )
                await self._report(
                    OperationReport("rollback_operation", Phase.FAILED, error=str(exc))
                )
                return

            await self._report(
                OperationReport(
                    "rollback_operation",
                    Phase.COMPLETED,
                    output=result.log,
                    extra={"gitVersion": result.version},
                )
            )
            logger.info(
                "Agent rolled back, restarting",
                extra={"service": "updater", "revision": result.version},
            )
            await self._restarter.restart()

    async def system_update(self) -> None:
        async with self._lock:
            await self._report(
                OperationReport("status", Phase.STARTING, operation="system_update")
            )
            script = self._update_script
            if script is None or not script.is_file() or not os.access(script, os.X_OK):
                await self._report(
                    OperationReport(
                        "status",
                        Phase.FAILED,
                        operation="system_update",
                        error=f"Update script not found or not executable: {script}",
                    )
                )
                return

            async def forward(kind: StreamKind, text: str) -> None:
                await self._report(
                    OperationReport(
                        "status",
                        Phase.RUNNING,
                        operation="system_update",
                        output=text,
                        extra={"stream": kind.value},
                    )
                )

            result = await self._engine.run_interactive(
                "System update", str(script), on_output=forward, interactive=False
            )
            if result.success:
                await self._report(
                    OperationReport(
                        "status", Phase.COMPLETED, operation="system_update", output=result.output
                    )
                )
            else:
                await self._report(
                    OperationReport(
                        "status", Phase.FAILED, operation="system_update", error=result.error
                    )
                )
