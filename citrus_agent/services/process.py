"""Subprocess automation: output streaming, prompt answering and outcome classification."""
from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import shlex
from dataclasses import dataclass
from os import PathLike
from typing import AsyncIterator, Awaitable, Callable, Optional, Sequence, Union

from citrus_agent.core.models import (
    ProcessResult,
    ProcessSession,
    PromptRule,
    StreamEvent,
    StreamKind,
)

logger = logging.getLogger("process")

OutputCallback = Callable[[StreamKind, str], Awaitable[None]]
Spawner = Callable[..., Awaitable[asyncio.subprocess.Process]]

_CHUNK_SIZE = 4096


class ProcessFailed(RuntimeError):
    """A subprocess could not be launched or exited with a nonzero status."""

    def __init__(self, message: str, *, exit_code: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr


@dataclass(slots=True)
class CompletedRun:
    stdout: str
    stderr: str


def failure_message(operation: str, exit_code: Optional[int], stderr: str) -> str:
    return f"{operation} failed with code {exit_code}: {stderr}"


class RunningProcess:
    """Handle over a live child: an ordered event stream plus a writable stdin."""

    def __init__(self, process: asyncio.subprocess.Process, *, chunk_size: int = _CHUNK_SIZE) -> None:
        self._process = process
        self._chunk_size = chunk_size

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield stdout/stderr chunks in arrival order, then a single exit event."""
        queue: asyncio.Queue[Optional[StreamEvent]] = asyncio.Queue()

        async def pump(reader: asyncio.StreamReader, kind: StreamKind) -> None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            try:
                while True:
                    chunk = await reader.read(self._chunk_size)
                    if not chunk:
                        tail = decoder.decode(b"", final=True)
                        if tail:
                            await queue.put(StreamEvent(kind, tail))
                        break
                    text = decoder.decode(chunk)
                    if text:
                        await queue.put(StreamEvent(kind, text))
            finally:
                await queue.put(None)

        pumps = [
            asyncio.create_task(pump(self._process.stdout, StreamKind.STDOUT)),
            asyncio.create_task(pump(self._process.stderr, StreamKind.STDERR)),
        ]
        try:
            open_streams = len(pumps)
            while open_streams:
                event = await queue.get()
                if event is None:
                    open_streams -= 1
                    continue
                yield event
            exit_code = await self._process.wait()
            yield StreamEvent(StreamKind.EXIT, exit_code=exit_code)
        finally:
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            await self._cleanup()

    async def write_line(self, line: str) -> None:
        stdin = self._process.stdin
        if stdin is None:
            raise RuntimeError("process was started without a writable stdin")
        try:
            stdin.write(f"{line}\n".encode())
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.warning(
                "Could not answer prompt, stdin already closed",
                extra={"service": "process", "error": str(exc)},
            )

    async def _cleanup(self) -> None:
        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()
        if self._process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._process.kill()
            await self._process.wait()


class ProcessEngine:
    """Runs external programs to completion, optionally answering interactive prompts."""

    def __init__(
        self,
        *,
        spawner: Optional[Spawner] = None,
        cwd: Union[str, PathLike, None] = None,
        chunk_size: int = _CHUNK_SIZE,
    ) -> None:
        self._spawn = spawner or asyncio.create_subprocess_exec
        self._cwd = cwd
        self._chunk_size = chunk_size

    async def start(self, program: str, *args: str, interactive: bool = True) -> RunningProcess:
        """Launch a program with piped streams; raises ProcessFailed if it cannot start."""
        try:
            process = await self._spawn(
                program,
                *args,
                stdin=asyncio.subprocess.PIPE if interactive else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
            )
        except OSError as exc:
            raise ProcessFailed(str(exc)) from exc
        logger.debug(
            "Process started",
            extra={"service": "process", "program": program},
        )
        return RunningProcess(process, chunk_size=self._chunk_size)

    async def run_interactive(
        self,
        operation: str,
        program: str,
        *args: str,
        rules: Sequence[PromptRule] = (),
        on_output: Optional[OutputCallback] = None,
        interactive: bool = True,
    ) -> ProcessResult:
        """Drive a program through its prompts and classify the outcome.

        Every stdout chunk is checked against ``rules`` in order; the first rule
        whose substrings all occur in that chunk has its response written to
        stdin before the next event is looked at. Matching is scoped to the
        chunk alone, so a prompt repeated in a later chunk is answered again.

        With ``interactive=False`` the child reads from /dev/null and only its
        output is streamed; ``rules`` must then be empty.
        """
        if rules and not interactive:
            raise ValueError("prompt rules need an interactive stdin")
        session = ProcessSession(program=program, args=tuple(args), prompt_rules=tuple(rules))
        try:
            running = await self.start(program, *args, interactive=interactive)
        except ProcessFailed as exc:
            logger.error(
                "Process launch failed",
                extra={"service": "process", "operation": operation, "error": str(exc)},
            )
            return ProcessResult(success=False, error=str(exc))

        async with contextlib.aclosing(running.events()) as events:
            async for event in events:
                if event.kind is StreamKind.EXIT:
                    session.exit_code = event.exit_code
                    continue
                if event.kind is StreamKind.STDOUT:
                    session.stdout.append(event.data)
                else:
                    session.stderr.append(event.data)
                if on_output is not None:
                    await on_output(event.kind, event.data)
                if event.kind is StreamKind.STDOUT:
                    rule = next((r for r in session.prompt_rules if r.matches(event.data)), None)
                    if rule is not None:
                        logger.info(
                            "Answering prompt",
                            extra={
                                "service": "process",
                                "operation": operation,
                                "status": rule.response,
                            },
                        )
                        await running.write_line(rule.response)

        return self.classify(operation, session)

    @staticmethod
    def classify(operation: str, session: ProcessSession) -> ProcessResult:
        if session.exit_code == 0:
            return ProcessResult(success=True, output=session.accumulated_stdout, exit_code=0)
        return ProcessResult(
            success=False,
            output=session.accumulated_stdout,
            error=failure_message(operation, session.exit_code, session.accumulated_stderr),
            exit_code=session.exit_code,
        )

    async def run(self, program: str, *args: str, operation: Optional[str] = None) -> CompletedRun:
        """Run a non-interactive program to completion and return its captured output."""
        label = operation or shlex.join([program, *args])
        try:
            process = await self._spawn(
                program,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
            )
        except OSError as exc:
            raise ProcessFailed(str(exc)) from exc

        try:
            raw_out, raw_err = await process.communicate()
        finally:
            # Reached with the child still alive only when the caller was cancelled
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        stdout = raw_out.decode("utf-8", errors="replace")
        stderr = raw_err.decode("utf-8", errors="replace")
        if process.returncode != 0:
            raise ProcessFailed(
                failure_message(label, process.returncode, stderr),
                exit_code=process.returncode,
                stderr=stderr,
            )
        return CompletedRun(stdout=stdout, stderr=stderr)
