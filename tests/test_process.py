"""Tests for subprocess streaming, prompt answering and outcome classification."""
from __future__ import annotations

import asyncio
import sys
from typing import Callable, List, Optional, Tuple

import pytest

from citrus_agent.core.models import StreamKind
from citrus_agent.services.process import ProcessEngine, ProcessFailed
from citrus_agent.services.sites import DEPLOY_RULES, REDEPLOY_RULES

REINSTALL_PROMPT = (
    "Please select an option from below\n"
    "1: Reinstall existing certificate\n"
    "2: Renew & replace the certificate (limit ~5 per 7 days)\n"
    "Type the appropriate number [1-2] then [enter]:"
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeStdin:
    def __init__(self, log: List[Tuple[str, str]]) -> None:
        self.log = log
        self.written: List[bytes] = []
        self.on_write: Optional[Callable[[bytes], None]] = None
        self._closing = False

    def write(self, data: bytes) -> None:
        self.written.append(data)
        self.log.append(("stdin", data.decode()))
        if self.on_write is not None:
            self.on_write(data)

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self._closing

    def close(self) -> None:
        self._closing = True


class FakeProcess:
    """Child process whose output is fed by the test."""

    def __init__(self, log: List[Tuple[str, str]], exit_code: int = 0) -> None:
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.stdin = FakeStdin(log)
        self.returncode: Optional[int] = None
        self._exit_code = exit_code
        self._exited = asyncio.Event()

    def finish(self) -> None:
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def kill(self) -> None:
        self.finish()

    async def wait(self) -> int:
        await self._exited.wait()
        self.returncode = self._exit_code
        return self._exit_code


def engine_for(process: FakeProcess) -> ProcessEngine:
    async def spawn(*args, **kwargs):
        return process

    return ProcessEngine(spawner=spawn)


@pytest.mark.anyio
async def test_reinstall_prompt_answered_before_next_chunk() -> None:
    log: List[Tuple[str, str]] = []
    process = FakeProcess(log)

    def after_answer(data: bytes) -> None:
        process.stdout.feed_data(b"Certificate reinstalled\n")
        process.finish()

    process.stdin.on_write = after_answer
    process.stdout.feed_data(REINSTALL_PROMPT.encode())

    async def on_output(kind: StreamKind, text: str) -> None:
        log.append((kind.value, text))

    result = await engine_for(process).run_interactive(
        "SSL deployment", "ee", "site", "update", "x.test", "--ssl=le",
        rules=DEPLOY_RULES,
        on_output=on_output,
    )

    assert process.stdin.written == [b"1\n"]
    assert log == [
        ("stdout", REINSTALL_PROMPT),
        ("stdin", "1\n"),
        ("stdout", "Certificate reinstalled\n"),
    ]
    assert result.success
    assert result.output == REINSTALL_PROMPT + "Certificate reinstalled\n"


@pytest.mark.anyio
async def test_prompt_split_across_chunks_is_not_answered() -> None:
    log: List[Tuple[str, str]] = []
    process = FakeProcess(log)
    pieces = iter([b"Type the appropriate number [1-2] then [enter]:", None])
    process.stdout.feed_data(b"Please select an option from below\n")

    async def on_output(kind: StreamKind, text: str) -> None:
        piece = next(pieces)
        if piece is None:
            process.finish()
        else:
            process.stdout.feed_data(piece)

    result = await engine_for(process).run_interactive(
        "SSL redeployment", "ee", rules=REDEPLOY_RULES, on_output=on_output
    )

    assert process.stdin.written == []
    assert result.success


@pytest.mark.anyio
async def test_repeated_prompt_is_answered_each_time() -> None:
    log: List[Tuple[str, str]] = []
    process = FakeProcess(log)
    prompt = b"Please select an option from below\nType the appropriate number:"
    answers = iter([lambda: process.stdout.feed_data(prompt), process.finish])
    process.stdin.on_write = lambda data: next(answers)()
    process.stdout.feed_data(prompt)

    await engine_for(process).run_interactive("SSL redeployment", "ee", rules=REDEPLOY_RULES)

    assert process.stdin.written == [b"2\n", b"2\n"]


@pytest.mark.anyio
async def test_nonzero_exit_reports_code_and_stderr() -> None:
    log: List[Tuple[str, str]] = []
    process = FakeProcess(log, exit_code=2)
    process.stdout.feed_data(b"partial output")
    process.stderr.feed_data(b"Error: site x.test does not exist")
    process.finish()

    result = await engine_for(process).run_interactive("SSL turn off", "ee")

    assert not result.success
    assert result.exit_code == 2
    assert result.error == "SSL turn off failed with code 2: Error: site x.test does not exist"


@pytest.mark.anyio
async def test_real_process_success_captures_stdout() -> None:
    engine = ProcessEngine()

    result = await engine.run_interactive(
        "Echo", sys.executable, "-c", "print('hello from child')"
    )

    assert result.success
    assert result.exit_code == 0
    assert result.output.strip() == "hello from child"


@pytest.mark.anyio
async def test_real_process_failure_includes_stderr() -> None:
    engine = ProcessEngine()
    script = "import sys; sys.stderr.write('boom'); sys.exit(3)"

    result = await engine.run_interactive("Deploy", sys.executable, "-c", script)

    assert not result.success
    assert "code 3" in result.error
    assert "boom" in result.error


@pytest.mark.anyio
async def test_real_interactive_prompt_round_trip() -> None:
    engine = ProcessEngine()
    script = (
        "import sys\n"
        "sys.stdout.write('Please select an option from below\\n"
        "1: Reinstall existing certificate\\n"
        "Type the appropriate number: ')\n"
        "sys.stdout.flush()\n"
        "answer = sys.stdin.readline().strip()\n"
        "print('selected ' + answer)\n"
    )

    result = await engine.run_interactive(
        "SSL deployment", sys.executable, "-c", script, rules=DEPLOY_RULES
    )

    assert result.success
    assert "selected 1" in result.output


@pytest.mark.anyio
async def test_launch_failure_is_reported_without_exit_code() -> None:
    engine = ProcessEngine()

    result = await engine.run_interactive("SSL deployment", "/nonexistent/ee-binary")

    assert not result.success
    assert result.exit_code is None
    assert result.error


@pytest.mark.anyio
async def test_run_returns_stdout_or_raises() -> None:
    engine = ProcessEngine()

    completed = await engine.run(sys.executable, "-c", "print('ok')")
    assert completed.stdout.strip() == "ok"

    with pytest.raises(ProcessFailed) as excinfo:
        await engine.run(
            sys.executable, "-c", "import sys; sys.stderr.write('nope'); sys.exit(5)",
            operation="Site create",
        )
    assert excinfo.value.exit_code == 5
    assert excinfo.value.stderr == "nope"
    assert str(excinfo.value) == "Site create failed with code 5: nope"


@pytest.mark.anyio
async def test_run_launch_failure_raises() -> None:
    with pytest.raises(ProcessFailed):
        await ProcessEngine().run("/nonexistent/ee-binary", "site", "list")


@pytest.mark.anyio
async def test_cancelled_run_kills_the_child() -> None:
    spawned: List[asyncio.subprocess.Process] = []

    async def spawn(*args, **kwargs):
        process = await asyncio.create_subprocess_exec(*args, **kwargs)
        spawned.append(process)
        return process

    engine = ProcessEngine(spawner=spawn)
    task = asyncio.create_task(engine.run(sys.executable, "-c", "import time; time.sleep(30)"))
    while not spawned:
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.05)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert spawned[0].returncode is not None


@pytest.mark.anyio
async def test_non_interactive_run_gives_child_empty_stdin() -> None:
    engine = ProcessEngine()
    script = "import sys; print('read:' + repr(sys.stdin.read()))"

    result = await asyncio.wait_for(
        engine.run_interactive("System update", sys.executable, "-c", script, interactive=False),
        timeout=5,
    )

    assert result.success
    assert result.output.strip() == "read:''"
