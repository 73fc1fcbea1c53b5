"""Core data models shared across agent components."""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Tuple


class ConnectionState(Enum):
    """Lifecycle states of the control channel connection."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()


class Phase(str, Enum):
    """Progress phases reported to the controller for one command."""

    STARTING = "starting"
    RUNNING = "running"
    SSL_REDEPLOYING = "ssl_redeploying"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class AgentIdentity:
    """Credentials presented to the controller on every connect."""

    agent_id: str
    secret: str

    def rotated(self, new_secret: str) -> AgentIdentity:
        return dataclasses.replace(self, secret=new_secret)

    def headers(self) -> Dict[str, str]:
        return {
            "x-client-type": "agent",
            "x-agent-id": self.agent_id,
            "x-agent-key": self.secret,
        }


@dataclass(slots=True)
class InboundCommand:
    """A decoded controller message, consumed by exactly one dispatch."""

    kind: Optional[str]
    fields: Dict[str, Any]
    raw: Dict[str, Any]

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> InboundCommand:
        fields = {key: value for key, value in message.items() if key != "type"}
        return cls(kind=message.get("type"), fields=fields, raw=message)


@dataclass(slots=True)
class OperationReport:
    """Structured progress/result message sent back over the channel."""

    type: str
    phase: Optional[Phase] = None
    operation: Optional[str] = None
    domain: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type}
        if self.operation is not None:
            payload["operation"] = self.operation
        if self.phase is not None:
            payload["status"] = self.phase.value
        for key in ("domain", "output", "error"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        payload.update(self.extra)
        return payload


@dataclass(frozen=True)
class PromptRule:
    """Answer `response` when every `required` substring shows up in one chunk."""

    required: Tuple[str, ...]
    response: str

    def matches(self, chunk: str) -> bool:
        return all(needle in chunk for needle in self.required)


class StreamKind(Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    EXIT = "exit"


@dataclass(frozen=True)
class StreamEvent:
    """One observation from a running subprocess."""

    kind: StreamKind
    data: str = ""
    exit_code: Optional[int] = None


@dataclass(slots=True)
class ProcessSession:
    """State of a single external-program invocation."""

    program: str
    args: Tuple[str, ...]
    prompt_rules: Tuple[PromptRule, ...] = ()
    stdout: List[str] = field(default_factory=list)
    stderr: List[str] = field(default_factory=list)
    exit_code: Optional[int] = None

    @property
    def accumulated_stdout(self) -> str:
        return "".join(self.stdout)

    @property
    def accumulated_stderr(self) -> str:
        return "".join(self.stderr)


@dataclass(slots=True)
class ProcessResult:
    """Classified outcome of a finished invocation."""

    success: bool
    output: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None
