"""Runtime events (runtime -> engine) and intents (engine -> runtime).

Events arrive on the wire as JSON objects shaped like::

    {"type": "STDOUT_CHUNK",
     "header": {"sessionId": "RUN-1", "correlationId": "c1", "timestamp": 1700000000000},
     "content": "hello\\n"}

``event_from_dict`` turns that into one of the frozen dataclasses below and
``event_to_dict`` produces the same shape back, which is what the run ledger
stores.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

logger = logging.getLogger(__name__)

Severity = Literal["warn", "fatal"]


class EventDecodeError(ValueError):
    """Raised when a known event type carries malformed fields."""

    def __init__(self, message: str, *, event_type: str | None = None) -> None:
        super().__init__(message)
        self.event_type = event_type


@dataclass(frozen=True, slots=True)
class EventHeader:
    session_id: str
    correlation_id: str
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "correlationId": self.correlation_id,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class TokenCounts:
    input: int = 0
    output: int = 0


@dataclass(frozen=True, slots=True)
class ProcessStarted:
    type: ClassVar[str] = "PROCESS_STARTED"
    header: EventHeader
    command: str
    pid: int


@dataclass(frozen=True, slots=True)
class StdoutChunk:
    type: ClassVar[str] = "STDOUT_CHUNK"
    header: EventHeader
    content: str


@dataclass(frozen=True, slots=True)
class StderrChunk:
    type: ClassVar[str] = "STDERR_CHUNK"
    header: EventHeader
    content: str


@dataclass(frozen=True, slots=True)
class ProcessExited:
    type: ClassVar[str] = "PROCESS_EXITED"
    header: EventHeader
    code: int


@dataclass(frozen=True, slots=True)
class PermissionRequested:
    type: ClassVar[str] = "PERMISSION_REQUESTED"
    header: EventHeader
    request_id: str
    command: str
    risk_level: str = "high"


@dataclass(frozen=True, slots=True)
class WorkflowError:
    type: ClassVar[str] = "WORKFLOW_ERROR"
    header: EventHeader
    error: str
    severity: Severity = "fatal"


@dataclass(frozen=True, slots=True)
class SecurityViolation:
    type: ClassVar[str] = "SECURITY_VIOLATION"
    header: EventHeader
    policy: str
    attempted_path: str = ""


@dataclass(frozen=True, slots=True)
class ModelChatStarted:
    type: ClassVar[str] = "MODEL_CHAT_STARTED"
    header: EventHeader
    model: str | None = None


@dataclass(frozen=True, slots=True)
class ModelChatDelta:
    type: ClassVar[str] = "MODEL_CHAT_DELTA"
    header: EventHeader
    delta: str


@dataclass(frozen=True, slots=True)
class ModelChatCompleted:
    type: ClassVar[str] = "MODEL_CHAT_COMPLETED"
    header: EventHeader
    message: str
    token_counts: TokenCounts = field(default_factory=TokenCounts)


@dataclass(frozen=True, slots=True)
class ModelChatFailed:
    type: ClassVar[str] = "MODEL_CHAT_FAILED"
    header: EventHeader
    error: str


@dataclass(frozen=True, slots=True)
class ModelChatError:
    type: ClassVar[str] = "MODEL_CHAT_ERROR"
    header: EventHeader
    error: str


@dataclass(frozen=True, slots=True)
class SystemReady:
    type: ClassVar[str] = "SYSTEM_READY"
    header: EventHeader
    run_id: str


Event = (
    ProcessStarted
    | StdoutChunk
    | StderrChunk
    | ProcessExited
    | PermissionRequested
    | WorkflowError
    | SecurityViolation
    | ModelChatStarted
    | ModelChatDelta
    | ModelChatCompleted
    | ModelChatFailed
    | ModelChatError
    | SystemReady
)

START_EVENTS = (ProcessStarted, ModelChatStarted)
TERMINAL_EVENTS = (ProcessExited, ModelChatCompleted, ModelChatFailed, ModelChatError)


def _require_str(data: dict[str, Any], key: str, event_type: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise EventDecodeError(f"{event_type}: field '{key}' must be a string", event_type=event_type)
    return value


def _optional_str(data: dict[str, Any], key: str, event_type: str, default: str | None) -> str | None:
    value = data.get(key, default)
    if value is not None and not isinstance(value, str):
        raise EventDecodeError(f"{event_type}: field '{key}' must be a string", event_type=event_type)
    return value


def _require_int(data: dict[str, Any], key: str, event_type: str) -> int:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise EventDecodeError(f"{event_type}: field '{key}' must be an integer", event_type=event_type)
    return value


def _decode_header(raw: Any, event_type: str) -> EventHeader:
    if not isinstance(raw, dict):
        raise EventDecodeError(f"{event_type}: missing header", event_type=event_type)
    timestamp = raw.get("timestamp")
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        raise EventDecodeError(f"{event_type}: header timestamp must be a number", event_type=event_type)
    return EventHeader(
        session_id=_require_str(raw, "sessionId", event_type),
        correlation_id=_require_str(raw, "correlationId", event_type),
        timestamp=int(timestamp),
    )


def _decode_token_counts(raw: Any) -> TokenCounts:
    if not isinstance(raw, dict):
        return TokenCounts()
    counts = []
    for key in ("input", "output"):
        value = raw.get(key, 0)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            value = 0
        counts.append(value)
    return TokenCounts(input=counts[0], output=counts[1])


def event_from_dict(data: dict[str, Any]) -> Event | None:
    """Decode a wire event. Unknown types return ``None``."""
    event_type = data.get("type") if isinstance(data, dict) else None
    if not isinstance(event_type, str):
        raise EventDecodeError("Event payload has no type.")
    decoder = _DECODERS.get(event_type)
    if decoder is None:
        logger.info("Ignoring unknown event type %s", event_type)
        return None
    header = _decode_header(data.get("header"), event_type)
    return decoder(header, data)


def _severity(data: dict[str, Any]) -> Severity:
    severity = data.get("severity", "fatal")
    return "warn" if severity == "warn" else "fatal"


_DECODERS = {
    "PROCESS_STARTED": lambda h, d: ProcessStarted(
        h, _require_str(d, "command", "PROCESS_STARTED"), _require_int(d, "pid", "PROCESS_STARTED")
    ),
    "STDOUT_CHUNK": lambda h, d: StdoutChunk(h, _require_str(d, "content", "STDOUT_CHUNK")),
    "STDERR_CHUNK": lambda h, d: StderrChunk(h, _require_str(d, "content", "STDERR_CHUNK")),
    "PROCESS_EXITED": lambda h, d: ProcessExited(h, _require_int(d, "code", "PROCESS_EXITED")),
    "PERMISSION_REQUESTED": lambda h, d: PermissionRequested(
        h,
        _require_str(d, "requestId", "PERMISSION_REQUESTED"),
        _require_str(d, "command", "PERMISSION_REQUESTED"),
        _optional_str(d, "riskLevel", "PERMISSION_REQUESTED", "high") or "high",
    ),
    "WORKFLOW_ERROR": lambda h, d: WorkflowError(
        h, _require_str(d, "error", "WORKFLOW_ERROR"), _severity(d)
    ),
    "SECURITY_VIOLATION": lambda h, d: SecurityViolation(
        h,
        _require_str(d, "policy", "SECURITY_VIOLATION"),
        _optional_str(d, "attemptedPath", "SECURITY_VIOLATION", "") or "",
    ),
    "MODEL_CHAT_STARTED": lambda h, d: ModelChatStarted(
        h, _optional_str(d, "model", "MODEL_CHAT_STARTED", None)
    ),
    "MODEL_CHAT_DELTA": lambda h, d: ModelChatDelta(h, _require_str(d, "delta", "MODEL_CHAT_DELTA")),
    "MODEL_CHAT_COMPLETED": lambda h, d: ModelChatCompleted(
        h,
        _require_str(d, "message", "MODEL_CHAT_COMPLETED"),
        _decode_token_counts(d.get("tokenCounts")),
    ),
    "MODEL_CHAT_FAILED": lambda h, d: ModelChatFailed(h, _require_str(d, "error", "MODEL_CHAT_FAILED")),
    "MODEL_CHAT_ERROR": lambda h, d: ModelChatError(h, _require_str(d, "error", "MODEL_CHAT_ERROR")),
    "SYSTEM_READY": lambda h, d: SystemReady(h, _require_str(d, "runId", "SYSTEM_READY")),
}


def event_to_dict(event: Event) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": event.type, "header": event.header.to_dict()}
    if isinstance(event, ProcessStarted):
        payload.update({"command": event.command, "pid": event.pid})
    elif isinstance(event, (StdoutChunk, StderrChunk)):
        payload["content"] = event.content
    elif isinstance(event, ProcessExited):
        payload["code"] = event.code
    elif isinstance(event, PermissionRequested):
        payload.update(
            {"requestId": event.request_id, "command": event.command, "riskLevel": event.risk_level}
        )
    elif isinstance(event, WorkflowError):
        payload.update({"error": event.error, "severity": event.severity})
    elif isinstance(event, SecurityViolation):
        payload.update({"policy": event.policy, "attemptedPath": event.attempted_path})
    elif isinstance(event, ModelChatStarted):
        payload["model"] = event.model
    elif isinstance(event, ModelChatDelta):
        payload["delta"] = event.delta
    elif isinstance(event, ModelChatCompleted):
        payload.update(
            {
                "message": event.message,
                "tokenCounts": {
                    "input": event.token_counts.input,
                    "output": event.token_counts.output,
                },
            }
        )
    elif isinstance(event, (ModelChatFailed, ModelChatError)):
        payload["error"] = event.error
    elif isinstance(event, SystemReady):
        payload["runId"] = event.run_id
    return payload


# --- intents -----------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class IntentHeader:
    session_id: str
    correlation_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"sessionId": self.session_id, "correlationId": self.correlation_id}


@dataclass(frozen=True, slots=True)
class ExecCommand:
    type: ClassVar[str] = "EXEC_CMD"
    header: IntentHeader
    command: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "header": self.header.to_dict(), "command": self.command}


@dataclass(frozen=True, slots=True)
class ModelChat:
    type: ClassVar[str] = "MODEL_CHAT"
    header: IntentHeader
    messages: tuple[dict[str, str], ...]
    model: str | None = None
    options: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "header": self.header.to_dict(),
            "messages": [dict(message) for message in self.messages],
            "model": self.model,
            "options": dict(self.options),
        }


@dataclass(frozen=True, slots=True)
class GrantPermission:
    type: ClassVar[str] = "GRANT_PERMISSION"
    header: IntentHeader
    request_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "header": self.header.to_dict(), "requestId": self.request_id}


@dataclass(frozen=True, slots=True)
class DenyPermission:
    type: ClassVar[str] = "DENY_PERMISSION"
    header: IntentHeader
    request_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "header": self.header.to_dict(), "requestId": self.request_id}


@dataclass(frozen=True, slots=True)
class ResetRuntime:
    type: ClassVar[str] = "RESET"
    header: IntentHeader

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "header": self.header.to_dict()}


Intent = ExecCommand | ModelChat | GrantPermission | DenyPermission | ResetRuntime
