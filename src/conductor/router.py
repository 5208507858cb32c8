from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from conductor.correlation import CorrelationIndex
from conductor.events import (
    START_EVENTS,
    Event,
    ModelChatCompleted,
    ModelChatDelta,
    ModelChatError,
    ModelChatFailed,
    ModelChatStarted,
    PermissionRequested,
    ProcessExited,
    ProcessStarted,
    SecurityViolation,
    StderrChunk,
    StdoutChunk,
    SystemReady,
    WorkflowError,
)
from conductor.memory import (
    OutputItem,
    OutputKind,
    OutputStatus,
    PendingAction,
    Role,
    RoleMemoryStore,
    iso_from_millis,
)

logger = logging.getLogger(__name__)

RouteAction = Literal["created", "updated", "ignored"]

STDERR_PREFIX = "\n[stderr]\n"


@dataclass(frozen=True, slots=True)
class RouteResult:
    action: RouteAction
    role: Role | None = None
    output_id: str | None = None


def _unique_output_id(store: RoleMemoryStore, base_id: str) -> str:
    candidate = base_id
    suffix = 1
    while store.find_output(candidate) is not None:
        suffix += 1
        candidate = f"{base_id}-{suffix}"
    return candidate


def _create(
    event: Event,
    store: RoleMemoryStore,
    index: CorrelationIndex,
    role: Role,
    *,
    kind: OutputKind,
    command: str,
    content: str,
    status: OutputStatus,
    pending_action: PendingAction | None = None,
    bind: bool = True,
) -> RouteResult:
    header = event.header
    output_id = _unique_output_id(
        store, f"evt-{event.type}-{header.correlation_id}-{header.timestamp}"
    )
    store.append_output(
        role,
        OutputItem(
            id=output_id,
            kind=kind,
            command=command,
            role=role,
            content=content,
            status=status,
            timestamp=iso_from_millis(header.timestamp),
            pending_action=pending_action,
        ),
    )
    if bind:
        index.bind(header.correlation_id, role, output_id)
    return RouteResult("created", role, output_id)


def _fallback(
    event: Event, store: RoleMemoryStore, index: CorrelationIndex, role: Role, *, bind: bool
) -> RouteResult:
    if isinstance(event, ProcessStarted):
        return _create(
            event, store, index, role, kind="shell", command=event.command, content="",
            status="running", bind=bind,
        )
    if isinstance(event, ModelChatStarted):
        return _create(
            event, store, index, role, kind="agent", command=event.model or "LLM stream",
            content="", status="running", bind=bind,
        )
    if isinstance(event, (StdoutChunk, StderrChunk)):
        return _create(
            event, store, index, role, kind="shell", command=event.type, content=event.content,
            status="running", bind=bind,
        )
    if isinstance(event, ProcessExited):
        return _create(
            event, store, index, role, kind="shell", command="Process exited",
            content=f"Exit Code: {event.code}",
            status="success" if event.code == 0 else "error", bind=bind,
        )
    if isinstance(event, PermissionRequested):
        return _create(
            event, store, index, role, kind="shell", command="Permission required",
            content=f"Command: {event.command}", status="awaiting",
            pending_action=PendingAction(event.request_id, event.command, event.risk_level),
            bind=bind,
        )
    if isinstance(event, WorkflowError):
        return _create(
            event, store, index, role, kind="shell", command="Workflow error",
            content=event.error, status="error", bind=bind,
        )
    if isinstance(event, SecurityViolation):
        return _create(
            event, store, index, role, kind="shell",
            command=f"Security violation: {event.policy}", content=event.attempted_path,
            status="error", bind=bind,
        )
    if isinstance(event, ModelChatDelta):
        return _create(
            event, store, index, role, kind="agent", command="LLM stream", content=event.delta,
            status="running", bind=bind,
        )
    if isinstance(event, ModelChatCompleted):
        store[role].token_counters.add(event.token_counts.input, event.token_counts.output)
        return _create(
            event, store, index, role, kind="agent", command="LLM", content=event.message,
            status="success", bind=bind,
        )
    if isinstance(event, (ModelChatFailed, ModelChatError)):
        return _create(
            event, store, index, role, kind="agent", command="Model error", content=event.error,
            status="error", bind=bind,
        )
    return RouteResult("ignored")


def _terminate(output: OutputItem, status: OutputStatus) -> None:
    if output.is_terminal:
        logger.debug("Output %s already terminal (%s); keeping status", output.id, output.status)
        return
    output.status = status
    output.pending_action = None


def _update(event: Event, store: RoleMemoryStore, role: Role, output: OutputItem) -> RouteResult:
    if isinstance(event, START_EVENTS):
        if not output.is_terminal:
            output.status = "running"
    elif isinstance(event, StdoutChunk):
        output.append(event.content)
    elif isinstance(event, StderrChunk):
        output.append(f"{STDERR_PREFIX}{event.content}")
    elif isinstance(event, ProcessExited):
        _terminate(output, "success" if event.code == 0 else "error")
        output.append(f"\n(exit {event.code})")
    elif isinstance(event, ModelChatDelta):
        output.append(event.delta)
    elif isinstance(event, ModelChatCompleted):
        if output.is_terminal:
            logger.debug("Completion for terminal output %s ignored", output.id)
        else:
            if event.message:
                output.content = event.message
            _terminate(output, "success")
            store[role].token_counters.add(event.token_counts.input, event.token_counts.output)
    elif isinstance(event, (ModelChatFailed, ModelChatError)):
        _terminate(output, "error")
        output.content = f"{output.content}\n[model] {event.error}".strip()
    elif isinstance(event, PermissionRequested):
        output.pending_action = PendingAction(event.request_id, event.command, event.risk_level)
        if not output.is_terminal:
            output.status = "awaiting"
        if not output.content:
            output.content = f"Permission required for: {event.command}"
    elif isinstance(event, WorkflowError):
        label = "warning" if event.severity == "warn" else "error"
        _terminate(output, "error")
        output.content = f"{output.content}\n[{label}] {event.error}".strip()
    elif isinstance(event, SecurityViolation):
        _terminate(output, "error")
        detail = f"[security] {event.policy}"
        if event.attempted_path:
            detail = f"{detail}: {event.attempted_path}"
        output.content = f"{output.content}\n{detail}".strip()
    else:
        return RouteResult("ignored")
    return RouteResult("updated", role, output.id)


def apply_event(
    event: Event,
    store: RoleMemoryStore,
    index: CorrelationIndex,
    fallback_role: Role,
) -> RouteResult:
    """Apply one runtime event to role memory.

    ``fallback_role`` is the role captured when the originating intent was
    dispatched; it is only used when the correlation id is not yet bound.
    """
    if isinstance(event, SystemReady):
        if store.has_outputs():
            logger.debug("SYSTEM_READY for %s ignored on a populated session", event.run_id)
            return RouteResult("ignored")
        return _create(
            event, store, index, fallback_role, kind="shell", command="System ready",
            content=f"Run: {event.run_id}", status="success", bind=False,
        )

    binding = index.resolve(event.header.correlation_id)
    if binding is None:
        return _fallback(event, store, index, fallback_role, bind=True)

    output = store.find_output(binding.output_id)
    if output is None:
        logger.warning(
            "Correlation %s bound to missing output %s; appending standalone record",
            event.header.correlation_id,
            binding.output_id,
        )
        return _fallback(event, store, index, binding.role, bind=False)
    return _update(event, store, binding.role, output)
