from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from conductor.config import ConductorConfig
from conductor.context import build_chat_messages
from conductor.correlation import CorrelationIndex
from conductor.events import (
    TERMINAL_EVENTS,
    DenyPermission,
    Event,
    EventDecodeError,
    ExecCommand,
    GrantPermission,
    Intent,
    IntentHeader,
    ModelChat,
    ModelChatCompleted,
    ResetRuntime,
    SecurityViolation,
    event_from_dict,
)
from conductor.memory import (
    ROLE_ORDER,
    OutputItem,
    OutputKind,
    Role,
    RoleMemoryStore,
    iso_from_millis,
)
from conductor.phases import PhaseCommand, PhaseMachine
from conductor.roles import build_roles, next_role
from conductor.router import RouteResult, apply_event
from conductor.runtime import RuntimeClient, RuntimeSendError
from conductor.snapshot import decode_snapshot, encode_snapshot
from conductor.state import ConductorStateError, RunLedger, SnapshotAutosaver
from conductor.tasks import TaskParseResult, parse_tasks, reconcile_tasks, task_progress

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class DispatchContext:
    session_id: str
    epoch: int
    role: Role
    correlation_id: str
    output_id: str


@dataclass(slots=True)
class Handoff:
    from_role: Role
    to_role: Role | None
    message: str


class Engine:
    """Session owner: dispatches intents, applies runtime events, persists snapshots.

    Every session switch bumps ``epoch`` and records the start time; events
    for another session or stamped before the start are dropped before they
    reach the router.
    """

    def __init__(
        self,
        ledger: RunLedger,
        client: RuntimeClient,
        config: ConductorConfig | None = None,
        *,
        autosaver: SnapshotAutosaver | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.ledger = ledger
        self.client = client
        self.config = config or ConductorConfig.default()
        self.autosaver = autosaver or SnapshotAutosaver(
            ledger, debounce_seconds=self.config.session.autosave_debounce_seconds
        )
        self._clock = clock or _now_ms
        self.session_id: str | None = None
        self.epoch = 0
        self.started_at_ms = 0
        self.current_role: Role = "PLAN"
        self.pending_role: Role | None = None
        self.handoff: Handoff | None = None
        self.store = RoleMemoryStore()
        self.index = CorrelationIndex()
        self.phases = PhaseMachine()
        self.selected_models = self._default_models()
        self.roles = build_roles(self.selected_models)
        self._dispatches: dict[str, DispatchContext] = {}

    def _default_models(self) -> dict[Role, str]:
        return dict(self.config.models.as_role_map())  # type: ignore[arg-type]

    def _project_info(self) -> str:
        name = self.config.project.name
        description = self.config.project.description.strip()
        return f"{name}: {description}" if description else name

    def _require_session(self) -> str:
        if self.session_id is None:
            raise ConductorStateError("No active session. Start or resume a run first.")
        return self.session_id

    def _reset_state(self, run_id: str) -> None:
        self.epoch += 1
        self.session_id = run_id
        self.started_at_ms = self._clock()
        self.index.clear()
        self._dispatches.clear()
        self.store = RoleMemoryStore()
        self.phases = PhaseMachine()
        self.current_role = "PLAN"
        self.pending_role = None
        self.handoff = None
        self.selected_models = self._default_models()
        self.roles = build_roles(self.selected_models)

    def _changed(self) -> None:
        if self.session_id is not None:
            self.autosaver.schedule(self.session_id, self.snapshot)

    # --- sessions -------------------------------------------------------------

    def new_session(self, run_id: str | None = None) -> str:
        self.autosaver.flush()
        run_id = run_id or f"run-{uuid4().hex[:12]}"
        self._reset_state(run_id)
        self.ledger.create_run(run_id)
        self._changed()
        logger.info("Started session %s (epoch %d)", run_id, self.epoch)
        return run_id

    def resume(self, run_id: str) -> bool:
        """Restore ``run_id`` from its latest snapshot and replay later events.

        Returns ``True`` when a snapshot was restored. Without a usable
        snapshot the session starts empty and the recorded events are
        replayed from the beginning of the retained window.
        """
        self.autosaver.flush()
        self._reset_state(run_id)
        self.ledger.create_run(run_id)

        record = self.ledger.load_latest_snapshot(run_id)
        decoded = decode_snapshot(record.payload) if record is not None else None
        after_seq = 0
        hydrated = False
        if decoded is not None and decoded.run_id == run_id:
            self.store = decoded.memory
            self.phases = decoded.phase_machine()
            self.selected_models = {**self._default_models(), **decoded.selected_models}
            self.roles = build_roles(self.selected_models)
            self.current_role = decoded.current_role or "PLAN"
            after_seq = record.event_seq if record is not None else 0
            hydrated = True
        elif record is not None:
            logger.warning("Snapshot for %s could not be restored; starting fresh", run_id)

        events = self.ledger.get_recent_events(
            run_id, self.ledger.MAX_EVENTS_PER_RUN, after_seq=after_seq
        )
        for event in events:
            self._apply(event)
        if events:
            self._changed()
        logger.info(
            "Resumed session %s (hydrated=%s, replayed=%d)", run_id, hydrated, len(events)
        )
        return hydrated

    def close(self) -> bool:
        return self.autosaver.flush()

    # --- roles and models -----------------------------------------------------

    @staticmethod
    def _check_role(role: str) -> Role:
        if role not in ROLE_ORDER:
            raise ValueError(f"Unknown role: {role}")
        return role  # type: ignore[return-value]

    def switch_role(self, role: str) -> None:
        self.current_role = self._check_role(role)
        self.pending_role = None
        self._changed()

    def request_role(self, role: str) -> bool:
        """Stage a role change; it takes effect on ``approve_role``."""
        target = self._check_role(role)
        if target == self.current_role:
            return False
        self.pending_role = target
        return True

    def approve_role(self) -> Role | None:
        if self.pending_role is None:
            return None
        self.current_role = self.pending_role
        self.pending_role = None
        self.handoff = None
        self._changed()
        return self.current_role

    def reject_role(self) -> None:
        self.pending_role = None

    def select_model(self, role: str, model_id: str) -> None:
        target = self._check_role(role)
        model_id = model_id.strip()
        if not model_id:
            raise ValueError("Model id must not be empty.")
        self.selected_models[target] = model_id
        self.roles[target].model = model_id
        self._changed()

    # --- phases ---------------------------------------------------------------

    def issue(self, command: PhaseCommand) -> bool:
        moved = self.phases.dispatch(command)
        if moved:
            logger.info("Phase %s -> %s", command.name, self.phases.state.path)
            self._changed()
        return moved

    # --- intents --------------------------------------------------------------

    def _dispatch(self, role: Role | None, kind: OutputKind, command: str) -> DispatchContext:
        session_id = self._require_session()
        target = self._check_role(role) if role is not None else self.current_role
        correlation_id = uuid4().hex
        output_id = f"{kind}-{correlation_id[:12]}"
        self.store.append_output(
            target,
            OutputItem(
                id=output_id,
                kind=kind,
                command=command,
                role=target,
                status="running",
                timestamp=iso_from_millis(self._clock()),
            ),
        )
        self.index.bind(correlation_id, target, output_id)
        context = DispatchContext(session_id, self.epoch, target, correlation_id, output_id)
        self._dispatches[correlation_id] = context
        self._changed()
        return context

    async def _send(self, context: DispatchContext, intent: Intent) -> bool:
        try:
            await self.client.send(intent)
        except RuntimeSendError as exc:
            if context.epoch != self.epoch:
                logger.debug("Send failure for a previous session ignored: %s", exc)
                return False
            logger.warning("Failed to send %s (%s): %s", intent.type, context.correlation_id, exc)
            output = self.store.find_output(context.output_id)
            if output is not None:
                output.status = "error"
                output.content = f"{output.content}\n{exc}".strip()
            self._changed()
            return False
        return True

    async def execute_shell(self, command: str, *, role: str | None = None) -> DispatchContext:
        command = command.strip()
        if not command:
            raise ValueError("Command must not be empty.")
        context = self._dispatch(role, "shell", command)  # type: ignore[arg-type]
        header = IntentHeader(context.session_id, context.correlation_id)
        await self._send(context, ExecCommand(header, command))
        return context

    async def execute_agent(
        self,
        prompt: str,
        *,
        role: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> DispatchContext:
        prompt = prompt.strip()
        if not prompt:
            raise ValueError("Prompt must not be empty.")
        target = self._check_role(role) if role is not None else self.current_role
        messages = build_chat_messages(
            self.roles[target],
            self.store,
            prompt,
            max_history=self.config.session.history_messages,
            project_info=self._project_info(),
            max_chars=self.config.session.context_chars,
        )
        context = self._dispatch(target, "agent", prompt)
        header = IntentHeader(context.session_id, context.correlation_id)
        intent = ModelChat(
            header,
            tuple(messages),
            model=self.selected_models.get(target),
            options=dict(options or {}),
        )
        await self._send(context, intent)
        return context

    def _permission_header(self, output: OutputItem) -> IntentHeader:
        session_id = self._require_session()
        correlation_id = self.index.correlation_for(output.id) or uuid4().hex
        return IntentHeader(session_id, correlation_id)

    async def grant_permission(self, request_id: str) -> bool:
        output = self.store.find_pending_action(request_id)
        if output is None:
            logger.info("No pending permission request %s", request_id)
            return False
        header = self._permission_header(output)
        output.pending_action = None
        if not output.is_terminal:
            output.status = "running"
        self._changed()
        try:
            await self.client.send(GrantPermission(header, request_id))
        except RuntimeSendError as exc:
            logger.warning("Failed to grant %s: %s", request_id, exc)
            output.status = "error"
            output.append(f"\n[permission] {exc}")
            self._changed()
            return False
        return True

    async def deny_permission(self, request_id: str) -> bool:
        output = self.store.find_pending_action(request_id)
        if output is None:
            logger.info("No pending permission request %s", request_id)
            return False
        header = self._permission_header(output)
        action = output.pending_action
        output.pending_action = None
        output.status = "error"
        output.append(f"\n[denied] {action.command if action else request_id}")
        self._changed()
        try:
            await self.client.send(DenyPermission(header, request_id))
        except RuntimeSendError as exc:
            logger.warning("Failed to deny %s: %s", request_id, exc)
            return False
        return True

    async def reset_runtime(self) -> bool:
        session_id = self._require_session()
        try:
            await self.client.send(ResetRuntime(IntentHeader(session_id, uuid4().hex)))
        except RuntimeSendError as exc:
            logger.warning("Failed to reset runtime: %s", exc)
            return False
        return True

    # --- events ---------------------------------------------------------------

    def _is_stale(self, event: Event, *, replay: bool = False) -> bool:
        header = event.header
        if header.session_id != self.session_id:
            return True
        return not replay and header.timestamp < self.started_at_ms

    def handle_event(self, raw: Event | dict[str, Any], *, replay: bool = False) -> bool:
        """Apply one runtime event. Returns ``False`` when it was dropped.

        ``replay`` accepts events stamped before the session started, for
        importing a recorded log; the session id must still match.
        """
        if isinstance(raw, dict):
            try:
                event = event_from_dict(raw)
            except EventDecodeError as exc:
                logger.warning("Dropping malformed event: %s", exc)
                return False
            if event is None:
                return False
        else:
            event = raw

        if self.session_id is None or self._is_stale(event, replay=replay):
            logger.debug(
                "Discarding stale %s for session %s", event.type, event.header.session_id
            )
            return False

        result = self._apply(event)
        try:
            self.ledger.append_event(self.session_id, event)
        except ConductorStateError as exc:
            logger.warning("Failed to record %s for %s: %s", event.type, self.session_id, exc)
        if result.action != "ignored" or isinstance(event, SecurityViolation):
            self._changed()
        return True

    def _apply(self, event: Event) -> RouteResult:
        context = self._dispatches.get(event.header.correlation_id)
        fallback_role = context.role if context is not None else self.current_role
        result = apply_event(event, self.store, self.index, fallback_role)
        if isinstance(event, TERMINAL_EVENTS):
            self._dispatches.pop(event.header.correlation_id, None)

        if isinstance(event, SecurityViolation):
            self.phases.dispatch(PhaseCommand.security_violation(event.policy))
        if isinstance(event, ModelChatCompleted) and result.role and result.output_id:
            output = self.store.find_output(result.output_id)
            if output is not None and output.status == "success":
                self.reconcile(result.role, output.content)
        return result

    def reconcile(self, role: Role, text: str) -> TaskParseResult:
        """Merge task markers found in ``text`` into ``role``'s task list."""
        settings = self.config.tasks
        parsed = parse_tasks(text, role, phase_scoped_ids=settings.phase_scoped_ids)
        if parsed.tasks:
            merged = reconcile_tasks(self.store[role].tasks, parsed.tasks, settings.match_threshold)
            self.store.set_tasks(role, merged)
            if role == "PLAN" and settings.share_plan_tasks:
                for other in ROLE_ORDER[1:]:
                    self.store.set_tasks(
                        other,
                        reconcile_tasks(self.store[other].tasks, merged, settings.match_threshold),
                    )
        if parsed.phase_complete:
            target = next_role(role)
            self.handoff = Handoff(role, target, parsed.handoff_message or "")
            if target is not None and role == self.current_role:
                self.pending_role = target
        if parsed.tasks or parsed.phase_complete:
            self._changed()
        return parsed

    # --- views ----------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        return encode_snapshot(
            self._require_session(),
            self.phases,
            self.store,
            self.selected_models,
            self.current_role,
        )

    def role_states(self) -> dict[Role, str]:
        states: dict[Role, str] = {}
        for role in ROLE_ORDER:
            if role == self.current_role:
                states[role] = "active"
            elif self.store[role].outputs:
                states[role] = "completed"
            else:
                states[role] = "available"
        return states

    def agent_status(self) -> str:
        outputs = self.store[self.current_role].outputs
        if any(item.status == "running" and item.kind == "agent" for item in outputs):
            return "thinking"
        if any(item.status == "running" for item in outputs):
            return "running"
        if any(item.status == "awaiting" for item in outputs):
            return "awaiting"
        return "ready"

    def status(self) -> dict[str, Any]:
        roles: dict[str, Any] = {}
        for role, memory in self.store.items():
            completed, total = task_progress(memory.tasks)
            spec = self.roles[role]
            roles[role] = {
                "label": spec.label,
                "tagline": spec.tagline,
                "state": self.role_states()[role],
                "model": self.selected_models.get(role),
                "outputs": len(memory.outputs),
                "tasks": {"completed": completed, "total": total},
                "tokens": {
                    "input": memory.token_counters.input,
                    "output": memory.token_counters.output,
                    "total": memory.token_counters.total,
                },
            }
        pending = [
            {
                "request_id": item.pending_action.request_id,
                "command": item.pending_action.command,
                "risk_level": item.pending_action.risk_level,
                "role": item.role,
            }
            for _, memory in self.store.items()
            for item in memory.outputs
            if item.pending_action is not None
        ]
        return {
            "run_id": self.session_id,
            "epoch": self.epoch,
            "phase": self.phases.state.path,
            "run_label": self.phases.run_label,
            "phase_error": self.phases.error,
            "violation_policy": self.phases.violation_policy,
            "current_role": self.current_role,
            "pending_role": self.pending_role,
            "handoff": (
                {
                    "from": self.handoff.from_role,
                    "to": self.handoff.to_role,
                    "message": self.handoff.message,
                }
                if self.handoff
                else None
            ),
            "agent_status": self.agent_status(),
            "roles": roles,
            "pending_permissions": pending,
        }
