import pytest

from conductor.correlation import CorrelationIndex
from conductor.events import (
    EventHeader,
    ModelChatCompleted,
    ModelChatDelta,
    ModelChatFailed,
    ModelChatStarted,
    PermissionRequested,
    ProcessExited,
    ProcessStarted,
    SecurityViolation,
    StderrChunk,
    StdoutChunk,
    SystemReady,
    TokenCounts,
    WorkflowError,
)
from conductor.memory import OutputItem, RoleMemoryStore
from conductor.router import apply_event

TS = 1_700_000_000_000


def _header(correlation_id: str, offset: int = 0) -> EventHeader:
    return EventHeader(session_id="run-1", correlation_id=correlation_id, timestamp=TS + offset)


def test_unseen_start_event_creates_one_bound_record() -> None:
    store = RoleMemoryStore()
    index = CorrelationIndex()

    result = apply_event(ProcessStarted(_header("c1"), "npm test", 42), store, index, "BUILD")

    assert result.action == "created"
    outputs = store["BUILD"].outputs
    assert len(outputs) == 1
    assert outputs[0].status == "running"
    assert outputs[0].command == "npm test"
    assert index.resolve("c1").output_id == outputs[0].id
    assert not store["PLAN"].outputs


def test_chunks_concatenate_in_emission_order() -> None:
    store = RoleMemoryStore()
    index = CorrelationIndex()
    apply_event(ProcessStarted(_header("c1"), "make", 7), store, index, "BUILD")

    apply_event(StdoutChunk(_header("c1", 1), "comp"), store, index, "BUILD")
    apply_event(StdoutChunk(_header("c1", 2), "iling\n"), store, index, "BUILD")
    apply_event(StderrChunk(_header("c1", 3), "warning: unused"), store, index, "BUILD")

    output = store["BUILD"].outputs[0]
    assert output.content == "compiling\n\n[stderr]\nwarning: unused"
    assert output.status == "running"


def test_exit_sets_terminal_status_once() -> None:
    store = RoleMemoryStore()
    index = CorrelationIndex()
    apply_event(ProcessStarted(_header("ok"), "true", 1), store, index, "BUILD")
    apply_event(ProcessStarted(_header("bad"), "false", 2), store, index, "BUILD")

    apply_event(ProcessExited(_header("ok", 1), 0), store, index, "BUILD")
    apply_event(ProcessExited(_header("bad", 1), 2), store, index, "BUILD")
    apply_event(ProcessExited(_header("bad", 2), 0), store, index, "BUILD")

    ok, bad = store["BUILD"].outputs
    assert ok.status == "success"
    assert ok.content.endswith("(exit 0)")
    assert bad.status == "error"


def test_continuation_without_binding_is_kept_and_bound() -> None:
    store = RoleMemoryStore()
    index = CorrelationIndex()

    first = apply_event(StdoutChunk(_header("orphan"), "x"), store, index, "REVIEW")
    second = apply_event(StdoutChunk(_header("orphan", 1), "y"), store, index, "PLAN")

    assert first.action == "created"
    assert second.action == "updated"
    assert len(store["REVIEW"].outputs) == 1
    assert store["REVIEW"].outputs[0].content == "xy"
    assert not store["PLAN"].outputs
    assert len(index) == 1


def test_model_chat_lifecycle_replaces_content_and_counts_tokens() -> None:
    store = RoleMemoryStore()
    index = CorrelationIndex()
    apply_event(ModelChatStarted(_header("m1"), "qwen"), store, index, "PLAN")
    apply_event(ModelChatDelta(_header("m1", 1), "Hel"), store, index, "PLAN")
    apply_event(ModelChatDelta(_header("m1", 2), "lo"), store, index, "PLAN")
    assert store["PLAN"].outputs[0].content == "Hello"

    completed = ModelChatCompleted(_header("m1", 3), "Hello world", TokenCounts(3, 5))
    apply_event(completed, store, index, "PLAN")
    apply_event(completed, store, index, "PLAN")

    output = store["PLAN"].outputs[0]
    assert output.kind == "agent"
    assert output.status == "success"
    assert output.content == "Hello world"
    counters = store["PLAN"].token_counters
    assert (counters.input, counters.output, counters.total) == (3, 5, 8)


def test_start_event_for_bound_output_marks_it_running() -> None:
    store = RoleMemoryStore()
    index = CorrelationIndex()
    store.append_output(
        "REVIEW",
        OutputItem(id="agent-1", kind="agent", command="audit", role="REVIEW", status="awaiting"),
    )
    index.bind("m1", "REVIEW", "agent-1")

    result = apply_event(ModelChatStarted(_header("m1"), "qwen"), store, index, "PLAN")

    assert (result.action, result.role, result.output_id) == ("updated", "REVIEW", "agent-1")
    assert store.find_output("agent-1").status == "running"
    assert len(store["REVIEW"].outputs) == 1

    apply_event(ModelChatCompleted(_header("m1", 1), "done", TokenCounts(1, 1)), store, index, "PLAN")
    apply_event(ModelChatStarted(_header("m1", 2), "qwen"), store, index, "PLAN")
    assert store.find_output("agent-1").status == "success"


def test_model_failure_appends_error_detail() -> None:
    store = RoleMemoryStore()
    index = CorrelationIndex()
    apply_event(ModelChatStarted(_header("m1")), store, index, "BUILD")
    apply_event(ModelChatDelta(_header("m1", 1), "partial"), store, index, "BUILD")
    apply_event(ModelChatFailed(_header("m1", 2), "context length exceeded"), store, index, "BUILD")

    output = store["BUILD"].outputs[0]
    assert output.status == "error"
    assert output.content == "partial\n[model] context length exceeded"


def test_permission_request_awaits_until_exit() -> None:
    store = RoleMemoryStore()
    index = CorrelationIndex()
    apply_event(ProcessStarted(_header("c1"), "rm -rf dist", 9), store, index, "DEPLOY")

    apply_event(
        PermissionRequested(_header("c1", 1), "req-1", "rm -rf dist", "high"), store, index, "DEPLOY"
    )
    output = store["DEPLOY"].outputs[0]
    assert output.status == "awaiting"
    assert output.pending_action is not None
    assert output.pending_action.request_id == "req-1"
    assert store.find_pending_action("req-1") is output

    apply_event(ProcessExited(_header("c1", 2), 0), store, index, "DEPLOY")
    assert output.status == "success"
    assert output.pending_action is None


def test_workflow_error_annotates_bound_record() -> None:
    store = RoleMemoryStore()
    index = CorrelationIndex()
    apply_event(ProcessStarted(_header("c1"), "pip install", 3), store, index, "BUILD")
    apply_event(WorkflowError(_header("c1", 1), "disk almost full", "warn"), store, index, "BUILD")

    output = store["BUILD"].outputs[0]
    assert output.status == "error"
    assert output.content.endswith("[warning] disk almost full")


def test_unbound_errors_create_error_records() -> None:
    store = RoleMemoryStore()
    index = CorrelationIndex()

    apply_event(WorkflowError(_header("w1"), "runtime crashed"), store, index, "REVIEW")
    apply_event(SecurityViolation(_header("s1"), "fs-write", "/etc/passwd"), store, index, "REVIEW")

    workflow, violation = store["REVIEW"].outputs
    assert workflow.status == "error"
    assert workflow.content == "runtime crashed"
    assert violation.status == "error"
    assert violation.command == "Security violation: fs-write"
    assert violation.content == "/etc/passwd"


def test_system_ready_is_ignored_once_outputs_exist() -> None:
    store = RoleMemoryStore()
    index = CorrelationIndex()

    created = apply_event(SystemReady(_header("boot"), "run-1"), store, index, "PLAN")
    ignored = apply_event(SystemReady(_header("boot2"), "run-1"), store, index, "PLAN")

    assert created.action == "created"
    assert ignored.action == "ignored"
    assert len(store["PLAN"].outputs) == 1
    assert len(index) == 0


def test_binding_to_missing_output_appends_standalone_records() -> None:
    store = RoleMemoryStore()
    index = CorrelationIndex()
    index.bind("ghost", "REVIEW", "gone")

    first = apply_event(StdoutChunk(_header("ghost"), "a"), store, index, "PLAN")
    second = apply_event(StdoutChunk(_header("ghost"), "b"), store, index, "PLAN")

    assert first.role == "REVIEW"
    assert first.output_id != second.output_id
    assert [item.content for item in store["REVIEW"].outputs] == ["a", "b"]
    assert index.resolve("ghost").output_id == "gone"


def test_duplicate_output_ids_are_rejected_by_store() -> None:
    store = RoleMemoryStore()
    store.append_output("PLAN", OutputItem(id="x", kind="shell", command="ls", role="PLAN"))

    with pytest.raises(ValueError, match="already present"):
        store.append_output("BUILD", OutputItem(id="x", kind="shell", command="ls", role="BUILD"))
