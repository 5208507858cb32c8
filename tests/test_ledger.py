import json
from itertools import count
from pathlib import Path

import pytest

from conductor.events import EventHeader, ProcessExited, StdoutChunk
from conductor.state import ConductorStateError, RunLedger


def _chunk(text: str, offset: int = 0) -> StdoutChunk:
    return StdoutChunk(EventHeader("run-1", "c1", 1_700_000_000_000 + offset), text)


def test_local_ledger_roundtrip(tmp_path: Path) -> None:
    ledger = RunLedger(tmp_path / ".conductor")
    ledger.create_run("run-1")
    ledger.append_event("run-1", _chunk("a"))
    ledger.append_event("run-1", ProcessExited(EventHeader("run-1", "c1", 1_700_000_000_005), 0))
    ledger.save_snapshot("run-1", "active", {"version": 1, "runId": "run-1"})

    reopened = RunLedger(tmp_path / ".conductor")
    events = reopened.get_recent_events("run-1")
    snapshot = reopened.load_latest_snapshot("run-1")

    assert [event.type for event in events] == ["STDOUT_CHUNK", "PROCESS_EXITED"]
    assert snapshot is not None
    assert snapshot.payload == {"version": 1, "runId": "run-1"}
    assert snapshot.status == "active"
    assert snapshot.event_seq == 2
    assert (tmp_path / ".conductor" / "state" / "runs.json").exists()
    assert not (tmp_path / ".conductor" / "state" / ".lock").exists()


def test_memory_ledger_keeps_nothing_on_disk(tmp_path: Path) -> None:
    ledger = RunLedger(backend_mode="memory")
    ledger.create_run("run-1")
    ledger.append_event("run-1", _chunk("a"))

    assert ledger.state_dir is None
    assert len(ledger.get_recent_events("run-1")) == 1
    assert list(tmp_path.iterdir()) == []


def test_recent_events_are_oldest_first_and_limited() -> None:
    ledger = RunLedger(backend_mode="memory")
    for index in range(5):
        assert ledger.append_event("run-1", _chunk(str(index), index)) == index + 1

    recent = ledger.get_recent_events("run-1", limit=3)
    after = ledger.get_recent_events("run-1", after_seq=4)

    assert [event.content for event in recent] == ["2", "3", "4"]
    assert [event.content for event in after] == ["4"]
    assert ledger.get_recent_events("run-1", limit=0) == []


def test_list_runs_newest_first(monkeypatch: pytest.MonkeyPatch) -> None:
    clock = count(1_000)
    monkeypatch.setattr("conductor.state.ledger._now_ms", lambda: next(clock))
    ledger = RunLedger(backend_mode="memory")
    ledger.create_run("run-a")
    ledger.create_run("run-b")
    ledger.append_event("run-a", _chunk("x"))
    ledger.save_snapshot("run-a", "complete", {})

    runs = ledger.list_runs(limit=10)

    assert [run.id for run in runs] == ["run-b", "run-a"]
    assert runs[1].event_count == 1
    assert runs[1].status == "complete"
    assert ledger.latest_run_id() == "run-b"
    assert len(ledger.list_runs(limit=1)) == 1


def test_latest_snapshot_wins() -> None:
    ledger = RunLedger(backend_mode="memory")
    ledger.save_snapshot("run-1", "active", {"n": 1})
    ledger.save_snapshot("run-1", "active", {"n": 2})

    assert ledger.load_latest_snapshot("run-1").payload == {"n": 2}
    assert ledger.load_latest_snapshot("run-2") is None


def test_legacy_payload_is_wrapped_in_an_envelope(tmp_path: Path) -> None:
    ledger = RunLedger(tmp_path)
    runs_path = tmp_path / "state" / "runs.json"
    runs_path.write_text(json.dumps({"legacy": {"id": "legacy", "created_at": 5}}), encoding="utf-8")

    assert ledger.latest_run_id() == "legacy"

    ledger.create_run("run-1")
    on_disk = json.loads(runs_path.read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == RunLedger.SCHEMA_VERSION
    assert set(on_disk["data"]) == {"legacy", "run-1"}


def test_update_json_increments_revision() -> None:
    ledger = RunLedger(backend_mode="memory")
    ledger.set_json("counters", {"count": 1})
    first_revision = ledger.get_envelope("counters")["revision"]

    ledger.update_json(
        "counters", lambda payload: {"count": payload["count"] + 1}, default={"count": 0}
    )

    assert ledger.get_json("counters")["count"] == 2
    assert ledger.get_envelope("counters")["revision"] > first_revision


def test_stale_revision_is_rejected() -> None:
    ledger = RunLedger(backend_mode="memory")
    ledger.set_json("counters", {"count": 1})

    with pytest.raises(ConductorStateError, match="Concurrent state update"):
        ledger.set_json("counters", {"count": 5}, expected_revision=1)


def test_unreadable_files_are_treated_as_empty(tmp_path: Path) -> None:
    ledger = RunLedger(tmp_path)
    (tmp_path / "state" / "events-run-1.json").write_text("{oops", encoding="utf-8")

    assert ledger.get_recent_events("run-1") == []


def test_invalid_configuration_and_names_raise(tmp_path: Path) -> None:
    with pytest.raises(ConductorStateError, match="Unsupported state backend"):
        RunLedger(tmp_path, backend_mode="git")
    with pytest.raises(ConductorStateError, match="needs a root"):
        RunLedger()
    with pytest.raises(ConductorStateError, match="Unsupported namespace"):
        RunLedger(backend_mode="memory").create_run("../escape")
