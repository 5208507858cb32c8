import json
from pathlib import Path

from click.testing import CliRunner

from conductor.cli import cli
from conductor.config import load_config


def _write_events(path: Path, run_id: str) -> None:
    header = {"sessionId": run_id, "correlationId": "c1", "timestamp": 1_600_000_000_000}
    events = [
        {"type": "PROCESS_STARTED", "header": header, "command": "npm test", "pid": 12},
        {"type": "STDOUT_CHUNK", "header": header, "content": "3 passed\n"},
        {"type": "PROCESS_EXITED", "header": header, "code": 0},
        {"type": "SECURITY_VIOLATION", "header": dict(header, correlationId="c2"), "policy": "net"},
        {"type": "TELEMETRY", "header": header},
    ]
    path.write_text("\n".join(json.dumps(event) for event in events) + "\n", encoding="utf-8")


def test_cli_session_lifecycle(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0
    assert (tmp_path / "conductor.toml").exists()
    assert (tmp_path / ".conductor").is_dir()

    new_result = runner.invoke(cli, ["new", "--run", "run-cli"])
    assert new_result.exit_code == 0
    assert "Run ID: run-cli" in new_result.output

    advance_result = runner.invoke(cli, ["phase", "advance"])
    assert advance_result.exit_code == 0
    assert "idle -> plan.analyzing" in advance_result.output

    unlock_result = runner.invoke(cli, ["phase", "unlock-gate"])
    assert unlock_result.exit_code == 0
    assert "UNLOCK_GATE ignored in plan.analyzing" in unlock_result.output

    plan_file = tmp_path / "plan.md"
    plan_file.write_text("- [x] Pick stack\n- [ ] Draft schema\n", encoding="utf-8")
    tasks_result = runner.invoke(cli, ["tasks", str(plan_file), "--phase", "PLAN"])
    assert tasks_result.exit_code == 0
    tasks_payload = json.loads(tasks_result.output)
    assert [task["status"] for task in tasks_payload["tasks"]] == ["complete", "pending"]

    model_result = runner.invoke(cli, ["model", "BUILD", "coder-large"])
    assert model_result.exit_code == 0

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code == 0
    status = json.loads(status_result.output)
    assert status["run_id"] == "run-cli"
    assert status["phase"] == "plan.analyzing"
    assert status["roles"]["BUILD"]["model"] == "coder-large"
    assert status["roles"]["PLAN"]["tasks"] == {"completed": 1, "total": 2}

    runs_result = runner.invoke(cli, ["runs"])
    assert runs_result.exit_code == 0
    assert "run-cli" in runs_result.output


def test_cli_replay_imports_event_log(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0

    events_file = tmp_path / "events.jsonl"
    _write_events(events_file, "run-replay")
    replay_result = runner.invoke(cli, ["replay", str(events_file)])
    assert replay_result.exit_code == 0
    summary = json.loads(replay_result.output)
    assert summary == {
        "run_id": "run-replay",
        "applied": 4,
        "dropped": 1,
        "phase": "security_lockdown",
    }

    status = json.loads(runner.invoke(cli, ["status", "--run", "run-replay"]).output)
    assert status["phase"] == "security_lockdown"
    assert status["violation_policy"] == "net"
    assert status["roles"]["PLAN"]["outputs"] == 2

    retry_result = runner.invoke(cli, ["phase", "retry", "--run", "run-replay"])
    assert "security_lockdown -> plan.analyzing" in retry_result.output

    events_result = runner.invoke(cli, ["events", "--run", "run-replay", "--limit", "2"])
    assert events_result.exit_code == 0
    recorded = [json.loads(line) for line in events_result.output.splitlines()]
    assert [event["type"] for event in recorded] == ["PROCESS_EXITED", "SECURITY_VIOLATION"]


def test_cli_reports_errors(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init", "--backend", "memory"]).exit_code == 0
    assert load_config(tmp_path / "conductor.toml").state.backend == "memory"

    status_result = runner.invoke(cli, ["status"])
    assert status_result.exit_code != 0
    assert "No runs recorded" in status_result.output

    events_result = runner.invoke(cli, ["events"])
    assert events_result.exit_code != 0
    assert "No runs recorded" in events_result.output

    bad_log = tmp_path / "bad.jsonl"
    bad_log.write_text("{not json}\n", encoding="utf-8")
    replay_result = runner.invoke(cli, ["replay", str(bad_log)])
    assert replay_result.exit_code != 0
    assert "invalid JSON" in replay_result.output

    set_phase_result = runner.invoke(cli, ["phase", "set-phase"])
    assert set_phase_result.exit_code != 0
    assert "--target" in set_phase_result.output
