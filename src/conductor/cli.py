from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

import click

from conductor import __version__
from conductor.config import ConductorConfig, load_config, save_config
from conductor.engine import Engine
from conductor.events import EventDecodeError, event_to_dict
from conductor.memory import ROLE_ORDER
from conductor.phases import PhaseCommand
from conductor.runtime import RecordingClient
from conductor.state import ConductorStateError, RunLedger

PHASE_COMMANDS = ["advance", "set-phase", "unlock-gate", "retry", "reset", "fail", "security-violation"]


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ConductorConfig
    ledger: RunLedger
    engine: Engine


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _state_root(repo_root: Path, config: ConductorConfig) -> Path:
    directory = Path(config.state.directory)
    if not directory.is_absolute():
        directory = repo_root / directory
    return directory


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    try:
        ledger = RunLedger(_state_root(repo_root, config), backend_mode=config.state.backend)
    except ConductorStateError as exc:
        raise click.ClickException(str(exc)) from exc
    engine = Engine(ledger, RecordingClient(), config)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        ledger=ledger,
        engine=engine,
    )


def _open_run(runtime: Runtime, run_id: str | None, *, create: bool = True) -> str:
    target = run_id or runtime.ledger.latest_run_id()
    if target is None:
        if not create:
            raise click.ClickException("No runs recorded. Run `conductor new` first.")
        return runtime.engine.new_session()
    runtime.engine.resume(target)
    return target


def _phase_command(
    name: str, target: str | None, policy: str | None, message: str | None
) -> PhaseCommand:
    if name == "set-phase":
        if not target:
            raise click.ClickException("set-phase needs --target.")
        return PhaseCommand.set_phase(target)
    if name == "security-violation":
        return PhaseCommand.security_violation(policy or "manual")
    if name == "fail":
        return PhaseCommand.fail(message or "Marked as failed.")
    return PhaseCommand(name.upper().replace("-", "_"))


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
@click.version_option(__version__, prog_name="conductor")
@click.option("--verbose", is_flag=True, default=False, help="Log engine activity to stderr.")
def cli(verbose: bool) -> None:
    """Conductor CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(["local", "memory"]), default=None)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.state.backend = backend  # type: ignore[assignment]
    save_config(config_path, config)

    state_root = _state_root(repo_root, config)
    if config.state.backend == "local":
        state_root.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Conductor in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State backend: {config.state.backend}")


@cli.command("new")
@click.option("--run", "run_id", default=None, help="Explicit run id.")
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def new_command(run_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        created = runtime.engine.new_session(run_id)
        runtime.engine.close()
    except ConductorStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Run ID: {created}")


@cli.command("runs")
@click.option("--limit", type=int, default=None)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def runs_command(limit: int | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    runs = runtime.ledger.list_runs(limit or runtime.config.session.run_list_limit)
    if not runs:
        click.echo("No runs recorded.")
        return
    for run in runs:
        click.echo(f"{run.id} {run.status:<8} events={run.event_count} created={run.created_at}")


@cli.command("status")
@click.option("--run", "run_id", default=None)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def status_command(run_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        _open_run(runtime, run_id, create=False)
    except ConductorStateError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(runtime.engine.status())


@cli.command("events")
@click.option("--run", "run_id", default=None)
@click.option("--limit", type=int, default=None)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def events_command(run_id: str | None, limit: int | None, config_value: str) -> None:
    """Print the latest recorded events of a run as JSON lines."""
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    target = run_id or runtime.ledger.latest_run_id()
    if target is None:
        raise click.ClickException("No runs recorded. Run `conductor new` first.")
    try:
        events = runtime.ledger.get_recent_events(
            target, limit or runtime.config.session.recent_events_limit
        )
    except ConductorStateError as exc:
        raise click.ClickException(str(exc)) from exc
    for event in events:
        click.echo(json.dumps(event_to_dict(event), ensure_ascii=False))


@cli.command("replay")
@click.argument("events_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--run", "run_id", default=None, help="Defaults to the first event's session id.")
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def replay_command(events_file: Path, run_id: str | None, config_value: str) -> None:
    """Apply a JSON-lines event log to a run."""
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))

    payloads: list[dict] = []
    for number, raw_line in enumerate(events_file.read_text(encoding="utf-8").splitlines(), 1):
        line = raw_line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            raise click.ClickException(f"{events_file}:{number}: invalid JSON ({exc.msg})") from exc
        if not isinstance(payload, dict):
            raise click.ClickException(f"{events_file}:{number}: expected a JSON object")
        payloads.append(payload)
    if not payloads:
        raise click.ClickException(f"No events in {events_file}.")

    if run_id is None:
        header = payloads[0].get("header")
        run_id = header.get("sessionId") if isinstance(header, dict) else None
        if not isinstance(run_id, str) or not run_id:
            raise click.ClickException("Cannot infer the run id; pass --run.")

    try:
        runtime.engine.resume(run_id)
        applied = sum(1 for payload in payloads if runtime.engine.handle_event(payload, replay=True))
        runtime.engine.close()
    except (ConductorStateError, EventDecodeError) as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_json(
        {
            "run_id": run_id,
            "applied": applied,
            "dropped": len(payloads) - applied,
            "phase": runtime.engine.phases.state.path,
        }
    )


@cli.command("phase")
@click.argument("command", type=click.Choice(PHASE_COMMANDS))
@click.option("--target", default=None, help="Phase for set-phase.")
@click.option("--policy", default=None, help="Policy for security-violation.")
@click.option("--message", default=None, help="Error message for fail.")
@click.option("--run", "run_id", default=None)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def phase_command(
    command: str,
    target: str | None,
    policy: str | None,
    message: str | None,
    run_id: str | None,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    phase_cmd = _phase_command(command, target, policy, message)
    try:
        _open_run(runtime, run_id)
        before = runtime.engine.phases.state.path
        moved = runtime.engine.issue(phase_cmd)
        runtime.engine.close()
    except ConductorStateError as exc:
        raise click.ClickException(str(exc)) from exc

    if moved:
        click.echo(f"Phase: {before} -> {runtime.engine.phases.state.path}")
    else:
        click.echo(f"{phase_cmd.name} ignored in {before}")


@cli.command("tasks")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--phase", "role", type=click.Choice(list(ROLE_ORDER)), required=True)
@click.option("--run", "run_id", default=None)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def tasks_command(source: Path, role: str, run_id: str | None, config_value: str) -> None:
    """Merge task markers from SOURCE into a role's task list."""
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        _open_run(runtime, run_id)
        parsed = runtime.engine.reconcile(role, source.read_text(encoding="utf-8"))  # type: ignore[arg-type]
        runtime.engine.close()
    except ConductorStateError as exc:
        raise click.ClickException(str(exc)) from exc

    tasks = runtime.engine.store[role].tasks  # type: ignore[index]
    _echo_json(
        {
            "role": role,
            "parsed": len(parsed.tasks),
            "phase_complete": parsed.phase_complete,
            "handoff": parsed.handoff_message,
            "tasks": [
                {
                    "id": task.id,
                    "text": task.text,
                    "status": task.status,
                    "phase": task.phase,
                    "parent_id": task.parent_id,
                }
                for task in tasks
            ],
        }
    )


@cli.command("model")
@click.argument("role", type=click.Choice(list(ROLE_ORDER)))
@click.argument("model_id")
@click.option("--run", "run_id", default=None)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def model_command(role: str, model_id: str, run_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        _open_run(runtime, run_id)
        runtime.engine.select_model(role, model_id)
        runtime.engine.close()
    except (ConductorStateError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{role} model: {model_id}")


if __name__ == "__main__":
    cli()
