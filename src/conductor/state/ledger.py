from __future__ import annotations

import json
import logging
import os
import re
import time
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from conductor.events import Event, EventDecodeError, event_from_dict, event_to_dict

logger = logging.getLogger(__name__)

NAMESPACE_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class ConductorStateError(RuntimeError):
    """Raised when run-ledger operations fail."""


@dataclass(slots=True)
class RunSummary:
    id: str
    created_at: int
    event_count: int
    status: str


@dataclass(slots=True)
class SnapshotRecord:
    run_id: str
    status: str
    payload: Any
    saved_at: int
    event_seq: int = 0


def _now_ms() -> int:
    return int(time.time() * 1000)


class RunLedger:
    """Runs, their event log and their snapshots.

    ``local`` keeps schema-versioned JSON envelopes under ``<root>/state``;
    ``memory`` keeps the same envelopes in a dict and loses them on exit.
    """

    SCHEMA_VERSION = 1
    MAX_EVENTS_PER_RUN = 2000
    MAX_SNAPSHOTS_PER_RUN = 20

    def __init__(self, root: Path | None = None, *, backend_mode: str = "local") -> None:
        if backend_mode not in {"local", "memory"}:
            raise ConductorStateError(f"Unsupported state backend mode: {backend_mode}")
        if backend_mode == "local" and root is None:
            raise ConductorStateError("The local state backend needs a root directory.")
        self._backend_mode = backend_mode
        self._memory: dict[str, str] = {}
        self.state_dir: Path | None = None
        self.lock_file: Path | None = None
        if backend_mode == "local" and root is not None:
            self.state_dir = root.resolve() / "state"
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self.lock_file = self.state_dir / ".lock"

    @property
    def backend_mode(self) -> str:
        return self._backend_mode

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if not NAMESPACE_PATTERN.match(namespace):
            raise ConductorStateError(f"Unsupported namespace: {namespace}")

    @staticmethod
    def _events_namespace(run_id: str) -> str:
        return f"events-{run_id}"

    @staticmethod
    def _snapshots_namespace(run_id: str) -> str:
        return f"snapshots-{run_id}"

    def _local_file(self, namespace: str) -> Path:
        assert self.state_dir is not None
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        if self.lock_file is None:
            yield
            return
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise ConductorStateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        if self.backend_mode == "memory":
            content = self._memory.get(namespace)
        else:
            local_file = self._local_file(namespace)
            if not local_file.exists():
                return None
            content = local_file.read_text(encoding="utf-8")
        if not content:
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable state namespace %s", namespace)
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        if self.backend_mode == "memory":
            self._memory[namespace] = serialized
            return
        try:
            self._local_file(namespace).write_text(serialized, encoding="utf-8")
        except OSError as exc:
            raise ConductorStateError(f"Failed to write state namespace {namespace}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        data = default if raw_payload is None else raw_payload
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": data,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise ConductorStateError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": self._utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except ConductorStateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise ConductorStateError(str(last_error) if last_error else "State update failed.")

    # --- runs -----------------------------------------------------------------

    def create_run(self, run_id: str, *, status: str = "active") -> None:
        self._validate_namespace(run_id)
        now = _now_ms()

        def _updater(payload: Any) -> dict[str, Any]:
            runs = payload if isinstance(payload, dict) else {}
            if run_id not in runs:
                runs[run_id] = {"id": run_id, "created_at": now, "status": status}
            return runs

        self.update_json("runs", _updater, default={})

    def _set_run_status(self, run_id: str, status: str) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            runs = payload if isinstance(payload, dict) else {}
            run = runs.get(run_id)
            if not isinstance(run, dict):
                run = {"id": run_id, "created_at": _now_ms()}
            run["status"] = status
            run["updated_at"] = _now_ms()
            runs[run_id] = run
            return runs

        self.update_json("runs", _updater, default={})

    def latest_run_id(self) -> str | None:
        runs = self.list_runs(limit=1)
        return runs[0].id if runs else None

    def list_runs(self, limit: int = 10) -> list[RunSummary]:
        runs = self.get_json("runs", default={})
        if not isinstance(runs, dict):
            return []
        summaries: list[RunSummary] = []
        for run_id, run in runs.items():
            if not isinstance(run, dict):
                continue
            events = self.get_json(self._events_namespace(run_id), default=[])
            summaries.append(
                RunSummary(
                    id=run_id,
                    created_at=int(run.get("created_at", 0)),
                    event_count=len(events) if isinstance(events, list) else 0,
                    status=str(run.get("status", "unknown")),
                )
            )
        summaries.sort(key=lambda item: item.created_at, reverse=True)
        return summaries[: max(0, limit)]

    # --- events ---------------------------------------------------------------

    @staticmethod
    def _last_seq(records: Any) -> int:
        if not isinstance(records, list) or not records:
            return 0
        last = records[-1]
        if not isinstance(last, dict):
            return 0
        return int(last.get("seq", 0))

    def append_event(self, run_id: str, event: Event) -> int:
        """Record ``event`` and return its sequence number within the run."""
        self._validate_namespace(run_id)
        payload = event_to_dict(event)
        recorded_at = _now_ms()
        seq = 0

        def _updater(data: Any) -> list[Any]:
            nonlocal seq
            events = data if isinstance(data, list) else []
            seq = self._last_seq(events) + 1
            events.append({"seq": seq, "recorded_at": recorded_at, "event": payload})
            return events[-self.MAX_EVENTS_PER_RUN :]

        self.update_json(self._events_namespace(run_id), _updater, default=[])
        return seq

    def get_recent_events(
        self, run_id: str, limit: int = 100, *, after_seq: int | None = None
    ) -> list[Event]:
        """The latest ``limit`` decodable events of a run, oldest first.

        With ``after_seq`` only events recorded after that sequence number
        are considered.
        """
        self._validate_namespace(run_id)
        records = self.get_json(self._events_namespace(run_id), default=[])
        if not isinstance(records, list) or limit <= 0:
            return []
        if after_seq is not None:
            records = [
                record
                for record in records
                if isinstance(record, dict) and int(record.get("seq", 0)) > after_seq
            ]
        events: list[Event] = []
        for record in records[-limit:]:
            if not isinstance(record, dict):
                continue
            try:
                event = event_from_dict(record.get("event"))
            except EventDecodeError as exc:
                logger.warning("Skipping unreadable ledger event for %s: %s", run_id, exc)
                continue
            if event is not None:
                events.append(event)
        return events

    # --- snapshots ------------------------------------------------------------

    def save_snapshot(self, run_id: str, status: str, payload: Any) -> None:
        self._validate_namespace(run_id)
        self.create_run(run_id)
        record = {
            "status": status,
            "payload": payload,
            "saved_at": _now_ms(),
            "event_seq": self._last_seq(self.get_json(self._events_namespace(run_id), default=[])),
        }

        def _updater(data: Any) -> list[Any]:
            snapshots = data if isinstance(data, list) else []
            snapshots.append(record)
            return snapshots[-self.MAX_SNAPSHOTS_PER_RUN :]

        self.update_json(self._snapshots_namespace(run_id), _updater, default=[])
        self._set_run_status(run_id, status)

    def load_latest_snapshot(self, run_id: str) -> SnapshotRecord | None:
        self._validate_namespace(run_id)
        snapshots = self.get_json(self._snapshots_namespace(run_id), default=[])
        if not isinstance(snapshots, list):
            return None
        for record in reversed(snapshots):
            if isinstance(record, dict) and "payload" in record:
                return SnapshotRecord(
                    run_id=run_id,
                    status=str(record.get("status", "")),
                    payload=record.get("payload"),
                    saved_at=int(record.get("saved_at", 0)),
                    event_seq=int(record.get("event_seq", 0)),
                )
        return None
