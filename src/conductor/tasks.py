"""Extract task lists from generated text and reconcile them with known tasks.

The generator never supplies stable ids, so identity is a hash of the
normalized task text, and later status updates are reattached with a
Levenshtein-based similarity match.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field, replace

from conductor.memory import Role, TaskItem, TaskStatus

DEFAULT_MATCH_THRESHOLD = 0.95

STATUS_MARKERS: dict[str, TaskStatus] = {
    " ": "pending",
    ">": "active",
    "x": "complete",
    "X": "complete",
    "~": "skipped",
    "!": "failed",
}

HANDOFF_PATTERNS = [
    re.compile(r"handing off to (\w+)", re.IGNORECASE),
    re.compile(r"ready for (\w+)", re.IGNORECASE),
    re.compile(r"passing to (\w+)", re.IGNORECASE),
    re.compile(r"completed?\. (\w+) (will|can|should)", re.IGNORECASE),
    re.compile(r"all (tasks|items|work) complete", re.IGNORECASE),
]

TASK_LINE_PATTERN = re.compile(r"^(\s*)[-*]?\s*(?:\d+[.)])?\s*\[(.)\]\s*(.+)$")
STATUS_ECHO_PATTERN = re.compile(
    r"^(completed|complete|done|finished|currently working on|working on|started|"
    r"failed|skipped)\s*:\s*(.+)$",
    re.IGNORECASE,
)


@dataclass(slots=True)
class TaskParseResult:
    tasks: list[TaskItem] = field(default_factory=list)
    phase_complete: bool = False
    handoff_message: str | None = None


@dataclass(frozen=True, slots=True)
class TaskMatch:
    task: TaskItem
    confidence: float


def normalize(text: str) -> str:
    lowered = re.sub(r"[^\w\s]", "", text.lower())
    return re.sub(r"\s+", " ", lowered).strip()


def task_id(text: str, phase: Role | None = None) -> str:
    key = normalize(text)
    if phase is not None:
        key = f"{phase}:{key}"
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
    return f"task-{digest[:12]}"


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return 1 - levenshtein(a, b) / max(len(a), len(b))


def strip_status_echo(text: str) -> str | None:
    """Return the task text of a status echo like ``Completed: X``, else ``None``."""
    match = STATUS_ECHO_PATTERN.match(text.strip())
    if not match:
        return None
    return match.group(2).strip()


def parse_tasks(text: str, phase: Role, *, phase_scoped_ids: bool = True) -> TaskParseResult:
    result = TaskParseResult()
    for pattern in HANDOFF_PATTERNS:
        match = pattern.search(text)
        if match:
            result.phase_complete = True
            result.handoff_message = match.group(0)
            break

    id_scope = phase if phase_scoped_ids else None
    parent: TaskItem | None = None
    for line in text.splitlines():
        match = TASK_LINE_PATTERN.match(line)
        if not match:
            continue
        indent, marker, raw_text = match.groups()
        task_text = raw_text.strip()
        item = TaskItem(
            id=task_id(task_text, id_scope),
            text=task_text,
            status=STATUS_MARKERS.get(marker, "pending"),
            phase=phase,
        )
        if indent and parent is not None:
            item.parent_id = parent.id
        else:
            parent = item
        result.tasks.append(item)
    return result


def match_task(
    candidate: str,
    tasks: list[TaskItem],
    threshold: float = DEFAULT_MATCH_THRESHOLD,
) -> TaskMatch | None:
    needle = normalize(candidate)
    best: TaskMatch | None = None
    for task in tasks:
        haystack = normalize(task.text)
        if needle == haystack:
            return TaskMatch(task, 1.0)
        score = similarity(needle, haystack)
        if score >= threshold and (best is None or score > best.confidence):
            best = TaskMatch(task, score)
    return best


def reconcile_tasks(
    existing: list[TaskItem],
    incoming: list[TaskItem],
    threshold: float = DEFAULT_MATCH_THRESHOLD,
) -> list[TaskItem]:
    """Upsert ``incoming`` into ``existing``.

    Matched tasks keep their identity and take the incoming status; unmatched
    tasks are appended unless they only echo a status for an unknown task.
    """
    merged = [replace(task) for task in existing]
    for item in incoming:
        echoed = strip_status_echo(item.text)
        match = match_task(item.text, merged, threshold)
        if match is None and echoed:
            match = match_task(echoed, merged, threshold)
        if match is not None:
            match.task.status = item.status
            continue
        if echoed:
            continue
        merged.append(replace(item))
    return merged


def task_progress(tasks: list[TaskItem]) -> tuple[int, int]:
    completed = sum(1 for task in tasks if task.status in {"complete", "skipped"})
    return completed, len(tasks)
