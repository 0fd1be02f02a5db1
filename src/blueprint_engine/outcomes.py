"""Strict task-outcome markers.

An agent reply ends a task run with exactly one marker line. Only a line
that is, after trimming and lower-casing, exactly one of the bracketed
markers counts; prose such as ``status: complete`` or ``done`` never does.
"""

from __future__ import annotations

from enum import Enum


class TaskOutcome(str, Enum):
    COMPLETE = "complete"
    CONTINUE = "continue"
    BLOCKED = "blocked"
    UNKNOWN = "unknown"


OUTCOME_MARKERS: dict[str, TaskOutcome] = {
    "[task-complete]": TaskOutcome.COMPLETE,
    "[task-continue]": TaskOutcome.CONTINUE,
    "[task-blocked]": TaskOutcome.BLOCKED,
}


def marker_for(outcome: TaskOutcome) -> str | None:
    for marker, value in OUTCOME_MARKERS.items():
        if value == outcome:
            return marker
    return None


def is_outcome_marker(text: str) -> bool:
    return text.strip().lower() in OUTCOME_MARKERS


def contains_marker_instruction(text: str) -> bool:
    """True when ``text`` mentions a bracketed marker token verbatim."""
    lowered = text.lower()
    return any(marker in lowered for marker in OUTCOME_MARKERS)


def parse_outcome(text: str) -> TaskOutcome:
    """Outcome of the last marker line in ``text``; ``UNKNOWN`` when there is none."""
    outcome = TaskOutcome.UNKNOWN
    for line in text.splitlines():
        candidate = line.strip().lower()
        if candidate in OUTCOME_MARKERS:
            outcome = OUTCOME_MARKERS[candidate]
    return outcome
