"""Stage ordering and approval rules.

Pure functions over :class:`Stage` and :class:`Project`; nothing here touches
the store or the gateway.
"""

from __future__ import annotations

from .models import STAGE_SEQUENCE, Project, Stage


def order(stage: Stage) -> int:
    return stage.rank


def next_stage(stage: Stage) -> Stage | None:
    """Immediate successor of ``stage``, ``None`` for the terminal export stage."""
    rank = stage.rank
    if rank + 1 >= len(STAGE_SEQUENCE):
        return None
    return STAGE_SEQUENCE[rank + 1]


def downstream_of(stage: Stage) -> list[Stage]:
    return list(STAGE_SEQUENCE[stage.rank + 1 :])


def upstream_of(stage: Stage) -> list[Stage]:
    return list(STAGE_SEQUENCE[: stage.rank])


def regeneration_scope(stage: Stage) -> list[Stage]:
    """Stages redrafted when ``stage`` becomes active after an approval."""
    return [stage, *downstream_of(stage)]


def approval_blocker(project: Project, stage: Stage) -> str | None:
    """Explain why ``stage`` cannot be approved on ``project``, or ``None`` if it can.

    Stages are approved strictly in order: only the active stage, only once,
    only after every earlier stage, and never the terminal export stage.
    """
    if stage != project.blueprint.active_stage:
        return (
            f"{stage.label} is not the active stage "
            f"(active: {project.blueprint.active_stage.label})"
        )
    if next_stage(stage) is None:
        return f"{stage.label} is the final stage; execute the plan instead of approving it"
    if stage in project.approved_stages:
        return f"{stage.label} is already approved"
    missing = [earlier for earlier in upstream_of(stage) if earlier not in project.approved_stages]
    if missing:
        labels = ", ".join(earlier.label for earlier in missing)
        return f"{stage.label} cannot be approved before {labels}"
    return None


def can_approve(project: Project, stage: Stage) -> bool:
    return approval_blocker(project, stage) is None
