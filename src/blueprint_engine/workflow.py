from __future__ import annotations

from collections.abc import Iterable

from .models import Project, SectionWorkItem, WorkPriority
from .outcomes import TaskOutcome, marker_for
from .utils import concise_context


DEFAULT_OWNER_AGENT = "Matrix"
VERIFICATION_AGENTS: tuple[str, ...] = ("Jarvis", "Scope", "Atlas", "Matrix", "Prism")
MAX_VERIFICATION_ROUNDS = 3


def normalized_agent(raw: str) -> str:
    return raw.strip() or DEFAULT_OWNER_AGENT


def outcome_instruction() -> str:
    markers = [marker_for(outcome) for outcome in (TaskOutcome.COMPLETE, TaskOutcome.CONTINUE, TaskOutcome.BLOCKED)]
    return " or ".join(marker for marker in markers if marker is not None)


def section_task_title(project: Project, section_title: str) -> str:
    return f"{project.title}: Build {section_title} core workflow"


def verification_task_title(project: Project, agent: str, round_number: int) -> str:
    return f"{project.title}: Final Verification ({agent}) - Round {round_number}"


def build_section_work_items(
    project: Project,
    *,
    context_limit: int = 420,
    existing_titles: Iterable[str] = (),
) -> list[SectionWorkItem]:
    """One work item per completed section, or per section when none is completed yet.

    Titles already in ``existing_titles`` (or repeated within this build) are skipped.
    """
    blueprint = project.blueprint
    chosen = [section for section in blueprint.sections if section.completed] or list(blueprint.sections)
    design_context = concise_context(blueprint.design_text, limit=context_limit)
    draft_context = concise_context(blueprint.sections_draft_text, limit=context_limit)
    seen = set(existing_titles)

    items: list[SectionWorkItem] = []
    for section in chosen:
        title = section_task_title(project, section.title)
        if title in seen:
            continue
        seen.add(title)
        description = "\n".join(
            [
                f"Deliver the primary user workflow for {section.title}.",
                "",
                "Section goal:",
                section.summary,
                "",
                "Design plan context:",
                design_context,
                "",
                "Approved sections context:",
                draft_context,
                "",
                "Constraints:",
                "- Keep the task independently completable.",
                "- Avoid task switching across unrelated sections.",
                "- Hand off to Jarvis when implementation is review-ready.",
            ]
        )
        items.append(
            SectionWorkItem(
                section_id=section.id,
                title=title,
                owner_agent=normalized_agent(section.owner_agent),
                priority=WorkPriority.HIGH if section.completed else WorkPriority.MEDIUM,
                description=description,
            )
        )
    return items


def build_verification_work_items(
    project: Project,
    round_number: int,
    reason: str,
    *,
    existing_titles: Iterable[str] = (),
) -> list[SectionWorkItem]:
    """One urgent review task per verification agent for ``round_number``."""
    seen = set(existing_titles)
    items: list[SectionWorkItem] = []
    for agent in VERIFICATION_AGENTS:
        title = verification_task_title(project, agent, round_number)
        if title in seen:
            continue
        seen.add(title)
        items.append(
            SectionWorkItem(
                title=title,
                owner_agent=agent,
                priority=WorkPriority.URGENT,
                description="\n".join(
                    [
                        reason,
                        "Review all recent changes for completeness and regressions. "
                        "If fixes are needed, route them through Jarvis.",
                    ]
                ),
                verification_round=round_number,
            )
        )
    return items


def build_execution_kickoff(project_title: str) -> str:
    return "\n".join(
        [
            "[project-execute]",
            f"Project: {project_title}",
            "Start execution now. Create and coordinate concrete task updates through the team.",
            "Prioritize urgent and high-priority work first.",
            "Constraint: each agent can only have one task in progress at a time.",
            "Constraint: create independent tasks that reduce switching and cross-task blocking.",
            "End with exactly one marker line:",
            outcome_instruction(),
        ]
    )


def build_verification_kickoff(project_title: str, round_number: int, reason: str) -> str:
    return "\n".join(
        [
            "[project-verification]",
            f"Project: {project_title}",
            f"Verification Round: {round_number}",
            f"Reason: {reason}",
            "All agents must verify latest state and report to Jarvis.",
            "End with exactly one marker line:",
            outcome_instruction(),
        ]
    )
