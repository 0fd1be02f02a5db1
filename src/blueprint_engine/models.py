from __future__ import annotations

import hashlib
import re
import uuid
from datetime import UTC, datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .canonical import to_canonical_json


PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def utc_now() -> datetime:
    return datetime.now(UTC)


class Stage(str, Enum):
    """One step of the fixed five-step project-definition sequence.

    Declaration order is the progression order.
    """

    PRODUCT = "product"
    DATA_MODEL = "data_model"
    DESIGN = "design"
    SECTIONS = "sections"
    EXPORT = "export"

    @property
    def label(self) -> str:
        return _STAGE_LABELS[self]

    @property
    def approve_label(self) -> str:
        return _STAGE_APPROVE_LABELS[self]

    @property
    def rank(self) -> int:
        return STAGE_SEQUENCE.index(self)

    @property
    def blueprint_field(self) -> str:
        """Name of the Blueprint text field holding this stage's draft."""
        return _STAGE_FIELDS[self]


STAGE_SEQUENCE: tuple[Stage, ...] = tuple(Stage)

_STAGE_LABELS: dict[Stage, str] = {
    Stage.PRODUCT: "Product",
    Stage.DATA_MODEL: "Data Model",
    Stage.DESIGN: "Design",
    Stage.SECTIONS: "Sections",
    Stage.EXPORT: "Export",
}

_STAGE_APPROVE_LABELS: dict[Stage, str] = {
    Stage.PRODUCT: "Approve & Draft Data Model",
    Stage.DATA_MODEL: "Approve & Draft Design",
    Stage.DESIGN: "Approve & Draft Sections",
    Stage.SECTIONS: "Approve & Prepare Export",
    Stage.EXPORT: "Execute Plan",
}

_STAGE_FIELDS: dict[Stage, str] = {
    Stage.PRODUCT: "overview",
    Stage.DATA_MODEL: "data_model_text",
    Stage.DESIGN: "design_text",
    Stage.SECTIONS: "sections_draft_text",
    Stage.EXPORT: "export_notes",
}


def sorted_stages(stages: set[Stage] | list[Stage]) -> list[Stage]:
    return sorted(set(stages), key=lambda stage: stage.rank)


class Section(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(min_length=1)
    title: str
    summary: str = ""
    owner_agent: str = ""
    completed: bool = False


class Blueprint(BaseModel):
    """Editable plan body of one project."""

    model_config = ConfigDict(validate_assignment=True)

    overview: str = ""
    problems_text: str = ""
    features_text: str = ""
    data_model_text: str = ""
    design_text: str = ""
    sections_draft_text: str = ""
    sections: list[Section] = Field(default_factory=list)
    export_notes: str = ""
    active_stage: Stage = Stage.PRODUCT
    last_task_plan_at: datetime | None = None

    @field_validator("sections")
    @classmethod
    def _section_ids_unique(cls, value: list[Section]) -> list[Section]:
        seen: set[str] = set()
        for section in value:
            if section.id in seen:
                raise ValueError(f"duplicate section id: {section.id}")
            seen.add(section.id)
        return value

    def stage_text(self, stage: Stage) -> str:
        return getattr(self, stage.blueprint_field)

    def section(self, section_id: str) -> Section | None:
        for section in self.sections:
            if section.id == section_id:
                return section
        return None

    @classmethod
    def default(cls) -> "Blueprint":
        """Starter blueprint handed to newly planned projects."""
        return cls(
            overview="Describe what you want Jarvis and the agent team to build.",
            problems_text="- Problem 1\n- Problem 2",
            features_text="- Core feature 1\n- Core feature 2",
            sections=[
                Section(id="dashboard", title="Dashboard", summary="At-a-glance system overview and key metrics.", owner_agent="Jarvis"),
                Section(id="agents", title="Agents", summary="Agent roster, identity, and collaboration controls.", owner_agent="Scope"),
                Section(id="activity", title="Activity", summary="Chronological feed, search, and filtering.", owner_agent="Atlas"),
                Section(id="usage", title="Usage", summary="Token/cost analytics and trend charts.", owner_agent="Matrix"),
                Section(id="jobs", title="Jobs", summary="Scheduled/recurring operations and execution history.", owner_agent="Matrix"),
                Section(id="tasks", title="Tasks", summary="Kanban workflow with assignments and status.", owner_agent="Prism"),
                Section(id="skills", title="Skills", summary="Capabilities catalog and requirement validation.", owner_agent="Atlas"),
            ],
        )


class ReviewStatus(str, Enum):
    """Post-execution review state of a project."""

    NOT_STARTED = "not_started"
    IN_REVIEW = "in_review"
    WAITING_FINAL_APPROVAL = "waiting_final_approval"
    FINAL_APPROVED = "final_approved"


class Project(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    blueprint: Blueprint = Field(default_factory=Blueprint)
    approved_stages: set[Stage] = Field(default_factory=set)
    stale_stages: set[Stage] = Field(default_factory=set)
    review_status: ReviewStatus = ReviewStatus.NOT_STARTED
    review_round: int = Field(default=0, ge=0)
    dispatched_task_titles: list[str] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def _id_filesystem_safe(cls, value: str) -> str:
        if not PROJECT_ID_RE.match(value):
            raise ValueError(f"project id must match {PROJECT_ID_RE.pattern}, got: {value!r}")
        return value

    @field_validator("created_at", "updated_at")
    @classmethod
    def _timezone_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @field_serializer("approved_stages", "stale_stages")
    def _serialize_stage_set(self, value: set[Stage]) -> list[str]:
        return [stage.value for stage in sorted_stages(value)]

    @classmethod
    def new(cls, title: str, *, blueprint: Blueprint | None = None) -> "Project":
        now = utc_now()
        return cls(
            id=f"PRJ-{uuid.uuid4().hex[:12]}",
            title=title.strip() or "Unnamed Project",
            created_at=now,
            updated_at=now,
            blueprint=blueprint if blueprint is not None else Blueprint.default(),
        )

    def touch(self) -> None:
        """Refresh ``updated_at``; strictly increases even within one clock tick."""
        now = utc_now()
        if now <= self.updated_at:
            now = self.updated_at + timedelta(microseconds=1)
        self.updated_at = now

    def fingerprint(self) -> str:
        return hashlib.sha256(to_canonical_json(self).encode("utf-8")).hexdigest()


class RegenerationRequest(BaseModel):
    project_id: str
    project_title: str
    approved_stage: Stage | None = None
    target_stages: list[Stage]
    blueprint: Blueprint


class RegenerationResult(BaseModel):
    drafts: dict[Stage, str] = Field(default_factory=dict)


class StageDraft(BaseModel):
    """Structured output returned by the drafting model for one stage."""

    content: str = Field(description="Full replacement text for the requested stage, markdown bullets allowed.")


class WorkPriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"


class SectionWorkItem(BaseModel):
    """One task handed to an agent; verification tasks carry a round instead of a section."""

    section_id: str | None = None
    title: str
    owner_agent: str
    priority: WorkPriority
    description: str
    verification_round: int | None = None


class ExecutionRequest(BaseModel):
    project_id: str
    project_title: str
    kickoff_message: str
    work_items: list[SectionWorkItem]
    plan_markdown: str


class ExecutionReceipt(BaseModel):
    response_text: str = ""
