"""Project engine: selection, editing, staged approval and plan execution.

The engine owns the in-memory project collection and is the only writer of
the blueprint store. Edits stay in memory until ``save()``; approvals and
execution persist on their own. Gateway calls are the only suspension
points, and a project with a call in flight rejects further approvals.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from . import stages
from .errors import GatewayDispatchError, NotApprovableError, StoreReadError, StoreWriteError
from .gateway import AgentDispatchGateway, dispatch_with_timeout
from .models import (
    ExecutionReceipt,
    ExecutionRequest,
    Project,
    RegenerationRequest,
    RegenerationResult,
    ReviewStatus,
    Stage,
    sorted_stages,
    utc_now,
)
from .outcomes import TaskOutcome, parse_outcome
from .settings import RuntimeSettings
from .state_store import BlueprintStore
from .utils import render_blueprint_markdown
from .workflow import (
    MAX_VERIFICATION_ROUNDS,
    build_execution_kickoff,
    build_section_work_items,
    build_verification_kickoff,
    build_verification_work_items,
)

logger = logging.getLogger(__name__)


@dataclass
class ApprovalResult:
    project_id: str
    approved_stage: Stage | None
    active_stage: Stage
    regenerated: list[Stage] = field(default_factory=list)
    stale: list[Stage] = field(default_factory=list)
    status: str = ""

    @property
    def degraded(self) -> bool:
        return bool(self.stale)


@dataclass
class ExecutionResult:
    project_id: str
    dispatched: bool
    outcome: TaskOutcome = TaskOutcome.UNKNOWN
    work_item_count: int = 0
    response_text: str = ""
    status: str = ""


@dataclass
class VerificationResult:
    project_id: str
    round_number: int
    started: bool
    dispatched: bool = False
    outcome: TaskOutcome = TaskOutcome.UNKNOWN
    work_item_count: int = 0
    response_text: str = ""
    status: str = ""


def _labels(items: list[Stage]) -> str:
    return ", ".join(stage.label for stage in items)


class ProjectEngine:
    def __init__(
        self,
        store: BlueprintStore,
        gateway: AgentDispatchGateway,
        *,
        settings: RuntimeSettings | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.projects: list[Project] = []
        self.selected_project_id: str | None = None
        self.status_message: str | None = None
        self._in_flight: set[str] = set()

    # ----- observable state -------------------------------------------------

    @property
    def selected_project(self) -> Project | None:
        return self.project(self.selected_project_id)

    @property
    def is_approving(self) -> bool:
        """True while a gateway call for the selected project is suspended."""
        return self.selected_project_id is not None and self.selected_project_id in self._in_flight

    def is_busy(self, project_id: str) -> bool:
        return project_id in self._in_flight

    def project(self, project_id: str | None) -> Project | None:
        if project_id is None:
            return None
        for project in self.projects:
            if project.id == project_id:
                return project
        return None

    def _report(self, message: str, *, level: int = logging.INFO) -> str:
        self.status_message = message
        logger.log(level, message)
        return message

    def _reject(self, message: str) -> NotApprovableError:
        self._report(message, level=logging.WARNING)
        return NotApprovableError(message)

    def _require_selected(self) -> Project:
        project = self.selected_project
        if project is None:
            raise self._reject("No project selected")
        return project

    def _replace(self, updated: Project) -> bool:
        for index, project in enumerate(self.projects):
            if project.id == updated.id:
                self.projects[index] = updated
                return True
        return False

    # ----- collection -------------------------------------------------------

    def load_projects(self) -> list[Project]:
        """Replace the in-memory collection with the store's records.

        Raises:
            StoreReadError: If any record is unreadable. The current
                collection and selection are left as they were.
        """
        try:
            loaded = self.store.load()
        except StoreReadError as exc:
            self._report(
                f"Could not load saved projects: {exc}. Nothing was replaced.",
                level=logging.ERROR,
            )
            raise
        self.projects = loaded
        if self.project(self.selected_project_id) is None:
            self.selected_project_id = loaded[0].id if loaded else None
        logger.debug("Selected project after load: %s", self.selected_project_id)
        return list(self.projects)

    def select_project(self, project_id: str) -> None:
        if self.project(project_id) is None:
            logger.debug("Ignoring selection of unknown project %s", project_id)
            return
        self.selected_project_id = project_id

    def delete_project(self, project_id: str) -> bool:
        project = self.project(project_id)
        if project is None:
            return False
        try:
            self.store.delete(project_id)
        except StoreWriteError as exc:
            self._report(f"Could not delete {project.title}: {exc}", level=logging.ERROR)
            return False
        self.projects = [item for item in self.projects if item.id != project_id]
        if self.selected_project_id == project_id:
            self.selected_project_id = None
        self._report(f"Deleted {project.title}.")
        return True

    # ----- in-memory edits --------------------------------------------------

    def _edit(self, apply: Callable[[Project], None]) -> bool:
        project = self.selected_project
        if project is None:
            logger.debug("Ignoring edit: no project selected")
            return False
        apply(project)
        project.touch()
        return True

    def _edit_blueprint_field(self, name: str, text: str) -> bool:
        return self._edit(lambda project: setattr(project.blueprint, name, text))

    def update_overview(self, text: str) -> bool:
        return self._edit_blueprint_field("overview", text)

    def update_problems(self, text: str) -> bool:
        return self._edit_blueprint_field("problems_text", text)

    def update_features(self, text: str) -> bool:
        return self._edit_blueprint_field("features_text", text)

    def update_data_model(self, text: str) -> bool:
        return self._edit_blueprint_field("data_model_text", text)

    def update_design(self, text: str) -> bool:
        return self._edit_blueprint_field("design_text", text)

    def update_sections_draft(self, text: str) -> bool:
        return self._edit_blueprint_field("sections_draft_text", text)

    def update_export_notes(self, text: str) -> bool:
        return self._edit_blueprint_field("export_notes", text)

    def update_project_title(self, text: str) -> bool:
        return self._edit(lambda project: setattr(project, "title", text))

    def set_section_completion(self, section_id: str, completed: bool) -> bool:
        project = self.selected_project
        section = project.blueprint.section(section_id) if project is not None else None
        if section is None:
            return False
        return self._edit(lambda _project: setattr(section, "completed", completed))

    def set_stage(self, stage: Stage | str) -> bool:
        """Move the navigation cursor; never approves or regenerates."""
        target = Stage(stage)
        return self._edit(lambda project: setattr(project.blueprint, "active_stage", target))

    def save(self) -> bool:
        project = self.selected_project
        if project is None:
            self._report("No project selected", level=logging.WARNING)
            return False
        try:
            self.store.save(project)
        except StoreWriteError as exc:
            self._report(f"Could not save {project.title}: {exc}", level=logging.ERROR)
            return False
        self._report(f"Saved {project.title}.")
        return True

    # ----- approval ---------------------------------------------------------

    async def approve_current_stage(self) -> ApprovalResult:
        """Approve the active stage, advance, and redraft everything downstream.

        The approval itself is committed by a single store write before the
        gateway is called. Gateway failure leaves the approval in place and
        marks the redrafted stages stale.

        Raises:
            NotApprovableError: If the stage cannot be approved or a call is
                already in flight for the project. Nothing changes.
            StoreWriteError: If the approval could not be persisted. Nothing
                is recorded and in-memory edits are kept.
        """
        project = self._require_selected()
        if project.id in self._in_flight:
            raise self._reject(f"An approval is already in progress for {project.title}")
        stage = project.blueprint.active_stage
        blocker = stages.approval_blocker(project, stage)
        if blocker is not None:
            raise self._reject(blocker)
        target = stages.next_stage(stage)
        if target is None:
            raise self._reject(f"{stage.label} has no following stage to advance to")
        scope = stages.regeneration_scope(target)

        self._in_flight.add(project.id)
        try:
            committed = self._commit_approval(project, stage, target, scope)
            request = RegenerationRequest(
                project_id=committed.id,
                project_title=committed.title,
                approved_stage=stage,
                target_stages=scope,
                blueprint=committed.blueprint.model_copy(deep=True),
            )
            return await self._regenerate(request)
        finally:
            self._in_flight.discard(project.id)

    def _commit_approval(self, project: Project, stage: Stage, target: Stage, scope: list[Stage]) -> Project:
        candidate = project.model_copy(deep=True)
        candidate.approved_stages = candidate.approved_stages | {stage}
        candidate.stale_stages = candidate.stale_stages | set(scope)
        candidate.blueprint.active_stage = target
        candidate.touch()
        self._commit(candidate, f"{stage.label} was not approved because the project could not be saved")
        logger.info("Approved %s for project %s; active stage is now %s", stage.value, project.id, target.value)
        return candidate

    async def retry_regeneration(self) -> ApprovalResult:
        """Redraft the selected project's stale stages.

        Raises:
            NotApprovableError: If nothing is stale or a call is in flight.
        """
        project = self._require_selected()
        if project.id in self._in_flight:
            raise self._reject(f"An approval is already in progress for {project.title}")
        if not project.stale_stages:
            raise self._reject(f"Nothing to regenerate for {project.title}")

        self._in_flight.add(project.id)
        try:
            request = RegenerationRequest(
                project_id=project.id,
                project_title=project.title,
                approved_stage=None,
                target_stages=sorted_stages(project.stale_stages),
                blueprint=project.blueprint.model_copy(deep=True),
            )
            return await self._regenerate(request)
        finally:
            self._in_flight.discard(project.id)

    async def _request_drafts(self, request: RegenerationRequest) -> RegenerationResult:
        raw = await self.gateway.regenerate(request)
        try:
            return RegenerationResult.model_validate(raw)
        except ValidationError as exc:
            raise GatewayDispatchError(f"malformed regeneration response: {exc}") from exc

    async def _regenerate(self, request: RegenerationRequest) -> ApprovalResult:
        approved = request.approved_stage
        prefix = f"Approved {approved.label}. " if approved is not None else ""
        try:
            result = await dispatch_with_timeout(
                lambda: self._request_drafts(request),
                timeout_seconds=self.settings.gateway_timeout_seconds,
                action=f"Regeneration of {_labels(request.target_stages)}",
            )
        except GatewayDispatchError as exc:
            project = self.project(request.project_id)
            if project is None:
                logger.info("Project %s was deleted during regeneration; ignoring failure: %s", request.project_id, exc)
                return ApprovalResult(
                    project_id=request.project_id,
                    approved_stage=approved,
                    active_stage=request.target_stages[0],
                    stale=list(request.target_stages),
                    status="Project was deleted during regeneration.",
                )
            stale = sorted_stages(project.stale_stages)
            status = self._report(
                f"{prefix}Regeneration did not complete ({exc}). "
                f"{_labels(stale)} may be stale; retry regeneration when the gateway is available.",
                level=logging.WARNING,
            )
            return ApprovalResult(
                project_id=project.id,
                approved_stage=approved,
                active_stage=project.blueprint.active_stage,
                stale=stale,
                status=status,
            )

        project = self.project(request.project_id)
        if project is None:
            logger.info("Project %s was deleted during regeneration; discarding drafts", request.project_id)
            return ApprovalResult(
                project_id=request.project_id,
                approved_stage=approved,
                active_stage=request.target_stages[0],
                status="Project was deleted during regeneration.",
            )
        return self._merge_drafts(project, request, result, prefix=prefix)

    def _merge_drafts(
        self,
        project: Project,
        request: RegenerationRequest,
        result: RegenerationResult,
        *,
        prefix: str,
    ) -> ApprovalResult:
        targets = set(request.target_stages)
        merged: list[Stage] = []
        updated = project.model_copy(deep=True)
        for stage, text in result.drafts.items():
            if stage not in targets:
                logger.warning("Ignoring draft for untargeted stage %s on project %s", stage.value, project.id)
                continue
            setattr(updated.blueprint, stage.blueprint_field, text)
            merged.append(stage)
        merged = sorted_stages(merged)

        save_error: StoreWriteError | None = None
        if merged:
            updated.stale_stages = updated.stale_stages - set(merged)
            updated.touch()
            try:
                self.store.save(updated)
            except StoreWriteError as exc:
                save_error = exc
            self._replace(updated)
            project = updated

        stale = sorted_stages(project.stale_stages)
        parts = [prefix.strip()] if prefix else []
        if merged:
            parts.append(f"Regenerated {_labels(merged)}.")
        missing = sorted_stages(targets - set(merged))
        if missing:
            parts.append(f"No draft returned for {_labels(missing)}; it may be stale.")
        if save_error is not None:
            parts.append(f"Regenerated drafts are not saved yet ({save_error}); save to keep them.")
        level = logging.WARNING if missing or save_error is not None else logging.INFO
        status = self._report(" ".join(parts), level=level)
        return ApprovalResult(
            project_id=project.id,
            approved_stage=request.approved_stage,
            active_stage=project.blueprint.active_stage,
            regenerated=merged,
            stale=stale,
            status=status,
        )

    # ----- execution --------------------------------------------------------

    async def _request_execution(self, request: ExecutionRequest) -> ExecutionReceipt:
        raw = await self.gateway.execute(request)
        try:
            return ExecutionReceipt.model_validate(raw)
        except ValidationError as exc:
            raise GatewayDispatchError(f"malformed execution response: {exc}") from exc

    async def execute_current_project_plan(self) -> ExecutionResult:
        """Dispatch the finalized plan of the selected project to the agent team.

        Raises:
            NotApprovableError: If the project is not on the export stage or a
                call is already in flight.
            StoreWriteError: If the plan could not be saved before dispatch.
        """
        project = self._require_selected()
        if project.id in self._in_flight:
            raise self._reject(f"An approval is already in progress for {project.title}")
        if project.blueprint.active_stage != Stage.EXPORT:
            raise self._reject(
                f"Execution requires the {Stage.EXPORT.label} stage "
                f"(active: {project.blueprint.active_stage.label})"
            )

        self._in_flight.add(project.id)
        try:
            try:
                self.store.save(project)
            except StoreWriteError as exc:
                self._report(f"Plan for {project.title} was not dispatched: {exc}", level=logging.ERROR)
                raise
            work_items = build_section_work_items(
                project,
                context_limit=self.settings.context_char_limit,
                existing_titles=project.dispatched_task_titles,
            )
            request = ExecutionRequest(
                project_id=project.id,
                project_title=project.title,
                kickoff_message=build_execution_kickoff(project.title),
                work_items=work_items,
                plan_markdown=render_blueprint_markdown(project),
            )
            try:
                receipt = await dispatch_with_timeout(
                    lambda: self._request_execution(request),
                    timeout_seconds=self.settings.gateway_timeout_seconds,
                    action=f"Execution of {project.title}",
                )
            except GatewayDispatchError as exc:
                status = self._report(
                    f"Plan for {project.title} was not dispatched ({exc}). Try again when the gateway is available.",
                    level=logging.WARNING,
                )
                return ExecutionResult(project_id=project.id, dispatched=False, status=status)
            return self._record_execution(request, receipt)
        finally:
            self._in_flight.discard(project.id)

    def _record_execution(self, request: ExecutionRequest, receipt: ExecutionReceipt) -> ExecutionResult:
        outcome = parse_outcome(receipt.response_text)
        count = len(request.work_items)
        title = request.project_title
        result = ExecutionResult(
            project_id=request.project_id,
            dispatched=True,
            outcome=outcome,
            work_item_count=count,
            response_text=receipt.response_text,
        )
        project = self.project(request.project_id)
        if project is None:
            logger.info("Project %s was deleted during execution; discarding receipt", request.project_id)
            result.status = "Project was deleted during execution."
            return result

        project.blueprint.last_task_plan_at = utc_now()
        self._record_dispatched_titles(project, request)
        project.touch()
        if outcome == TaskOutcome.COMPLETE:
            message = f"Execution of {title} reported complete."
        elif outcome == TaskOutcome.BLOCKED:
            message = f"Execution of {title} is blocked; check the team's response."
        elif outcome == TaskOutcome.CONTINUE:
            message = f"Dispatched {count} section task(s) for {title}; the team is continuing."
        else:
            message = f"Dispatched {count} section task(s) for {title}; the response carried no outcome marker."
        level = logging.WARNING if outcome == TaskOutcome.BLOCKED else logging.INFO
        try:
            self.store.save(project)
        except StoreWriteError as exc:
            message = f"{message} The dispatch time was not saved: {exc}"
            level = logging.WARNING
        result.status = self._report(message, level=level)
        return result

    @staticmethod
    def _record_dispatched_titles(project: Project, request: ExecutionRequest) -> None:
        known = set(project.dispatched_task_titles)
        added = [item.title for item in request.work_items if item.title not in known]
        if added:
            project.dispatched_task_titles = [*project.dispatched_task_titles, *added]

    # ----- verification -----------------------------------------------------

    def _commit(self, candidate: Project, failure: str) -> Project:
        try:
            self.store.save(candidate)
        except StoreWriteError as exc:
            self._report(f"{failure}: {exc}", level=logging.ERROR)
            raise
        self._replace(candidate)
        return candidate

    async def begin_verification_round(self, reason: str) -> VerificationResult:
        """Start the next review round of an executed plan.

        After ``MAX_VERIFICATION_ROUNDS`` rounds no further round starts; the
        project waits for final approval instead. The round is persisted
        before the verification kickoff is dispatched, and a failed dispatch
        does not roll it back.

        Raises:
            NotApprovableError: If the plan was never dispatched, the project
                is closed, or a call is already in flight.
            StoreWriteError: If the round could not be persisted.
        """
        project = self._require_selected()
        if project.id in self._in_flight:
            raise self._reject(f"An approval is already in progress for {project.title}")
        if project.review_status == ReviewStatus.FINAL_APPROVED:
            raise self._reject(f"{project.title} is already closed")
        if project.blueprint.last_task_plan_at is None:
            raise self._reject(f"Verification requires a dispatched plan for {project.title}")
        reason = reason.strip() or "Final verification requested."

        self._in_flight.add(project.id)
        try:
            candidate = project.model_copy(deep=True)
            if candidate.review_round >= MAX_VERIFICATION_ROUNDS:
                candidate.review_status = ReviewStatus.WAITING_FINAL_APPROVAL
                candidate.touch()
                self._commit(candidate, f"Review state of {project.title} was not saved")
                status = self._report(
                    f"{project.title} reached the maximum of {MAX_VERIFICATION_ROUNDS} verification rounds; "
                    "waiting for final approval.",
                    level=logging.WARNING,
                )
                return VerificationResult(
                    project_id=project.id,
                    round_number=candidate.review_round,
                    started=False,
                    status=status,
                )

            round_number = candidate.review_round + 1
            work_items = build_verification_work_items(
                candidate,
                round_number,
                reason,
                existing_titles=candidate.dispatched_task_titles,
            )
            candidate.review_round = round_number
            candidate.review_status = ReviewStatus.IN_REVIEW
            candidate.touch()
            self._commit(candidate, f"Verification round {round_number} for {project.title} was not started")
            logger.info("Started verification round %d for project %s", round_number, project.id)

            request = ExecutionRequest(
                project_id=candidate.id,
                project_title=candidate.title,
                kickoff_message=build_verification_kickoff(candidate.title, round_number, reason),
                work_items=work_items,
                plan_markdown=render_blueprint_markdown(candidate),
            )
            try:
                receipt = await dispatch_with_timeout(
                    lambda: self._request_execution(request),
                    timeout_seconds=self.settings.gateway_timeout_seconds,
                    action=f"Verification round {round_number} of {candidate.title}",
                )
            except GatewayDispatchError as exc:
                status = self._report(
                    f"Verification round {round_number} started for {candidate.title}, "
                    f"but the kickoff was not delivered ({exc}).",
                    level=logging.WARNING,
                )
                return VerificationResult(
                    project_id=candidate.id,
                    round_number=round_number,
                    started=True,
                    status=status,
                )
            return self._record_verification(request, receipt, round_number)
        finally:
            self._in_flight.discard(project.id)

    def _record_verification(
        self,
        request: ExecutionRequest,
        receipt: ExecutionReceipt,
        round_number: int,
    ) -> VerificationResult:
        result = VerificationResult(
            project_id=request.project_id,
            round_number=round_number,
            started=True,
            dispatched=True,
            outcome=parse_outcome(receipt.response_text),
            work_item_count=len(request.work_items),
            response_text=receipt.response_text,
        )
        project = self.project(request.project_id)
        if project is None:
            logger.info("Project %s was deleted during verification; discarding receipt", request.project_id)
            result.status = "Project was deleted during verification."
            return result

        message = (
            f"Verification round {round_number} dispatched {result.work_item_count} review task(s) "
            f"for {request.project_title}."
        )
        level = logging.INFO
        self._record_dispatched_titles(project, request)
        project.touch()
        try:
            self.store.save(project)
        except StoreWriteError as exc:
            message = f"{message} The dispatched tasks were not saved: {exc}"
            level = logging.WARNING
        result.status = self._report(message, level=level)
        return result

    def close_project(self) -> bool:
        """Mark the selected project final-approved and persist it."""
        project = self._require_selected()
        if project.id in self._in_flight:
            raise self._reject(f"An approval is already in progress for {project.title}")
        candidate = project.model_copy(deep=True)
        candidate.review_status = ReviewStatus.FINAL_APPROVED
        candidate.touch()
        try:
            self._commit(candidate, f"Could not close {project.title}")
        except StoreWriteError:
            return False
        self._report(f"Closed {project.title}.")
        return True

    # ----- export -----------------------------------------------------------

    def export_markdown(self) -> str:
        project = self.selected_project
        if project is None:
            return ""
        return render_blueprint_markdown(project)

    def export_to_file(self, path: Path) -> Path:
        project = self._require_selected()
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(render_blueprint_markdown(project).encode("utf-8"))
        self._report(f"Exported {project.title} to {target}.")
        return target
