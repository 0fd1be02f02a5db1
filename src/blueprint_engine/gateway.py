from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypedDict, TypeVar

from langchain_openai import ChatOpenAI
from langgraph.graph import END, START, StateGraph

from .errors import GatewayDispatchError
from .llm import StructuredOutputAdapter, content_to_text, get_chat_model, get_structured_chat_model
from .models import (
    Blueprint,
    ExecutionReceipt,
    ExecutionRequest,
    RegenerationRequest,
    RegenerationResult,
    Stage,
    StageDraft,
)
from .settings import RuntimeSettings
from .utils import concise_context

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")

DRAFTABLE_STAGES: tuple[Stage, ...] = (Stage.DATA_MODEL, Stage.DESIGN, Stage.SECTIONS, Stage.EXPORT)
_BULLET_PREFIX_RE = re.compile(r"^(?:[-*•]\s+|\d+[.)]\s+)")


class AgentDispatchGateway(Protocol):
    """Remote collaborator that redrafts stages and runs finalized plans."""

    async def regenerate(self, request: RegenerationRequest) -> RegenerationResult:
        ...

    async def execute(self, request: ExecutionRequest) -> ExecutionReceipt:
        ...


async def dispatch_with_timeout(
    call: Callable[[], Awaitable[ResultT]],
    *,
    timeout_seconds: float,
    action: str,
) -> ResultT:
    """Await a gateway call, mapping timeouts and collaborator failures to GatewayDispatchError."""
    try:
        return await asyncio.wait_for(call(), timeout=timeout_seconds)
    except TimeoutError as exc:
        raise GatewayDispatchError(f"{action} timed out after {timeout_seconds}s") from exc
    except GatewayDispatchError:
        raise
    except Exception as exc:  # noqa: BLE001 - any collaborator failure takes the degraded path.
        raise GatewayDispatchError(f"{action} failed: {exc}") from exc


def _bullet_items(text: str) -> list[str]:
    items: list[str] = []
    for raw in text.splitlines():
        line = _BULLET_PREFIX_RE.sub("", raw.strip()).strip()
        if line:
            items.append(line)
    return items


def deterministic_draft(stage: Stage, *, project_title: str, blueprint: Blueprint, context_limit: int = 420) -> str:
    """Template draft for ``stage`` built only from the blueprint's current content."""
    if stage == Stage.DATA_MODEL:
        entities = [f"- Entity supporting: {item}" for item in _bullet_items(blueprint.features_text)]
        lines = [f"Data model for {project_title}", "", *(entities or ["- Entity: Project"])]
        lines += ["", f"Scope: {concise_context(blueprint.overview, limit=context_limit)}"]
    elif stage == Stage.DESIGN:
        lines = [
            f"Design system for {project_title}",
            "",
            "- Application shell and navigation behavior",
            "- Primary color system",
            "- Typography direction",
            "",
            f"Data model basis: {concise_context(blueprint.data_model_text, limit=context_limit)}",
        ]
    elif stage == Stage.SECTIONS:
        entries = [
            f"- {section.title} ({section.owner_agent or 'Unassigned'}): {section.summary}"
            for section in blueprint.sections
        ]
        lines = [f"Sections plan for {project_title}", "", *(entries or ["- No sections defined yet"])]
        lines += ["", f"Design basis: {concise_context(blueprint.design_text, limit=context_limit)}"]
    elif stage == Stage.EXPORT:
        lines = [
            f"Export package for {project_title}",
            "",
            f"- {len(blueprint.sections)} section(s) ready for execution",
            "- Data model and design drafts attached",
            "",
            f"Sections basis: {concise_context(blueprint.sections_draft_text, limit=context_limit)}",
        ]
    else:
        raise ValueError(f"{stage.label} is authored by hand and is never regenerated")
    return "\n".join(lines)


class RegenerationState(TypedDict, total=False):
    request: RegenerationRequest
    targets: list[str]
    working: Blueprint
    drafts: dict[str, str]


class RegenerationGraph:
    """Linear drafting graph: data_model -> design -> sections -> export.

    Every node runs in stage order; a node drafts only when its stage is
    targeted and sees the drafts produced upstream in the same run.
    """

    def __init__(self, *, model_name: str, use_llm: bool = False, context_limit: int = 420) -> None:
        self.model_name = model_name
        self.use_llm = use_llm
        self.context_limit = context_limit
        self._drafter: StructuredOutputAdapter[StageDraft] | None
        if use_llm:
            self._drafter = get_structured_chat_model(
                model_name=model_name,
                schema=StageDraft,
                temperature=0.2,
                method="function_calling",
                strict=True,
            )
        else:
            self._drafter = None
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(RegenerationState)
        previous = START
        for stage in DRAFTABLE_STAGES:
            node_name = f"draft_{stage.value}"
            graph.add_node(node_name, self._draft_node(stage))
            graph.add_edge(previous, node_name)
            previous = node_name
        graph.add_edge(previous, END)
        return graph

    def _draft_node(self, stage: Stage):
        async def draft(state: RegenerationState) -> dict[str, Any]:
            drafts = dict(state.get("drafts", {}))
            if stage.value not in state["targets"]:
                return {"drafts": drafts}
            working = state["working"]
            content = await self._draft(stage, state["request"], working)
            drafts[stage.value] = content
            return {
                "working": working.model_copy(update={stage.blueprint_field: content}),
                "drafts": drafts,
            }

        return draft

    def _prompt(self, stage: Stage, request: RegenerationRequest, working: Blueprint) -> str:
        approved = request.approved_stage.label if request.approved_stage is not None else "none (retry)"
        return (
            "You are Jarvis, coordinating an agent team that drafts product blueprints. "
            f"Redraft the {stage.label} page for project '{request.project_title}'. "
            f"The user just approved: {approved}. "
            "Return StageDraft JSON whose content fully replaces the page; keep it concise markdown bullets.\n"
            f"Overview: {working.overview}\n"
            f"Problems & Solutions: {working.problems_text}\n"
            f"Key Features: {working.features_text}\n"
            f"Data Model: {working.data_model_text}\n"
            f"Design: {working.design_text}\n"
            f"Sections draft: {working.sections_draft_text}\n"
            f"Sections: {[section.model_dump(mode='json') for section in working.sections]}\n"
            f"Export notes: {working.export_notes}\n"
            f"Current {stage.label} page:\n{working.stage_text(stage)}"
        )

    async def _draft(self, stage: Stage, request: RegenerationRequest, working: Blueprint) -> str:
        if self._drafter is None:
            return deterministic_draft(
                stage,
                project_title=request.project_title,
                blueprint=working,
                context_limit=self.context_limit,
            )
        result = await self._drafter.ainvoke(self._prompt(stage, request, working))
        content = result.content.strip()
        if not content:
            raise RuntimeError(f"drafting model returned an empty {stage.label} page")
        return content

    async def run(self, request: RegenerationRequest) -> RegenerationResult:
        unsupported = [stage for stage in request.target_stages if stage not in DRAFTABLE_STAGES]
        if unsupported:
            labels = ", ".join(stage.label for stage in unsupported)
            raise ValueError(f"cannot regenerate hand-authored stage(s): {labels}")
        result = await self.graph.ainvoke(
            {
                "request": request,
                "targets": [stage.value for stage in request.target_stages],
                "working": request.blueprint.model_copy(deep=True),
                "drafts": {},
            }
        )
        drafts = {Stage(key): value for key, value in result.get("drafts", {}).items()}
        logger.info(
            "Regenerated %s for project %s",
            ", ".join(stage.value for stage in drafts) or "nothing",
            request.project_id,
        )
        return RegenerationResult(drafts=drafts)


class GraphDispatchGateway:
    """In-process gateway: LangGraph drafting plus a chat-model execution kickoff."""

    def __init__(self, settings: RuntimeSettings | None = None, *, use_llm: bool | None = None) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.use_llm = self.settings.use_llm if use_llm is None else use_llm
        self.regeneration = RegenerationGraph(
            model_name=self.settings.model_name,
            use_llm=self.use_llm,
            context_limit=self.settings.context_char_limit,
        )
        self._chat: ChatOpenAI | None = (
            get_chat_model(model_name=self.settings.model_name, temperature=0.0) if self.use_llm else None
        )

    async def regenerate(self, request: RegenerationRequest) -> RegenerationResult:
        return await self.regeneration.run(request)

    async def execute(self, request: ExecutionRequest) -> ExecutionReceipt:
        if self._chat is None:
            queued = "\n".join(f"- {item.owner_agent}: {item.title}" for item in request.work_items)
            text = "\n".join(
                [
                    f"Execution plan received for {request.project_title}.",
                    f"Queued {len(request.work_items)} section task(s):",
                    queued or "- none",
                    "[task-continue]",
                ]
            )
            return ExecutionReceipt(response_text=text)

        briefs = "\n\n".join(
            f"{item.title} (owner: {item.owner_agent}, priority: {item.priority.value})\n{item.description}"
            for item in request.work_items
        )
        response = await self._chat.ainvoke(
            f"{request.kickoff_message}\n\nWork items:\n{briefs}\n\nPlan:\n{request.plan_markdown}"
        )
        return ExecutionReceipt(response_text=content_to_text(response))
