from importlib.metadata import version

from .canonical import to_canonical_json
from .engine import ApprovalResult, ExecutionResult, ProjectEngine, VerificationResult
from .errors import BlueprintEngineError, GatewayDispatchError, NotApprovableError, StoreReadError, StoreWriteError
from .gateway import AgentDispatchGateway, GraphDispatchGateway, RegenerationGraph
from .layout import COMPACT_THRESHOLD, LayoutState, ShellTab, layout_state
from .models import (
    Blueprint,
    ExecutionReceipt,
    ExecutionRequest,
    Project,
    RegenerationRequest,
    RegenerationResult,
    ReviewStatus,
    Section,
    SectionWorkItem,
    Stage,
    WorkPriority,
)
from .outcomes import TaskOutcome, parse_outcome
from .settings import RuntimeSettings
from .state_store import BlueprintStore
from .utils import render_blueprint_markdown, slugify_name


def get_version() -> str:
    try:
        return version("blueprint-engine")
    except Exception:
        return "0.0.0"


__all__ = [
    "AgentDispatchGateway",
    "ApprovalResult",
    "Blueprint",
    "BlueprintEngineError",
    "BlueprintStore",
    "COMPACT_THRESHOLD",
    "ExecutionReceipt",
    "ExecutionRequest",
    "ExecutionResult",
    "GatewayDispatchError",
    "GraphDispatchGateway",
    "LayoutState",
    "NotApprovableError",
    "Project",
    "ProjectEngine",
    "RegenerationGraph",
    "RegenerationRequest",
    "RegenerationResult",
    "ReviewStatus",
    "RuntimeSettings",
    "Section",
    "SectionWorkItem",
    "ShellTab",
    "Stage",
    "StoreReadError",
    "StoreWriteError",
    "TaskOutcome",
    "VerificationResult",
    "WorkPriority",
    "get_version",
    "layout_state",
    "parse_outcome",
    "render_blueprint_markdown",
    "slugify_name",
    "to_canonical_json",
]
