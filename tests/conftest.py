from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable

import pytest

from blueprint_engine.engine import ProjectEngine
from blueprint_engine.errors import StoreReadError, StoreWriteError
from blueprint_engine.models import (
    Blueprint,
    ExecutionReceipt,
    ExecutionRequest,
    Project,
    RegenerationRequest,
    RegenerationResult,
    Section,
    Stage,
)
from blueprint_engine.settings import RuntimeSettings
from blueprint_engine.state_store import BlueprintStore


class CountingStore(BlueprintStore):
    """Real filesystem store that records writes and can be told to fail."""

    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.saved: list[Project] = []
        self.fail_saves = False
        self.fail_loads = False
        self.fail_deletes = False

    def load(self) -> list[Project]:
        if self.fail_loads:
            raise StoreReadError("record is corrupt")
        return super().load()

    def save(self, project: Project) -> Path:
        if self.fail_saves:
            raise StoreWriteError("disk full")
        path = super().save(project)
        self.saved.append(project.model_copy(deep=True))
        return path

    def delete(self, project_id: str) -> None:
        if self.fail_deletes:
            raise StoreWriteError("permission denied")
        super().delete(project_id)


class FakeGateway:
    """Scriptable dispatch gateway.

    ``drafts`` maps stages to returned text; ``error`` is raised instead of
    answering; ``hold`` makes calls wait until ``release`` is set.
    """

    def __init__(
        self,
        drafts: dict[Stage, str] | None = None,
        *,
        error: Exception | None = None,
        response_text: str = "Queued.\n[task-continue]",
        delay: float = 0.0,
        hold: bool = False,
    ) -> None:
        self.drafts = drafts
        self.error = error
        self.response_text = response_text
        self.delay = delay
        self.hold = hold
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.regenerate_calls: list[RegenerationRequest] = []
        self.execute_calls: list[ExecutionRequest] = []
        self.observed_busy: list[bool] = []
        self.engine: ProjectEngine | None = None

    async def _wait(self, project_id: str) -> None:
        if self.engine is not None:
            self.observed_busy.append(self.engine.is_busy(project_id))
        self.entered.set()
        if self.hold:
            await self.release.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    async def regenerate(self, request: RegenerationRequest) -> RegenerationResult:
        self.regenerate_calls.append(request)
        await self._wait(request.project_id)
        if self.drafts is None:
            drafts = {stage: f"{stage.label} draft for {request.project_title}" for stage in request.target_stages}
        else:
            drafts = dict(self.drafts)
        return RegenerationResult(drafts=drafts)

    async def execute(self, request: ExecutionRequest) -> ExecutionReceipt:
        self.execute_calls.append(request)
        await self._wait(request.project_id)
        return ExecutionReceipt(response_text=self.response_text)


def make_project(title: str = "Mission Control", **blueprint_fields) -> Project:
    blueprint = Blueprint(
        overview="Operate the agent fleet.",
        problems_text="- Agents drift",
        features_text="- Live roster\n- Task board",
        sections=[
            Section(id="a", title="Alpha", summary="First section.", owner_agent="Atlas"),
            Section(id="b", title="Beta", summary="Second section.", owner_agent=""),
        ],
        **blueprint_fields,
    )
    return Project.new(title, blueprint=blueprint)


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return RuntimeSettings(store_root=str(tmp_path / "store"), gateway_timeout_seconds=5)


@pytest.fixture
def store(tmp_path: Path) -> CountingStore:
    return CountingStore(tmp_path / "store")


@pytest.fixture
def make_engine(store: CountingStore, settings: RuntimeSettings) -> Callable[..., ProjectEngine]:
    def factory(gateway: FakeGateway | None = None, *projects: Project, timeout: float | None = None) -> ProjectEngine:
        seeded = projects or (make_project(),)
        for project in seeded:
            BlueprintStore.save(store, project)
        effective = settings
        if timeout is not None:
            effective = RuntimeSettings(store_root=settings.store_root, gateway_timeout_seconds=timeout)
        engine = ProjectEngine(store, gateway if gateway is not None else FakeGateway(), settings=effective)
        if isinstance(engine.gateway, FakeGateway):
            engine.gateway.engine = engine
        engine.load_projects()
        return engine

    return factory
