from pathlib import Path

import pytest

from blueprint_engine import GraphDispatchGateway
from blueprint_engine.__main__ import main
from blueprint_engine.models import ReviewStatus, Stage
from blueprint_engine.state_store import BlueprintStore


@pytest.fixture(autouse=True)
def _deterministic_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BLUEPRINT_USE_LLM", raising=False)
    monkeypatch.delenv("BLUEPRINT_GATEWAY_TIMEOUT_SECONDS", raising=False)


def _run(store_root: Path, *args: str) -> int:
    return main(["--store-root", str(store_root), "--log-level", "WARNING", *args])


def _new_project(store_root: Path, capsys: pytest.CaptureFixture[str], title: str = "Mission Control") -> str:
    assert _run(store_root, "new", title) == 0
    return capsys.readouterr().out.strip()


def test_cli_new_list_show(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project_id = _new_project(tmp_path, capsys)
    assert _run(tmp_path, "list") == 0
    assert capsys.readouterr().out == f"{project_id}\tproduct\tMission Control\n"
    assert _run(tmp_path, "show", project_id) == 0
    out = capsys.readouterr().out
    assert "next action: Approve & Draft Data Model" in out
    assert "# Mission Control" in out


def test_cli_edit_and_approve(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project_id = _new_project(tmp_path, capsys)
    assert _run(tmp_path, "edit", project_id, "overview", "--text", "A fleet console") == 0
    assert _run(tmp_path, "approve", project_id) == 0
    assert "Regenerated Data Model, Design, Sections, Export." in capsys.readouterr().out

    [project] = BlueprintStore(tmp_path).load()
    assert project.blueprint.overview == "A fleet console"
    assert project.approved_stages == {Stage.PRODUCT}
    assert project.blueprint.active_stage == Stage.DATA_MODEL
    assert project.blueprint.data_model_text.startswith("Data model for Mission Control")
    assert project.stale_stages == set()


def test_cli_rejected_approval_returns_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project_id = _new_project(tmp_path, capsys)
    assert _run(tmp_path, "stage", project_id, "export") == 0
    assert _run(tmp_path, "approve", project_id) == 1
    assert _run(tmp_path, "retry", project_id) == 1


def test_cli_toggle_execute_and_export(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project_id = _new_project(tmp_path, capsys)
    assert _run(tmp_path, "toggle-section", project_id, "agents") == 0
    assert _run(tmp_path, "toggle-section", project_id, "nope") == 1
    assert _run(tmp_path, "execute", project_id) == 1
    assert _run(tmp_path, "stage", project_id, "export") == 0
    capsys.readouterr()

    assert _run(tmp_path, "execute", project_id) == 0
    out = capsys.readouterr().out
    assert "Dispatched 1 section task(s) for Mission Control" in out
    assert "[task-continue]" in out

    target = tmp_path / "plan.md"
    assert _run(tmp_path, "export", project_id, "--output", str(target)) == 0
    text = target.read_text(encoding="utf-8")
    assert "- [x] Agents (Scope) — Agent roster, identity, and collaboration controls." in text
    capsys.readouterr()
    assert _run(tmp_path, "export", project_id, "--output", "-") == 0
    assert capsys.readouterr().out == text


def test_cli_delete_and_unknown_project(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project_id = _new_project(tmp_path, capsys)
    assert _run(tmp_path, "delete", project_id) == 0
    assert BlueprintStore(tmp_path).load() == []
    assert _run(tmp_path, "show", project_id) == 1


def test_cli_reports_corrupt_store(tmp_path: Path) -> None:
    projects = tmp_path / "projects"
    projects.mkdir()
    (projects / "PRJ-bad.json").write_text("{}", encoding="utf-8")
    assert _run(tmp_path, "list") == 1


def test_cli_degraded_approval_returns_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    project_id = _new_project(tmp_path, capsys)

    async def offline(self, request):
        raise ConnectionError("gateway offline")

    monkeypatch.setattr(GraphDispatchGateway, "regenerate", offline)
    assert _run(tmp_path, "approve", project_id) == 1
    assert "Regeneration did not complete" in capsys.readouterr().out
    assert _run(tmp_path, "retry", project_id) == 1

    [project] = BlueprintStore(tmp_path).load()
    assert project.approved_stages == {Stage.PRODUCT}
    assert Stage.DATA_MODEL in project.stale_stages


def test_cli_verify_and_close(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    project_id = _new_project(tmp_path, capsys)
    assert _run(tmp_path, "stage", project_id, "export") == 0
    assert _run(tmp_path, "verify", project_id) == 1
    assert _run(tmp_path, "execute", project_id) == 0
    capsys.readouterr()

    assert _run(tmp_path, "verify", project_id, "--reason", "Release check") == 0
    out = capsys.readouterr().out
    assert "Verification round 1 dispatched 5 review task(s) for Mission Control." in out
    assert "- Prism: Mission Control: Final Verification (Prism) - Round 1" in out

    assert _run(tmp_path, "close", project_id) == 0
    [project] = BlueprintStore(tmp_path).load()
    assert project.review_status == ReviewStatus.FINAL_APPROVED
    assert project.review_round == 1
    assert _run(tmp_path, "verify", project_id) == 1
    assert _run(tmp_path, "show", project_id) == 0
    assert "review: final_approved (round 1)" in capsys.readouterr().out
