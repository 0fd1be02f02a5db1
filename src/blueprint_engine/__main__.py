"""Entry point for `python -m blueprint_engine` and the `blueprint` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
from collections.abc import Sequence
from pathlib import Path

from blueprint_engine import BlueprintStore, GraphDispatchGateway, Project, ProjectEngine, Stage
from blueprint_engine.errors import BlueprintEngineError
from blueprint_engine.settings import RuntimeSettings
from blueprint_engine.utils import export_filename


EDITABLE_FIELDS = {
    "title": ProjectEngine.update_project_title,
    "overview": ProjectEngine.update_overview,
    "problems": ProjectEngine.update_problems,
    "features": ProjectEngine.update_features,
    "data_model": ProjectEngine.update_data_model,
    "design": ProjectEngine.update_design,
    "sections_draft": ProjectEngine.update_sections_draft,
    "export_notes": ProjectEngine.update_export_notes,
}


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plan projects through the staged blueprint workflow")
    parser.add_argument(
        "--store-root",
        type=Path,
        default=None,
        help="Directory holding the project store (default: BLUEPRINT_STORE_ROOT)",
    )
    parser.add_argument(
        "--use-llm",
        action="store_true",
        default=None,
        help="Draft and execute through the OpenAI chat model instead of deterministic templates",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("list", help="List saved projects")

    new = commands.add_parser("new", help="Create a project with the starter blueprint")
    new.add_argument("title")

    for name, help_text in (
        ("show", "Print a project's stage status and blueprint"),
        ("approve", "Approve the active stage and redraft downstream stages"),
        ("retry", "Redraft stages left stale by an interrupted approval"),
        ("execute", "Dispatch the finalized plan to the agent team"),
        ("close", "Mark a project as final-approved"),
        ("delete", "Delete a project from the store"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("project_id")

    edit = commands.add_parser("edit", help="Replace one blueprint field and save")
    edit.add_argument("project_id")
    edit.add_argument("field", choices=sorted(EDITABLE_FIELDS))
    source = edit.add_mutually_exclusive_group(required=True)
    source.add_argument("--text", default=None, help="New field content")
    source.add_argument("--file", type=Path, default=None, help="Read new field content from a file")

    stage = commands.add_parser("stage", help="Move the active stage cursor and save")
    stage.add_argument("project_id")
    stage.add_argument("stage", choices=[item.value for item in Stage])

    toggle = commands.add_parser("toggle-section", help="Mark a section complete or incomplete and save")
    toggle.add_argument("project_id")
    toggle.add_argument("section_id")
    toggle.add_argument("--undo", action="store_true", help="Mark the section incomplete")

    verify = commands.add_parser("verify", help="Start the next verification round of an executed plan")
    verify.add_argument("project_id")
    verify.add_argument("--reason", default="Final verification requested.", help="Why the round is needed")

    export = commands.add_parser("export", help="Write the blueprint markdown document")
    export.add_argument("project_id")
    export.add_argument("--output", type=Path, default=None, help="Target file; '-' prints to stdout")
    return parser.parse_args(argv)


def build_engine(args: argparse.Namespace) -> ProjectEngine:
    settings = RuntimeSettings.from_env()
    if args.store_root is not None:
        settings = dataclasses.replace(settings, store_root=str(args.store_root)).normalized()
    if args.use_llm:
        settings = dataclasses.replace(settings, use_llm=True)
    store = BlueprintStore(settings.store_path(Path.cwd()))
    return ProjectEngine(store, GraphDispatchGateway(settings), settings=settings)


def _describe(project: Project) -> list[str]:
    blueprint = project.blueprint
    approved = ", ".join(stage.label for stage in Stage if stage in project.approved_stages) or "none"
    stale = ", ".join(stage.label for stage in Stage if stage in project.stale_stages) or "none"
    return [
        f"id: {project.id}",
        f"title: {project.title}",
        f"active stage: {blueprint.active_stage.label} (next action: {blueprint.active_stage.approve_label})",
        f"approved: {approved}",
        f"stale: {stale}",
        f"review: {project.review_status.value} (round {project.review_round})",
        f"updated: {project.updated_at.isoformat()}",
    ]


def _select(engine: ProjectEngine, project_id: str) -> bool:
    engine.load_projects()
    engine.select_project(project_id)
    if engine.selected_project_id != project_id:
        logging.error("Unknown project: %s", project_id)
        return False
    return True


def run_command(engine: ProjectEngine, args: argparse.Namespace) -> int:
    if args.command == "list":
        for project in engine.load_projects():
            print(f"{project.id}\t{project.blueprint.active_stage.value}\t{project.title}")
        return 0

    if args.command == "new":
        project = Project.new(args.title)
        engine.store.save(project)
        print(project.id)
        return 0

    if not _select(engine, args.project_id):
        return 1

    if args.command == "show":
        project = engine.selected_project
        print("\n".join(_describe(project)))
        print()
        print(engine.export_markdown(), end="")
        return 0

    if args.command == "delete":
        return 0 if engine.delete_project(args.project_id) else 1

    if args.command == "edit":
        text = args.text if args.text is not None else args.file.read_text(encoding="utf-8")
        EDITABLE_FIELDS[args.field](engine, text)
        return 0 if engine.save() else 1

    if args.command == "stage":
        engine.set_stage(args.stage)
        return 0 if engine.save() else 1

    if args.command == "toggle-section":
        if not engine.set_section_completion(args.section_id, not args.undo):
            logging.error("Unknown section: %s", args.section_id)
            return 1
        return 0 if engine.save() else 1

    if args.command == "approve":
        result = asyncio.run(engine.approve_current_stage())
        print(result.status)
        return 0 if not result.degraded else 1

    if args.command == "retry":
        result = asyncio.run(engine.retry_regeneration())
        print(result.status)
        return 0 if not result.degraded else 1

    if args.command == "execute":
        result = asyncio.run(engine.execute_current_project_plan())
        print(result.status)
        if result.response_text:
            print(result.response_text)
        return 0 if result.dispatched else 1

    if args.command == "verify":
        result = asyncio.run(engine.begin_verification_round(args.reason))
        print(result.status)
        if result.response_text:
            print(result.response_text)
        return 0 if result.dispatched else 1

    if args.command == "close":
        return 0 if engine.close_project() else 1

    if args.command == "export":
        if args.output is not None and str(args.output) == "-":
            print(engine.export_markdown(), end="")
            return 0
        target = args.output if args.output is not None else Path.cwd() / export_filename(engine.selected_project)
        print(engine.export_to_file(target))
        return 0

    raise ValueError(f"Unsupported command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        engine = build_engine(args)
    except (RuntimeError, ValueError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    try:
        return run_command(engine, args)
    except BlueprintEngineError as exc:
        logging.error("%s", exc)
        return 1
    except OSError as exc:
        logging.error("Unable to read or write project files: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
