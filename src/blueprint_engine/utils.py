from __future__ import annotations

import re

from .models import Project


CONTEXT_FALLBACK = "No additional context captured yet."
_WHITESPACE_RE = re.compile(r"\s+")


def slugify_name(name: str, *, max_length: int = 48) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", name.lower()).strip("-")
    slug = re.sub(r"-{2,}", "-", slug)
    return slug[:max_length].rstrip("-")


def export_filename(project: Project) -> str:
    return f"{slugify_name(project.title) or project.id}.md"


def concise_context(text: str, *, limit: int = 420, fallback: str = CONTEXT_FALLBACK) -> str:
    """Collapse whitespace and cap ``text`` at ``limit`` characters plus an ellipsis."""
    cleaned = _WHITESPACE_RE.sub(" ", text).strip()
    if not cleaned:
        return fallback
    if len(cleaned) <= limit:
        return cleaned
    return f"{cleaned[:limit]}…"


def render_blueprint_markdown(project: Project) -> str:
    """Render the project's blueprint as the export document.

    Field order is fixed and the output depends only on the project's
    content, so repeated calls without mutation are byte-identical.
    """
    blueprint = project.blueprint
    completed = sum(1 for section in blueprint.sections if section.completed)
    lines: list[str] = [
        f"# {project.title}",
        "",
        "## Overview",
        blueprint.overview,
        "",
        "## Problems & Solutions",
        blueprint.problems_text,
        "",
        "## Key Features",
        blueprint.features_text,
        "",
        "## Data Model",
        blueprint.data_model_text,
        "",
        "## Design System",
        blueprint.design_text,
        "",
        f"## Sections ({completed}/{len(blueprint.sections)} complete)",
    ]
    for section in blueprint.sections:
        marker = "x" if section.completed else " "
        lines.append(f"- [{marker}] {section.title} ({section.owner_agent}) — {section.summary}")
    lines.extend(["", "## Export Notes", blueprint.export_notes])
    return "\n".join(lines) + "\n"
