"""Jinja2 rendering for pack files.

Pack files ending in ``.j2`` are rendered with the install context
(capability, options, project identity) and written without the suffix.
Every other file is copied byte for byte.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from rns.errors import PackResolutionError

TEMPLATE_SUFFIX = ".j2"


class TemplateRenderer:
    """Renders ``.j2`` files found under one pack directory."""

    def __init__(self, template_dir: str | Path) -> None:
        self.template_dir = Path(template_dir)
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=False,
            keep_trailing_newline=True,
            undefined=StrictUndefined,
        )
        self.env.filters["slugify"] = _slugify_filter
        self.env.filters["pascal_case"] = _pascal_case_filter
        self.env.filters["camel_case"] = _camel_case_filter

    def render(self, template_path: str, context: dict[str, Any]) -> str:
        """Render ``template_path`` (relative to the pack directory).

        Raises:
            PackResolutionError: If the template is invalid or uses an
                undefined variable.
        """
        try:
            template = self.env.get_template(template_path)
            return template.render(**context)
        except TemplateError as exc:
            raise PackResolutionError(
                f"Cannot render {template_path}: {exc}",
                phase="attachment",
                path=self.template_dir / template_path,
            ) from exc


def output_name(rel_path: str) -> str:
    """``config.ts.j2`` -> ``config.ts``; other names are unchanged."""
    return rel_path[: -len(TEMPLATE_SUFFIX)] if rel_path.endswith(TEMPLATE_SUFFIX) else rel_path


def is_template(rel_path: str) -> bool:
    return rel_path.endswith(TEMPLATE_SUFFIX)


# ---------------------------------------------------------------------------
# Jinja2 custom filters
# ---------------------------------------------------------------------------

def _slugify_filter(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower().strip())
    return slug.strip("-")


def _pascal_case_filter(value: str) -> str:
    """``auth.firebase`` or ``auth-firebase`` -> ``AuthFirebase``."""
    parts = re.split(r"[-_.\s]+", value)
    return "".join(word[:1].upper() + word[1:] for word in parts if word)


def _camel_case_filter(value: str) -> str:
    pascal = _pascal_case_filter(value)
    return pascal[:1].lower() + pascal[1:] if pascal else ""
