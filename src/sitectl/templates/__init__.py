"""Jinja2 template rendering for generated nginx artifacts.

Built-in templates ship inside this package. An override directory (by
default ``/etc/sitectl/templates``) may shadow any of them file by file.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, PackageLoader, StrictUndefined


class TemplateError(RuntimeError):
    """Raised when a template cannot be rendered."""


@dataclass(frozen=True)
class TemplateEngine:
    """Render templates with strict undefined handling."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine whose loader prefers files in *override_dir*."""
        loaders = []
        if override_dir is not None and override_dir.expanduser().is_dir():
            loaders.append(FileSystemLoader(str(override_dir.expanduser())))
        loaders.append(PackageLoader("sitectl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        try:
            template = self.environment.get_template(template_name)
            return template.render(**context)
        except Exception as exc:  # noqa: BLE001 - jinja raises a wide range of errors
            raise TemplateError(f"Failed to render template {template_name}: {exc}") from exc


__all__ = ["TemplateEngine", "TemplateError"]
