from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Mapping

from app.completion.adapters.collaborators import TemplateRenderer
from app.logger import LOGGER

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

DEFAULT_SYSTEM_MESSAGE = (
    "You are a helpful coding assistant. Answer concisely, prefer code over prose, "
    "and format code in fenced blocks."
)

_BUILTIN_TEMPLATES = {
    "relevant-files": "Use the following files from the workspace if they are relevant: {{code}}",
    "relevant-code": "Use the following code from the workspace if it is relevant:\n\n{{code}}",
    "explain": "Explain the following {{language}} code:\n\n```\n{{code}}\n```",
}


def render_text(template: str, variables: Mapping[str, Any]) -> str:
    def _replace(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_replace, template)


class FileTemplateRenderer(TemplateRenderer):
    """Renders ``<name>.hbs`` files from a template directory.

    Only ``{{var}}`` substitution is supported; richer templates belong to the
    editor's own template engine.
    """

    def __init__(self, template_dir: str | Path | None = None) -> None:
        self._template_dir = Path(template_dir).expanduser() if template_dir else None

    def _read(self, name: str) -> str | None:
        if self._template_dir is not None:
            path = self._template_dir / f"{name}.hbs"
            try:
                return path.read_text(encoding="utf-8")
            except FileNotFoundError:
                pass
            except OSError as exc:
                LOGGER.warning("failed to read template %s: %s", path, exc)
        return _BUILTIN_TEMPLATES.get(name)

    def render(self, name: str, variables: Mapping[str, Any]) -> str:
        template = self._read(name)
        if template is None:
            LOGGER.warning("template not found: %s", name)
            return ""
        return render_text(template, variables)

    def render_system_message(self, name: str | None = None) -> str:
        template = self._read("system")
        if template is None:
            return DEFAULT_SYSTEM_MESSAGE
        return render_text(template, {"template": name or ""})
