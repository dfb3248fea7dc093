"""
Generated-file boundary.

Modules describe the files they contribute to a generated application as
:class:`GeneratedFile` records. How those files are written or merged is up
to the caller.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined

TEMPLATES_DIR = Path(__file__).parent / "templates"

_env: Environment | None = None


@dataclass(frozen=True)
class GeneratedFile:
    """A file produced by a module."""

    path: str
    content: str
    type: str


@dataclass
class ModuleContext:
    """What a module knows about the application it is generating for."""

    project_name: str
    output_path: str = "."
    framework: str = "fastapi"
    module_config: dict[str, Any] = field(default_factory=dict)
    global_config: dict[str, Any] = field(default_factory=dict)

    @property
    def package_name(self) -> str:
        """Project name as an importable Python package name."""
        name = re.sub(r"[^a-zA-Z0-9_]", "_", self.project_name.strip().lower())
        if not name or name[0].isdigit():
            name = f"app_{name}"
        return name


def _to_yaml(value: Any) -> str:
    import yaml

    return yaml.safe_dump(value, sort_keys=False, default_flow_style=False).rstrip()


def create_template_env() -> Environment:
    """Create the Jinja2 environment used for generated files."""
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        undefined=StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["to_yaml"] = _to_yaml
    return env


def render_template(name: str, **variables: Any) -> str:
    global _env
    if _env is None:
        _env = create_template_env()
    return _env.get_template(name).render(**variables)
