"""
Shared configuration helpers.

Every module config is a pydantic model. Consistency checks raise
:class:`ConfigurationError` from ``model_validator`` hooks; type errors that
pydantic reports are converted here so callers only ever see one error type.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from dnadb.errors import ConfigurationError

ConfigT = TypeVar("ConfigT", bound=BaseModel)

LOG_LEVELS = ("debug", "info", "warn", "error")


def coerce_config(model: type[ConfigT], value: ConfigT | Mapping[str, Any]) -> ConfigT:
    """Return ``value`` as an instance of ``model``, validating mappings."""
    if isinstance(value, model):
        return value
    if not isinstance(value, Mapping):
        raise ConfigurationError(
            f"{model.__name__} expects a mapping or {model.__name__} instance, "
            f"got {type(value).__name__}"
        )
    try:
        return model.model_validate(dict(value))
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or model.__name__}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid {model.__name__}: {details}") from e


def load_config_file(path: str | Path, model: type[ConfigT]) -> ConfigT:
    """Load a YAML or JSON file into a config model."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot parse config file {path}: {e}") from e
    return coerce_config(model, data)
