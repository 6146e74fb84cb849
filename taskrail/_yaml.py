"""Read YAML documents into validated pydantic models."""

from __future__ import annotations

from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

_T = TypeVar("_T", bound=BaseModel)


def _describe_yaml_error(e: yaml.YAMLError) -> str:
    mark = getattr(e, "problem_mark", None)
    problem = getattr(e, "problem", None)
    if mark is None or problem is None:
        return str(e)
    return f"line {mark.line + 1}, column {mark.column + 1}: {problem}"


def format_validation_error(e: ValidationError) -> str:
    """One ``location: message`` line per error, e.g. ``spec.tasks.0.id: Field required``."""
    lines = []
    for err in e.errors():
        loc = ".".join(str(part) for part in err["loc"]) or "<root>"
        lines.append(f"  {loc}: {err['msg']}")
    return "\n".join(lines)


def read_yaml_mapping(path: Path, error_cls: type[Exception]) -> dict[str, Any]:
    """Parse *path* as a YAML mapping. An empty document reads as ``{}``."""
    try:
        raw = path.read_text()
    except OSError as e:
        raise error_cls(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise error_cls(f"Invalid YAML in {path}: {_describe_yaml_error(e)}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise error_cls(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    return data


def load_yaml_model(path: Path, model_cls: type[_T], error_cls: type[Exception]) -> _T:
    """Validate the mapping in *path* against *model_cls*, raising *error_cls* on any failure."""
    data = read_yaml_mapping(path, error_cls)
    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        count = e.error_count()
        noun = "error" if count == 1 else "errors"
        raise error_cls(
            f"Validation failed for {path} ({count} {noun}):\n{format_validation_error(e)}"
        ) from e
