"""YAML codec for persisted models.

``encode`` produces human-readable, git-friendly YAML. ``decode`` parses and
validates against a pydantic model and reports the offending field and
constraint instead of coercing bad data.
"""

from __future__ import annotations

from typing import Any, TypeVar

import yaml
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from prism_orchestrator.core.errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


def dump_yaml(data: Any) -> str:
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)


def load_yaml(text: str, *, schema_name: str = "YAML document") -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValidationError(f"not parseable as YAML ({exc})", schema_name) from exc


def encode(value: BaseModel) -> str:
    """Serialize a model to YAML."""

    return dump_yaml(value.model_dump(mode="json"))


def _error_details(exc: PydanticValidationError) -> list[dict[str, Any]]:
    return [
        {
            "loc": ".".join(str(part) for part in err.get("loc", ())) or "<root>",
            "msg": err.get("msg", ""),
            "type": err.get("type", ""),
        }
        for err in exc.errors(include_url=False)
    ]


def validate_data(data: Any, model_cls: type[ModelT]) -> ModelT:
    """Validate already-parsed data against ``model_cls``."""

    schema_name = model_cls.__name__
    if not isinstance(data, dict):
        raise ValidationError(
            f"expected a mapping at the top level, got {type(data).__name__}",
            schema_name,
            [{"loc": "<root>", "msg": "expected mapping", "type": "type_error"}],
        )
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        details = _error_details(exc)
        summary = "; ".join(f"{d['loc']}: {d['msg']}" for d in details)
        raise ValidationError(summary, schema_name, details) from exc


def decode(text: str, model_cls: type[ModelT]) -> ModelT:
    """Parse YAML text and validate it against ``model_cls``."""

    return validate_data(load_yaml(text, schema_name=model_cls.__name__), model_cls)


def roundtrip_check(value: ModelT) -> str:
    """Encode ``value`` and prove the text decodes back to an equal model.

    Returns the encoded text so callers can hand it to the atomic writer.
    """

    text = encode(value)
    decoded = decode(text, type(value))
    if decoded != value:
        raise ValidationError(
            "round-trip mismatch: decoded value differs from the value being written",
            type(value).__name__,
        )
    return text
