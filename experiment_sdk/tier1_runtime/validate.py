"""
experiment_sdk.tier1_runtime.validate
──────────────────────────────────────
Input validation via Pydantic v2. Raises the engine's ValidationError (never
raw Pydantic errors) so callers see one error shape for both schema
problems and invariant violations.
"""
from __future__ import annotations

from typing import Any, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from experiment_sdk.tier0_core.errors import ValidationError

T = TypeVar("T", bound=BaseModel)


def field_errors(exc: PydanticValidationError) -> dict[str, str]:
    """Flatten Pydantic errors to {"variants.0.weight": "message"}."""
    return {
        ".".join(str(loc) for loc in err["loc"]) or "__root__": err["msg"]
        for err in exc.errors()
    }


def validate_input(model: Type[T], data: Any, message: str = "Request validation failed.") -> T:
    """
    Validate raw data (dict or model instance) against a Pydantic model.

    Usage:
        definition = validate_input(ExperimentInput, payload)
    """
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True)
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(
            code="validation_error",
            user_message=message,
            fields=field_errors(exc),
        ) from exc


__all__ = ["validate_input", "field_errors"]
