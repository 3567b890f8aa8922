"""
experiment_sdk.tier1_runtime.serialize
───────────────────────────────────────
JSON encoding for the kernel transport and for rollout snapshots. Models
are written with camelCase aliases so payloads match the wire contract and
can be read back by the same models.
"""
from __future__ import annotations

import dataclasses
import json
from datetime import datetime
from enum import Enum
from typing import Any, Sequence, Type, TypeVar

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from experiment_sdk.tier0_core.errors import ValidationError
from experiment_sdk.tier1_runtime.validate import field_errors

T = TypeVar("T", bound=BaseModel)


def to_jsonable(obj: Any) -> Any:
    """Convert models, dataclasses and datetimes into plain JSON values."""
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json", by_alias=True)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {
            _camel(f.name): to_jsonable(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in obj]
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return obj


def serialize(obj: Any) -> bytes:
    """
    Encode any engine value as JSON bytes.

    Usage:
        payload = serialize(metrics)   # → b'{"experimentKey": ...}'
    """
    return json.dumps(to_jsonable(obj), default=str).encode()


def dump_models(models: Sequence[BaseModel]) -> bytes:
    """Encode a list of models (e.g. a rollout snapshot)."""
    return serialize(list(models))


def load_models(data: bytes | str, model: Type[T]) -> list[T]:
    """Decode a list written by dump_models. Raises ValidationError on bad input."""
    try:
        return TypeAdapter(list[model]).validate_json(data)  # type: ignore[valid-type]
    except PydanticValidationError as exc:
        raise ValidationError(
            user_message="Snapshot could not be decoded.",
            fields=field_errors(exc),
        ) from exc


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


__all__ = ["serialize", "to_jsonable", "dump_models", "load_models"]
