"""
Parse-or-fail helpers used at every external boundary.

Parsing never raises: it returns ``Ok(value)`` or ``Err(error)`` so each caller
can apply its own failure policy (abort a sync, drop an event, ...).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from pydantic import BaseModel, TypeAdapter, ValidationError

from .errors import MalformedPayloadError

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: str

    @property
    def ok(self) -> bool:
        return False


Parsed = Union[Ok[T], Err]


def parse_model(model: type[M], data: Any) -> Parsed[M]:
    """Validate a decoded payload (dict) against a pydantic model."""
    try:
        return Ok(model.model_validate(data))
    except ValidationError as e:
        return Err(f"{model.__name__}: {e.error_count()} validation error(s): {e.errors()[0]['msg']}")


def parse_json(model: type[M], raw: str | bytes) -> Parsed[M]:
    """Validate a raw JSON document against a pydantic model."""
    try:
        return Ok(model.model_validate_json(raw))
    except ValidationError as e:
        return Err(f"{model.__name__}: {e.error_count()} validation error(s): {e.errors()[0]['msg']}")


def parse_list(model: type[M], data: Any) -> Parsed[list[M]]:
    """Validate a decoded JSON array whose items all match ``model``."""
    try:
        return Ok(TypeAdapter(list[model]).validate_python(data))
    except ValidationError as e:
        return Err(f"list[{model.__name__}]: {e.error_count()} validation error(s): {e.errors()[0]['msg']}")


def unwrap(result: Parsed[T], context: str = "") -> T:
    """Return the parsed value or raise ``MalformedPayloadError``."""
    if isinstance(result, Ok):
        return result.value
    prefix = f"{context}: " if context else ""
    raise MalformedPayloadError(f"{prefix}{result.error}")
