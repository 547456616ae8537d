from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def is_ok(self) -> bool:
        return False


Result = Ok[T] | Err[E]


class TransitionErrorCode(StrEnum):
    UNKNOWN_STAGE = "UNKNOWN_STAGE"
    REASON_REQUIRED = "REASON_REQUIRED"
    INVALID_REASON = "INVALID_REASON"
    INACTIVE_STAGE = "INACTIVE_STAGE"


class GateErrorCode(StrEnum):
    NOT_EDITABLE_TODAY = "NOT_EDITABLE_TODAY"
    NOT_COMPLETABLE = "NOT_COMPLETABLE"


@dataclass(frozen=True)
class TransitionError:
    """Rejected stage move. The opportunity passed in is left untouched."""

    code: TransitionErrorCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GateError:
    """Rejected completion toggle. The activity passed in is left untouched."""

    code: GateErrorCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)


class PipelineConfigurationError(Exception):
    def __init__(self, pipeline_id: Any, message: str) -> None:
        super().__init__(message)
        self.pipeline_id = pipeline_id
        self.message = message
