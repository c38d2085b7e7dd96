"""Result values returned by the engine for expected outcomes.

Expected conditions (missing rows, wrong state, unresolved stage roles,
bad billing data) travel as ``Result.failure(...)``; exceptions are left for
genuinely unexpected storage errors.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, List, Optional, TypeVar, Dict, Any

T = TypeVar("T")


class ErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    INVALID_STATE = "invalid_state"
    CONFLICT = "conflict"
    CONFIGURATION_MISSING = "configuration_missing"
    VALIDATION_FAILED = "validation_failed"
    UNAUTHORIZED = "unauthorized"


@dataclass(frozen=True)
class EngineError:
    code: ErrorCode
    message: str
    validation_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.validation_errors:
            data["validationErrors"] = list(self.validation_errors)
        return data


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or an EngineError.

    Example::

        result = executor.move(LeadRef(7), pipeline_id, stage_id)
        if not result.ok:
            logger.warning(result.error.message)
    """
    value: Optional[T] = None
    error: Optional[EngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, code: ErrorCode, message: str,
                validation_errors: Optional[List[str]] = None) -> "Result[T]":
        return cls(error=EngineError(code, message, list(validation_errors or [])))

    @classmethod
    def from_error(cls, error: EngineError) -> "Result[T]":
        return cls(error=error)
