from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class NotFound(LookupError):
    """Requested entity does not exist."""


class InvalidArgument(ValueError):
    """Bad enum value, missing required field or out-of-range number."""


class Conflict(ValueError):
    """Unique key or state conflict."""


class Unauthorized(PermissionError):
    """Caller lacks the role required for the action."""


class ExternalServiceFailure(RuntimeError):
    """Email transport, task webhook or object storage failed."""


DOMAIN_ERRORS = (NotFound, InvalidArgument, Conflict, Unauthorized, ExternalServiceFailure)


@dataclass
class OperationResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "OperationResult":
        return cls(success=False, error=error)

    def as_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error}
