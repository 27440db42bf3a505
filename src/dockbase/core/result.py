"""
Result envelope for consistent success/failure handling.

Every operation on the operator surface (``DockbaseService``) returns
``Ok(value)`` or ``Err(error)`` instead of raising. Front-ends render
``Err.message``, a human-readable string that includes the failing step and
any captured tool output.

Manifesto:
    - **Explicit over Implicit:** No hidden exceptions at the operator boundary
    - **One shape:** Every command returns the same envelope
    - **Lossless:** The original DockbaseError is kept on ``Err.error``

Architecture:
    ::

        ┌─────────────────┬─────────────────┐
        │     Ok[T]       │     Err[T]      │
        │   value: T      │ error: Exception│
        └─────────────────┴─────────────────┘
                  Result[T] = Ok[T] | Err[T]

Examples:
    >>> Ok(5).map(lambda x: x * 2).unwrap()
    10
    >>> Err(ValueError("bad")).unwrap_or(0)
    0

Tags:
    result-type, error-handling, dockbase
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from dockbase.core.errors import DockbaseError


T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful result containing a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Get the value. Safe for Ok."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Get value or default (always returns value for Ok)."""
        return self.value

    def map(self, f: Callable[[T], U]) -> Result[U]:
        """Transform the value if Ok."""
        return Ok(f(self.value))

    def flat_map(self, f: Callable[[T], Result[U]]) -> Result[U]:
        """Chain to another Result-returning function."""
        return f(self.value)

    def map_err(self, f: Callable[[Exception], Exception]) -> Result[T]:
        """Transform error if Err (no-op for Ok)."""
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"ok": True, "value": self.value}

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """
    Failed result containing the error.

    ``message`` is what front-ends show; for a MigrationStepError it already
    names the step and carries the stderr excerpt.
    """

    error: Exception

    @property
    def message(self) -> str:
        return str(self.error)

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Raise the error. Use only when you're sure it's Ok."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        """Get default since this is Err."""
        return default

    def map(self, f: Callable[[T], U]) -> Result[U]:
        """No-op for Err."""
        return Err(self.error)

    def flat_map(self, f: Callable[[T], Result[U]]) -> Result[U]:
        """No-op for Err."""
        return Err(self.error)

    def map_err(self, f: Callable[[Exception], Exception]) -> Result[T]:
        """Transform the error."""
        return Err(f(self.error))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        if isinstance(self.error, DockbaseError):
            return {"ok": False, "error": self.error.to_dict()}
        return {
            "ok": False,
            "error": {
                "error_type": type(self.error).__name__,
                "message": str(self.error),
            },
        }

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


# Type alias for Result
Result = Ok[T] | Err[T]


__all__ = ["Ok", "Err", "Result"]
