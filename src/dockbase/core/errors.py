"""
Structured error types for dockbase.

Every failure the orchestration engine can report is a DockbaseError. The
error carries enough metadata for the operator surface to render a precise
message (which step failed, what the helper container printed) and for
callers to decide whether a retry makes sense.

Manifesto:
    - **Typed Error Hierarchy:** Validation, connectivity, timeout, engine and
      pipeline failures are different types
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Rich Context:** Errors carry the step, container and image involved
    - **Error Chaining:** The Docker SDK / asyncpg exception is kept as cause

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────────┐
        │                          DockbaseError                            │
        │          (category, retryable, retry_after, context, cause)       │
        ├──────────────────────────────────────────────────────────────────┤
        │                                                                   │
        │  ValidationError        ConfigError         ConnectivityError     │
        │  (never retried)        (bad input)         (engine / source)     │
        │       │                                                           │
        │  ConflictError                              TimeoutError          │
        │  NoPortAvailableError                            │                │
        │                                             ImagePullTimeoutError │
        │  EngineError                                MigrationTimeoutError │
        │       │                                                           │
        │  NotFoundError          PipelineError       PartialFailureError   │
        │  ResourceExistsError         │              (reported only)       │
        │  ImagePullError         MigrationStepError  SourceDatabaseError   │
        │                         DeploymentError                           │
        └──────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Raise generic Exception from engine code
    ✅ DO: Translate SDK errors at the engine boundary

    ❌ DON'T: Retry ValidationError / ConflictError
    ✅ DO: Let default_retryable decide

Tags:
    error-handling, exception-hierarchy, retry-logic, dockbase

Usage:
    from dockbase.core.errors import ConflictError

    raise ConflictError(
        "Port 5432 is already used by container 'postgres-app'",
        field="port",
        value=5432,
    )
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification.

    Categories group errors by where they originate:
    - **Input:** VALIDATION, CONFIG
    - **Infrastructure:** ENGINE, NETWORK, DATABASE
    - **Workflow:** PIPELINE, DEPLOYMENT
    - **Internal:** INTERNAL
    """

    VALIDATION = "VALIDATION"       # Conflicts, bad names, exhausted ports
    CONFIG = "CONFIG"               # Malformed compose files, bad limits
    ENGINE = "ENGINE"               # Docker Engine API failures
    NETWORK = "NETWORK"             # Unreachable engine or source database
    DATABASE = "DATABASE"           # Source database errors
    PIPELINE = "PIPELINE"           # Migration step failures
    DEPLOYMENT = "DEPLOYMENT"       # Compose deployment failures
    INTERNAL = "INTERNAL"           # Bugs, unexpected state


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only fields that are set appear in ``to_dict()``; anything that has no
    dedicated field goes into ``metadata``.
    """

    step: str | None = None
    container: str | None = None
    image: str | None = None
    project: str | None = None
    database: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["step", "container", "image", "project", "database"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class DockbaseError(Exception):
    """
    Base exception for all dockbase errors.

    Subclasses set ``default_category`` and ``default_retryable`` so callers
    rarely pass them explicitly.

    Examples:
        >>> err = DockbaseError("boom").with_context(container="postgres-app")
        >>> err.context.container
        'postgres-app'
        >>> err.to_dict()["error_type"]
        'DockbaseError'
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: int | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DockbaseError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# INPUT ERRORS (Never Retryable)
# =============================================================================


class ValidationError(DockbaseError):
    """
    Invalid request detected before any mutating engine call.

    Never retryable - the request must change.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class ConflictError(ValidationError):
    """A host port or container name is already taken."""

    pass


class NoPortAvailableError(ValidationError):
    """The bounded free-port search found nothing."""

    pass


class ConfigError(DockbaseError):
    """Malformed input: compose documents, resource limits, templates."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# INFRASTRUCTURE ERRORS
# =============================================================================


class ConnectivityError(DockbaseError):
    """The container engine or the source database cannot be reached."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class TimeoutError(DockbaseError):
    """A bounded wait expired."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class ImagePullTimeoutError(TimeoutError):
    """Image pull did not finish within the pull timeout."""

    pass


class MigrationTimeoutError(TimeoutError):
    """The migration destination never reported ready.

    The destination container is left running for inspection.
    """

    default_category = ErrorCategory.PIPELINE

    def __init__(self, message: str, *, attempts: int = 0, result: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self.result = result


class EngineError(DockbaseError):
    """The Docker Engine API rejected a request."""

    default_category = ErrorCategory.ENGINE
    default_retryable = False

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class NotFoundError(EngineError):
    """Container, image, volume or network does not exist."""

    pass


class ResourceExistsError(EngineError):
    """The engine answered 409: the named resource already exists."""

    pass


class ImagePullError(EngineError):
    """The engine reported an error while pulling an image."""

    pass


class SourceDatabaseError(DockbaseError):
    """The source PostgreSQL server rejected a query."""

    default_category = ErrorCategory.DATABASE
    default_retryable = False


class PartialFailureError(DockbaseError):
    """
    A step finished but reported errors.

    Reported as a warning on the result, never raised out of a pipeline.
    """

    default_category = ErrorCategory.PIPELINE
    default_retryable = False


# =============================================================================
# WORKFLOW ERRORS
# =============================================================================


class PipelineError(DockbaseError):
    """
    A multi-step pipeline aborted.

    ``result`` carries the partial pipeline result (steps completed so far,
    containers left behind) when the pipeline had one.
    """

    default_category = ErrorCategory.PIPELINE
    default_retryable = False

    def __init__(self, message: str, *, result: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.result = result


class MigrationStepError(PipelineError):
    """
    A migration step failed.

    The message names the step and includes excerpts of the helper's
    stdout/stderr so the operator sees what pg_dump or psql printed.
    """

    #: Captured output is trimmed to this many characters per stream.
    OUTPUT_EXCERPT = 2000

    def __init__(
        self,
        step: str,
        message: str,
        *,
        stdout: str = "",
        stderr: str = "",
        **kwargs: Any,
    ):
        self.step = step
        self.stdout = stdout
        self.stderr = stderr
        full = f"Migration step '{step}' failed: {message}"
        if stderr.strip():
            full += f"\nstderr: {stderr.strip()[: self.OUTPUT_EXCERPT]}"
        if stdout.strip():
            full += f"\nstdout: {stdout.strip()[: self.OUTPUT_EXCERPT]}"
        super().__init__(full, **kwargs)
        self.context.step = step

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["step"] = self.step
        return result


class DeploymentError(PipelineError):
    """A compose service could not be created or started."""

    default_category = ErrorCategory.DEPLOYMENT

    def __init__(
        self,
        message: str,
        *,
        service: str | None = None,
        created: list[str] | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.service = service
        self.created = list(created or [])


#: Name used by callers that think of pipeline aborts as fatal.
FatalPipelineError = PipelineError


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, DockbaseError):
        return error.retryable
    return isinstance(error, (ConnectionError, OSError))


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, DockbaseError):
        return error.category
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.NETWORK
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.INTERNAL


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "DockbaseError",
    # Input
    "ValidationError",
    "ConflictError",
    "NoPortAvailableError",
    "ConfigError",
    # Infrastructure
    "ConnectivityError",
    "TimeoutError",
    "ImagePullTimeoutError",
    "MigrationTimeoutError",
    "EngineError",
    "NotFoundError",
    "ResourceExistsError",
    "ImagePullError",
    "SourceDatabaseError",
    "PartialFailureError",
    # Workflow
    "PipelineError",
    "FatalPipelineError",
    "MigrationStepError",
    "DeploymentError",
    # Utilities
    "is_retryable",
    "categorize_error",
]
