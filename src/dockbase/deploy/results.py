"""Result models for dockbase pipelines.

Pydantic v2 models that capture structured outcomes of a migration run
and of a compose deployment. Each pipeline creates its result up front,
appends one entry per step as it goes, and calls ``mark_complete()`` at
the end, whether the run succeeded or aborted.

Key Concepts:
    OverallStatus: PASSED, FAILED, PARTIAL, RUNNING, PENDING.
    MigrationStep: The nine ordered migration steps.
    StepResult: Status, duration and detail of one step.
    MigrationResult: Steps + warnings + verification output + record.
    DeploymentResult: Created volumes / networks / services of a compose
        deployment, including the ones left behind by an aborted run.

Architecture Decisions:
    - ``mark_complete()`` pattern: caller invokes when done, duration is
      computed from ISO timestamps and the status derived from the steps.
    - Warnings are strings on the result (PartialFailureError messages),
      never exceptions.

Related Modules:
    - :mod:`dockbase.deploy.migration` - Produces MigrationResult
    - :mod:`dockbase.deploy.compose` - Produces DeploymentResult

Tags:
    results, models, pydantic, migration, compose, status
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from dockbase.deploy.models import MigratedDatabase

# ---------------------------------------------------------------------------
# Shared enums
# ---------------------------------------------------------------------------


class OverallStatus(str, Enum):
    """Overall status of a pipeline run."""

    PASSED = "PASSED"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"
    RUNNING = "RUNNING"
    PENDING = "PENDING"


class StepStatus(str, Enum):
    """Status of one pipeline step."""

    SUCCEEDED = "SUCCEEDED"
    WARNED = "WARNED"
    FAILED = "FAILED"


class MigrationStep(str, Enum):
    """Ordered steps of a migration run."""

    VERSION_CHECK = "version_check"
    DUMP_EXTRACTION = "dump_extraction"
    PORT_ALLOCATION = "port_allocation"
    DESTINATION_PROVISIONING = "destination_provisioning"
    READINESS_POLL = "readiness_poll"
    ARTIFACT_TRANSFER = "artifact_transfer"
    RESTORE = "restore"
    VERIFICATION = "verification"
    CLEANUP = "cleanup"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _duration(started_at: str, completed_at: str) -> float:
    start = datetime.fromisoformat(started_at)
    end = datetime.fromisoformat(completed_at)
    return (end - start).total_seconds()


# ---------------------------------------------------------------------------
# Migration results
# ---------------------------------------------------------------------------


class StepResult(BaseModel):
    """Outcome of one migration step."""

    step: MigrationStep
    status: StepStatus = StepStatus.SUCCEEDED
    started_at: str = Field(default_factory=_now)
    duration_seconds: float = 0.0
    detail: str = ""


class MigrationResult(BaseModel):
    """Result of a migration run."""

    migration_id: str
    source: str
    target_name: str
    started_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    duration_seconds: float = 0.0
    postgres_version: str | None = None
    image: str | None = None
    container_id: str | None = None
    container_name: str | None = None
    port: int | None = None
    dump_size_bytes: int = 0
    steps: list[StepResult] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    verification: str | None = None
    record: MigratedDatabase | None = None
    overall_status: OverallStatus = OverallStatus.RUNNING
    error: str | None = None

    def add_step(
        self,
        step: MigrationStep,
        started_at: str,
        *,
        status: StepStatus = StepStatus.SUCCEEDED,
        detail: str = "",
    ) -> StepResult:
        result = StepResult(
            step=step,
            status=status,
            started_at=started_at,
            duration_seconds=_duration(started_at, _now()),
            detail=detail,
        )
        self.steps.append(result)
        return result

    @property
    def failed_step(self) -> MigrationStep | None:
        for step in self.steps:
            if step.status == StepStatus.FAILED:
                return step.step
        return None

    def mark_complete(self, error: str | None = None) -> None:
        """Finalise timestamps and derive the overall status."""
        self.completed_at = _now()
        self.duration_seconds = _duration(self.started_at, self.completed_at)
        if error:
            self.error = error
        if self.error or self.failed_step is not None:
            self.overall_status = OverallStatus.FAILED
        elif self.warnings or any(s.status == StepStatus.WARNED for s in self.steps):
            self.overall_status = OverallStatus.PARTIAL
        else:
            self.overall_status = OverallStatus.PASSED


# ---------------------------------------------------------------------------
# Compose deployment results
# ---------------------------------------------------------------------------


class ServiceDeployment(BaseModel):
    """One service created by a compose deployment."""

    name: str
    container_id: str | None = None
    container_name: str
    image: str
    status: str = "pending"
    error: str | None = None


class DeploymentResult(BaseModel):
    """Result of a compose deployment."""

    project: str
    started_at: str = Field(default_factory=_now)
    completed_at: str | None = None
    duration_seconds: float = 0.0
    volumes: list[str] = Field(default_factory=list)
    networks: list[str] = Field(default_factory=list)
    services: list[ServiceDeployment] = Field(default_factory=list)
    overall_status: OverallStatus = OverallStatus.PENDING
    error: str | None = None
    summary: str = ""

    @property
    def created_containers(self) -> list[str]:
        return [s.container_name for s in self.services if s.container_id]

    def mark_complete(self, status: OverallStatus | None = None) -> None:
        """Mark deployment as complete, compute duration and status."""
        self.completed_at = _now()
        self.duration_seconds = _duration(self.started_at, self.completed_at)
        if status:
            self.overall_status = status
        elif all(s.status == "running" for s in self.services):
            self.overall_status = OverallStatus.PASSED
        elif any(s.status == "running" for s in self.services):
            self.overall_status = OverallStatus.PARTIAL
        else:
            self.overall_status = OverallStatus.FAILED
        running = sum(1 for s in self.services if s.status == "running")
        self.summary = f"{running}/{len(self.services)} services running"


__all__ = [
    "OverallStatus",
    "StepStatus",
    "MigrationStep",
    "StepResult",
    "MigrationResult",
    "ServiceDeployment",
    "DeploymentResult",
]
