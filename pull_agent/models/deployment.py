"""
Deployment data models.

A Deployment is one attempt to move the running application to a new
revision. It owns an ordered list of Phase records and is immutable once its
status leaves ``running``.
"""

import threading
import time
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

TriggerSource = Literal["webhook", "poll", "manual"]
PhaseName = Literal["pull", "build", "restart", "health", "rollback"]
PhaseStatus = Literal["running", "completed", "failed"]
DeploymentStatusValue = Literal["running", "success", "failed"]

_id_lock = threading.Lock()
_last_id = 0


def next_deployment_id() -> str:
    """
    Return a monotonic deployment id based on the creation time in milliseconds.

    Two deployments created within the same millisecond still get distinct,
    increasing ids.
    """
    global _last_id
    with _id_lock:
        candidate = time.time_ns() // 1_000_000
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
        return str(candidate)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CommitInfo(BaseModel):
    """Commit metadata shown in notifications and history."""

    sha: str = Field(..., description="Full commit SHA")
    short_sha: str = Field(..., description="Abbreviated SHA")
    author: str = Field(default="", description="Author name")
    email: str = Field(default="", description="Author email")
    date: str = Field(default="", description="Commit date as reported by git")
    message: str = Field(default="", description="Commit subject line")


class Phase(BaseModel):
    """One named step of a deployment."""

    name: PhaseName
    status: PhaseStatus = "running"
    started_at: str = Field(default_factory=_utc_now)
    ended_at: Optional[str] = None
    error: Optional[str] = None


class DeploymentOptions(BaseModel):
    """Flags supplied by the trigger."""

    skip_rollback: bool = Field(default=False, description="Do not roll back on failure")
    force: bool = Field(default=False, description="Queue behind a running deployment")


class Deployment(BaseModel):
    """One attempt to deploy the tracked branch."""

    id: str = Field(default_factory=next_deployment_id, description="Monotonic identifier")
    trigger: TriggerSource = Field(..., description="What started this deployment")
    previous_revision: Optional[str] = Field(
        None, description="Revision running before this attempt"
    )
    new_revision: Optional[str] = Field(None, description="Revision after a successful pull")
    commit_info: Optional[CommitInfo] = None
    status: DeploymentStatusValue = "running"
    phases: List[Phase] = Field(default_factory=list)
    started_at: str = Field(default_factory=_utc_now)
    ended_at: Optional[str] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    options: DeploymentOptions = Field(default_factory=DeploymentOptions)
    rollback_status: Optional[Literal["success", "failed", "skipped"]] = None

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    @property
    def current_phase(self) -> Optional[Phase]:
        return self.phases[-1] if self.phases else None

    def _ensure_running(self) -> None:
        if not self.is_running:
            raise RuntimeError(f"Deployment {self.id} is {self.status} and can no longer change")

    def start_phase(self, name: PhaseName) -> Phase:
        """Append a new running phase."""
        self._ensure_running()
        phase = Phase(name=name)
        self.phases.append(phase)
        return phase

    def complete_phase(self, phase: Phase) -> None:
        self._ensure_running()
        phase.status = "completed"
        phase.ended_at = _utc_now()

    def fail_phase(self, phase: Phase, error: str) -> None:
        self._ensure_running()
        phase.status = "failed"
        phase.error = error
        phase.ended_at = _utc_now()

    def finish(self, status: Literal["success", "failed"], error: Optional[str] = None) -> None:
        """Close the deployment; no further mutation is allowed afterwards."""
        self._ensure_running()
        ended = datetime.now(timezone.utc)
        started = datetime.fromisoformat(self.started_at)
        self.ended_at = ended.isoformat()
        self.duration_ms = max(0, int((ended - started).total_seconds() * 1000))
        self.error = error
        self.status = status


class DeploymentRequestResult(BaseModel):
    """Outcome of asking the orchestrator for a deployment."""

    accepted: bool = Field(..., description="A deployment was started or queued")
    queued: bool = Field(default=False, description="Waiting for the running deployment")
    deployment: Optional[Deployment] = None
    message: str = ""


class RollbackResult(BaseModel):
    """Outcome of a rollback attempt."""

    success: bool
    target_revision: Optional[str] = None
    skipped: bool = False
    error: Optional[str] = None
