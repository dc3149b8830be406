"""
Request bodies for the control endpoints.

Every body may carry the deploy secret as ``secret`` instead of the
X-Deploy-Secret header.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class DeployRequest(BaseModel):
    force: bool = Field(default=False, description="Queue behind a running deployment")
    skip_rollback: bool = Field(default=False, description="Do not roll back on failure")
    secret: Optional[str] = None


class RollbackRequest(BaseModel):
    commit: Optional[str] = Field(default=None, description="Revision to roll back to")
    secret: Optional[str] = None


class CanaryRollbackRequest(BaseModel):
    reason: Optional[str] = None
    secret: Optional[str] = None


class WorkflowTriggerRequest(BaseModel):
    workflow: str = Field(..., min_length=1, description="Workflow file name or id")
    inputs: Dict[str, Any] = Field(default_factory=dict)
    secret: Optional[str] = None
