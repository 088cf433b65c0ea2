"""Pydantic models for the local status API."""

from typing import Optional

from pydantic import BaseModel, Field

from ota_agent.models.status import SessionState


class SessionData(BaseModel):
    """One update session as seen by the agent."""

    job_id: str = Field(..., description="Job identifier")
    operation: Optional[str] = Field(None, description="install / rollback, None if rejected")
    state: SessionState = Field(..., description="Local session state")
    step: str = Field(..., description="Last reported statusDetails.step")
    version_number: int = Field(..., description="Locally tracked versionNumber")
    started_at: str = Field(..., description="ISO 8601 start time")
    finished_at: Optional[str] = Field(None, description="ISO 8601 end time")


class JobsResponse(BaseModel):
    """GET /api/v1.0/jobs response."""

    code: int = Field(default=200, description="Application-level status code")
    msg: str = Field(default="success")
    data: list[SessionData] = Field(default_factory=list)
    active: list[str] = Field(default_factory=list, description="Jobs with a running session")


class JobResponse(BaseModel):
    """GET /api/v1.0/jobs/{job_id} response."""

    code: int = Field(..., description="Application-level status code (200/404)")
    msg: str = Field(...)
    data: Optional[SessionData] = None
