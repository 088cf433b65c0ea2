"""Job execution record and the wire payloads built from it."""

import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ota_agent.models.status import JobStatus, StepEnum


def _stringify(details: Any) -> dict[str, str]:
    if not isinstance(details, dict):
        return {}
    return {str(k): v if isinstance(v, str) else json.dumps(v) for k, v in details.items()}


class ExecutionRecord(BaseModel):
    """Snapshot of one job execution as delivered by the jobs service.

    Example (execution section of a notification):
        {
            "jobId": "mender_install-7cf96d",
            "status": "IN_PROGRESS",
            "statusDetails": {"step": "rebooting"},
            "jobDocument": {"operation": "mender_install", "url": "https://..."},
            "versionNumber": 2,
            "executionNumber": 1
        }
    """

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId", min_length=1)
    thing_name: str = Field("", alias="thingName")
    status: JobStatus = Field(JobStatus.QUEUED)
    status_details: dict[str, str] = Field(default_factory=dict, alias="statusDetails")
    job_document: dict[str, Any] = Field(default_factory=dict, alias="jobDocument")
    version_number: int = Field(0, alias="versionNumber", ge=0)
    execution_number: int = Field(0, alias="executionNumber", ge=0)
    queued_at: Optional[int] = Field(None, alias="queuedAt")
    started_at: Optional[int] = Field(None, alias="startedAt")
    last_updated_at: Optional[int] = Field(None, alias="lastUpdatedAt")

    @field_validator("status_details", mode="before")
    @classmethod
    def coerce_details(cls, v):
        """statusDetails values are strings on the wire; tolerate null."""
        return _stringify(v)

    @field_validator("job_document", mode="before")
    @classmethod
    def coerce_document(cls, v):
        return v if isinstance(v, dict) else {}

    @property
    def step(self) -> str:
        """Last reported step ("" when the job was never started)."""
        return self.status_details.get("step", StepEnum.FRESH.value)

    def update_payload(self, client_token: str) -> dict[str, Any]:
        """Build the body published to .../jobs/<jobId>/update."""
        return {
            "status": self.status.value,
            "statusDetails": dict(self.status_details),
            "expectedVersion": self.version_number,
            "executionNumber": self.execution_number,
            "includeJobExecutionState": True,
            "clientToken": client_token,
        }


class ExecutionState(BaseModel):
    """executionState section of an update/accepted echo."""

    status: Optional[JobStatus] = None
    status_details: Optional[dict[str, str]] = Field(None, alias="statusDetails")
    version_number: int = Field(..., alias="versionNumber", ge=0)

    @field_validator("status_details", mode="before")
    @classmethod
    def coerce_details(cls, v):
        return None if v is None else _stringify(v)


class UpdateAccepted(BaseModel):
    """Echo published by the service after accepting a status update."""

    execution_state: ExecutionState = Field(..., alias="executionState")
    client_token: Optional[str] = Field(None, alias="clientToken")
    timestamp: Optional[int] = None


def parse_job_envelope(payload: bytes | str, thing_name: str = "") -> Optional[ExecutionRecord]:
    """Decode a notification envelope.

    Returns:
        ExecutionRecord, or None if the envelope has no execution section

    Raises:
        ValueError: payload is not JSON or the execution section is malformed
    """
    document = json.loads(payload)
    if not isinstance(document, dict):
        raise ValueError(f"expected a JSON object, got {type(document).__name__}")
    execution = document.get("execution")
    if not execution:
        return None
    record = ExecutionRecord.model_validate(execution)
    if not record.thing_name:
        record.thing_name = thing_name
    return record
