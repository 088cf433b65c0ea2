"""Job document models.

A job document is decoded eagerly into one of two descriptors:

    {"operation": "mender_install", "url": "https://..."}  → InstallJob
    {"operation": "mender_rollback"}                        → RollbackJob

Anything else raises JobValidationError with a code per cause.
"""

from typing import Any, Literal, Union

from pydantic import BaseModel, Field, ValidationError

from ota_agent.models.errors import JobError, JobValidationError


class InstallJob(BaseModel):
    """Install a firmware artifact from a URL."""

    operation: Literal["install"] = "install"
    url: str = Field(..., min_length=1, description="Artifact source URL")


class RollbackJob(BaseModel):
    """Roll back to the previously committed firmware."""

    operation: Literal["rollback"] = "rollback"


JobDescriptor = Union[InstallJob, RollbackJob]

OPERATIONS: dict[str, type[BaseModel]] = {
    "mender_install": InstallJob,
    "install": InstallJob,
    "mender_rollback": RollbackJob,
    "rollback": RollbackJob,
}


def parse_job_document(document: dict[str, Any]) -> JobDescriptor:
    """Validate a raw job document.

    Args:
        document: jobDocument section of the execution

    Returns:
        InstallJob or RollbackJob

    Raises:
        JobValidationError: INVALID_OPERATION for an unknown or missing
            operation, MISSING_URL for an install without url
    """
    operation = document.get("operation") if isinstance(document, dict) else None
    model = OPERATIONS.get(operation) if isinstance(operation, str) else None
    if model is None:
        raise JobValidationError(
            JobError.INVALID_OPERATION, "unrecognized or missing operation"
        )

    fields = {k: v for k, v in document.items() if k != "operation"}
    try:
        return model(**fields)
    except ValidationError:
        raise JobValidationError(JobError.MISSING_URL, "missing url parameter")
