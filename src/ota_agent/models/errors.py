"""Exceptions shared by the agent services."""


class JobError(Exception):
    """Job-level error reported to the jobs service as an error code."""

    # Validation
    MISSING_URL = "ERR_MENDER_MISSING_URL"
    INVALID_OPERATION = "ERR_JOB_INVALID_OPERATION"
    # Execution
    INSTALL_FAILED = "ERR_MENDER_INSTALL_FAILED"
    INSTALL_TIMEOUT = "ERR_MENDER_INSTALL_TIMEOUT"
    COMMIT_FAILED = "ERR_MENDER_COMMIT"
    ROLLBACK_FAILED = "ERR_MENDER_ROLLBACK_FAIL"
    REBOOT_FAILED = "ERROR_UNABLE_TO_REBOOT"

    def __init__(self, code: str, message: str):
        super().__init__(f"code {code}, msg: {message}")
        self.code = code
        self.message = message


class JobValidationError(JobError):
    """Job document could not be turned into a JobDescriptor."""


class TransportError(Exception):
    """Publish/subscribe failed or was not acknowledged in time."""


class UpdaterError(Exception):
    """Updater tool exited with an error."""
