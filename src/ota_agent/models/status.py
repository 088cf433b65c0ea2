"""Status enums for job executions and update sessions."""

from enum import Enum


class JobStatus(str, Enum):
    """Job execution status as stored by the jobs service."""

    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    TIMED_OUT = "TIMED_OUT"
    REMOVED = "REMOVED"
    CANCELED = "CANCELED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.REJECTED)


class StepEnum(str, Enum):
    """Value of statusDetails["step"], the only durable progress marker.

    Transitions for an install job:
    "" → installing → rebooting → (reboot) → rebooted → committed
    """

    FRESH = ""
    INSTALLING = "installing"
    REBOOTING = "rebooting"
    REBOOTED = "rebooted"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class SessionState(str, Enum):
    """Local state of one update session.

    idle → installing → rebooting
      ↓         ↓           ↓
    committed / rolled_back / failed / rejected
    """

    IDLE = "idle"
    INSTALLING = "installing"
    REBOOTING = "rebooting"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    REJECTED = "rejected"
