"""Update orchestration: the per-job state machine.

The only memory of progress is statusDetails["step"] as last reported to
the jobs service. A redelivered job is resumed from that value:

    operation   step                  action
    install     "" / installing       install, then reboot
    install     rebooting / rebooted  commit
    rollback    any                   rollback
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from ota_agent.models.errors import JobError, JobValidationError, TransportError
from ota_agent.models.execution import ExecutionRecord
from ota_agent.models.job import InstallJob, JobDescriptor, RollbackJob, parse_job_document
from ota_agent.models.status import SessionState, StepEnum
from ota_agent.services.mender import Updater
from ota_agent.services.process import Rebooter
from ota_agent.services.reporter import JobReporter

RESUME_STEPS = (StepEnum.REBOOTING.value, StepEnum.REBOOTED.value)


class JobSession:
    """One execution of the state machine for one job."""

    def __init__(self, reporter: JobReporter, step: str):
        self.reporter = reporter
        self.job_id = reporter.job_id
        self.initial_step = step
        self.operation: Optional[str] = None
        self.state = SessionState.IDLE
        self.started_at = datetime.now()
        self.finished_at: Optional[datetime] = None
        self.reboot_task: Optional[asyncio.Task] = None

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "operation": self.operation,
            "state": self.state.value,
            "step": self.reporter.step,
            "version_number": self.reporter.version_number,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class UpdateOrchestrator:
    """Drives the Updater for each job and reports every transition."""

    def __init__(
        self,
        updater: Updater,
        rebooter: Rebooter,
        install_timeout: float = 600.0,
        max_sessions: int = 20,
    ):
        """Initialize orchestrator.

        Args:
            updater: Install/commit/rollback tool
            rebooter: Reboot trigger invoked after a successful install
            install_timeout: Hard deadline for an install (seconds)
            max_sessions: Finished sessions kept for the status API
        """
        self.logger = logging.getLogger("ota_agent.orchestrator")
        self.updater = updater
        self.rebooter = rebooter
        self.install_timeout = install_timeout
        self.max_sessions = max_sessions
        self.sessions: dict[str, JobSession] = {}

    async def process(self, record: ExecutionRecord, reporter: JobReporter) -> JobSession:
        """Validate the job document and run the job to its end.

        Invalid documents are rejected without touching the Updater. The
        reporter's echo subscription is always released when the session
        ends.
        """
        session = JobSession(reporter, record.step)
        self.sessions.pop(session.job_id, None)
        self.sessions[session.job_id] = session
        self.logger.info(
            f"Processing job {session.job_id}: document={record.job_document}, "
            f"step={record.step!r}, version={record.version_number}"
        )

        try:
            try:
                job = parse_job_document(record.job_document)
            except JobValidationError as e:
                self.logger.warning(f"Invalid job document for {session.job_id} - rejecting: {e}")
                session.state = SessionState.REJECTED
                await self._report(session, reporter.reject(e.code, e.message))
                return session

            session.operation = job.operation
            await self.execute(session, job)
        finally:
            session.finished_at = datetime.now()
            self._prune_sessions()
            await reporter.terminate()
            self.logger.info(f"Job {session.job_id} session ended: {session.state.value}")

        return session

    def _prune_sessions(self) -> None:
        """Drop the oldest finished sessions beyond max_sessions."""
        finished = [job_id for job_id, s in self.sessions.items() if s.is_finished]
        for job_id in finished[: max(0, len(finished) - self.max_sessions)]:
            del self.sessions[job_id]

    async def execute(self, session: JobSession, job: JobDescriptor) -> None:
        if isinstance(job, RollbackJob):
            await self._rollback(session)
        elif isinstance(job, InstallJob):
            if session.initial_step in RESUME_STEPS:
                await self._commit(session)
            else:
                await self._install(session, job.url)
        else:
            raise TypeError(f"Unsupported job descriptor: {job!r}")

    # --- branches ---

    async def _install(self, session: JobSession, url: str) -> None:
        session.state = SessionState.INSTALLING
        await self._step(session, StepEnum.INSTALLING)

        progress: asyncio.Queue = asyncio.Queue()
        install_task = asyncio.create_task(self.updater.install(url, progress))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.install_timeout
        next_line: Optional[asyncio.Task] = None

        pending: list[str] = []
        try:
            # The result wins over queued lines; those are relayed below
            while not install_task.done():
                if next_line is None:
                    next_line = asyncio.create_task(progress.get())
                remaining = deadline - loop.time()
                done: set = set()
                if remaining > 0:
                    done, _ = await asyncio.wait(
                        {next_line, install_task},
                        timeout=remaining,
                        return_when=asyncio.FIRST_COMPLETED,
                    )

                if install_task in done:
                    break
                if next_line in done:
                    line = next_line.result()
                    next_line = None
                    await self._relay(session, line)
                    continue

                self.logger.error(
                    f"Install of job {session.job_id} did not finish within "
                    f"{self.install_timeout:g}s"
                )
                # Report first; the Updater may take a while to stop
                install_task.cancel()
                await self._fail(session, JobError.INSTALL_TIMEOUT, "mender timed out")
                await asyncio.gather(install_task, return_exceptions=True)
                return
        finally:
            if next_line is not None:
                if next_line.done() and not next_line.cancelled():
                    pending.append(next_line.result())
                else:
                    next_line.cancel()
            if not install_task.done():
                await self._cancel(install_task)

        while not progress.empty():
            pending.append(progress.get_nowait())
        for line in pending:
            await self._relay(session, line)

        try:
            install_task.result()
        except Exception as e:
            self.logger.error(f"Install of job {session.job_id} failed: {e}")
            await self._fail(session, JobError.INSTALL_FAILED, str(e))
            return

        session.state = SessionState.REBOOTING
        await self._step(session, StepEnum.REBOOTING)
        await self._reboot(session)

    async def _reboot(self, session: JobSession) -> None:
        session.reboot_task = asyncio.create_task(self.rebooter.reboot())
        try:
            await session.reboot_task
        except Exception as e:
            self.logger.error(f"Could not reboot the system: {e}")
            await self._fail(session, JobError.REBOOT_FAILED, str(e))
            return
        self.logger.info("Rebooting...")
        await session.reporter.terminate()

    async def _commit(self, session: JobSession) -> None:
        # The device came back from the reboot, so the new image booted far
        # enough to reach the jobs service
        session.state = SessionState.REBOOTING
        await self._step(session, StepEnum.REBOOTED)
        try:
            await self.updater.commit()
        except Exception as e:
            self.logger.error(f"Commit of job {session.job_id} failed: {e}")
            await self._fail(session, JobError.COMMIT_FAILED, f"error committing: {e}")
            return
        session.state = SessionState.COMMITTED
        await self._report(session, session.reporter.success({"step": StepEnum.COMMITTED.value}))

    async def _rollback(self, session: JobSession) -> None:
        try:
            await self.updater.rollback()
        except Exception as e:
            self.logger.error(f"Rollback of job {session.job_id} failed: {e}")
            await self._fail(
                session, JobError.ROLLBACK_FAILED, f"unable to run rollback: {e}"
            )
            return
        session.state = SessionState.ROLLED_BACK
        await self._report(
            session, session.reporter.success({"step": StepEnum.ROLLED_BACK.value})
        )

    # --- reporting helpers ---

    async def _step(self, session: JobSession, step: StepEnum) -> None:
        await self._report(session, session.reporter.in_progress({"step": step.value}))

    async def _relay(self, session: JobSession, line: str) -> None:
        self.logger.info(f"[{session.job_id}] {line}")
        await self._report(
            session,
            session.reporter.in_progress({"step": StepEnum.INSTALLING.value}, note=line),
        )

    async def _fail(self, session: JobSession, code: str, message: str) -> None:
        session.state = SessionState.FAILED
        await self._report(session, session.reporter.fail(code, message))

    async def _report(self, session: JobSession, operation) -> None:
        """Await a reporter call; transport errors are logged, not raised."""
        try:
            await operation
        except TransportError as e:
            self.logger.error(f"Failed to report job {session.job_id}: {e}")

    @staticmethod
    async def _cancel(task: asyncio.Task) -> None:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
