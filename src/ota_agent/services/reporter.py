"""Job execution status reporting with optimistic versioning."""

import asyncio
import json
import logging
import time
from typing import Optional

from pydantic import ValidationError

from ota_agent.models.errors import JobError, TransportError
from ota_agent.models.execution import ExecutionRecord, UpdateAccepted
from ota_agent.models.status import JobStatus
from ota_agent.transport.base import JobTopics, Transport


class JobReporter:
    """Single writer of one job's ExecutionRecord.

    Every status update carries the locally tracked versionNumber as
    expectedVersion. The service echoes accepted updates (and version
    mismatches) with its own versionNumber; echoes are queued by the
    transport callback and applied by the reporter right before the next
    publish, so the record is only ever mutated here.

    Terminal reports (success/fail/reject) are sent at most once. After a
    terminal report, or terminate(), the echo subscriptions are released
    and the record no longer changes.
    """

    def __init__(
        self,
        transport: Transport,
        record: ExecutionRecord,
        topics: JobTopics,
        client_token: str = "client-token",
        publish_timeout: float = 2.0,
    ):
        """Initialize reporter.

        Args:
            transport: Shared pub/sub connection
            record: Execution snapshot from the job notification (copied)
            topics: Topic names for this thing
            client_token: clientToken sent with every update
            publish_timeout: Seconds to wait for a publish acknowledgment
        """
        self.logger = logging.getLogger("ota_agent.reporter")
        self.transport = transport
        self.topics = topics
        self.client_token = client_token
        self.publish_timeout = publish_timeout

        self._record = record.model_copy(deep=True)
        self._echoes: asyncio.Queue = asyncio.Queue()
        self._lock = asyncio.Lock()
        self._awaiting_echo = False
        self._terminal = False
        self._subscriptions: list[str] = []

    # --- record accessors ---

    @property
    def job_id(self) -> str:
        return self._record.job_id

    @property
    def thing_name(self) -> str:
        return self._record.thing_name or self.topics.thing_name

    @property
    def status(self) -> JobStatus:
        return self._record.status

    @property
    def step(self) -> str:
        return self._record.step

    @property
    def version_number(self) -> int:
        return self._record.version_number

    @property
    def is_terminal(self) -> bool:
        return self._terminal

    @property
    def is_subscribed(self) -> bool:
        return bool(self._subscriptions)

    def snapshot(self) -> ExecutionRecord:
        """Copy of the current record."""
        return self._record.model_copy(deep=True)

    # --- echo synchronization ---

    @property
    def _echo_topics(self) -> tuple[str, str]:
        accepted = self.topics.update_accepted(self.job_id)
        return accepted, accepted[: -len("accepted")] + "rejected"

    async def subscribe(self) -> None:
        """Subscribe to the update echoes of this job.

        Raises:
            TransportError: If the subscription fails
        """
        accepted, rejected = self._echo_topics
        error: Optional[TransportError] = None
        for topic, handler in ((accepted, self._on_accepted), (rejected, self._on_rejected)):
            # A failed subscribe may still be restored by the transport on
            # reconnect, so it is released like a successful one
            if topic not in self._subscriptions:
                self._subscriptions.append(topic)
            try:
                await self.transport.subscribe(topic, handler)
            except TransportError as e:
                self.logger.warning(f"Job {self.job_id}: failed to subscribe {topic}: {e}")
                error = error or e
        if error is not None:
            raise error
        self.logger.debug(f"Job {self.job_id}: listening on {accepted}")

    async def _on_accepted(self, topic: str, payload: bytes) -> None:
        if self._terminal:
            self.logger.debug(f"Job {self.job_id}: ignoring echo after terminal report")
            return
        try:
            echo = UpdateAccepted.model_validate_json(payload)
        except ValidationError as e:
            self.logger.warning(f"Job {self.job_id}: malformed echo on {topic}: {e}")
            return
        self._echoes.put_nowait(echo)

    async def _on_rejected(self, topic: str, payload: bytes) -> None:
        try:
            document = json.loads(payload)
        except ValueError:
            self.logger.warning(f"Job {self.job_id}: malformed rejection on {topic}")
            return
        if not isinstance(document, dict):
            return
        self.logger.warning(
            f"Job {self.job_id}: update rejected: code={document.get('code')}, "
            f"message={document.get('message')}"
        )
        # VersionMismatch carries the service's execution state
        if "executionState" in document and not self._terminal:
            try:
                echo = UpdateAccepted.model_validate(document)
            except ValidationError:
                return
            self._echoes.put_nowait(echo)

    def _apply_echoes(self) -> None:
        while not self._echoes.empty():
            echo = self._echoes.get_nowait()
            state = echo.execution_state
            self.logger.debug(
                f"Job {self.job_id}: version {self._record.version_number} -> "
                f"{state.version_number}"
            )
            self._record.version_number = state.version_number
            if state.status_details is not None:
                self._record.status_details = state.status_details
            self._awaiting_echo = False

    async def _wait_for_echo(self) -> None:
        """Give the echo of the previous update a chance to arrive."""
        if not self._awaiting_echo or not self._echoes.empty():
            return
        try:
            echo = await asyncio.wait_for(self._echoes.get(), self.publish_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(
                f"Job {self.job_id}: no echo for the previous update, "
                f"publishing with expectedVersion={self._record.version_number}"
            )
            self._awaiting_echo = False
            return
        self._echoes.put_nowait(echo)

    # --- publishing ---

    async def _publish_status(
        self, status: JobStatus, details: dict[str, str], note: Optional[str] = None
    ) -> bool:
        """Publish a status update; returns False if a terminal report was latched.

        Raises:
            TransportError: If the publish is not acknowledged in time
        """
        async with self._lock:
            if self._terminal:
                self.logger.info(
                    f"Job {self.job_id}: already {self._record.status.value}, "
                    f"not reporting {status.value}"
                )
                return False

            await self._wait_for_echo()
            self._apply_echoes()

            self._record.status = status
            self._record.status_details = dict(details)
            payload = self._record.update_payload(self.client_token)
            topic = self.topics.update(self.job_id)

            self.logger.info(
                f"Job {self.job_id}: {status.value} {details} "
                f"(expectedVersion={payload['expectedVersion']})"
            )
            try:
                await asyncio.wait_for(
                    self.transport.publish(topic, json.dumps(payload), qos=1),
                    self.publish_timeout,
                )
            except asyncio.TimeoutError:
                raise TransportError(
                    f"Update of job {self.job_id} not acknowledged within "
                    f"{self.publish_timeout}s"
                )

            self._awaiting_echo = True
            if status.is_terminal:
                self._terminal = True

        await self.report_progress(note if note is not None else _describe(status, details))
        if status.is_terminal:
            await self._release()
        return True

    async def in_progress(self, details: dict[str, str], note: Optional[str] = None) -> bool:
        """Report IN_PROGRESS with the given status details.

        Args:
            details: New statusDetails, e.g. {"step": "installing"}
            note: Line for the monitoring topic (defaults to a status summary)

        Raises:
            TransportError: If the publish is not acknowledged in time
        """
        return await self._publish_status(JobStatus.IN_PROGRESS, details, note)

    async def success(self, details: dict[str, str]) -> bool:
        """Report SUCCEEDED and release the echo subscription."""
        return await self._publish_status(JobStatus.SUCCEEDED, details)

    async def fail(self, code: str, message: str) -> bool:
        """Report FAILED with an error code and release the echo subscription."""
        error = JobError(code, message)
        return await self._publish_status(JobStatus.FAILED, {"error": str(error)})

    async def reject(self, code: str, message: str) -> bool:
        """Report REJECTED with an error code and release the echo subscription."""
        error = JobError(code, message)
        return await self._publish_status(JobStatus.REJECTED, {"error": str(error)})

    async def terminate(self) -> None:
        """Release the echo subscription without reporting anything."""
        await self._release()

    async def _release(self) -> None:
        if not self._subscriptions:
            return
        topics, self._subscriptions = self._subscriptions, []
        for topic in topics:
            try:
                await self.transport.unsubscribe(topic)
            except TransportError as e:
                self.logger.warning(f"Job {self.job_id}: failed to unsubscribe {topic}: {e}")
        self.logger.debug(f"Job {self.job_id}: echo subscription released")

    # --- monitoring ---

    async def report_progress(self, text: str) -> None:
        """Best-effort progress line on the monitoring topic (QoS 0)."""
        payload = {"progress": text, "ts": int(time.time())}
        topic = self.topics.progress(self.job_id)
        try:
            await asyncio.wait_for(
                self.transport.publish(topic, json.dumps(payload), qos=0),
                self.publish_timeout,
            )
        except (TransportError, asyncio.TimeoutError) as e:
            self.logger.debug(f"Job {self.job_id}: progress line dropped: {e}")


def _describe(status: JobStatus, details: dict[str, str]) -> str:
    summary = " ".join(f"{k}={v}" for k, v in details.items())
    return f"{status.value} {summary}".strip()
