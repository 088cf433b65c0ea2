"""Job notification dispatcher."""

import asyncio
import json
import logging
from typing import Optional

from pydantic import ValidationError

from ota_agent.models.errors import TransportError
from ota_agent.models.execution import ExecutionRecord, parse_job_envelope
from ota_agent.services.orchestrator import UpdateOrchestrator
from ota_agent.services.reporter import JobReporter
from ota_agent.transport.base import JobTopics, Transport


class JobDispatcher:
    """Turns job notifications into update sessions.

    On start it subscribes to the job topics of the thing and asks the
    service for the next pending job (start-next). A job left in progress
    before a reboot is redelivered through start-next/accepted, which is
    how the agent resumes.
    """

    def __init__(
        self,
        transport: Transport,
        orchestrator: UpdateOrchestrator,
        thing_name: str,
        client_token: str = "client-token",
        publish_timeout: float = 2.0,
        monitor_prefix: str = "mender",
    ):
        self.logger = logging.getLogger("ota_agent.dispatcher")
        self.transport = transport
        self.orchestrator = orchestrator
        self.topics = JobTopics(thing_name, monitor_prefix)
        self.client_token = client_token
        self.publish_timeout = publish_timeout
        self._tasks: dict[str, asyncio.Task] = {}
        self._started = False

    @property
    def job_topics(self) -> list[str]:
        return [
            self.topics.notify_next,
            self.topics.get_accepted,
            self.topics.get_rejected,
            self.topics.start_next_accepted,
            self.topics.start_next_rejected,
        ]

    @property
    def active_jobs(self) -> list[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    async def start(self) -> None:
        """Subscribe to the job topics and request the next pending job.

        Raises:
            TransportError: If subscribing or publishing fails
        """
        await self.transport.subscribe(self.topics.notify_next, self.handle_job_message)
        await self.transport.subscribe(self.topics.get_accepted, self.handle_job_message)
        await self.transport.subscribe(self.topics.get_rejected, self.handle_rejected)
        await self.transport.subscribe(self.topics.start_next_accepted, self.handle_job_message)
        await self.transport.subscribe(self.topics.start_next_rejected, self.handle_rejected)
        self._started = True

        self.logger.info("Checking for pending jobs")
        await self.transport.publish(
            self.topics.start_next,
            json.dumps({"clientToken": self.client_token}),
            qos=1,
        )

    async def join(self) -> None:
        """Wait until every running session has ended."""
        while self.active_jobs:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel running sessions and unsubscribe from the job topics."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        if self._started:
            self._started = False
            for topic in self.job_topics:
                try:
                    await self.transport.unsubscribe(topic)
                except TransportError as e:
                    self.logger.warning(f"Failed to unsubscribe {topic}: {e}")

    async def handle_job_message(self, topic: str, payload: bytes) -> None:
        """Transport callback for notify-next, get/accepted and start-next/accepted."""
        try:
            record = parse_job_envelope(payload, self.topics.thing_name)
        except (ValueError, ValidationError) as e:
            self.logger.warning(f"Malformed job message on {topic} - ignoring: {e}")
            return
        if record is None:
            self.logger.info(f"Not a job - ignoring message on {topic}")
            return
        self.dispatch(record)

    async def handle_rejected(self, topic: str, payload: bytes) -> None:
        self.logger.warning(f"Request rejected on {topic}: {payload.decode('utf-8', errors='replace')}")

    def dispatch(self, record: ExecutionRecord) -> Optional[asyncio.Task]:
        """Start a session for the job without waiting for it.

        Returns:
            The session task, or None if the job is already being processed
        """
        running = self._tasks.get(record.job_id)
        if running is not None and not running.done():
            self.logger.info(f"Job {record.job_id} already in progress - ignoring redelivery")
            return None

        reporter = JobReporter(
            self.transport,
            record,
            self.topics,
            client_token=self.client_token,
            publish_timeout=self.publish_timeout,
        )
        task = asyncio.create_task(self._run_session(record, reporter), name=f"job-{record.job_id}")
        self._tasks[record.job_id] = task
        task.add_done_callback(lambda t, job_id=record.job_id: self._forget(job_id, t))
        return task

    def _forget(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(
                f"Session for job {job_id} crashed: {task.exception()}",
                exc_info=task.exception(),
            )

    async def _run_session(self, record: ExecutionRecord, reporter: JobReporter) -> None:
        try:
            await reporter.subscribe()
        except TransportError as e:
            # Not fatal: updates still go out, only version resync is lost
            self.logger.warning(f"Job {record.job_id}: echo subscription failed: {e}")
        await self.orchestrator.process(record, reporter)
