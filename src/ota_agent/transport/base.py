"""Publish/subscribe transport contract and AWS IoT Jobs topic layout."""

from typing import Awaitable, Callable, Protocol

MessageHandler = Callable[[str, bytes], Awaitable[None]]

JOB_BASE_TOPIC = "$aws/things/{thing}/jobs/{suffix}"


class Transport(Protocol):
    """Connection shared by every component of the agent.

    Implementations must tolerate concurrent publish/subscribe calls from
    independent sessions. publish() returns once the broker acknowledged
    the message (QoS >= 1) and raises TransportError otherwise.
    """

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def publish(
        self, topic: str, payload: bytes | str, qos: int = 0, retain: bool = False
    ) -> None: ...

    async def subscribe(self, topic: str, handler: MessageHandler, qos: int = 0) -> None: ...

    async def unsubscribe(self, topic: str) -> None: ...


def topic_matches(topic_filter: str, topic: str) -> bool:
    """MQTT topic filter matching with "+" and "#" wildcards."""
    filter_levels = topic_filter.split("/")
    topic_levels = topic.split("/")
    for idx, level in enumerate(filter_levels):
        if level == "#":
            return True
        if idx >= len(topic_levels):
            return False
        if level != "+" and level != topic_levels[idx]:
            return False
    return len(filter_levels) == len(topic_levels)


class JobTopics:
    """Topic names for one thing."""

    def __init__(self, thing_name: str, monitor_prefix: str = "mender"):
        self.thing_name = thing_name
        self.monitor_prefix = monitor_prefix

    def jobs(self, suffix: str) -> str:
        return JOB_BASE_TOPIC.format(thing=self.thing_name, suffix=suffix)

    @property
    def notify_next(self) -> str:
        return self.jobs("notify-next")

    @property
    def get_accepted(self) -> str:
        return self.jobs("+/get/accepted")

    @property
    def get_rejected(self) -> str:
        return self.jobs("+/get/rejected")

    @property
    def start_next(self) -> str:
        return self.jobs("start-next")

    @property
    def start_next_accepted(self) -> str:
        return self.jobs("start-next/accepted")

    @property
    def start_next_rejected(self) -> str:
        return self.jobs("start-next/rejected")

    def update(self, job_id: str) -> str:
        return self.jobs(f"{job_id}/update")

    def update_accepted(self, job_id: str) -> str:
        return self.jobs(f"{job_id}/update/accepted")

    def progress(self, job_id: str) -> str:
        return f"{self.monitor_prefix}/{self.thing_name}/job/{job_id}/progress"
