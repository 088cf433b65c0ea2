"""MQTT transport over TLS with client certificates (aiomqtt)."""

import asyncio
import logging
from typing import Optional

import aiomqtt

from ota_agent.config.settings import AgentSettings
from ota_agent.models.errors import TransportError
from ota_agent.transport.base import MessageHandler, topic_matches


class MqttTransport:
    """Long-lived MQTT connection with reconnect and handler dispatch.

    A background task owns the aiomqtt client: it connects, restores every
    subscription, reads messages and reconnects with exponential back-off
    when the connection drops.
    """

    def __init__(self, settings: AgentSettings):
        self.logger = logging.getLogger("ota_agent.transport")
        self.settings = settings
        self._handlers: dict[str, tuple[MessageHandler, int]] = {}
        self._client: Optional[aiomqtt.Client] = None
        self._connected = asyncio.Event()
        self._runner: Optional[asyncio.Task] = None
        self._first_error: Optional[BaseException] = None

    def _make_client(self) -> aiomqtt.Client:
        tls_params = aiomqtt.TLSParameters(
            ca_certs=self.settings.ca_cert_path,
            certfile=self.settings.certificate_path,
            keyfile=self.settings.private_key_path,
        )
        return aiomqtt.Client(
            hostname=self.settings.endpoint,
            port=self.settings.port,
            identifier=self.settings.client_id or None,
            tls_params=tls_params,
        )

    async def connect(self) -> None:
        """Start the connection task and wait for the first CONNACK.

        Raises:
            TransportError: if the first connection attempt fails
        """
        if self._runner is None:
            self._runner = asyncio.create_task(self._run(), name="mqtt-transport")

        waiter = asyncio.create_task(self._connected.wait())
        done, _ = await asyncio.wait(
            {waiter, self._runner}, return_when=asyncio.FIRST_COMPLETED
        )
        if waiter not in done:
            waiter.cancel()
            runner, self._runner = self._runner, None
            error = self._first_error
            if error is None and not runner.cancelled():
                error = runner.exception()
            raise TransportError(f"Failed to connect to {self.settings.endpoint}: {error}")
        self.logger.info(f"Connected to {self.settings.endpoint}:{self.settings.port}")

    async def disconnect(self) -> None:
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        self._client = None
        self._connected.clear()
        self.logger.info("Disconnected")

    async def _run(self) -> None:
        delay = self.settings.reconnect_interval
        first_attempt = True
        while True:
            try:
                client = self._make_client()
                async with client:
                    self._client = client
                    for topic, (_, qos) in list(self._handlers.items()):
                        await client.subscribe(topic, qos=qos)
                    self._connected.set()
                    first_attempt = False
                    delay = self.settings.reconnect_interval
                    async for message in client.messages:
                        await self._dispatch(message.topic.value, message.payload)
                error = aiomqtt.MqttError("Message stream ended")
            except aiomqtt.MqttError as e:
                error = e
            except Exception as e:
                self.logger.error(f"Unexpected transport failure: {e}", exc_info=True)
                error = e

            self._connected.clear()
            self._client = None
            if first_attempt:
                self._first_error = error
                return
            self.logger.warning(f"Connection lost: {error}. Reconnecting in {delay:g}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.settings.max_reconnect_interval)

    async def _dispatch(self, topic: str, payload) -> None:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        elif payload is None:
            payload = b""
        for topic_filter, (handler, _) in list(self._handlers.items()):
            if not topic_matches(topic_filter, topic):
                continue
            try:
                await handler(topic, bytes(payload))
            except Exception as e:
                self.logger.error(f"Handler for {topic_filter} failed: {e}", exc_info=True)

    def _require_client(self) -> aiomqtt.Client:
        if self._client is None or not self._connected.is_set():
            raise TransportError("MQTT client is not connected")
        return self._client

    async def publish(
        self, topic: str, payload: bytes | str, qos: int = 0, retain: bool = False
    ) -> None:
        client = self._require_client()
        try:
            await client.publish(topic, payload, qos=qos, retain=retain)
        except aiomqtt.MqttError as e:
            raise TransportError(f"Publish to {topic} failed: {e}") from e

    async def subscribe(self, topic: str, handler: MessageHandler, qos: int = 0) -> None:
        self._handlers[topic] = (handler, qos)
        client = self._require_client()
        try:
            await client.subscribe(topic, qos=qos)
        except aiomqtt.MqttError as e:
            raise TransportError(f"Subscribe to {topic} failed: {e}") from e
        self.logger.debug(f"Subscribed to {topic}")

    async def unsubscribe(self, topic: str) -> None:
        self._handlers.pop(topic, None)
        if self._client is None or not self._connected.is_set():
            return
        try:
            await self._client.unsubscribe(topic)
        except aiomqtt.MqttError as e:
            raise TransportError(f"Unsubscribe from {topic} failed: {e}") from e
        self.logger.debug(f"Unsubscribed from {topic}")
