"""FastAPI application and entry point for the OTA jobs agent."""

from contextlib import asynccontextmanager
from typing import Optional

import click
import uvicorn
from fastapi import FastAPI

from ota_agent.api.routes import router
from ota_agent.config.settings import DEFAULT_CONFIG_FILE, AgentSettings, load_settings
from ota_agent.services.dispatcher import JobDispatcher
from ota_agent.services.mender import MenderUpdater
from ota_agent.services.orchestrator import UpdateOrchestrator
from ota_agent.services.process import SystemRebooter
from ota_agent.transport.base import Transport
from ota_agent.transport.mqtt import MqttTransport
from ota_agent.utils.logging import setup_logger


def create_app(
    settings: Optional[AgentSettings] = None,
    transport: Optional[Transport] = None,
    orchestrator: Optional[UpdateOrchestrator] = None,
) -> FastAPI:
    """Build the application; collaborators default to the real ones."""
    settings = settings or AgentSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup: connect, subscribe, request pending jobs.

        Shutdown: cancel sessions, unsubscribe, disconnect.
        """
        logger = setup_logger("ota_agent", settings.log_file, level=settings.log_level)
        logger.info(f"OTA jobs agent starting for thing {settings.thing_name}")

        conn = transport or MqttTransport(settings)
        orch = orchestrator or UpdateOrchestrator(
            MenderUpdater(settings.mender_binary),
            SystemRebooter(settings.reboot_command),
            install_timeout=settings.install_timeout,
        )
        dispatcher = JobDispatcher(
            conn,
            orch,
            settings.thing_name,
            client_token=settings.client_token,
            publish_timeout=settings.publish_timeout,
            monitor_prefix=settings.monitor_prefix,
        )
        app.state.settings = settings
        app.state.orchestrator = orch
        app.state.dispatcher = dispatcher

        await conn.connect()
        await dispatcher.start()
        logger.info("OTA jobs agent ready")

        yield

        logger.info("OTA jobs agent shutting down...")
        await dispatcher.stop()
        await conn.disconnect()

    app = FastAPI(
        title="OTA Jobs Agent",
        description="Executes firmware update jobs dispatched over MQTT",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(router)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {
            "status": "ok",
            "service": "ota-jobs-agent",
            "version": "1.0.0",
            "thing_name": settings.thing_name,
        }

    return app


@click.command()
@click.option("--config", "config_file", default=DEFAULT_CONFIG_FILE, show_default=True,
              help="JSON configuration file; flags override its values")
@click.option("--port", type=int, default=None, help="MQTT port (8883)")
@click.option("--cacert", "ca_cert_path", default=None, help="CA certificate path")
@click.option("--cert", "certificate_path", default=None, help="Device certificate path")
@click.option("--key", "private_key_path", default=None, help="Private key path")
@click.option("--endpoint", default=None, help="MQTT endpoint")
@click.option("--thing-name", "thing_name", default=None, help="Thing name")
@click.option("--client-id", "client_id", default=None, help="MQTT client id")
def main(config_file, **overrides):
    """Run the agent until interrupted."""
    settings = load_settings(config_file, overrides)
    if not settings.endpoint or not settings.thing_name:
        raise click.UsageError("endpoint and thing name are required")

    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
        access_log=False,
    )


if __name__ == "__main__":
    main()
