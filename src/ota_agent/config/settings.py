"""Agent configuration.

Values come from a JSON file (same keys as the field names or their
aliases) and are overridden by command line flags:

    {
        "Port": 8883,
        "CaCertPath": "rootCA.pem",
        "CertificatePath": "cert.pem",
        "PrivateKeyPath": "private.key",
        "Endpoint": "xxxx-ats.iot.eu-west-1.amazonaws.com",
        "ThingName": "rpi3-01",
        "ClientID": "rpi3-01"
    }
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ota_agent.utils.logging import resolve_level

DEFAULT_CONFIG_FILE = "/etc/goagent/goagent.conf"

logger = logging.getLogger("ota_agent.config")


class AgentSettings(BaseModel):
    """Connection, timing and tool settings for the agent."""

    model_config = ConfigDict(populate_by_name=True)

    # Connection
    endpoint: str = Field("", alias="Endpoint", description="MQTT broker host")
    port: int = Field(8883, alias="Port", gt=0, lt=65536)
    ca_cert_path: str = Field("rootCA.pem", alias="CaCertPath")
    certificate_path: str = Field("cert.pem", alias="CertificatePath")
    private_key_path: str = Field("private.key", alias="PrivateKeyPath")
    thing_name: str = Field("", alias="ThingName")
    client_id: str = Field("", alias="ClientID")
    client_token: str = Field("client-token", alias="ClientToken")
    reconnect_interval: float = Field(
        5.0, alias="ReconnectInterval", gt=0, description="Initial reconnect back-off (s)"
    )
    max_reconnect_interval: float = Field(600.0, alias="MaxReconnectInterval", gt=0)

    # Jobs protocol
    publish_timeout: float = Field(
        2.0, alias="PublishTimeout", gt=0, description="Wait for publish ack (s)"
    )
    install_timeout: float = Field(
        600.0, alias="InstallTimeout", gt=0, description="Install deadline (s)"
    )
    monitor_prefix: str = Field("mender", alias="MonitorPrefix")

    # Tools
    mender_binary: str = Field("mender", alias="MenderBinary")
    reboot_command: str = Field("shutdown -r now", alias="RebootCommand")

    # Process
    log_file: str = Field("./logs/ota-agent.log", alias="LogFile")
    log_level: str = Field("INFO", alias="LogLevel")
    api_host: str = Field("127.0.0.1", alias="ApiHost")
    api_port: int = Field(12316, alias="ApiPort", gt=0, lt=65536)

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        resolve_level(v)
        return v


def load_settings(
    config_file: Optional[str] = DEFAULT_CONFIG_FILE,
    overrides: Optional[dict[str, Any]] = None,
) -> AgentSettings:
    """Load settings from a JSON file and apply overrides.

    A missing or unreadable file is logged and ignored. Overrides with a
    None value are skipped so unset flags keep the file value.

    Raises:
        pydantic.ValidationError: if a value is invalid
    """
    values: dict[str, Any] = {}
    if config_file:
        path = Path(config_file)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if isinstance(data, dict):
                values.update(data)
            else:
                logger.warning(f"Invalid config file {path} - ignoring")
        except FileNotFoundError:
            logger.info(f"Config file {path} not found - using defaults")
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Invalid config file {path} - ignoring: {e}")

    settings = AgentSettings.model_validate(values)
    if overrides:
        changes = {k: v for k, v in overrides.items() if v is not None}
        if changes:
            settings = AgentSettings.model_validate({**settings.model_dump(), **changes})
    return settings
