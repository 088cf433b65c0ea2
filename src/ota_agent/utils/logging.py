"""Logger setup for the agent: journal-friendly console plus optional rotating file."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
ISO_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

# Third-party loggers that are too chatty below WARNING
QUIET_LOGGERS = ("aiomqtt", "uvicorn.access")


def resolve_level(level: Union[int, str]) -> int:
    """Map a LogLevel setting ("debug", "WARN", 20) to a logging level.

    Raises:
        ValueError: for unknown level names
    """
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    if name == "WARN":
        name = "WARNING"
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def setup_logger(
    name: str = "ota_agent",
    log_file: Optional[str] = "./logs/ota-agent.log",
    level: Union[int, str] = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
) -> logging.Logger:
    """Configure the agent logger.

    The console handler is always installed (stderr ends up in the journal
    under systemd). A rotating file is added when log_file is set. Calling
    again only updates the level.

    Args:
        name: Logger name
        log_file: Path to log file, or empty/None for console only
        level: Logging level, as a number or a name
        max_bytes: Max size before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Configured logger instance
    """
    numeric_level = resolve_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(numeric_level)

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(numeric_level)
        return logger

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=ISO_DATEFMT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        )

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    for noisy in QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(max(numeric_level, logging.WARNING))

    return logger
