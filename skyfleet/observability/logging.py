"""Logging configuration for skyfleet.

skyfleet logs through loguru and stays silent until ``setup_logging`` is
called (library behavior). Console output goes through a rich handler, file
output through loguru's rotating sink.

Example:
    from skyfleet.observability.logging import LogConfig, setup_logging, teardown_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", console=True))
    try:
        orchestrator.allocate(template, ids, min_count=2)
    finally:
        teardown_logging(handler_ids)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from rich.logging import RichHandler

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "TRACE"]

_CONTEXT_KEYS = ("component", "template", "group", "instance_id", "virtual_id")


def _format_context(record: Any) -> str:
    extra = record.get("extra", {})
    parts = [f"{k}={extra[k]}" for k in _CONTEXT_KEYS if k in extra]
    return f" [{' '.join(parts)}]" if parts else ""


CONSOLE_FORMAT = "{message}<dim>{extra[_ctx]}</dim>"

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line}{extra[_ctx]} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum console log level.
        file: Path to log file. None disables file logging.
        console: Whether to log to the terminal through rich.
        rotation: File rotation policy (e.g., "50 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = ".skyfleet/skyfleet.log"
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def setup_logging(config: LogConfig) -> list[int]:
    """Configure logging and return handler IDs for cleanup."""
    logger.remove()
    logger.enable("skyfleet")
    logger.configure(patcher=lambda r: r["extra"].update(_ctx=_format_context(r)))

    handler_ids: list[int] = []

    if config.console:
        hid = logger.add(
            RichHandler(show_time=True, show_path=False, markup=False, rich_tracebacks=True),
            level=config.level,
            format=CONSOLE_FORMAT,
            filter="skyfleet",
        )
        handler_ids.append(hid)

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        hid = logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,
            filter="skyfleet",
        )
        handler_ids.append(hid)

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove handlers and silence skyfleet again."""
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("skyfleet")
