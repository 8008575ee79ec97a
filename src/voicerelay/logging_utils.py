"""Loguru setup for the command line entry points."""

from __future__ import annotations

import sys
from typing import Any, Literal

from loguru import logger
from rich.console import Console
from rich.logging import RichHandler

LogProfile = Literal["stream", "replay"]

_STREAM_FORMAT = "{time:HH:mm:ss.SSS} {level:<7} [{extra[session]}] {name}: {message}"
_active: tuple[LogProfile, str, bool] | None = None


def _stderr_sink(message: Any) -> None:
    # Looked up per write so a replaced sys.stderr is honoured.
    sys.stderr.write(message)


def _handler(profile: LogProfile, level: str, json_lines: bool) -> dict[str, Any]:
    if profile == "replay":
        return {
            "sink": RichHandler(console=Console(stderr=True), show_time=False, show_path=False, markup=False),
            "level": level,
            "format": "[{extra[session]}] {message}",
        }
    return {
        "sink": _stderr_sink,
        "level": level,
        "format": _STREAM_FORMAT,
        "serialize": json_lines,
        "backtrace": False,
        "diagnose": False,
    }


def configure_logging(*, profile: LogProfile = "stream", level: str = "INFO", json_lines: bool = False) -> None:
    """Route loguru output for one of the entry points.

    ``stream`` writes plain or JSON lines to stderr for long-running ingestion.
    ``replay`` renders through rich next to the echoed relays.
    Calling again with the same arguments is a no-op.
    """

    global _active
    wanted = (profile, level.upper(), json_lines)
    if wanted == _active:
        return
    logger.configure(handlers=[_handler(*wanted)], extra={"session": "-"})
    _active = wanted
