"""Command line tools for feeding protocol messages through the engine."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from voicerelay.backend import EchoBackendClient, HttpBackendClient
from voicerelay.bus import FinalizationNotice
from voicerelay.config import Settings, get_settings
from voicerelay.engine import TranscriptRelayEngine
from voicerelay.errors import ConfigurationError
from voicerelay.logging_utils import configure_logging
from voicerelay.relay import BackendClient, RelayPayload

app = typer.Typer(name="voicerelay", help="Realtime transcript finalization and relay", add_completion=False)


def _is_frame(line: str) -> bool:
    return bool(line.strip()) and not line.lstrip().startswith("#")


def _read_capture(path: Path) -> list[str]:
    return [line for line in path.read_text(encoding="utf-8").splitlines() if _is_frame(line)]


async def _stdin_frames() -> AsyncIterator[str]:
    while True:
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            return
        if _is_frame(line):
            yield line


def _echo_relay(payload: RelayPayload) -> None:
    marker = " (degraded)" if payload.degraded else ""
    typer.echo(f"relay [{payload.speaker.value}:{payload.item_id or '-'}]{marker} {payload.text}")


def _echo_notice(notice: FinalizationNotice) -> None:
    typer.echo(f"final [{notice.speaker.value}:{notice.item_id or '-'}] {notice.confidence.value}: {notice.text}")


def _summary_table(diagnostics: dict[str, Any]) -> Table:
    table = Table(title="replay summary")
    table.add_column("metric")
    table.add_column("value")
    table.add_row("turns", str(diagnostics["turn_index"] + 1))
    for group, counts in diagnostics["events"].items():
        table.add_row(f"events.{group}", str(sum(counts.values())))
    for status, count in diagnostics["utterances"].items():
        table.add_row(f"utterances.{status}", str(count))
    table.add_row("duplicates_ignored", str(diagnostics["duplicates_ignored"]))
    for outcome, count in diagnostics["relay"].get("outcomes", {}).items():
        table.add_row(f"relay.{outcome}", str(count))
    return table


def _load_settings(*, session_id: str | None = None, backend_url: str | None = None) -> Settings:
    overrides: dict[str, Any] = {}
    if session_id:
        overrides["session_id"] = session_id
    if backend_url:
        overrides["backend_url"] = backend_url
    try:
        return get_settings(**overrides)
    except ConfigurationError as exc:
        typer.echo(f"invalid configuration: {exc}", err=True)
        raise typer.Exit(code=2) from exc


def _build_engine(settings: Settings, *, show_notices: bool) -> tuple[TranscriptRelayEngine, BackendClient]:
    backend: BackendClient
    if settings.backend_url:
        backend = HttpBackendClient(
            settings.backend_url,
            settings.session_id,
            timeout_seconds=settings.relay_timeout_seconds,
        )
    else:
        backend = EchoBackendClient(_echo_relay)
    engine = TranscriptRelayEngine(settings, backend=backend)
    if show_notices:
        engine.on_finalized(_echo_notice)
    return engine, backend


async def _replay(engine: TranscriptRelayEngine, messages: list[str]) -> None:
    async with engine:
        for message in messages:
            engine.handle(message)
            # Let relay tasks progress between frames, as a live transport would.
            await asyncio.sleep(0)


@app.command()
def replay(
    capture: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON-lines file of protocol messages"),  # noqa: B008
    backend_url: str | None = typer.Option(None, "--backend-url", help="POST relays to this service instead of echoing"),
    session_id: str | None = typer.Option(None, "--session-id", help="Backend session id"),
    show_notices: bool = typer.Option(False, "--notices", help="Also print UI finalization notices"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Skip the summary table"),
) -> None:
    """Feed a captured event stream through the engine and report every relay."""

    settings = _load_settings(session_id=session_id, backend_url=backend_url)
    configure_logging(profile="replay", level=settings.log_level)
    engine, backend = _build_engine(settings, show_notices=show_notices)

    try:
        asyncio.run(_replay(engine, _read_capture(capture)))
    finally:
        if isinstance(backend, HttpBackendClient):
            backend.close()
    if not quiet:
        Console().print(_summary_table(engine.diagnostics()))


@app.command()
def stream(
    backend_url: str | None = typer.Option(None, "--backend-url", help="POST relays to this service instead of echoing"),
    session_id: str | None = typer.Option(None, "--session-id", help="Backend session id"),
    show_notices: bool = typer.Option(False, "--notices", help="Also print UI finalization notices"),
) -> None:
    """Relay protocol messages read as JSON lines from stdin until it closes."""

    settings = _load_settings(session_id=session_id, backend_url=backend_url)
    configure_logging(profile="stream", level=settings.log_level, json_lines=settings.log_json)
    engine, backend = _build_engine(settings, show_notices=show_notices)

    try:
        asyncio.run(engine.run(_stdin_frames()))
    finally:
        if isinstance(backend, HttpBackendClient):
            backend.close()
    diagnostics = engine.diagnostics()
    logger.bind(session=settings.session_id).info(
        "stream.finished turns={} relays={}",
        diagnostics["turn_index"] + 1,
        diagnostics["relay"].get("outcomes", {}),
    )


@app.command("show-config")
def show_config() -> None:
    """Print the effective settings."""

    settings = _load_settings()
    typer.echo(json.dumps(settings.model_dump(), indent=2, ensure_ascii=False))
