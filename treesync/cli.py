"""treesync CLI — Typer application root.

Entry point for the ``treesync`` console script.

``treesync replay FILE`` feeds a recorded stream through a
``StreamSession`` in fixed-size chunks (exercising the same line
reassembly a network read would) and prints the resulting tree and the
stream outcome as JSON.
"""
from __future__ import annotations

import asyncio
import json
import logging
import pathlib
from collections.abc import AsyncIterator
from typing import Any, Optional

import typer

from treesync.config import settings
from treesync.core.reader import read_stream
from treesync.core.session import StreamOutcome, StreamSession
from treesync.core.tree_store import tree_to_flat
from treesync.errors import CLIError, ExitCode, InputNotFoundError

logger = logging.getLogger(__name__)

cli = typer.Typer(
    name="treesync",
    help="treesync — streaming UI tree synchronization tools.",
    no_args_is_help=True,
)


@cli.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level (defaults to TREESYNC_LOG_LEVEL)."
    ),
) -> None:
    """Configure logging for every subcommand."""
    level = log_level or ("DEBUG" if settings.debug else settings.log_level)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# ---------------------------------------------------------------------------
# Testable async core
# ---------------------------------------------------------------------------


async def _file_chunks(path: pathlib.Path, chunk_size: int) -> AsyncIterator[bytes]:
    data = path.read_bytes()
    for start in range(0, len(data), chunk_size):
        yield data[start:start + chunk_size]
        await asyncio.sleep(0)


async def _replay_async(
    *,
    path: pathlib.Path,
    chunk_size: int,
    show_events: bool,
) -> StreamOutcome:
    """Replay ``path`` through a fresh session and return its outcome."""
    if not path.is_file():
        raise InputNotFoundError(str(path))
    if chunk_size < 1:
        raise CLIError("--chunk-size must be at least 1", exit_code=ExitCode.USER_ERROR)

    session = StreamSession()
    async for event in read_stream(_file_chunks(path, chunk_size), session):
        if show_events:
            typer.echo(json.dumps(event.to_wire(), ensure_ascii=False))
    return session.finish()


# ---------------------------------------------------------------------------
# Typer command
# ---------------------------------------------------------------------------


@cli.command("replay", help="Replay a recorded stream file and print the final tree.")
def replay(
    file: pathlib.Path = typer.Argument(..., help="Recorded stream (one frame per line)."),
    chunk_size: int = typer.Option(
        4096, "--chunk-size", "-c", help="Bytes fed to the session per chunk."
    ),
    flat: bool = typer.Option(False, "--flat", help="Print the tree as a flat element list."),
    events: bool = typer.Option(False, "--events", help="Print every dispatched event as JSON."),
) -> None:
    try:
        outcome = asyncio.run(_replay_async(path=file, chunk_size=chunk_size, show_events=events))
    except CLIError as exc:
        typer.echo(f"❌ {exc}")
        raise typer.Exit(code=exc.exit_code)
    except Exception as exc:
        typer.echo(f"❌ treesync replay failed: {exc}")
        logger.error("❌ treesync replay error: %s", exc, exc_info=True)
        raise typer.Exit(code=ExitCode.STREAM_FAILED)

    result: dict[str, Any] = {
        "tree": tree_to_flat(outcome.tree) if flat else outcome.tree.to_dict(),
        "outcome": outcome.to_dict(),
    }
    typer.echo(json.dumps(result, indent=2, ensure_ascii=False))

    if outcome.status != "completed":
        typer.echo(f"⚠️  Stream {outcome.status}", err=True)
        raise typer.Exit(code=ExitCode.STREAM_FAILED)


if __name__ == "__main__":
    cli()
