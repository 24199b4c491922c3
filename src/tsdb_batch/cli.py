from __future__ import annotations

import json
from typing import Any, List

import typer

from .errors import DatabaseNotFoundError
from .processor import BatchProcessor
from .settings import BatchSettings
from .transports import InMemoryTransport
from .types import DatabaseKey, TimeUnit

app = typer.Typer(help="tsdb_batch operational CLI")


def actions_opt(default=1000) -> int:
    return typer.Option(default, "--actions", help="Flush when pending points reach this size")


def flush_ms_opt(default=1000) -> int:
    return typer.Option(default, "--flush-ms", help="Periodic flush interval in ms")


def jitter_ms_opt(default=0) -> int:
    return typer.Option(default, "--jitter-ms", help="Max random delay added to each flush (ms)")


def buffer_limit_opt(default=10000) -> int:
    return typer.Option(default, "--buffer-limit", help="Retry backlog capacity in points")


@app.command("show-config")
def show_config():
    """Print the batching options derived from TSDB_BATCH_* environment variables."""
    settings = BatchSettings()
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@app.command("simulate")
def simulate(
    points: int = typer.Option(100, "--points", help="Points to write"),
    databases: int = typer.Option(1, "--databases", help="Spread points over N databases"),
    actions: int = actions_opt(),
    flush_ms: int = flush_ms_opt(),
    jitter_ms: int = jitter_ms_opt(),
    buffer_limit: int = buffer_limit_opt(),
    fail_first: int = typer.Option(0, "--fail-first", help="Fail the first N transport calls"),
    permanent: bool = typer.Option(False, "--permanent", help="Injected failures are permanent"),
):
    """Push points through a BatchProcessor against an in-memory transport."""
    if databases <= 0:
        raise typer.BadParameter("--databases must be > 0")

    lost: List[Any] = []
    errors: List[str] = []

    def on_lost(pts: List[Any], exc: BaseException) -> None:
        lost.extend(pts)
        errors.append(type(exc).__name__)

    transport = InMemoryTransport(
        fail_first=fail_first,
        error_factory=(lambda b: DatabaseNotFoundError(f"database not found: {b.key}"))
        if permanent
        else None,
    )
    options = (
        BatchSettings()
        .to_options(exception_handler=on_lost)
        .with_(
            actions=actions,
            flush_interval=flush_ms,
            jitter_interval=jitter_ms,
            interval_unit=TimeUnit.MILLISECONDS,
            buffer_limit=buffer_limit,
        )
    )
    processor = BatchProcessor(transport, options, processor_id="cli-simulate")
    for i in range(points):
        processor.write(i, DatabaseKey(f"db{i % databases}"))
    strategy = processor.writer.name
    processor.flush_and_shutdown()

    typer.echo(
        json.dumps(
            {
                "strategy": strategy,
                "written": len(transport.points),
                "lost": len(lost),
                "transport_calls": transport.calls,
                "batches": len(transport.batches),
                "errors": sorted(set(errors)),
            },
            indent=2,
        )
    )


if __name__ == "__main__":
    app()
