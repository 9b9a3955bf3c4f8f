"""
Typer command-line interface for FoodStatic.

Commands:

- ``foodstatic process``: generate the static tree from the gzip TSV export.
- ``foodstatic serve``: serve a generated tree over HTTP.
- ``foodstatic config show``: print the effective settings as JSON.

Option values take precedence over ``FOODSTATIC_*`` environment variables,
which take precedence over built-in defaults. ``process`` exits with 0 on a
clean run, 1 when the input cannot be opened or the settings are invalid, and 2
when the run finished but some writes or index buckets failed.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Optional

import typer

from FoodStatic.Processing.errors import (
    ConfigurationError,
    FatalStartupError,
    FlushPartialFailure,
    SourceReadError,
)
from FoodStatic.Processing.logging import configure_logging
from FoodStatic.Processing.pipeline import EXIT_FAILURES, EXIT_FATAL, RunSummary, run_pipeline
from FoodStatic.Processing.settings import LogFormat, LogLevel, PipelineCfg, RunnerPolicy, ServerCfg
from FoodStatic.Server.server import serve as serve_tree

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="Generate and serve a static JSON tree from the Open Food Facts export.",
)

config_app = typer.Typer(no_args_is_help=True)
app.add_typer(config_app, name="config", help="Inspect the effective configuration")


def _print_summary(summary: RunSummary) -> None:
    colour = typer.colors.GREEN if summary.ok else typer.colors.YELLOW
    typer.secho("Run summary", fg=colour, bold=True)
    typer.echo(f"  rows read        : {summary.rows}")
    typer.echo(f"  products written : {summary.accepted}")
    typer.echo(f"  rows skipped     : {summary.skipped_total}")
    for reason, count in sorted(summary.skipped.items()):
        typer.echo(f"    {reason:<14} : {count}")
    typer.echo(f"  write failures   : {summary.write_failures}")
    typer.echo(f"  catalog lines    : {summary.catalog_lines}")
    typer.echo(f"  index buckets    : {summary.buckets_written}")
    typer.echo(f"  index pages      : {summary.pages_written}")
    typer.echo(f"  duration         : {summary.duration_s:.2f}s")
    if summary.catalog_error:
        typer.secho(f"  catalog failed   : {summary.catalog_error}", fg=typer.colors.RED)
    if summary.catalog_failures:
        typer.secho(f"  catalog dropped  : {summary.catalog_failures}", fg=typer.colors.RED)
    if summary.batch_errors:
        typer.secho(f"  batch errors     : {summary.batch_errors}", fg=typer.colors.RED)
    if summary.failed_buckets:
        typer.secho(
            f"  failed buckets   : {len(summary.failed_buckets)}", fg=typer.colors.RED
        )


@app.command()
def process(
    input_path: Annotated[
        Optional[Path],
        typer.Option("--input", "-i", help="Gzip-compressed TSV export to read"),
    ] = None,
    output_root: Annotated[
        Optional[Path], typer.Option("--output", "-o", help="Root of the generated tree")
    ] = None,
    batch_size: Annotated[
        Optional[int], typer.Option("--batch-size", help="Rows per transform batch")
    ] = None,
    page_size: Annotated[
        Optional[int], typer.Option("--page-size", help="Codes per index page")
    ] = None,
    shard_count: Annotated[
        Optional[int], typer.Option("--shard-count", help="Shard directories per dimension")
    ] = None,
    workers: Annotated[
        Optional[int], typer.Option("--workers", "-w", help="Transform worker pool size")
    ] = None,
    policy: Annotated[
        Optional[RunnerPolicy], typer.Option("--policy", help="Worker pool policy")
    ] = None,
    max_in_flight: Annotated[
        Optional[int],
        typer.Option("--max-in-flight", help="Maximum batches submitted at once (0 = 2 x workers)"),
    ] = None,
    durable: Annotated[
        Optional[bool],
        typer.Option("--durable/--no-durable", help="fsync every output file before rename"),
    ] = None,
    progress: Annotated[
        Optional[bool], typer.Option("--progress/--no-progress", help="Show a progress bar")
    ] = None,
    log_level: Annotated[
        Optional[LogLevel], typer.Option("--log-level", help="Logging level")
    ] = None,
    log_format: Annotated[
        Optional[LogFormat], typer.Option("--log-format", help="Logging format")
    ] = None,
) -> None:
    """Generate products, paged indexes and the catalog from the export."""

    try:
        settings = PipelineCfg.from_overrides(
            input_path=input_path,
            output_root=output_root,
            batch_size=batch_size,
            page_size=page_size,
            shard_count=shard_count,
            workers=workers,
            policy=policy,
            max_in_flight=max_in_flight,
            durable_writes=durable,
            progress=progress,
            log_level=log_level,
            log_format=log_format,
        )
    except ConfigurationError as exc:
        typer.secho(f"✗ Configuration error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_FATAL) from exc

    configure_logging(settings.log_level.value, settings.log_format.value)
    try:
        summary = run_pipeline(settings)
    except FatalStartupError as exc:
        typer.secho(f"✗ {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_FATAL) from exc
    except SourceReadError as exc:
        typer.secho(f"✗ {exc}", fg=typer.colors.RED, err=True)
        typer.secho(
            "  Run aborted; the catalog and index were not published. "
            "Product files written so far remain.",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=EXIT_FATAL) from exc

    _print_summary(summary)
    try:
        summary.raise_for_failures()
    except FlushPartialFailure as exc:
        typer.secho(f"✗ {exc}", fg=typer.colors.RED, err=True)
        for label in exc.failed_buckets:
            typer.secho(f"    {label}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_FAILURES) from exc
    raise typer.Exit(code=summary.exit_code)


@app.command()
def serve(
    root: Annotated[
        Optional[Path], typer.Option("--root", "-r", help="Generated tree to serve")
    ] = None,
    host: Annotated[Optional[str], typer.Option("--host", help="Bind address")] = None,
    port: Annotated[Optional[int], typer.Option("--port", "-p", help="Bind port")] = None,
    log_level: Annotated[
        Optional[LogLevel], typer.Option("--log-level", help="Logging level")
    ] = None,
    log_format: Annotated[
        Optional[LogFormat], typer.Option("--log-format", help="Logging format")
    ] = None,
) -> None:
    """Serve a generated tree over HTTP until interrupted."""

    try:
        cfg = ServerCfg.from_overrides(
            root=root, host=host, port=port, log_level=log_level, log_format=log_format
        )
    except ConfigurationError as exc:
        typer.secho(f"✗ Configuration error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_FATAL) from exc

    configure_logging(cfg.log_level.value, cfg.log_format.value)
    typer.echo(f"Serving {cfg.root} on http://{cfg.host}:{cfg.port}")
    serve_tree(cfg)


@config_app.command("show")
def config_show(
    section: Annotated[
        str, typer.Option("--section", help="Which settings to show (pipeline|server|all)")
    ] = "all",
) -> None:
    """Print the effective settings resolved from the environment."""

    try:
        sections = {
            "pipeline": PipelineCfg.from_overrides(),
            "server": ServerCfg.from_overrides(),
        }
    except ConfigurationError as exc:
        typer.secho(f"✗ Configuration error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_FATAL) from exc

    if section != "all":
        if section not in sections:
            typer.secho(f"✗ Unknown section: {section}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=EXIT_FATAL)
        sections = {section: sections[section]}
    payload = {name: cfg.model_dump(mode="json") for name, cfg in sections.items()}
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


def main() -> None:
    """Console-script entry point."""

    app()


if __name__ == "__main__":
    main()
