"""CLI entry point for Densify."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click

from densify import __version__
from densify.config import Config, ConfigError, load_config
from densify.engine.planner import WindowPlanner
from densify.engine.request import DensificationRequest, DensificationResult
from densify.exceptions import DensifyError
from densify.providers.registry import ProviderRegistry
from densify.runtime import create_runtime
from densify.utils.logs import configure_logging
from densify.utils.tokens import estimate_tokens


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="densify")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to densify.toml configuration file.",
)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Densify - compress captured context through LLM backends."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    configure_logging(config.logging, verbose=verbose)
    ctx.obj["config"] = config


@cli.command()
@click.option("--backend", "-b", required=True, help="Backend name from densify.toml.")
@click.option("--model", "-m", default=None, help="Override the backend's model.")
@click.option("--app", "app_name", default="", help="Application the text was captured from.")
@click.option("--window", "window_title", default="", help="Window title of the capture.")
@click.option(
    "--input", "input_file",
    type=click.File("r", encoding="utf-8"),
    default="-",
    help="File with the captured text, or - for stdin.",
)
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_context
def run(
    ctx: click.Context,
    backend: str,
    model: str | None,
    app_name: str,
    window_title: str,
    input_file,
    as_json: bool,
) -> None:
    """Densify captured text with one backend."""
    request = DensificationRequest(
        input_text=input_file.read(),
        app_name=app_name,
        window_title=window_title,
    )
    try:
        result = asyncio.run(_densify(ctx.obj["config"], request, backend, model))
    except DensifyError as e:
        _fail(str(e))
        return

    if as_json:
        click.echo(json.dumps({"content": result.content, "title": result.title}, indent=2))
        return
    if result.title:
        click.echo(f"# {result.title}\n")
    click.echo(result.content)


async def _densify(
    config: Config,
    request: DensificationRequest,
    backend: str,
    model: str | None,
) -> DensificationResult:
    runtime = create_runtime(config)
    try:
        return await runtime.service.densify(request, backend, model=model)
    finally:
        await runtime.close()


@cli.command()
@click.option(
    "--input", "input_file",
    type=click.File("r", encoding="utf-8"),
    default="-",
    help="File with the captured text, or - for stdin.",
)
@click.option(
    "--chunk-tokens",
    type=click.IntRange(min=1),
    default=None,
    help="Chunk budget in tokens. Defaults to the configured chunk budget.",
)
@click.pass_context
def estimate(ctx: click.Context, input_file, chunk_tokens: int | None) -> None:
    """Show the token estimate and chunk plan without calling a backend."""
    config: Config = ctx.obj["config"]
    text = input_file.read()
    budget = chunk_tokens or config.engine.chunk_input_tokens
    chunks = WindowPlanner(config.engine.minimum_input_tokens).chunk_input(text, budget)

    total = estimate_tokens(text)
    click.echo(f"Estimated tokens: {total}")
    if total > config.engine.max_input_tokens:
        click.echo(f"Over the input limit of {config.engine.max_input_tokens} tokens.")
    click.echo(f"Chunks at {budget} tokens: {len(chunks)}")
    for index, chunk in enumerate(chunks, start=1):
        click.echo(f"  [{index}] {chunk.tokens} tokens")


@cli.command()
@click.pass_context
def backends(ctx: click.Context) -> None:
    """List configured backends."""
    registry = ProviderRegistry.from_config(ctx.obj["config"])
    entries = registry.list_providers()
    if not entries:
        click.echo("No backends configured. Add [backends.<name>] sections to densify.toml.")
        return

    for entry in entries:
        window = f"{entry['context_window']} tokens" if entry["context_window"] else "unknown"
        click.echo(f"  {entry['name']}: {entry['model'] or '(default model)'} ({entry['kind']})")
        click.echo(f"    parallel: {entry['max_parallel']}  window: {window}")


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Check that every configured backend is reachable."""
    config: Config = ctx.obj["config"]
    if not config.backends:
        click.echo("No backends configured.")
        return
    results = asyncio.run(_health(config))
    for name, ok in results.items():
        click.echo(f"  {name}: {'ok' if ok else 'unavailable'}")
    if not all(results.values()):
        sys.exit(1)


async def _health(config: Config) -> dict[str, bool]:
    runtime = create_runtime(config)
    try:
        return await runtime.health()
    finally:
        await runtime.close()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
