"""Main CLI application.

Click commands for the toolrail registry: build, inspect, docs.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click

from toolrail import __version__
from toolrail.config.loader import load_config
from toolrail.core.errors import BuildError, ConfigError, RegistryError, ToolrailError

if TYPE_CHECKING:
    from toolrail.cli.display import RegistryDisplay
    from toolrail.config.schema import ToolrailConfig
    from toolrail.runtime.registry import ToolRegistry


# ── Helpers ──────────────────────────────────────────────────────


def _error(msg: str) -> None:
    """Print an error message to stderr and exit."""
    click.echo(f"Error: {msg}", err=True)
    sys.exit(1)


def _load_config(config_path: str | None) -> ToolrailConfig:
    """Load config with user-friendly error handling."""
    try:
        return load_config(path=config_path)
    except ConfigError as e:
        _error(str(e))
        raise  # unreachable, keeps mypy happy


def _configure_logging(config: ToolrailConfig) -> None:
    level = getattr(logging, config.logging.level.upper(), logging.INFO)
    kwargs: dict[str, object] = {
        "level": level,
        "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
    }
    if config.logging.file:
        kwargs["filename"] = str(Path(config.logging.file).expanduser())
    logging.basicConfig(**kwargs)  # type: ignore[arg-type]


def _display() -> RegistryDisplay:
    from toolrail.cli.display import RegistryDisplay

    return RegistryDisplay()


async def _load_registry(artifact: str) -> ToolRegistry:
    """Load (but do not lock) the registry at *artifact*."""
    from toolrail.runtime.registry import ToolRegistry

    registry = ToolRegistry(artifact)
    await registry.load()
    return registry


# ── CLI group ────────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="toolrail")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """toolrail - Contract-enforced tool dispatch.

    Compile tool directories into a versioned registry and inspect it.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# ── build ────────────────────────────────────────────────────────


@cli.command()
@click.option(
    "--tools-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory of tool folders (default from config).",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False),
    default=None,
    help="Artifact path (default from config).",
)
@click.option(
    "--provider",
    "providers",
    multiple=True,
    help="Target provider projection. Repeatable.",
)
@click.option(
    "--no-revision",
    is_flag=True,
    default=False,
    help="Do not embed the git revision in the artifact.",
)
@click.option(
    "--watch",
    is_flag=True,
    default=False,
    help="Rebuild whenever a tool file changes (development only).",
)
@click.option(
    "--interval",
    type=click.FloatRange(min=0.05),
    default=0.5,
    show_default=True,
    help="Polling interval in seconds for --watch.",
)
@click.pass_context
def build(
    ctx: click.Context,
    tools_dir: str | None,
    output: str | None,
    providers: tuple[str, ...],
    no_revision: bool,
    watch: bool,
    interval: float,
) -> None:
    """Compile tool directories into a registry artifact.

    Every violation in every tool is reported; no artifact is written
    unless the whole build passes. With --watch, a failed build leaves the
    previous artifact in place and the next change triggers another one.
    """
    from toolrail.build.compiler import build_registry

    config = _load_config(ctx.obj["config_path"])
    _configure_logging(config)
    display = _display()

    source = Path(tools_dir or config.build.tools_dir)
    out = Path(output or config.build.output)

    def run_build() -> bool:
        try:
            artifact = build_registry(
                source,
                out,
                providers=providers or config.build.providers,
                allowed_modes=config.build.modes,
                embed_revision=config.build.embed_revision and not no_revision,
            )
        except BuildError as e:
            display.show_violations(e.violations)
            return False
        display.show_build_success(artifact, out)
        return True

    ok = run_build()
    if not watch:
        if not ok:
            sys.exit(1)
        return

    from toolrail.build.watch import watch_tools

    display.show_watching(source)
    try:
        watch_tools(source, run_build, interval=interval)
    except KeyboardInterrupt:
        display.show_watch_stopped()


# ── inspect ──────────────────────────────────────────────────────


@cli.command()
@click.argument("artifact", required=False, type=click.Path(dir_okay=False))
@click.pass_context
def inspect(ctx: click.Context, artifact: str | None) -> None:
    """Show the version and tools of a registry artifact.

    ARTIFACT defaults to ``runtime.artifact`` from config.
    """
    config = _load_config(ctx.obj["config_path"])
    _configure_logging(config)
    try:
        registry = asyncio.run(_load_registry(artifact or config.runtime.artifact))
    except RegistryError as e:
        _error(str(e))
        return
    _display().show_registry(registry)


# ── docs ─────────────────────────────────────────────────────────


@cli.command()
@click.argument("tool_id")
@click.option(
    "--artifact",
    type=click.Path(dir_okay=False),
    default=None,
    help="Registry artifact (default from config).",
)
@click.pass_context
def docs(ctx: click.Context, tool_id: str, artifact: str | None) -> None:
    """Print the full documentation of TOOL_ID."""
    config = _load_config(ctx.obj["config_path"])
    _configure_logging(config)
    try:
        registry = asyncio.run(_load_registry(artifact or config.runtime.artifact))
    except ToolrailError as e:
        _error(str(e))
        return
    documentation = registry.get_documentation(tool_id)
    if documentation is None:
        _error(f"Tool not found: {tool_id}")
        return
    _display().show_documentation(tool_id, documentation)
