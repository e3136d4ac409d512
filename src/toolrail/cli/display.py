"""Rich display for registry builds and inspection.

Renders build results, violation lists, the tool table of a loaded
registry, per-tool documentation and the watch-mode status lines. Used by
the ``build``, ``inspect`` and ``docs`` commands.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from toolrail.core.artifact import RegistryArtifact
    from toolrail.runtime.registry import ToolMetadata, ToolRegistry

_SIDE_EFFECT_STYLES = {
    "none": "green",
    "read_only": "cyan",
    "writes": "bold red",
}


class RegistryDisplay:
    """Rich display for the toolrail CLI.

    Accepts an optional :class:`~rich.console.Console` for dependency
    injection in tests.
    """

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console()

    # ── Build ─────────────────────────────────────────────────

    def show_build_success(self, artifact: RegistryArtifact, output: Path) -> None:
        """Print a one-line build summary."""
        check = "[bold green]✓[/bold green]"
        line = (
            f"{check} Built registry [bold]v{artifact.version}[/bold] "
            f"with {len(artifact.tools)} tool(s) -> {output}"
        )
        if artifact.revision:
            line += f"  [dim](rev {artifact.revision})[/dim]"
        self._console.print(line)

    def show_violations(self, violations: Sequence[str]) -> None:
        """Display every build violation in a single panel."""
        body = Text("\n").join(Text(f"- {v}") for v in violations)
        self._console.print(
            Panel(
                body,
                title=f"[bold red]BUILD FAILED[/bold red] ({len(violations)} violation(s))",
                border_style="red",
            )
        )

    def show_watching(self, tools_dir: Path) -> None:
        self._console.print(
            f"[dim]Watching {tools_dir} for changes. Press Ctrl+C to stop.[/dim]"
        )

    def show_watch_stopped(self) -> None:
        self._console.print("Stopped watching.", style="dim")

    # ── Inspect ───────────────────────────────────────────────

    def show_registry(self, registry: ToolRegistry) -> None:
        """Print the registry version and a table of its tools."""
        header = f"[bold]Tool registry v{registry.get_version()}[/bold]"
        revision = registry.get_revision()
        if revision:
            header += f"  [dim]rev {revision}[/dim]"
        self._console.print(header)

        tool_ids = registry.list_tool_ids()
        if not tool_ids:
            self._console.print("No tools registered.", style="dim")
            return

        table = Table(show_header=True, header_style="bold")
        table.add_column("Tool", no_wrap=True)
        table.add_column("Version")
        table.add_column("Category")
        table.add_column("Side effects")
        table.add_column("Modes")
        table.add_column("Budget (ms)", justify="right")
        for tool_id in tool_ids:
            meta = registry.get_tool_metadata(tool_id)
            if meta is not None:
                table.add_row(*self._tool_row(meta))
        self._console.print(table)

    @staticmethod
    def _tool_row(meta: ToolMetadata) -> tuple[str, ...]:
        style = _SIDE_EFFECT_STYLES.get(meta.side_effects, "")
        effects = f"[{style}]{meta.side_effects}[/{style}]" if style else meta.side_effects
        flags = []
        if meta.requires_confirmation:
            flags.append("confirm")
        if meta.idempotent:
            flags.append("idempotent")
        if flags:
            effects += f" [dim]({', '.join(flags)})[/dim]"
        return (
            meta.tool_id,
            meta.version,
            meta.category,
            effects,
            ", ".join(meta.allowed_modes),
            str(meta.latency_budget_ms),
        )

    # ── Docs ──────────────────────────────────────────────────

    def show_documentation(self, tool_id: str, documentation: str) -> None:
        """Render a tool's guide as Markdown inside a panel."""
        self._console.print(
            Panel(
                Markdown(documentation),
                title=f"[bold cyan]{tool_id}[/bold cyan]",
                border_style="cyan",
            )
        )
