"""Tests for the CLI commands: build, inspect, docs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from toolrail.cli.app import cli
from toolrail.config.schema import ToolrailConfig

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(autouse=True)
def default_config() -> Any:
    with patch("toolrail.cli.app.load_config", return_value=ToolrailConfig()) as mock:
        yield mock


@pytest.fixture
def built(runner: CliRunner, tools_dir: Path, write_tool: Any) -> Path:
    write_tool("search_docs")
    write_tool("create_ticket", category="action", sideEffects="writes", idempotent=False)
    artifact = tools_dir / "tool_registry.json"
    result = runner.invoke(
        cli,
        ["build", "--tools-dir", str(tools_dir), "-o", str(artifact), "--no-revision"],
    )
    assert result.exit_code == 0, result.output
    return artifact


# ── CLI group ────────────────────────────────────────────────────


class TestCliGroup:
    def test_no_command_shows_help(self, runner: CliRunner) -> None:
        result = runner.invoke(cli)
        assert result.exit_code == 0
        assert "Contract-enforced tool dispatch" in result.output

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "toolrail" in result.output
        assert "0.1.0" in result.output

    def test_help_lists_commands(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "build" in result.output
        assert "inspect" in result.output
        assert "docs" in result.output

    def test_config_error_exits(self, runner: CliRunner, default_config: Any) -> None:
        from toolrail.core.errors import ConfigError

        default_config.side_effect = ConfigError("Invalid TOML in toolrail.toml")
        result = runner.invoke(cli, ["inspect", "missing.json"])
        assert result.exit_code == 1
        assert "Invalid TOML" in result.output


# ── build command ────────────────────────────────────────────────


class TestBuildCommand:
    def test_success(self, runner: CliRunner, built: Path) -> None:
        assert built.is_file()

    def test_success_message(self, runner: CliRunner, tools_dir: Path, write_tool: Any) -> None:
        write_tool("search_docs")
        result = runner.invoke(
            cli,
            ["build", "--tools-dir", str(tools_dir), "-o", str(tools_dir / "out.json")],
        )
        assert result.exit_code == 0
        assert "Built registry" in result.output
        assert "1 tool(s)" in result.output

    def test_violations_exit_nonzero(
        self, runner: CliRunner, tools_dir: Path, write_tool: Any
    ) -> None:
        write_tool("search_docs")
        write_tool("broken", omit=("guide.md",))
        artifact = tools_dir / "tool_registry.json"
        result = runner.invoke(
            cli,
            ["build", "--tools-dir", str(tools_dir), "-o", str(artifact), "--no-revision"],
        )
        assert result.exit_code == 1
        assert "BUILD FAILED" in result.output
        assert not artifact.exists()

    def test_unknown_provider(self, runner: CliRunner, tools_dir: Path, write_tool: Any) -> None:
        write_tool("search_docs")
        result = runner.invoke(
            cli,
            [
                "build",
                "--tools-dir",
                str(tools_dir),
                "-o",
                str(tools_dir / "out.json"),
                "--provider",
                "cohere",
            ],
        )
        assert result.exit_code == 1
        assert "Unknown target providers" in result.output

    def test_watch_builds_then_watches(
        self, runner: CliRunner, tools_dir: Path, write_tool: Any
    ) -> None:
        write_tool("search_docs")
        artifact = tools_dir / "tool_registry.json"
        with patch("toolrail.build.watch.watch_tools", side_effect=KeyboardInterrupt) as watch:
            result = runner.invoke(
                cli,
                [
                    "build",
                    "--tools-dir",
                    str(tools_dir),
                    "-o",
                    str(artifact),
                    "--watch",
                    "--interval",
                    "0.2",
                ],
            )
        assert result.exit_code == 0, result.output
        assert artifact.is_file()
        assert "Built registry" in result.output
        assert "Watching" in result.output
        assert "Stopped watching." in result.output
        assert watch.call_args.kwargs == {"interval": 0.2}

    def test_watch_survives_failed_build(
        self, runner: CliRunner, tools_dir: Path, write_tool: Any
    ) -> None:
        write_tool("broken", omit=("guide.md",))
        artifact = tools_dir / "tool_registry.json"
        with patch("toolrail.build.watch.watch_tools", side_effect=KeyboardInterrupt) as watch:
            result = runner.invoke(
                cli,
                ["build", "--tools-dir", str(tools_dir), "-o", str(artifact), "--watch"],
            )
        assert result.exit_code == 0
        assert "BUILD FAILED" in result.output
        assert not artifact.exists()
        rebuild = watch.call_args.args[1]
        guide = tools_dir / "broken" / "guide.md"
        guide.write_text("# broken\n\nUse broken to look things up.\n")
        assert rebuild() is True
        assert artifact.is_file()

    def test_uses_config_defaults(
        self, runner: CliRunner, tools_dir: Path, write_tool: Any, default_config: Any
    ) -> None:
        write_tool("search_docs")
        artifact = tools_dir / "from_config.json"
        default_config.return_value = ToolrailConfig.model_validate(
            {"build": {"tools_dir": str(tools_dir), "output": str(artifact)}}
        )
        result = runner.invoke(cli, ["build", "--no-revision"])
        assert result.exit_code == 0
        assert artifact.is_file()


# ── inspect command ──────────────────────────────────────────────


class TestInspectCommand:
    def test_shows_tools(self, runner: CliRunner, built: Path) -> None:
        result = runner.invoke(cli, ["inspect", str(built)])
        assert result.exit_code == 0
        assert "Tool registry v" in result.output
        assert "search_docs" in result.output
        assert "create_ticket" in result.output

    def test_missing_artifact(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["inspect", str(tmp_path / "nope.json")])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_empty_registry(self, runner: CliRunner, tools_dir: Path) -> None:
        artifact = tools_dir / "empty.json"
        build = runner.invoke(
            cli,
            ["build", "--tools-dir", str(tools_dir), "-o", str(artifact), "--no-revision"],
        )
        assert build.exit_code == 0
        result = runner.invoke(cli, ["inspect", str(artifact)])
        assert result.exit_code == 0
        assert "No tools registered." in result.output


# ── docs command ─────────────────────────────────────────────────


class TestDocsCommand:
    def test_prints_guide(self, runner: CliRunner, built: Path) -> None:
        result = runner.invoke(cli, ["docs", "search_docs", "--artifact", str(built)])
        assert result.exit_code == 0
        assert "Use search_docs to look things up." in result.output

    def test_unknown_tool(self, runner: CliRunner, built: Path) -> None:
        result = runner.invoke(cli, ["docs", "nope", "--artifact", str(built)])
        assert result.exit_code == 1
        assert "Tool not found: nope" in result.output

    def test_missing_argument(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["docs"])
        assert result.exit_code != 0
        assert "Missing argument" in result.output
