"""
Command-line interface for parley.

Usage:
    parley config show [--config PATH] [--profile NAME]
    parley config validate [--config PATH] [--profile NAME]
    parley version
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.syntax import Syntax

from parley import __version__
from parley.config import ParleyConfig, load_config
from parley.types import ConfigError

app = typer.Typer(name="parley", help="parley - conversation orchestration engine")
config_app = typer.Typer(help="Configuration management")

app.add_typer(config_app, name="config")

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_config_path() -> Path | None:
    """Find config file in standard locations."""
    candidates = [
        Path.cwd() / "parley.yaml",
        Path.cwd() / "parley.yml",
        Path.home() / ".config" / "parley" / "config.yaml",
    ]
    for p in candidates:
        if p.is_file():
            return p
    return None


def configure_logging(cfg: ParleyConfig) -> None:
    """Route log records through rich at the configured level."""
    level = logging.getLevelName(cfg.logging.level.upper())
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )
    if cfg.logging.trace:
        logging.getLogger("parley.trace").setLevel(logging.DEBUG)


def _load(config: Optional[Path], profile: Optional[str]) -> tuple[ParleyConfig, Path | None]:
    path = config or _get_config_path()
    cfg = load_config(path, profile=profile)
    configure_logging(cfg)
    return cfg, path


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@config_app.command("show")
def config_show(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Show effective config."""
    try:
        cfg, _ = _load(config, profile)
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1)
    console.print(Syntax(json.dumps(cfg.to_dict(), indent=2, default=str), "json", theme="monokai"))


@config_app.command("validate")
def config_validate(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file path"),
    profile: Optional[str] = typer.Option(None, help="Config profile name"),
):
    """Validate config and show any problems."""
    try:
        cfg, path = _load(config, profile)
    except ConfigError as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)

    problems = cfg.validate()
    if problems:
        console.print("[red]Config validation failed:[/red]")
        for problem in problems:
            console.print(f"  - {problem}")
        raise typer.Exit(1)

    console.print("[green]Config is valid.[/green]")
    if path:
        console.print(f"  Loaded from: {path}")
    else:
        console.print("  [dim]No config file found, using defaults.[/dim]")
    console.print(f"  Provider: {cfg.provider.name or '-'} ({cfg.provider.model or '-'})")
    console.print(
        f"  Session: max_turns={cfg.session.max_turns} "
        f"max_tool_passes={cfg.session.max_tool_passes} "
        f"parallel_tools={cfg.session.allow_parallel_tools}"
    )
    console.print(f"  Summarize at: {cfg.context.summarize_threshold:.0%} of context")


@app.command()
def version():
    """Show version."""
    console.print(f"parley v{__version__}")


def main():
    app()


if __name__ == "__main__":
    main()
