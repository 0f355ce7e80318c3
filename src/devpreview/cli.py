from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from .config import DEFAULT_HOST, DEFAULT_PORT, PreviewConfig
from .reaper import reclaim
from .server import ServerSession, run


app = typer.Typer(add_completion=False)
console = Console()


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def announce(session: ServerSession) -> None:
    console.print(f"Starting local server at [bold]{session.url}[/bold]")
    console.print(f"Serving [cyan]{escape(str(session.root_directory))}[/cyan]")
    console.print("Press Ctrl+C to stop")


def launch(cfg: PreviewConfig) -> int:
    """Reclaim the port, then serve until interrupted. Returns the exit code."""
    cfg.validate()
    if cfg.reclaim:
        result = reclaim(cfg.port)
        if result.terminated:
            pids = ", ".join(str(p.pid) for p in result.terminated)
            console.print(f"[yellow]Stopped previous server on port {cfg.port} (pid {pids})[/yellow]")
    return run(cfg.port, cfg.directory, host=cfg.host, on_serving=announce)


@app.command()
def preview(
    port: int = typer.Option(DEFAULT_PORT, "--port", "-p", min=1, max=65535, help="Port to serve on."),
    host: str = typer.Option(DEFAULT_HOST, help="Interface to bind (default: all interfaces)."),
    directory: Optional[Path] = typer.Option(None, "--directory", "-d", help="Content root (default: current directory)."),
    reclaim_port: bool = typer.Option(True, "--reclaim/--no-reclaim", help="Stop whatever already listens on the port."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    """Preview the current directory over HTTP, replacing any server already on the port."""
    configure_logging(verbose)
    cfg = PreviewConfig(port=port, host=host, directory=directory or Path.cwd(), reclaim=reclaim_port)
    code = launch(cfg)
    if code:
        console.print(f"[red]Could not start the preview server on port {cfg.port}, see the log above.[/red]")
    raise typer.Exit(code)


if __name__ == "__main__":
    app()
