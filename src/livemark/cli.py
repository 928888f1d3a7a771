"""livemark CLI.

Usage:
    livemark [--port PORT] [--browser BROWSER] [-l] [--logging stdout|stderr] start FILE
    livemark [--port PORT] stop [FILE]
    livemark [--port PORT] status

The first ``start`` on a port becomes the coordinator and keeps running
until ``stop`` (without a file) or Ctrl-C. Later invocations hand their
file to it over the control API and exit.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import webbrowser
from dataclasses import dataclass
from pathlib import Path

import typer
from rich.console import Console

from livemark._utils import DEFAULT_PORT, detached_popen_kwargs, preview_url
from livemark.client import ControlClient, ControlError
from livemark.server import Coordinator, try_become_coordinator

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="livemark",
    help="Preview markdown files in the browser, live.",
    no_args_is_help=True,
)
console = Console()


@dataclass
class CliOptions:
    port: int = DEFAULT_PORT
    browser: str | None = None
    launch: bool = False


def _info(msg: str) -> None:
    console.print(f"[dim]>[/dim] {msg}")


def _success(msg: str) -> None:
    console.print(f"[green]✓[/green] {msg}")


def _error(msg: str) -> None:
    console.print(f"[red]✗[/red] {msg}")


def _configure_logging(target: str) -> None:
    """Send log records to stdout or stderr; anything else keeps them off."""
    stream = {"stdout": sys.stdout, "stderr": sys.stderr}.get(target.lower())
    if stream is None:
        return
    logging.basicConfig(
        stream=stream,
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    logging.getLogger("livemark").setLevel(logging.DEBUG)


def _version_callback(value: bool) -> None:
    if value:
        from livemark import __version__

        console.print(f"livemark {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    port: int = typer.Option(
        DEFAULT_PORT, "--port", "-p", envvar="LIVEMARK_PORT", help="Port for the preview server."
    ),
    browser: str = typer.Option(
        "",
        "--browser",
        "-b",
        envvar="LIVEMARK_BROWSER",
        help="Browser executable to open previews with (default: system browser).",
    ),
    launch: bool = typer.Option(
        False, "--launch", "-l", help="Open the preview in a browser."
    ),
    log_target: str = typer.Option(
        "", "--logging", help="Logging output: 'stdout' or 'stderr' (default: off)."
    ),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show the version."
    ),
) -> None:
    """Preview markdown files in the browser, live."""
    _configure_logging(log_target)
    ctx.obj = CliOptions(port=port, browser=browser or None, launch=launch)


@app.command()
def start(
    ctx: typer.Context,
    file: Path = typer.Argument(help="Markdown file to preview."),
) -> None:
    """Preview a file, starting the server if none is running on the port."""
    opts: CliOptions = ctx.obj
    logger.debug(f"start: port={opts.port} launch={opts.launch} browser={opts.browser!r} file={file}")

    coordinator = try_become_coordinator(opts.port)
    if coordinator is not None:
        _serve(coordinator, file, opts)
    else:
        _add_to_running(file, opts)


@app.command()
def stop(
    ctx: typer.Context,
    file: Path | None = typer.Argument(
        None, help="File to stop previewing (default: stop the server)."
    ),
) -> None:
    """Stop previewing a file, or stop the server."""
    opts: CliOptions = ctx.obj
    client = ControlClient(port=opts.port)
    try:
        if file is None:
            client.shutdown()
            _success("Server stopped.")
        else:
            client.delete_file(file)
            _success(f"Stopped previewing {file}.")
    except ValueError as e:
        _error(str(e))
        raise typer.Exit(1)
    except ControlError as e:
        if e.status is None:
            _info("No running server found.")
            return
        if e.status == 404:
            _error(f"{file} is not being previewed.")
        else:
            _error(str(e))
        raise typer.Exit(1)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show the running server and the files it previews."""
    opts: CliOptions = ctx.obj
    client = ControlClient(port=opts.port)
    info = client.health()
    if not info:
        _info("No running server found.")
        return

    _success("Server is running")
    console.print(f"  [bold]URL:[/bold]        http://localhost:{opts.port}")
    console.print(f"  [bold]Version:[/bold]    {info.get('version')}")
    console.print(f"  [bold]Uptime:[/bold]     {info.get('uptime')}s")

    try:
        sessions = client.sessions()
    except ControlError as e:
        _error(str(e))
        raise typer.Exit(1)
    if not sessions:
        _info("No files are being previewed.")
        return
    console.print()
    console.print(f"[bold]Previews ({len(sessions)}):[/bold]")
    for s in sessions:
        console.print(
            f"  [green]{s.get('id')}[/green]  {s.get('path')}  "
            f"[dim]({s.get('subscribers', 0)} viewer(s))[/dim]"
        )


# ---------------------------------------------------------------------------
# start: coordinator and client modes
# ---------------------------------------------------------------------------


def _serve(coordinator: Coordinator, file: Path, opts: CliOptions) -> None:
    """Run as the coordinator until shut down."""
    coordinator.start()
    _info(f"Serving previews on http://localhost:{coordinator.port}")
    try:
        ControlClient(port=coordinator.port).add_file(file)
        session_id = coordinator.get_id(str(file))
        if session_id:
            url = preview_url(coordinator.port, session_id)
            _success(f"Previewing {file} at {url}")
            if opts.launch:
                _launch_browser(url, opts.browser)
        else:
            _error("Could not determine the preview id; not launching a browser.")
        coordinator.wait()
    except (ControlError, ValueError) as e:
        _error(f"Could not preview {file}: {e}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        _info("Stopping...")
    finally:
        coordinator.stop()


def _add_to_running(file: Path, opts: CliOptions) -> None:
    """Hand the file to the coordinator that already owns the port."""
    client = ControlClient(port=opts.port)
    try:
        client.add_file(file)
        session_id = client.get_id(file)
    except (ControlError, ValueError) as e:
        _error(f"Could not preview {file}: {e}")
        raise typer.Exit(1)

    if not session_id:
        _error("Could not determine the preview id; not launching a browser.")
        raise typer.Exit(1)
    url = preview_url(opts.port, session_id)
    _success(f"Previewing {file} at {url}")
    if opts.launch:
        _launch_browser(url, opts.browser)


def _launch_browser(url: str, browser: str | None = None) -> None:
    """Open ``url`` in ``browser``, or the system default browser."""
    logger.debug(f"Launching browser {browser or '(default)'} for {url}")
    if browser:
        try:
            subprocess.Popen(
                [browser, url],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                **detached_popen_kwargs(),
            )
        except OSError as e:
            _error(f"Could not launch {browser}: {e}")
        return
    if not webbrowser.open(url):
        _error("Could not determine how to launch a browser.")


if __name__ == "__main__":
    app()
