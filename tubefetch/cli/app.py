"""
Defines the command-line interface for the application using Typer.
"""

import asyncio
import logging
import os
import sys
from pathlib import Path

import typer
from aiohttp import web
from rich.console import Console
from rich.logging import RichHandler

from tubefetch import __version__
from tubefetch.core.engine import ExtractionEngine
from tubefetch.exceptions import TubefetchError
from tubefetch.media.tool import ExtractorTool, run_tool
from tubefetch.models.config import ExtractionOptions, ServerConfig
from tubefetch.storage.config_manager import ConfigManager
from tubefetch.storage.retention import RetentionSweeper
from tubefetch.web.server import create_app

from .formatters import print_config, print_summary_panel, print_sweep_result
from .progress import ConsoleProgressSink

console = Console()

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("tubefetch")

app = typer.Typer(
    name="tubefetch",
    help=(
        "Extract audio and video from remote media pages with live progress and"
        " cancellation. Use 'tubefetch <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "tubefetch"


CONFIG_DIR = get_config_dir()
CONFIG_FILE = CONFIG_DIR / "config.ini"
LOG_DIR = CONFIG_DIR / "logs"


def _load_config(cli_options: dict | None = None) -> ServerConfig:
    try:
        return ConfigManager(CONFIG_FILE).load_config(cli_options)
    except TubefetchError as e:
        console.print(f"[bold red]Error: {e}[/bold red]")
        raise typer.Exit(code=1) from e


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
):
    """tubefetch media extraction server"""
    if version:
        console.print(f"[bold]tubefetch[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    logging.getLogger("tubefetch").setLevel(log_level)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    download_dir: str | None = typer.Option(
        None, "--download-dir", "-d", help="Where extracted files are stored."
    ),
    tool_path: str | None = typer.Option(
        None, "--tool-path", help="Path or name of the yt-dlp executable."
    ),
    ffmpeg_dir: str | None = typer.Option(
        None, "--ffmpeg-dir", help="Directory containing ffmpeg/ffprobe."
    ),
    port: int | None = typer.Option(None, "--port", "-p", help="Server port."),
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration without asking."
    ),
):
    """Write a configuration file with default values."""
    if (
        CONFIG_FILE.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    settings = {
        key: value
        for key, value in {
            "download_dir": download_dir,
            "tool_path": tool_path,
            "ffmpeg_dir": ffmpeg_dir,
            "port": port,
        }.items()
        if value is not None
    }
    ConfigManager(CONFIG_FILE).save_new_config(settings)
    console.print(
        f"\n[bold green]✓ Configuration saved to '{CONFIG_FILE}'[/bold green]"
    )
    console.print("Ready! Try: [cyan]tubefetch serve[/cyan]")


@app.command(name="show-config")
def show_config():
    """Display the effective configuration."""
    config = _load_config()
    print_config(CONFIG_FILE, config)


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Interface to bind."),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on."),
    download_dir: str | None = typer.Option(
        None, "--download-dir", "-d", help="Where extracted files are stored."
    ),
):
    """Run the HTTP and WebSocket server."""
    config = _load_config(
        {"host": host, "port": port, "download_dir": download_dir}
    )
    engine = ExtractionEngine(config, log_dir=LOG_DIR)
    if not engine.tool.is_available():
        log.warning(
            f"[yellow]⚠️  '{config.tool_path}' was not found. "
            "Extractions will fail until it is installed.[/yellow]"
        )

    console.print(
        f"[bold cyan]🎵 Serving on http://{config.host}:{config.port}[/bold cyan] "
        f"[dim](files in {config.download_path.resolve()})[/dim]"
    )
    web.run_app(
        create_app(engine),
        host=config.host,
        port=config.port,
        print=None,
        access_log=None,
    )


def _read_urls_from_stdin() -> list[str]:
    """Reads URLs from stdin, one per line."""
    if sys.stdin.isatty():
        console.print(
            "[yellow]⚠️  No input detected on stdin. Please pipe URLs or redirect"
            " a file.[/yellow]"
        )
        raise typer.Exit(code=1)

    urls = []
    for line in sys.stdin:
        line = line.strip()
        if line and not line.startswith("#"):
            urls.append(line)

    if not urls:
        console.print("[yellow]⚠️  No valid URLs found in stdin.[/yellow]")
        raise typer.Exit(code=1)

    console.print(f"[green]✓ Read {len(urls)} URLs from stdin.[/green]")
    return urls


@app.command()
def fetch(
    urls: list[str] | None = typer.Argument(  # noqa: B008
        None, help="One or more video or playlist URLs."
    ),
    media_format: str = typer.Option(
        "audio", "--format", "-f", help="What to extract: 'audio' or 'video'."
    ),
    quality: str | None = typer.Option(
        None, "--quality", "-q", help="Audio bitrate in kbps: 128, 192 or 320."
    ),
    download_dir: str | None = typer.Option(
        None, "--download-dir", "-d", help="Where extracted files are stored."
    ),
    stdin: bool = typer.Option(
        False, "--stdin", help="Read URLs from standard input, one URL per line."
    ),
):
    """Extract one or more URLs in the foreground, without a server."""
    if stdin:
        urls = _read_urls_from_stdin()
    elif not urls:
        console.print(
            "[red]✗ No URLs provided.[/red] "
            "Use: [cyan]tubefetch fetch <URL>[/cyan] or [cyan]--stdin[/cyan]"
        )
        raise typer.Exit(code=1)

    config = _load_config({"download_dir": download_dir})
    try:
        options = ExtractionOptions(
            quality=quality or config.default_quality, media_format=media_format
        )
    except ValueError as e:
        console.print(f"[red]✗ Invalid format '{media_format}'.[/red]")
        raise typer.Exit(code=1) from e

    async def _fetch_async() -> ConsoleProgressSink:
        engine = ExtractionEngine(config, log_dir=LOG_DIR)
        engine.store.ensure()
        session_id = engine.registry.create_session()
        with ConsoleProgressSink(console) as sink:
            engine.subscribe(session_id, sink)
            try:
                await engine.orchestrator.run_sources(urls, session_id, options)
            except asyncio.CancelledError:
                sink.close()
                report = await engine.cancel(session_id)
                console.print(
                    f"[yellow]Cleaned up {len(report.files_deleted)} file(s).[/yellow]"
                )
                raise
            finally:
                engine.unsubscribe(session_id, sink)
                engine.event_log.close()
        return sink

    console.print("[bold cyan]🎵 Starting download session...[/bold cyan]")
    sink = asyncio.run(_fetch_async())

    print_summary_panel(
        options.media_format,
        sink.successful,
        sink.failed,
        sink.elapsed,
        cancelled=sink.cancelled,
    )
    if sink.errors and not sink.successful:
        raise typer.Exit(code=1)


@app.command()
def sweep(
    max_age: float | None = typer.Option(
        None, "--max-age", help="Delete files older than this many seconds."
    ),
):
    """Run one retention pass over the download directory now."""
    config = _load_config()
    sweeper = RetentionSweeper(
        config.download_path,
        max_age_seconds=max_age if max_age is not None else config.retention_max_age,
    )
    result = asyncio.run(sweeper.sweep_once())
    print_sweep_result(result.removed, result.failed, config.download_path)


@app.command()
def diagnose():
    """Diagnose common configuration and tooling issues."""
    console.print("\n[bold cyan]Running diagnostics...[/bold cyan]\n")
    issues_found = False
    if CONFIG_FILE.is_file():
        console.print(f"[green]✓[/] Config file exists at: [dim]{CONFIG_FILE}[/dim]")
    else:
        console.print(
            "[yellow]○[/] No config file; using defaults. "
            "Run [cyan]tubefetch init[/cyan] to create one."
        )

    try:
        config = ConfigManager(CONFIG_FILE).load_config()
        console.print("[green]✓[/] Configuration is valid and can be loaded.")
    except TubefetchError as e:
        console.print(f"[red]✗ Configuration validation failed: {e}[/red]")
        raise typer.Exit(code=1) from e

    engine_tool = ExtractorTool.from_config(config)
    if engine_tool.is_available():
        console.print(f"[green]✓[/] Extraction tool found: [dim]{config.tool_path}[/dim]")

        async def tool_version() -> str:
            result = await run_tool(
                engine_tool.executable + ["--version"], timeout=15, env=engine_tool.env()
            )
            return result.stdout.strip() if result.returncode == 0 else ""

        try:
            version = asyncio.run(tool_version())
        except TubefetchError as e:
            version = ""
            console.print(f"[red]✗ Extraction tool could not be started: {e}[/red]")
            issues_found = True
        if version:
            console.print(f"[green]✓[/] Tool version: [cyan]{version}[/cyan]")
    else:
        console.print(
            f"[red]✗ Extraction tool '{config.tool_path}' not found.[/] "
            "Install yt-dlp or set [cyan]tool_path[/cyan]."
        )
        issues_found = True

    if engine_tool.ffmpeg_available():
        console.print("[green]✓[/] ffmpeg is available for audio conversion.")
    else:
        console.print(
            "[yellow]⚠️  ffmpeg not found.[/] Audio will be kept in its original"
            " container; video merging may fail."
        )

    download_path = config.download_path
    try:
        download_path.mkdir(parents=True, exist_ok=True)
        marker = download_path / ".tubefetch-write-test"
        marker.touch()
        marker.unlink()
        console.print(f"[green]✓[/] Download directory is writable: [dim]{download_path}[/dim]")
    except OSError as e:
        console.print(f"[red]✗ Download directory is not writable: {e}[/red]")
        issues_found = True

    console.print()
    if not issues_found:
        console.print(
            "[bold green]✓ All checks passed! Your setup looks good.[/bold green]\n"
        )
    else:
        console.print(
            "[bold red]✗ Some issues were found. "
            "Please review the messages above.[/bold red]\n"
        )
        raise typer.Exit(code=1)
