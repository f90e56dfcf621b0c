"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from tubefetch.models.config import ServerConfig, get_format_info
from tubefetch.utils.formatting import format_duration


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    suggestions_map = {
        "ConfigurationError": [
            "• Check the values in your configuration file.",
            "• Run `tubefetch init --force` to write a fresh default configuration.",
            "• Use `tubefetch show-config` to inspect the effective settings.",
        ],
        "ToolStartError": [
            "• Make sure yt-dlp is installed and on your PATH.",
            "• Or set `tool_path` in the configuration file to its location.",
            "• Run `tubefetch diagnose` to check your setup.",
        ],
        "PlaylistExtractionError": [
            "• The playlist may be private or no longer exist.",
            "• Try updating yt-dlp; sites change their layout often.",
        ],
        "InvalidRequestError": [
            "• Only http(s) URLs are accepted.",
            "• Playlist URLs must contain a `list` parameter or `/playlist` path.",
        ],
        "OSError": [
            "• Check that the download directory exists and is writable.",
            "• Another server may already be bound to the configured port.",
        ],
    }

    suggestions = suggestions_map.get(
        error_type, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    suggestion_text = Text("\n".join(suggestions))

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(suggestion_text)

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config: ServerConfig):
    """Displays the effective configuration."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    data: dict[str, Any] = config.model_dump(exclude={"config_path"})
    for key in sorted(data):
        value = data[key]
        if isinstance(value, bool):
            value = "✓ Enabled" if value else "✗ Disabled"
        elif value == "":
            value = "[dim](not set)[/dim]"
        table.add_row(f"{key}:", str(value))

    source = config_path if config_path.is_file() else f"{config_path} (defaults)"
    console.print(
        Panel(
            table,
            title=f"Configuration ([dim]{source}[/dim])",
            border_style="cyan",
        )
    )


def print_summary_panel(
    media_format: str,
    successful: int,
    failed: int,
    duration_s: float,
    cancelled: bool = False,
):
    """Displays the final summary of a fetch session."""
    console = Console()
    format_info = get_format_info(media_format)

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=16)
    stats_table.add_column(style="white", justify="left")

    stats_table.add_row(
        "Format:", f"[{format_info['color']}]{format_info['name']}[/]"
    )
    stats_table.add_row("✓ Downloaded:", f"[bold green]{successful}[/bold green]")
    if failed > 0:
        stats_table.add_row("✗ Failed:", f"[bold red]{failed}[/bold red]")
    stats_table.add_row("Time Elapsed:", f"[blue]{format_duration(duration_s)}[/blue]")

    if cancelled:
        title = "⚠️  [bold]Download Cancelled[/bold]"
        border_color = "yellow"
    elif failed and not successful:
        title = "✗ [bold]Download Failed[/bold]"
        border_color = "red"
    else:
        title = "🎵 [bold]Download Complete![/bold]"
        border_color = "green"

    console.print()
    console.print(
        Panel(
            stats_table,
            title=title,
            border_style=border_color,
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )
    console.print()


def print_sweep_result(removed: int, failed: int, directory: Path):
    """Displays the outcome of a manual retention pass."""
    console = Console()
    if removed:
        console.print(
            f"[green]✓ Removed {removed} expired artifact(s) from[/green] "
            f"[dim]{directory}[/dim]"
        )
    else:
        console.print(f"[dim]No expired artifacts in {directory}.[/dim]")
    if failed:
        console.print(f"[yellow]⚠️  {failed} file(s) could not be removed.[/yellow]")
