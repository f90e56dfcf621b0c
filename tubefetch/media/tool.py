"""
Adapter around the external extraction tool (yt-dlp compatible).

Builds command lines, runs the tool as a child process with a wall-clock
ceiling, and implements the two read-only helper modes: metadata pre-fetch
and playlist expansion.
"""

import asyncio
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from tubefetch.core.registry import (
    GROUP_SIGNALS,
    ProcessRegistry,
    send_kill,
    send_terminate,
)
from tubefetch.exceptions import PlaylistExtractionError, ToolStartError
from tubefetch.models.config import ExtractionOptions, ServerConfig
from tubefetch.models.session import WorkItem
from tubefetch.utils.path import WATCH_URL

from .metadata import METADATA_PRINT_TEMPLATE, VideoMetadata, parse_metadata_output

log = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 5.0
# How long output pipes may stay open once the child itself has exited.
PIPE_DRAIN_SECONDS = 2.0
EXIT_POLL_SECONDS = 0.05
READ_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ToolResult:
    """What one finished (or abandoned) tool invocation left behind."""

    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False

    @property
    def last_error_line(self) -> str:
        lines = [line for line in self.stderr.splitlines() if line.strip()]
        return lines[-1].strip() if lines else ""


async def wait_for_exit(proc: asyncio.subprocess.Process) -> int:
    """
    Waits for the child itself to exit. Unlike `proc.wait()`, this does not
    also wait for output pipes a surviving grandchild may still hold open.
    """
    while proc.returncode is None:
        await asyncio.sleep(EXIT_POLL_SECONDS)
    return proc.returncode


async def terminate_process(
    proc: asyncio.subprocess.Process, grace: float = TERMINATE_GRACE_SECONDS
) -> None:
    """Sends SIGTERM to the process group, escalating to SIGKILL after the grace period."""
    if proc.returncode is not None:
        return
    send_terminate(proc)
    try:
        await asyncio.wait_for(wait_for_exit(proc), timeout=grace)
    except asyncio.TimeoutError:
        log.warning(f"Process {proc.pid} ignored SIGTERM, killing it.")
        send_kill(proc)
        await wait_for_exit(proc)


async def _collect(stream: asyncio.StreamReader, sink: bytearray) -> None:
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            return
        sink.extend(chunk)


async def _drain(proc: asyncio.subprocess.Process, readers: list[asyncio.Task]) -> None:
    """
    Lets the output readers reach EOF after the child exited. Pipes still open
    past PIPE_DRAIN_SECONDS are held by leftovers in the child's process
    group, which are killed.
    """
    _, pending = await asyncio.wait(readers, timeout=PIPE_DRAIN_SECONDS)
    if not pending:
        return
    log.debug(f"Output of process {proc.pid} still open after exit; killing its group.")
    send_kill(proc)
    _, pending = await asyncio.wait(pending, timeout=PIPE_DRAIN_SECONDS)
    for reader in pending:
        reader.cancel()


async def run_tool(
    argv: Sequence[str],
    timeout: float,
    env: Optional[dict[str, str]] = None,
    registry: Optional[ProcessRegistry] = None,
    session_id: Optional[str] = None,
) -> ToolResult:
    """
    Spawns one child process in its own process group, collects its output,
    and waits for it to exit.

    When a registry is given, the handle is registered under `session_id`
    right after the spawn, before any other await, and unregistered as soon
    as the process has exited or been killed.

    Raises:
        ToolStartError: If the executable could not be launched at all.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            start_new_session=GROUP_SIGNALS,
        )
    except OSError as e:
        raise ToolStartError(f"Failed to start {argv[0]}: {e}") from e

    if registry is not None and session_id is not None:
        if not registry.register(session_id, proc):
            # The registry already signalled it; just reap it.
            await terminate_process(proc)
            return ToolResult(proc.returncode, cancelled=True)

    stdout, stderr = bytearray(), bytearray()
    readers = [
        asyncio.ensure_future(_collect(proc.stdout, stdout)),
        asyncio.ensure_future(_collect(proc.stderr, stderr)),
    ]
    timed_out = False
    try:
        await asyncio.wait_for(wait_for_exit(proc), timeout=timeout)
    except asyncio.TimeoutError:
        log.debug(f"Process {proc.pid} exceeded {timeout:.0f}s, terminating.")
        timed_out = True
        await terminate_process(proc)
    except asyncio.CancelledError:
        await terminate_process(proc)
        for reader in readers:
            reader.cancel()
        raise
    finally:
        if registry is not None and session_id is not None:
            registry.unregister(session_id, proc)

    await _drain(proc, readers)
    if timed_out:
        return ToolResult(proc.returncode, timed_out=True)
    return ToolResult(
        proc.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


def parse_playlist_output(raw_output: str) -> list[str]:
    """Parses 'id|url' lines into item URLs, rebuilding missing URLs from ids."""
    urls = []
    for line in raw_output.splitlines():
        line = line.strip()
        if not line:
            continue
        video_id, _, url = line.partition("|")
        url = url.strip()
        video_id = video_id.strip()
        if url.startswith("http"):
            urls.append(url)
        elif video_id and video_id != "NA":
            urls.append(WATCH_URL.format(video_id))
    return urls


class ExtractorTool:
    """Knows how to invoke the external extraction tool for each mode."""

    USER_AGENT = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )

    def __init__(
        self,
        executable: Sequence[str],
        download_dir: Path,
        ffmpeg_dir: str = "",
    ):
        """
        Args:
            executable: The command prefix that launches the tool.
            download_dir: Where artifacts are written.
            ffmpeg_dir: Optional directory prepended to PATH for post-processing.
        """
        self.executable = list(executable)
        self.download_dir = download_dir
        self.ffmpeg_dir = ffmpeg_dir

    @classmethod
    def from_config(cls, config: ServerConfig) -> "ExtractorTool":
        return cls([config.tool_path], config.download_path, config.ffmpeg_dir)

    def env(self) -> dict[str, str]:
        """The child environment, with the bundled ffmpeg directory on PATH."""
        env = dict(os.environ)
        if self.ffmpeg_dir and Path(self.ffmpeg_dir).is_dir():
            env["PATH"] = os.pathsep.join([self.ffmpeg_dir, env.get("PATH", "")])
        return env

    def output_template(self, stem: str) -> str:
        # '%' starts an output-template field, so literal ones are doubled.
        return str(self.download_dir / f"{stem.replace('%', '%%')}.%(ext)s")

    def build_download_args(
        self, source: str, stem: str, options: ExtractionOptions
    ) -> list[str]:
        args = [source, "--newline", "--ignore-config", "--no-playlist"]
        if options.media_format == "audio":
            args += [
                "-f", "bestaudio/worst",
                "-x",
                "--audio-format", "mp3",
                "--audio-quality", options.quality,
                "--embed-thumbnail",
            ]  # fmt: skip
        else:
            args += [
                "-f", "bestvideo+bestaudio/best",
                "--merge-output-format", "mp4",
            ]  # fmt: skip
        args += [
            "-o", self.output_template(stem),
            "--output-na-placeholder", "NA",
            "--progress",
            "--retries", "3",
            "--fragment-retries", "3",
            "--extractor-retries", "3",
            "--user-agent", self.USER_AGENT,
            "--referer", "https://www.youtube.com/",
            "--add-header", "Accept-Language:en-US,en;q=0.9",
        ]  # fmt: skip
        return self.executable + args

    def build_metadata_args(self, source: str) -> list[str]:
        return self.executable + [
            source,
            "--newline",
            "--ignore-config",
            "--no-download",
            "--no-playlist",
            "--print",
            METADATA_PRINT_TEMPLATE,
        ]

    def build_playlist_args(self, playlist_url: str) -> list[str]:
        return self.executable + [
            playlist_url,
            "--flat-playlist",
            "--print",
            "%(id)s|%(url)s",
            "--no-warnings",
            "--ignore-config",
        ]

    async def fetch_metadata(
        self,
        source: str,
        timeout: float,
        registry: Optional[ProcessRegistry] = None,
        session_id: Optional[str] = None,
    ) -> Optional[VideoMetadata]:
        """
        Best-effort metadata pre-fetch. Never raises; returns None on any failure.
        """
        try:
            result = await run_tool(
                self.build_metadata_args(source),
                timeout,
                env=self.env(),
                registry=registry,
                session_id=session_id,
            )
        except ToolStartError as e:
            log.warning(f"[yellow]Metadata extraction could not start:[/yellow] {e}")
            return None

        if result.timed_out:
            log.warning(f"[yellow]Metadata extraction timed out for {source}[/yellow]")
            return None
        if result.cancelled or result.returncode != 0:
            log.debug(
                f"Metadata extraction failed with code {result.returncode}: "
                f"{result.stderr[-500:]}"
            )
            return None
        return parse_metadata_output(result.stdout)

    async def expand_playlist(
        self,
        playlist_url: str,
        timeout: float,
        registry: Optional[ProcessRegistry] = None,
        session_id: Optional[str] = None,
    ) -> list[WorkItem]:
        """
        Lists the items of a playlist without downloading them.

        Raises:
            PlaylistExtractionError: If the tool fails, times out, or cannot start.
        """
        log.info(f"Extracting videos from playlist: [dim]{playlist_url}[/dim]")
        try:
            result = await run_tool(
                self.build_playlist_args(playlist_url),
                timeout,
                env=self.env(),
                registry=registry,
                session_id=session_id,
            )
        except ToolStartError as e:
            raise PlaylistExtractionError(str(e)) from e

        if result.timed_out:
            raise PlaylistExtractionError("Playlist extraction timeout")
        if result.cancelled:
            return []
        if result.returncode != 0:
            raise PlaylistExtractionError(
                f"Playlist extraction failed: {result.stderr[-500:].strip()}"
            )

        urls = parse_playlist_output(result.stdout)
        log.info(f"Extracted {len(urls)} videos from playlist.")
        return [WorkItem(source=url) for url in urls]

    def is_available(self) -> bool:
        """True if the tool's executable can be found."""
        program = self.executable[0]
        return Path(program).is_file() or shutil.which(program) is not None

    def ffmpeg_available(self) -> bool:
        """True if ffmpeg is reachable through the tool's environment."""
        return shutil.which("ffmpeg", path=self.env().get("PATH")) is not None
