"""
Runs one external-tool invocation for one work item and turns whatever it
left behind into a typed outcome.
"""

import asyncio
import logging
from typing import Optional

from tubefetch.exceptions import ToolStartError
from tubefetch.media.metadata import log_metadata
from tubefetch.media.tool import ExtractorTool, run_tool
from tubefetch.models.config import ExtractionOptions, ServerConfig
from tubefetch.models.session import (
    ErrorKind,
    ExtractionOutcome,
    WorkItem,
    generate_attempt_token,
)
from tubefetch.storage.artifacts import ArtifactStore
from tubefetch.utils.formatting import format_size
from tubefetch.utils.path import build_artifact_stem

from .registry import ProcessRegistry

log = logging.getLogger(__name__)

# stderr fragments meaning the media was fetched but could not be converted.
MISSING_FFMPEG_MARKERS = ("ffprobe and ffmpeg not found", "ffmpeg not found")


class ExtractionWorker:
    """
    Spawns exactly one tool process per call and resolves to an ExtractionOutcome.

    Cancellation is observed at three points: before spawning, right after the
    process exits, and immediately before an artifact is registered.
    """

    def __init__(
        self,
        config: ServerConfig,
        tool: ExtractorTool,
        registry: ProcessRegistry,
        store: ArtifactStore,
    ):
        self.config = config
        self.tool = tool
        self.registry = registry
        self.store = store

    async def resolve_artifact_stem(
        self, item: WorkItem, session_id: Optional[str] = None
    ) -> str:
        """
        Picks the artifact file stem for an item.

        Uses the pre-fetched title when available, the item's own title hint
        otherwise, and always embeds a unique per-attempt token.
        """
        token = generate_attempt_token()
        metadata = await self.tool.fetch_metadata(
            item.source,
            self.config.metadata_timeout,
            registry=self.registry,
            session_id=session_id,
        )
        if metadata is not None:
            log_metadata(metadata)
        title = (metadata.title if metadata else None) or item.title
        if not title:
            log.debug(f"No title for {item.source}; using token name {token}.")
        return build_artifact_stem(title, token)

    async def extract(
        self,
        item: WorkItem,
        session_id: str,
        options: ExtractionOptions,
        artifact_stem: Optional[str] = None,
    ) -> ExtractionOutcome:
        """Runs the tool for one item to completion, timeout, or cancellation."""
        if self.registry.is_cancelled(session_id):
            return ExtractionOutcome.cancelled()

        if artifact_stem is None:
            artifact_stem = await self.resolve_artifact_stem(item, session_id)
        self.registry.add_expected_pattern(session_id, artifact_stem)

        # The metadata call above is a suspension point.
        if self.registry.is_cancelled(session_id):
            return ExtractionOutcome.cancelled()

        argv = self.tool.build_download_args(item.source, artifact_stem, options)
        timeout = self.config.timeout_for(options.media_format)
        log.debug(f"Starting {options.media_format} extraction: {item.source}")

        try:
            result = await run_tool(
                argv,
                timeout,
                env=self.tool.env(),
                registry=self.registry,
                session_id=session_id,
            )
        except ToolStartError as e:
            log.error(f"[red]✗ {e}[/red]")
            return ExtractionOutcome.failed(ErrorKind.TOOL_START, str(e))

        if result.cancelled or self.registry.is_cancelled(session_id):
            await asyncio.to_thread(self._discard_output, session_id, artifact_stem)
            return ExtractionOutcome.cancelled()

        if result.timed_out:
            log.warning(
                f"[yellow]Extraction timed out after {timeout:.0f}s:[/yellow] {item.source}"
            )
            return ExtractionOutcome.failed(ErrorKind.TIMEOUT, "Download timeout")

        if result.returncode != 0:
            fallback = await asyncio.to_thread(
                self._recover_unconverted, result.stderr, artifact_stem, options
            )
            if fallback:
                log.info(
                    f"[yellow]ffmpeg unavailable; keeping unconverted audio[/yellow] "
                    f"{fallback}"
                )
                return await self._accept(session_id, fallback, artifact_stem)
            detail = f": {result.last_error_line}" if result.last_error_line else ""
            log.debug(f"Tool stderr: {result.stderr[-500:]}")
            return ExtractionOutcome.failed(
                ErrorKind.TOOL_EXIT,
                f"yt-dlp failed with code {result.returncode}{detail}",
                exit_code=result.returncode,
            )

        # Give the filesystem a moment to settle after post-processing.
        if self.config.settle_delay:
            await asyncio.sleep(self.config.settle_delay)

        file_name = await asyncio.to_thread(
            self.store.find_artifact, artifact_stem, options.media_format
        )
        if file_name is None:
            return ExtractionOutcome.failed(
                ErrorKind.NO_OUTPUT, "Output file not found after download"
            )
        return await self._accept(session_id, file_name, artifact_stem)

    def _recover_unconverted(
        self, stderr: str, stem: str, options: ExtractionOptions
    ) -> Optional[str]:
        """
        Accepts the raw .webm audio when conversion failed only because ffmpeg
        is missing. Returns the artifact name, or None if not recoverable.
        """
        if options.media_format != "audio":
            return None
        if not any(marker in stderr for marker in MISSING_FFMPEG_MARKERS):
            return None
        webm_name = f"{stem}.webm"
        return webm_name if self.store.exists(webm_name) else None

    async def _accept(
        self, session_id: str, file_name: str, stem: str
    ) -> ExtractionOutcome:
        """Registers a found artifact, or deletes it if the session was cancelled."""
        # No await between the check and the registration.
        if self.registry.is_cancelled(session_id):
            await asyncio.to_thread(self._discard_output, session_id, stem)
            return ExtractionOutcome.cancelled()
        self.registry.add_file(session_id, file_name)
        size = await asyncio.to_thread(self.store.size, file_name)
        if size is not None:
            log.debug(f"Stored {file_name} ({format_size(size)})")
        return ExtractionOutcome.ok(file_name)

    def _discard_output(self, session_id: str, stem: str) -> None:
        """Removes everything this attempt wrote, partial downloads included."""
        removed = self.store.remove_prefixed(stem)
        if removed:
            log.info(f"Discarded {', '.join(removed)}: session {session_id} was cancelled.")
