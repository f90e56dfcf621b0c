"""
The main orchestrator for expanding sources into work items and driving the
worker over them one at a time.
"""

import logging
import time
from typing import Optional, Sequence

from rich.markup import escape

from tubefetch.exceptions import InvalidRequestError
from tubefetch.media.tool import ExtractorTool
from tubefetch.models.config import ExtractionOptions, ServerConfig
from tubefetch.models.session import ErrorKind, ProgressMessage, WorkItem
from tubefetch.utils.path import parse_source_url
from tubefetch.utils.structured_logger import SessionEventLogger
from tubefetch.web.channel import ProgressChannel

from .cancellation import announce_cancellation
from .registry import ProcessRegistry
from .worker import ExtractionWorker

log = logging.getLogger(__name__)


class BatchOrchestrator:
    """
    Sequentially runs the Extraction Worker over a list of items.

    Items never run concurrently: every progress message is published and
    awaited before the next item starts, which is what keeps a session's
    message stream ordered.
    """

    def __init__(
        self,
        config: ServerConfig,
        tool: ExtractorTool,
        worker: ExtractionWorker,
        registry: ProcessRegistry,
        channel: ProgressChannel,
        events: Optional[SessionEventLogger] = None,
    ):
        self.config = config
        self.tool = tool
        self.worker = worker
        self.registry = registry
        self.channel = channel
        self.events = events

    async def _emit(self, session_id: str, kind: str, **fields) -> None:
        await self.channel.publish(
            session_id, ProgressMessage(kind=kind, session_id=session_id, **fields)
        )

    async def expand_source(
        self, url: str, session_id: Optional[str] = None
    ) -> list[WorkItem]:
        """Turns one source URL into its work items (a playlist yields many)."""
        url_info = parse_source_url(url)
        if not url_info:
            raise InvalidRequestError(f"Invalid or unsupported URL: {url}")

        url_type, normalized = url_info
        if url_type == "playlist":
            return await self.tool.expand_playlist(
                normalized,
                self.config.playlist_timeout,
                registry=self.registry,
                session_id=session_id,
            )
        if normalized != url:
            log.info(f"Playlist URL with video id detected, using {normalized}")
        return [WorkItem(source=normalized)]

    async def run_sources(
        self, urls: Sequence[str], session_id: str, options: ExtractionOptions
    ) -> None:
        """Expands every source URL in order, then runs the resulting batch."""
        try:
            items: list[WorkItem] = []
            for url in dict.fromkeys(urls):
                items.extend(await self.expand_source(url, session_id))
                if self.registry.is_cancelled(session_id):
                    await announce_cancellation(self.registry, self.channel, session_id)
                    return
        except Exception as e:
            log.error(f"[red]✗ Could not expand sources for {session_id}: {e}[/red]")
            await self._emit(
                session_id,
                "error",
                error=f"Batch download failed: {e}",
                error_code=ErrorKind.BATCH,
            )
            return
        await self.run_batch(items, session_id, options)

    async def run_batch(
        self, items: Sequence[WorkItem], session_id: str, options: ExtractionOptions
    ) -> None:
        """
        Processes every item, publishing progress as it goes.

        Never raises: an individual failure becomes an item `error` message, and
        anything unexpected becomes one terminal `error` for the session.
        """
        try:
            await self._run_batch(list(items), session_id, options)
        except Exception as e:
            log.error(
                f"[red]✗ Batch {session_id} failed unexpectedly: {e}[/red]",
                exc_info=log.getEffectiveLevel() == logging.DEBUG,
            )
            await self._emit(
                session_id,
                "error",
                error=f"Batch download failed: {e}",
                error_code=ErrorKind.BATCH,
            )

    async def _run_batch(
        self, items: list[WorkItem], session_id: str, options: ExtractionOptions
    ) -> None:
        total = len(items)
        if total == 0:
            await self._emit(
                session_id,
                "error",
                error="No videos found to download",
                error_code=ErrorKind.NO_OUTPUT,
            )
            return

        start_time = time.monotonic()
        if self.events:
            self.events.session_started(
                session_id, total, options.quality, options.media_format
            )
        await self._emit(session_id, "start", total=total)

        successful = failed = 0
        for current, item in enumerate(items, start=1):
            if self.registry.is_cancelled(session_id):
                log.info(f"Session {session_id} cancelled before item {current}/{total}.")
                await announce_cancellation(self.registry, self.channel, session_id)
                return

            await self._emit(
                session_id, "progress", current=current, total=total, video_url=item.source
            )
            if self.events:
                self.events.item_started(session_id, current, total, item.source)

            outcome = await self.worker.extract(item, session_id, options)

            if outcome.was_cancelled:
                log.info(f"Session {session_id} cancelled during item {current}/{total}.")
                await announce_cancellation(self.registry, self.channel, session_id)
                return

            if outcome.success:
                successful += 1
                log.info(f"  [green]✓ [{current}/{total}][/green] {escape(outcome.file_name)}")
                if self.events:
                    self.events.item_completed(session_id, current, outcome.file_name)
                await self._emit(
                    session_id,
                    "success",
                    current=current,
                    total=total,
                    video_url=item.source,
                    file_name=outcome.file_name,
                    download_url=outcome.download_url,
                )
            else:
                failed += 1
                error = outcome.error or "Download failed"
                error_code = outcome.error_kind or ErrorKind.TOOL_EXIT
                log.error(f"  [red]✗ [{current}/{total}][/red] {escape(item.source)} ({error})")
                if self.events:
                    self.events.item_failed(
                        session_id, current, error, error_code.value
                    )
                await self._emit(
                    session_id,
                    "error",
                    current=current,
                    total=total,
                    video_url=item.source,
                    error=error,
                    error_code=error_code,
                )

        if self.events:
            self.events.session_completed(
                session_id, successful, failed, time.monotonic() - start_time
            )
        await self._emit(
            session_id, "complete", total=total, successful=successful, failed=failed
        )
