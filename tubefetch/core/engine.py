"""
The engine facade consumed by the transport layer and the CLI.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Sequence

from tubefetch.media.tool import ExtractorTool
from tubefetch.models.config import ExtractionOptions, ServerConfig
from tubefetch.models.session import ErrorKind, ExtractionOutcome
from tubefetch.storage.artifacts import ArtifactStore
from tubefetch.storage.retention import RetentionSweeper
from tubefetch.utils.structured_logger import create_structured_logger
from tubefetch.web.channel import Connection, ProgressChannel

from .cancellation import CancellationController, CancellationReport
from .orchestrator import BatchOrchestrator
from .registry import ProcessRegistry
from .worker import ExtractionWorker

log = logging.getLogger(__name__)

# How long shutdown waits for cancelled batches to wind down on their own.
SHUTDOWN_GRACE_SECONDS = 10.0


class ExtractionEngine:
    """Wires the session components together and owns background tasks."""

    def __init__(
        self,
        config: ServerConfig,
        tool: Optional[ExtractorTool] = None,
        log_dir: Optional[Path] = None,
    ):
        self.config = config
        self.store = ArtifactStore(config.download_path)
        self.tool = tool or ExtractorTool.from_config(config)
        self.registry = ProcessRegistry()
        self.channel = ProgressChannel()
        self.event_log, self.events = create_structured_logger(
            log_dir, enable_json=config.log_json
        )
        self.worker = ExtractionWorker(config, self.tool, self.registry, self.store)
        self.orchestrator = BatchOrchestrator(
            config, self.tool, self.worker, self.registry, self.channel, self.events
        )
        self.controller = CancellationController(
            config, self.registry, self.channel, self.store, self.events
        )
        self.sweeper = RetentionSweeper(
            config.download_path,
            max_age_seconds=config.retention_max_age,
            interval_seconds=config.retention_interval,
            registry=self.registry,
            session_idle_timeout=config.session_idle_timeout,
            events=self.events,
        )
        self._tasks: set[asyncio.Task] = set()
        self._batches: dict[str, asyncio.Task] = {}

    async def start(self) -> None:
        self.store.ensure()
        await self.sweeper.start()

    async def stop(self) -> None:
        """
        Cancels every session that is still working, the same way a client
        cancel would, then stops the sweeper.
        """
        live = {sid for sid, task in self._batches.items() if not task.done()}
        live.update(self.registry.active_ids())
        for session_id in sorted(live):
            await self.controller.cancel(session_id)

        if self._tasks:
            _, pending = await asyncio.wait(
                list(self._tasks), timeout=SHUTDOWN_GRACE_SECONDS
            )
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        await self.sweeper.stop()
        self.event_log.close()

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def start_batch(
        self, urls: Sequence[str], options: Optional[ExtractionOptions] = None
    ) -> str:
        """Creates a session and runs its batch in the background. Returns the id."""
        options = options or ExtractionOptions(quality=self.config.default_quality)
        session_id = self.registry.create_session()
        log.info(f"Starting batch session {session_id} ({len(urls)} source(s))")
        task = self._track(self.orchestrator.run_sources(list(urls), session_id, options))
        self._batches[session_id] = task
        task.add_done_callback(lambda _: self._batches.pop(session_id, None))
        return session_id

    async def extract_single(
        self, url: str, options: Optional[ExtractionOptions] = None
    ) -> tuple[str, ExtractionOutcome]:
        """Runs one item to completion under its own (cancellable) session."""
        options = options or ExtractionOptions(quality=self.config.default_quality)
        session_id = self.registry.create_session()
        items = await self.orchestrator.expand_source(url, session_id)
        if not items:
            return session_id, ExtractionOutcome.failed(
                ErrorKind.NO_OUTPUT, "Nothing to download"
            )
        outcome = await self.worker.extract(items[0], session_id, options)
        return session_id, outcome

    def subscribe(self, session_id: str, connection: Connection) -> None:
        self.channel.associate(session_id, connection)

    def unsubscribe(self, session_id: str, connection: Optional[Connection] = None) -> None:
        self.channel.disassociate(session_id, connection)

    async def cancel(self, session_id: str) -> CancellationReport:
        return await self.controller.cancel(session_id)

    def request_cancel(self, session_id: str) -> None:
        """Schedules cancellation and returns immediately."""
        self._track(self.controller.cancel(session_id))

    def artifact_path(self, name: str) -> Optional[Path]:
        return self.store.resolve(name)
