"""
Tests for batch orchestration: message ordering, aggregation, and
cancellation between and during items.
"""

import asyncio

import pytest

from tubefetch.models.config import ExtractionOptions
from tubefetch.models.session import WorkItem

OPTIONS = ExtractionOptions()


def items(*kinds: str) -> list[WorkItem]:
    return [WorkItem(f"https://example.com/{kind}?n={n}") for n, kind in enumerate(kinds, 1)]


class TestBatchOrchestrator:
    @pytest.fixture
    def session_id(self, engine, connection):
        session_id = engine.registry.create_session()
        engine.subscribe(session_id, connection)
        return session_id

    @pytest.mark.asyncio
    async def test_mixed_batch_message_sequence(self, engine, connection, session_id):
        await engine.orchestrator.run_batch(items("ok", "fail", "ok"), session_id, OPTIONS)

        kinds = [(m["type"], m.get("current")) for m in connection.messages]
        assert kinds == [
            ("start", None),
            ("progress", 1),
            ("success", 1),
            ("progress", 2),
            ("error", 2),
            ("progress", 3),
            ("success", 3),
            ("complete", None),
        ]
        start, complete = connection.messages[0], connection.messages[-1]
        assert start == {"type": "start", "sessionId": session_id, "total": 3}
        assert complete["successful"] == 2
        assert complete["failed"] == 1
        assert complete["total"] == 3

        error = connection.of_type("error")[0]
        assert error["errorCode"] == "tool_exit"
        assert error["videoUrl"] == "https://example.com/fail?n=2"

        for success in connection.of_type("success"):
            assert success["downloadUrl"].startswith("/downloads/")
            assert engine.store.exists(success["fileName"])

    @pytest.mark.asyncio
    async def test_progress_counters_stay_within_total(self, engine, connection, session_id):
        await engine.orchestrator.run_batch(items("ok", "ok"), session_id, OPTIONS)
        for message in connection.of_type("progress"):
            assert 1 <= message["current"] <= message["total"] == 2

    @pytest.mark.asyncio
    async def test_empty_batch_emits_single_error(self, engine, connection, session_id):
        await engine.orchestrator.run_batch([], session_id, OPTIONS)
        assert connection.messages == [
            {
                "type": "error",
                "sessionId": session_id,
                "error": "No videos found to download",
                "errorCode": "no_output",
            }
        ]

    @pytest.mark.asyncio
    async def test_cancel_between_items(self, engine, session_id, connection_factory):
        async def cancel_after_first_success(message):
            if message["type"] == "success":
                await engine.cancel(session_id)

        connection = connection_factory(on_message=cancel_after_first_success)
        engine.subscribe(session_id, connection)

        await engine.orchestrator.run_batch(items("ok", "ok", "ok"), session_id, OPTIONS)

        assert len(connection.cancellations) == 1
        assert connection.cancellations[0]["error"] == "Download cancelled by user"
        assert [m["current"] for m in connection.of_type("progress")] == [1]
        assert connection.of_type("complete") == []
        # The first item's artifact was registered, so cancellation removed it.
        assert engine.store.names() == []

    @pytest.mark.asyncio
    async def test_cancel_during_item(self, engine, connection, session_id, wait_until):
        task = asyncio.create_task(
            engine.orchestrator.run_batch(items("hang", "ok"), session_id, OPTIONS)
        )
        await wait_until(lambda: any(n.endswith(".part") for n in engine.store.names()))

        report = await engine.cancel(session_id)
        await asyncio.wait_for(task, timeout=5)

        assert report.processes_signalled == 1
        assert len(connection.cancellations) == 1
        assert [m["current"] for m in connection.of_type("progress")] == [1]
        assert connection.of_type("complete") == []
        assert engine.store.names() == []
        assert engine.registry.is_cancelled(session_id)

    @pytest.mark.asyncio
    async def test_run_sources_expands_playlist(self, engine, connection, session_id):
        await engine.orchestrator.run_sources(
            ["https://example.com/playlist?list=PL1&items=ok,ok"], session_id, OPTIONS
        )
        assert connection.messages[0]["total"] == 2
        assert connection.messages[-1]["type"] == "complete"
        assert connection.messages[-1]["successful"] == 2

    @pytest.mark.asyncio
    async def test_run_sources_deduplicates_urls(self, engine, connection, session_id):
        url = "https://example.com/ok?n=1"
        await engine.orchestrator.run_sources([url, url], session_id, OPTIONS)
        assert connection.messages[0]["total"] == 1

    @pytest.mark.asyncio
    async def test_run_sources_failure_is_batch_error(self, engine, connection, session_id):
        await engine.orchestrator.run_sources(
            ["https://example.com/playlist-fail?list=X"], session_id, OPTIONS
        )
        assert len(connection.messages) == 1
        message = connection.messages[0]
        assert message["errorCode"] == "batch"
        assert message["error"].startswith("Batch download failed:")

    @pytest.mark.asyncio
    async def test_unsubscribed_session_still_completes(self, engine):
        session_id = engine.registry.create_session()
        await engine.orchestrator.run_batch(items("ok"), session_id, OPTIONS)
        assert len(engine.registry.get(session_id).files) == 1


class TestEngine:
    @pytest.mark.asyncio
    async def test_start_batch_returns_immediately(self, engine, connection, wait_until):
        session_id = engine.start_batch(["https://example.com/ok?n=1"], OPTIONS)
        engine.subscribe(session_id, connection)
        assert session_id in engine.registry

        await wait_until(lambda: not engine._tasks)
        assert connection.messages[0]["type"] == "start"
        assert connection.messages[-1]["type"] == "complete"

    @pytest.mark.asyncio
    async def test_extract_single(self, engine):
        session_id, outcome = await engine.extract_single("https://example.com/ok", OPTIONS)
        assert outcome.success is True
        assert engine.artifact_path(outcome.file_name).is_file()
        assert engine.registry.get(session_id).files == {outcome.file_name}

    @pytest.mark.asyncio
    async def test_stop_cancels_background_batches(self, engine, connection, wait_until):
        session_id = engine.start_batch(["https://example.com/hang"], OPTIONS)
        engine.subscribe(session_id, connection)
        await wait_until(lambda: any(n.endswith(".part") for n in engine.store.names()))

        await engine.stop()

        assert not engine._tasks
        assert engine.registry.is_cancelled(session_id)
        assert engine.store.names() == []
        assert len(connection.cancellations) == 1
        assert connection.messages[-1]["errorCode"] == "cancelled"
