"""
Shared fixtures: a fast configuration, the fake extraction tool, and a
recording subscriber connection.
"""

import asyncio
import json
import os
import sys
from pathlib import Path

import pytest

from tubefetch.core.engine import ExtractionEngine
from tubefetch.media.tool import ExtractorTool
from tubefetch.models.config import ServerConfig

FAKE_TOOL = Path(__file__).parent / "fake_tool.py"


class RecordingConnection:
    """Collects every message published to it, decoded from JSON."""

    def __init__(self, on_message=None):
        self.messages: list[dict] = []
        self.closed = False
        self.on_message = on_message

    async def send_str(self, data: str) -> None:
        message = json.loads(data)
        self.messages.append(message)
        if self.on_message is not None:
            await self.on_message(message)

    def of_type(self, kind: str) -> list[dict]:
        return [m for m in self.messages if m["type"] == kind]

    @property
    def cancellations(self) -> list[dict]:
        return [m for m in self.messages if m.get("errorCode") == "cancelled"]


async def wait_for_condition(predicate, timeout: float = 5.0) -> None:
    """Polls until `predicate()` is true or fails the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(0.02)


def is_process_alive(pid: int) -> bool:
    """True while `pid` names a running process. Zombies count as gone."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return True
    return stat.rsplit(")", 1)[-1].split()[0] != "Z"


@pytest.fixture
def config(tmp_path):
    return ServerConfig(
        download_dir=str(tmp_path / "downloads"),
        audio_timeout=10,
        video_timeout=10,
        metadata_timeout=5,
        playlist_timeout=5,
        settle_delay=0,
        cancel_grace=0.1,
        kill_grace=1,
    )


@pytest.fixture
def fake_tool_argv():
    return [sys.executable, str(FAKE_TOOL)]


@pytest.fixture
def tool(config, fake_tool_argv):
    return ExtractorTool(fake_tool_argv, config.download_path)


@pytest.fixture
def engine(config, tool):
    engine = ExtractionEngine(config, tool=tool)
    engine.store.ensure()
    yield engine
    engine.event_log.close()


@pytest.fixture
def connection():
    return RecordingConnection()


@pytest.fixture
def wait_until():
    return wait_for_condition


@pytest.fixture
def connection_factory():
    return RecordingConnection


@pytest.fixture
def process_alive():
    return is_process_alive
