"""
Pytest fixtures: a scripted render server (HTTP client mock plus fake
progress channels) and structured-log capture.
"""

import itertools
import json
import logging
import random
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from comfyui_orchestrator.assets import AssetUploader
from comfyui_orchestrator.client import ComfyUIClient
from comfyui_orchestrator.monitor import ExecutionMonitor
from comfyui_orchestrator.retriever import ResultRetriever
from comfyui_orchestrator.session import RenderSession

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image-data"


def job_messages(prompt_id, steps=2, queue_remaining=1):
    """Channel traffic of one uneventful job: queued, sampled, finished."""
    messages = [
        {"type": "status", "data": {"status": {"exec_info": {"queue_remaining": queue_remaining}}}},
        {"type": "execution_start", "data": {"prompt_id": prompt_id}},
    ]
    for value in range(1, steps + 1):
        messages.append({"type": "progress", "data": {"value": value, "max": steps, "prompt_id": prompt_id, "node": "3"}})
    messages.append({"type": "executing", "data": {"node": None, "prompt_id": prompt_id}})
    return messages


class FakeChannel:
    """
    Stand-in for a websockets client connection.

    Items are sent in order: dicts as JSON text frames, str/bytes as-is, and
    zero-argument coroutine functions are awaited in place (hooks for
    cancelling mid-stream). Iteration stops once the channel is closed.
    """

    def __init__(self, messages):
        self.messages = list(messages)
        self.closed = False
        self.close_calls = 0

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for item in self.messages:
            if self.closed:
                return
            if callable(item):
                await item()
                continue
            yield json.dumps(item) if isinstance(item, dict) else item

    async def close(self):
        self.closed = True
        self.close_calls += 1


class ScriptedConnect:
    """Replacement for websockets.connect; the n-th connection serves scripts[n] or a default job."""

    def __init__(self, scripts=None, error=None):
        self.scripts = list(scripts or [])
        self.error = error
        self.urls = []
        self.channels = []

    async def __call__(self, url, **kwargs):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        messages = self.scripts.pop(0) if self.scripts else job_messages(f"prompt-{len(self.urls)}")
        channel = FakeChannel(messages)
        self.channels.append(channel)
        return channel


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def history_entry(prompt_id, outputs=None, status_str="success"):
    if outputs is None:
        outputs = {"9": {"images": [{"filename": f"{prompt_id}.png", "subfolder": "", "type": "output"}]}}
    return {prompt_id: {"outputs": outputs, "status": {"status_str": status_str, "completed": True, "messages": []}}}


@pytest.fixture
def fake_client():
    """ComfyUIClient mock that accepts every job and has results ready immediately."""
    real = ComfyUIClient("http://localhost:8188")
    client = MagicMock()
    client.base_url = real.base_url
    client.ws_url.side_effect = real.ws_url
    client.view_url.side_effect = real.view_url

    counter = itertools.count(1)
    client.queue_prompt.side_effect = lambda workflow, client_id: {
        "prompt_id": f"prompt-{next(counter)}",
        "number": 0,
        "node_errors": {},
    }
    client.get_history.side_effect = lambda prompt_id: history_entry(prompt_id)
    client.download_file.return_value = PNG_BYTES
    client.interrupt.return_value = {}
    client.upload_image.side_effect = lambda path, filename=None, overwrite=True: {
        "name": filename or Path(path).name,
        "subfolder": "",
        "type": "input",
    }
    return client


@pytest.fixture
def connect():
    return ScriptedConnect()


@pytest.fixture
def no_sleep():
    return RecordingSleep()


@pytest.fixture
def session(fake_client, connect, no_sleep):
    """RenderSession wired to the fake server, deterministic seeds, no real waiting."""
    return RenderSession(
        client=fake_client,
        uploader=AssetUploader(fake_client),
        monitor=ExecutionMonitor(fake_client, connect=connect),
        retriever=ResultRetriever(fake_client, sleep=no_sleep),
        client_id="test-client",
        rng=random.Random(1234),
    )


# =============================================================================
# Structured Logging Fixtures
# =============================================================================


class CapturingLogHandler(logging.Handler):
    """Handler that captures log records for testing."""

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)

    def get_json_logs(self):
        """Return list of parsed JSON log entries."""
        from comfyui_orchestrator.mcp_utils import JSONFormatter

        formatter = JSONFormatter()
        return [json.loads(formatter.format(record)) for record in self.records]

    def messages(self):
        return [record.getMessage() for record in self.records]

    def find(self, message):
        return [entry for entry in self.get_json_logs() if entry["message"] == message]

    def clear(self):
        self.records = []


@pytest.fixture
def capturing_logger():
    """Fixture providing a capturing log handler."""
    logger = logging.getLogger("comfyui-orchestrator")

    handler = CapturingLogHandler()
    handler.setLevel(logging.DEBUG)
    logger.addHandler(handler)

    original_level = logger.level
    logger.setLevel(logging.DEBUG)

    yield handler

    logger.removeHandler(handler)
    logger.setLevel(original_level)
    handler.clear()


@pytest.fixture
def correlation_context():
    """Fixture providing correlation ID context management."""
    from comfyui_orchestrator.mcp_utils import clear_correlation_id, set_correlation_id

    def _set_cid(cid):
        set_correlation_id(cid)
        return cid

    yield _set_cid

    clear_correlation_id()
