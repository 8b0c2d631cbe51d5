"""
Tests for ExecutionMonitor: submission, progress mapping and failure paths
against scripted progress channels.
"""

import asyncio

import pytest
from websockets.exceptions import ConnectionClosed

from comfyui_orchestrator.builder import build
from comfyui_orchestrator.errors import ChannelError, ExecutionError, Interrupted, SubmissionError
from comfyui_orchestrator.monitor import ExecutionHandle, ExecutionMonitor, JobState, ProgressEvent
from comfyui_orchestrator.options import GenerationOptions
from comfyui_orchestrator.templates import get_template

from conftest import ScriptedConnect, job_messages

PROMPT_ID = "prompt-1"


@pytest.fixture
def graph():
    return build(get_template("sdxl"), GenerationOptions(model_family="sdxl"), seed=1)


def _run(monitor, handle, graph, events):
    async def consume():
        async for event in monitor.execute(handle, graph):
            events.append(event)

    asyncio.run(consume())
    return events


class TestHappyPath:
    def test_event_sequence(self, fake_client, connect, graph):
        handle = ExecutionHandle("test-client")
        events = _run(ExecutionMonitor(fake_client, connect=connect), handle, graph, [])

        assert [e.state for e in events] == [
            JobState.CONNECTING,
            JobState.SUBMITTED,
            JobState.QUEUED,
            JobState.SAMPLING,
            JobState.SAMPLING,
            JobState.FETCHING,
        ]
        assert [e.fraction for e in events] == pytest.approx([0.10, 0.20, 0.25, 0.60, 0.90, 0.90])
        assert events[2].message == "In queue... position 1"
        assert events[3].message == "Sampling... 1/2"
        assert events[-1].message == "Fetching results..."

    def test_handle_updated(self, fake_client, connect, graph):
        handle = ExecutionHandle("test-client")
        _run(ExecutionMonitor(fake_client, connect=connect), handle, graph, [])

        assert handle.prompt_id == PROMPT_ID
        assert handle.state == JobState.FETCHING
        assert handle.channel is None
        assert connect.channels[0].closed

    def test_submits_api_workflow_under_client_id(self, fake_client, connect, graph):
        _run(ExecutionMonitor(fake_client, connect=connect), ExecutionHandle("test-client"), graph, [])

        workflow, client_id = fake_client.queue_prompt.call_args[0]
        assert client_id == "test-client"
        assert workflow == graph.to_api()
        assert connect.urls == ["ws://localhost:8188/ws?clientId=test-client"]

    def test_events_carry_prompt_id_after_submit(self, fake_client, connect, graph):
        events = _run(ExecutionMonitor(fake_client, connect=connect), ExecutionHandle("test-client"), graph, [])
        assert events[0].prompt_id is None
        assert all(e.prompt_id == PROMPT_ID for e in events[2:])

    def test_preparing_message_when_queue_empty(self, fake_client, graph):
        connect = ScriptedConnect([job_messages(PROMPT_ID, queue_remaining=0)])
        events = _run(ExecutionMonitor(fake_client, connect=connect), ExecutionHandle("test-client"), graph, [])
        assert events[2].message == "Preparing to generate..."

    def test_logs_queued(self, fake_client, connect, graph, capturing_logger):
        _run(ExecutionMonitor(fake_client, connect=connect), ExecutionHandle("test-client"), graph, [])

        queued = capturing_logger.find("workflow_queued")
        assert queued[0]["prompt_id"] == PROMPT_ID
        assert queued[0]["node_count"] == len(graph)


class TestMessageFiltering:
    def test_other_prompts_ignored(self, fake_client, graph):
        script = [
            {"type": "progress", "data": {"value": 9, "max": 10, "prompt_id": "someone-else"}},
            {"type": "executing", "data": {"node": None, "prompt_id": "someone-else"}},
            {"type": "progress", "data": {"value": 1, "max": 4, "prompt_id": PROMPT_ID}},
            {"type": "executing", "data": {"node": None, "prompt_id": PROMPT_ID}},
        ]
        events = _run(
            ExecutionMonitor(fake_client, connect=ScriptedConnect([script])), ExecutionHandle("test-client"), graph, []
        )

        sampling = [e for e in events if e.state == JobState.SAMPLING]
        assert [e.message for e in sampling] == ["Sampling... 1/4"]
        assert events[-1].state == JobState.FETCHING

    def test_binary_and_garbage_frames_skipped(self, fake_client, graph):
        script = [b"\x00\x00\x00\x01preview", "not json {", *job_messages(PROMPT_ID)]
        events = _run(
            ExecutionMonitor(fake_client, connect=ScriptedConnect([script])), ExecutionHandle("test-client"), graph, []
        )
        assert events[-1].state == JobState.FETCHING

    def test_status_after_sampling_does_not_regress(self, fake_client, graph):
        script = [
            {"type": "progress", "data": {"value": 1, "max": 2, "prompt_id": PROMPT_ID}},
            {"type": "status", "data": {"status": {"exec_info": {"queue_remaining": 3}}}},
            {"type": "executing", "data": {"node": None, "prompt_id": PROMPT_ID}},
        ]
        events = _run(
            ExecutionMonitor(fake_client, connect=ScriptedConnect([script])), ExecutionHandle("test-client"), graph, []
        )

        assert JobState.QUEUED not in [e.state for e in events]
        fractions = [e.fraction for e in events]
        assert fractions == sorted(fractions)

    def test_executing_a_node_is_not_completion(self, fake_client, graph):
        script = [
            {"type": "executing", "data": {"node": "3", "prompt_id": PROMPT_ID}},
            {"type": "execution_success", "data": {"prompt_id": PROMPT_ID}},
        ]
        events = _run(
            ExecutionMonitor(fake_client, connect=ScriptedConnect([script])), ExecutionHandle("test-client"), graph, []
        )
        assert [e.state for e in events][-1] == JobState.FETCHING
        assert len(events) == 3

    def test_completion_waits_for_every_output_node(self, fake_client):
        options = GenerationOptions(model_family="flux_krea", use_upscaler=True)
        graph = build(get_template("flux_krea"), options, seed=1)
        script = [
            {"type": "executed", "data": {"node": "171", "prompt_id": PROMPT_ID, "output": {}}},
            {"type": "progress", "data": {"value": 5, "max": 10, "prompt_id": PROMPT_ID}},
            {"type": "executed", "data": {"node": "170", "prompt_id": PROMPT_ID, "output": {}}},
        ]
        events = _run(
            ExecutionMonitor(fake_client, connect=ScriptedConnect([script])), ExecutionHandle("test-client"), graph, []
        )
        assert [e.state for e in events][-2:] == [JobState.SAMPLING, JobState.FETCHING]

    def test_cached_outputs_count_as_done(self, fake_client, graph):
        script = [
            {"type": "execution_cached", "data": {"nodes": ["4", "9"], "prompt_id": PROMPT_ID}},
            {"type": "executed", "data": {"node": "9", "prompt_id": PROMPT_ID, "output": {}}},
        ]
        events = _run(
            ExecutionMonitor(fake_client, connect=ScriptedConnect([script])), ExecutionHandle("test-client"), graph, []
        )
        assert events[-1].state == JobState.FETCHING


class TestFailures:
    def test_execution_error(self, fake_client, graph):
        error = {
            "type": "execution_error",
            "data": {"prompt_id": PROMPT_ID, "node_id": "3", "exception_message": "CUDA out of memory"},
        }
        connect = ScriptedConnect([[error]])
        handle = ExecutionHandle("test-client")

        with pytest.raises(ExecutionError) as exc:
            _run(ExecutionMonitor(fake_client, connect=connect), handle, graph, [])

        assert "CUDA out of memory" in exc.value.message
        assert exc.value.server_detail["node_id"] == "3"
        assert handle.state == JobState.ERROR
        assert connect.channels[0].closed

    def test_server_side_interrupt(self, fake_client, graph):
        connect = ScriptedConnect([[{"type": "execution_interrupted", "data": {"prompt_id": PROMPT_ID}}]])
        handle = ExecutionHandle("test-client")

        with pytest.raises(Interrupted):
            _run(ExecutionMonitor(fake_client, connect=connect), handle, graph, [])
        assert handle.state == JobState.INTERRUPTED
        assert connect.channels[0].closed

    def test_channel_ends_early(self, fake_client, graph):
        connect = ScriptedConnect([[{"type": "progress", "data": {"value": 1, "max": 2, "prompt_id": PROMPT_ID}}]])
        handle = ExecutionHandle("test-client")

        with pytest.raises(ChannelError) as exc:
            _run(ExecutionMonitor(fake_client, connect=connect), handle, graph, [])
        assert "closed before the job finished" in exc.value.message
        assert handle.state == JobState.ERROR

    def test_connection_dropped(self, fake_client, graph):
        async def drop():
            raise ConnectionClosed(None, None)

        connect = ScriptedConnect([[drop]])
        with pytest.raises(ChannelError):
            _run(ExecutionMonitor(fake_client, connect=connect), ExecutionHandle("test-client"), graph, [])
        assert connect.channels[0].closed

    def test_connect_refused(self, fake_client, graph):
        connect = ScriptedConnect(error=OSError("Connection refused"))
        handle = ExecutionHandle("test-client")
        events = []

        with pytest.raises(ChannelError) as exc:
            _run(ExecutionMonitor(fake_client, connect=connect), handle, graph, events)

        assert [e.state for e in events] == [JobState.CONNECTING]
        assert exc.value.code == "CONNECTION_ERROR"
        assert exc.value.details["url"].startswith("ws://")
        fake_client.queue_prompt.assert_not_called()

    def test_submission_rejected(self, fake_client, connect, graph):
        fake_client.queue_prompt.side_effect = None
        fake_client.queue_prompt.return_value = {
            "error": {"type": "prompt_outputs_failed_validation", "message": "Prompt outputs failed validation", "details": ""},
            "node_errors": {"4": {"errors": [{"message": "Value not in list"}]}},
            "status": 400,
        }
        handle = ExecutionHandle("test-client")

        with pytest.raises(SubmissionError) as exc:
            _run(ExecutionMonitor(fake_client, connect=connect), handle, graph, [])

        assert exc.value.message.startswith("Error from ComfyUI: prompt_outputs_failed_validation")
        assert "4" in exc.value.server_detail["node_errors"]
        assert connect.channels[0].closed
        assert handle.state == JobState.ERROR

    def test_missing_prompt_id(self, fake_client, connect, graph):
        fake_client.queue_prompt.side_effect = None
        fake_client.queue_prompt.return_value = {"number": 3}

        with pytest.raises(SubmissionError, match="no prompt_id"):
            _run(ExecutionMonitor(fake_client, connect=connect), ExecutionHandle("test-client"), graph, [])

    def test_cancelled_before_start(self, fake_client, connect, graph):
        handle = ExecutionHandle("test-client", cancelled=True)

        with pytest.raises(Interrupted):
            _run(ExecutionMonitor(fake_client, connect=connect), handle, graph, [])
        assert connect.urls == []

    def test_cancelled_mid_stream(self, fake_client, graph):
        handle = ExecutionHandle("test-client")

        async def cancel():
            handle.cancelled = True
            await handle.close_channel()

        script = [
            {"type": "progress", "data": {"value": 1, "max": 2, "prompt_id": PROMPT_ID}},
            cancel,
            {"type": "executing", "data": {"node": None, "prompt_id": PROMPT_ID}},
        ]
        with pytest.raises(Interrupted):
            _run(ExecutionMonitor(fake_client, connect=ScriptedConnect([script])), handle, graph, [])
        assert handle.state == JobState.INTERRUPTED

    def test_cancelled_during_submission(self, fake_client, connect, graph, capturing_logger):
        handle = ExecutionHandle("test-client")

        def queue_prompt(workflow, client_id):
            # what RenderSession.cancel() leaves behind
            handle.cancelled = True
            handle.channel = None
            return {"prompt_id": "queued-late", "number": 0}

        fake_client.queue_prompt.side_effect = queue_prompt
        events = []

        with pytest.raises(Interrupted):
            _run(ExecutionMonitor(fake_client, connect=connect), handle, graph, events)

        fake_client.interrupt.assert_called_once()
        assert handle.prompt_id == "queued-late"
        assert handle.state == JobState.INTERRUPTED
        assert events[-1].state == JobState.SUBMITTED
        assert capturing_logger.find("late_interrupt_sent")[0]["prompt_id"] == "queued-late"

    def test_late_interrupt_failure_is_logged(self, fake_client, connect, graph, capturing_logger):
        handle = ExecutionHandle("test-client")

        def queue_prompt(workflow, client_id):
            handle.cancelled = True
            return {"prompt_id": "queued-late", "number": 0}

        fake_client.queue_prompt.side_effect = queue_prompt
        fake_client.interrupt.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(Interrupted):
            _run(ExecutionMonitor(fake_client, connect=connect), handle, graph, [])

        assert capturing_logger.find("interrupt_request_failed")[0]["error"] == "refused"
        assert connect.channels[0].closed


class TestProgressEvent:
    def test_to_dict(self):
        event = ProgressEvent("Sampling... 1/3", 0.5, JobState.SAMPLING, "p1", iteration=2)
        assert event.to_dict() == {
            "message": "Sampling... 1/3",
            "fraction": 0.5,
            "state": "sampling",
            "prompt_id": "p1",
            "output": None,
            "iteration": 2,
        }

    def test_terminal_states(self):
        assert JobState.DONE.terminal and JobState.INTERRUPTED.terminal
        assert not JobState.SAMPLING.terminal
