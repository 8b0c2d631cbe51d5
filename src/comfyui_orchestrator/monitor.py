"""
Execution Monitor

Submits a graph and follows it over the server's WebSocket progress channel.

    IDLE -> CONNECTING -> SUBMITTED -> QUEUED -> SAMPLING -> FETCHING
                                                   -> {DONE | ERROR | INTERRUPTED}

`ExecutionMonitor.execute()` is an async generator of ProgressEvents. It ends
after the FETCHING event (result retrieval belongs to the caller) and raises
for every failure. The channel is closed on every exit path.
"""

import json
import asyncio
from enum import Enum
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Callable, Optional, Set

import websockets

from .client import ComfyUIClient, get_client
from .errors import (
    ChannelError,
    ExecutionError,
    Interrupted,
    OrchestratorError,
    SubmissionError,
)
from .graph import WorkflowGraph
from .mcp_utils import log_structured
from .types import ProgressEventDict


class JobState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SUBMITTED = "submitted"
    QUEUED = "queued"
    SAMPLING = "sampling"
    FETCHING = "fetching"
    DONE = "done"
    ERROR = "error"
    INTERRUPTED = "interrupted"

    @property
    def terminal(self) -> bool:
        return self in (JobState.DONE, JobState.ERROR, JobState.INTERRUPTED)


# Progress reserved per phase: 0-30% connect/queue, 30-90% sampling, 90-100% fetch
FRACTION_CONNECTING = 0.10
FRACTION_SUBMITTED = 0.20
FRACTION_QUEUED = 0.25
FRACTION_SAMPLING_START = 0.30
FRACTION_SAMPLING_SPAN = 0.60
FRACTION_FETCHING = 0.90


@dataclass
class ProgressEvent:
    """One observable step of a job. `output` is set only on DONE events."""

    message: str
    fraction: float
    state: JobState
    prompt_id: Optional[str] = None
    output: Any = None
    iteration: int = 0

    def to_dict(self) -> ProgressEventDict:
        data = asdict(self)
        data["state"] = self.state.value
        data["fraction"] = round(self.fraction, 4)
        data["output"] = self.output.to_dict() if hasattr(self.output, "to_dict") else self.output
        return data


@dataclass
class ExecutionHandle:
    """
    The one live job of a session.

    Created by `RenderSession.acquire()`, released on every terminal state.
    `cancelled` is the cooperative stop flag checked before each new network
    call made for the job.
    """

    client_id: str
    channel: Any = None
    state: JobState = JobState.IDLE
    prompt_id: Optional[str] = None
    cancelled: bool = False

    async def close_channel(self) -> None:
        channel, self.channel = self.channel, None
        if channel is not None:
            await channel.close()


def _submission_message(result: dict) -> str:
    error = result.get("error")
    if isinstance(error, dict):
        detail = error.get("details") or error.get("message") or ""
        return f"Error from ComfyUI: {error.get('type', 'error')} - {detail}"
    if error:
        return f"Failed to queue prompt: {error}"
    return "Failed to queue prompt: response carried no prompt_id"


def _output_nodes(graph: WorkflowGraph) -> Set[str]:
    """Nodes nothing else consumes; the job is finished once all of them ran."""
    consumed = {ref.node_id for node in graph.nodes.values() for _, ref in node.refs()}
    return set(graph.nodes) - consumed


class ExecutionMonitor:
    def __init__(
        self,
        client: Optional[ComfyUIClient] = None,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self.client = client or get_client()
        self.connect = connect

    async def execute(self, handle: ExecutionHandle, graph: WorkflowGraph) -> AsyncIterator[ProgressEvent]:
        """
        Submit `graph` under `handle` and stream its progress.

        Yields:
            ProgressEvents with non-decreasing fractions, ending with FETCHING.

        Raises:
            ChannelError: The channel could not be opened or dropped early.
            SubmissionError: The server rejected the graph.
            ExecutionError: The server reported execution_error for the job.
            Interrupted: The job was cancelled locally or interrupted server-side.
        """
        reached = 0.0

        def emit(state: JobState, message: str, fraction: float) -> ProgressEvent:
            nonlocal reached
            reached = max(reached, fraction)
            if state != handle.state:
                log_structured("info", "job_state", client_id=handle.client_id, prompt_id=handle.prompt_id, state=state.value)
            handle.state = state
            return ProgressEvent(message, reached, state, handle.prompt_id)

        if handle.cancelled:
            handle.state = JobState.INTERRUPTED
            raise Interrupted("Job was cancelled before it started")

        url = self.client.ws_url(handle.client_id)
        yield emit(JobState.CONNECTING, "Connecting to ComfyUI...", FRACTION_CONNECTING)
        try:
            handle.channel = await self.connect(url, max_size=None)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            handle.state = JobState.ERROR
            raise ChannelError(
                f"WebSocket connection failed ({e}). Ensure the ComfyUI server is running and accessible.",
                url=url,
            ) from e
        log_structured("debug", "channel_opened", client_id=handle.client_id, url=url)

        try:
            if handle.cancelled:
                raise Interrupted("Job was cancelled while connecting")

            yield emit(JobState.SUBMITTED, "Queueing prompt...", FRACTION_SUBMITTED)
            workflow = graph.to_api()
            result = await asyncio.to_thread(self.client.queue_prompt, workflow, handle.client_id)
            if "error" in result or not result.get("prompt_id"):
                raise SubmissionError(_submission_message(result), server_detail=result)
            handle.prompt_id = result["prompt_id"]
            log_structured(
                "info",
                "workflow_queued",
                prompt_id=handle.prompt_id,
                client_id=handle.client_id,
                node_count=len(workflow),
                queue_position=result.get("number", 0),
            )

            # A cancel that landed while /prompt was in flight interrupted nothing
            if handle.cancelled or handle.channel is None:
                await self._interrupt(handle)
                raise Interrupted("Job was cancelled while queueing")

            pending = _output_nodes(graph)
            close_reason = "no terminal event"
            try:
                async for raw in handle.channel:
                    if not isinstance(raw, str):
                        # binary preview frames
                        continue
                    try:
                        message = json.loads(raw)
                    except json.JSONDecodeError:
                        log_structured("debug", "channel_message_unreadable", client_id=handle.client_id)
                        continue
                    event = self._transition(message, handle, pending, emit)
                    if event is not None:
                        yield event
                        if event.state == JobState.FETCHING:
                            return
            except websockets.exceptions.ConnectionClosed as e:
                close_reason = str(e)

            if handle.cancelled:
                raise Interrupted("Job was cancelled")
            raise ChannelError(f"Progress channel closed before the job finished ({close_reason})", url=url)

        except Interrupted:
            handle.state = JobState.INTERRUPTED
            raise
        except OrchestratorError:
            handle.state = JobState.ERROR
            raise
        finally:
            await handle.close_channel()

    async def _interrupt(self, handle: ExecutionHandle) -> None:
        try:
            result = await asyncio.to_thread(self.client.interrupt)
        except OSError as e:
            result = {"error": str(e)}
        if "error" in result:
            log_structured(
                "warning",
                "interrupt_request_failed",
                client_id=handle.client_id,
                prompt_id=handle.prompt_id,
                error=result["error"],
            )
        else:
            log_structured("info", "late_interrupt_sent", client_id=handle.client_id, prompt_id=handle.prompt_id)

    def _transition(
        self,
        message: dict,
        handle: ExecutionHandle,
        pending: Set[str],
        emit: Callable[[JobState, str, float], ProgressEvent],
    ) -> Optional[ProgressEvent]:
        msg_type = message.get("type", "")
        data = message.get("data") or {}

        prompt_id = data.get("prompt_id")
        if prompt_id is not None and prompt_id != handle.prompt_id:
            return None

        if msg_type == "status":
            # Queue updates keep arriving while we sample; they only move us forward
            if handle.state not in (JobState.SUBMITTED, JobState.QUEUED):
                return None
            remaining = data.get("status", {}).get("exec_info", {}).get("queue_remaining", 0)
            message_text = f"In queue... position {remaining}" if remaining > 0 else "Preparing to generate..."
            return emit(JobState.QUEUED, message_text, FRACTION_QUEUED)

        if msg_type == "progress":
            value = data.get("value", 0)
            max_value = data.get("max", 0)
            ratio = min(value / max_value, 1.0) if max_value > 0 else 0.0
            return emit(
                JobState.SAMPLING,
                f"Sampling... {value}/{max_value}",
                FRACTION_SAMPLING_START + ratio * FRACTION_SAMPLING_SPAN,
            )

        if msg_type == "execution_cached":
            pending.difference_update(data.get("nodes") or [])
            return None

        if msg_type == "executed":
            pending.discard(str(data.get("node")))
            if pending:
                return None
            return emit(JobState.FETCHING, "Fetching results...", FRACTION_FETCHING)

        if msg_type in ("executing", "execution_success"):
            if msg_type == "executing" and data.get("node") is not None:
                return None
            if prompt_id is None:
                return None
            return emit(JobState.FETCHING, "Fetching results...", FRACTION_FETCHING)

        if msg_type == "execution_error":
            raise ExecutionError(
                f"ComfyUI execution error: {data.get('exception_message') or json.dumps(data, default=str)}",
                server_detail=data,
            )

        if msg_type == "execution_interrupted":
            raise Interrupted("Execution interrupted on the server")

        return None
