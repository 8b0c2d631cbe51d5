"""
Render Session

Sequential seeded batches and cancellation for one logical client. The
session owns the single ExecutionHandle slot: a second job is refused while
one is live, and `cancel()` releases the slot so the next job can start
immediately.
"""

import os
import random
import asyncio
from dataclasses import replace
from typing import Any, AsyncIterator, Callable, Coroutine, Dict, List, Optional, Union
from uuid import uuid4

from .assets import AssetUploader
from .builder import build
from .client import ComfyUIClient, get_client
from .errors import (
    InvalidOptionsError,
    Interrupted,
    JobActiveError,
    OrchestratorError,
    ResultFetchError,
)
from .mcp_utils import log_structured
from .monitor import FRACTION_FETCHING, ExecutionHandle, ExecutionMonitor, JobState, ProgressEvent
from .options import GenerationOptions, SeedState
from .retriever import ResultRetriever, RetrievedOutput
from .templates import GraphTemplate, get_template
from .types import SessionStatus

CLIENT_PREFIX = os.environ.get("COMFYUI_CLIENT_PREFIX", "corch")

ProgressCallback = Callable[[ProgressEvent], None]


def run_sync(coro: Coroutine) -> Any:
    """Run a session coroutine from synchronous code (CLI)."""
    return asyncio.run(coro)


class RenderSession:
    def __init__(
        self,
        client: Optional[ComfyUIClient] = None,
        uploader: Optional[AssetUploader] = None,
        monitor: Optional[ExecutionMonitor] = None,
        retriever: Optional[ResultRetriever] = None,
        client_id: Optional[str] = None,
        rng: Optional[random.Random] = None,
    ):
        self.client = client or get_client()
        self.uploader = uploader or AssetUploader(self.client)
        self.monitor = monitor or ExecutionMonitor(self.client)
        self.retriever = retriever or ResultRetriever(self.client)
        self.client_id = client_id or f"{CLIENT_PREFIX}-{uuid4().hex[:12]}"
        self.rng = rng or random.Random()
        self.last_event: Optional[ProgressEvent] = None
        self._handle: Optional[ExecutionHandle] = None

    # -------------------------------------------------------------------------
    # Handle slot
    # -------------------------------------------------------------------------

    @property
    def handle(self) -> Optional[ExecutionHandle]:
        return self._handle

    @property
    def active(self) -> bool:
        return self._handle is not None

    def acquire(self) -> ExecutionHandle:
        if self._handle is not None:
            raise JobActiveError(self.client_id)
        self._handle = ExecutionHandle(self.client_id)
        return self._handle

    def release(self, handle: ExecutionHandle) -> None:
        # A cancelled job's cleanup must not free a newer job's slot
        if self._handle is handle:
            self._handle = None

    async def cancel(self, handle: Optional[ExecutionHandle] = None) -> bool:
        """
        Interrupt the live job, if any.

        The server-side interrupt is best effort: a failed request is logged
        and the local handle is closed and released regardless.

        Returns:
            True if a job was cancelled, False if there was nothing to cancel
            (no live handle, or `handle` is not the live one).
        """
        current = self._handle
        if current is None or (handle is not None and handle is not current):
            return False

        current.cancelled = True
        log_structured(
            "info",
            "interrupt_requested",
            client_id=current.client_id,
            prompt_id=current.prompt_id,
            state=current.state.value,
        )
        try:
            result = await asyncio.to_thread(self.client.interrupt)
        except Exception as e:
            result = {"error": str(e)}
        if "error" in result:
            log_structured("warning", "interrupt_request_failed", client_id=current.client_id, error=result["error"])

        await current.close_channel()
        current.state = JobState.INTERRUPTED
        self.release(current)
        fraction = self.last_event.fraction if self.last_event else 0.0
        self._record(ProgressEvent("Cancelled", fraction, JobState.INTERRUPTED, current.prompt_id))
        return True

    def status(self) -> SessionStatus:
        handle = self._handle
        return {
            "client_id": self.client_id,
            "active": handle is not None,
            "state": handle.state.value if handle else JobState.IDLE.value,
            "prompt_id": handle.prompt_id if handle else None,
            "last_event": self.last_event.to_dict() if self.last_event else None,
        }

    def _record(self, event: ProgressEvent) -> ProgressEvent:
        self.last_event = event
        return event

    # -------------------------------------------------------------------------
    # Single job
    # -------------------------------------------------------------------------

    def _files_to_upload(self, template: GraphTemplate, options: GenerationOptions) -> Dict[str, str]:
        unknown = sorted(set(options.input_images) - set(template.image_inputs))
        if unknown:
            raise InvalidOptionsError(
                f"Template {template.family} has no image input '{unknown[0]}'",
                details={"image_inputs": sorted(template.image_inputs)},
            )
        files = {}
        for name, path in options.input_images.items():
            spec = template.image_inputs[name]
            if spec.toggle and not getattr(options, spec.toggle, False):
                continue
            files[name] = path
        return files

    async def stream_job(
        self,
        template: GraphTemplate,
        options: GenerationOptions,
        seed: Optional[int] = None,
        iteration: int = 0,
        count: int = 1,
    ) -> AsyncIterator[ProgressEvent]:
        """
        One full cycle: upload, build, submit and monitor, retrieve.

        Yields ProgressEvents scaled to iteration `iteration` of a `count`-job
        batch; the last one is DONE and carries the RetrievedOutput. The
        handle is released on every exit path.
        """

        def scaled(event: ProgressEvent) -> ProgressEvent:
            return self._record(replace(event, fraction=(iteration + event.fraction) / count, iteration=iteration))

        handle = self.acquire()
        try:
            refs = await self.uploader.upload_all(self._files_to_upload(template, options))
            if handle.cancelled:
                raise Interrupted("Job was cancelled during upload")

            graph = build(template, options, refs, seed)

            async for event in self.monitor.execute(handle, graph):
                yield scaled(event)

            waiting: asyncio.Queue = asyncio.Queue()

            def on_attempt(attempt: int, budget: int) -> None:
                fraction = FRACTION_FETCHING + (1.0 - FRACTION_FETCHING) * attempt / (budget + 1)
                waiting.put_nowait(
                    ProgressEvent(f"Waiting for results... ({attempt}/{budget})", fraction, JobState.FETCHING, handle.prompt_id)
                )

            fetch = asyncio.ensure_future(self.retriever.fetch(handle.prompt_id, template.long_running, handle, on_attempt))
            next_event = None
            try:
                while not fetch.done():
                    next_event = asyncio.ensure_future(waiting.get())
                    done, _ = await asyncio.wait({fetch, next_event}, return_when=asyncio.FIRST_COMPLETED)
                    if next_event in done:
                        yield scaled(next_event.result())
                    else:
                        next_event.cancel()
                while not waiting.empty():
                    yield scaled(waiting.get_nowait())
                output = fetch.result()
            finally:
                fetch.cancel()
                if next_event is not None:
                    next_event.cancel()

            handle.state = JobState.DONE
            yield scaled(ProgressEvent("Done", 1.0, JobState.DONE, handle.prompt_id, output))
        except Interrupted:
            handle.state = JobState.INTERRUPTED
            raise
        except OrchestratorError:
            handle.state = JobState.ERROR
            raise
        finally:
            await handle.close_channel()
            self.release(handle)


    async def run_job(
        self,
        template: GraphTemplate,
        options: GenerationOptions,
        seed: Optional[int] = None,
    ) -> RetrievedOutput:
        output = None
        async for event in self.stream_job(template, options, seed):
            if event.state == JobState.DONE:
                output = event.output
        return output

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    async def stream_batch(
        self,
        template: Union[str, GraphTemplate, None],
        options: GenerationOptions,
        count: Optional[int] = None,
        seed_state: Optional[SeedState] = None,
    ) -> AsyncIterator[ProgressEvent]:
        """
        Run `count` jobs back to back, yielding events with batch-wide fractions.

        The options are snapshotted once; every iteration builds from that
        snapshot with the current seed, then the seed advances per policy.
        The first failure aborts the batch and propagates.
        """
        snapshot = options.snapshot()
        snapshot.validate()
        if template is None or isinstance(template, str):
            template = get_template(template or snapshot.model_family)
        count = snapshot.num_images if count is None else count
        if count < 1:
            raise InvalidOptionsError("count must be at least 1", details={"count": count})
        seeds = seed_state or snapshot.seed_state(self.rng)

        log_structured(
            "info",
            "batch_started",
            family=template.family,
            count=count,
            seed=seeds.current,
            seed_policy=seeds.policy.value,
        )
        for i in range(count):
            seed = seeds.current
            try:
                async for event in self.stream_job(template, snapshot, seed, i, count):
                    yield event
            except OrchestratorError as e:
                log_structured(
                    "warning" if isinstance(e, Interrupted) else "error",
                    "batch_failed",
                    family=template.family,
                    iteration=i,
                    count=count,
                    code=e.code,
                    error=e.message,
                )
                raise
            log_structured("info", "batch_iteration_completed", family=template.family, iteration=i, count=count, seed=seed)
            seeds.advance()

        log_structured("info", "batch_completed", family=template.family, count=count)

    async def generate_batch(
        self,
        template: Union[str, GraphTemplate, None],
        options: GenerationOptions,
        count: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[RetrievedOutput]:
        """
        Callback form of `stream_batch`.

        Each finished iteration reaches `on_progress` as a DONE event carrying
        its output before the next iteration starts.
        """
        outputs = []
        async for event in self.stream_batch(template, options, count):
            if on_progress:
                on_progress(event)
            if event.state == JobState.DONE:
                outputs.append(event.output)
        return outputs

    async def generate_video(
        self,
        template: Union[str, GraphTemplate, None],
        options: GenerationOptions,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RetrievedOutput:
        """Single run of a video template; the result must carry a video URL."""
        if template is None or isinstance(template, str):
            template = get_template(template or options.model_family)
        if template.kind != "video":
            raise InvalidOptionsError(
                f"Template {template.family} does not produce video",
                details={"family": template.family, "kind": template.kind},
            )
        output = (await self.generate_batch(template, options, 1, on_progress))[0]
        if not output.video_url:
            raise ResultFetchError(
                "Video generation finished but no video output was found",
                details={"prompt_id": output.prompt_id},
            )
        return output
