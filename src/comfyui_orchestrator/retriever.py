"""
Result Retriever

Polls /history for a finished job with a bounded, fixed-delay retry and turns
its outputs into transportable payloads: images as base64 data URLs, videos as
a /view URL (never inlined).
"""

import os
import base64
import asyncio
import mimetypes
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .client import ComfyUIClient, get_client
from .errors import ExecutionError, Interrupted, ResultFetchError, ResultTimeoutError
from .mcp_utils import log_structured
from .types import NodeOutput, RetrievedOutputDict

RESULT_ATTEMPTS = int(os.environ.get("COMFYUI_RESULT_ATTEMPTS", "15"))
LONG_RESULT_ATTEMPTS = int(os.environ.get("COMFYUI_LONG_RESULT_ATTEMPTS", "150"))
RESULT_DELAY = float(os.environ.get("COMFYUI_RESULT_DELAY", "3.0"))

VIDEO_EXTENSIONS = (".mp4", ".webm", ".mov", ".mkv", ".avi")

# Output fields custom video nodes use, in lookup order
VIDEO_FIELDS = ("videos", "gifs", "files")


@dataclass
class RetrievedOutput:
    images: List[str] = field(default_factory=list)
    video_url: Optional[str] = None
    prompt_id: Optional[str] = None

    def to_dict(self) -> RetrievedOutputDict:
        return {"images": self.images, "video_url": self.video_url, "prompt_id": self.prompt_id}


def find_video_entry(outputs: Dict[str, NodeOutput]) -> Optional[Dict[str, Any]]:
    """First node output that carries a usable video entry (needs filename and type)."""
    for node_output in outputs.values():
        ui = node_output.get("ui") or {}
        candidates = [ui.get("videos")] + [node_output.get(key) for key in VIDEO_FIELDS]
        entries = next((c for c in candidates if isinstance(c, list) and c), None)
        if entries:
            first = entries[0]
            if isinstance(first, dict) and first.get("filename") and first.get("type"):
                return first
    return None


def is_video_file(entry: Dict[str, Any]) -> bool:
    return str(entry.get("format") or "").startswith("video/") or str(entry.get("filename", "")).lower().endswith(
        VIDEO_EXTENSIONS
    )


class ResultRetriever:
    def __init__(
        self,
        client: Optional[ComfyUIClient] = None,
        attempts: int = RESULT_ATTEMPTS,
        long_attempts: int = LONG_RESULT_ATTEMPTS,
        delay: float = RESULT_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client or get_client()
        self.attempts = attempts
        self.long_attempts = long_attempts
        self.delay = delay
        self.sleep = sleep

    async def fetch(
        self,
        prompt_id: str,
        long_running: bool = False,
        handle: Any = None,
        on_attempt: Optional[Callable[[int, int], None]] = None,
    ) -> RetrievedOutput:
        """
        Wait for the job's outputs to appear in history and materialize them.

        Args:
            prompt_id: Job id returned by /prompt.
            long_running: Use the long budget (video families).
            handle: ExecutionHandle; polling stops once it is cancelled.
            on_attempt: Called with (attempt, budget) after each empty or failed poll.

        Raises:
            ResultTimeoutError: The budget ran out with no outputs.
            ResultFetchError: An output image could not be downloaded.
            ExecutionError: History reports the job failed.
            Interrupted: The handle was cancelled while polling.
        """
        budget = self.long_attempts if long_running else self.attempts

        for attempt in range(1, budget + 1):
            if handle is not None and handle.cancelled:
                raise Interrupted(f"Result retrieval for {prompt_id} was cancelled")

            try:
                history = await asyncio.to_thread(self.client.get_history, prompt_id)
            except OSError as e:
                history = {"error": str(e) or type(e).__name__}
            entry = history.get(prompt_id) if "error" not in history else None
            if entry:
                status = entry.get("status") or {}
                if status.get("status_str") == "error":
                    raise ExecutionError(
                        f"ComfyUI reports prompt {prompt_id} failed",
                        server_detail=status.get("messages", []),
                    )
                if entry.get("outputs"):
                    return await self._materialize(prompt_id, entry["outputs"], attempt)

            log_structured(
                "warning",
                "history_pending",
                prompt_id=prompt_id,
                attempt=attempt,
                attempts=budget,
                error=history.get("error"),
            )
            if on_attempt:
                on_attempt(attempt, budget)
            if attempt < budget:
                await self.sleep(self.delay)

        raise ResultTimeoutError(prompt_id, budget, self.delay)

    async def _materialize(self, prompt_id: str, outputs: Dict[str, NodeOutput], attempt: int) -> RetrievedOutput:
        video = find_video_entry(outputs)
        images = []
        for node_output in outputs.values():
            for image in node_output.get("images") or []:
                if is_video_file(image):
                    if video is None:
                        video = image
                    continue
                images.append(await self._data_url(image))

        video_url = None
        if video is not None:
            video_url = self.client.view_url(video["filename"], video.get("subfolder", ""), video.get("type", "output"))

        log_structured(
            "info",
            "result_retrieved",
            prompt_id=prompt_id,
            attempt=attempt,
            images=len(images),
            video=video_url is not None,
        )
        return RetrievedOutput(images=images, video_url=video_url, prompt_id=prompt_id)

    async def _data_url(self, image: Dict[str, Any]) -> str:
        filename = image.get("filename", "")
        data = await asyncio.to_thread(
            self.client.download_file,
            filename,
            image.get("subfolder", ""),
            image.get("type", "output"),
        )
        if isinstance(data, dict):
            raise ResultFetchError(
                f"Failed to download {filename}: {data.get('error')}",
                details={"filename": filename, "subfolder": image.get("subfolder", "")},
            )
        mime = image.get("format") if str(image.get("format", "")).startswith("image/") else None
        mime = mime or mimetypes.guess_type(filename)[0] or "image/png"
        return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"
