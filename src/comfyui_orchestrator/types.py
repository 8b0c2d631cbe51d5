"""
Wire Types

TypedDict shapes of the server payloads the orchestrator reads and of the
dicts its tools return.

Usage:
    from comfyui_orchestrator.types import HistoryEntry

    def outputs_of(entry: HistoryEntry) -> dict:
        return entry.get("outputs", {})
"""

from typing import Any, Dict, List, Literal, Optional, TypedDict

from typing_extensions import NotRequired, Required


# =============================================================================
# Server payloads
# =============================================================================


class ApiNode(TypedDict, total=False):
    """One node of an API-format workflow."""

    class_type: Required[str]
    inputs: Required[Dict[str, Any]]
    _meta: NotRequired[Dict[str, Any]]


class QueueResponse(TypedDict, total=False):
    """POST /prompt answer."""

    prompt_id: str
    number: int
    node_errors: Dict[str, Any]
    error: Any


class UploadResponse(TypedDict):
    """POST /upload/image answer."""

    name: str
    subfolder: str
    type: str


class OutputFile(TypedDict, total=False):
    filename: Required[str]
    subfolder: str
    type: str
    format: NotRequired[str]


class NodeOutput(TypedDict, total=False):
    images: List[OutputFile]
    videos: List[OutputFile]
    gifs: List[OutputFile]
    files: List[OutputFile]
    ui: Dict[str, List[OutputFile]]


class HistoryStatus(TypedDict, total=False):
    status_str: Literal["success", "error"]
    completed: bool
    messages: List[Any]


class HistoryEntry(TypedDict, total=False):
    """One value of GET /history/{prompt_id}."""

    prompt: List[Any]
    outputs: Dict[str, NodeOutput]
    status: HistoryStatus


class ChannelMessage(TypedDict):
    """JSON frame on /ws."""

    type: str
    data: Dict[str, Any]


# =============================================================================
# Tool results
# =============================================================================


class RetrievedOutputDict(TypedDict):
    images: List[str]
    video_url: Optional[str]
    prompt_id: Optional[str]


class ProgressEventDict(TypedDict):
    message: str
    fraction: float
    state: str
    prompt_id: Optional[str]
    output: Optional[RetrievedOutputDict]
    iteration: int


class SessionStatus(TypedDict):
    client_id: str
    active: bool
    state: str
    prompt_id: Optional[str]
    last_event: Optional[ProgressEventDict]


class GenerationResult(TypedDict):
    family: str
    count: int
    outputs: List[RetrievedOutputDict]


class TemplateSummary(TypedDict):
    family: str
    version: str
    description: str
    kind: Literal["image", "video"]
    long_running: bool
    stages: List[str]
    models: List[str]
    image_inputs: List[str]
    parameters: List[str]
