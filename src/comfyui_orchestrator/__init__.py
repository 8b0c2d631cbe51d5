"""
ComfyUI Orchestrator

Client-side orchestration for a ComfyUI render server: template-driven graph
building, asset upload, WebSocket progress monitoring, result retrieval with
bounded retry, seeded batches and cancellation. Exposed as a library, an MCP
server and the `corch` CLI.
"""

__version__ = "0.3.0"

from .server import mcp, main
from .builder import build, export_workflow
from .errors import OrchestratorError
from .graph import Node, Ref, WorkflowGraph
from .monitor import ExecutionHandle, ExecutionMonitor, JobState, ProgressEvent
from .options import GenerationOptions, LoraOption, SeedPolicy, SeedState, compute_resolution
from .retriever import ResultRetriever, RetrievedOutput
from .session import RenderSession
from .templates import get_template, list_templates

__all__ = [
    "mcp",
    "main",
    "__version__",
    "build",
    "export_workflow",
    "OrchestratorError",
    "Node",
    "Ref",
    "WorkflowGraph",
    "ExecutionHandle",
    "ExecutionMonitor",
    "JobState",
    "ProgressEvent",
    "GenerationOptions",
    "LoraOption",
    "SeedPolicy",
    "SeedState",
    "compute_resolution",
    "ResultRetriever",
    "RetrievedOutput",
    "RenderSession",
    "get_template",
    "list_templates",
]
