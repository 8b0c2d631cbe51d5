"""
Error Taxonomy

Every failure the orchestrator raises is an OrchestratorError. Each carries
an MCP-compliant payload so tools and the CLI can report it without
re-wrapping:
- "isError": true
- "code" for error categorization
- "suggestion" for actionable guidance
- "details" for additional context
"""

from typing import Any, Dict, List, Optional, Union


class OrchestratorError(Exception):
    """Base class for all orchestrator failures."""

    code = "ORCHESTRATOR_ERROR"
    suggestion = ""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
        troubleshooting: Optional[Union[str, List[str]]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if suggestion is not None:
            self.suggestion = suggestion
        self.troubleshooting = troubleshooting

    def to_dict(self) -> Dict[str, Any]:
        """Convert to MCP-compliant error dict."""
        result: Dict[str, Any] = {
            "isError": True,
            "code": self.code,
            "error": self.message,
            "suggestion": self.suggestion,
        }
        if self.details:
            result["details"] = self.details
        if self.troubleshooting:
            result["troubleshooting"] = self.troubleshooting
        return result


class GraphIntegrityError(OrchestratorError):
    """A required node, role or placeholder could not be resolved."""

    code = "GRAPH_INTEGRITY"
    suggestion = "Check the template roles and the options passed to build()."

    def __init__(self, message: str, role: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {}) or {}
        if role:
            details["role"] = role
        super().__init__(message, details=details, **kwargs)
        self.role = role


class AmbiguousNodeError(GraphIntegrityError):
    """A node lookup matched more than one node in the deciding mode."""

    code = "AMBIGUOUS_NODE"
    suggestion = "Use an exact node key or a more specific title for this role."

    def __init__(self, identifier: str, matches: List[str], mode: str):
        super().__init__(
            f"Lookup '{identifier}' is ambiguous: {mode} matches nodes {', '.join(matches)}",
            details={"identifier": identifier, "matches": matches, "mode": mode},
        )
        self.identifier = identifier
        self.matches = matches


class TemplateNotFoundError(OrchestratorError):
    code = "NOT_FOUND"
    suggestion = "Run list_templates() to see registered model families."

    def __init__(self, family: str, available: List[str]):
        super().__init__(
            f"Template not found for model family '{family}'",
            details={"family": family, "available": available},
        )
        self.family = family


class InvalidOptionsError(OrchestratorError):
    code = "VALIDATION_ERROR"
    suggestion = "Fix the generation options and try again."


class AssetUploadError(OrchestratorError):
    """The upload endpoint returned a non-success status."""

    code = "ASSET_UPLOAD_FAILED"
    suggestion = "Check the file exists and that the server accepts uploads."

    def __init__(self, message: str, status_text: str = "", path: str = ""):
        details = {}
        if status_text:
            details["status_text"] = status_text
        if path:
            details["path"] = path
        super().__init__(message, details=details)
        self.status_text = status_text


class SubmissionError(OrchestratorError):
    """The server rejected the submitted graph."""

    code = "SUBMISSION_REJECTED"
    suggestion = "Inspect the node errors below; the graph failed server-side validation."

    def __init__(self, message: str, server_detail: Any = None):
        details = {"server_detail": server_detail} if server_detail is not None else {}
        super().__init__(message, details=details)
        self.server_detail = server_detail


class ChannelError(OrchestratorError):
    """The progress channel failed to open or dropped unexpectedly."""

    code = "CONNECTION_ERROR"
    suggestion = "Check that the render server is running and reachable."

    def __init__(self, message: str, url: str = ""):
        super().__init__(
            message,
            details={"url": url} if url else None,
            troubleshooting=[
                "Open <server>/system_stats in a browser to confirm the server is up.",
                "Confirm COMFYUI_URL points at the right host and port.",
                "If the server sits behind a proxy, make sure it forwards WebSocket upgrades.",
            ],
        )


class ExecutionError(OrchestratorError):
    """The server reported execution_error for our job."""

    code = "EXECUTION_ERROR"
    suggestion = "See details for the failing node and exception reported by the server."

    def __init__(self, message: str, server_detail: Any = None):
        super().__init__(message, details={"server_detail": server_detail} if server_detail else None)
        self.server_detail = server_detail


class Interrupted(OrchestratorError):
    """User-initiated cancellation. Callers usually suppress error UI for this."""

    code = "INTERRUPTED"
    suggestion = ""


class ResultTimeoutError(OrchestratorError):
    code = "TIMEOUT"
    suggestion = "The job finished but no outputs appeared in history. Check the server log."

    def __init__(self, prompt_id: str, attempts: int, delay: float):
        super().__init__(
            f"No outputs for prompt {prompt_id} after {attempts} attempts",
            details={"prompt_id": prompt_id, "attempts": attempts, "delay_seconds": delay},
        )
        self.prompt_id = prompt_id
        self.attempts = attempts


class ResultFetchError(OrchestratorError):
    code = "RESULT_FETCH_FAILED"
    suggestion = "The output was listed in history but could not be downloaded."


class JobActiveError(OrchestratorError):
    """A second job was started while one is still in flight."""

    code = "JOB_ACTIVE"
    suggestion = "Wait for the current job or cancel it before starting another."

    def __init__(self, client_id: str):
        super().__init__(
            f"A job is already active for client {client_id}",
            details={"client_id": client_id},
        )
        self.client_id = client_id
