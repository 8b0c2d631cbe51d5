"""
MCP Utilities

Structured logging with correlation IDs, MCP-compliant error responses and
the tool wrapper used by every server tool.
"""

import time
import uuid
import json
import logging
import asyncio
import functools
from datetime import datetime
from typing import Any, Dict, Optional
from dataclasses import dataclass, field
from contextvars import ContextVar

from .errors import OrchestratorError

# =============================================================================
# Structured Logging
# =============================================================================

LOGGER_NAME = "comfyui-orchestrator"

logger = logging.getLogger(LOGGER_NAME)
logger.setLevel(logging.INFO)


class JSONFormatter(logging.Formatter):
    """Format log records as JSON for machine parseability."""

    def format(self, record):
        timestamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"

        log_entry = {
            "timestamp": timestamp,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "correlation_id"):
            log_entry["correlation_id"] = record.correlation_id
        if hasattr(record, "custom_fields"):
            log_entry.update(record.custom_fields)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, separators=(",", ":"), default=str)


if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(JSONFormatter())
    logger.addHandler(_handler)


correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def set_correlation_id(cid: str):
    """Set correlation ID for current context."""
    correlation_id_var.set(cid)


def get_correlation_id() -> str:
    """Get current correlation ID or generate new one."""
    cid = correlation_id_var.get()
    if cid is None:
        cid = str(uuid.uuid4())[:8]
        correlation_id_var.set(cid)
    return cid


def clear_correlation_id():
    """Clear correlation ID from context."""
    correlation_id_var.set(None)


def log_structured(level: str, message: str, **kwargs):
    """Emit structured JSON log with correlation ID and custom fields."""
    extra = {"correlation_id": get_correlation_id()}
    if kwargs:
        extra["custom_fields"] = kwargs
    getattr(logger, level)(message, extra=extra)


@dataclass
class ToolInvocation:
    """Track a tool invocation for logging with correlation support."""

    tool_name: str
    invocation_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    correlation_id: str = field(default_factory=get_correlation_id)
    start_time: float = field(default_factory=time.time)

    def complete(self, status: str = "success", error: Optional[str] = None) -> Dict[str, Any]:
        """Log completion with structured JSON format."""
        log_entry = {
            "tool": self.tool_name,
            "invocation_id": self.invocation_id,
            "latency_ms": round((time.time() - self.start_time) * 1000, 2),
            "status": status,
        }
        if error:
            log_entry["error"] = error

        if status == "success":
            log_structured("info", "tool_completed", **log_entry)
        elif status == "interrupted":
            log_structured("warning", "tool_interrupted", **log_entry)
        else:
            log_structured("error", "tool_failed", **log_entry)

        return log_entry


# =============================================================================
# MCP-Compliant Error Responses
# =============================================================================


def mcp_error(
    message: str,
    code: str = "TOOL_ERROR",
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Create an MCP-compliant error response.

    Example:
        return mcp_error("Template not found", "NOT_FOUND", {"family": "sdxl"})
    """
    result = {"error": message, "code": code, "isError": True}
    if details:
        result["details"] = details
    return result


def validation_error(message: str, field: Optional[str] = None) -> Dict[str, Any]:
    """Input validation error."""
    return mcp_error(message, "VALIDATION_ERROR", {"field": field} if field else None)


def _finish(invocation: ToolInvocation, result: Any) -> Any:
    if isinstance(result, dict) and result.get("isError"):
        invocation.complete("error", result.get("error"))
    else:
        invocation.complete("success")
    return result


def _fail(invocation: ToolInvocation, exc: Exception) -> Dict[str, Any]:
    if isinstance(exc, OrchestratorError):
        invocation.complete("interrupted" if exc.code == "INTERRUPTED" else "error", exc.message)
        return exc.to_dict()
    invocation.complete("error", str(exc))
    return mcp_error(str(exc), "INTERNAL_ERROR")


def mcp_tool_wrapper(func):
    """
    Decorator that adds MCP-compliant logging and error formatting to tools.

    Works for both plain and coroutine tool functions. Each invocation gets a
    fresh correlation ID so every log line emitted while the tool runs can be
    joined back to it.

    Example:
        @mcp.tool()
        @mcp_tool_wrapper
        async def my_tool(param: str) -> dict:
            ...
    """
    if asyncio.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            clear_correlation_id()
            invocation = ToolInvocation(func.__name__)
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                return _fail(invocation, e)
            return _finish(invocation, result)

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        clear_correlation_id()
        invocation = ToolInvocation(func.__name__)
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            return _fail(invocation, e)
        return _finish(invocation, result)

    return wrapper
