"""ComfyUI Orchestrator MCP Server - Main entry point."""

from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from . import templates
from .assets import ServerAssetRef
from .builder import build, export_workflow
from .client import get_client
from .mcp_utils import mcp_error, mcp_tool_wrapper, validation_error
from .options import GenerationOptions
from .session import RenderSession
from .types import GenerationResult

# Initialize MCP server
mcp = FastMCP(
    "comfyui-orchestrator",
    instructions="Template-driven ComfyUI image and video generation with progress and cancellation",
)

_session: Optional[RenderSession] = None


def get_session() -> RenderSession:
    """One render session per server process; it owns the single job slot."""
    global _session
    if _session is None:
        _session = RenderSession(get_client())
    return _session


def _to_mcp_response(result: dict) -> dict:
    """Convert a raw client result to MCP format with isError flag."""
    if isinstance(result, dict) and "error" in result and "isError" not in result:
        return {**result, "isError": True, "code": result.get("code", "TOOL_ERROR")}
    return result


def _options(model_family: str, prompt: Optional[str], options: Optional[Dict[str, Any]]) -> GenerationOptions:
    data = dict(options or {})
    data["model_family"] = model_family
    if prompt is not None:
        data["prompt"] = prompt
    generation = GenerationOptions.from_dict(data)
    generation.validate()
    return generation


def _choices(object_info: dict, node: str, field: str) -> List[str]:
    """Enum values of a node's required input, as listed by /object_info."""
    spec = object_info.get(node, {}).get("input", {}).get("required", {}).get(field)
    if isinstance(spec, list) and spec and isinstance(spec[0], list):
        return spec[0]
    return []


# =============================================================================
# System Tools
# =============================================================================


@mcp.tool()
@mcp_tool_wrapper
def check_connection() -> dict:
    """Check the ComfyUI server is reachable and report its devices."""
    stats = get_client().get_system_stats()
    if "error" in stats:
        return mcp_error(f"ComfyUI is not reachable: {stats['error']}", "CONNECTION_ERROR")
    devices = [
        {
            "name": d.get("name", "Unknown"),
            "vram_total_gb": round(d.get("vram_total", 0) / (1024**3), 2),
            "vram_free_gb": round(d.get("vram_free", 0) / (1024**3), 2),
        }
        for d in stats.get("devices", [])
    ]
    return {"success": True, "url": get_client().base_url, "devices": devices, "system": stats.get("system", {})}


@mcp.tool()
@mcp_tool_wrapper
def get_object_info(node_type: str = "") -> dict:
    """Node schema for one class, or a summary of samplers, schedulers and model files."""
    info = get_client().get_object_info(node_type or None)
    if "error" in info or node_type:
        return _to_mcp_response(info)
    return {
        "samplers": _choices(info, "KSampler", "sampler_name"),
        "schedulers": _choices(info, "KSampler", "scheduler"),
        "checkpoints": _choices(info, "CheckpointLoaderSimple", "ckpt_name"),
        "unets": _choices(info, "UNETLoader", "unet_name"),
        "loras": _choices(info, "LoraLoader", "lora_name"),
        "node_count": len(info),
    }


@mcp.tool()
@mcp_tool_wrapper
def get_queue_status() -> dict:
    """Number of running and pending jobs on the server."""
    result = get_client().get_queue()
    if "error" in result:
        return _to_mcp_response(result)
    return {
        "running": len(result.get("queue_running", [])),
        "pending": len(result.get("queue_pending", [])),
    }


# =============================================================================
# Template Tools
# =============================================================================


@mcp.tool()
@mcp_tool_wrapper
def list_templates(kind: str = "") -> dict:
    """List registered model families. kind: image|video|'' for all."""
    if kind and kind not in ("image", "video"):
        return validation_error(f"Unknown kind '{kind}'. Use: image|video", "kind")
    found = templates.list_templates(kind or None)
    return {"templates": found, "count": len(found)}


@mcp.tool()
@mcp_tool_wrapper
def build_workflow(model_family: str, prompt: str = "", options: Optional[Dict[str, Any]] = None, seed: int = -1) -> dict:
    """
    Build the API-format workflow for a model family without submitting it.

    Image inputs in options.input_images are taken as names already present in
    the server's input folder.
    """
    generation = _options(model_family, prompt or None, options)
    template = templates.get_template(model_family)
    refs = {name: ServerAssetRef(name=value) for name, value in generation.input_images.items()}
    graph = build(template, generation, refs, seed if seed >= 0 else generation.seed)
    return {"family": template.family, "version": template.version, **export_workflow(graph)}


# =============================================================================
# Generation Tools
# =============================================================================


@mcp.tool()
@mcp_tool_wrapper
async def generate_images(
    model_family: str,
    prompt: str,
    count: int = 0,
    options: Optional[Dict[str, Any]] = None,
) -> dict:
    """
    Generate `count` images (default options.num_images) one after another.

    options: GenerationOptions fields, e.g. {"aspect_ratio": "16:9", "seed": 42,
    "seed_policy": "increment", "loras": {"style": {"name": "x.safetensors"}}}
    """
    generation = _options(model_family, prompt, options)
    template = templates.get_template(model_family)
    outputs = await get_session().generate_batch(template, generation, count or None)
    result: GenerationResult = {
        "family": template.family,
        "count": len(outputs),
        "outputs": [o.to_dict() for o in outputs],
    }
    return result


@mcp.tool()
@mcp_tool_wrapper
async def generate_video(
    start_image: str,
    prompt: str,
    model_family: str = "wan22_i2v",
    end_image: str = "",
    options: Optional[Dict[str, Any]] = None,
) -> dict:
    """Image-to-video from a local start frame (and optional end frame). Returns the video URL."""
    data = dict(options or {})
    images = {"start_image": start_image}
    if end_image:
        images["end_image"] = end_image
        data.setdefault("use_end_frame", True)
    data["input_images"] = {**data.get("input_images", {}), **images}
    generation = _options(model_family, prompt, data)
    output = await get_session().generate_video(templates.get_template(model_family), generation)
    return output.to_dict()


@mcp.tool()
@mcp_tool_wrapper
async def cancel_generation() -> dict:
    """Interrupt the job currently running for this server, if any."""
    cancelled = await get_session().cancel()
    return {"cancelled": cancelled}


@mcp.tool()
@mcp_tool_wrapper
def get_generation_status() -> dict:
    """State and latest progress of this server's job slot."""
    return get_session().status()


def main():
    """Run the MCP server."""
    mcp.run()


if __name__ == "__main__":
    main()
