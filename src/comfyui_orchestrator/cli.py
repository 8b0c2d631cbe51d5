"""
corch CLI - command line front end for the orchestrator.

Usage:
    corch stats
    corch templates --kind video
    corch build --model sdxl --prompt "a lighthouse" --seed 7 -o workflow.json
    corch generate --model flux --prompt "a dragon" --count 4 --seed-policy increment
    corch generate --model wan22_i2v --prompt "waves roll in" --image start_image=beach.png
    corch upload photo.png
    corch interrupt
    corch --url http://host:8188 stats

Results go to stdout as JSON, progress to stderr. Ctrl+C during generate
cancels the running job.
"""

import argparse
import asyncio
import base64
import json
import os
import signal
import sys
from pathlib import Path

from . import __version__
from .assets import AssetUploader, ServerAssetRef
from .builder import build, export_workflow
from .client import ComfyUIClient
from .errors import OrchestratorError
from .monitor import ProgressEvent
from .options import GenerationOptions, SeedPolicy, ASPECT_RATIO_PRESETS
from .session import RenderSession, run_sync
from .templates import get_template, list_templates

# Exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_TIMEOUT = 2
EXIT_VALIDATION = 3
EXIT_CONNECTION = 5
EXIT_NOT_FOUND = 6
EXIT_INTERRUPTED = 130


def _exit_code_for_error(code: str) -> int:
    """Map an error code to an exit code."""
    return {
        "TIMEOUT": EXIT_TIMEOUT,
        "VALIDATION_ERROR": EXIT_VALIDATION,
        "GRAPH_INTEGRITY": EXIT_VALIDATION,
        "AMBIGUOUS_NODE": EXIT_VALIDATION,
        "CONNECTION_ERROR": EXIT_CONNECTION,
        "NOT_FOUND": EXIT_NOT_FOUND,
        "INTERRUPTED": EXIT_INTERRUPTED,
    }.get(code, EXIT_ERROR)


def _output(data: dict, pretty: bool = False) -> None:
    """Write JSON data to stdout (results/data only)."""
    if pretty:
        json.dump(data, sys.stdout, indent=2, default=str)
    else:
        json.dump(data, sys.stdout, default=str)
    sys.stdout.write("\n")
    sys.stdout.flush()


def _msg(text: str) -> None:
    """Write a status/progress message to stderr."""
    sys.stderr.write(text)
    if not text.endswith("\n"):
        sys.stderr.write("\n")
    sys.stderr.flush()


def _error(message: str, code: str = "CLI_ERROR") -> dict:
    return {"error": message, "code": code}


def _is_pretty(args) -> bool:
    return args.pretty or os.environ.get("CORCH_PRETTY", "").lower() in ("1", "true", "yes")


def _parse_json_arg(value: str) -> dict:
    """Parse a JSON string argument, supporting both raw JSON and @file references."""
    if value.startswith("@"):
        return json.loads(Path(value[1:]).read_text())
    return json.loads(value)


def _client(args) -> ComfyUIClient:
    return ComfyUIClient(args.url)


def _generation_options(args) -> GenerationOptions:
    """Merge --options JSON with the explicit flags (flags win)."""
    data = _parse_json_arg(args.options) if args.options else {}
    data["model_family"] = args.model
    flags = {
        "prompt": args.prompt,
        "negative_prompt": args.negative,
        "aspect_ratio": args.aspect_ratio,
        "seed": args.seed,
        "seed_policy": args.seed_policy,
        "steps": args.steps,
        "cfg": args.cfg,
    }
    data.update({k: v for k, v in flags.items() if v is not None})
    for item in args.image or []:
        name, sep, path = item.partition("=")
        if not sep:
            raise argparse.ArgumentTypeError(f"--image expects name=path, got '{item}'")
        data.setdefault("input_images", {})[name] = path
    options = GenerationOptions.from_dict(data)
    options.validate()
    return options


def _decode_data_url(data_url: str) -> tuple:
    header, _, payload = data_url.partition(",")
    mime = header[len("data:") :].split(";")[0]
    ext = {"image/jpeg": ".jpg", "image/webp": ".webp"}.get(mime, ".png")
    return base64.b64decode(payload), ext


# ─── Commands ────────────────────────────────────────────────────────


def cmd_stats(args):
    """Server reachability and device info."""
    stats = _client(args).get_system_stats()
    _output(stats, _is_pretty(args))
    return EXIT_CONNECTION if "error" in stats else EXIT_OK


def cmd_templates(args):
    """List registered model families."""
    found = list_templates(args.kind)
    _output({"templates": found, "count": len(found)}, _is_pretty(args))
    return EXIT_OK


def cmd_build(args):
    """Build a workflow without submitting it."""
    options = _generation_options(args)
    template = get_template(args.model)
    refs = {name: ServerAssetRef(name=value) for name, value in options.input_images.items()}
    graph = build(template, options, refs, options.seed)
    workflow = export_workflow(graph)
    if args.output:
        Path(args.output).write_text(json.dumps(workflow, indent=2))
        _msg(f"Wrote {len(graph)} nodes to {args.output}")
        _output({"family": template.family, "path": args.output, "nodes": len(graph)}, _is_pretty(args))
    else:
        _output(workflow, _is_pretty(args))
    return EXIT_OK


def cmd_generate(args):
    """Run a seeded batch and print the outputs."""
    options = _generation_options(args)
    template = get_template(args.model)
    session = RenderSession(_client(args))

    def on_progress(event: ProgressEvent):
        _msg(f"[{event.iteration + 1}] {event.fraction:6.1%} {event.state.value:<11} {event.message}")

    async def _run():
        loop = asyncio.get_running_loop()
        # Windows event loops have no signal handlers; Ctrl+C there aborts without interrupting the server
        handles_sigint = sys.platform != "win32"
        cancelling = set()

        def on_sigint():
            task = loop.create_task(session.cancel())
            cancelling.add(task)
            task.add_done_callback(cancelling.discard)

        if handles_sigint:
            loop.add_signal_handler(signal.SIGINT, on_sigint)
        try:
            if template.kind == "video":
                return [await session.generate_video(template, options, on_progress)]
            return await session.generate_batch(template, options, args.count, on_progress)
        finally:
            if handles_sigint:
                loop.remove_signal_handler(signal.SIGINT)

    outputs = run_sync(_run())
    results = [o.to_dict() for o in outputs]

    if args.output_dir:
        out_dir = Path(args.output_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        saved = []
        for i, output in enumerate(outputs):
            for j, image in enumerate(output.images):
                data, ext = _decode_data_url(image)
                path = out_dir / f"{template.family}_{i:03d}_{j}{ext}"
                path.write_bytes(data)
                saved.append(str(path))
        # Don't echo base64 payloads once they are on disk
        for result in results:
            result["images"] = len(result["images"])
        _output({"family": template.family, "outputs": results, "saved": saved}, _is_pretty(args))
    else:
        _output({"family": template.family, "outputs": results}, _is_pretty(args))
    return EXIT_OK


def cmd_upload(args):
    """Upload an image to the server's input folder."""
    ref = run_sync(AssetUploader(_client(args)).upload(args.image_path))
    _output({"name": ref.name, "subfolder": ref.subfolder, "type": ref.type}, _is_pretty(args))
    return EXIT_OK


def cmd_interrupt(args):
    """Interrupt whatever the server is executing."""
    result = _client(args).interrupt()
    if "error" in result:
        _output(_error(result["error"], "CONNECTION_ERROR"), _is_pretty(args))
        return EXIT_CONNECTION
    _output({"success": True, "message": "Execution interrupted"}, _is_pretty(args))
    return EXIT_OK


# ─── Parser ──────────────────────────────────────────────────────────


def _add_generation_args(parser) -> None:
    parser.add_argument("--model", "-m", required=True, help="Model family, e.g. sdxl, flux, wan22_i2v")
    parser.add_argument("--prompt", "-p", help="Generation prompt")
    parser.add_argument("--negative", help="Negative prompt")
    parser.add_argument("--aspect-ratio", "-a", choices=ASPECT_RATIO_PRESETS)
    parser.add_argument("--seed", type=int)
    parser.add_argument("--seed-policy", choices=[p.value for p in SeedPolicy])
    parser.add_argument("--steps", type=int)
    parser.add_argument("--cfg", type=float)
    parser.add_argument("--image", action="append", metavar="NAME=PATH", help="Template image input (repeatable)")
    parser.add_argument("--options", help="GenerationOptions as JSON (or @file.json)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="corch", description="ComfyUI orchestrator CLI")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    parser.add_argument("--url", help="ComfyUI server URL (overrides COMFYUI_URL env)")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    p_stats = sub.add_parser("stats", help="Check the server and show devices")
    p_stats.set_defaults(func=cmd_stats)

    p_templates = sub.add_parser("templates", help="List model family templates")
    p_templates.add_argument("--kind", choices=["image", "video"])
    p_templates.set_defaults(func=cmd_templates)

    p_build = sub.add_parser("build", help="Build a workflow without submitting it")
    _add_generation_args(p_build)
    p_build.add_argument("--output", "-o", help="Write the workflow JSON here")
    p_build.set_defaults(func=cmd_build)

    p_gen = sub.add_parser("generate", help="Generate images or a video")
    _add_generation_args(p_gen)
    p_gen.add_argument("--count", "-n", type=int, help="Batch size (default: options num_images)")
    p_gen.add_argument("--output-dir", "-o", help="Save images here instead of printing base64")
    p_gen.set_defaults(func=cmd_generate)

    p_upload = sub.add_parser("upload", help="Upload an image to the server input folder")
    p_upload.add_argument("image_path", help="Local image path")
    p_upload.set_defaults(func=cmd_upload)

    p_interrupt = sub.add_parser("interrupt", help="Interrupt the running server job")
    p_interrupt.set_defaults(func=cmd_interrupt)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(EXIT_ERROR)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code or EXIT_OK)
    except OrchestratorError as e:
        _output(e.to_dict(), _is_pretty(args))
        sys.exit(_exit_code_for_error(e.code))
    except json.JSONDecodeError as e:
        _output(_error(f"Invalid JSON: {e}", "VALIDATION_ERROR"), _is_pretty(args))
        sys.exit(EXIT_VALIDATION)
    except (argparse.ArgumentTypeError, FileNotFoundError) as e:
        _output(_error(str(e), "VALIDATION_ERROR"), _is_pretty(args))
        sys.exit(EXIT_VALIDATION)
    except KeyboardInterrupt:
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        _output(_error(str(e), "CLI_ERROR"), _is_pretty(args))
        sys.exit(EXIT_ERROR)


if __name__ == "__main__":
    main()
