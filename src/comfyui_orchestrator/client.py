"""
ComfyUI API Client

Low-level HTTP client for the render server endpoints. Methods return the
decoded JSON body, or a dict with an "error" key on failure; callers decide
which failures are fatal.
"""

import json
import mimetypes
import os
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Dict, Optional, Union
from uuid import uuid4

from .types import HistoryEntry, QueueResponse, UploadResponse

COMFYUI_URL = os.environ.get("COMFYUI_URL", "http://localhost:8188")
REQUEST_TIMEOUT = float(os.environ.get("COMFYUI_TIMEOUT", "30"))


def _decode_error_body(e: urllib.error.HTTPError) -> dict:
    try:
        body = json.loads(e.read() or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {"body": body}


class ComfyUIClient:
    """HTTP client for ComfyUI API."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or COMFYUI_URL).rstrip("/")
        self.timeout = timeout or REQUEST_TIMEOUT

    def request(
        self,
        endpoint: str,
        method: str = "GET",
        data: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        """Make HTTP request to ComfyUI API."""
        url = f"{self.base_url}{endpoint}"
        req = urllib.request.Request(url, method=method)

        if data is not None:
            req.data = json.dumps(data).encode()
            req.add_header("Content-Type", "application/json")

        try:
            with urllib.request.urlopen(req, timeout=timeout or self.timeout) as resp:
                raw = resp.read()
                return json.loads(raw) if raw else {}
        except urllib.error.HTTPError as e:
            # /prompt answers 400 with {"error": ..., "node_errors": ...}
            body = _decode_error_body(e)
            error = body.pop("error", None) or f"HTTP {e.code}: {e.reason}"
            return {**body, "error": error, "status": e.code, "reason": str(e.reason)}
        except (urllib.error.URLError, OSError) as e:
            # includes read timeouts and connection resets mid-response
            return {"error": str(e) or type(e).__name__}
        except json.JSONDecodeError:
            return {"error": "Invalid JSON response"}

    def get(self, endpoint: str, timeout: Optional[float] = None) -> dict:
        """GET request."""
        return self.request(endpoint, "GET", timeout=timeout)

    def post(self, endpoint: str, data: dict, timeout: Optional[float] = None) -> dict:
        """POST request."""
        return self.request(endpoint, "POST", data, timeout=timeout)

    def is_available(self) -> bool:
        """Check if ComfyUI is reachable."""
        result = self.get("/system_stats")
        return "error" not in result

    def get_system_stats(self) -> dict:
        return self.get("/system_stats")

    def get_object_info(self, node_type: Optional[str] = None) -> dict:
        if node_type:
            return self.get(f"/object_info/{urllib.parse.quote(node_type)}")
        return self.get("/object_info")

    def get_queue(self) -> dict:
        return self.get("/queue")

    def queue_prompt(self, workflow: dict, client_id: str) -> QueueResponse:
        """Queue a workflow for execution. Success carries "prompt_id" and "number"."""
        return self.post("/prompt", {"prompt": workflow, "client_id": client_id})

    def get_history(self, prompt_id: str) -> Dict[str, HistoryEntry]:
        return self.get(f"/history/{prompt_id}")

    def interrupt(self) -> dict:
        """Interrupt current execution on the server."""
        return self.post("/interrupt", {})

    def upload_image(self, image_path: str, filename: Optional[str] = None, overwrite: bool = True) -> UploadResponse:
        """
        Upload an image to the ComfyUI input folder.

        Args:
            image_path: Local path to the image file.
            filename: Name to store under (defaults to the local name).
            overwrite: Replace a server file of the same name.

        Returns:
            {"name": "filename.png", "subfolder": "", "type": "input"}
        """
        path = Path(image_path)
        if not path.is_file():
            return {"error": f"File not found: {image_path}"}

        if filename is None:
            filename = path.name

        content_type, _ = mimetypes.guess_type(filename)
        if content_type is None:
            content_type = "application/octet-stream"

        boundary = f"----MCPBoundary{uuid4().hex}"
        body = b"\r\n".join(
            [
                f"--{boundary}".encode(),
                f'Content-Disposition: form-data; name="image"; filename="{filename}"'.encode(),
                f"Content-Type: {content_type}".encode(),
                b"",
                path.read_bytes(),
                f"--{boundary}".encode(),
                b'Content-Disposition: form-data; name="overwrite"',
                b"",
                b"true" if overwrite else b"false",
                f"--{boundary}--".encode(),
                b"",
            ]
        )

        req = urllib.request.Request(f"{self.base_url}/upload/image", data=body, method="POST")
        req.add_header("Content-Type", f"multipart/form-data; boundary={boundary}")

        try:
            with urllib.request.urlopen(req, timeout=max(self.timeout, 60)) as resp:
                return json.loads(resp.read())
        except urllib.error.HTTPError as e:
            return {"error": f"HTTP {e.code}: {e.reason}", "status": e.code, "reason": str(e.reason)}
        except (urllib.error.URLError, OSError) as e:
            return {"error": str(e)}
        except json.JSONDecodeError:
            return {"error": "Invalid JSON response from upload"}

    def view_url(self, filename: str, subfolder: str = "", folder_type: str = "output") -> str:
        """URL of a stored file on the /view endpoint."""
        query = urllib.parse.urlencode({"filename": filename, "subfolder": subfolder, "type": folder_type})
        return f"{self.base_url}/view?{query}"

    def download_file(self, filename: str, subfolder: str = "", folder_type: str = "output") -> Union[bytes, dict]:
        """
        Download a file from ComfyUI.

        Returns:
            Raw bytes of the file, or dict with error.
        """
        req = urllib.request.Request(self.view_url(filename, subfolder, folder_type))
        try:
            with urllib.request.urlopen(req, timeout=max(self.timeout, 120)) as resp:
                return resp.read()
        except (urllib.error.URLError, OSError) as e:
            return {"error": str(e)}

    def ws_url(self, client_id: str) -> str:
        """Progress channel URL for a client id (http -> ws, https -> wss)."""
        parsed = urllib.parse.urlsplit(self.base_url)
        scheme = "wss" if parsed.scheme == "https" else "ws"
        path = parsed.path.rstrip("/")
        return f"{scheme}://{parsed.netloc}{path}/ws?clientId={urllib.parse.quote(client_id)}"


# Global client instance
_client: Optional[ComfyUIClient] = None


def get_client() -> ComfyUIClient:
    """Get or create global client instance."""
    global _client
    if _client is None:
        _client = ComfyUIClient()
    return _client
