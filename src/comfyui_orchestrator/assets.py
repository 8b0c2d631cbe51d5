"""
Asset Uploader

Pushes local images to the server's input folder so LoadImage nodes can
reference them. One multipart POST per file, no retry.
"""

import asyncio
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from .client import ComfyUIClient, get_client
from .errors import AssetUploadError
from .mcp_utils import log_structured

MAX_FILENAME_LENGTH = 100

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_SEPARATOR_RUNS = re.compile(r"([._-])[._-]+")


def sanitize_filename(filename: str, max_length: int = MAX_FILENAME_LENGTH) -> str:
    """
    Make a filename safe for the server's input store.

    Keeps the (lower-cased) extension, maps anything outside [A-Za-z0-9._-]
    to '_', collapses separator runs, trims separators from both ends and
    caps the total length.

    Example:
        sanitize_filename("My Photo (final)!!.PNG") -> "My_Photo_final.png"
    """
    stem, ext = os.path.splitext(os.path.basename(filename))
    ext = re.sub(r"[^a-z0-9]", "", ext.lower())
    ext = f".{ext}" if ext else ""

    base = _SEPARATOR_RUNS.sub(r"\1", _UNSAFE_CHARS.sub("_", stem)).strip("._-") or "image"
    base = base[: max(1, max_length - len(ext))].rstrip("._-") or "image"
    return f"{base}{ext}"


@dataclass(frozen=True)
class ServerAssetRef:
    """Where the server stored an uploaded file."""

    name: str
    subfolder: str = ""
    type: str = "input"

    @property
    def image_value(self) -> str:
        """Value a LoadImage node expects for its `image` input."""
        return f"{self.subfolder}/{self.name}" if self.subfolder else self.name


class AssetUploader:
    def __init__(self, client: Optional[ComfyUIClient] = None, sanitize: bool = True):
        self.client = client or get_client()
        self.sanitize = sanitize

    async def upload(self, path: Union[str, Path]) -> ServerAssetRef:
        """
        Upload one local file.

        Raises:
            AssetUploadError: The file is missing (no request is made) or the
                server answered with a non-success status.
        """
        path = Path(path)
        if not path.is_file():
            raise AssetUploadError(f"File not found: {path}", path=str(path))

        filename = sanitize_filename(path.name) if self.sanitize else path.name
        result = await asyncio.to_thread(self.client.upload_image, str(path), filename)

        if "error" in result:
            raise AssetUploadError(
                f"Failed to upload image: {result['error']}",
                status_text=result.get("reason") or result["error"],
                path=str(path),
            )

        ref = ServerAssetRef(
            name=result.get("name", filename),
            subfolder=result.get("subfolder", ""),
            type=result.get("type", "input"),
        )
        log_structured("info", "asset_uploaded", path=str(path), name=ref.name, subfolder=ref.subfolder)
        return ref

    async def upload_all(self, files: Mapping[str, Union[str, Path]]) -> Dict[str, ServerAssetRef]:
        """Upload named inputs in order; the first failure aborts the rest."""
        refs = {}
        for name, path in files.items():
            refs[name] = await self.upload(path)
        return refs
