"""
Shared ffmpeg plumbing for the merge and loop stages.

- Materialises media references (local paths, /temp/ paths, file:// URLs,
  data URIs, http(s) URLs, raw bytes) into session-scoped temp files.
- Runs ffmpeg / ffprobe with asyncio subprocesses under a timeout.

Temp files are named <session_id>_<role>.<ext> inside MEDIA_TEMP_DIR so each
stage invocation owns a disjoint set of names.
"""

import os
import re
import uuid
import base64
import asyncio
import logging
import tempfile
from typing import Iterable, Optional, Union
from urllib.parse import unquote, urlparse

import httpx

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.getenv("FFPROBE_BIN", "ffprobe")
FFMPEG_TIMEOUT = float(os.getenv("FFMPEG_TIMEOUT_SECONDS", "180"))
MEDIA_TEMP_DIR = os.getenv("MEDIA_TEMP_DIR", os.path.join(tempfile.gettempdir(), "studio-media"))
PUBLIC_TEMP_PREFIX = "/temp/"
DOWNLOAD_TIMEOUT = 120

_DATA_URI_RE = re.compile(r"^data:([^;,]+)?(;base64)?,(.*)$", re.DOTALL)

MediaRef = Union[str, bytes]


class MediaError(Exception):
    """A media reference could not be materialised or ffmpeg failed."""


# ── Temp files ───────────────────────────────────────────────────────────────

def ensure_temp_dir(temp_dir: Optional[str] = None) -> str:
    path = temp_dir or MEDIA_TEMP_DIR
    os.makedirs(path, exist_ok=True)
    return path


def new_session_id() -> str:
    return uuid.uuid4().hex


def temp_path(session_id: str, role: str, ext: str, temp_dir: Optional[str] = None) -> str:
    return os.path.join(ensure_temp_dir(temp_dir), f"{session_id}_{role}.{ext}")


def session_files(session_id: str, temp_dir: Optional[str] = None) -> list[str]:
    """Every file in the temp dir that belongs to a session."""
    path = temp_dir or MEDIA_TEMP_DIR
    if not os.path.isdir(path):
        return []
    return sorted(os.path.join(path, name) for name in os.listdir(path) if name.startswith(f"{session_id}_"))


def remove_files(paths: Iterable[Optional[str]]) -> None:
    for path in paths:
        if not path:
            continue
        try:
            os.remove(path)
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"Could not remove temp file {path}: {e}")


def cleanup_media_file(path: Optional[str]) -> None:
    """Delete a stage output once the caller has consumed it."""
    if path and os.path.exists(path):
        remove_files([path])
        logger.info(f"Cleaned up media file: {path}")


# ── Materialisation ──────────────────────────────────────────────────────────

def is_remote_ref(ref: str) -> bool:
    """True for references that never touch the worker's own disk."""
    return ref.startswith(("http://", "https://", "data:"))


def _local_path(ref: str, temp_dir: Optional[str]) -> Optional[str]:
    if ref.startswith("file://"):
        return unquote(urlparse(ref).path)
    if ref.startswith(PUBLIC_TEMP_PREFIX):
        candidate = os.path.join(temp_dir or MEDIA_TEMP_DIR, os.path.basename(ref))
        if os.path.exists(candidate):
            return candidate
    if os.path.isabs(ref):
        return ref
    return None


def _decode_data_uri(ref: str) -> bytes:
    match = _DATA_URI_RE.match(ref)
    if not match:
        raise MediaError("Invalid data URI format")
    payload = match.group(3)
    if match.group(2):
        try:
            return base64.b64decode(payload, validate=False)
        except ValueError as e:
            raise MediaError(f"Invalid base64 in data URI: {e}") from e
    return unquote(payload).encode()


async def _download(url: str, dest: str) -> None:
    logger.info(f"Downloading media: {url[:80]}...")
    try:
        async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True) as client:
            async with client.stream("GET", url) as resp:
                if resp.status_code >= 400:
                    raise MediaError(f"Failed to download {url[:80]}: HTTP {resp.status_code}")
                with open(dest, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        f.write(chunk)
    except httpx.HTTPError as e:
        raise MediaError(f"Failed to download {url[:80]}: {e}") from e


async def materialize(ref: MediaRef, dest: str, temp_dir: Optional[str] = None) -> tuple[str, bool]:
    """
    Make a media reference available as a local file.

    Args:
        ref:      Media reference or raw bytes.
        dest:     Path to write to when the reference is not already local.
        temp_dir: Directory used to resolve /temp/ references.

    Returns:
        (local_path, created). created is True when dest was written and the
        caller owns the file.
    """
    if isinstance(ref, (bytes, bytearray)):
        with open(dest, "wb") as f:
            f.write(ref)
        return dest, True

    if ref.startswith("data:"):
        data = _decode_data_uri(ref)
        with open(dest, "wb") as f:
            f.write(data)
        logger.info(f"Saved data URI to {dest} ({len(data)} bytes)")
        return dest, True

    if ref.startswith(("http://", "https://")):
        await _download(ref, dest)
        return dest, True

    local = _local_path(ref, temp_dir)
    if local is None:
        raise MediaError(f"Unsupported media reference: {ref[:80]}")
    if not os.path.exists(local):
        raise MediaError(f"Media file not found: {local}")
    return local, False


async def read_media(ref: MediaRef, temp_dir: Optional[str] = None) -> bytes:
    """Load a media reference fully into memory."""
    if isinstance(ref, (bytes, bytearray)):
        return bytes(ref)
    if ref.startswith("data:"):
        return _decode_data_uri(ref)
    if ref.startswith(("http://", "https://")):
        try:
            async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True) as client:
                resp = await client.get(ref)
                resp.raise_for_status()
                return resp.content
        except httpx.HTTPError as e:
            raise MediaError(f"Failed to download {ref[:80]}: {e}") from e
    local = _local_path(ref, temp_dir)
    if local is None or not os.path.exists(local):
        raise MediaError(f"Media file not found: {ref[:80]}")
    with open(local, "rb") as f:
        return f.read()


# ── Subprocesses ─────────────────────────────────────────────────────────────

async def _run(cmd: list[str], timeout: float) -> tuple[int, bytes, bytes]:
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise MediaError(f"{cmd[0]} not found: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        process.kill()
        await process.wait()
        raise MediaError(f"{os.path.basename(cmd[0])} timed out after {timeout:.0f}s") from e
    return process.returncode, stdout, stderr


async def run_ffmpeg(args: list[str], timeout: Optional[float] = None) -> None:
    """Run ffmpeg with the given arguments; raise MediaError on failure."""
    cmd = [FFMPEG_BIN, "-y", "-hide_banner", "-loglevel", "error", *args]
    logger.info(f"FFmpeg command: {' '.join(cmd)}")
    returncode, _, stderr = await _run(cmd, timeout or FFMPEG_TIMEOUT)
    if returncode != 0:
        message = stderr.decode(errors="replace").strip()[-500:] or "Unknown FFmpeg error"
        raise MediaError(f"ffmpeg exited with code {returncode}: {message}")


async def probe_duration(path: str, timeout: float = 30) -> Optional[float]:
    """Container duration in seconds, or None when ffprobe cannot tell."""
    cmd = [
        FFPROBE_BIN, "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        path,
    ]
    try:
        returncode, stdout, stderr = await _run(cmd, timeout)
    except MediaError as e:
        logger.warning(f"Duration probe failed for {path}: {e}")
        return None
    if returncode != 0:
        logger.warning(f"Duration probe failed for {path}: {stderr.decode(errors='replace')[:200]}")
        return None
    try:
        return float(stdout.decode().strip())
    except ValueError:
        return None
