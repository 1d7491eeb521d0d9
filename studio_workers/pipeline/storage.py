"""
Durable delivery for finished clips.

Final assets are stored in Cloudflare R2 (S3 API) under:
  story-mode/{user_id}/{workspace}/asmr/{project}/{timestamp}.mp4

and a minimal record is inserted into the Supabase `stories` table. Both
clients are synchronous, so calls run in a worker thread.
"""

import os
import re
import time
import asyncio
import logging
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from supabase import Client, create_client

from .errors import UploadError

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID", "")
R2_ACCESS_KEY_ID = os.getenv("R2_ACCESS_KEY_ID", "")
R2_SECRET_ACCESS_KEY = os.getenv("R2_SECRET_ACCESS_KEY", "")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME", "assets")

STORIES_TABLE = "stories"
STORY_TEMPLATE = "asmr-sensory"
TOOL_MODE = "asmr"


# ── Lazy clients ─────────────────────────────────────────────────────────────

_s3_client = None
_supabase_client: Client | None = None


def _get_s3():
    global _s3_client
    if _s3_client is None:
        if not (R2_ACCOUNT_ID and R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY):
            raise UploadError("R2 credentials are not configured")
        _s3_client = boto3.client(
            "s3",
            endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
            aws_access_key_id=R2_ACCESS_KEY_ID,
            aws_secret_access_key=R2_SECRET_ACCESS_KEY,
            config=BotoConfig(signature_version="s3v4"),
            region_name="auto",
        )
    return _s3_client


def get_supabase() -> Client:
    global _supabase_client
    if _supabase_client is None:
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
        if not url or not key:
            raise UploadError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _supabase_client = create_client(url, key)
    return _supabase_client


# ── Helpers ──────────────────────────────────────────────────────────────────

def _segment(value: Optional[str], fallback: str) -> str:
    """Lowercase, dash-separated path segment."""
    cleaned = re.sub(r"[^a-z0-9]+", "-", (value or "").strip().lower()).strip("-")
    return cleaned or fallback


def story_mode_path(
    user_id: Optional[str],
    workspace: Optional[str],
    project: Optional[str],
    filename: Optional[str] = None,
    tool_mode: str = TOOL_MODE,
) -> str:
    """Object key for a delivered asset."""
    filename = filename or f"{int(time.time() * 1000)}.mp4"
    return "/".join([
        "story-mode",
        _segment(user_id, "public"),
        _segment(workspace, "workspace"),
        tool_mode,
        _segment(project, "untitled"),
        filename,
    ])


def public_url(key: str) -> str:
    return f"{R2_PUBLIC_URL.rstrip('/')}/{key}"


# ── Upload ───────────────────────────────────────────────────────────────────

async def upload_to_r2(key: str, data: bytes, content_type: str = "video/mp4") -> str:
    """
    Upload bytes to R2 and return the public URL.

    Raises:
        UploadError: when credentials are missing or the PutObject fails.
    """
    def _put():
        _get_s3().put_object(
            Bucket=R2_BUCKET_NAME,
            Key=key,
            Body=data,
            ContentType=content_type,
        )

    try:
        await asyncio.to_thread(_put)
    except (BotoCoreError, ClientError) as e:
        logger.error(f"R2 upload failed for key={key}: {e}")
        raise UploadError(f"R2 upload failed: {e}") from e

    url = public_url(key)
    logger.info(f"Uploaded to R2: {url} ({len(data)} bytes)")
    return url


async def create_story_record(
    workspace_id: Optional[str],
    title: str,
    aspect_ratio: str,
    duration: float,
    export_url: str,
) -> Optional[str]:
    """Insert the result record and return its id."""
    row = {
        "workspace_id": workspace_id,
        "title": title or "Untitled",
        "template": STORY_TEMPLATE,
        "aspect_ratio": aspect_ratio,
        "duration": duration,
        "export_url": export_url,
    }

    def _insert():
        return get_supabase().table(STORIES_TABLE).insert(row).execute()

    try:
        result = await asyncio.to_thread(_insert)
    except UploadError:
        raise
    except Exception as e:
        logger.error(f"Story record insert failed: {e}", exc_info=True)
        raise UploadError(f"Story record insert failed: {e}") from e

    data = result.data or []
    story_id = data[0].get("id") if data else None
    logger.info(f"Story record created: {story_id}")
    return story_id
