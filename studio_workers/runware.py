"""
Runware video inference client.

Every call is a POST of a task list to the Runware REST endpoint. Video tasks
are submitted with asynchronous delivery and then polled with getResponse
until the provider reports success or error.
"""

import os
import logging

import httpx

from .http_retry import request_with_backoff
from .pipeline.errors import ProviderError
from .pipeline.models import TaskState, TaskStatus

logger = logging.getLogger(__name__)

RUNWARE_API_KEY = os.environ.get("RUNWARE_API_KEY", "")
RUNWARE_API_BASE = os.environ.get("RUNWARE_API_BASE", "https://api.runware.ai/v1")
REQUEST_TIMEOUT = 60

# Runware status strings -> TaskState
_STATUS_MAP = {
    "success": TaskState.COMPLETED,
    "completed": TaskState.COMPLETED,
    "processing": TaskState.PROCESSING,
    "pending": TaskState.PENDING,
    "queued": TaskState.PENDING,
    "error": TaskState.FAILED,
    "failed": TaskState.FAILED,
}


def is_available() -> bool:
    return bool(RUNWARE_API_KEY)


def _error_message(errors: list) -> str:
    first = errors[0] if errors else {}
    if isinstance(first, dict):
        return first.get("message") or first.get("code") or "unknown error"
    return str(first)


def _to_task_status(item: dict) -> TaskStatus:
    video_url = item.get("videoURL") or item.get("outputURL") or item.get("url")
    raw_status = str(item.get("status", "")).lower()
    status = _STATUS_MAP.get(raw_status)
    if status is None:
        status = TaskState.COMPLETED if video_url else TaskState.PROCESSING

    return TaskStatus(
        status=status,
        video_url=video_url,
        cost=item.get("cost"),
        error=item.get("error") or (item.get("message") if status == TaskState.FAILED else None),
    )


async def _post_tasks(tasks: list[dict]) -> dict:
    if not RUNWARE_API_KEY:
        raise ProviderError("runware", "RUNWARE_API_KEY not set")

    headers = {
        "Authorization": f"Bearer {RUNWARE_API_KEY}",
        "Content-Type": "application/json",
    }
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
        resp = await request_with_backoff(client, "POST", RUNWARE_API_BASE, "runware", json=tasks, headers=headers)
    return resp.json()


async def submit_video_task(payload: dict) -> tuple[str, TaskStatus]:
    """
    Submit a videoInference task.

    Args:
        payload: Provider payload including taskType and taskUUID.

    Returns:
        (task_uuid, status). The status is normally PENDING or PROCESSING,
        but Runware may answer with a finished video straight away.
    """
    task_uuid = payload["taskUUID"]
    logger.info(f"Runware submit {task_uuid}: model={payload.get('model')}, duration={payload.get('duration')}")

    result = await _post_tasks([payload])
    if result.get("errors"):
        raise ProviderError("runware", _error_message(result["errors"]))

    data = result.get("data") or []
    item = next((d for d in data if d.get("taskUUID") == task_uuid), data[0] if data else {})
    status = _to_task_status(item) if item else TaskStatus(status=TaskState.PENDING)
    if status.status == TaskState.FAILED:
        raise ProviderError("runware", status.error or "video task rejected")
    return item.get("taskUUID", task_uuid), status


async def get_task_status(task_uuid: str) -> TaskStatus:
    """Read the current state of a task. A status read has no other side effects."""
    result = await _post_tasks([{"taskType": "getResponse", "taskUUID": task_uuid}])

    if result.get("errors"):
        message = _error_message(result["errors"])
        logger.warning(f"Runware task {task_uuid} errored: {message}")
        return TaskStatus(status=TaskState.FAILED, error=message)

    data = [d for d in result.get("data") or [] if d.get("taskUUID", task_uuid) == task_uuid]
    if not data:
        return TaskStatus(status=TaskState.PROCESSING)
    return _to_task_status(data[-1])
