"""
Sliding-window rate limiter and concurrency guard for generation requests.

With Redis configured, each user gets a sorted set keyed by `ratelimit:{user_id}`.
Members are timestamps of recent requests; the score is the timestamp.
We trim entries older than the window and count the remainder.

Without Redis an in-memory log does the same per process, with a lower
limit since state is lost on restart. A semaphore-style counter caps
concurrent background jobs in both modes.
"""

import os
import time
import logging
import threading
from typing import Dict, List, Tuple

import redis

logger = logging.getLogger(__name__)

# Defaults, can be overridden at call sites
DEFAULT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "5"))
DEFAULT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "3600"))
FALLBACK_MAX_REQUESTS = int(os.getenv("FALLBACK_RATE_LIMIT_MAX_REQUESTS", "3"))
MAX_CONCURRENT_JOBS = int(os.getenv("MAX_CONCURRENT_JOBS", "3"))

# ── State ─────────────────────────────────────────────────────────────────────
_lock = threading.Lock()
_request_log: Dict[str, List[float]] = {}  # user_id → [timestamp, ...]
_active_jobs = 0
_redis_client = None


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client
    if _redis_client is None:
        redis_url = os.environ.get("REDIS_URL")
        if redis_url:
            client = redis.from_url(redis_url, decode_responses=False)
            try:
                client.ping()
                logger.info(f"Redis connected: {redis_url[:30]}...")
                _redis_client = client
            except redis.RedisError as e:
                logger.warning(f"Redis connection failed: {e}, using in-memory limiter")
    return _redis_client


# ── Redis limiter ─────────────────────────────────────────────────────────────

def check_rate_limit_redis(
    redis_client,
    user_id: str,
    max_requests: int = DEFAULT_MAX_REQUESTS,
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
) -> Tuple[bool, int, int]:
    """
    Check and record a request for the given user.

    Returns:
        (allowed, remaining, retry_after_seconds)
        - allowed: True if the request is within limits
        - remaining: how many requests the user has left in this window
        - retry_after: seconds until the oldest entry expires (0 if allowed)
    """
    now = time.time()
    window_start = now - window_seconds
    key = f"ratelimit:{user_id}"

    pipe = redis_client.pipeline(transaction=True)
    pipe.zremrangebyscore(key, 0, window_start)
    pipe.zcard(key)
    pipe.zrange(key, 0, 0, withscores=True)
    results = pipe.execute()
    current_count = results[1]
    oldest_entries = results[2]

    if current_count >= max_requests:
        if oldest_entries:
            oldest_score = oldest_entries[0][1]
            retry_after = int(oldest_score + window_seconds - now) + 1
        else:
            retry_after = window_seconds
        logger.warning(f"Rate limit exceeded for user {user_id}: {current_count}/{max_requests}")
        return False, 0, retry_after

    pipe2 = redis_client.pipeline(transaction=True)
    pipe2.zadd(key, {f"{now}": now})
    pipe2.expire(key, window_seconds + 60)  # TTL slightly beyond window
    pipe2.execute()

    remaining = max_requests - current_count - 1
    logger.info(f"Rate limit OK for user {user_id}: {current_count + 1}/{max_requests} ({remaining} remaining)")
    return True, remaining, 0


# ── In-memory limiter ─────────────────────────────────────────────────────────

def check_rate_limit_memory(
    user_id: str,
    max_requests: int = FALLBACK_MAX_REQUESTS,
    window_seconds: int = DEFAULT_WINDOW_SECONDS,
) -> Tuple[bool, int, int]:
    """Same contract as check_rate_limit_redis, kept in process memory."""
    now = time.time()
    window_start = now - window_seconds

    with _lock:
        timestamps = [ts for ts in _request_log.get(user_id, []) if ts > window_start]

        if len(timestamps) >= max_requests:
            retry_after = int(timestamps[0] + window_seconds - now) + 1
            _request_log[user_id] = timestamps
            return False, 0, retry_after

        timestamps.append(now)
        _request_log[user_id] = timestamps
        return True, max_requests - len(timestamps), 0


def check_rate_limit(user_id: str) -> Tuple[bool, int, int]:
    """Use Redis when reachable, otherwise the in-memory log."""
    r = get_redis()
    if r is not None:
        try:
            return check_rate_limit_redis(r, user_id)
        except redis.RedisError as e:
            logger.warning(f"Redis rate limit check failed: {e}, using in-memory limiter")
    return check_rate_limit_memory(user_id)


def reset():
    """Forget all in-memory state."""
    global _active_jobs
    with _lock:
        _request_log.clear()
        _active_jobs = 0


# ── Concurrent Job Guard ──────────────────────────────────────────────────────

def acquire_job_slot() -> bool:
    """
    Try to acquire a slot for a background job.
    Returns True if a slot is available, False if at capacity.
    """
    global _active_jobs
    with _lock:
        if _active_jobs >= MAX_CONCURRENT_JOBS:
            return False
        _active_jobs += 1
        return True


def release_job_slot():
    """Release a background job slot after completion."""
    global _active_jobs
    with _lock:
        _active_jobs = max(0, _active_jobs - 1)


def get_active_jobs() -> int:
    with _lock:
        return _active_jobs
