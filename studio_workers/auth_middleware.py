"""
Shared-secret authentication middleware for the worker.

All /asmr/* endpoints require a valid X-Worker-Secret header matching
the WORKER_SHARED_SECRET environment variable, except read-only model
configuration lookups. The web app attaches this header when forwarding
requests to the worker.
"""

import os
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

WORKER_SECRET = os.environ.get("WORKER_SHARED_SECRET", "")

PROTECTED_PREFIX = "/asmr"


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to /asmr/* endpoints."""

    # Paths that are always public (health checks, etc.)
    PUBLIC_PATHS = {"/health", "/metrics", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, secret: str = None, environment: str = None):
        super().__init__(app)
        self.secret = WORKER_SECRET if secret is None else secret
        self.environment = environment or os.environ.get("ENVIRONMENT", "development")

    @staticmethod
    def _is_model_read(request: Request) -> bool:
        return request.method == "GET" and request.url.path.startswith(f"{PROTECTED_PREFIX}/models")

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path in self.PUBLIC_PATHS or not path.startswith(PROTECTED_PREFIX):
            return await call_next(request)

        if self._is_model_read(request):
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if self.environment == "development":
                return await call_next(request)
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Worker-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
