"""
Shared-secret authentication middleware for the trailer API.

All /trailers/* endpoints require a valid X-Api-Secret header matching the
TRAILER_API_SECRET environment variable.
"""

import os
import secrets

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

PROTECTED_PREFIX = "/trailers"


class ApiSecretMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to /trailers/* endpoints."""

    # Paths that are always public (health checks, etc.)
    PUBLIC_PATHS = {"/health", "/metrics", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, secret: str | None = None):
        super().__init__(app)
        # Read at construction so tests and reloads can swap the secret
        self.secret = secret if secret is not None else os.environ.get("TRAILER_API_SECRET", "")

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path in self.PUBLIC_PATHS or not path.startswith(PROTECTED_PREFIX):
            return await call_next(request)

        if not self.secret:
            # In development without the secret set, allow all traffic
            if os.environ.get("ENVIRONMENT", "development") == "development":
                return await call_next(request)
            return JSONResponse(
                status_code=500, content={"detail": "TRAILER_API_SECRET not configured"},
            )

        # Constant-time compare avoids timing attacks
        provided = request.headers.get("X-Api-Secret", "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(
                status_code=401, content={"detail": "Invalid or missing API secret"},
            )

        return await call_next(request)
