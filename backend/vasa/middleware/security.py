# backend/vasa/middleware/security.py
"""
Security headers for every response.

The voice client runs in the browser, so the microphone stays allowed for
our own origin and the CSP admits the ElevenLabs and Mem0 endpoints.
"""

from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from vasa.config import settings

CSP_DIRECTIVES = [
    "default-src 'self'",
    "script-src 'self' 'unsafe-inline'",
    "style-src 'self' 'unsafe-inline'",
    "img-src 'self' data: https:",
    "font-src 'self' data:",
    "media-src 'self' blob:",
    "connect-src 'self' https://api.elevenlabs.io wss://api.elevenlabs.io https://api.mem0.ai",
    "frame-ancestors 'none'",
    "base-uri 'self'",
    "form-action 'self'",
]


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = (
            "camera=(), "
            "geolocation=(), "
            "microphone=(self), "
            "payment=(), "
            "usb=()"
        )
        response.headers["Content-Security-Policy"] = "; ".join(CSP_DIRECTIVES)

        # HSTS only in production, local dev runs on plain http
        if settings.ENVIRONMENT == "production":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        # Memory and profile payloads are per-user
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"
            response.headers["Pragma"] = "no-cache"

        return response
