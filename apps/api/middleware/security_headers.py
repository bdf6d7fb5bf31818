"""
Security Headers Middleware
Adds security headers to all API responses, and anti-buffering headers to
the live notification stream.
"""
import os

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# The API serves JSON and event streams only, so the policy can be strict
STATIC_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none';",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Headers added:
    - X-Content-Type-Options, X-Frame-Options, Referrer-Policy,
      Content-Security-Policy and Permissions-Policy on every response
    - Strict-Transport-Security when served over HTTPS (directly or behind a proxy)
    - Cache-Control: no-cache and X-Accel-Buffering: no on text/event-stream,
      so reverse proxies deliver pushes immediately
    """

    def __init__(self, app, hsts_max_age: int = None):
        super().__init__(app)
        self.hsts_max_age = hsts_max_age or int(os.getenv("HSTS_MAX_AGE", "31536000"))

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        for name, value in STATIC_HEADERS.items():
            response.headers.setdefault(name, value)

        # Check X-Forwarded-Proto for proxied requests
        forwarded_proto = request.headers.get("X-Forwarded-Proto", "")
        if request.url.scheme == "https" or forwarded_proto == "https":
            response.headers["Strict-Transport-Security"] = f"max-age={self.hsts_max_age}; includeSubDomains"

        if response.headers.get("content-type", "").startswith("text/event-stream"):
            response.headers["Cache-Control"] = "no-cache"
            response.headers["X-Accel-Buffering"] = "no"

        return response
