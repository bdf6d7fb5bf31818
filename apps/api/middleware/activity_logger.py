"""Request activity logging middleware"""
import logging
import time
from typing import Optional
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("carelink.activity")


class ActivityLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with timing, and a named activity for billing/notification actions"""

    skip_paths = ["/api/health", "/docs", "/openapi.json", "/redoc", "/favicon.ico"]

    async def dispatch(self, request: Request, call_next):
        if any(request.url.path.startswith(path) for path in self.skip_paths):
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        # Set by the auth dependency
        user = getattr(request.state, "user", None)
        user_label = f"user {user.id}" if user else "anonymous"

        # Get client IP
        client_host = request.client.host if request.client else "unknown"
        forwarded_for = request.headers.get("X-Forwarded-For")
        ip_address = forwarded_for.split(",")[0].strip() if forwarded_for else client_host

        activity = self._determine_activity_type(request.method, request.url.path)
        message = (
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"({elapsed_ms:.1f} ms) {user_label} from {ip_address}"
        )
        if activity:
            message = f"[{activity}] {message}"

        if response.status_code >= 500:
            logger.error(message)
        elif response.status_code >= 400:
            logger.warning(message)
        else:
            logger.info(message)
        return response

    def _determine_activity_type(self, method: str, path: str) -> Optional[str]:
        """Determine activity type from request method and path"""
        if "/auth/login" in path:
            return "login"

        elif "/notifications" in path and method == "POST":
            if path.endswith("/read"):
                return "notification_read"
            return "notification_create"

        elif "/payments/initiate" in path:
            return "payment_initiate"
        elif "/webhooks/" in path:
            return "provider_webhook"

        elif "/control-numbers" in path and method == "POST":
            if path.endswith("/cancel"):
                return "control_number_cancel"
            elif path.endswith("/reissue"):
                return "control_number_reissue"
            return "control_number_create"

        elif "/invoices" in path and method == "POST":
            if path.endswith("/void"):
                return "invoice_void"
            elif path.endswith("/mark-paid"):
                return "invoice_mark_paid"
            return "invoice_create"

        elif "/insurance-claims" in path and method in ["POST", "PUT"]:
            return "insurance_claim"

        elif "/reconcile/" in path or "/jobs/" in path:
            return "maintenance_job"

        return None
