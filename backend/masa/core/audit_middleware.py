"""
PHI access audit logging middleware.
Logs every request to an endpoint that returns or changes patient data.
"""
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("masa.audit")

# Endpoints that touch PHI - requests to these paths are logged
PHI_PATH_PREFIXES = (
    "/api/v1/patients",
    "/api/v1/assessments",
    "/api/v1/analytics",
)

ACTION_MAP = {
    "GET": "view",
    "POST": "create",
    "PUT": "update",
    "PATCH": "update",
    "DELETE": "delete",
}


class AuditMiddleware(BaseHTTPMiddleware):
    """Middleware that auto-logs access to PHI endpoints."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        path = request.url.path
        if not any(path.startswith(prefix) for prefix in PHI_PATH_PREFIXES):
            return response
        if request.method not in ACTION_MAP:
            return response

        user_id = request.headers.get("X-User-Id") or "anonymous"
        try:
            # Derive resource type and ID from path
            parts = [p for p in path.split("/") if p]
            resource_type = parts[2] if len(parts) >= 3 else "unknown"
            resource_id = parts[3] if len(parts) >= 4 else "-"
            ip_address = request.client.host if request.client else None

            audit_logger.info(
                "user=%s action=%s resource=%s id=%s status=%s ip=%s",
                user_id,
                ACTION_MAP[request.method],
                resource_type,
                resource_id,
                response.status_code,
                ip_address,
            )
        except Exception as exc:
            logger.warning(
                "Audit log write failed for %s %s (user=%s): %s",
                request.method, path, user_id, exc,
            )

        return response
