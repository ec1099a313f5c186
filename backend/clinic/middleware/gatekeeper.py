"""
Edge pre-screening for routes that carry medical data.

Runs before any handler on ``/api/appointments*`` and ``/api/patients*``:
rejects requests without a valid session token and keeps non-clinical roles
away from notes and history. Per-record checks stay in the handlers.
"""
import logging
import re
from typing import Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from clinic.models import Role
from clinic.services.auth_service import decode_session_token, extract_token

logger = logging.getLogger(__name__)

PROTECTED_PREFIXES = ("/api/appointments", "/api/patients")
CLINICAL_ROLES = {Role.ADMIN.value, Role.THERAPIST.value}

_CONFIRM_PATH = re.compile(r"^/api/appointments/[\w-]+/confirm/?$")
_PUBLIC_SUMMARY_PATH = re.compile(r"^/api/appointments/[\w-]+/public/?$")


def is_protected(path: str) -> bool:
    return any(path == prefix or path.startswith(prefix + "/") for prefix in PROTECTED_PREFIXES)


def is_exempt(request: Request) -> bool:
    path = request.url.path.rstrip("/") or "/"
    method = request.method.upper()
    if method == "POST" and path == "/api/appointments" and request.query_params.get("public") == "true":
        return True
    if method == "POST" and _CONFIRM_PATH.match(path):
        return True
    if method == "GET" and _PUBLIC_SUMMARY_PATH.match(path):
        return True
    return False


def medical_resource(path: str) -> Optional[str]:
    """Resource type of a notes/history path, or None for other paths."""
    if "/notes" in path:
        return "therapist_note"
    if "/history" in path:
        return "patient_history"
    return None


class GatekeeperMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if not is_protected(path) or is_exempt(request):
            return await call_next(request)

        claims = decode_session_token(extract_token(request))
        if claims is None:
            return JSONResponse(status_code=401, content={"detail": "Not authenticated"})

        resource_type = medical_resource(path)
        if resource_type is None:
            return await call_next(request)

        role = claims.get("role")
        email = claims.get("email") or ""
        if role not in CLINICAL_ROLES:
            logger.warning("UNAUTHORIZED_MEDICAL_ACCESS: %s (%s) tried %s", email, role, path)
            audit = getattr(request.app.state, "audit_logger", None)
            if audit is not None:
                await audit.record(
                    claims["sub"],
                    "view",
                    resource_type,
                    path,
                    {"result": False, "reason": "gatekeeper_role_denied", "userRole": role},
                )
            return JSONResponse(
                status_code=403,
                content={"detail": "Access to confidential medical information is restricted"},
            )

        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Medical-Data-Access"] = "restricted"
        response.headers["X-Access-By"] = email
        return response
