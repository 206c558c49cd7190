"""HTTP Basic authentication middleware backed by the orchestrator."""

import base64
import binascii
from typing import Any

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .models import AuthError, Unauthorized
from .orchestrator import AuthOrchestrator

logger = structlog.get_logger()

UNPROTECTED_PATHS = ("/health", "/metrics", "/-/auth/login", "/-/auth/register")


def parse_basic_auth(header: str) -> tuple[str, str] | None:
    """Split an Authorization: Basic header into username and password."""
    scheme, _, encoded = header.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep or not username:
        return None
    return username, password


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """Authenticate every protected request through the orchestrator."""

    def __init__(self, app: Any, orchestrator: AuthOrchestrator):
        super().__init__(app)
        self.orchestrator = orchestrator

    async def dispatch(self, request: Any, call_next: Any) -> Any:
        """Process request with authentication."""
        if request.url.path in UNPROTECTED_PATHS:
            return await call_next(request)

        credentials = parse_basic_auth(request.headers.get("Authorization", ""))
        if credentials is None:
            logger.warning("Missing or malformed credentials", path=request.url.path)
            return self._challenge(Unauthorized("Authentication required"))

        outcome = await self.orchestrator.authenticate(*credentials)
        if outcome.error is not None:
            logger.warning(
                "Authentication failed",
                path=request.url.path,
                username=credentials[0],
                status=outcome.error.status_code,
            )
            return self._challenge(outcome.error)

        request.state.user = outcome.value
        logger.info(
            "Authentication successful", user=credentials[0], path=request.url.path
        )
        return await call_next(request)

    def _challenge(self, error: AuthError) -> JSONResponse:
        headers = {}
        if error.status_code == 401:
            headers["WWW-Authenticate"] = 'Basic realm="adauth"'
        return JSONResponse(
            status_code=error.status_code,
            content={"error": error.message, "code": error.code},
            headers=headers,
        )
