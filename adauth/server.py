#!/usr/bin/env python3
"""HTTP service exposing directory authentication with a local fallback."""

import os
from json import JSONDecodeError
from typing import Any

import structlog
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route

from .auth.cache import GroupCache
from .auth.directory import LdapDirectoryBackend
from .auth.htpasswd import HtpasswdBackend
from .auth.middleware import BasicAuthMiddleware
from .auth.models import AuthError
from .auth.orchestrator import AuthOrchestrator
from .config import ActiveDirectoryConfig, get_config_loader
from .logging import configure_logging, get_uvicorn_log_config
from .monitoring import get_health_data, get_prometheus_metrics, metrics_data

logger = structlog.get_logger()


def build_orchestrator(config: ActiveDirectoryConfig) -> AuthOrchestrator:
    """Wire the configured backends into an orchestrator."""
    fallback = None
    if config.extended_users_file:
        fallback = HtpasswdBackend(config.extended_users_file)
        logger.info("Local credential store enabled", path=config.extended_users_file)
    else:
        logger.info("No local credential store configured, registration disabled")

    return AuthOrchestrator(
        directory=LdapDirectoryBackend(config),
        fallback=fallback,
        cache=GroupCache(ttl_seconds=config.group_cache_ttl_seconds),
        domain_suffix=config.domain_suffix,
        extended_users_suffix=config.extended_users_suffix,
        group_lookup_delay=config.group_lookup_delay_seconds,
    )


def _count(request: Request) -> None:
    metrics_data["server_requests_total"][request.method][request.url.path] += 1


def _error_response(error: AuthError) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content={"error": error.message, "code": error.code},
    )


async def _read_credentials(request: Request) -> tuple[str, str] | JSONResponse:
    try:
        body: Any = await request.json()
    except (JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})

    username = body.get("username") if isinstance(body, dict) else None
    password = body.get("password") if isinstance(body, dict) else None
    if not isinstance(username, str) or not username or not isinstance(password, str):
        return JSONResponse(
            status_code=400, content={"error": "username and password are required"}
        )
    return username, password


def create_app(orchestrator: AuthOrchestrator) -> Starlette:
    """Create the ASGI application around an orchestrator."""

    async def login(request: Request) -> Response:
        _count(request)
        credentials = await _read_credentials(request)
        if isinstance(credentials, JSONResponse):
            return credentials

        outcome = await orchestrator.authenticate(*credentials)
        if outcome.error is not None:
            return _error_response(outcome.error)

        result = outcome.unwrap()
        return JSONResponse({"username": result.username, "groups": result.groups})

    async def register(request: Request) -> Response:
        _count(request)
        credentials = await _read_credentials(request)
        if isinstance(credentials, JSONResponse):
            return credentials

        outcome = await orchestrator.register_user(*credentials)
        if outcome.error is not None:
            return _error_response(outcome.error)

        created = bool(outcome.value)
        return JSONResponse({"created": created}, status_code=201 if created else 200)

    async def whoami(request: Request) -> Response:
        _count(request)
        user = request.state.user
        return JSONResponse({"username": user.username, "groups": user.groups})

    async def health(request: Request) -> Response:
        _count(request)
        return JSONResponse(get_health_data(metrics_data))

    async def metrics(request: Request) -> Response:
        _count(request)
        return PlainTextResponse(get_prometheus_metrics(metrics_data))

    app = Starlette(
        routes=[
            Route("/-/auth/login", login, methods=["POST"]),
            Route("/-/auth/register", register, methods=["POST"]),
            Route("/-/whoami", whoami, methods=["GET"]),
            Route("/health", health, methods=["GET"]),
            Route("/metrics", metrics, methods=["GET"]),
        ]
    )
    app.add_middleware(BasicAuthMiddleware, orchestrator=orchestrator)
    app.state.orchestrator = orchestrator
    return app


def main() -> None:
    """Main entry point for the server."""
    import uvicorn

    configure_logging()
    logger.info("Initializing adauth server")

    config = get_config_loader().load()
    app = create_app(build_orchestrator(config))

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    timeout_graceful_shutdown = int(os.getenv("SHUTDOWN_TIMEOUT_SECONDS", "8"))

    try:
        uvicorn.run(
            app,
            host=host,
            port=port,
            timeout_graceful_shutdown=timeout_graceful_shutdown,
            log_level="info",
            log_config=get_uvicorn_log_config(),
        )
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Server error: {e}")
        raise


if __name__ == "__main__":
    main()
