"""Uniform error handling around backend calls."""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from .models import BackendCall, BackendError

logger = structlog.get_logger()

T = TypeVar("T")


async def call_backend(
    operation: str, func: Callable[..., Awaitable[T]], *args: Any
) -> BackendCall[T]:
    """Await a backend operation and capture how it ended.

    BackendError is the contract failure; anything else the backend raises is
    recorded as a fault so that callers only ever inspect the returned value.
    """
    try:
        value = await func(*args)
        return BackendCall(operation=operation, value=value)

    except BackendError as e:
        return BackendCall(operation=operation, error=e)

    except Exception as e:
        logger.error(
            "Backend call raised unexpectedly",
            operation=operation,
            error=str(e),
            error_type=type(e).__name__,
        )
        return BackendCall(operation=operation, fault=e)
