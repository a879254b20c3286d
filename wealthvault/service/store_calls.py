from __future__ import annotations

import asyncio
import functools
from typing import Any, Callable, TypeVar

from wealthvault.logging import get_logger
from wealthvault.service.errors import ServiceUnavailableError
from wealthvault.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def call_store(
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    operation: str,
    **kwargs: Any,
) -> T:
    """Run a blocking store call off the event loop under a deadline.

    Raises:
        ServiceUnavailableError: the store timed out or reported itself unreachable.
    """
    bound = functools.partial(func, *args, **kwargs)
    try:
        return await asyncio.wait_for(asyncio.to_thread(bound), timeout)
    except asyncio.TimeoutError:
        logger.error("store_call_timeout", operation=operation, timeout=timeout)
        raise ServiceUnavailableError(
            f"store timed out during {operation}", detail={"operation": operation}
        )
    except StoreUnavailable as exc:
        logger.error("store_call_failed", operation=operation, error=exc.message)
        raise ServiceUnavailableError(
            f"store unavailable during {operation}", detail={"operation": operation}
        ) from exc
