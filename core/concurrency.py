"""
Concurrency control for the analytics service.

Two levels are bounded here:
- Requests: a global asyncio semaphore limits how many analytics requests
  are computed at the same time (protects the shared store).
- Sub-queries: ``gather_bounded`` runs the independent sub-queries of one
  request through a small worker pool and cancels the siblings as soon as
  one of them fails.

``run_until_disconnected`` cancels an in-flight computation cooperatively
when the HTTP client goes away, so no aggregate scan is left orphaned.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional, Sequence

from config import ConcurrencyConfig

logger = logging.getLogger(__name__)


# ============================================================================
# GLOBAL SEMAPHORE
# ============================================================================
_semaphore: Optional[asyncio.Semaphore] = None
_pending_requests: int = 0
_active_requests: int = 0


def get_semaphore() -> asyncio.Semaphore:
    """Get or create the global concurrency semaphore."""
    global _semaphore
    if _semaphore is None:
        _semaphore = asyncio.Semaphore(ConcurrencyConfig.MAX_CONCURRENT_REQUESTS)
        logger.info(
            f"Concurrency semaphore initialized with limit: "
            f"{ConcurrencyConfig.MAX_CONCURRENT_REQUESTS}"
        )
    return _semaphore


# ============================================================================
# REQUEST SLOT
# ============================================================================
@asynccontextmanager
async def acquire_slot(timeout: Optional[float] = None):
    """
    Context manager that acquires a slot of the request semaphore.

    Args:
        timeout: Max seconds to wait. Defaults to SEMAPHORE_TIMEOUT.

    Raises:
        ConcurrencyLimitExceeded: If no slot frees up within the timeout.

    Usage:
        async with acquire_slot():
            result = await engine.thresholds(spatial_filter)
    """
    global _pending_requests, _active_requests

    if not ConcurrencyConfig.RATE_LIMITING_ENABLED:
        yield
        return

    timeout = timeout or ConcurrencyConfig.SEMAPHORE_TIMEOUT
    semaphore = get_semaphore()

    _pending_requests += 1

    try:
        await asyncio.wait_for(semaphore.acquire(), timeout=timeout)
    except asyncio.TimeoutError:
        _pending_requests -= 1
        raise ConcurrencyLimitExceeded(
            f"Timeout waiting for slot after {timeout}s. "
            f"Service is at capacity. Active: {_active_requests}, Pending: {_pending_requests}"
        )

    _pending_requests -= 1
    _active_requests += 1

    logger.debug(
        f"Slot acquired. Active: {_active_requests}/{ConcurrencyConfig.MAX_CONCURRENT_REQUESTS}, "
        f"Pending: {_pending_requests}"
    )

    try:
        yield
    finally:
        _active_requests -= 1
        semaphore.release()
        logger.debug(
            f"Slot released. Active: {_active_requests}/{ConcurrencyConfig.MAX_CONCURRENT_REQUESTS}"
        )


# ============================================================================
# SUB-QUERY POOL
# ============================================================================
async def gather_bounded(
    factories: Sequence[Callable[[], Awaitable[Any]]],
    limit: Optional[int] = None,
) -> list[Any]:
    """
    Run awaitable factories with at most ``limit`` in flight.

    Results keep the order of ``factories``. The first failure cancels every
    sibling still running or waiting, then propagates.
    """
    limit = max(1, limit or ConcurrencyConfig.MAX_PARALLEL_QUERIES)
    pool = asyncio.Semaphore(limit)

    async def _run(factory: Callable[[], Awaitable[Any]]) -> Any:
        async with pool:
            return await factory()

    tasks = [asyncio.ensure_future(_run(factory)) for factory in factories]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def run_serially(factories: Sequence[Callable[[], Awaitable[Any]]]) -> list[Any]:
    """Run awaitable factories one after another, in order."""
    results = []
    for factory in factories:
        results.append(await factory())
    return results


# ============================================================================
# CLIENT DISCONNECT
# ============================================================================
async def run_until_disconnected(
    request: Any,
    awaitable: Awaitable[Any],
    poll_interval: float = 0.25,
) -> Any:
    """
    Await ``awaitable`` while watching the client connection.

    If ``request.is_disconnected()`` turns true first, the computation is
    cancelled and ``ClientDisconnected`` is raised.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_interval)
            if done:
                return task.result()
            if await request.is_disconnected():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                logger.warning("Client disconnected, analytics computation cancelled")
                raise ClientDisconnected("Client disconnected before the response was ready")
    except asyncio.CancelledError:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise


# ============================================================================
# STATS
# ============================================================================
def get_concurrency_stats() -> dict:
    """
    Return the current concurrency statistics.

    Returns:
        dict with:
        - max_concurrent: Configured limit
        - active_requests: Requests being computed now
        - pending_requests: Requests waiting for a slot
        - available_slots: Free slots
        - rate_limiting_enabled: Whether the limit is enforced
        - max_parallel_queries: Sub-query pool size per request
    """
    max_concurrent = ConcurrencyConfig.MAX_CONCURRENT_REQUESTS
    return {
        "max_concurrent": max_concurrent,
        "active_requests": _active_requests,
        "pending_requests": _pending_requests,
        "available_slots": max(0, max_concurrent - _active_requests),
        "rate_limiting_enabled": ConcurrencyConfig.RATE_LIMITING_ENABLED,
        "max_parallel_queries": ConcurrencyConfig.MAX_PARALLEL_QUERIES,
    }


# ============================================================================
# EXCEPTIONS
# ============================================================================
class ConcurrencyLimitExceeded(Exception):
    """
    Raised when the service is at capacity and cannot accept
    another analytics request.
    """
    pass


class ClientDisconnected(Exception):
    """Raised when the client went away while its request was computed."""
    pass
