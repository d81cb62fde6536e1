"""
Resilience Wrappers -- timeouts, retries and parallel fan-out

Primitives the pipeline composes around every remote call:

    with_timeout      Race an awaitable against a timer.  The operation is
                      shielded, not cancelled: on timeout the caller moves on
                      and the eventual result is discarded.
    RetryPolicy       Exponential backoff with jitter, or a fixed delay
    with_retry        schedule.  Errors flagged ``retryable = False`` are
                      raised immediately.
    execute_parallel  Run named tasks concurrently, each under its own
                      timeout, and return every outcome once all settle.

Usage:
    from seo_autopilot.resilience import execute_parallel, with_retry, with_timeout

    text = await with_retry(lambda: with_timeout(gen.generate(p), 120, "draft"))
    outcomes = await execute_parallel({"serp": fetch_serp, "video": fetch_video})
    if outcomes["serp"].success:
        ...
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

from seo_autopilot.errors import OperationTimeout

logger = logging.getLogger("resilience")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0    # seconds
DEFAULT_MAX_DELAY = 10.0    # seconds
DEFAULT_JITTER_RATIO = 0.3
DEFAULT_PARALLEL_TIMEOUT = 30.0


# ===================================================================
# TIMEOUT
# ===================================================================


def _discard_result(task: "asyncio.Future[Any]") -> None:
    """Retrieve an abandoned task's outcome so it is never reported as unhandled."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned operation finished with %s: %s", type(exc).__name__, exc)


async def with_timeout(operation: Awaitable[Any], seconds: float, label: str = "operation") -> Any:
    """Await *operation* for at most *seconds*.

    Raises:
        OperationTimeout: the timer won.  The operation keeps running in the
            background; its result is ignored.
    """
    task = asyncio.ensure_future(operation)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=seconds)
    except asyncio.TimeoutError:
        task.add_done_callback(_discard_result)
        logger.warning("%s timed out after %gs", label, seconds)
        raise OperationTimeout(label, seconds) from None


# ===================================================================
# RETRY
# ===================================================================


def _is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", True))


@dataclass
class RetryPolicy:
    """Retry an async operation with backoff.

    When *delays* is given the schedule is fixed (the last value repeats);
    otherwise delay = min(base_delay * 2**attempt, max_delay) plus up to
    ``jitter_ratio`` of that delay at random.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    jitter_ratio: float = DEFAULT_JITTER_RATIO
    delays: Optional[Sequence[float]] = None
    label: str = "operation"
    on_retry: Optional[Callable[[int, BaseException, float], None]] = field(default=None, repr=False)

    async def execute(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Invoke *operation* up to ``max_retries + 1`` times.

        Returns the first successful result; re-raises the last error once
        attempts run out or a non-retryable error appears.
        """
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                result = await operation()
            except Exception as exc:
                if not _is_retryable(exc):
                    logger.debug("Not retrying %s: %s is not retryable", self.label, type(exc).__name__)
                    raise
                if attempt >= self.max_retries:
                    logger.warning(
                        "%s failed after %d attempts: %s", self.label, attempts, exc,
                    )
                    raise
                delay = self._calculate_delay(attempt)
                logger.info(
                    "Retry %d/%d for %s in %.2fs: %s",
                    attempt + 1, self.max_retries, self.label, delay, exc,
                )
                if self.on_retry is not None:
                    self.on_retry(attempt + 1, exc, delay)
                await asyncio.sleep(delay)
            else:
                if attempt > 0:
                    logger.info("%s succeeded on attempt %d/%d", self.label, attempt + 1, attempts)
                return result

    def _calculate_delay(self, attempt: int) -> float:
        if self.delays:
            return float(self.delays[min(attempt, len(self.delays) - 1)])
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        delay += random.random() * self.jitter_ratio * delay
        return round(delay, 3)


async def with_retry(
    operation: Callable[[], Awaitable[Any]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    label: str = "operation",
) -> Any:
    """Functional form of RetryPolicy for one-off calls."""
    policy = RetryPolicy(
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
        on_retry=on_retry,
        label=label,
    )
    return await policy.execute(operation)


# ===================================================================
# PARALLEL ORCHESTRATOR
# ===================================================================


@dataclass
class TaskOutcome:
    """Settled result of one task in an execute_parallel fan-out."""

    success: bool
    data: Any = None
    error: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"success": self.success}
        if self.success:
            d["data"] = self.data
        else:
            d["error"] = str(self.error)
        return d


async def execute_parallel(
    tasks: Dict[str, Callable[[], Awaitable[Any]]],
    timeout: float = DEFAULT_PARALLEL_TIMEOUT,
) -> Dict[str, TaskOutcome]:
    """Run every named task factory concurrently and join on all of them.

    A failing or timed-out task is captured in its own TaskOutcome and never
    affects its siblings.  Returns only once every task has settled.
    """

    async def _run_one(name: str, factory: Callable[[], Awaitable[Any]]) -> Tuple[str, TaskOutcome]:
        try:
            data = await with_timeout(factory(), timeout, label=name)
        except Exception as exc:
            logger.warning("Parallel task '%s' failed: %s", name, exc)
            return name, TaskOutcome(success=False, error=exc)
        return name, TaskOutcome(success=True, data=data)

    settled = await asyncio.gather(*(_run_one(n, f) for n, f in tasks.items()))
    outcomes = dict(settled)
    ok = sum(1 for o in outcomes.values() if o.success)
    logger.debug("Parallel fan-out settled: %d/%d succeeded", ok, len(outcomes))
    return outcomes
