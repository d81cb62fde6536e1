"""
Circuit Breaker -- per-service failure tracking for SEO Autopilot

Stops the pipeline from spending time and rate-limit budget on a dependency
that is known to be down.  Each external service (serper, anthropic,
youtube, wordpress, ...) gets its own breaker, created lazily by a
BreakerRegistry owned by the pipeline.

State machine:
    CLOSED    -- failure_threshold consecutive failures --> OPEN
    OPEN      -- recovery_timeout elapsed (checked lazily) --> HALF_OPEN
    HALF_OPEN -- success_threshold successes --> CLOSED
    HALF_OPEN -- any failure --> OPEN

Breaker state can be persisted to data/circuit_breaker/breakers.json so the
CLI can show what a running scheduler last saw.

Usage:
    from seo_autopilot.circuit_breaker import BreakerRegistry

    breakers = BreakerRegistry()
    results = await breakers.call("serper", lambda: research.search(q), fallback=[])

CLI:
    python -m seo_autopilot.cli breakers status
    python -m seo_autopilot.cli breakers reset --name serper
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from seo_autopilot import config
from seo_autopilot.errors import ServiceUnavailable
from seo_autopilot.persistence import load_json, now_iso, save_json

logger = logging.getLogger("circuit_breaker")

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
# Paths
# ---------------------------------------------------------------------------

BREAKER_DATA_DIR = config.DATA_DIR / "circuit_breaker"
BREAKERS_FILE = BREAKER_DATA_DIR / "breakers.json"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_SUCCESS_THRESHOLD = 2
DEFAULT_RECOVERY_TIMEOUT = 30.0  # seconds

MAX_RECENT_ERRORS = 20


class _NoFallback:
    def __repr__(self) -> str:
        return "NO_FALLBACK"


# Sentinel so that ``None`` remains a legitimate fallback value
NO_FALLBACK: Any = _NoFallback()


class CircuitState(str, Enum):
    """State machine for circuit breakers."""
    CLOSED = "closed"         # Normal operation -- calls pass through
    OPEN = "open"             # Failing -- calls are rejected immediately
    HALF_OPEN = "half_open"   # Testing recovery -- trial calls allowed


# ===================================================================
# CIRCUIT BREAKER
# ===================================================================


@dataclass
class CircuitBreaker:
    """Circuit breaker for a single named service."""

    name: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    success_threshold: int = DEFAULT_SUCCESS_THRESHOLD
    recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    last_state_change: Optional[float] = None
    total_calls: int = 0
    total_failures: int = 0
    total_successes: int = 0
    total_rejected: int = 0
    recent_errors: List[Dict[str, Any]] = field(default_factory=list)

    def current_state(self) -> CircuitState:
        """Return the state after applying any pending OPEN -> HALF_OPEN move."""
        if self.state == CircuitState.OPEN:
            self._check_recovery()
        return self.state

    def can_execute(self) -> bool:
        """True unless the circuit is OPEN and still cooling down."""
        return self.current_state() != CircuitState.OPEN

    def record_success(self) -> None:
        """Record a successful call. May transition HALF_OPEN -> CLOSED."""
        self.total_calls += 1
        self.total_successes += 1
        self.last_success_time = time.time()

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._transition(CircuitState.CLOSED)
                logger.info(
                    "Circuit breaker '%s' CLOSED after %d half-open successes",
                    self.name, self.success_count,
                )
                self.failure_count = 0
                self.success_count = 0
        elif self.state == CircuitState.CLOSED:
            # Successes decay the failure streak instead of wiping it
            self.failure_count = max(0, self.failure_count - 1)

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        """Record a failed call. May transition CLOSED -> OPEN or HALF_OPEN -> OPEN."""
        self.total_calls += 1
        self.total_failures += 1
        self.last_failure_time = time.time()

        if error is not None:
            self.recent_errors.append({
                "type": type(error).__name__,
                "message": str(error)[:300],
                "timestamp": now_iso(),
            })
            if len(self.recent_errors) > MAX_RECENT_ERRORS:
                self.recent_errors = self.recent_errors[-MAX_RECENT_ERRORS:]

        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            self.success_count = 0
            logger.warning(
                "Circuit breaker '%s' re-OPENED from HALF_OPEN on failure: %s",
                self.name, error or "unknown",
            )
        elif self.state == CircuitState.CLOSED:
            self.failure_count += 1
            if self.failure_count >= self.failure_threshold:
                self._transition(CircuitState.OPEN)
                logger.warning(
                    "Circuit breaker '%s' OPENED after %d failures (threshold=%d)",
                    self.name, self.failure_count, self.failure_threshold,
                )

    def reset(self) -> None:
        """Force the breaker back to CLOSED, clearing counters."""
        self._transition(CircuitState.CLOSED)
        self.failure_count = 0
        self.success_count = 0
        self.recent_errors.clear()
        logger.info("Circuit breaker '%s' manually RESET to CLOSED", self.name)

    def get_stats(self) -> Dict[str, Any]:
        """Return a dictionary of metrics for this breaker."""
        now = time.time()
        time_since_failure = None
        if self.last_failure_time is not None:
            time_since_failure = round(now - self.last_failure_time, 1)

        failure_rate = 0.0
        if self.total_calls > 0:
            failure_rate = round(self.total_failures / self.total_calls * 100, 2)

        return {
            "name": self.name,
            "state": self.current_state().value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "failure_threshold": self.failure_threshold,
            "success_threshold": self.success_threshold,
            "recovery_timeout": self.recovery_timeout,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "total_rejected": self.total_rejected,
            "failure_rate_pct": failure_rate,
            "time_since_last_failure_seconds": time_since_failure,
            "recent_error_count": len(self.recent_errors),
        }

    def _check_recovery(self) -> None:
        """Auto-transition OPEN -> HALF_OPEN if recovery timeout has elapsed."""
        if self.state != CircuitState.OPEN or self.last_failure_time is None:
            return
        elapsed = time.time() - self.last_failure_time
        if elapsed >= self.recovery_timeout:
            self._transition(CircuitState.HALF_OPEN)
            self.success_count = 0
            logger.info(
                "Circuit breaker '%s' transitioned to HALF_OPEN after %.1fs",
                self.name, elapsed,
            )

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self.state
        self.state = new_state
        self.last_state_change = time.time()
        if old_state != new_state:
            logger.debug(
                "Circuit breaker '%s': %s -> %s",
                self.name, old_state.value, new_state.value,
            )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize breaker state for persistence."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "failure_threshold": self.failure_threshold,
            "success_threshold": self.success_threshold,
            "recovery_timeout": self.recovery_timeout,
            "last_failure_time": self.last_failure_time,
            "last_success_time": self.last_success_time,
            "last_state_change": self.last_state_change,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "total_rejected": self.total_rejected,
            "recent_errors": self.recent_errors,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> CircuitBreaker:
        """Deserialize breaker state from a dictionary."""
        try:
            state = CircuitState(d.get("state", "closed"))
        except ValueError:
            state = CircuitState.CLOSED
        known = {f for f in cls.__dataclass_fields__}
        filtered = {k: v for k, v in d.items() if k in known}
        filtered["state"] = state
        filtered.setdefault("name", "unknown")
        return cls(**filtered)


# ===================================================================
# BREAKER REGISTRY
# ===================================================================


class BreakerRegistry:
    """Lazily-created breakers keyed by service name.

    Pass *state_file* to make save_state()/load_state() persist to disk;
    without it the registry is purely in-memory.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        success_threshold: int = DEFAULT_SUCCESS_THRESHOLD,
        recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT,
        state_file: Optional[Path] = None,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.recovery_timeout = recovery_timeout
        self.state_file = state_file
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get_breaker(self, name: str) -> CircuitBreaker:
        """Get or create the breaker for *name*."""
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name=name,
                failure_threshold=self.failure_threshold,
                success_threshold=self.success_threshold,
                recovery_timeout=self.recovery_timeout,
            )
            self._breakers[name] = breaker
            logger.debug("Created circuit breaker '%s'", name)
        return breaker

    def get_state(self, name: str) -> CircuitState:
        return self.get_breaker(name).current_state()

    def record_success(self, name: str) -> None:
        self.get_breaker(name).record_success()

    def record_failure(self, name: str, error: Optional[BaseException] = None) -> None:
        self.get_breaker(name).record_failure(error)

    async def call(
        self,
        name: str,
        operation: Callable[[], Awaitable[Any]],
        fallback: Any = NO_FALLBACK,
    ) -> Any:
        """Run *operation* behind the breaker for *name*.

        OPEN: the operation is not invoked; returns *fallback* or raises
        ServiceUnavailable.  Otherwise the outcome is recorded and, on
        failure, *fallback* is returned if given, else the error propagates.
        """
        breaker = self.get_breaker(name)
        if not breaker.can_execute():
            breaker.total_rejected += 1
            if fallback is not NO_FALLBACK:
                logger.info("Service '%s' circuit OPEN, using fallback", name)
                return fallback
            raise ServiceUnavailable(
                name,
                recovery_timeout=breaker.recovery_timeout,
                last_failure_time=breaker.last_failure_time,
            )

        try:
            result = await operation()
        except Exception as exc:
            breaker.record_failure(exc)
            if fallback is not NO_FALLBACK:
                logger.warning("Service '%s' failed, using fallback: %s", name, exc)
                return fallback
            raise
        breaker.record_success()
        return result

    def list_breakers(self) -> List[str]:
        return sorted(self._breakers.keys())

    def reset_breaker(self, name: str) -> bool:
        """Reset a specific breaker by name. Returns True if found."""
        if name in self._breakers:
            self._breakers[name].reset()
            return True
        return False

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
        logger.info("Reset all %d circuit breakers", len(self._breakers))

    def get_stats(self) -> Dict[str, Any]:
        """Aggregate summary plus per-breaker stats."""
        stats = {name: b.get_stats() for name, b in sorted(self._breakers.items())}
        open_names = [n for n, s in stats.items() if s["state"] == CircuitState.OPEN.value]
        half_open = [n for n, s in stats.items() if s["state"] == CircuitState.HALF_OPEN.value]
        total_calls = sum(s["total_calls"] for s in stats.values())
        total_failures = sum(s["total_failures"] for s in stats.values())
        return {
            "summary": {
                "total_breakers": len(stats),
                "breakers_open": len(open_names),
                "breakers_half_open": len(half_open),
                "open_breaker_names": open_names,
                "total_calls": total_calls,
                "total_failures": total_failures,
                "total_rejected": sum(s["total_rejected"] for s in stats.values()),
                "overall_failure_rate_pct": round(total_failures / max(total_calls, 1) * 100, 2),
            },
            "breakers": stats,
        }

    def save_state(self) -> None:
        """Persist all breaker states when a state file is configured."""
        if self.state_file is None:
            return
        save_json(self.state_file, {n: b.to_dict() for n, b in self._breakers.items()})
        logger.debug("Saved circuit breaker state (%d breakers)", len(self._breakers))

    def load_state(self) -> None:
        """Restore breaker states from the state file, if any."""
        if self.state_file is None:
            return
        data = load_json(self.state_file, {})
        if not isinstance(data, dict):
            return
        for name, bdata in data.items():
            try:
                self._breakers[name] = CircuitBreaker.from_dict(bdata)
            except (TypeError, ValueError) as exc:
                logger.warning("Failed to load breaker '%s': %s", name, exc)
        logger.debug("Loaded circuit breaker state (%d breakers)", len(self._breakers))
