"""
Autonomous Scheduler -- self-driving control loop over the work item pool

Every ``cycle_interval_seconds`` the scheduler picks the single best
candidate and runs it through the pipeline and the publishing target.  A
cycle short-circuits (and reports why) when the scheduler is busy, backing
off, cooling down, outside its active hours, out of hourly or daily budget,
or simply has nothing eligible to do.

Candidates are ranked by a weighted score:

    priority   40%   configured or item tier (critical/high/medium/low)
    recency    25%   never processed, or long ago
    importance 20%   hub pages, guides, shallow paths
    urgency    15%   year/news markers, dated URLs, never processed

A separate health loop recomputes the error rate, prunes caches, enters a
cooldown after too many consecutive failures and, if nothing has succeeded
for a long time, re-validates the collaborators and stops when one has gone
missing.

Data storage: data/scheduler/history.json (last 200 outcomes)

Usage:
    from seo_autopilot.scheduler import AutonomousScheduler, SchedulerContext

    scheduler = AutonomousScheduler()
    await scheduler.start(SchedulerContext(pipeline=pipeline, items=items))
    ...
    summary = await scheduler.stop()

CLI:
    python -m seo_autopilot.cli schedule --items items.json --config scheduler.json
    python -m seo_autopilot.cli rank --items items.json
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

from seo_autopilot import config
from seo_autopilot.config import load_json_config
from seo_autopilot.errors import PipelineAborted
from seo_autopilot.persistence import load_json, now_iso, now_utc, parse_iso, save_json
from seo_autopilot.pipeline import GenerationPipeline
from seo_autopilot.work_items import (
    WorkItem,
    WorkItemStore,
    is_system_path,
    path_segments,
)

logger = logging.getLogger("scheduler")

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
# Paths & Constants
# ---------------------------------------------------------------------------

SCHEDULER_DATA_DIR = config.DATA_DIR / "scheduler"
HISTORY_FILE = SCHEDULER_DATA_DIR / "history.json"

MAX_HISTORY = 200
MAX_EVENTS = 100

SCORE_WEIGHTS = {
    "priority": 0.40,
    "recency": 0.25,
    "importance": 0.20,
    "urgency": 0.15,
}
PRIORITY_SCORES = {"critical": 100, "high": 80, "medium": 50, "low": 30}
UNKNOWN_PRIORITY_SCORE = 100

RECENCY_FLOOR_HOURS = 24
RECENCY_SPAN_HOURS = 696  # 30 days minus the floor

BACKOFF_STEP_SECONDS = 60
MAX_BACKOFF_SECONDS = 600
EMA_WEIGHT = 0.2
REQUEST_WINDOW_SECONDS = 3600

_HUB_PATH = re.compile(r"/(?:index|home|about|contact|services|products)[/?]?$")
_GUIDE_MARKERS = ("guide", "complete", "ultimate", "definitive")
_FRESHNESS_WORDS = re.compile(r"\b(?:latest|new|current|updated)\b", re.IGNORECASE)
_NEWS_MARKERS = ("news", "trend", "breaking", "recent")
_DATED_URL = re.compile(r"/20\d{2}/|/\d{4}-\d{2}-\d{2}")


class CycleStatus(str, Enum):
    """Why a cycle ended."""
    BUSY = "busy"
    BACKOFF = "backoff"
    COOLDOWN = "cooldown"
    INACTIVE = "inactive"
    RATE_LIMITED = "rate_limited"
    THROTTLED = "throttled"
    DAILY_LIMIT = "daily_limit"
    IDLE = "idle"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    HALTED = "halted"


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass
class SchedulerConfig:
    """Scheduler tunables; load from JSON with load_scheduler_config()."""

    max_requests_per_hour: int = 50
    min_interval_seconds: float = 2.0
    cycle_interval_seconds: float = 60.0
    health_check_interval_seconds: float = 300.0
    consecutive_failure_threshold: int = 5
    backoff_failure_threshold: int = 3
    cooldown_seconds: float = 300.0
    stall_window_seconds: float = 1800.0
    reprocess_after_hours: float = 24.0
    initial_delay_seconds: float = 3.0
    excluded_urls: List[str] = field(default_factory=list)
    excluded_categories: List[str] = field(default_factory=list)
    priority_urls: List[Dict[str, str]] = field(default_factory=list)
    priority_only_mode: bool = False
    active_hours_start: Optional[int] = None
    active_hours_end: Optional[int] = None
    max_per_day: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SchedulerConfig:
        known = {f for f in cls.__dataclass_fields__}
        ignored = sorted(k for k in data if k not in known)
        if ignored:
            logger.debug("Ignoring unknown scheduler config keys: %s", ", ".join(ignored))
        return cls(**{k: v for k, v in data.items() if k in known})

    def priority_override(self, item: WorkItem) -> Optional[str]:
        """Configured priority tier for *item*, matched on URL or id."""
        keys = {item.id, item.source_url, item.source_url.rstrip("/")}
        for entry in self.priority_urls:
            url = str(entry.get("url", ""))
            if url and (url in keys or url.rstrip("/") in keys):
                return entry.get("priority")
        return None


def load_scheduler_config(path: Path) -> SchedulerConfig:
    return SchedulerConfig.from_dict(load_json_config(path))


@dataclass
class HealthMetrics:
    """Rolling health of one scheduler run.  Times are epoch seconds."""

    success_count: int = 0
    failure_count: int = 0
    avg_processing_ms: float = 0.0
    error_rate: float = 0.0
    last_health_check_at: Optional[str] = None
    consecutive_failures: int = 0
    last_success_at: Optional[float] = None
    started_at: float = field(default_factory=time.time)

    def recompute_error_rate(self) -> float:
        total = self.success_count + self.failure_count
        self.error_rate = round(self.failure_count / total, 4) if total else 0.0
        return self.error_rate

    def record_duration(self, duration_ms: float) -> None:
        if self.avg_processing_ms == 0:
            self.avg_processing_ms = duration_ms
        else:
            self.avg_processing_ms = (
                self.avg_processing_ms * (1 - EMA_WEIGHT) + duration_ms * EMA_WEIGHT
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PageScore:
    item: WorkItem
    score: float
    factors: Dict[str, float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item.id,
            "title": self.item.title,
            "url": self.item.source_url,
            "score": round(self.score, 2),
            "factors": {k: round(v, 2) for k, v in self.factors.items()},
        }


@dataclass
class CycleOutcome:
    status: CycleStatus
    item_id: Optional[str] = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class SchedulerContext:
    """Everything a running scheduler works with; swappable at runtime."""

    pipeline: GenerationPipeline
    items: List[WorkItem]
    config: SchedulerConfig = field(default_factory=SchedulerConfig)
    item_store: Optional[WorkItemStore] = None


# ===================================================================
# SCHEDULER
# ===================================================================


class AutonomousScheduler:
    """Periodic single-flight driver for the generation pipeline."""

    def __init__(
        self,
        on_event: Optional[Callable[[Dict[str, Any]], None]] = None,
        history_file: Optional[Path] = None,
    ) -> None:
        self.on_event = on_event
        self.history_file = Path(history_file) if history_file is not None else HISTORY_FILE
        self.metrics = HealthMetrics()
        self._context: Optional[SchedulerContext] = None
        self._running = False
        self._halt_requested = False
        self._is_processing = False
        self._current_item_id: Optional[str] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None
        self._current_cycle: Optional[asyncio.Task] = None
        self._request_log: Deque[float] = deque()
        self._last_attempt_at: Optional[float] = None
        self._backoff_until = 0.0
        self._cooldown_until = 0.0
        self._daily_counts: Dict[str, int] = {}
        self._events: Deque[Dict[str, Any]] = deque(maxlen=MAX_EVENTS)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    @property
    def current_cycle(self) -> Optional[asyncio.Task]:
        return self._current_cycle

    @property
    def context(self) -> Optional[SchedulerContext]:
        return self._context

    @property
    def recent_events(self) -> List[Dict[str, Any]]:
        return list(self._events)

    def _config(self) -> SchedulerConfig:
        return self._context.config if self._context is not None else SchedulerConfig()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, context: SchedulerContext) -> bool:
        """Validate *context* and start the cycle and health loops.

        Returns False, without starting, when a collaborator is missing.
        """
        if self._running:
            logger.warning("Scheduler is already running.")
            return True

        problems = self.diagnose(context)
        if problems:
            for problem in problems:
                logger.error("Cannot start scheduler: %s", problem)
            self._emit("error", "Start refused: " + "; ".join(problems))
            return False

        self._context = context
        self._running = True
        self._halt_requested = False
        self.metrics = HealthMetrics()
        self._request_log.clear()
        self._last_attempt_at = None
        self._backoff_until = 0.0
        self._cooldown_until = 0.0

        self._cycle_task = asyncio.create_task(self._cycle_loop())
        self._health_task = asyncio.create_task(self._health_loop())
        logger.info(
            "Scheduler started with %d items (cycle every %ss, health every %ss)",
            len(context.items),
            context.config.cycle_interval_seconds,
            context.config.health_check_interval_seconds,
        )
        self._emit("started", f"Scheduler started with {len(context.items)} items")
        return True

    async def stop(self) -> Dict[str, Any]:
        """Stop both loops and return the run's final counts.

        An in-flight cycle is not cancelled.  It finishes its current remote
        call and halts before the next phase; stop() waits for it to end.
        """
        if not self._running:
            return self._summary()

        self._running = False
        self._halt_requested = True
        logger.info("Stopping scheduler...")

        current = asyncio.current_task()
        for task in (self._cycle_task, self._health_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        cycle = self._current_cycle
        if cycle is not None and cycle is not current and not cycle.done():
            logger.info("Waiting for in-flight cycle (%s) to halt", self._current_item_id)
            await asyncio.wait([cycle])

        self._cycle_task = None
        self._health_task = None
        self._is_processing = False
        self._current_item_id = None

        summary = self._summary()
        logger.info(
            "Scheduler stopped: %d succeeded, %d failed, error rate %.1f%%",
            summary["success_count"], summary["failure_count"], summary["error_rate"] * 100,
        )
        self._emit("stopped", "Scheduler stopped")
        return summary

    def update_context(self, context: SchedulerContext) -> None:
        """Swap items, pipeline and config without restarting the loops."""
        self._context = context
        logger.info("Scheduler context updated (%d items)", len(context.items))

    def _summary(self) -> Dict[str, Any]:
        m = self.metrics
        return {
            "success_count": m.success_count,
            "failure_count": m.failure_count,
            "error_rate": m.error_rate,
            "avg_processing_ms": round(m.avg_processing_ms, 1),
            "uptime_seconds": round(time.time() - m.started_at, 1),
        }

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _cycle_loop(self) -> None:
        logger.info("Cycle loop started.")
        try:
            await asyncio.sleep(self._config().initial_delay_seconds)
            while self._running:
                try:
                    task = asyncio.create_task(self.run_cycle())
                    task.add_done_callback(self._task_done_callback)
                    self._current_cycle = task
                except Exception as exc:
                    logger.error("Error in cycle loop iteration: %s", exc)
                await asyncio.sleep(self._config().cycle_interval_seconds)
        except asyncio.CancelledError:
            logger.info("Cycle loop cancelled.")
            raise

    async def _health_loop(self) -> None:
        try:
            while self._running:
                await asyncio.sleep(self._config().health_check_interval_seconds)
                if not self._running:
                    break
                try:
                    await self.perform_health_check()
                except Exception as exc:
                    logger.error("Error in health check: %s", exc)
        except asyncio.CancelledError:
            logger.info("Health loop cancelled.")
            raise

    def _task_done_callback(self, task: asyncio.Task) -> None:
        """Log unexpected errors from background cycle tasks."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background cycle task raised unexpected error: %s", exc)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleOutcome:
        """Evaluate the gates in order and process at most one item."""
        if self._is_processing:
            return CycleOutcome(CycleStatus.BUSY, item_id=self._current_item_id)
        if self._context is None:
            return CycleOutcome(CycleStatus.IDLE)

        cfg = self._context.config
        now = time.time()
        if now < self._backoff_until:
            return CycleOutcome(CycleStatus.BACKOFF)
        if now < self._cooldown_until:
            return CycleOutcome(CycleStatus.COOLDOWN)
        if not self._within_active_hours(cfg):
            return CycleOutcome(CycleStatus.INACTIVE)
        if self.requests_last_hour(now) >= cfg.max_requests_per_hour:
            logger.debug("Hourly budget of %d exhausted", cfg.max_requests_per_hour)
            return CycleOutcome(CycleStatus.RATE_LIMITED)
        if (
            self._last_attempt_at is not None
            and now - self._last_attempt_at < cfg.min_interval_seconds
        ):
            return CycleOutcome(CycleStatus.THROTTLED)
        if cfg.max_per_day and self._daily_counts.get(date.today().isoformat(), 0) >= cfg.max_per_day:
            return CycleOutcome(CycleStatus.DAILY_LIMIT)

        candidate = self.select_candidate()
        if candidate is None:
            return CycleOutcome(CycleStatus.IDLE)
        return await self._process(candidate)

    async def _process(self, item: WorkItem) -> CycleOutcome:
        ctx = self._context
        now = time.time()
        self._is_processing = True
        self._current_item_id = item.id
        self._request_log.append(now)
        self._last_attempt_at = now
        today = date.today().isoformat()
        self._daily_counts = {today: self._daily_counts.get(today, 0) + 1}

        self._emit("processing", f"Processing '{item.title}'", item.id)
        start = time.monotonic()
        try:
            await ctx.pipeline.run_and_publish(
                item,
                link_targets=ctx.items,
                should_continue=lambda: not self._halt_requested,
            )
        except PipelineAborted as exc:
            duration_ms = (time.monotonic() - start) * 1000
            if self._halt_requested:
                logger.info("Processing of %s halted by stop()", item.id)
                outcome = CycleOutcome(CycleStatus.HALTED, item.id, str(exc), duration_ms)
            else:
                outcome = self._record_failure(item, exc, duration_ms)
        except Exception as exc:
            duration_ms = (time.monotonic() - start) * 1000
            outcome = self._record_failure(item, exc, duration_ms)
        else:
            duration_ms = (time.monotonic() - start) * 1000
            outcome = self._record_success(item, duration_ms)
        finally:
            self._is_processing = False
            self._current_item_id = None
            self.metrics.recompute_error_rate()

        self._append_history(item, outcome)
        return outcome

    def _record_success(self, item: WorkItem, duration_ms: float) -> CycleOutcome:
        m = self.metrics
        item.last_processed_at = now_iso()
        item.process_count += 1
        m.success_count += 1
        m.consecutive_failures = 0
        m.last_success_at = time.time()
        m.record_duration(duration_ms)
        if self._context is not None and self._context.item_store is not None:
            self._context.item_store.save(self._context.items)
        logger.info("Processed '%s' in %.0fms", item.title, duration_ms)
        self._emit("success", f"Published '{item.title}'", item.id)
        return CycleOutcome(CycleStatus.SUCCEEDED, item.id, None, duration_ms)

    def _record_failure(self, item: WorkItem, exc: BaseException, duration_ms: float) -> CycleOutcome:
        m = self.metrics
        cfg = self._config()
        m.failure_count += 1
        m.consecutive_failures += 1
        error = f"{type(exc).__name__}: {exc}"
        logger.error("Processing %s failed: %s", item.id, error)
        self._emit("failure", error, item.id)

        if m.consecutive_failures >= cfg.backoff_failure_threshold:
            backoff = min(m.consecutive_failures * BACKOFF_STEP_SECONDS, MAX_BACKOFF_SECONDS)
            self._backoff_until = time.time() + backoff
            logger.warning(
                "%d consecutive failures, backing off for %ds", m.consecutive_failures, backoff,
            )
            self._emit("backoff", f"Backing off for {backoff}s")
        return CycleOutcome(CycleStatus.FAILED, item.id, error, duration_ms)

    def requests_last_hour(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        while self._request_log and now - self._request_log[0] >= REQUEST_WINDOW_SECONDS:
            self._request_log.popleft()
        return len(self._request_log)

    @staticmethod
    def _within_active_hours(cfg: SchedulerConfig, hour: Optional[int] = None) -> bool:
        start, end = cfg.active_hours_start, cfg.active_hours_end
        if start is None or end is None or start == end:
            return True
        hour = datetime.now().hour if hour is None else hour
        if start < end:
            return start <= hour < end
        return hour >= start or hour < end

    # ------------------------------------------------------------------
    # Candidate selection
    # ------------------------------------------------------------------

    def is_eligible(self, item: WorkItem, cfg: SchedulerConfig, now: datetime) -> bool:
        url = (item.source_url or "").lower()
        if any(ex.lower() in url for ex in cfg.excluded_urls if ex):
            return False
        for category in cfg.excluded_categories:
            cat = category.lower()
            if f"/{cat}/" in url or (item.category or "").lower() == cat:
                return False
        if url and is_system_path(url):
            return False
        if item.id == self._current_item_id:
            return False
        if cfg.priority_only_mode and not (cfg.priority_override(item) or item.priority_tier):
            return False
        last = parse_iso(item.last_processed_at)
        if last is not None and (now - last).total_seconds() / 3600 < cfg.reprocess_after_hours:
            return False
        return True

    def score_item(self, item: WorkItem, now: Optional[datetime] = None) -> PageScore:
        """Weighted priority, recency, importance and urgency for *item*."""
        now = now or now_utc()
        cfg = self._config()
        url = item.source_url or ""
        title = (item.title or "").lower()
        last = parse_iso(item.last_processed_at)

        tier = cfg.priority_override(item) or item.priority_tier
        if not tier:
            priority = 0.0
        else:
            priority = float(PRIORITY_SCORES.get(str(tier).lower(), UNKNOWN_PRIORITY_SCORE))

        if last is None:
            recency = 100.0
        else:
            hours = (now - last).total_seconds() / 3600
            recency = max(0.0, min(100.0, (hours - RECENCY_FLOOR_HOURS) / RECENCY_SPAN_HOURS * 100))

        importance = 50.0
        lowered_url = url.lower()
        if lowered_url.endswith("/") or _HUB_PATH.search(lowered_url):
            importance += 30
        if any(m in title for m in _GUIDE_MARKERS):
            importance += 20
        depth = len(path_segments(url)) if url else 0
        if depth <= 2:
            importance += 15
        elif depth <= 3:
            importance += 5
        importance = min(importance, 100.0)

        urgency = 0.0
        if last is None:
            urgency += 50
        years = {str(now.year - 1), str(now.year), str(now.year + 1)}
        if any(y in title for y in years) or _FRESHNESS_WORDS.search(title):
            urgency += 25
        if any(m in title for m in _NEWS_MARKERS):
            urgency += 25
        if _DATED_URL.search(url):
            urgency += 20
        urgency = min(urgency, 100.0)

        factors = {
            "priority": priority,
            "recency": recency,
            "importance": importance,
            "urgency": urgency,
        }
        score = sum(factors[k] * w for k, w in SCORE_WEIGHTS.items())
        return PageScore(item=item, score=score, factors=factors)

    def rank_candidates(self, now: Optional[datetime] = None) -> List[PageScore]:
        """Eligible items, best first.  Ties keep input order."""
        if self._context is None:
            return []
        now = now or now_utc()
        cfg = self._context.config
        scored = [
            self.score_item(item, now)
            for item in self._context.items
            if self.is_eligible(item, cfg, now)
        ]
        return sorted(scored, key=lambda s: -s.score)

    def select_candidate(self, now: Optional[datetime] = None) -> Optional[WorkItem]:
        ranked = self.rank_candidates(now)
        return ranked[0].item if ranked else None

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @staticmethod
    def diagnose(context: Optional[SchedulerContext]) -> List[str]:
        """Problems that prevent the scheduler from doing useful work."""
        if context is None or context.pipeline is None:
            return ["No pipeline configured"]
        problems = []
        generator = context.pipeline.generator
        if generator is None or not getattr(generator, "is_configured", True):
            problems.append("Generation backend is not configured")
        publisher = context.pipeline.publisher
        if publisher is None or not getattr(publisher, "is_configured", True):
            problems.append("Publishing target is not configured (site URL and username required)")
        return problems

    async def perform_health_check(self) -> Dict[str, Any]:
        m = self.metrics
        cfg = self._config()
        m.last_health_check_at = now_iso()
        m.recompute_error_rate()

        pruned = 0
        if self._context is not None:
            pruned = self._context.pipeline.caches.prune_all()

        if m.consecutive_failures >= cfg.consecutive_failure_threshold:
            logger.warning(
                "%d consecutive failures, cooling down for %ss",
                m.consecutive_failures, cfg.cooldown_seconds,
            )
            m.consecutive_failures = 0
            self._cooldown_until = time.time() + cfg.cooldown_seconds
            self._emit("cooldown", f"Cooling down for {cfg.cooldown_seconds:g}s")

        problems: List[str] = []
        since = m.last_success_at or m.started_at
        if self._running and time.time() - since > cfg.stall_window_seconds:
            logger.warning("No success for %.0fs, running diagnostics", time.time() - since)
            problems = self.diagnose(self._context)
            if problems:
                self._emit("error", "Diagnostics failed: " + "; ".join(problems))
                await self.stop()

        return {
            "error_rate": m.error_rate,
            "consecutive_failures": m.consecutive_failures,
            "pruned_cache_entries": pruned,
            "problems": problems,
            "running": self._running,
        }

    def status(self) -> Dict[str, Any]:
        now = time.time()
        return {
            "running": self._running,
            "processing": self._current_item_id,
            "metrics": self.metrics.to_dict(),
            "requests_last_hour": self.requests_last_hour(now),
            "backoff_remaining_seconds": round(max(0.0, self._backoff_until - now), 1),
            "cooldown_remaining_seconds": round(max(0.0, self._cooldown_until - now), 1),
            "items": len(self._context.items) if self._context else 0,
        }

    # ------------------------------------------------------------------
    # Events & history
    # ------------------------------------------------------------------

    def _emit(self, kind: str, message: str, item_id: Optional[str] = None) -> None:
        event = {"timestamp": now_iso(), "kind": kind, "message": message, "item_id": item_id}
        self._events.append(event)
        if self.on_event is not None:
            try:
                self.on_event(event)
            except Exception as exc:
                logger.warning("on_event callback raised: %s", exc)

    def _append_history(self, item: WorkItem, outcome: CycleOutcome) -> None:
        history = load_json(self.history_file, default=[])
        if not isinstance(history, list):
            history = []
        entry = outcome.to_dict()
        entry.update({"title": item.title, "timestamp": now_iso()})
        history.append(entry)
        save_json(self.history_file, history[-MAX_HISTORY:])

    def load_history(self) -> List[Dict[str, Any]]:
        history = load_json(self.history_file, default=[])
        return history if isinstance(history, list) else []
