"""Test scheduler -- SEO Autopilot."""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeGenerator, FakePublisher
from seo_autopilot import scheduler as scheduler_mod
from seo_autopilot.documents import PublishResult
from seo_autopilot.errors import RemoteError
from seo_autopilot.pipeline import GenerationPipeline, PipelineConfig
from seo_autopilot.scheduler import (
    AutonomousScheduler,
    CycleStatus,
    HealthMetrics,
    SchedulerConfig,
    SchedulerContext,
)
from seo_autopilot.work_items import WorkItem, WorkItemStore

FAST = PipelineConfig(phase_retry_delays=(0.0,), retry_base_delay=0.0)
NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class SlowGenerator(FakeGenerator):
    async def generate(self, prompt, system=None, max_tokens=None):
        await asyncio.sleep(0.05)
        return await super().generate(prompt, system, max_tokens)


def _context(items, generator=None, publisher=None, **config):
    config.setdefault("min_interval_seconds", 0)
    pipeline = GenerationPipeline(
        generator=generator if generator is not None else FakeGenerator(),
        publisher=publisher if publisher is not None else FakePublisher(),
        config=FAST,
    )
    return SchedulerContext(pipeline=pipeline, items=items, config=SchedulerConfig(**config))


def _scheduler(context=None, **kwargs):
    scheduler = AutonomousScheduler(**kwargs)
    if context is not None:
        scheduler.update_context(context)
    return scheduler


def _iso(dt):
    return dt.isoformat()


# ===================================================================
# Scoring & selection
# ===================================================================

class TestScoring:

    def test_never_processed_beats_recently_processed(self):
        s = _scheduler(_context([]))
        fresh = WorkItem(id="a", title="Trail Shoes", source_url="https://x.com/a/")
        stale = WorkItem(id="b", title="Trail Shoes", source_url="https://x.com/b/",
                         last_processed_at=_iso(NOW - timedelta(hours=2)))
        assert s.score_item(fresh, NOW).score > s.score_item(stale, NOW).score
        assert s.score_item(fresh, NOW).factors["recency"] == 100
        assert s.score_item(stale, NOW).factors["recency"] == 0

    def test_recency_scales_after_floor(self):
        s = _scheduler(_context([]))
        item = WorkItem(id="a", title="T", last_processed_at=_iso(NOW - timedelta(hours=24 + 348)))
        assert s.score_item(item, NOW).factors["recency"] == pytest.approx(50.0)

    def test_priority_tiers(self):
        s = _scheduler(_context([]))
        assert s.score_item(WorkItem(id="a", title="T", priority_tier="high"), NOW).factors["priority"] == 80
        assert s.score_item(WorkItem(id="a", title="T", priority_tier="weird"), NOW).factors["priority"] == 100
        assert s.score_item(WorkItem(id="a", title="T"), NOW).factors["priority"] == 0

    def test_configured_priority_overrides_tier(self):
        item = WorkItem(id="a", title="T", source_url="https://x.com/a/", priority_tier="critical")
        s = _scheduler(_context([], priority_urls=[{"url": "https://x.com/a", "priority": "low"}]))
        assert s.score_item(item, NOW).factors["priority"] == 30

    def test_importance_capped(self):
        s = _scheduler(_context([]))
        item = WorkItem(id="a", title="The Complete Guide", source_url="https://x.com/services/")
        assert s.score_item(item, NOW).factors["importance"] == 100

    def test_hub_bonus_needs_whole_segment(self):
        s = _scheduler(_context([]))

        def importance(url):
            return s.score_item(WorkItem(id="a", title="T", source_url=url), NOW).factors["importance"]

        assert importance("https://x.com/about") == 95
        assert importance("https://x.com/homemade-bread") == 65
        assert importance("https://x.com/homemade-bread/") == 95
        assert importance("https://x.com/contact-lens-guide/2023/x") == 55

    def test_deep_url_importance(self):
        s = _scheduler(_context([]))
        item = WorkItem(id="a", title="T", source_url="https://x.com/a/b/c/d/e")
        assert s.score_item(item, NOW).factors["importance"] == 50

    def test_urgency_signals(self):
        s = _scheduler(_context([]))
        item = WorkItem(id="a", title=f"Best Shoes {NOW.year}",
                        source_url="https://x.com/2024/05/shoes")
        # never processed 50 + year 25 + dated url 20
        assert s.score_item(item, NOW).factors["urgency"] == 95

    def test_weighted_total(self):
        s = _scheduler(_context([]))
        item = WorkItem(id="a", title="T", source_url="https://x.com/a/", priority_tier="medium")
        score = s.score_item(item, NOW)
        # priority 50, recency 100, importance 95, urgency 50
        assert score.score == pytest.approx(50 * 0.4 + 100 * 0.25 + 95 * 0.2 + 50 * 0.15)

    def test_ties_keep_input_order(self):
        items = [WorkItem(id=str(i), title="Same", source_url=f"https://x.com/p{i}/") for i in range(4)]
        s = _scheduler(_context(items))
        assert [p.item.id for p in s.rank_candidates(NOW)] == ["0", "1", "2", "3"]


class TestEligibility:

    def test_exclusions(self):
        items = [
            WorkItem(id="ok", title="Ok", source_url="https://x.com/ok/"),
            WorkItem(id="url", title="Url", source_url="https://x.com/private/page/"),
            WorkItem(id="cat", title="Cat", source_url="https://x.com/reviews/shoe/"),
            WorkItem(id="catfield", title="Cat", source_url="https://x.com/c/", category="Reviews"),
            WorkItem(id="sys", title="Sys", source_url="https://x.com/wp-admin/"),
            WorkItem(id="recent", title="Recent", source_url="https://x.com/r/",
                     last_processed_at=_iso(NOW - timedelta(hours=3))),
        ]
        s = _scheduler(_context(items, excluded_urls=["/private/"], excluded_categories=["reviews"]))
        assert [p.item.id for p in s.rank_candidates(NOW)] == ["ok"]

    def test_reprocess_after_window(self):
        item = WorkItem(id="old", title="Old", source_url="https://x.com/old/",
                        last_processed_at=_iso(NOW - timedelta(hours=30)))
        s = _scheduler(_context([item]))
        assert s.select_candidate(NOW) is item

    def test_priority_only_mode(self):
        items = [
            WorkItem(id="plain", title="Plain", source_url="https://x.com/p/"),
            WorkItem(id="tiered", title="Tiered", source_url="https://x.com/t/", priority_tier="low"),
            WorkItem(id="listed", title="Listed", source_url="https://x.com/l/"),
        ]
        s = _scheduler(_context(
            items, priority_only_mode=True,
            priority_urls=[{"url": "https://x.com/l/", "priority": "high"}],
        ))
        assert {p.item.id for p in s.rank_candidates(NOW)} == {"tiered", "listed"}

    def test_active_hours(self):
        overnight = SchedulerConfig(active_hours_start=22, active_hours_end=6)
        assert AutonomousScheduler._within_active_hours(overnight, 23)
        assert AutonomousScheduler._within_active_hours(overnight, 3)
        assert not AutonomousScheduler._within_active_hours(overnight, 12)
        daytime = SchedulerConfig(active_hours_start=9, active_hours_end=17)
        assert AutonomousScheduler._within_active_hours(daytime, 9)
        assert not AutonomousScheduler._within_active_hours(daytime, 17)
        same = SchedulerConfig(active_hours_start=5, active_hours_end=5)
        assert AutonomousScheduler._within_active_hours(same, 0)


# ===================================================================
# Cycle gates
# ===================================================================

class TestRunCycle:

    @pytest.mark.asyncio
    async def test_processes_best_candidate(self, sample_items, tmp_path):
        store = WorkItemStore(tmp_path / "items.json")
        ctx = _context(sample_items)
        ctx.item_store = store
        s = _scheduler(ctx)

        outcome = await s.run_cycle()
        assert outcome.status == CycleStatus.SUCCEEDED
        processed = next(i for i in sample_items if i.id == outcome.item_id)
        assert processed.process_count == 1
        assert processed.last_processed_at is not None
        assert s.metrics.success_count == 1
        assert s.metrics.last_success_at is not None
        assert [i.process_count for i in store.load() if i.id == processed.id] == [1]

        history = s.load_history()
        assert len(history) == 1
        assert history[0]["status"] == "succeeded"

    @pytest.mark.asyncio
    async def test_idle_without_context_or_candidates(self):
        assert (await AutonomousScheduler().run_cycle()).status == CycleStatus.IDLE
        s = _scheduler(_context([WorkItem(id="sys", title="S", source_url="https://x.com/feed/")]))
        assert (await s.run_cycle()).status == CycleStatus.IDLE

    @pytest.mark.asyncio
    async def test_rate_limited(self, sample_items):
        s = _scheduler(_context(sample_items, max_requests_per_hour=2))
        assert (await s.run_cycle()).status == CycleStatus.SUCCEEDED
        assert (await s.run_cycle()).status == CycleStatus.SUCCEEDED
        assert (await s.run_cycle()).status == CycleStatus.RATE_LIMITED
        assert s.requests_last_hour() == 2

    @pytest.mark.asyncio
    async def test_throttled(self, sample_items):
        s = _scheduler(_context(sample_items, min_interval_seconds=60))
        assert (await s.run_cycle()).status == CycleStatus.SUCCEEDED
        assert (await s.run_cycle()).status == CycleStatus.THROTTLED

    @pytest.mark.asyncio
    async def test_daily_limit(self, sample_items):
        s = _scheduler(_context(sample_items, max_per_day=1))
        assert (await s.run_cycle()).status == CycleStatus.SUCCEEDED
        assert (await s.run_cycle()).status == CycleStatus.DAILY_LIMIT

    @pytest.mark.asyncio
    async def test_inactive_outside_active_hours(self, sample_items):
        hour = datetime.now().hour
        s = _scheduler(_context(
            sample_items, active_hours_start=(hour + 2) % 24, active_hours_end=(hour + 4) % 24,
        ))
        assert (await s.run_cycle()).status == CycleStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_single_flight(self, sample_items):
        s = _scheduler(_context(sample_items, generator=SlowGenerator()))
        first, second = await asyncio.gather(s.run_cycle(), s.run_cycle())
        assert first.status == CycleStatus.SUCCEEDED
        assert second.status == CycleStatus.BUSY
        assert second.item_id == first.item_id

    @pytest.mark.asyncio
    async def test_backoff_after_consecutive_failures(self, sample_items):
        generator = FakeGenerator(fail_times=100, error=RemoteError("bad request", status_code=400))
        s = _scheduler(_context(sample_items, generator=generator, backoff_failure_threshold=3))
        for _ in range(3):
            outcome = await s.run_cycle()
            assert outcome.status == CycleStatus.FAILED
            assert "PhaseFailed" in outcome.error
        assert s.metrics.consecutive_failures == 3
        assert s.metrics.error_rate == 1.0
        assert s.status()["backoff_remaining_seconds"] > 170
        assert (await s.run_cycle()).status == CycleStatus.BACKOFF
        assert all(i.process_count == 0 for i in sample_items)

    @pytest.mark.asyncio
    async def test_publish_rejection_counts_as_failure(self, sample_items):
        publisher = FakePublisher([PublishResult(success=False, reason="nope")])
        s = _scheduler(_context(sample_items, publisher=publisher))
        outcome = await s.run_cycle()
        assert outcome.status == CycleStatus.FAILED
        assert "nope" in outcome.error
        assert s.metrics.failure_count == 1

    @pytest.mark.asyncio
    async def test_cooldown_after_health_check(self, sample_items):
        s = _scheduler(_context(sample_items, consecutive_failure_threshold=5))
        s.metrics.consecutive_failures = 5
        report = await s.perform_health_check()
        assert report["consecutive_failures"] == 0
        assert (await s.run_cycle()).status == CycleStatus.COOLDOWN

    @pytest.mark.asyncio
    async def test_history_is_capped(self, sample_items):
        s = _scheduler(_context(sample_items))
        s.history_file.parent.mkdir(parents=True, exist_ok=True)
        s.history_file.write_text(json.dumps([{"status": "old"}] * scheduler_mod.MAX_HISTORY))
        await s.run_cycle()
        history = s.load_history()
        assert len(history) == scheduler_mod.MAX_HISTORY
        assert history[-1]["status"] == "succeeded"


# ===================================================================
# Lifecycle
# ===================================================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_refused_without_publisher(self, sample_items):
        ctx = _context(sample_items)
        ctx.pipeline.publisher = None
        events = []
        s = AutonomousScheduler(on_event=events.append)
        assert await s.start(ctx) is False
        assert not s.is_running
        assert events[-1]["kind"] == "error"

    @pytest.mark.asyncio
    async def test_start_and_stop(self, sample_items):
        s = AutonomousScheduler()
        ctx = _context(sample_items, initial_delay_seconds=0, cycle_interval_seconds=0.02)
        assert await s.start(ctx) is True
        assert s.is_running
        for _ in range(100):
            if s.metrics.success_count >= 1:
                break
            await asyncio.sleep(0.02)
        summary = await s.stop()
        assert not s.is_running
        assert summary["success_count"] >= 1
        assert summary["failure_count"] == 0
        await asyncio.sleep(0.1)

    @pytest.mark.asyncio
    async def test_stop_halts_in_flight_item(self, sample_items):
        s = AutonomousScheduler()
        ctx = _context(sample_items, generator=SlowGenerator(), initial_delay_seconds=0,
                       cycle_interval_seconds=10)
        await s.start(ctx)
        for _ in range(100):
            if s.is_processing:
                break
            await asyncio.sleep(0.01)
        assert s.is_processing
        await s.stop()
        outcome = await s._current_cycle
        assert outcome.status == CycleStatus.HALTED
        assert s.metrics.failure_count == 0
        checkpoint = ctx.pipeline.store.load(outcome.item_id)
        assert checkpoint is not None and checkpoint.current_phase >= 1

    @pytest.mark.asyncio
    async def test_restart_after_stop_never_overlaps_items(self, sample_items):
        class CountingGenerator(SlowGenerator):
            def __init__(self):
                super().__init__()
                self.active = 0
                self.peak = 0

            async def generate(self, prompt, system=None, max_tokens=None):
                self.active += 1
                self.peak = max(self.peak, self.active)
                try:
                    return await super().generate(prompt, system, max_tokens)
                finally:
                    self.active -= 1

        generator = CountingGenerator()
        s = AutonomousScheduler()
        ctx = _context(sample_items, generator=generator, initial_delay_seconds=0,
                       cycle_interval_seconds=10)
        await s.start(ctx)
        for _ in range(100):
            if s.is_processing:
                break
            await asyncio.sleep(0.01)
        first = s.current_cycle

        await s.stop()
        assert first.done()
        assert first.result().status == CycleStatus.HALTED
        assert not generator.active

        await s.start(ctx)
        second = None
        for _ in range(200):
            second = s.current_cycle
            if second is not first and second is not None and second.done():
                break
            await asyncio.sleep(0.02)
        await s.stop()

        assert second.result().status == CycleStatus.SUCCEEDED
        assert second.result().item_id == first.result().item_id
        assert generator.peak == 1
        assert len(ctx.pipeline.publisher.published) == 1


    @pytest.mark.asyncio
    async def test_stall_with_broken_collaborator_stops(self, sample_items):
        s = AutonomousScheduler()
        ctx = _context(sample_items, initial_delay_seconds=100, stall_window_seconds=60)
        await s.start(ctx)
        s.metrics.started_at -= 120
        ctx.pipeline.publisher.is_configured = False
        report = await s.perform_health_check()
        assert report["problems"]
        assert report["running"] is False
        assert not s.is_running

    @pytest.mark.asyncio
    async def test_stall_with_healthy_collaborators_keeps_running(self, sample_items):
        s = AutonomousScheduler()
        await s.start(_context(sample_items, initial_delay_seconds=100, stall_window_seconds=60))
        s.metrics.started_at -= 120
        report = await s.perform_health_check()
        assert report["problems"] == []
        assert s.is_running
        await s.stop()

    @pytest.mark.asyncio
    async def test_failing_event_callback_is_contained(self, sample_items):
        def _boom(event):
            raise RuntimeError("listener broke")

        s = AutonomousScheduler(on_event=_boom)
        s.update_context(_context(sample_items))
        assert (await s.run_cycle()).status == CycleStatus.SUCCEEDED
        assert any(e["kind"] == "success" for e in s.recent_events)


class TestHealthMetrics:

    def test_moving_average(self):
        m = HealthMetrics()
        m.record_duration(100)
        assert m.avg_processing_ms == 100
        m.record_duration(200)
        assert m.avg_processing_ms == pytest.approx(120)

    def test_error_rate(self):
        m = HealthMetrics(success_count=3, failure_count=1)
        assert m.recompute_error_rate() == 0.25
        assert HealthMetrics().recompute_error_rate() == 0.0
