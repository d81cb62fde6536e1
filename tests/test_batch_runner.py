"""Test batch_runner -- SEO Autopilot."""
from __future__ import annotations

import pytest

from conftest import FakeGenerator, FakePublisher
from seo_autopilot.batch_runner import MAX_ERROR_LENGTH, BatchRunner, ItemState, ItemStatus
from seo_autopilot.documents import PublishResult
from seo_autopilot.errors import RemoteError
from seo_autopilot.pipeline import GenerationPipeline, PipelineConfig

FAST = PipelineConfig(phase_retry_delays=(0.0,), retry_base_delay=0.0)


class FailsFor(FakeGenerator):
    """Rejects draft prompts that mention *title*."""

    def __init__(self, title, message="bad request"):
        super().__init__()
        self.title = title
        self.message = message

    async def generate(self, prompt, system=None, max_tokens=None):
        if self.title in prompt and "JSON array" not in prompt:
            self.prompts.append(prompt)
            raise RemoteError(self.message, status_code=400)
        return await super().generate(prompt, system, max_tokens)


def _runner(generator=None, publisher=None, publish=False):
    pipeline = GenerationPipeline(
        generator=generator or FakeGenerator(), publisher=publisher, config=FAST,
    )
    return BatchRunner(pipeline, publish=publish)


class TestBatchRunner:

    @pytest.mark.asyncio
    async def test_runs_all_items(self, sample_items):
        report = await _runner().run(sample_items)
        assert [s.status for s in report.statuses] == [ItemState.COMPLETED] * 3
        assert report.summary() == {
            "total": 3, "succeeded": 3, "failed": 0, "published": 0, "rejected": 0,
        }
        assert all(s.document is not None for s in report.statuses)

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_batch(self, sample_items):
        report = await _runner(FailsFor("Hiking Boots Explained")).run(sample_items)
        states = [s.status for s in report.statuses]
        assert states == [ItemState.COMPLETED, ItemState.FAILED, ItemState.COMPLETED]
        failed = report.statuses[1]
        assert failed.phase == "content"
        assert failed.error == "bad request"
        assert report.failed == 1

    @pytest.mark.asyncio
    async def test_error_is_truncated(self, sample_items):
        generator = FailsFor("Running Socks", message="x" * 300)
        report = await _runner(generator).run(sample_items)
        assert len(report.statuses[2].error) == MAX_ERROR_LENGTH

    @pytest.mark.asyncio
    async def test_progress_callback(self, sample_items):
        seen = []
        await _runner().run(sample_items, on_progress=lambda s: seen.append((s.item_id, s.status)))
        assert seen[0] == ("trail-shoes", ItemState.RUNNING)
        assert seen[1] == ("trail-shoes", ItemState.COMPLETED)
        assert len(seen) == 6

    @pytest.mark.asyncio
    async def test_publish_mode(self, sample_items):
        publisher = FakePublisher([PublishResult(success=True, post_id=1),
                                   PublishResult(success=False, reason="duplicate slug")])
        report = await _runner(publisher=publisher, publish=True).run(sample_items)
        states = [s.status for s in report.statuses]
        assert states == [ItemState.PUBLISHED, ItemState.REJECTED, ItemState.PUBLISHED]
        assert report.statuses[1].error == "duplicate slug"
        assert report.summary()["rejected"] == 1

    @pytest.mark.asyncio
    async def test_resume_recoverable(self, sample_items):
        await _runner(FailsFor("Hiking Boots Explained")).run(sample_items)

        generator = FakeGenerator()
        report = await _runner(generator).resume_recoverable(sample_items)
        assert [s.item_id for s in report.statuses] == ["hiking"]
        assert report.statuses[0].status == ItemState.COMPLETED
        assert report.statuses[0].document.phases_run[0] == "content"
        assert not any("JSON array" in p for p in generator.prompts)

    def test_status_to_dict(self):
        status = ItemStatus("a", "A", status=ItemState.FAILED, phase="links", error="boom")
        assert status.to_dict()["status"] == "failed"
        assert status.to_dict()["word_count"] is None
