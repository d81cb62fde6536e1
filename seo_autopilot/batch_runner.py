"""
Batch Runner -- one-shot sequential processing of a list of work items

Items go through the pipeline strictly one at a time; a failure is recorded
on that item's status and the batch moves on.  With ``publish=True`` each
document is pushed to the publishing target as soon as it is generated.

Usage:
    runner = BatchRunner(pipeline, publish=True)
    report = await runner.run(items, on_progress=print_status)
    print(report.summary())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from seo_autopilot.documents import GeneratedDocument
from seo_autopilot.errors import PhaseFailed, PublishRejected
from seo_autopilot.pipeline import GenerationPipeline
from seo_autopilot.work_items import WorkItem

logger = logging.getLogger("batch_runner")

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

MAX_ERROR_LENGTH = 100


class ItemState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PUBLISHED = "published"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass
class ItemStatus:
    item_id: str
    title: str
    status: ItemState = ItemState.PENDING
    phase: Optional[str] = None
    error: Optional[str] = None
    document: Optional[GeneratedDocument] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "title": self.title,
            "status": self.status.value,
            "phase": self.phase,
            "error": self.error,
            "word_count": self.document.word_count if self.document else None,
        }


@dataclass
class BatchReport:
    statuses: List[ItemStatus] = field(default_factory=list)

    def count(self, state: ItemState) -> int:
        return sum(1 for s in self.statuses if s.status == state)

    @property
    def succeeded(self) -> int:
        return self.count(ItemState.COMPLETED) + self.count(ItemState.PUBLISHED)

    @property
    def failed(self) -> int:
        return self.count(ItemState.FAILED) + self.count(ItemState.REJECTED)

    def summary(self) -> Dict[str, int]:
        return {
            "total": len(self.statuses),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "published": self.count(ItemState.PUBLISHED),
            "rejected": self.count(ItemState.REJECTED),
        }


def _short(exc: BaseException) -> str:
    return str(exc)[:MAX_ERROR_LENGTH]


class BatchRunner:
    """Runs a pipeline over many items, one after another."""

    def __init__(self, pipeline: GenerationPipeline, publish: bool = False) -> None:
        self.pipeline = pipeline
        self.publish = publish

    async def run(
        self,
        items: Sequence[WorkItem],
        on_progress: Optional[Callable[[ItemStatus], None]] = None,
    ) -> BatchReport:
        report = BatchReport(statuses=[ItemStatus(item.id, item.title) for item in items])
        logger.info("Batch started: %d items (publish=%s)", len(items), self.publish)

        for item, status in zip(items, report.statuses):
            status.status = ItemState.RUNNING
            if on_progress:
                on_progress(status)
            await self._run_one(item, status, link_targets=items)
            if on_progress:
                on_progress(status)

        summary = report.summary()
        logger.info(
            "Batch finished: %d/%d succeeded, %d failed",
            summary["succeeded"], summary["total"], summary["failed"],
        )
        return report

    async def _run_one(self, item: WorkItem, status: ItemStatus, link_targets: Sequence[WorkItem]) -> None:
        try:
            if self.publish:
                document, _ = await self.pipeline.run_and_publish(item, link_targets=link_targets)
                status.status = ItemState.PUBLISHED
            else:
                document = await self.pipeline.run(item, link_targets=link_targets)
                status.status = ItemState.COMPLETED
            status.document = document
        except PublishRejected as exc:
            status.status = ItemState.REJECTED
            status.error = _short(exc.reason)
        except PhaseFailed as exc:
            status.status = ItemState.FAILED
            status.phase = exc.phase
            status.error = _short(exc.cause)
        except Exception as exc:
            status.status = ItemState.FAILED
            status.error = _short(exc)
        if status.error:
            logger.warning("Item %s %s: %s", item.id, status.status.value, status.error)

    async def resume_recoverable(
        self,
        items: Sequence[WorkItem],
        on_progress: Optional[Callable[[ItemStatus], None]] = None,
    ) -> BatchReport:
        """Re-run only the items that have a recoverable checkpoint."""
        recoverable = {cp.item_id for cp in self.pipeline.store.recoverable()}
        pending = [item for item in items if item.id in recoverable]
        logger.info("Resuming %d of %d items with recoverable checkpoints", len(pending), len(items))
        return await self.run(pending, on_progress=on_progress)
