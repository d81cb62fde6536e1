"""
Checkpoint Store -- durable per-item pipeline progress

A Checkpoint records which generation phases an item has completed and the
data each produced, so a crashed or failed run resumes from the first
incomplete phase instead of paying for research and drafting again.

Checkpoints are immutable snapshots: every mutation returns a new value and
the store writes it atomically (temp file + os.replace).  Phases complete
strictly in order, so ``current_phase`` always equals the number of
completed phases.

Data storage: data/checkpoints/checkpoints.json (keyed by item id)

Usage:
    from seo_autopilot.checkpoint_store import Checkpoint, CheckpointStore, GenerationPhase

    store = CheckpointStore()
    cp = store.load(item.id) or Checkpoint.new(item.id, item.title)
    cp = cp.complete(GenerationPhase.RESEARCH, {"serp": results})
    store.save(cp)

CLI:
    python -m seo_autopilot.cli checkpoints list
    python -m seo_autopilot.cli checkpoints show --item-id ID
    python -m seo_autopilot.cli checkpoints clear --item-id ID
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from seo_autopilot import config
from seo_autopilot.persistence import load_json, now_iso, now_utc, parse_iso, save_json

logger = logging.getLogger("checkpoint_store")

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

CHECKPOINT_DIR = config.DATA_DIR / "checkpoints"
CHECKPOINTS_FILE = CHECKPOINT_DIR / "checkpoints.json"

RECOVERABLE_MAX_AGE = timedelta(hours=24)


class GenerationPhase(str, Enum):
    """Ordered phases of the generation pipeline."""
    RESEARCH = "research"
    CONTENT = "content"
    NEURON = "neuron"
    REFERENCES = "references"
    LINKS = "links"
    MEDIA = "media"
    POLISH = "polish"

    @property
    def position(self) -> int:
        return PHASE_ORDER.index(self)

    @property
    def label(self) -> str:
        return PHASE_LABELS[self]


# Canonical execution order
PHASE_ORDER: List[GenerationPhase] = list(GenerationPhase)

PHASE_LABELS: Dict[GenerationPhase, str] = {
    GenerationPhase.RESEARCH: "Research & Keywords",
    GenerationPhase.CONTENT: "Content Generation",
    GenerationPhase.NEURON: "Term Optimization",
    GenerationPhase.REFERENCES: "Reference Collection",
    GenerationPhase.LINKS: "Internal Linking",
    GenerationPhase.MEDIA: "Media Integration",
    GenerationPhase.POLISH: "Final Polish & Schema",
}


# ---------------------------------------------------------------------------
# Data Classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PhaseRecord:
    """Progress of one phase inside a checkpoint."""
    phase: GenerationPhase
    completed: bool = False
    attempts: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "completed": self.completed,
            "attempts": self.attempts,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PhaseRecord:
        return cls(
            phase=GenerationPhase(data["phase"]),
            completed=bool(data.get("completed", False)),
            attempts=int(data.get("attempts", 0)),
            error=data.get("error"),
        )


def _fresh_phases() -> Tuple[PhaseRecord, ...]:
    return tuple(PhaseRecord(phase=p) for p in PHASE_ORDER)


@dataclass(frozen=True)
class Checkpoint:
    """Immutable snapshot of one item's pipeline progress."""
    item_id: str
    item_title: str = ""
    started_at: str = field(default_factory=now_iso)
    last_updated: str = field(default_factory=now_iso)
    current_phase: int = 0
    phases: Tuple[PhaseRecord, ...] = field(default_factory=_fresh_phases)
    collected_data: Dict[str, Any] = field(default_factory=dict)
    partial_content: str = ""

    @classmethod
    def new(cls, item_id: str, item_title: str = "") -> Checkpoint:
        return cls(item_id=item_id, item_title=item_title)

    # -- Queries --------------------------------------------------------

    def record(self, phase: GenerationPhase) -> PhaseRecord:
        return self.phases[phase.position]

    def is_completed(self, phase: GenerationPhase) -> bool:
        return self.record(phase).completed

    def data_for(self, phase: GenerationPhase, default: Any = None) -> Any:
        return self.collected_data.get(phase.value, default)

    @property
    def is_finished(self) -> bool:
        return self.current_phase >= len(PHASE_ORDER)

    @property
    def next_phase(self) -> Optional[GenerationPhase]:
        if self.is_finished:
            return None
        return PHASE_ORDER[self.current_phase]

    @property
    def progress(self) -> int:
        """Percentage of phases completed, rounded."""
        done = sum(1 for r in self.phases if r.completed)
        return round(done / len(self.phases) * 100)

    def age_seconds(self) -> float:
        updated = parse_iso(self.last_updated)
        if updated is None:
            return float("inf")
        return (now_utc() - updated).total_seconds()

    def status_text(self) -> str:
        """One-line progress summary for logs and the CLI."""
        if self.progress == 100:
            return "Complete"
        current = self.phases[self.current_phase]
        if current.error:
            return f"Paused at {current.phase.label}: {current.error}"
        last = self.phases[self.current_phase - 1].phase.label if self.current_phase else "Starting"
        return f"{self.progress}% - Last: {last}"

    # -- Transitions (each returns a new snapshot) ----------------------

    def _with_record(self, record: PhaseRecord, **changes: Any) -> Checkpoint:
        phases = list(self.phases)
        phases[record.phase.position] = record
        return replace(self, phases=tuple(phases), last_updated=now_iso(), **changes)

    def record_attempt(self, phase: GenerationPhase) -> Checkpoint:
        rec = self.record(phase)
        return self._with_record(replace(rec, attempts=rec.attempts + 1))

    def complete(
        self,
        phase: GenerationPhase,
        data: Any,
        partial_content: Optional[str] = None,
    ) -> Checkpoint:
        """Mark *phase* completed with its output.

        Raises:
            ValueError: *phase* is not the next phase in order.
        """
        if phase.position != self.current_phase:
            raise ValueError(
                f"Cannot complete phase '{phase.value}' for {self.item_id}: "
                f"next phase is index {self.current_phase}"
            )
        collected = dict(self.collected_data)
        collected[phase.value] = data
        changes: Dict[str, Any] = {
            "collected_data": collected,
            "current_phase": self.current_phase + 1,
        }
        if partial_content is not None:
            changes["partial_content"] = partial_content
        rec = replace(self.record(phase), completed=True, error=None)
        return self._with_record(rec, **changes)

    def fail(self, phase: GenerationPhase, error: str) -> Checkpoint:
        rec = replace(self.record(phase), error=error[:500])
        return self._with_record(rec)

    # -- Serialization --------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "item_title": self.item_title,
            "started_at": self.started_at,
            "last_updated": self.last_updated,
            "current_phase": self.current_phase,
            "phases": [r.to_dict() for r in self.phases],
            "collected_data": dict(self.collected_data),
            "partial_content": self.partial_content,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Checkpoint:
        """Rebuild a checkpoint, normalising completion to an ordered prefix."""
        by_phase: Dict[GenerationPhase, PhaseRecord] = {}
        for raw in data.get("phases", []):
            try:
                rec = PhaseRecord.from_dict(raw)
            except (KeyError, ValueError, TypeError):
                continue
            by_phase[rec.phase] = rec

        records: List[PhaseRecord] = []
        prefix_intact = True
        for phase in PHASE_ORDER:
            rec = by_phase.get(phase, PhaseRecord(phase=phase))
            if not prefix_intact and rec.completed:
                rec = replace(rec, completed=False)
            if not rec.completed:
                prefix_intact = False
            records.append(rec)
        current = sum(1 for r in records if r.completed)

        collected = data.get("collected_data") or {}
        completed_keys = {r.phase.value for r in records if r.completed}
        collected = {k: v for k, v in collected.items() if k in completed_keys}

        if current != data.get("current_phase", current):
            logger.warning(
                "Checkpoint %s had current_phase=%s, normalised to %d",
                data.get("item_id"), data.get("current_phase"), current,
            )

        return cls(
            item_id=str(data.get("item_id", "")),
            item_title=data.get("item_title", ""),
            started_at=data.get("started_at") or now_iso(),
            last_updated=data.get("last_updated") or now_iso(),
            current_phase=current,
            phases=tuple(records),
            collected_data=collected,
            partial_content=data.get("partial_content", "") or "",
        )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class CheckpointStore:
    """JSON-file persistence for checkpoints, keyed by item id.

    The file is re-read on every call so a fresh process (or the CLI) always
    sees what the last writer saved.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else CHECKPOINTS_FILE

    def _read_all(self) -> Dict[str, Dict[str, Any]]:
        raw = load_json(self.path, default={})
        return raw if isinstance(raw, dict) else {}

    def save(self, checkpoint: Checkpoint) -> None:
        data = self._read_all()
        data[checkpoint.item_id] = checkpoint.to_dict()
        save_json(self.path, data)
        logger.debug(
            "Saved checkpoint for %s at phase %d/%d",
            checkpoint.item_id, checkpoint.current_phase, len(PHASE_ORDER),
        )

    def load(self, item_id: str) -> Optional[Checkpoint]:
        raw = self._read_all().get(item_id)
        if not raw:
            return None
        try:
            return Checkpoint.from_dict(raw)
        except (KeyError, ValueError, TypeError) as exc:
            logger.warning("Discarding unreadable checkpoint for %s: %s", item_id, exc)
            return None

    def clear(self, item_id: str) -> bool:
        data = self._read_all()
        if item_id not in data:
            return False
        del data[item_id]
        save_json(self.path, data)
        logger.info("Cleared checkpoint for %s", item_id)
        return True

    def clear_all(self) -> int:
        count = len(self._read_all())
        save_json(self.path, {})
        logger.info("Cleared all %d checkpoints", count)
        return count

    def list_checkpoints(self) -> List[Checkpoint]:
        checkpoints = []
        for item_id in self._read_all():
            cp = self.load(item_id)
            if cp is not None:
                checkpoints.append(cp)
        checkpoints.sort(key=lambda c: c.last_updated, reverse=True)
        return checkpoints

    def recoverable(self, max_age: timedelta = RECOVERABLE_MAX_AGE) -> List[Checkpoint]:
        """Checkpoints with real progress that are recent enough to resume."""
        limit = max_age.total_seconds()
        return [
            cp for cp in self.list_checkpoints()
            if cp.current_phase > 0 and cp.age_seconds() < limit
        ]
