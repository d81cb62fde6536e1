"""
Work items -- the pages the pipeline may process

A WorkItem is one content target (an existing URL to refresh or a new
title to write).  The scheduler updates recency bookkeeping on it; the
store persists the list as JSON between runs.

Also home to the URL helpers shared by the scheduler and the pipeline:
system-path exclusion and slug keyword extraction.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import unquote, urlparse

from seo_autopilot.persistence import load_json, save_json

logger = logging.getLogger("work_items")

# Paths that never hold editorial content
SYSTEM_PATHS = ("/wp-admin", "/wp-login", "/feed", "/sitemap", "/robots", "/?p=")

PRIORITY_TIERS = ("critical", "high", "medium", "low")

_NON_SEMANTIC_SLUG = re.compile(
    r"^(?:[a-f0-9]{6,}|[0-9]+|[a-z]{1,2}[0-9]+|[0-9a-f]{8}-[0-9a-f]{4}.*)$", re.IGNORECASE
)
_NON_SEMANTIC_PARENT = re.compile(r"^(?:[a-f0-9]{6,}|[0-9]+)$", re.IGNORECASE)


@dataclass
class WorkItem:
    """A single content target the scheduler may choose to process."""

    id: str
    title: str
    source_url: str = ""
    priority_tier: Optional[str] = None
    category: Optional[str] = None
    last_processed_at: Optional[str] = None
    process_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> WorkItem:
        known = {f for f in cls.__dataclass_fields__}
        filtered = {k: v for k, v in data.items() if k in known}
        if "id" not in filtered:
            filtered["id"] = filtered.get("source_url") or filtered.get("title", "")
        filtered.setdefault("title", "")
        return cls(**filtered)


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------


def is_system_path(url: str) -> bool:
    """True for admin, feed, sitemap and similar non-content URLs."""
    lowered = url.lower()
    return any(p in lowered for p in SYSTEM_PATHS)


def path_segments(url: str) -> List[str]:
    return [s for s in urlparse(url).path.split("/") if s]


def extract_keyword(url: str) -> str:
    """Derive a human keyword from a URL slug.

    Uses the last path segment unless it looks like an ID or hash, then the
    parent segment, then the bare domain name.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        parsed = None
    if parsed is None or not parsed.netloc:
        tail = [s for s in url.split("/") if s]
        return tail[-1].replace("-", " ") if tail else "content"

    segments = path_segments(url)
    last = segments[-1] if segments else ""
    decoded = unquote(last).replace("-", " ").strip()
    if last and not _NON_SEMANTIC_SLUG.match(last) and len(decoded) > 3:
        return decoded.lower()

    if len(segments) >= 2:
        parent = segments[-2]
        parent_decoded = unquote(parent).replace("-", " ").strip()
        if not _NON_SEMANTIC_PARENT.match(parent) and len(parent_decoded) > 3:
            return parent_decoded.lower()

    domain = re.sub(r"^www\.", "", parsed.hostname or "")
    domain = re.sub(r"\.[a-z]{2,}$", "", domain)
    return domain.replace("-", " ").lower()


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:80] or "article"


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class WorkItemStore:
    """Persists a list of WorkItems as a JSON array."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> List[WorkItem]:
        raw = load_json(self.path, default=[])
        if isinstance(raw, dict):
            raw = raw.get("items", [])
        items: List[WorkItem] = []
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            item = WorkItem.from_dict(entry)
            if not item.id:
                logger.warning("Skipping work item without id or url: %s", entry)
                continue
            items.append(item)
        return items

    def save(self, items: Iterable[WorkItem]) -> None:
        save_json(self.path, [item.to_dict() for item in items])
