"""Value types exchanged between the pipeline and the publishing target."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class GeneratedDocument:
    """A finished article, ready to publish."""

    item_id: str
    title: str
    html: str
    meta_description: str = ""
    slug: str = ""
    schema: Dict[str, Any] = field(default_factory=dict)
    references: List[Dict[str, Any]] = field(default_factory=list)
    word_count: int = 0
    phases_run: List[str] = field(default_factory=list)
    source_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PublishResult:
    """Outcome reported by the publishing target."""

    success: bool
    post_id: Optional[int] = None
    url: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
