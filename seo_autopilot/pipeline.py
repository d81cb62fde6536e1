"""
Generation Pipeline -- checkpointed seven-phase article generation

Takes one WorkItem through research, drafting, term optimization, reference
collection, internal linking, media embedding and final polish.  Progress is
persisted to the CheckpointStore after every phase, so a failed or halted run
resumes from the first incomplete phase with the earlier phases' data intact.

Every remote call goes through the same layers:

    cache (get_cached) -> circuit breaker (BreakerRegistry.call)
        -> timeout (with_timeout) -> retry (with_retry / RetryPolicy)

and each phase as a whole runs inside a fixed-delay RetryPolicy.  When a
phase exhausts its attempts the error is written into the checkpoint and
PhaseFailed is raised.

Usage:
    from seo_autopilot.pipeline import GenerationPipeline

    pipeline = GenerationPipeline(generator, research=serper, publisher=wp)
    document = await pipeline.run(item, link_targets=items)
    document, result = await pipeline.run_and_publish(item)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from html import escape, unescape
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from seo_autopilot.cache import CacheRegistry, get_cached
from seo_autopilot.checkpoint_store import (
    PHASE_ORDER,
    Checkpoint,
    CheckpointStore,
    GenerationPhase,
)
from seo_autopilot.circuit_breaker import BreakerRegistry
from seo_autopilot.content_generator import parse_json_response, strip_code_fences
from seo_autopilot.documents import GeneratedDocument, PublishResult
from seo_autopilot.errors import (
    PhaseFailed,
    PipelineAborted,
    PublishRejected,
    TransientRemoteError,
)
from seo_autopilot.persistence import now_iso
from seo_autopilot.resilience import RetryPolicy, execute_parallel, with_retry, with_timeout
from seo_autopilot.work_items import WorkItem, extract_keyword, path_segments, slugify

logger = logging.getLogger("pipeline")

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

__all__ = [
    "GenerationPipeline",
    "GeneratedDocument",
    "PipelineConfig",
    "PublishResult",
    "insert_internal_link",
    "meta_description_from",
]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

META_DESCRIPTION_MAX = 155
MIN_ANCHOR_LENGTH = 3

# Breaker names, one per external service
SERVICE_GENERATOR = "anthropic"
SERVICE_SEARCH = "serper"
SERVICE_VIDEO = "youtube"
SERVICE_TERMS = "neuronwriter"
SERVICE_PUBLISHER = "wordpress"

_PARAGRAPH = re.compile(r"(<p\b[^>]*>)(.*?)(</p>)", re.IGNORECASE | re.DOTALL)
_INLINE_SPLIT = re.compile(r"(<a\b[^>]*>.*?</a>|<[^>]+>)", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_YOUTUBE_ID = re.compile(r"(?:v=|youtu\.be/|/embed/|/shorts/)([A-Za-z0-9_-]{11})")

PhaseOutput = Tuple[Dict[str, Any], Optional[str]]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class PipelineConfig:
    """Tunables for one GenerationPipeline."""

    research_timeout: float = 60.0
    task_timeout: float = 30.0
    generation_timeout: float = 180.0
    publish_timeout: float = 60.0
    generation_retries: int = 2
    retry_base_delay: float = 1.0
    max_phase_retries: int = 2
    phase_retry_delays: Tuple[float, ...] = (2.0, 5.0, 10.0)
    min_content_length: int = 100
    enable_term_optimization: bool = True
    max_missing_terms: int = 15
    max_references: int = 8
    max_internal_links: int = 6

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PipelineConfig:
        known = {f for f in cls.__dataclass_fields__}
        filtered = {k: v for k, v in data.items() if k in known}
        if "phase_retry_delays" in filtered:
            filtered["phase_retry_delays"] = tuple(filtered["phase_retry_delays"])
        return cls(**filtered)


@dataclass
class _RunContext:
    item: WorkItem
    link_targets: List[WorkItem] = field(default_factory=list)


# ---------------------------------------------------------------------------
# HTML helpers
# ---------------------------------------------------------------------------


def _plain_text(fragment: str) -> str:
    text = unescape(_TAG.sub(" ", fragment))
    text = re.sub(r"\s+", " ", text).strip()
    return re.sub(r" ([.,;:!?])", r"\1", text)


def meta_description_from(html_text: str, fallback: str = "") -> str:
    """First paragraph as plain text, cut at a word boundary to 155 chars."""
    match = _PARAGRAPH.search(html_text)
    text = _plain_text(match.group(2)) if match else _plain_text(html_text)
    if not text:
        text = fallback
    if len(text) <= META_DESCRIPTION_MAX:
        return text
    cut = text[: META_DESCRIPTION_MAX - 3].rsplit(" ", 1)[0]
    return cut.rstrip(",.;:- ") + "..."


def insert_internal_link(html_text: str, anchor: str, url: str) -> Tuple[str, bool]:
    """Link the first unlinked occurrence of *anchor* inside paragraph text.

    Headings, attributes and existing ``<a>`` elements are never touched.
    Returns the new HTML and whether a link was inserted.
    """
    pattern = re.compile(r"\b" + re.escape(anchor) + r"\b", re.IGNORECASE)
    for para in _PARAGRAPH.finditer(html_text):
        parts = _INLINE_SPLIT.split(para.group(2))
        for i in range(0, len(parts), 2):
            hit = pattern.search(parts[i])
            if not hit:
                continue
            text = parts[i]
            parts[i] = (
                text[: hit.start()]
                + f'<a href="{escape(url, quote=True)}">{hit.group(0)}</a>'
                + text[hit.end():]
            )
            start, end = para.span(2)
            return html_text[:start] + "".join(parts) + html_text[end:], True
    return html_text, False


def _youtube_id(link: str) -> Optional[str]:
    match = _YOUTUBE_ID.search(link or "")
    return match.group(1) if match else None


def _domain(url: str) -> str:
    host = urlparse(url).hostname or ""
    return host[4:] if host.startswith("www.") else host


def _cache_key(text: str) -> str:
    return text.lower().strip()


# ===================================================================
# PIPELINE
# ===================================================================


class GenerationPipeline:
    """Drives one work item through the ordered generation phases.

    *generator* must provide ``async generate(prompt) -> str``.  *research*
    (``search`` / ``search_videos``), *publisher* (``publish``) and
    *term_analyzer* (``analyze``) are optional; phases that need a missing
    collaborator complete with empty data.
    """

    def __init__(
        self,
        generator: Any,
        research: Any = None,
        publisher: Any = None,
        store: Optional[CheckpointStore] = None,
        breakers: Optional[BreakerRegistry] = None,
        caches: Optional[CacheRegistry] = None,
        term_analyzer: Any = None,
        config: Optional[PipelineConfig] = None,
    ) -> None:
        self.generator = generator
        self.research = research
        self.publisher = publisher
        self.store = store if store is not None else CheckpointStore()
        self.breakers = breakers if breakers is not None else BreakerRegistry()
        self.caches = caches if caches is not None else CacheRegistry()
        self.term_analyzer = term_analyzer
        self.config = config or PipelineConfig()

        self._phase_map: Dict[GenerationPhase, Callable[[Checkpoint, _RunContext], Awaitable[PhaseOutput]]] = {
            GenerationPhase.RESEARCH: self._phase_research,
            GenerationPhase.CONTENT: self._phase_content,
            GenerationPhase.NEURON: self._phase_neuron,
            GenerationPhase.REFERENCES: self._phase_references,
            GenerationPhase.LINKS: self._phase_links,
            GenerationPhase.MEDIA: self._phase_media,
            GenerationPhase.POLISH: self._phase_polish,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        item: WorkItem,
        link_targets: Optional[Sequence[WorkItem]] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> GeneratedDocument:
        """Run every outstanding phase and return the finished document.

        The checkpoint is cleared once the final phase completes.

        Raises:
            PipelineAborted: invalid input, or *should_continue* returned
                False between phases.
            PhaseFailed: a phase exhausted its retries.
        """
        try:
            checkpoint, phases_run = await self._run_phases(item, link_targets, should_continue)
            document = self._build_document(item, checkpoint, phases_run)
            self.store.clear(item.id)
        finally:
            self.breakers.save_state()
        logger.info(
            "Generated '%s' (%d words, phases run: %s)",
            item.title, document.word_count, ", ".join(phases_run) or "none",
        )
        return document

    async def run_and_publish(
        self,
        item: WorkItem,
        link_targets: Optional[Sequence[WorkItem]] = None,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> Tuple[GeneratedDocument, PublishResult]:
        """Run every outstanding phase, then publish.

        The checkpoint survives until the publishing target accepts the
        document, so a rejected or failed publish is retried later without
        regenerating anything.

        Raises:
            PublishRejected: the target answered with success=False.
        """
        if self.publisher is None:
            raise PipelineAborted("No publishing target configured")
        try:
            checkpoint, phases_run = await self._run_phases(item, link_targets, should_continue)
            document = self._build_document(item, checkpoint, phases_run)
            result: PublishResult = await self.breakers.call(
                SERVICE_PUBLISHER,
                lambda: with_timeout(
                    self.publisher.publish(document), self.config.publish_timeout, "publish",
                ),
            )
            if not result.success:
                logger.warning("Publish rejected for %s: %s", item.id, result.reason)
                raise PublishRejected(result.reason or "no reason given", item_id=item.id)
            self.store.clear(item.id)
        finally:
            self.breakers.save_state()
        logger.info("Published '%s' -> %s", item.title, result.url or result.post_id)
        return document, result

    # ------------------------------------------------------------------
    # Phase driver
    # ------------------------------------------------------------------

    def _validate(self, item: WorkItem) -> None:
        if self.generator is None or not getattr(self.generator, "is_configured", True):
            raise PipelineAborted("No generation backend configured")
        if not item.id:
            raise PipelineAborted("Work item has no id")
        if not item.title or not item.title.strip():
            raise PipelineAborted(f"Work item {item.id} has no title")

    async def _run_phases(
        self,
        item: WorkItem,
        link_targets: Optional[Sequence[WorkItem]],
        should_continue: Optional[Callable[[], bool]],
    ) -> Tuple[Checkpoint, List[str]]:
        self._validate(item)
        ctx = _RunContext(
            item=item,
            link_targets=[t for t in (link_targets or []) if t.id != item.id],
        )

        checkpoint = self.store.load(item.id)
        if checkpoint is None:
            checkpoint = Checkpoint.new(item.id, item.title)
            self.store.save(checkpoint)
        elif checkpoint.current_phase:
            logger.info("Resuming %s: %s", item.id, checkpoint.status_text())

        phases_run: List[str] = []
        for phase in PHASE_ORDER:
            if checkpoint.is_completed(phase):
                continue
            if should_continue is not None and not should_continue():
                logger.info("Halting %s before phase '%s'", item.id, phase.value)
                raise PipelineAborted(f"Halted before phase '{phase.value}'")
            checkpoint = await self._execute_phase(checkpoint, phase, ctx)
            phases_run.append(phase.value)
        return checkpoint, phases_run

    async def _execute_phase(
        self,
        checkpoint: Checkpoint,
        phase: GenerationPhase,
        ctx: _RunContext,
    ) -> Checkpoint:
        """Run one phase under the phase retry policy and persist the result."""
        handler = self._phase_map[phase]

        async def _attempt() -> PhaseOutput:
            nonlocal checkpoint
            checkpoint = checkpoint.record_attempt(phase)
            self.store.save(checkpoint)
            return await handler(checkpoint, ctx)

        policy = RetryPolicy(
            max_retries=self.config.max_phase_retries,
            delays=self.config.phase_retry_delays,
            label=f"{ctx.item.id}:{phase.value}",
        )
        logger.info(
            "Item %s | Phase %d/%d %s",
            ctx.item.id, phase.position + 1, len(PHASE_ORDER), phase.label,
        )
        try:
            data, html_text = await policy.execute(_attempt)
        except Exception as exc:
            checkpoint = checkpoint.fail(phase, f"{type(exc).__name__}: {exc}")
            self.store.save(checkpoint)
            logger.error(
                "Item %s | Phase %s failed after %d attempt(s): %s",
                ctx.item.id, phase.value, checkpoint.record(phase).attempts, exc,
            )
            raise PhaseFailed(phase.value, exc) from exc

        checkpoint = checkpoint.complete(phase, data, partial_content=html_text)
        self.store.save(checkpoint)
        return checkpoint

    # ------------------------------------------------------------------
    # Remote call helpers
    # ------------------------------------------------------------------

    async def _generate(self, prompt: str, label: str, min_length: int = 0) -> str:
        """Generator call behind the breaker, under a timeout, with retry.

        Replies shorter than *min_length* count as transient failures and are
        retried without being charged to the breaker.
        """

        async def _call() -> str:
            text = await self.breakers.call(
                SERVICE_GENERATOR,
                lambda: with_timeout(
                    self.generator.generate(prompt), self.config.generation_timeout, label,
                ),
            )
            text = strip_code_fences(text or "")
            if len(text) < min_length:
                raise TransientRemoteError(
                    f"{label}: reply too short ({len(text)} < {min_length} chars)"
                )
            return text

        return await with_retry(
            _call,
            max_retries=self.config.generation_retries,
            base_delay=self.config.retry_base_delay,
            label=label,
        )

    async def _cached_call(
        self,
        cache_name: str,
        key: str,
        service: str,
        operation: Callable[[], Awaitable[Any]],
    ) -> Any:
        return await get_cached(
            self.caches.cache(cache_name),
            key,
            lambda: self.breakers.call(service, operation),
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _phase_research(self, checkpoint: Checkpoint, ctx: _RunContext) -> PhaseOutput:
        item = ctx.item
        query = item.title
        key = _cache_key(query)
        limit = self.config.task_timeout
        tasks: Dict[str, Callable[[], Awaitable[Any]]] = {}

        if self.research is not None:
            tasks["serp"] = lambda: self._cached_call(
                "serp", f"serp:{key}", SERVICE_SEARCH,
                lambda: with_timeout(self.research.search(query, 10), limit, "serp"),
            )
            tasks["videos"] = lambda: self._cached_call(
                "youtube", f"video:{key}", SERVICE_VIDEO,
                lambda: with_timeout(self.research.search_videos(query, 3), limit, "videos"),
            )

        tasks["keywords"] = lambda: self._cached_call(
            "semantic_keywords", f"kw:{key}", SERVICE_GENERATOR,
            lambda: with_timeout(self._discover_keywords(query), limit, "keywords"),
        )

        if self.term_analyzer is not None:
            tasks["terms"] = lambda: self._cached_call(
                "neuron_terms", f"terms:{key}", SERVICE_TERMS,
                lambda: with_timeout(self.term_analyzer.analyze(query), limit, "terms"),
            )

        # per-task timeouts run inside the breakers; this one bounds the fan-out
        outcomes = await execute_parallel(tasks, timeout=self.config.research_timeout)

        data: Dict[str, Any] = {
            "query": query,
            "serp": [],
            "videos": [],
            "keywords": [],
            "terms": [],
            "failed": [],
        }
        for name, outcome in outcomes.items():
            if outcome.success:
                data[name] = list(outcome.data or [])
            else:
                data["failed"].append(name)
        logger.info(
            "Research for '%s': %d serp, %d keywords, %d videos, %d terms%s",
            query, len(data["serp"]), len(data["keywords"]), len(data["videos"]),
            len(data["terms"]),
            f" (failed: {', '.join(data['failed'])})" if data["failed"] else "",
        )
        return data, None

    async def _discover_keywords(self, topic: str) -> List[str]:
        prompt = (
            f"List 15 semantically related keywords and entities a complete article "
            f"about \"{topic}\" should cover. Respond with a JSON array of strings only."
        )
        text = await self.generator.generate(prompt)
        parsed = parse_json_response(text, fallback=[])
        if not isinstance(parsed, list):
            return []
        return [str(k).strip() for k in parsed if isinstance(k, (str, int)) and str(k).strip()]

    async def _phase_content(self, checkpoint: Checkpoint, ctx: _RunContext) -> PhaseOutput:
        item = ctx.item
        research = checkpoint.data_for(GenerationPhase.RESEARCH, {}) or {}
        prompt = self._content_prompt(item, research)
        html_text = await self._generate(
            prompt, f"draft:{item.id}", min_length=self.config.min_content_length,
        )
        return {"length": len(html_text), "generated_at": now_iso()}, html_text

    @staticmethod
    def _content_prompt(item: WorkItem, research: Dict[str, Any]) -> str:
        lines = [
            f"Write a comprehensive, well-structured article titled \"{item.title}\".",
            "Use <h2>/<h3> headings, short <p> paragraphs and lists where helpful.",
        ]
        if item.source_url:
            lines.append(f"This replaces the existing page at {item.source_url}.")
        keywords = research.get("keywords") or []
        if keywords:
            lines.append("Naturally cover these related topics: " + ", ".join(keywords[:15]) + ".")
        competitors = [r.get("title", "") for r in (research.get("serp") or [])[:5] if r.get("title")]
        if competitors:
            lines.append("Top-ranking pages for this topic:")
            lines.extend(f"- {title}" for title in competitors)
            lines.append("Be more thorough and more useful than all of them.")
        return "\n".join(lines)

    async def _phase_neuron(self, checkpoint: Checkpoint, ctx: _RunContext) -> PhaseOutput:
        html_text = checkpoint.partial_content
        if not self.config.enable_term_optimization:
            return {"skipped": True, "missing_terms": [], "revised": False}, None

        research = checkpoint.data_for(GenerationPhase.RESEARCH, {}) or {}
        terms = research.get("terms") or research.get("keywords") or []
        lowered = html_text.lower()
        missing = [t for t in terms if t and t.lower() not in lowered][: self.config.max_missing_terms]
        if not missing:
            return {"missing_terms": [], "revised": False}, None

        prompt = (
            "Revise the following HTML article so it naturally includes these terms: "
            + ", ".join(missing)
            + ". Keep the structure, headings and facts. Return the full HTML only.\n\n"
            + html_text
        )
        revised = await self._generate(prompt, f"terms:{ctx.item.id}")
        if len(revised) < self.config.min_content_length:
            logger.warning(
                "Term revision for %s too short (%d chars), keeping draft", ctx.item.id, len(revised),
            )
            return {"missing_terms": missing, "revised": False}, None
        return {"missing_terms": missing, "revised": True}, revised

    async def _phase_references(self, checkpoint: Checkpoint, ctx: _RunContext) -> PhaseOutput:
        item = ctx.item
        if self.research is None:
            return {"references": []}, None

        query = f"{item.title} research statistics study"
        results = await self._cached_call(
            "reference", f"refs:{_cache_key(item.title)}", SERVICE_SEARCH,
            lambda: with_timeout(self.research.search(query, 10), self.config.task_timeout, "references"),
        )
        own_domain = _domain(item.source_url) if item.source_url else ""
        references: List[Dict[str, Any]] = []
        seen = set()
        for result in results or []:
            link = result.get("link", "")
            domain = _domain(link)
            if not domain or domain == own_domain or domain in seen:
                continue
            seen.add(domain)
            references.append({"title": result.get("title") or domain, "url": link, "domain": domain})
            if len(references) >= self.config.max_references:
                break
        return {"references": references}, None

    async def _phase_links(self, checkpoint: Checkpoint, ctx: _RunContext) -> PhaseOutput:
        html_text = checkpoint.partial_content
        links: List[Dict[str, str]] = []
        for target in ctx.link_targets:
            if len(links) >= self.config.max_internal_links:
                break
            if not target.source_url or f'href="{target.source_url}"' in html_text:
                continue
            anchor = extract_keyword(target.source_url)
            if len(anchor) < MIN_ANCHOR_LENGTH:
                continue
            html_text, inserted = insert_internal_link(html_text, anchor, target.source_url)
            if inserted:
                links.append({"url": target.source_url, "anchor": anchor})
        return {"links": links}, html_text

    async def _phase_media(self, checkpoint: Checkpoint, ctx: _RunContext) -> PhaseOutput:
        html_text = checkpoint.partial_content
        research = checkpoint.data_for(GenerationPhase.RESEARCH, {}) or {}
        for video in research.get("videos") or []:
            video_id = _youtube_id(video.get("link", ""))
            if not video_id:
                continue
            title = escape(video.get("title") or ctx.item.title, quote=True)
            embed = (
                '<figure class="video-embed">'
                f'<iframe src="https://www.youtube.com/embed/{video_id}" title="{title}" '
                'loading="lazy" allowfullscreen></iframe></figure>'
            )
            marker = html_text.lower().find("</h2>")
            if marker >= 0:
                cut = marker + len("</h2>")
                html_text = html_text[:cut] + "\n" + embed + html_text[cut:]
            else:
                html_text = html_text + "\n" + embed
            return {"video": {"id": video_id, "title": video.get("title", "")}}, html_text
        return {"video": None}, None

    async def _phase_polish(self, checkpoint: Checkpoint, ctx: _RunContext) -> PhaseOutput:
        item = ctx.item
        html_text = checkpoint.partial_content
        references = (checkpoint.data_for(GenerationPhase.REFERENCES, {}) or {}).get("references", [])
        if references:
            entries = "".join(
                f'<li><a href="{escape(r["url"], quote=True)}" target="_blank" '
                f'rel="nofollow noopener">{escape(r["title"])}</a></li>'
                for r in references
            )
            html_text = f"{html_text}\n<h2>References</h2>\n<ul>{entries}</ul>"

        meta = meta_description_from(html_text, fallback=item.title)
        segments = path_segments(item.source_url) if item.source_url else []
        slug = slugify(segments[-1]) if segments else slugify(item.title)
        word_count = len(_plain_text(html_text).split())
        schema: Dict[str, Any] = {
            "@context": "https://schema.org",
            "@type": "Article",
            "headline": item.title[:110],
            "description": meta,
            "wordCount": word_count,
            "dateModified": now_iso(),
        }
        if item.source_url:
            schema["mainEntityOfPage"] = item.source_url
        data = {
            "meta_description": meta,
            "slug": slug,
            "schema": schema,
            "word_count": word_count,
        }
        return data, html_text

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    @staticmethod
    def _build_document(item: WorkItem, checkpoint: Checkpoint, phases_run: List[str]) -> GeneratedDocument:
        polish = checkpoint.data_for(GenerationPhase.POLISH, {}) or {}
        references = (checkpoint.data_for(GenerationPhase.REFERENCES, {}) or {}).get("references", [])
        return GeneratedDocument(
            item_id=item.id,
            title=item.title,
            html=checkpoint.partial_content,
            meta_description=polish.get("meta_description", ""),
            slug=polish.get("slug", slugify(item.title)),
            schema=polish.get("schema", {}),
            references=list(references),
            word_count=polish.get("word_count", 0),
            phases_run=list(phases_run),
            source_url=item.source_url,
        )
