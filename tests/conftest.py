"""
Shared fixtures for the SEO Autopilot test suite.

Provides fake collaborators, temp data paths and reusable aiohttp mocks so
that all tests run WITHOUT any external services.
"""

import json
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from seo_autopilot.documents import PublishResult
from seo_autopilot.work_items import WorkItem


# ---------------------------------------------------------------------------
# Data isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_data(tmp_path, monkeypatch):
    """Redirect every module-level data path into a temp directory."""
    monkeypatch.setattr(
        "seo_autopilot.checkpoint_store.CHECKPOINTS_FILE",
        tmp_path / "checkpoints" / "checkpoints.json",
    )
    monkeypatch.setattr(
        "seo_autopilot.circuit_breaker.BREAKERS_FILE",
        tmp_path / "circuit_breaker" / "breakers.json",
    )
    monkeypatch.setattr(
        "seo_autopilot.scheduler.HISTORY_FILE",
        tmp_path / "scheduler" / "history.json",
    )
    yield


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

ARTICLE_HTML = (
    "<h2>Getting Started</h2>\n"
    "<p>Trail running shoes give you grip and protection on rough ground. "
    "This guide covers trail running shoes, hiking boots and the best socks.</p>\n"
    "<h2>Choosing a Pair</h2>\n"
    "<p>Look at cushioning, drop and the outsole before you buy anything.</p>"
)


class FakeGenerator:
    """Generation backend that answers keyword prompts with JSON and
    everything else with a fixed article."""

    def __init__(self, html: str = ARTICLE_HTML, keywords: Optional[List[str]] = None,
                 fail_times: int = 0, error: Optional[Exception] = None):
        self.html = html
        self.keywords = keywords if keywords is not None else ["trail shoes", "grip"]
        self.fail_times = fail_times
        self.error = error
        self.prompts: List[str] = []
        self.is_configured = True

    async def generate(self, prompt: str, system: Optional[str] = None,
                       max_tokens: Optional[int] = None) -> str:
        self.prompts.append(prompt)
        if "JSON array" in prompt:
            return json.dumps(self.keywords)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error
        return self.html

    @property
    def draft_calls(self) -> int:
        return sum(1 for p in self.prompts if "JSON array" not in p)


class FakeResearch:
    """Research provider with canned SERP and video results."""

    def __init__(self, serp: Optional[List[Dict[str, Any]]] = None,
                 videos: Optional[List[Dict[str, Any]]] = None):
        self.serp = serp if serp is not None else [
            {"title": "Trail Shoe Study", "link": "https://journal.example.org/study", "snippet": ""},
            {"title": "Runner's Guide", "link": "https://runners.example.net/guide", "snippet": ""},
            {"title": "Own Page", "link": "https://mysite.com/other", "snippet": ""},
        ]
        self.videos = videos if videos is not None else [
            {"title": "Shoe Review", "link": "https://www.youtube.com/watch?v=abcdefghijk"},
        ]
        self.search_calls = 0
        self.video_calls = 0

    async def search(self, query: str, num: int = 10) -> List[Dict[str, Any]]:
        self.search_calls += 1
        return list(self.serp)

    async def search_videos(self, query: str, num: int = 5) -> List[Dict[str, Any]]:
        self.video_calls += 1
        return list(self.videos)


class FakePublisher:
    """Publishing target returning a scripted sequence of results."""

    def __init__(self, results: Optional[List[PublishResult]] = None):
        self.results = list(results or [])
        self.published = []
        self.is_configured = True

    async def publish(self, document) -> PublishResult:
        self.published.append(document)
        if self.results:
            return self.results.pop(0)
        return PublishResult(success=True, post_id=101, url="https://mysite.com/published/")


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def fake_research():
    return FakeResearch()


@pytest.fixture
def fake_publisher():
    return FakePublisher()


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_item():
    return WorkItem(
        id="trail-shoes",
        title="Best Trail Running Shoes",
        source_url="https://mysite.com/best-trail-running-shoes/",
    )


@pytest.fixture
def sample_items(sample_item):
    return [
        sample_item,
        WorkItem(id="hiking", title="Hiking Boots Explained",
                 source_url="https://mysite.com/gear/hiking-boots/"),
        WorkItem(id="socks", title="Running Socks",
                 source_url="https://mysite.com/gear/best-socks/"),
    ]


# ---------------------------------------------------------------------------
# HTTP mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory."""

    def _make(status=200, json_data=None, text="", headers=None):
        resp = AsyncMock()
        resp.status = status
        resp.json = AsyncMock(return_value=json_data if json_data is not None else {})
        resp.text = AsyncMock(return_value=text)
        resp.headers = headers or {"Content-Type": "application/json"}
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


@pytest.fixture
def make_mock_session():
    """Factory for a mock session whose request()/post() yield the given responses in order."""

    def _make(*responses):
        session = AsyncMock()
        ctxs = []
        for resp in responses:
            ctx = AsyncMock()
            ctx.__aenter__ = AsyncMock(return_value=resp)
            ctx.__aexit__ = AsyncMock(return_value=False)
            ctxs.append(ctx)
        session.request = MagicMock(side_effect=list(ctxs))
        session.post = MagicMock(side_effect=list(ctxs))
        session.close = AsyncMock()
        session.closed = False
        return session

    return _make
