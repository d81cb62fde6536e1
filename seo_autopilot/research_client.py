"""
Research client -- Serper.dev search for SERP, video and reference lookups.

Usage:
    async with SerperClient(api_key) as client:
        results = await client.search("best trail running shoes")
        videos = await client.search_videos("trail running shoes review")
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from seo_autopilot.errors import RemoteError, TransientRemoteError

logger = logging.getLogger("research_client")

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

SERPER_BASE_URL = "https://google.serper.dev"
TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


class SerperClient:
    """Thin async client for the Serper search API.

    Transport errors, 429 and 5xx raise TransientRemoteError so the
    pipeline's retry and breaker layers handle them; other HTTP errors raise
    RemoteError.
    """

    def __init__(self, api_key: str, timeout: int = 30, base_url: str = SERPER_BASE_URL):
        self.api_key = api_key
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "X-API-KEY": self.api_key,
                    "Content-Type": "application/json",
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        url = f"{self.base_url}/{endpoint}"
        logger.debug("POST %s q=%r", url, payload.get("q"))
        try:
            async with session.post(url, json=payload) as resp:
                status = resp.status
                try:
                    body = await resp.json(content_type=None)
                except (json.JSONDecodeError, ValueError):
                    body = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientRemoteError(f"Serper request failed: {exc}") from exc

        if status in TRANSIENT_STATUS_CODES:
            raise TransientRemoteError(
                f"Serper returned HTTP {status}", status_code=status, response_body=str(body)[:500]
            )
        if status >= 400:
            raise RemoteError(
                f"Serper returned HTTP {status}", status_code=status, response_body=str(body)[:500]
            )
        return body if isinstance(body, dict) else {}

    async def search(self, query: str, num: int = 10) -> List[Dict[str, Any]]:
        """Organic web results as ``{title, link, snippet}`` dicts."""
        body = await self._post("search", {"q": query, "num": num})
        results = []
        for entry in body.get("organic", [])[:num]:
            if not entry.get("link"):
                continue
            results.append({
                "title": entry.get("title", ""),
                "link": entry["link"],
                "snippet": entry.get("snippet", ""),
            })
        return results

    async def search_videos(self, query: str, num: int = 5) -> List[Dict[str, Any]]:
        """Video results (mostly YouTube) as ``{title, link, channel, duration}`` dicts."""
        body = await self._post("videos", {"q": query, "num": num})
        return [
            {
                "title": v.get("title", ""),
                "link": v.get("link", ""),
                "channel": v.get("channel", ""),
                "duration": v.get("duration", ""),
            }
            for v in body.get("videos", [])[:num]
            if v.get("link")
        ]
