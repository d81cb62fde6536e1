"""
WordPress publisher -- pushes GeneratedDocuments through the WP REST API v2.

Authentication uses WordPress application passwords over HTTP Basic auth.
A document whose slug already exists is updated in place; otherwise a new
post is created.

Failure mapping:
    network error, 429, 5xx    -> TransientRemoteError (raised)
    401 / 403 / other 4xx      -> PublishResult(success=False, reason=...)

Usage:
    async with WordPressPublisher("https://example.com", "admin", "xxxx xxxx") as wp:
        result = await wp.publish(document)
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, Dict, Optional, Tuple

import aiohttp

from seo_autopilot.documents import GeneratedDocument, PublishResult
from seo_autopilot.errors import TransientRemoteError

logger = logging.getLogger("wordpress_client")

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

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}
VALID_STATUSES = ("publish", "draft", "pending", "private")


class WordPressPublisher:
    """Publishing target backed by one WordPress site."""

    def __init__(
        self,
        base_url: str,
        username: str,
        app_password: str = "",
        status: str = "publish",
        timeout: int = 30,
    ):
        if status not in VALID_STATUSES:
            raise ValueError(f"Invalid post status {status!r}; expected one of {VALID_STATUSES}")
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.app_password = app_password
        self.status = status
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def api_url(self) -> str:
        return f"{self.base_url}/wp-json/wp/v2"

    @property
    def auth_header(self) -> str:
        if not self.username or not self.app_password:
            return ""
        credentials = f"{self.username}:{self.app_password}"
        encoded = base64.b64encode(credentials.encode("utf-8")).decode("utf-8")
        return f"Basic {encoded}"

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.username)

    def __repr__(self) -> str:
        configured = "configured" if self.is_configured else "no-creds"
        return f"WordPressPublisher({self.base_url!r}, {configured})"

    # -- Session management -------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {
                "User-Agent": "SEO-Autopilot/1.0",
                "Accept": "application/json",
            }
            if self.auth_header:
                headers["Authorization"] = self.auth_header
            self._session = aiohttp.ClientSession(
                headers=headers,
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

    # -- HTTP ---------------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any]:
        """Single HTTP request; transient failures raise, everything else returns."""
        session = await self._get_session()
        kwargs: Dict[str, Any] = {}
        if json_data is not None:
            kwargs["json"] = json_data
        if params is not None:
            kwargs["params"] = params
        logger.debug("API %s %s", method.upper(), url)
        try:
            async with session.request(method, url, **kwargs) as resp:
                status = resp.status
                try:
                    body = await resp.json(content_type=None)
                except (json.JSONDecodeError, ValueError):
                    body = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientRemoteError(
                f"Network error talking to {self.base_url}: {exc}"
            ) from exc

        if status in TRANSIENT_STATUS_CODES:
            raise TransientRemoteError(
                f"HTTP {status} from {self.base_url}",
                status_code=status,
                response_body=str(body)[:500],
            )
        return status, body

    @staticmethod
    def _error_reason(status: int, body: Any) -> str:
        if status in (401, 403):
            return f"Authentication failed: HTTP {status}"
        message = body.get("message", str(body)) if isinstance(body, dict) else str(body)
        return f"HTTP {status}: {message[:200]}"

    # -- Publishing ---------------------------------------------------------

    async def find_post_id(self, slug: str) -> Tuple[Optional[int], Optional[str]]:
        """Look up an existing post by slug.

        Returns (post_id, None) or (None, None) when absent, and
        (None, reason) when the lookup itself was refused.
        """
        status, body = await self._request(
            "GET", f"{self.api_url}/posts",
            params={"slug": slug, "status": "any", "_fields": "id,slug"},
        )
        if status >= 400:
            return None, self._error_reason(status, body)
        if isinstance(body, list) and body:
            return int(body[0]["id"]), None
        return None, None

    async def publish(self, document: GeneratedDocument) -> PublishResult:
        """Create or update the post for *document*."""
        if not self.is_configured:
            return PublishResult(success=False, reason="Publisher is not configured")

        post_id, reason = await self.find_post_id(document.slug)
        if reason:
            return PublishResult(success=False, reason=reason)

        payload: Dict[str, Any] = {
            "title": document.title,
            "content": document.html,
            "slug": document.slug,
            "status": self.status,
            "excerpt": document.meta_description,
        }
        if post_id is not None:
            url = f"{self.api_url}/posts/{post_id}"
            action = "Updated"
        else:
            url = f"{self.api_url}/posts"
            action = "Created"

        status, body = await self._request("POST", url, json_data=payload)
        if status >= 400:
            reason = self._error_reason(status, body)
            logger.warning("Publish of '%s' refused: %s", document.title, reason)
            return PublishResult(success=False, reason=reason)

        body = body if isinstance(body, dict) else {}
        new_id = body.get("id", post_id)
        logger.info(
            "%s post %s on %s: %s", action, new_id, self.base_url, document.title,
        )
        return PublishResult(
            success=True,
            post_id=int(new_id) if new_id is not None else None,
            url=body.get("link"),
        )
