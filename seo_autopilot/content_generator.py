"""
Content generator -- Anthropic Claude as the generation backend.

The pipeline only needs ``generate(prompt) -> text``; this module supplies
that on top of ``anthropic.AsyncAnthropic`` and maps SDK errors onto the
core's taxonomy (connection, timeout, rate limit and 5xx are transient).

Usage:
    generator = AnthropicGenerator(api_key=os.environ["ANTHROPIC_API_KEY"])
    html = await generator.generate("Write an article about ...")
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Optional

import anthropic

from seo_autopilot.config import MODEL_SONNET
from seo_autopilot.errors import RemoteError, TransientRemoteError

logger = logging.getLogger("content_generator")

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

MAX_TOKENS_ARTICLE = 8000
DEFAULT_TEMPERATURE = 0.7

DEFAULT_SYSTEM_PROMPT = (
    "You are an expert SEO content writer. Respond with clean semantic HTML "
    "(h2, h3, p, ul, ol, table) and no markdown, code fences or commentary."
)


class AnthropicGenerator:
    """Generation backend backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str = "",
        model: str = MODEL_SONNET,
        max_tokens: int = MAX_TOKENS_ARTICLE,
        temperature: float = DEFAULT_TEMPERATURE,
        client: Optional[Any] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) or self._client is not None

    def _ensure_client(self) -> Any:
        """Lazily create the async Anthropic client."""
        if self._client is None:
            if not self.api_key:
                raise RemoteError("ANTHROPIC_API_KEY is not set; cannot call the generation backend")
            self._client = anthropic.AsyncAnthropic(api_key=self.api_key)
        return self._client

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Send one user message and return the text of the reply."""
        client = self._ensure_client()
        start = time.monotonic()
        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=max_tokens or self.max_tokens,
                temperature=self.temperature,
                system=system or DEFAULT_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
        except (anthropic.APIConnectionError, anthropic.RateLimitError, anthropic.InternalServerError) as exc:
            # APITimeoutError subclasses APIConnectionError
            raise TransientRemoteError(
                f"Anthropic request failed: {exc}",
                status_code=getattr(exc, "status_code", 0) or 0,
            ) from exc
        except anthropic.APIStatusError as exc:
            raise RemoteError(
                f"Anthropic API error {exc.status_code}: {exc.message}",
                status_code=exc.status_code,
            ) from exc

        text = "".join(
            getattr(block, "text", "") for block in (response.content or [])
        )
        logger.debug(
            "Generated %d chars in %.1fs (model=%s)",
            len(text), time.monotonic() - start, self.model,
        )
        return text


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

_FENCE = re.compile(r"^```(?:json|html)?\s*|\s*```$", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if the model added one."""
    return _FENCE.sub("", text.strip()).strip()


def parse_json_response(text: str, fallback: Any = None) -> Any:
    """Best-effort JSON extraction from a model reply."""
    if not text:
        return fallback
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    match = re.search(r"\[[\s\S]*\]|\{[\s\S]*\}", cleaned)
    if match:
        try:
            return json.loads(match.group())
        except json.JSONDecodeError:
            pass
    return fallback
