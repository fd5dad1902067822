"""Content-generation collaborator: prompt in, text out.

``CerebrasClient`` talks to an OpenAI-compatible chat-completions endpoint
over httpx. Anything implementing ``ContentGenerator`` can stand in for it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from appforge.errors import GenerationError

logger = logging.getLogger(__name__)


@dataclass
class Completion:
    """One generation response."""

    content: str
    latency_ms: int = 0
    usage: dict[str, Any] = field(default_factory=dict)
    model: str | None = None


@runtime_checkable
class ContentGenerator(Protocol):
    """Opaque text generator used for analysis, generation and build fixes."""

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float = 0.7,
    ) -> Completion: ...


class CerebrasClient:
    """Chat-completions client for the Cerebras inference API."""

    def __init__(
        self,
        api_key: str | None,
        api_url: str = "https://api.cerebras.ai/v1/chat/completions",
        model: str = "qwen-3-coder-480b",
        timeout: float = 120.0,
        max_tokens: int = 16000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.transport = transport

    @classmethod
    def from_settings(cls, settings) -> CerebrasClient:
        return cls(
            api_key=settings.cerebras_api_key,
            api_url=settings.llm_api_url,
            model=settings.llm_model,
            timeout=settings.llm_timeout_seconds,
            max_tokens=settings.llm_max_tokens,
        )

    async def complete(
        self,
        prompt: str,
        *,
        max_tokens: int | None = None,
        temperature: float = 0.7,
    ) -> Completion:
        """Send a single-message chat completion.

        Raises:
            GenerationError: On missing credentials, HTTP errors or a
                malformed response body
        """
        if not self.api_key:
            raise GenerationError("CEREBRAS_API_KEY is not configured")

        payload = {
            "model": self.model,
            "stream": False,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": temperature,
            "top_p": 0.8,
            "messages": [{"role": "user", "content": prompt}],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        started = time.monotonic()
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise GenerationError(
                f"Generation API error: HTTP {e.response.status_code}",
                {"status": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise GenerationError(f"Generation request failed: {e}") from e
        except ValueError as e:
            raise GenerationError(f"Generation API returned invalid JSON: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise GenerationError(f"Unexpected generation response shape: {e}") from e

        latency_ms = int((time.monotonic() - started) * 1000)
        usage = data.get("usage") or {}
        logger.info(
            f"Generation completed in {latency_ms}ms "
            f"(tokens: {usage.get('total_tokens', 'n/a')})"
        )
        return Completion(content=content or "", latency_ms=latency_ms, usage=usage, model=self.model)
