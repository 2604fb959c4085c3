"""
Generation Client
-----------------
OpenAI-compatible chat completion client, one-shot and streaming.
API keys are read from the environment and never stored in config.

Any transport problem surfaces as UnavailableError; whether to retry or
fall back is the caller's decision.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
import asyncio
import json
import logging
import os

import httpx

from core.errors import UnavailableError

ChatMessages = List[Dict[str, str]]
OnChunk = Callable[[str], Awaitable[None]]


@dataclass
class LLMConfig:
    """Configuration for a chat completion backend."""
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-3.5-turbo"
    api_key_env: str = "LLM_API_KEY"  # Environment variable name (NOT the actual key)
    timeout_seconds: float = 30.0
    headers: Dict[str, str] = field(default_factory=dict)


class OpenAICompatibleClient:
    """
    Chat completion client for any OpenAI-compatible endpoint.

    Implements the generation capability:
    - generate_once(messages, model) -> full text
    - generate_stream(messages, on_chunk, model) -> None
    """

    def __init__(
        self,
        config: LLMConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._transport = transport
        self._logger = logging.getLogger("starchat.api.llm")

        self._api_key = os.getenv(config.api_key_env)
        if not self._api_key:
            self._logger.warning(f"API key not found: {config.api_key_env}")

    @property
    def is_configured(self) -> bool:
        """Check if the client has an API key."""
        return bool(self._api_key)

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "StarChat/1.0",
        }
        headers.update(self.config.headers)

        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            timeout=self.config.timeout_seconds,
            headers=self._get_headers(),
            transport=self._transport,
        )

    def _payload(self, messages: ChatMessages, model: Optional[str], stream: bool) -> Dict[str, Any]:
        return {
            "model": model or self.config.model,
            "messages": [
                {"role": message["role"], "content": message["content"]}
                for message in messages
            ],
            "stream": stream,
        }

    async def generate_once(self, messages: ChatMessages, model: Optional[str] = None) -> str:
        """Return the complete reply for a prompt."""
        payload = self._payload(messages, model, stream=False)
        self._logger.debug(f"Completion request: model={payload['model']}, messages={len(messages)}")

        try:
            async with self._client() as client:
                response = await client.post("/chat/completions", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            raise UnavailableError(f"Completion timed out: {e}", backend="llm") from e
        except httpx.HTTPStatusError as e:
            raise UnavailableError(
                f"Completion failed with status {e.response.status_code}", backend="llm"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise UnavailableError(f"Completion failed: {e}", backend="llm") from e

        choices = data.get("choices") or []
        content = choices[0].get("message", {}).get("content") if choices else None
        if not content:
            raise UnavailableError("No response content received", backend="llm")

        return content

    async def generate_stream(
        self,
        messages: ChatMessages,
        on_chunk: OnChunk,
        model: Optional[str] = None,
    ) -> None:
        """
        Stream a reply, awaiting on_chunk for every non-empty delta.

        Exceptions raised by on_chunk propagate unchanged and stop the stream.
        """
        payload = self._payload(messages, model, stream=True)
        self._logger.debug(f"Stream request: model={payload['model']}, messages={len(messages)}")

        try:
            async with self._client() as client:
                async with client.stream("POST", "/chat/completions", json=payload) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if data == "[DONE]":
                            break
                        chunk = self._parse_delta(data)
                        if chunk:
                            await on_chunk(chunk)
        except httpx.TimeoutException as e:
            raise UnavailableError(f"Stream timed out: {e}", backend="llm") from e
        except httpx.HTTPStatusError as e:
            raise UnavailableError(
                f"Stream failed with status {e.response.status_code}", backend="llm"
            ) from e
        except httpx.HTTPError as e:
            raise UnavailableError(f"Stream failed: {e}", backend="llm") from e

    def _parse_delta(self, data: str) -> Optional[str]:
        try:
            event = json.loads(data)
            choices = event.get("choices") or []
            if not choices:
                return None
            return choices[0].get("delta", {}).get("content")
        except (json.JSONDecodeError, AttributeError) as e:
            self._logger.debug(f"Skipping malformed stream line: {e}")
            return None


class MockLLMClient:
    """
    Scripted generation backend for tests and offline runs.

    Replays `chunks` in order; with fail=True raises UnavailableError
    after `fail_after` chunks.
    """

    def __init__(
        self,
        chunks: Sequence[str] = ("Hello", "! ", "Nice to meet you."),
        fail: bool = False,
        fail_after: int = 0,
        delay: float = 0.0,
    ):
        self.chunks = list(chunks)
        self.fail = fail
        self.fail_after = fail_after
        self.delay = delay
        self.calls: List[ChatMessages] = []

    async def generate_once(self, messages: ChatMessages, model: Optional[str] = None) -> str:
        self.calls.append(list(messages))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise UnavailableError("mock backend unavailable", backend="llm")
        return "".join(self.chunks)

    async def generate_stream(
        self,
        messages: ChatMessages,
        on_chunk: OnChunk,
        model: Optional[str] = None,
    ) -> None:
        self.calls.append(list(messages))
        for index, chunk in enumerate(self.chunks):
            if self.fail and index >= self.fail_after:
                break
            if self.delay:
                await asyncio.sleep(self.delay)
            await on_chunk(chunk)
        if self.fail:
            raise UnavailableError("mock backend unavailable", backend="llm")
