"""Embedding and generation providers with DRY_RUN fallback."""

import asyncio
import hashlib
import math
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx
from loguru import logger

from errors import UpstreamError
from settings import settings


@dataclass
class CompletionResult:
    """Text and token usage of one chat completion."""

    text: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    model: str


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> List[float]: ...


class GenerationProvider(Protocol):
    async def complete(
        self, messages: List[Dict[str, str]], model: Optional[str] = None
    ) -> CompletionResult: ...


class LLMClient:
    """OpenRouter-compatible client for embeddings and chat completions."""

    def __init__(self):
        self.api_key = settings.openrouter_api_key
        self.base_url = settings.openrouter_base_url
        self.model = settings.generation_model
        self.fallback_model = settings.fallback_model
        self.embedding_model = settings.embedding_model
        self.embedding_dim = settings.embedding_dim
        self.dry_run = settings.dry_run or not self.api_key

        self.max_retries = 3
        self.base_delay = 1.0

        # HTTP client with timeout
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout_sec),
            headers={
                "Authorization": f"Bearer {self.api_key}" if self.api_key else "",
                "Content-Type": "application/json",
                "HTTP-Referer": "https://repodocs.local",
                "X-Title": "RepoDocs",
            },
        )

        logger.info(
            f"LLM Client initialized: dry_run={self.dry_run}, model={self.model}, "
            f"embedding_model={self.embedding_model}"
        )

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def embed(self, text: str) -> List[float]:
        """Embed `text` into a vector of the configured dimension."""
        if self.dry_run:
            return self._dry_run_embedding(text)

        data = await self._post_with_retry(
            "/embeddings",
            {
                "model": self.embedding_model,
                "input": text,
                "dimensions": self.embedding_dim,
            },
        )
        try:
            embedding = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError):
            raise UpstreamError("Invalid embedding response format")

        if not embedding:
            raise UpstreamError("Embedding provider returned an empty vector")
        return [float(value) for value in embedding]

    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 8000,
    ) -> CompletionResult:
        """Chat completion, retrying once on the fallback model."""
        model = model or self.model
        if self.dry_run:
            return self._dry_run_completion(messages, model)

        try:
            return await self._chat(messages, model, temperature, max_tokens)
        except UpstreamError as e:
            if not self.fallback_model or self.fallback_model == model:
                raise
            logger.warning(
                f"Model {model} failed ({e}), falling back to {self.fallback_model}"
            )
            return await self._chat(
                messages, self.fallback_model, temperature, max_tokens
            )

    async def _chat(
        self,
        messages: List[Dict[str, str]],
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> CompletionResult:
        data = await self._post_with_retry(
            "/chat/completions",
            {
                "model": model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
        )

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise UpstreamError("Invalid response format from OpenRouter API")

        usage = data.get("usage") or {}
        prompt_tokens = int(usage.get("prompt_tokens", 0))
        completion_tokens = int(usage.get("completion_tokens", 0))
        total_tokens = int(usage.get("total_tokens", prompt_tokens + completion_tokens))

        return CompletionResult(
            text=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            model=data.get("model") or model,
        )

    async def _post_with_retry(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST to the API with exponential backoff on 429, 5xx and timeouts."""
        last_error = None

        for attempt in range(self.max_retries):
            try:
                start_time = time.time()
                response = await self.client.post(f"{self.base_url}{path}", json=payload)
                elapsed = time.time() - start_time

                if response.status_code == 200:
                    logger.debug(f"OpenRouter {path} succeeded in {elapsed:.2f}s")
                    return response.json()

                if response.status_code == 429 or response.status_code >= 500:
                    last_error = f"OpenRouter API error: {response.status_code}"
                    delay = self.base_delay * (2**attempt) + random.uniform(0, 1)
                    logger.warning(
                        f"{last_error}, retrying in {delay:.2f}s (attempt {attempt + 1})"
                    )
                    await asyncio.sleep(delay)
                    continue

                # Client error - don't retry
                error_msg = f"OpenRouter API error: {response.status_code} - {response.text}"
                logger.error(error_msg)
                raise UpstreamError(error_msg)

            except httpx.TimeoutException:
                last_error = "OpenRouter API request timed out"
                delay = self.base_delay * (2**attempt) + random.uniform(0, 1)
                logger.warning(f"Timeout, retrying in {delay:.2f}s (attempt {attempt + 1})")
                await asyncio.sleep(delay)

            except httpx.HTTPError as e:
                last_error = f"OpenRouter API request failed: {e}"
                delay = self.base_delay * (2**attempt) + random.uniform(0, 1)
                logger.warning(f"{last_error}, retrying in {delay:.2f}s (attempt {attempt + 1})")
                await asyncio.sleep(delay)

        raise UpstreamError(
            f"{last_error or 'OpenRouter API call failed'} after {self.max_retries} attempts"
        )

    def _dry_run_embedding(self, text: str) -> List[float]:
        """Deterministic unit vector derived from the text."""
        seed = int(hashlib.sha256(text.encode()).hexdigest()[:16], 16)
        rng = random.Random(seed)
        vector = [rng.uniform(-1.0, 1.0) for _ in range(self.embedding_dim)]
        norm = math.sqrt(sum(value * value for value in vector)) or 1.0
        return [value / norm for value in vector]

    def _dry_run_completion(
        self, messages: List[Dict[str, str]], model: str
    ) -> CompletionResult:
        """Templated answer with token estimates for DRY_RUN mode."""
        question = next(
            (m["content"] for m in reversed(messages) if m.get("role") == "user"), ""
        )
        text = (
            "DRY_RUN answer.\n\n"
            f"Question: {question}\n\n"
            "No upstream model is configured; set OPENROUTER_API_KEY to enable answers."
        )
        prompt_tokens = sum(len(m.get("content", "")) for m in messages) // 4
        completion_tokens = len(text) // 4
        return CompletionResult(
            text=text,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            model=model,
        )
