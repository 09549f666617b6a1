"""OpenAI-compatible chat client used by the chapter writer.

The client never retries on its own (``max_retries=0`` on the SDK); the
orchestrator owns the retry policy and only needs every failure mapped onto
``TransientGenerationError`` or ``PermanentGenerationError``.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import openai
from openai import AsyncOpenAI

from chapterflow.errors import GenerationError, PermanentGenerationError, TransientGenerationError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({408, 409, 429})

_TRANSIENT_OPENAI_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)
_TRANSIENT_TRANSPORT_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    asyncio.TimeoutError,
    TimeoutError,
)


def classify_exception(exc: BaseException) -> GenerationError:
    """Map a backend exception onto the transient/permanent taxonomy."""
    if isinstance(exc, GenerationError):
        return exc
    if isinstance(exc, _TRANSIENT_OPENAI_ERRORS):
        return TransientGenerationError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        if status in RETRYABLE_STATUS or status >= 500:
            return TransientGenerationError(f"HTTP {status}: {exc}")
        return PermanentGenerationError(f"HTTP {status}: {exc}")
    if isinstance(exc, _TRANSIENT_TRANSPORT_ERRORS):
        return TransientGenerationError(f"{type(exc).__name__}: {exc}")
    return PermanentGenerationError(f"{type(exc).__name__}: {exc}")


@dataclass
class CompletionResult:
    """One chat completion, as the chapter writer sees it."""
    content: str
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: float = 0.0
    finish_reason: Optional[str] = None


@dataclass
class UsageLedger:
    """Token totals per chapter; retries of the same chapter accumulate."""
    by_chapter: dict[str, tuple[int, int]] = field(default_factory=dict)

    def record(self, chapter_id: str, tokens_in: int, tokens_out: int) -> None:
        prev_in, prev_out = self.by_chapter.get(chapter_id, (0, 0))
        self.by_chapter[chapter_id] = (prev_in + tokens_in, prev_out + tokens_out)

    @property
    def total(self) -> tuple[int, int]:
        return (
            sum(t_in for t_in, _ in self.by_chapter.values()),
            sum(t_out for _, t_out in self.by_chapter.values()),
        )


class InferenceClient:
    """Async chat client bounded by ``max_concurrent`` in-flight requests.

    Use as an async context manager so the pooled HTTP connections are
    released::

        async with InferenceClient(config["llm"]) as client:
            result = await client.chat_completion(messages, chapter_id="flow")

    Args:
        config: The ``llm`` config section (base_url, api_key, model,
            max_concurrent, timeout_seconds)
    """

    def __init__(self, config: dict):
        self.base_url = config.get("base_url", "http://localhost:8008/v1")
        self.model = config.get("model", "qwen3-30b-a3b-instruct-2507")
        self.max_concurrent = int(config.get("max_concurrent", 2))
        timeout = float(config.get("timeout_seconds", 300))

        self._http = httpx.AsyncClient(
            limits=httpx.Limits(max_connections=max(self.max_concurrent * 2, 10)),
            timeout=httpx.Timeout(timeout),
        )
        self._openai = AsyncOpenAI(
            base_url=self.base_url,
            api_key=config.get("api_key", "EMPTY"),
            max_retries=0,
            http_client=self._http,
        )
        self._slots = asyncio.Semaphore(self.max_concurrent)
        self.usage = UsageLedger()

    async def __aenter__(self) -> "InferenceClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def health_check(self) -> dict:
        """List the served models.

        Returns:
            ``{"status": "healthy", "models": [...]}`` or
            ``{"status": "unhealthy", "models": [], "error": "..."}``
        """
        try:
            page = await self._openai.models.list()
        except (openai.OpenAIError, httpx.HTTPError) as e:
            logger.error(f"LLM backend at {self.base_url} unreachable: {e}")
            return {"status": "unhealthy", "models": [], "error": str(e)}

        models = [m.id for m in page.data]
        if self.model not in models:
            logger.warning(f"Model '{self.model}' not listed by backend (serving: {models})")
        return {"status": "healthy", "models": models}

    async def chat_completion(
        self,
        messages: list[dict[str, str]],
        chapter_id: str = "default",
        temperature: float = 0.4,
        max_tokens: int = 4096,
        **kwargs: Any,
    ) -> CompletionResult:
        """Run one completion for ``chapter_id``.

        Raises:
            TransientGenerationError: Timeouts, connection errors, rate limits, 5xx
            PermanentGenerationError: Everything else
        """
        started = time.perf_counter()
        async with self._slots:
            try:
                response = await self._openai.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    **kwargs,
                )
            except Exception as e:
                classified = classify_exception(e)
                logger.error(f"Completion for chapter {chapter_id} failed: {classified}")
                raise classified from e

        if not response.choices:
            raise PermanentGenerationError(f"Backend returned no choices for chapter {chapter_id}")
        choice = response.choices[0]
        usage = response.usage
        result = CompletionResult(
            content=choice.message.content or "",
            tokens_in=usage.prompt_tokens if usage else 0,
            tokens_out=usage.completion_tokens if usage else 0,
            latency_ms=(time.perf_counter() - started) * 1000,
            finish_reason=choice.finish_reason,
        )
        self.usage.record(chapter_id, result.tokens_in, result.tokens_out)
        logger.debug(
            f"Chapter {chapter_id}: {result.tokens_in} in / {result.tokens_out} out "
            f"in {result.latency_ms:.0f}ms ({result.finish_reason})"
        )
        return result

    async def close(self) -> None:
        await self._openai.close()
