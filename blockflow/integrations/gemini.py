"""Gemini document summarizer.

Talks to the Generative Language REST API over httpx. Documents longer than
one chunk are split with overlap, each chunk is summarized, and the chunk
summaries are synthesized into one final summary.
"""

from typing import Protocol

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from blockflow.config import settings
from blockflow.integrations.base import ExternalServiceError, InvalidApiKeyError, RateLimitedError

logger = structlog.get_logger()

PROVIDER = "Gemini"

DIRECT_PROMPT = (
    "You are an expert in document analysis and summarization.\n"
    "Provide a clear, concise, and accurate summary of the following document.\n"
    "Focus on key points, main arguments, and important conclusions.\n\n"
    "---\nDOCUMENT CONTENT:\n{text}"
)

CHUNK_PROMPT = (
    "This is one section of a larger document. "
    "Please summarize ONLY this section clearly and concisely.\n\n"
    "---\nSECTION CONTENT:\n{text}"
)

COMBINE_PROMPT = (
    "The following are summaries of consecutive sections of a large document.\n"
    "Synthesize them into one cohesive, structured, and comprehensive summary.\n\n"
    "---\nSECTION SUMMARIES:\n{text}"
)


class Summarizer(Protocol):
    """Anything that can summarize a document with a caller-supplied key."""

    async def summarize(self, text: str, api_key: str) -> str: ...


def split_into_chunks(text: str, chunk_size: int, overlap: int) -> list[str]:
    """Split text into windows of ``chunk_size`` that overlap by ``overlap``."""
    if chunk_size <= overlap:
        raise ValueError("chunk_size must be larger than overlap")
    step = chunk_size - overlap
    return [text[i : i + chunk_size] for i in range(0, len(text), step)]


class GeminiSummarizer:
    """Summarizer backed by ``models/{model}:generateContent``.

    Example usage:
        summarizer = GeminiSummarizer()
        summary = await summarizer.summarize(document_text, api_key)
    """

    def __init__(
        self,
        model: str | None = None,
        base_url: str | None = None,
        chunk_size: int | None = None,
        chunk_overlap: int | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model or settings.gemini_model
        self.base_url = (base_url or settings.gemini_base_url).rstrip("/")
        self.chunk_size = chunk_size or settings.ai_chunk_size
        self.chunk_overlap = settings.ai_chunk_overlap if chunk_overlap is None else chunk_overlap
        self.max_attempts = max_attempts or settings.ai_max_retries
        self.backoff_seconds = (
            settings.ai_retry_backoff if backoff_seconds is None else backoff_seconds
        )
        self.timeout = timeout or settings.ai_timeout
        self._transport = transport

    async def summarize(self, text: str, api_key: str) -> str:
        """Summarize a document.

        Raises:
            InvalidApiKeyError: If the key is rejected
            RateLimitedError: If 429 persists through every retry
            ExternalServiceError: For any other provider failure
        """
        if not text or not text.strip():
            raise ValueError("Document text must be a non-empty string")
        if not api_key:
            raise ValueError("Gemini API key is required")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            if len(text) <= self.chunk_size:
                return await self._generate(client, DIRECT_PROMPT.format(text=text), api_key)

            chunks = split_into_chunks(text, self.chunk_size, self.chunk_overlap)
            logger.info("summarize_chunked", chunk_count=len(chunks), text_length=len(text))

            summaries: list[str] = []
            for index, chunk in enumerate(chunks):
                try:
                    summaries.append(
                        await self._generate(client, CHUNK_PROMPT.format(text=chunk), api_key)
                    )
                except InvalidApiKeyError:
                    raise
                except ExternalServiceError as e:
                    logger.warning("summarize_chunk_failed", chunk=index + 1, error=str(e))

            if not summaries:
                raise ExternalServiceError(
                    "Failed to summarize any part of the document.", PROVIDER
                )

            combined = "\n\n---\n\n".join(summaries)
            return await self._generate(client, COMBINE_PROMPT.format(text=combined), api_key)

    async def _generate(self, client: httpx.AsyncClient, prompt: str, api_key: str) -> str:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=30),
            retry=retry_if_exception_type(RateLimitedError),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._call(client, prompt, api_key)
        raise ExternalServiceError("Summarization did not run", PROVIDER)

    async def _call(self, client: httpx.AsyncClient, prompt: str, api_key: str) -> str:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        try:
            response = await client.post(
                url,
                params={"key": api_key},
                json={"contents": [{"parts": [{"text": prompt}]}]},
            )
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Gemini request failed: {e}", PROVIDER) from e

        if response.status_code == 429:
            logger.warning("gemini_rate_limited", model=self.model)
            raise RateLimitedError(PROVIDER)
        if response.status_code in (401, 403) or (
            response.status_code == 400 and "API_KEY_INVALID" in response.text
        ):
            raise InvalidApiKeyError(PROVIDER)
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Gemini API error ({response.status_code})",
                PROVIDER,
                status_code=response.status_code,
            )

        try:
            text = response.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExternalServiceError("Empty response from Gemini API", PROVIDER) from e
        if not text:
            raise ExternalServiceError("Empty response from Gemini API", PROVIDER)
        return text
