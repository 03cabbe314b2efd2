"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence, cast

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from openai.types.chat import ChatCompletionMessageParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

__all__ = ["AIClient", "ClientSettings", "StreamInterruptedError"]

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIError,
    APIStatusError,
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)


class StreamInterruptedError(Exception):
    """Raised when a stream fails after text has already been delivered.

    Such failures are never retried: replaying the request would duplicate
    the text the caller has already consumed.
    """

    def __init__(self, message: str, *, chunks_delivered: int) -> None:
        self.chunks_delivered = chunks_delivered
        super().__init__(message)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    temperature: float | None = 0.2
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


class AIClient:
    """Async client streaming chat completions as plain text chunks.

    Opening the stream (up to and including the first text chunk) is retried
    with exponential backoff; once text has been yielded, errors surface as
    :class:`StreamInterruptedError`.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def stream_text(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        metadata: Mapping[str, str] | None = None,
        **extra_params: Any,
    ) -> AsyncIterator[str]:
        """Stream the assistant reply for ``messages`` as text chunks."""

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            temperature=self._settings.temperature if temperature is None else temperature,
            max_tokens=max_tokens,
            metadata=metadata,
            extra_params=extra_params,
        )
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        async with AsyncExitStack() as stack:
            iterator, first_text = await self._open_stream(payload, stack)
            if first_text is None:
                return
            delivered = 1
            yield first_text
            try:
                while True:
                    try:
                        event = await anext(iterator)
                    except StopAsyncIteration:
                        break
                    text = _delta_text(event)
                    if text:
                        delivered += 1
                        yield text
            except _RETRYABLE_ERRORS as exc:
                raise StreamInterruptedError(
                    f"Model stream interrupted after {delivered} chunk(s): {exc}",
                    chunks_delivered=delivered,
                ) from exc

    async def _open_stream(
        self, payload: Mapping[str, Any], stack: AsyncExitStack
    ) -> tuple[AsyncIterator[Any], str | None]:
        """Open the stream and read up to the first text chunk, with retries."""

        async for attempt in self._retrying():
            with attempt:
                attempt_stack = AsyncExitStack()
                try:
                    stream = await attempt_stack.enter_async_context(
                        self._client.chat.completions.stream(**payload)
                    )
                    iterator = stream.__aiter__()
                    first_text = await _first_text(iterator)
                except BaseException:
                    await attempt_stack.aclose()
                    raise
                stack.push_async_callback(attempt_stack.aclose)
                return iterator, first_text
        raise RuntimeError("retry loop exited without a result")  # pragma: no cover

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
        )

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            try:
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            except (TypeError, ValueError) as exc:
                raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        temperature: float | None,
        max_tokens: int | None,
        metadata: Mapping[str, str] | None,
        extra_params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
        }

        merged_metadata = self._merge_metadata(metadata)
        if merged_metadata:
            payload["metadata"] = merged_metadata
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if extra_params:
            payload.update(extra_params)

        return payload

    def _merge_metadata(self, runtime_metadata: Mapping[str, str] | None) -> Dict[str, str] | None:
        combined: Dict[str, str] = {}
        if self._settings.metadata:
            combined.update(self._settings.metadata)
        if runtime_metadata:
            combined.update(runtime_metadata)
        return combined or None

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result


def _delta_text(event: Any) -> str | None:
    if getattr(event, "type", None) != "content.delta":
        return None
    delta = getattr(event, "delta", None)
    return str(delta) if delta else None


async def _first_text(iterator: AsyncIterator[Any]) -> str | None:
    while True:
        try:
            event = await anext(iterator)
        except StopAsyncIteration:
            return None
        text = _delta_text(event)
        if text:
            return text
