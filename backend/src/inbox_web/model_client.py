from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import httpx

logger = logging.getLogger(__name__)

SPEECH_MODEL = "tts-1"
SPEECH_FORMAT = "opus"
SPEECH_MIME_TYPE = "audio/ogg"


class ModelClientError(Exception):
    """Base error for generative model calls."""


class ModelConnectionError(ModelClientError):
    pass


class ModelTimeoutError(ModelClientError):
    pass


class ModelResponseError(ModelClientError):
    """Invalid, empty or error response from the model API."""


@dataclass(frozen=True)
class ChatResult:
    content: str
    tokens_used: int
    model: str
    finish_reason: str = "stop"
    latency_ms: int = 0


class ModelClient(Protocol):
    def chat(
        self,
        messages: Sequence[dict[str, str]],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> ChatResult: ...

    def synthesize_speech(self, text: str, *, voice: str, speed: float) -> bytes: ...


def parse_chat_completion(response_data: Any, *, model: str, latency_ms: int = 0) -> ChatResult:
    if not isinstance(response_data, dict):
        raise ModelResponseError("Invalid response: expected a JSON object")
    if "error" in response_data:
        error_info = response_data["error"]
        error_message = error_info.get("message", str(error_info)) if isinstance(error_info, dict) else str(error_info)
        raise ModelResponseError(f"Model API error: {error_message}")

    try:
        choices = response_data.get("choices") or []
        if not choices:
            raise ModelResponseError("Invalid response: no choices")
        choice = choices[0]
        content = (choice.get("message") or {}).get("content") or ""
        finish_reason = choice.get("finish_reason") or "unknown"
        usage = response_data.get("usage") or {}
        tokens_used = usage.get("total_tokens")
        if tokens_used is None:
            tokens_used = int(usage.get("prompt_tokens", 0)) + int(usage.get("completion_tokens", 0))
    except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
        raise ModelResponseError(f"Invalid response format: {exc}") from exc

    return ChatResult(
        content=str(content),
        tokens_used=int(tokens_used),
        model=str(response_data.get("model") or model),
        finish_reason=str(finish_reason),
        latency_ms=latency_ms,
    )


class HttpModelClient:
    """OpenAI-compatible chat completions and speech client."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._client = httpx.Client(
            base_url=stripped_url,
            headers={"Authorization": f"Bearer {stripped_key}"},
            timeout=timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def chat(
        self,
        messages: Sequence[dict[str, str]],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> ChatResult:
        payload = {
            "model": model,
            "messages": list(messages),
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        logger.debug("chat completion model=%s messages=%d max_tokens=%d", model, len(messages), max_tokens)
        started = time.monotonic()
        response = self._post("/v1/chat/completions", json=payload)
        try:
            response_data = response.json()
        except ValueError as exc:
            raise ModelResponseError("Invalid response: body is not JSON") from exc
        latency_ms = int((time.monotonic() - started) * 1000)
        return parse_chat_completion(response_data, model=model, latency_ms=latency_ms)

    def synthesize_speech(self, text: str, *, voice: str, speed: float) -> bytes:
        payload = {
            "model": SPEECH_MODEL,
            "input": text,
            "voice": voice,
            "speed": speed,
            "response_format": SPEECH_FORMAT,
        }
        response = self._post("/v1/audio/speech", json=payload)
        if not response.content:
            raise ModelResponseError("Speech response was empty")
        return response.content

    def _post(self, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.post(path, **kwargs)
            response.raise_for_status()
            return response
        except httpx.TimeoutException as exc:
            raise ModelTimeoutError(f"Timeout error: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise ModelResponseError(f"HTTP error: {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise ModelConnectionError(f"Connection error: {exc}") from exc


class StubModelClient:
    """Deterministic model client for local runs and tests.

    Queued replies are returned in order; a queued exception is raised instead.
    With an empty queue the default reply is returned.
    """

    def __init__(self, *, default_reply: str = "Hola, gracias por escribirnos. ¿En qué te puedo ayudar?") -> None:
        self.default_reply = default_reply
        self.calls: list[dict[str, Any]] = []
        self.speech_calls: list[dict[str, Any]] = []
        self.speech_error: ModelClientError | None = None
        self._queue: deque[str | ModelClientError] = deque()

    def queue_reply(self, reply: str | ModelClientError) -> None:
        self._queue.append(reply)

    def chat(
        self,
        messages: Sequence[dict[str, str]],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> ChatResult:
        self.calls.append(
            {
                "messages": [dict(item) for item in messages],
                "model": model,
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        reply = self._queue.popleft() if self._queue else self.default_reply
        if isinstance(reply, ModelClientError):
            raise reply
        prompt_chars = sum(len(item.get("content", "")) for item in messages)
        return ChatResult(content=reply, tokens_used=prompt_chars // 4 + len(reply) // 4, model=model)

    def synthesize_speech(self, text: str, *, voice: str, speed: float) -> bytes:
        self.speech_calls.append({"text": text, "voice": voice, "speed": speed})
        if self.speech_error is not None:
            raise self.speech_error
        return b"OggS" + text.encode("utf-8")


class UnconfiguredModelClient:
    """Selected when MODEL_PROVIDER_TYPE=http but the API key is missing."""

    def __init__(self, *, missing: str) -> None:
        self._missing = missing

    def chat(
        self,
        messages: Sequence[dict[str, str]],
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> ChatResult:
        raise ModelClientError(f"model not configured: {self._missing}")

    def synthesize_speech(self, text: str, *, voice: str, speed: float) -> bytes:
        raise ModelClientError(f"model not configured: {self._missing}")
