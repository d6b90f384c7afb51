"""LLM client — HTTP connection to a text-generation backend.

The pipeline injects an LLM object matching the protocol:

    async def __call__(self, stage, prompt, *, system="", options=None) -> str
    def stream(self, stage, prompt, *, system="", options=None) -> AsyncIterator[str]

`stage` identifies which pipeline step is calling (e.g. "narrative",
"classification", "tier3-entry-selection"). Implementations may use it for
logging or routing; HttpLLM only logs it. `options` is the ServiceConfig
resolved for that step: where to send the request and with which sampling
parameters.

Two implementations are provided:

    HttpLLM   — real HTTP client, supports KoboldCpp and OpenAI-compatible
                 backends. Selected by options.provider_format.
    EchoLLM   — returns the prompt back unchanged. Useful for smoke-testing
                 the pipeline wiring without a running model.

Tests use StubLLM (defined in the test helpers) instead.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Protocol

import httpx

from taleforge.config import ServiceConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol — every LLM implementation must match this signature
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(
        self,
        stage: str,
        prompt: str,
        *,
        system: str = "",
        options: ServiceConfig | None = None,
    ) -> str: ...

    def stream(
        self,
        stage: str,
        prompt: str,
        *,
        system: str = "",
        options: ServiceConfig | None = None,
    ) -> AsyncIterator[str]: ...


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be used or returns an error."""


class TransientLLMError(LLMError):
    """A failure worth one retry: connection refused, timeout, 5xx, 429."""


class MalformedOutputError(LLMError):
    """Structured output could not be parsed or validated against its schema."""


# ---------------------------------------------------------------------------
# HttpLLM — connects to a real backend
# ---------------------------------------------------------------------------

class HttpLLM:
    """Async HTTP client for text-generation backends.

    Supported formats (options.provider_format):
      "koboldcpp"  — POST /api/v1/generate          {"prompt": ...}
                     Response: {"results": [{"text": "..."}]}
                     Stream:   POST /api/extra/generate/stream, SSE
                               data: {"token": "..."}
      "openai"     — POST /v1/chat/completions       {"model", "messages", ...}
                     Response: {"choices": [{"message": {"content": "..."}}]}
                     Stream:   same URL with "stream": true, SSE
                               data: {"choices": [{"delta": {"content": "..."}}]}
                               data: [DONE]

    Args:
        default_options: Used when a call passes no options.
    """

    def __init__(self, default_options: ServiceConfig | None = None) -> None:
        self._default = default_options

    def _resolve(self, options: ServiceConfig | None) -> ServiceConfig:
        resolved = options or self._default
        if resolved is None:
            raise LLMError("No connection options given for LLM call")
        return resolved

    @staticmethod
    def _headers(options: ServiceConfig) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if options.api_key:
            headers["Authorization"] = f"Bearer {options.api_key}"
        return headers

    @staticmethod
    def _build_request(
        options: ServiceConfig, system: str, prompt: str, stream: bool
    ) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        base = options.provider_url.rstrip("/")
        if options.provider_format == "openai":
            messages = []
            if system:
                messages.append({"role": "system", "content": system})
            messages.append({"role": "user", "content": prompt})
            body: dict = {
                "messages": messages,
                "temperature": options.temperature,
                "max_tokens": options.max_tokens,
            }
            if options.model:
                body["model"] = options.model
            if options.reasoning_effort and options.reasoning_effort != "none":
                body["reasoning_effort"] = options.reasoning_effort
            if stream:
                body["stream"] = True
            return f"{base}/v1/chat/completions", body

        # koboldcpp (default)
        full_prompt = f"{system}\n\n{prompt}" if system else prompt
        body = {
            "prompt": full_prompt,
            "temperature": options.temperature,
            "max_length": options.max_tokens,
        }
        if stream:
            return f"{base}/api/extra/generate/stream", body
        return f"{base}/api/v1/generate", body

    @staticmethod
    def _parse_response(options: ServiceConfig, data: dict) -> str:
        """Extract the completion text from the response body."""
        if options.provider_format == "openai":
            choices = data.get("choices")
            if not choices or "message" not in choices[0]:
                raise LLMError("Unexpected response format from OpenAI-compatible backend")
            return choices[0]["message"].get("content") or ""

        results = data.get("results")
        if not results or "text" not in results[0]:
            raise LLMError("Unexpected response format from KoboldCpp backend")
        return results[0]["text"]

    @staticmethod
    def _parse_stream_line(options: ServiceConfig, line: str) -> str | None:
        """Return the text carried by one SSE line, "" for no text, None at end."""
        if not line.startswith("data:"):
            return ""
        payload = line[len("data:"):].strip()
        if payload == "[DONE]":
            return None
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("skipping unparsable stream line: %r", payload[:80])
            return ""
        if options.provider_format == "openai":
            choices = data.get("choices") or [{}]
            return (choices[0].get("delta") or {}).get("content") or ""
        return data.get("token", "")

    @staticmethod
    def _map_error(options: ServiceConfig, exc: httpx.HTTPError) -> LLMError:
        base = options.provider_url.rstrip("/")
        if isinstance(exc, httpx.ConnectError):
            return TransientLLMError(f"Cannot connect to LLM backend at {base}")
        if isinstance(exc, httpx.TimeoutException):
            return TransientLLMError(f"LLM backend timed out after {options.timeout}s")
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            message = f"LLM backend returned HTTP {status}"
            if status >= 500 or status == 429:
                return TransientLLMError(message)
            return LLMError(message)
        return TransientLLMError(f"LLM transport error: {exc}")

    async def __call__(
        self,
        stage: str,
        prompt: str,
        *,
        system: str = "",
        options: ServiceConfig | None = None,
    ) -> str:
        opts = self._resolve(options)
        url, body = self._build_request(opts, system, prompt, stream=False)
        logger.debug("llm call stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=opts.timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers(opts))
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise self._map_error(opts, e) from e

        try:
            text = self._parse_response(opts, resp.json())
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise LLMError(f"Unreadable response body from {opts.provider_url}: {e}") from e
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text

    async def stream(
        self,
        stage: str,
        prompt: str,
        *,
        system: str = "",
        options: ServiceConfig | None = None,
    ) -> AsyncIterator[str]:
        opts = self._resolve(options)
        url, body = self._build_request(opts, system, prompt, stream=True)
        logger.debug("llm stream stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        total = 0
        try:
            async with httpx.AsyncClient(timeout=opts.timeout) as client:
                async with client.stream(
                    "POST", url, json=body, headers=self._headers(opts)
                ) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        text = self._parse_stream_line(opts, line)
                        if text is None:
                            break
                        if text:
                            total += len(text)
                            yield text
        except httpx.HTTPError as e:
            raise self._map_error(opts, e) from e
        logger.debug("llm stream done stage=%s len=%d", stage, total)


# ---------------------------------------------------------------------------
# EchoLLM — returns the prompt unchanged; useful for pipeline smoke tests
# ---------------------------------------------------------------------------

class EchoLLM:
    """Returns the prompt text as-is. No network calls.

    Lets you verify that the pipeline wiring (retrieval, context building,
    checkpoint writes) works end-to-end without a running model.
    The output won't be valid JSON for structured stages, so classification
    degrades to an empty delta; use StubLLM in tests when you need
    controlled responses.
    """

    async def __call__(
        self,
        stage: str,
        prompt: str,
        *,
        system: str = "",
        options: ServiceConfig | None = None,
    ) -> str:
        logger.debug("EchoLLM stage=%s prompt_len=%d", stage, len(prompt))
        return prompt

    async def stream(
        self,
        stage: str,
        prompt: str,
        *,
        system: str = "",
        options: ServiceConfig | None = None,
    ) -> AsyncIterator[str]:
        logger.debug("EchoLLM stream stage=%s prompt_len=%d", stage, len(prompt))
        for paragraph in prompt.split("\n\n"):
            yield paragraph + "\n\n"
