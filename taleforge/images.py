"""Image generation client and detached-task tracking.

Scene images are generated after the narrative is complete and must never
hold up the turn. The Image phase hands each generation to an
ImageTaskTracker, which runs it as a detached asyncio task; results are
reported out-of-band through the event sink. drain() waits for whatever is
still running, for use at shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any, NamedTuple, Protocol

import httpx

from taleforge.llm import LLMError, TransientLLMError

logger = logging.getLogger(__name__)


class GeneratedImage(NamedTuple):
    base64: str
    revised_prompt: str | None = None


class ImageGenerator(Protocol):
    async def generate(self, prompt: str, *, size: str, model: str = "") -> GeneratedImage: ...


# ---------------------------------------------------------------------------
# HttpImageGenerator — OpenAI-compatible /v1/images/generations
# ---------------------------------------------------------------------------

class HttpImageGenerator:
    """POST /v1/images/generations  {"model", "prompt", "size", "n": 1, "response_format": "b64_json"}
    Response: {"data": [{"b64_json": "...", "revised_prompt": "..."}]}
    """

    def __init__(self, provider_url: str, api_key: str = "", timeout: float = 180.0) -> None:
        self._base = provider_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout

    async def generate(self, prompt: str, *, size: str, model: str = "") -> GeneratedImage:
        body: dict[str, Any] = {
            "prompt": prompt,
            "size": size,
            "n": 1,
            "response_format": "b64_json",
        }
        if model:
            body["model"] = model
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        url = f"{self._base}/v1/images/generations"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=headers)
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise TransientLLMError(f"Cannot connect to image backend at {self._base}") from e
        except httpx.TimeoutException as e:
            raise TransientLLMError(f"Image backend timed out after {self._timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(f"Image backend returned HTTP {e.response.status_code}") from e

        try:
            data = (resp.json().get("data") or [{}])[0]
            b64 = data.get("b64_json")
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise LLMError(f"Unreadable image backend response: {e}") from e
        if not b64:
            raise LLMError("No image data in image backend response")
        return GeneratedImage(data["b64_json"], data.get("revised_prompt"))


# ---------------------------------------------------------------------------
# ImageTaskTracker
# ---------------------------------------------------------------------------

class ImageTaskTracker:
    """Owns detached image-generation tasks so they are not garbage-collected mid-flight."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for running tasks; cancel whatever is left after `timeout`."""
        if not self._tasks:
            return
        pending = set(self._tasks)
        logger.info("draining %d image task(s)", len(pending))
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning("cancelled %d image task(s) still running at drain", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)
