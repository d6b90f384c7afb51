"""Tests for taleforge.images — HttpImageGenerator and ImageTaskTracker."""

import asyncio
import json

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from taleforge.images import HttpImageGenerator, ImageTaskTracker
from taleforge.llm import LLMError, TransientLLMError


def _mock_response(body: dict, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


# ---------------------------------------------------------------------------
# HttpImageGenerator
# ---------------------------------------------------------------------------

class TestHttpImageGenerator:
    async def test_happy_path(self) -> None:
        body = {"data": [{"b64_json": "aGVsbG8=", "revised_prompt": "a harbour at dusk"}]}
        mock_post = AsyncMock(return_value=_mock_response(body))
        gen = HttpImageGenerator("http://img.test/", api_key="k")
        with patch("httpx.AsyncClient.post", mock_post):
            image = await gen.generate("harbour", size="512x512", model="img-1")
        assert image.base64 == "aGVsbG8="
        assert image.revised_prompt == "a harbour at dusk"
        assert mock_post.call_args[0][0] == "http://img.test/v1/images/generations"
        sent = mock_post.call_args.kwargs["json"]
        assert sent["size"] == "512x512"
        assert sent["model"] == "img-1"
        assert sent["response_format"] == "b64_json"
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer k"

    async def test_model_omitted_when_blank(self) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"data": [{"b64_json": "x"}]}))
        with patch("httpx.AsyncClient.post", mock_post):
            await HttpImageGenerator("http://img.test").generate("p", size="256x256")
        assert "model" not in mock_post.call_args.kwargs["json"]

    async def test_missing_data_raises(self) -> None:
        mock_post = AsyncMock(return_value=_mock_response({"data": []}))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="No image data"):
                await HttpImageGenerator("http://img.test").generate("p", size="256x256")

    async def test_non_json_body_raises(self) -> None:
        resp = _mock_response({})
        resp.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
        with patch("httpx.AsyncClient.post", AsyncMock(return_value=resp)):
            with pytest.raises(LLMError, match="Unreadable image backend response"):
                await HttpImageGenerator("http://img.test").generate("p", size="256x256")

    async def test_connect_error_is_transient(self) -> None:
        mock_post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(TransientLLMError):
                await HttpImageGenerator("http://img.test").generate("p", size="256x256")

    async def test_http_error_raises(self) -> None:
        mock_post = AsyncMock(return_value=_mock_response({}, status=400))
        with patch("httpx.AsyncClient.post", mock_post):
            with pytest.raises(LLMError, match="HTTP 400"):
                await HttpImageGenerator("http://img.test").generate("p", size="256x256")


# ---------------------------------------------------------------------------
# ImageTaskTracker
# ---------------------------------------------------------------------------

class TestImageTaskTracker:
    async def test_finished_tasks_are_forgotten(self) -> None:
        tracker = ImageTaskTracker()
        task = tracker.spawn(asyncio.sleep(0))
        assert len(tracker) == 1
        await task
        await asyncio.sleep(0)
        assert len(tracker) == 0

    async def test_drain_waits_for_running_tasks(self) -> None:
        tracker = ImageTaskTracker()
        done = []

        async def work() -> None:
            await asyncio.sleep(0.01)
            done.append(True)

        tracker.spawn(work())
        await tracker.drain(timeout=5)
        assert done == [True]

    async def test_drain_cancels_leftovers_after_timeout(self) -> None:
        tracker = ImageTaskTracker()
        task = tracker.spawn(asyncio.sleep(3600))
        await tracker.drain(timeout=0.01)
        assert task.cancelled()

    async def test_drain_with_no_tasks_returns(self) -> None:
        await ImageTaskTracker().drain()
