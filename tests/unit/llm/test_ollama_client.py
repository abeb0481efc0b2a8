"""Unit tests for OllamaClient.

Uses httpx.MockTransport so no Ollama host is needed.
"""

import json

import httpx
import pytest

from reviewsync.llm.client import (
    LLMConnectionError,
    LLMError,
    LLMTimeoutError,
    ModelNotInstalledError,
    OllamaClient,
)


def _client(handler, model: str = "llama3.2") -> OllamaClient:
    return OllamaClient("http://ollama.test:11434/", model, transport=httpx.MockTransport(handler))


def _tags(*names: str):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": n} for n in names]})

    return handler


# =============================================================================
# Preflight
# =============================================================================


class TestCheckConnection:
    @pytest.mark.asyncio
    async def test_model_installed(self):
        async with _client(_tags("llama3.2", "mistral:7b")) as client:
            await client.check_connection()

    @pytest.mark.asyncio
    async def test_latest_tag_accepted(self):
        async with _client(_tags("llama3.2:latest")) as client:
            await client.check_connection()

    @pytest.mark.asyncio
    async def test_model_missing(self):
        async with _client(_tags("mistral:7b")) as client:
            with pytest.raises(ModelNotInstalledError) as exc_info:
                await client.check_connection()

        assert exc_info.value.model == "llama3.2"
        assert "ollama pull llama3.2" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(LLMConnectionError):
                await client.check_connection()

    @pytest.mark.asyncio
    async def test_list_models(self):
        async with _client(_tags("a", "b:1b")) as client:
            assert await client.list_models() == ["a", "b:1b"]

    @pytest.mark.asyncio
    async def test_tags_error_status(self):
        async with _client(lambda request: httpx.Response(500)) as client:
            with pytest.raises(LLMError):
                await client.list_models()


# =============================================================================
# Generation
# =============================================================================


class TestGenerate:
    @pytest.mark.asyncio
    async def test_non_streaming_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": "A summary.", "done": True})

        async with _client(handler, model="qwen2.5") as client:
            text = await client.generate("Summarize this", task="summarize_description")

        assert text == "A summary."
        assert seen["path"] == "/api/generate"
        assert seen["body"] == {"model": "qwen2.5", "prompt": "Summarize this", "stream": False}

    @pytest.mark.asyncio
    async def test_missing_response_field(self):
        async with _client(lambda request: httpx.Response(200, json={"done": True})) as client:
            assert await client.generate("p") == ""

    @pytest.mark.asyncio
    async def test_error_status(self):
        async with _client(lambda request: httpx.Response(404, text="model not found")) as client:
            with pytest.raises(LLMError, match="404"):
                await client.generate("p")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        async with _client(lambda request: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(LLMError):
                await client.generate("p")

    @pytest.mark.asyncio
    async def test_connect_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(LLMConnectionError) as exc_info:
                await client.generate("p")

        # Callers that only know ConnectionError can still catch it
        assert isinstance(exc_info.value, ConnectionError)

    @pytest.mark.asyncio
    async def test_read_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with _client(handler) as client:
            with pytest.raises(LLMTimeoutError):
                await client.generate("p")
