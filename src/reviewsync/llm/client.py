"""Ollama client for local generation.

Request/response wrapper around Ollama's /api/generate with a preflight
check (/api/tags) confirming the configured model is installed.

Error mapping:
- host unreachable      -> LLMConnectionError (never retried)
- request timed out     -> LLMTimeoutError
- non-200 / bad payload -> LLMError
"""

import logging
import time
from typing import Any

import httpx

from ..metrics import generation_duration_seconds

logger = logging.getLogger("reviewsync.llm.client")

__all__ = [
    "LLMConnectionError",
    "LLMError",
    "LLMTimeoutError",
    "ModelNotInstalledError",
    "OllamaClient",
]


class LLMError(Exception):
    """Raised when a generation request fails."""


class LLMConnectionError(LLMError, ConnectionError):
    """Raised when the Ollama host cannot be reached at all."""


class LLMTimeoutError(LLMError, TimeoutError):
    """Raised when a generation call exceeds its timeout."""


class ModelNotInstalledError(LLMError):
    """Raised when the configured model is missing from the Ollama host."""

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"model '{model}' is not installed; run 'ollama pull {model}'")


class OllamaClient:
    """Async Ollama client.

    Example:
        >>> async with OllamaClient("http://localhost:11434", "llama3.2") as llm:
        ...     await llm.check_connection()
        ...     text = await llm.generate("Summarize: ...")
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.2",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL
            model: Model name used for every request
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=5.0),
            transport=transport,
        )

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def list_models(self) -> list[str]:
        """Names of installed models."""
        try:
            response = await self._client.get("/api/tags")
        except httpx.ConnectError as e:
            raise LLMConnectionError(f"Cannot connect to Ollama at {self.base_url}: {e}") from e
        except httpx.TimeoutException as e:
            raise LLMTimeoutError(f"Ollama tags request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise LLMError(f"Ollama HTTP error: {e}") from e

        if response.status_code != 200:
            raise LLMError(f"Ollama API returned status {response.status_code}")
        try:
            return [m.get("name", "") for m in response.json().get("models") or []]
        except (ValueError, AttributeError) as e:
            raise LLMError(f"Invalid Ollama tags response: {e}") from e

    async def check_connection(self) -> None:
        """Verify Ollama is reachable and the configured model is installed.

        Raises:
            LLMConnectionError: Host unreachable
            ModelNotInstalledError: Model missing
            LLMError: Unexpected response
        """
        models = await self.list_models()
        # Ollama reports untagged pulls as "<name>:latest"
        if self.model not in models and f"{self.model}:latest" not in models:
            logger.error(
                "ollama_model_missing",
                extra={"model": self.model, "installed": models},
            )
            raise ModelNotInstalledError(self.model)
        logger.info("ollama_ready", extra={"model": self.model, "base_url": self.base_url})

    async def generate(self, prompt: str, task: str = "generate") -> str:
        """Run a non-streaming generation.

        Args:
            prompt: Full prompt text
            task: Task label for latency metrics

        Returns:
            The model's response text

        Raises:
            LLMConnectionError: Host unreachable
            LLMTimeoutError: Request exceeded the HTTP timeout
            LLMError: Non-200 status or malformed body
        """
        started = time.monotonic()
        try:
            response = await self._client.post(
                "/api/generate",
                json={"model": self.model, "prompt": prompt, "stream": False},
            )
        except httpx.ConnectError as e:
            logger.error("ollama_unreachable", extra={"error": str(e)})
            raise LLMConnectionError(f"Cannot connect to Ollama at {self.base_url}: {e}") from e
        except httpx.TimeoutException as e:
            logger.warning("ollama_timeout", extra={"task": task, "error": str(e)})
            raise LLMTimeoutError(f"Ollama request timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.error("ollama_http_error", extra={"task": task, "error": str(e)})
            raise LLMError(f"Ollama HTTP error: {e}") from e
        finally:
            generation_duration_seconds.labels(task=task).observe(time.monotonic() - started)

        if response.status_code != 200:
            raise LLMError(
                f"Ollama API returned status {response.status_code}: {response.text[:200]}"
            )

        try:
            result = response.json()
        except ValueError as e:
            raise LLMError(f"Invalid Ollama response: {e}") from e

        text = result.get("response", "")
        logger.debug(
            "ollama_generation_success",
            extra={
                "task": task,
                "prompt_chars": len(prompt),
                "response_chars": len(text),
                "done": result.get("done"),
            },
        )
        return text
