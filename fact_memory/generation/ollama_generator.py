"""
Ollama generator adapter for local LLM inference.

Implements BaseGenerator over the Ollama REST API using an async
httpx client.
"""

import time
from typing import Optional

import httpx

from fact_memory.generation.generator import (
    BaseGenerator,
    GeneratedResponse,
    GenerationConfig,
)


class OllamaGenerator(BaseGenerator):
    """
    Generator that uses Ollama for local LLM inference.

    Ollama must be running locally (default: http://localhost:11434).
    """

    def __init__(
        self,
        model: str = "phi3:mini",
        base_url: str = "http://localhost:11434",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize Ollama generator.

        Args:
            model: Ollama model name (e.g., "phi3:mini", "llama3", "mistral")
            base_url: Ollama API base URL
            timeout: Request timeout in seconds
            client: Optional pre-built httpx client (tests inject a mock transport)
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def is_available(self) -> bool:
        """Check if Ollama server is running."""
        try:
            response = await self._client.get("/api/tags", timeout=5.0)
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        config: Optional[GenerationConfig] = None,
    ) -> GeneratedResponse:
        """
        Generate text using Ollama (non-streaming).

        Args:
            system_prompt: Fixed instruction template
            user_prompt: Sanitized user content
            config: Generation configuration

        Returns:
            GeneratedResponse with metadata

        Raises:
            RuntimeError: If the request fails or returns a non-200 status
        """
        start_time = time.time()
        config = config or GenerationConfig()
        model = config.model_name or self.model

        payload = {
            "model": model,
            "system": system_prompt,
            "prompt": user_prompt,
            "stream": False,
            "options": {
                "temperature": config.temperature,
                "num_predict": config.max_tokens,
                "top_p": config.top_p,
            },
        }

        try:
            response = await self._client.post("/api/generate", json=payload)
        except httpx.TimeoutException as e:
            raise RuntimeError(f"Ollama request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise RuntimeError(
                f"Ollama request failed: {e}. Check if Ollama is running at {self.base_url}."
            ) from e

        if response.status_code != 200:
            raise RuntimeError(
                f"Ollama API returned status {response.status_code}: {response.text}"
            )

        response_text = response.json().get("response", "").strip()

        return GeneratedResponse(
            text=response_text,
            model_used=model,
            prompt_length=len(system_prompt) + len(user_prompt),
            response_length=len(response_text),
            processing_time=time.time() - start_time,
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
