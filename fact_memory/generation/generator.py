"""Generation collaborator interface used by the extractor."""
from __future__ import annotations
from typing import Dict, Optional
from dataclasses import dataclass
from abc import ABC, abstractmethod
import time


@dataclass
class GenerationConfig:
    """Configuration for text generation."""
    model_name: Optional[str] = None
    temperature: float = 0.1
    max_tokens: int = 500
    top_p: float = 0.9


@dataclass
class GeneratedResponse:
    """Container for generated response with metadata."""
    text: str
    model_used: str
    prompt_length: int
    response_length: int
    processing_time: float = 0.0


class BaseGenerator(ABC):
    """Abstract base class for text generators."""

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        config: Optional[GenerationConfig] = None,
    ) -> GeneratedResponse:
        """Generate text for an instruction template and user prompt."""
        pass

    @abstractmethod
    async def is_available(self) -> bool:
        """Check if the generator is available and ready to use."""
        pass


class MockGenerator(BaseGenerator):
    """
    Mock generator for tests and offline use.

    Returns the first canned response whose keyword occurs in the user
    prompt, otherwise the default (an empty JSON array).
    """

    def __init__(self, responses: Optional[Dict[str, str]] = None, default: str = "[]"):
        self.mock_responses = dict(responses or {})
        self.default = default
        self.calls = []

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        config: Optional[GenerationConfig] = None,
    ) -> GeneratedResponse:
        """Generate a mock response based on keywords in the prompt."""
        start = time.time()
        self.calls.append(user_prompt)
        prompt_lower = user_prompt.lower()

        response_text = self.default
        for keyword, response in self.mock_responses.items():
            if keyword.lower() in prompt_lower:
                response_text = response
                break

        return GeneratedResponse(
            text=response_text,
            model_used="mock_generator",
            prompt_length=len(system_prompt) + len(user_prompt),
            response_length=len(response_text),
            processing_time=time.time() - start,
        )

    async def is_available(self) -> bool:
        """Mock generator is always available."""
        return True
