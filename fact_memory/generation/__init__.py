"""Generation collaborators for candidate extraction."""
from .generator import (
    GenerationConfig, GeneratedResponse,
    BaseGenerator, MockGenerator
)
from .ollama_generator import OllamaGenerator

__all__ = [
    'GenerationConfig', 'GeneratedResponse',
    'BaseGenerator', 'MockGenerator',
    'OllamaGenerator',
]
