"""
Unit tests for fact_memory/generation/ollama_generator.py

Uses httpx.MockTransport in place of a running Ollama server.
"""
import json

import httpx
import pytest

from fact_memory.generation.generator import GenerationConfig
from fact_memory.generation.ollama_generator import OllamaGenerator

# Mark all tests as async
pytestmark = pytest.mark.asyncio


def _generator(handler):
    client = httpx.AsyncClient(
        base_url="http://ollama.test",
        transport=httpx.MockTransport(handler),
    )
    return OllamaGenerator(model="phi3:mini", base_url="http://ollama.test", client=client)


async def test_generate_posts_prompt_and_options():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"response": '  [{"key": "name"}]  '})

    generator = _generator(handler)
    result = await generator.generate(
        "system", 'Aussage: "Ich heiße Anna."', GenerationConfig(temperature=0.0, max_tokens=64),
    )
    await generator.aclose()

    assert seen["path"] == "/api/generate"
    assert seen["body"]["system"] == "system"
    assert seen["body"]["prompt"] == 'Aussage: "Ich heiße Anna."'
    assert seen["body"]["stream"] is False
    assert seen["body"]["options"]["temperature"] == 0.0
    assert seen["body"]["options"]["num_predict"] == 64
    assert result.text == '[{"key": "name"}]'
    assert result.model_used == "phi3:mini"


async def test_config_model_overrides_default():
    seen = {}

    def handler(request):
        seen["model"] = json.loads(request.content)["model"]
        return httpx.Response(200, json={"response": "[]"})

    generator = _generator(handler)

    result = await generator.generate("system", "prompt", GenerationConfig(model_name="llama3"))
    assert seen["model"] == "llama3"
    assert result.model_used == "llama3"

    result = await generator.generate("system", "prompt", GenerationConfig())
    assert seen["model"] == "phi3:mini"
    assert result.model_used == "phi3:mini"


async def test_non_200_raises():
    generator = _generator(lambda request: httpx.Response(500, text="model not loaded"))

    with pytest.raises(RuntimeError, match="status 500"):
        await generator.generate("system", "prompt")


async def test_connection_error_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    generator = _generator(handler)

    with pytest.raises(RuntimeError, match="Ollama request failed"):
        await generator.generate("system", "prompt")


async def test_timeout_raises():
    def handler(request):
        raise httpx.ReadTimeout("too slow")

    generator = _generator(handler)

    with pytest.raises(RuntimeError, match="timed out"):
        await generator.generate("system", "prompt")


async def test_is_available():
    up = _generator(lambda request: httpx.Response(200, json={"models": []}))
    assert await up.is_available()

    def refuse(request):
        raise httpx.ConnectError("connection refused")

    down = _generator(refuse)
    assert not await down.is_available()
