"""Tests for the Ollama client with HTTP calls replaced by a scripted responder."""

import urllib.error

import pytest

from stancestream.app.core import ollama_client
from stancestream.app.core.errors import EmbeddingError, ErrorKind, GenerationError


class ScriptedHttp:
    """Stands in for ``_post_json``: returns or raises the queued outcomes in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    def __call__(self, url, payload, timeout=120):
        self.requests.append((url, payload))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _too_many_requests():
    return urllib.error.HTTPError("http://ollama/api/generate", 429, "Too Many Requests", None, None)


@pytest.fixture(autouse=True)
def no_retry_delay(monkeypatch):
    monkeypatch.setattr(ollama_client, "RETRY_DELAY_SEC", 0.0)


@pytest.fixture
def http(monkeypatch):
    def _install(*outcomes):
        scripted = ScriptedHttp(*outcomes)
        monkeypatch.setattr(ollama_client, "_post_json", scripted)
        return scripted

    return _install


class TestGenerate:
    async def test_payload_and_stripped_response(self, http):
        scripted = http({"response": "  We should act now.  "})
        service = ollama_client.OllamaGenerationService(model="llama3.1", base_url="http://ollama/")

        text = await service.generate("You are SenatorBot.", "Continue.", 0.8, 150)

        url, payload = scripted.requests[0]
        assert text == "We should act now."
        assert url == "http://ollama/api/generate"
        assert payload["system"] == "You are SenatorBot."
        assert payload["prompt"] == "Continue."
        assert payload["options"] == {"temperature": 0.8, "num_predict": 150}

    async def test_rate_limit_is_retried(self, http):
        scripted = http(_too_many_requests(), {"response": "Second try."})
        text = await ollama_client.generate_ollama("p", model="m", base_url="http://ollama")
        assert text == "Second try."
        assert len(scripted.requests) == 2

    async def test_persistent_rate_limit_becomes_generation_error(self, http):
        scripted = http(*[_too_many_requests() for _ in range(3)])
        with pytest.raises(GenerationError) as info:
            await ollama_client.generate_ollama("p", model="m", base_url="http://ollama")
        assert len(scripted.requests) == 3
        assert info.value.kind == ErrorKind.TRANSIENT

    async def test_network_error_becomes_generation_error(self, http):
        http(*[urllib.error.URLError("connection refused") for _ in range(3)])
        with pytest.raises(GenerationError):
            await ollama_client.generate_ollama("p", model="m", base_url="http://ollama")

    async def test_empty_response_is_an_error(self, http):
        http({"response": "   "})
        with pytest.raises(GenerationError):
            await ollama_client.generate_ollama("p", model="m", base_url="http://ollama")


class TestEmbed:
    async def test_vector_is_returned_as_floats(self, http):
        scripted = http({"embedding": [1, 2.5, 0]})
        service = ollama_client.OllamaEmbeddingService(model="nomic-embed-text", base_url="http://ollama")

        assert await service.embed("hello") == [1.0, 2.5, 0.0]
        url, payload = scripted.requests[0]
        assert url == "http://ollama/api/embeddings"
        assert payload == {"model": "nomic-embed-text", "prompt": "hello"}

    async def test_missing_vector_is_embedding_error(self, http):
        http({"embedding": []})
        with pytest.raises(EmbeddingError):
            await ollama_client.embed_ollama("hello", model="m", base_url="http://ollama")

    async def test_request_failure_is_embedding_error(self, http):
        http(*[urllib.error.URLError("timed out") for _ in range(3)])
        with pytest.raises(EmbeddingError):
            await ollama_client.embed_ollama("hello", model="m", base_url="http://ollama")
