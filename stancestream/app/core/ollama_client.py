"""
Minimal Ollama client for debate generation and prompt embeddings.

This client wraps simple HTTP calls to a locally running Ollama server.
Blocking requests run in a worker thread so the event loop that drives
the debate sessions is never stalled. Transient failures (429, network
errors, truncated JSON) are retried with a short linear backoff; anything
left over surfaces as ``GenerationError`` or ``EmbeddingError`` so callers
can degrade instead of crashing.
"""

from __future__ import annotations

import asyncio
import json
import os
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

from .config import _env_float
from .errors import EmbeddingError, GenerationError

_MODEL_CACHE: Optional[List[str]] = None
RETRY_DELAY_SEC = _env_float("OLLAMA_RETRY_DELAY_SEC", 0.8)


def _post_json(url: str, payload: Dict[str, Any], timeout: float = 120) -> Dict[str, Any]:
    data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    with urllib.request.urlopen(req, timeout=timeout) as response:
        body = response.read().decode("utf-8")
    return json.loads(body)


def _get_json(url: str) -> Dict[str, Any]:
    req = urllib.request.Request(url, method="GET")
    with urllib.request.urlopen(req, timeout=30) as response:
        body = response.read().decode("utf-8")
    return json.loads(body)


def _api_base(base_url: Optional[str] = None) -> str:
    return (base_url or os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")).rstrip("/")


async def _resolve_model(api_base: str, model: Optional[str]) -> str:
    global _MODEL_CACHE
    model_name = model or os.getenv("OLLAMA_MODEL")
    if model_name:
        return model_name
    try:
        if _MODEL_CACHE is None:
            tags = await asyncio.to_thread(_get_json, f"{api_base}/api/tags")
            _MODEL_CACHE = [m.get("name") for m in tags.get("models", []) if m.get("name")]
        if _MODEL_CACHE:
            return _MODEL_CACHE[0]
    except (urllib.error.URLError, TimeoutError, json.JSONDecodeError):
        pass
    return "llama3.1"


async def _post_with_retries(url: str, payload: Dict[str, Any], retries: int = 2, delay: Optional[float] = None) -> Dict[str, Any]:
    delay = RETRY_DELAY_SEC if delay is None else delay
    last_exc: Exception | None = None
    for attempt in range(retries + 1):
        try:
            return await asyncio.to_thread(_post_json, url, payload)
        except urllib.error.HTTPError as exc:
            last_exc = exc
            if exc.code == 429 and attempt < retries:
                await asyncio.sleep(delay * (attempt + 1))
                continue
            raise
        except (urllib.error.URLError, TimeoutError, json.JSONDecodeError) as exc:
            last_exc = exc
            if attempt < retries:
                await asyncio.sleep(delay * (attempt + 1))
                continue
            raise
    raise RuntimeError(f"Ollama request failed: {last_exc}")


async def generate_ollama(
    prompt: str,
    system: Optional[str] = None,
    temperature: float = 0.8,
    max_tokens: Optional[int] = None,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
) -> str:
    """Generate a single completion from Ollama.

    Args:
        prompt: The user prompt to send to the model.
        system: Optional system prompt (the agent persona).
        temperature: Sampling temperature.
        max_tokens: Optional cap on generated tokens (``num_predict``).
        model: Optional explicit model name.
        base_url: Optional override for the base Ollama API URL.

    Returns:
        The generated response, stripped.

    Raises:
        GenerationError: If the request fails or the response is empty.
    """
    api_base = _api_base(base_url)
    model_name = await _resolve_model(api_base, model or os.getenv("OLLAMA_CHAT_MODEL"))
    payload: Dict[str, Any] = {
        "model": model_name,
        "prompt": prompt,
        "stream": False,
        "options": {"temperature": temperature},
    }
    if max_tokens:
        payload["options"]["num_predict"] = int(max_tokens)
    if system:
        payload["system"] = system
    try:
        result = await _post_with_retries(f"{api_base}/api/generate", payload)
    except (urllib.error.URLError, TimeoutError, json.JSONDecodeError, RuntimeError) as exc:
        raise GenerationError(f"Ollama request failed: {exc}") from exc

    response = result.get("response")
    if not isinstance(response, str) or not response.strip():
        raise GenerationError("Ollama response was empty")
    return response.strip()


async def embed_ollama(
    text: str,
    model: Optional[str] = None,
    base_url: Optional[str] = None,
) -> List[float]:
    """Return the embedding vector Ollama computes for ``text``.

    Raises:
        EmbeddingError: If the request fails or no vector comes back.
    """
    api_base = _api_base(base_url)
    model_name = model or os.getenv("OLLAMA_EMBED_MODEL", "nomic-embed-text")
    payload = {"model": model_name, "prompt": text}
    try:
        result = await _post_with_retries(f"{api_base}/api/embeddings", payload)
    except (urllib.error.URLError, TimeoutError, json.JSONDecodeError, RuntimeError) as exc:
        raise EmbeddingError(f"Ollama embedding request failed: {exc}") from exc

    vector = result.get("embedding")
    if not isinstance(vector, list) or not vector:
        raise EmbeddingError("Ollama embedding response was empty")
    return [float(value) for value in vector]


class OllamaGenerationService:
    """GenerationService backed by ``generate_ollama``."""

    def __init__(self, model: Optional[str] = None, base_url: Optional[str] = None) -> None:
        self.model = model
        self.base_url = base_url

    async def generate(self, system_prompt: str, user_prompt: str, temperature: float, max_tokens: int) -> str:
        return await generate_ollama(
            prompt=user_prompt,
            system=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
            model=self.model,
            base_url=self.base_url,
        )


class OllamaEmbeddingService:
    """EmbeddingService backed by ``embed_ollama``."""

    def __init__(self, model: Optional[str] = None, base_url: Optional[str] = None) -> None:
        self.model = model
        self.base_url = base_url

    async def embed(self, text: str) -> List[float]:
        return await embed_ollama(text, model=self.model, base_url=self.base_url)
