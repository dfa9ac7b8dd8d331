"""Embedding provider backends."""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from typing import List, Protocol, Sequence, Tuple

import httpx

from refsearch.chunking import estimate_tokens
from refsearch.errors import EmbeddingAPIError, ErrorKind

PROVIDER_KINDS = ("openai", "ollama", "ollama-openai", "hash")


@dataclass(frozen=True)
class ProviderResponse:
    vectors: List[Tuple[float, ...]]
    tokens: int | None = None


class EmbeddingProvider(Protocol):
    """Protocol describing a single round trip to an embedding backend."""

    name: str
    remote: bool

    def embed(self, texts: Sequence[str]) -> ProviderResponse:
        """Return one vector per text, in input order."""


def detect_provider(api_base: str) -> str:
    """Guess the provider flavour from the API base URL."""

    lowered = api_base.lower()
    if "ollama" in lowered or ":11434" in lowered:
        return "ollama-openai" if "/v1" in lowered else "ollama"
    return "openai"


def resolve_provider(configured: str, api_base: str) -> str:
    if configured and configured != "auto":
        if configured not in PROVIDER_KINDS:
            raise EmbeddingAPIError(f"Unknown embedding provider: {configured}", ErrorKind.CONFIG)
        return configured
    return detect_provider(api_base)


def embedding_endpoint(kind: str, api_base: str) -> str:
    base = api_base.rstrip("/")
    if kind == "ollama":
        if base.endswith("/v1"):
            base = base[: -len("/v1")]
        return f"{base}/api/embeddings"
    if kind == "ollama-openai" and not base.endswith("/v1"):
        return f"{base}/v1/embeddings"
    return f"{base}/embeddings"


def supports_dimensions_parameter(model: str) -> bool:
    return "text-embedding-3" in model


def _invalid_response(label: str, payload: object) -> EmbeddingAPIError:
    snippet = str(payload)[:200]
    return EmbeddingAPIError(f"Invalid {label} response: {snippet}", ErrorKind.INVALID_REQUEST)


def _headers(api_key: str) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


class OpenAICompatibleProvider:
    """``POST {base}/embeddings`` with ``{model, input, dimensions?}``."""

    remote = True

    def __init__(
        self,
        client: httpx.Client,
        *,
        api_base: str,
        model: str,
        api_key: str = "",
        dimensions: int | None = None,
        name: str = "openai",
        timeout: float = 30.0,
    ) -> None:
        self._client = client
        self._endpoint = embedding_endpoint(name, api_base)
        self._model = model
        self._api_key = api_key
        self._dimensions = dimensions
        self.name = name
        self._timeout = timeout

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def embed(self, texts: Sequence[str]) -> ProviderResponse:
        body: dict[str, object] = {"model": self._model, "input": list(texts)}
        if self._dimensions and supports_dimensions_parameter(self._model):
            body["dimensions"] = self._dimensions
        response = self._client.post(
            self._endpoint, json=body, headers=_headers(self._api_key), timeout=self._timeout
        )
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise _invalid_response("API", payload)
        try:
            items = sorted(payload["data"], key=lambda item: item.get("index", 0))
            vectors = [tuple(float(value) for value in item["embedding"]) for item in items]
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise _invalid_response("API", payload) from exc
        usage = payload.get("usage") or {}
        tokens = None
        if isinstance(usage, dict):
            if isinstance(usage.get("total_tokens"), int):
                tokens = usage["total_tokens"]
            elif isinstance(usage.get("prompt_tokens"), int):
                tokens = usage["prompt_tokens"]
        return ProviderResponse(vectors=vectors, tokens=tokens)


class OllamaProvider:
    """Ollama native API: one ``{model, prompt}`` request per text."""

    name = "ollama"
    remote = True

    def __init__(
        self,
        client: httpx.Client,
        *,
        api_base: str,
        model: str,
        api_key: str = "",
        timeout: float = 30.0,
    ) -> None:
        self._client = client
        self._endpoint = embedding_endpoint("ollama", api_base)
        self._model = model
        self._api_key = api_key
        self._timeout = timeout

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def embed(self, texts: Sequence[str]) -> ProviderResponse:
        vectors: List[Tuple[float, ...]] = []
        for text in texts:
            response = self._client.post(
                self._endpoint,
                json={"model": self._model, "prompt": text},
                headers=_headers(self._api_key),
                timeout=self._timeout,
            )
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, dict) or not isinstance(payload.get("embedding"), list):
                raise _invalid_response("Ollama", payload)
            vectors.append(tuple(float(value) for value in payload["embedding"]))
        return ProviderResponse(vectors=vectors, tokens=None)


class HashEmbeddingProvider:
    """Deterministic offline embeddings derived from SHA-256 digests."""

    name = "hash"
    remote = False

    def __init__(self, dimensions: int = 64, *, normalize: bool = True) -> None:
        if dimensions <= 0:
            raise EmbeddingAPIError("Hash provider needs a positive width", ErrorKind.CONFIG)
        self._dimensions = dimensions
        self._normalize = normalize

    def _hash_to_vector(self, text: str) -> Tuple[float, ...]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        repeat = (self._dimensions + len(digest) - 1) // len(digest)
        raw = (digest * repeat)[: self._dimensions]
        vector = [byte / 127.5 - 1.0 for byte in raw]
        if self._normalize:
            length = math.sqrt(sum(value * value for value in vector)) or 1.0
            vector = [value / length for value in vector]
        return tuple(vector)

    def embed(self, texts: Sequence[str]) -> ProviderResponse:
        return ProviderResponse(
            vectors=[self._hash_to_vector(text) for text in texts],
            tokens=sum(estimate_tokens(text) for text in texts),
        )


__all__ = [
    "EmbeddingProvider",
    "HashEmbeddingProvider",
    "OllamaProvider",
    "OpenAICompatibleProvider",
    "PROVIDER_KINDS",
    "ProviderResponse",
    "detect_provider",
    "embedding_endpoint",
    "resolve_provider",
    "supports_dimensions_parameter",
]
