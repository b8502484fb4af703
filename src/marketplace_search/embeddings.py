from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx
import numpy as np

from marketplace_search.config import NATIVE_DIMENSIONS, Settings
from marketplace_search.errors import EmbeddingProviderError, ProviderConfigurationError
from marketplace_search.openai_utils import describe_fashion_image, make_client, text_embedding
from marketplace_search.resilience import call_with_retry


_LOGGER = logging.getLogger(__name__)
HF_INFERENCE_URL = "https://router.huggingface.co/hf-inference/models"


@dataclass(frozen=True)
class EmbeddingResult:
    vector: list[float]
    degraded: bool = False
    error: str | None = None


def pseudo_random_vector(dimension: int, seed_material: bytes | None = None) -> list[float]:
    """Uniform [0, 1) vector; reproducible when ``seed_material`` is given."""
    if seed_material is None:
        rng = np.random.default_rng()
    else:
        digest = hashlib.sha256(seed_material).digest()
        rng = np.random.default_rng(int.from_bytes(digest[:8], "big"))
    return rng.random(dimension, dtype=np.float64).tolist()


class EmbeddingProvider(ABC):
    name: str = "base"
    dimension: int

    @abstractmethod
    def embed_text(self, text: str) -> EmbeddingResult:
        ...

    @abstractmethod
    def embed_image(self, image_bytes: bytes) -> EmbeddingResult:
        ...

    def generate_text_embedding(self, text: str) -> list[float]:
        return self.embed_text(text).vector

    def generate_image_embedding(self, image_bytes: bytes) -> list[float]:
        return self.embed_image(image_bytes).vector


class LocalEmbeddingProvider(EmbeddingProvider):
    """Offline placeholder. Same input, same vector."""

    name = "local"

    def __init__(self, dimension: int = NATIVE_DIMENSIONS["local"]) -> None:
        self.dimension = dimension

    def embed_text(self, text: str) -> EmbeddingResult:
        return EmbeddingResult(pseudo_random_vector(self.dimension, b"text:" + text.encode("utf-8")))

    def embed_image(self, image_bytes: bytes) -> EmbeddingResult:
        return EmbeddingResult(pseudo_random_vector(self.dimension, b"image:" + image_bytes))


def _pool(payload: Any) -> list[float]:
    # Feature extraction may return one vector, per-token vectors or a batch of those.
    arr = np.asarray(payload, dtype=np.float32)
    if arr.ndim == 0 or arr.size == 0:
        raise ValueError("empty feature-extraction response")
    while arr.ndim > 1:
        arr = arr.mean(axis=0)
    return arr.astype(float).tolist()


class HuggingFaceEmbeddingProvider(EmbeddingProvider):
    name = "huggingface"

    def __init__(
        self,
        api_key: str,
        *,
        text_model: str,
        image_model: str,
        timeout_seconds: float = 8.0,
        retries: int = 3,
        backoff_seconds: float = 0.5,
        http_client: httpx.Client | None = None,
        base_url: str = HF_INFERENCE_URL,
    ) -> None:
        self.dimension = NATIVE_DIMENSIONS["huggingface"]
        self.text_model = text_model
        self.image_model = image_model
        self.timeout_seconds = timeout_seconds
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self.base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._client = http_client or httpx.Client(timeout=timeout_seconds)

    def _post(self, url: str, *, headers: dict[str, str] | None = None, **kwargs: Any) -> Any:
        resp = self._client.post(url, headers={**self._headers, **(headers or {})}, **kwargs)
        resp.raise_for_status()
        return resp.json()

    def _call(self, operation: str, url: str, **kwargs: Any) -> list[float]:
        try:
            payload = call_with_retry(
                operation,
                lambda: self._post(url, **kwargs),
                timeout_seconds=self.timeout_seconds,
                attempts=self.retries,
                backoff_seconds=self.backoff_seconds,
            )
            vector = _pool(payload)
        except (RuntimeError, ValueError) as exc:
            raise EmbeddingProviderError(str(exc)) from exc
        if len(vector) != self.dimension:
            raise EmbeddingProviderError(
                f"{operation} returned {len(vector)} dimensions, expected {self.dimension}"
            )
        return vector

    def embed_text(self, text: str) -> EmbeddingResult:
        url = f"{self.base_url}/{self.text_model}/pipeline/feature-extraction"
        return EmbeddingResult(self._call("Hugging Face text embedding", url, json={"inputs": text}))

    def embed_image(self, image_bytes: bytes) -> EmbeddingResult:
        url = f"{self.base_url}/{self.image_model}"
        return EmbeddingResult(
            self._call(
                "Hugging Face image embedding",
                url,
                content=image_bytes,
                headers={"Content-Type": "application/octet-stream"},
            )
        )


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Generative-AI provider.

    Images have no native embedding endpoint here, so a vision model first
    describes the garment and the description is embedded. Any failure yields
    a random vector flagged as degraded instead of an exception.
    """

    name = "openai"

    def __init__(
        self,
        api_key: str,
        *,
        embedding_model: str,
        vision_model: str,
        dimension: int = NATIVE_DIMENSIONS["openai"],
        timeout_seconds: float = 8.0,
        retries: int = 3,
        backoff_seconds: float = 0.5,
        client: Any | None = None,
    ) -> None:
        self.dimension = dimension
        self.embedding_model = embedding_model
        self.vision_model = vision_model
        self.timeout_seconds = timeout_seconds
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self._api_key = api_key
        self.client = client

    def _ensure_client(self):
        if self.client is None:
            self.client = make_client(self._api_key, timeout_seconds=self.timeout_seconds)
        return self.client

    def _retry(self, operation: str, fn):
        return call_with_retry(
            operation,
            fn,
            timeout_seconds=self.timeout_seconds,
            attempts=self.retries,
            backoff_seconds=self.backoff_seconds,
        )

    def _embed(self, text: str) -> list[float]:
        client = self._ensure_client()
        values = self._retry(
            "Embedding request",
            lambda: text_embedding(client, text, self.embedding_model, self.dimension),
        )
        if len(values) != self.dimension:
            raise ValueError(f"expected {self.dimension} dimensions, got {len(values)}")
        return list(values)

    def _fallback(self, operation: str, exc: Exception) -> EmbeddingResult:
        _LOGGER.warning("Falling back to a random %d-dim vector after %s failure: %s", self.dimension, operation, exc)
        return EmbeddingResult(pseudo_random_vector(self.dimension), degraded=True, error=str(exc))

    def embed_text(self, text: str) -> EmbeddingResult:
        try:
            return EmbeddingResult(self._embed(text))
        except Exception as exc:
            return self._fallback("text embedding", exc)

    def embed_image(self, image_bytes: bytes) -> EmbeddingResult:
        try:
            client = self._ensure_client()
            description = self._retry(
                "Vision description request",
                lambda: describe_fashion_image(client, image_bytes, self.vision_model),
            )
            if not description:
                raise ValueError("vision model returned an empty description")
            _LOGGER.debug("Image described as: %s", description)
            return EmbeddingResult(self._embed(description))
        except Exception as exc:
            return self._fallback("image embedding", exc)


def create_embedding_provider(
    name: str,
    api_key: str | None = None,
    *,
    dimension: int | None = None,
    settings: Settings | None = None,
    http_client: httpx.Client | None = None,
    openai_client: Any | None = None,
) -> EmbeddingProvider:
    settings = settings or Settings.from_env()
    if name == "huggingface":
        if not api_key:
            raise ProviderConfigurationError("HuggingFace API key required")
        return HuggingFaceEmbeddingProvider(
            api_key,
            text_model=settings.hf_text_model,
            image_model=settings.hf_image_model,
            timeout_seconds=settings.provider_timeout_seconds,
            retries=settings.provider_retries,
            backoff_seconds=settings.provider_backoff_seconds,
            http_client=http_client,
        )
    if name == "openai":
        if not api_key:
            raise ProviderConfigurationError("OpenAI API key required")
        return OpenAIEmbeddingProvider(
            api_key,
            embedding_model=settings.embedding_model,
            vision_model=settings.vision_model,
            dimension=dimension or NATIVE_DIMENSIONS["openai"],
            timeout_seconds=settings.provider_timeout_seconds,
            retries=settings.provider_retries,
            backoff_seconds=settings.provider_backoff_seconds,
            client=openai_client,
        )
    return LocalEmbeddingProvider(dimension or NATIVE_DIMENSIONS["local"])
