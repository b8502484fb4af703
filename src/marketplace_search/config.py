from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any


EMBEDDING_PROVIDERS = ("local", "huggingface", "openai")
IMAGE_GENERATION_PROVIDERS = ("off", "stable-diffusion", "dalle")
SIMILARITY_METRICS = ("cosine", "euclidean", "dot")
IMAGE_SEARCH_RANKINGS = ("compat", "similarity")

NATIVE_DIMENSIONS = {"local": 384, "huggingface": 384, "openai": 768}

_CHOICES = {
    "embeddings_provider": EMBEDDING_PROVIDERS,
    "image_generation_provider": IMAGE_GENERATION_PROVIDERS,
    "similarity_metric": SIMILARITY_METRICS,
    "image_search_ranking": IMAGE_SEARCH_RANKINGS,
}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    db_path: Path
    admin_token: str | None
    log_level: str
    provider_timeout_seconds: float
    provider_retries: int
    provider_backoff_seconds: float
    index_batch_size: int
    chat_model: str
    vision_model: str
    embedding_model: str
    hf_text_model: str
    hf_image_model: str
    openai_api_key: str | None
    huggingface_api_key: str | None
    index_images: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=Path(os.getenv("MS_DB_PATH", "data/marketplace.db")),
            admin_token=os.getenv("MS_ADMIN_TOKEN") or None,
            log_level=os.getenv("MS_LOG_LEVEL", "INFO").upper(),
            provider_timeout_seconds=_env_float("MS_PROVIDER_TIMEOUT_SECONDS", 8.0),
            provider_retries=_env_int("MS_PROVIDER_RETRIES", 3),
            provider_backoff_seconds=_env_float("MS_PROVIDER_BACKOFF_SECONDS", 0.5),
            index_batch_size=_env_int("MS_INDEX_BATCH_SIZE", 100),
            chat_model=os.getenv("MS_CHAT_MODEL", "gpt-4o-mini"),
            vision_model=os.getenv("MS_VISION_MODEL", "gpt-4o-mini"),
            embedding_model=os.getenv("MS_EMBEDDING_MODEL", "text-embedding-3-small"),
            hf_text_model=os.getenv("MS_HF_TEXT_MODEL", "sentence-transformers/all-MiniLM-L6-v2"),
            hf_image_model=os.getenv("MS_HF_IMAGE_MODEL", "facebook/dino-vits16"),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            huggingface_api_key=os.getenv("HUGGINGFACE_API_KEY") or None,
            index_images=_env_flag("MS_INDEX_IMAGES"),
        )

    def env_key_for(self, provider: str) -> str | None:
        if provider == "openai":
            return self.openai_api_key
        if provider == "huggingface":
            return self.huggingface_api_key
        return None


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dataclass(frozen=True)
class SystemConfig:
    """Administrator-controlled runtime configuration (one row per deployment)."""

    embeddings_provider: str = "local"
    image_generation_provider: str = "off"
    similarity_dimension: int = 384
    similarity_metric: str = "cosine"
    similarity_top_k: int = 20
    enable_rerank: bool = False
    enable_spell_correction: bool = True
    enable_outfit_ai: bool = True
    enable_image_search: bool = True
    enable_multilingual: bool = True
    enable_analytics_stream: bool = False
    image_search_ranking: str = "compat"
    provider_keys: dict[str, str] = field(default_factory=dict)
    synonyms: dict[str, str] = field(default_factory=dict)
    updated_at: str | None = None

    def api_key_for(self, provider: str, settings: Settings | None = None) -> str | None:
        key = self.provider_keys.get(provider)
        if key:
            return key
        return settings.env_key_for(provider) if settings else None

    def merged(self, updates: dict[str, Any]) -> "SystemConfig":
        """Apply a partial update. Nested maps are merged, not replaced."""
        changes = dict(updates)
        if "provider_keys" in changes:
            keys = dict(self.provider_keys)
            keys.update({k: v for k, v in (changes["provider_keys"] or {}).items() if v is not None})
            changes["provider_keys"] = keys
        if "synonyms" in changes:
            synonyms = dict(self.synonyms)
            synonyms.update(changes["synonyms"] or {})
            changes["synonyms"] = synonyms

        for name, allowed in _CHOICES.items():
            if name in changes and changes[name] not in allowed:
                raise ValueError(f"{name} must be one of {', '.join(allowed)}")

        provider = changes.get("embeddings_provider")
        if provider and provider != self.embeddings_provider and "similarity_dimension" not in changes:
            changes["similarity_dimension"] = NATIVE_DIMENSIONS[provider]
        return replace(self, **changes)

    def to_public(self) -> dict[str, Any]:
        masked = {name: _mask_key(value) for name, value in self.provider_keys.items()}
        return {
            "embeddingsProvider": self.embeddings_provider,
            "imageGenerationProvider": self.image_generation_provider,
            "similarityDimension": self.similarity_dimension,
            "similarityMetric": self.similarity_metric,
            "similarityTopK": self.similarity_top_k,
            "enableRerank": self.enable_rerank,
            "enableSpellCorrection": self.enable_spell_correction,
            "enableOutfitAI": self.enable_outfit_ai,
            "enableImageSearch": self.enable_image_search,
            "enableMultilingual": self.enable_multilingual,
            "enableAnalyticsStream": self.enable_analytics_stream,
            "imageSearchRanking": self.image_search_ranking,
            "providerKeys": masked,
            "synonyms": dict(self.synonyms),
            "updatedAt": self.updated_at,
        }


def _mask_key(value: str) -> str:
    if not value:
        return ""
    if len(value) <= 4:
        return "****"
    return f"****{value[-4:]}"
