from __future__ import annotations

import logging
import random
from typing import Any, Callable

from marketplace_search.catalog import Product, product_summary
from marketplace_search.config import Settings, SystemConfig
from marketplace_search.db import MarketplaceDB
from marketplace_search.embeddings import EmbeddingProvider, create_embedding_provider
from marketplace_search.errors import FeatureDisabledError, ProviderConfigurationError
from marketplace_search.indexing import IndexingJobRunner, http_image_fetcher
from marketplace_search.metrics import MetricsRecorder, summarize
from marketplace_search.outfits import OutfitCandidate, OutfitSuggestionProvider, ShopperProfile
from marketplace_search.search import SearchFilters, SearchService
from marketplace_search.spelling import SpellCorrector


_LOGGER = logging.getLogger(__name__)
OUTFIT_CANDIDATE_LIMIT = 50

EmbeddingProviderFactory = Callable[[SystemConfig], EmbeddingProvider]
OutfitProviderFactory = Callable[[SystemConfig], OutfitSuggestionProvider]


class MarketplaceService:
    """Wires storage, configuration and providers for the HTTP layer.

    ``SystemConfig`` is loaded explicitly and refreshed through
    :meth:`reload_config`; providers are resolved from it once per call.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        db: MarketplaceDB | None = None,
        embedding_provider_factory: EmbeddingProviderFactory | None = None,
        outfit_provider_factory: OutfitProviderFactory | None = None,
    ) -> None:
        self.settings = settings
        self.db = db or MarketplaceDB(settings.db_path)
        self._embedding_provider_factory = embedding_provider_factory or self._default_embedding_provider
        self._outfit_provider_factory = outfit_provider_factory or self._default_outfit_provider
        self.spell_corrector = SpellCorrector()
        image_fetcher = http_image_fetcher(settings.provider_timeout_seconds) if settings.index_images else None
        self.indexer = IndexingJobRunner(self.db, batch_size=settings.index_batch_size, image_fetcher=image_fetcher)
        self.metrics = MetricsRecorder(self.db)
        self.config = SystemConfig()
        self.reload_config()

    # Configuration

    def reload_config(self) -> SystemConfig:
        self.config = self.db.get_system_config() or SystemConfig()
        self.spell_corrector.reload(self.config.synonyms)
        return self.config

    def update_config(self, updates: dict[str, Any]) -> SystemConfig:
        self.db.save_system_config(self.config.merged(updates))
        _LOGGER.info("System config updated: %s", sorted(updates))
        return self.reload_config()

    def add_synonym(self, source: str, target: str) -> dict[str, str]:
        key = source.strip().lower()
        if not key or not target.strip():
            raise ValueError("Both the synonym and its canonical term are required.")
        self.update_config({"synonyms": {key: target.strip()}})
        return self.spell_corrector.synonyms

    def _default_embedding_provider(self, config: SystemConfig) -> EmbeddingProvider:
        name = config.embeddings_provider
        return create_embedding_provider(
            name,
            config.api_key_for(name, self.settings),
            dimension=config.similarity_dimension,
            settings=self.settings,
        )

    def _default_outfit_provider(self, config: SystemConfig) -> OutfitSuggestionProvider:
        return OutfitSuggestionProvider(
            config.api_key_for("openai", self.settings),
            chat_model=self.settings.chat_model,
            timeout_seconds=self.settings.provider_timeout_seconds,
            rng=random.Random(),
        )

    def embedding_provider(self) -> EmbeddingProvider:
        return self._embedding_provider_factory(self.config)

    # Search

    def search_text(self, query: str, filters: SearchFilters | None = None) -> dict[str, Any]:
        return SearchService(self.db, self.config).search_text(query, filters)

    def search_image(self, image_bytes: bytes) -> dict[str, Any]:
        if not self.config.enable_image_search:
            raise FeatureDisabledError("Image search is disabled")
        try:
            provider = self.embedding_provider()
        except ProviderConfigurationError as exc:
            _LOGGER.error("Image search provider is misconfigured: %s", exc)
            raise RuntimeError(f"Image search is unavailable: {exc}") from exc
        return SearchService(self.db, self.config, provider).search_image(image_bytes)

    def spell(self, query: str, language: str = "en") -> list[str]:
        if not self.config.enable_spell_correction:
            return []
        return self.spell_corrector.suggest(query, language)

    # Outfits

    def suggest_outfit(
        self,
        profile: ShopperProfile,
        product_ids: list[str] | None = None,
    ) -> dict[str, Any]:
        if not self.config.enable_outfit_ai:
            raise FeatureDisabledError("Outfit AI is disabled")

        if product_ids:
            products = []
            for product_id in product_ids:
                product = self.db.get_product(product_id)
                if product is None:
                    raise KeyError(f"Product {product_id} not found.")
                products.append(product)
        else:
            products = self.db.list_products(published=True, limit=OUTFIT_CANDIDATE_LIMIT)

        candidates = [
            OutfitCandidate(id=p.id, name=p.title, category=", ".join(p.tags) if p.tags else p.title)
            for p in products
        ]
        suggestion = self._outfit_provider_factory(self.config).suggest(profile, candidates)
        return suggestion.to_public()

    # Indexing

    def start_reindex(self) -> dict[str, Any]:
        config = self.config
        job = self.indexer.start(config, lambda: self._embedding_provider_factory(config))
        return {
            "jobId": job["id"],
            "message": "Indexing started",
            "totalProducts": job["products_total"],
        }

    def index_health(self) -> dict[str, Any]:
        job = self.indexer.latest_job()
        if job is None:
            return {"status": "no jobs yet"}
        return {
            "id": job["id"],
            "status": job["status"],
            "productsTotal": job["products_total"],
            "productsProcessed": job["products_processed"],
            "failures": job["failures"],
            "startedAt": job["started_at"],
            "completedAt": job["completed_at"],
        }

    # Catalog

    def create_merchant(self, name: str, city: str | None = None) -> dict[str, Any]:
        return self.db.create_merchant(name, city)

    def create_brand(self, name: str) -> dict[str, Any]:
        return self.db.create_brand(name)

    def create_product(self, *, merchant_id: str, title: str, price_cents: int, **fields: Any) -> dict[str, Any]:
        product = self.db.create_product(merchant_id=merchant_id, title=title, price_cents=price_cents, **fields)
        return product_summary(product)

    def update_product(self, product_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return product_summary(self.db.update_product(product_id, changes))

    def _require_product(self, product_id: str) -> Product:
        product = self.db.get_product(product_id)
        if product is None:
            raise KeyError("Product not found.")
        return product

    def view_product(self, product_id: str) -> dict[str, Any]:
        self.db.increment_counter(product_id, "views")
        return product_summary(self._require_product(product_id))

    def record_click(self, product_id: str) -> None:
        self.db.increment_counter(product_id, "clicks")

    def list_products(
        self,
        *,
        merchant_id: str | None = None,
        brand_id: str | None = None,
        published: bool | None = None,
        search: str | None = None,
    ) -> list[dict[str, Any]]:
        products = self.db.list_products(
            merchant_id=merchant_id, brand_id=brand_id, published=published, search=search
        )
        return [product_summary(p) for p in products]

    # Observability

    def metrics_report(self, limit: int = 1000) -> dict[str, Any]:
        metrics = self.db.list_metrics(limit)
        return {"metrics": metrics, "summary": summarize(metrics)}

    def stats(self) -> dict[str, Any]:
        details = self.db.stats()
        details["embeddings_provider"] = self.config.embeddings_provider
        details["similarity_dimension"] = self.config.similarity_dimension
        return details

    def shutdown(self) -> None:
        self.indexer.shutdown()
        self.metrics.shutdown()
