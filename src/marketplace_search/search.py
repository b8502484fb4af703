from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from marketplace_search.catalog import Product, product_summary
from marketplace_search.config import SystemConfig
from marketplace_search.db import MarketplaceDB
from marketplace_search.embeddings import EmbeddingProvider
from marketplace_search.errors import FeatureDisabledError
from marketplace_search.retrieval import rank


_LOGGER = logging.getLogger(__name__)
COMPAT_IMAGE_RESULTS = 10


@dataclass(frozen=True)
class SearchFilters:
    sizes: list[str] = field(default_factory=list)
    colors: list[str] = field(default_factory=list)
    price_min: float | None = None
    price_max: float | None = None


def _to_cents(amount: float) -> Decimal:
    return Decimal(str(amount)) * 100


def apply_filters(products: list[Product], filters: SearchFilters | None) -> list[Product]:
    """Price-min, price-max, sizes, colors, in that order. Prices are inclusive major units."""
    if filters is None:
        return list(products)

    filtered = list(products)
    if filters.price_min is not None:
        floor = _to_cents(filters.price_min)
        filtered = [p for p in filtered if p.price_cents >= floor]
    if filters.price_max is not None:
        ceiling = _to_cents(filters.price_max)
        filtered = [p for p in filtered if p.price_cents <= ceiling]
    if filters.sizes:
        wanted_sizes = set(filters.sizes)
        filtered = [p for p in filtered if wanted_sizes.intersection(p.sizes)]
    if filters.colors:
        wanted_colors = set(filters.colors)
        filtered = [p for p in filtered if wanted_colors.intersection(p.colors)]
    return filtered


class SearchService:
    def __init__(self, db: MarketplaceDB, config: SystemConfig, provider: EmbeddingProvider | None = None) -> None:
        self.db = db
        self.config = config
        self.provider = provider

    def search_text(self, query: str, filters: SearchFilters | None = None) -> dict[str, Any]:
        products = self.db.list_products(published=True, search=query.strip() or None)
        results = [product_summary(p) for p in apply_filters(products, filters)]
        return {"results": results, "count": len(results)}

    def search_image(self, image_bytes: bytes) -> dict[str, Any]:
        if not self.config.enable_image_search:
            raise FeatureDisabledError("Image search is disabled")
        if not image_bytes:
            raise ValueError("No image provided")
        if self.provider is None:
            raise RuntimeError("No embedding provider configured for image search.")

        embedding = self.provider.embed_image(image_bytes)
        if embedding.degraded:
            _LOGGER.warning("Image search is running on a degraded %s embedding.", self.provider.name)

        products = self.db.list_products(published=True)
        if self.config.image_search_ranking == "similarity":
            ranked = self._rank_by_similarity(embedding.vector, products)
        else:
            ranked = products[:COMPAT_IMAGE_RESULTS]

        results = [product_summary(p) for p in ranked]
        return {"results": results, "count": len(results), "degraded": embedding.degraded}

    def _rank_by_similarity(self, query: list[float], products: list[Product]) -> list[Product]:
        dimension = len(query)
        owners: list[int] = []
        vectors: list[list[float]] = []
        for position, product in enumerate(products):
            candidates = [vec for vec in product.image_embeddings if len(vec) == dimension]
            if not candidates and product.text_embedding and len(product.text_embedding) == dimension:
                candidates = [product.text_embedding]
            for vec in candidates:
                owners.append(position)
                vectors.append(vec)

        ranked: list[Product] = []
        seen: set[int] = set()
        for vector_index, _score in rank(query, vectors, metric=self.config.similarity_metric, k=len(vectors)):
            owner = owners[vector_index]
            if owner in seen:
                continue
            seen.add(owner)
            ranked.append(products[owner])
            if len(ranked) >= self.config.similarity_top_k:
                break
        return ranked
