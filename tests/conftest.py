"""Shared fixtures: a throwaway SQLite catalog and an app wired to offline providers."""

from __future__ import annotations

import random
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from marketplace_search.api import create_app
from marketplace_search.config import Settings, SystemConfig
from marketplace_search.db import MarketplaceDB
from marketplace_search.embeddings import LocalEmbeddingProvider
from marketplace_search.outfits import OutfitSuggestionProvider
from marketplace_search.service import MarketplaceService


def build_settings(db_path: Path, **overrides) -> Settings:
    values = dict(
        db_path=db_path,
        admin_token=None,
        log_level="DEBUG",
        provider_timeout_seconds=2.0,
        provider_retries=1,
        provider_backoff_seconds=0.01,
        index_batch_size=100,
        chat_model="gpt-4o-mini",
        vision_model="gpt-4o-mini",
        embedding_model="text-embedding-3-small",
        hf_text_model="sentence-transformers/all-MiniLM-L6-v2",
        hf_image_model="facebook/dino-vits16",
        openai_api_key=None,
        huggingface_api_key=None,
    )
    values.update(overrides)
    return Settings(**values)


def local_provider(config: SystemConfig) -> LocalEmbeddingProvider:
    return LocalEmbeddingProvider(config.similarity_dimension)


def offline_stylist(_config: SystemConfig) -> OutfitSuggestionProvider:
    return OutfitSuggestionProvider(None, rng=random.Random(7))


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return build_settings(tmp_path / "marketplace.db")


@pytest.fixture
def db(settings: Settings) -> MarketplaceDB:
    return MarketplaceDB(settings.db_path)


@pytest.fixture
def service(settings: Settings, db: MarketplaceDB) -> Iterator[MarketplaceService]:
    svc = MarketplaceService(
        settings,
        db=db,
        embedding_provider_factory=local_provider,
        outfit_provider_factory=offline_stylist,
    )
    yield svc
    svc.shutdown()


@pytest.fixture
def client(service: MarketplaceService) -> Iterator[TestClient]:
    with TestClient(create_app(service)) as test_client:
        yield test_client


@pytest.fixture
def merchant(db: MarketplaceDB) -> dict:
    return db.create_merchant("Nile Threads", "Cairo")


@pytest.fixture
def brand(db: MarketplaceDB) -> dict:
    return db.create_brand("Nile Basics")


@pytest.fixture
def catalog(service: MarketplaceService, merchant: dict, brand: dict) -> dict[str, dict]:
    """Four published products and one draft, keyed by a short name."""
    items = {
        "hoodie": dict(title="Classic Hoodie", price_cents=50000, sizes=["M", "L"], colors=["Black"], tags=["hoodie"]),
        "jeans": dict(title="Slim Jeans", price_cents=150000, sizes=["32"], colors=["Blue"], tags=["jeans"]),
        "shirt": dict(title="Linen Shirt", price_cents=100000, sizes=["L"], colors=["White", "Blue"], tags=["shirt"]),
        "skirt": dict(title="Midi Skirt", price_cents=99999, sizes=["S"], colors=["Black"], tags=["skirt"]),
        "draft": dict(title="Draft Hoodie", price_cents=70000, sizes=["M"], colors=["Black"], published=False),
    }
    return {
        name: service.create_product(merchant_id=merchant["id"], brand_id=brand["id"], **fields)
        for name, fields in items.items()
    }
