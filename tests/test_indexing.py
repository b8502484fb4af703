"""Tests for the background re-indexing sweep."""

from __future__ import annotations

import threading

import httpx
import pytest

from marketplace_search.config import SystemConfig
from marketplace_search.embeddings import EmbeddingProvider, EmbeddingResult, LocalEmbeddingProvider
from marketplace_search.errors import IndexingConflictError
from marketplace_search.indexing import IndexingJobRunner, http_image_fetcher


class DegradingProvider(EmbeddingProvider):
    """Degrades every text embedding whose input contains ``poison``."""

    name = "degrading"

    def __init__(self, dimension: int = 384, poison: str = "Jeans") -> None:
        self.dimension = dimension
        self.poison = poison
        self._local = LocalEmbeddingProvider(dimension)

    def embed_text(self, text: str) -> EmbeddingResult:
        result = self._local.embed_text(text)
        if self.poison in text:
            return EmbeddingResult(result.vector, degraded=True, error="provider outage")
        return result

    def embed_image(self, image_bytes: bytes) -> EmbeddingResult:
        return self._local.embed_image(image_bytes)


class BlockingProvider(LocalEmbeddingProvider):
    def __init__(self, release: threading.Event) -> None:
        super().__init__()
        self.release = release

    def embed_text(self, text: str) -> EmbeddingResult:
        self.release.wait(timeout=5)
        return super().embed_text(text)


def _run(runner: IndexingJobRunner, provider: EmbeddingProvider, config: SystemConfig | None = None) -> dict:
    job = runner.start(config or SystemConfig(), lambda: provider)
    runner.wait(timeout=10)
    finished = runner.latest_job()
    assert finished is not None and finished["id"] == job["id"]
    return finished


class TestSweep:
    def test_all_stale_products_are_indexed(self, service, catalog, db):
        job = service.start_reindex()
        service.indexer.wait(timeout=10)

        assert job["message"] == "Indexing started"
        assert job["totalProducts"] == len(catalog)
        health = service.index_health()
        assert health["status"] == "completed"
        assert health["productsProcessed"] + health["failures"] == health["productsTotal"]
        assert health["failures"] == 0
        assert health["completedAt"] is not None

        for product in catalog.values():
            stored = db.get_product(product["id"])
            assert stored is not None
            assert len(stored.text_embedding) == 384
            assert not stored.is_stale

    def test_fresh_products_are_skipped_until_updated(self, service, catalog, db):
        runner = IndexingJobRunner(db)
        _run(runner, LocalEmbeddingProvider())

        assert db.products_needing_indexing() == []
        service.update_product(catalog["jeans"]["id"], {"title": "Slim Fit Jeans"})

        second = _run(runner, LocalEmbeddingProvider())
        assert second["products_total"] == 1
        assert second["products_processed"] == 1
        runner.shutdown()

    def test_indexing_keeps_image_embeddings(self, catalog, db):
        db.store_image_embeddings(catalog["shirt"]["id"], [[0.1, 0.2]])
        runner = IndexingJobRunner(db)
        _run(runner, LocalEmbeddingProvider())
        runner.shutdown()

        shirt = db.get_product(catalog["shirt"]["id"])
        assert shirt.image_embeddings == [[0.1, 0.2]]
        assert shirt.text_embedding is not None

    def test_degraded_embeddings_count_as_failures(self, catalog, db):
        runner = IndexingJobRunner(db)
        job = _run(runner, DegradingProvider())
        runner.shutdown()

        assert job["status"] == "completed"
        assert job["failures"] == 1
        assert job["products_processed"] == len(catalog) - 1
        jeans = db.get_product(catalog["jeans"]["id"])
        assert jeans.text_embedding is None
        assert jeans.is_stale

    def test_wrong_dimension_counts_as_failure(self, catalog, db):
        runner = IndexingJobRunner(db)
        job = _run(runner, LocalEmbeddingProvider(16), SystemConfig(similarity_dimension=384))
        runner.shutdown()

        assert job["failures"] == len(catalog)
        assert job["products_processed"] == 0

    def test_batch_size_caps_the_sweep(self, catalog, db):
        runner = IndexingJobRunner(db, batch_size=2)
        job = _run(runner, LocalEmbeddingProvider())
        runner.shutdown()

        assert job["products_total"] == 2
        assert len(db.products_needing_indexing()) == len(catalog) - 2

    def test_product_images_are_embedded_when_a_fetcher_is_set(self, service, catalog, db):
        service.update_product(catalog["shirt"]["id"], {"images": ["https://cdn.example/a.jpg", "https://cdn.example/b.jpg"]})
        fetched = []

        def fetch(url: str) -> bytes:
            fetched.append(url)
            return url.encode()

        runner = IndexingJobRunner(db, image_fetcher=fetch)
        job = _run(runner, LocalEmbeddingProvider())
        runner.shutdown()

        assert job["failures"] == 0
        assert fetched == ["https://cdn.example/a.jpg", "https://cdn.example/b.jpg"]
        shirt = db.get_product(catalog["shirt"]["id"])
        provider = LocalEmbeddingProvider()
        assert shirt.image_embeddings == [
            provider.embed_image(b"https://cdn.example/a.jpg").vector,
            provider.embed_image(b"https://cdn.example/b.jpg").vector,
        ]

    def test_failed_image_download_leaves_product_stale(self, service, catalog, db):
        service.update_product(catalog["shirt"]["id"], {"images": ["https://cdn.example/gone.jpg"]})

        def fetch(url: str) -> bytes:
            request = httpx.Request("GET", url)
            raise httpx.HTTPStatusError("404 Not Found", request=request, response=httpx.Response(404, request=request))

        runner = IndexingJobRunner(db, image_fetcher=fetch)
        job = _run(runner, LocalEmbeddingProvider())
        runner.shutdown()

        assert job["failures"] == 1
        assert job["products_processed"] == len(catalog) - 1
        shirt = db.get_product(catalog["shirt"]["id"])
        assert shirt.text_embedding is None
        assert shirt.image_embeddings == []
        assert shirt.is_stale

    def test_http_image_fetcher_follows_redirects(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old.jpg":
                return httpx.Response(301, headers={"Location": "https://cdn.example/new.jpg"})
            return httpx.Response(200, content=b"jpeg-bytes")

        client = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)
        fetch = http_image_fetcher(2.0, client=client)
        assert fetch("https://cdn.example/old.jpg") == b"jpeg-bytes"

    def test_empty_sweep_completes(self, db):
        runner = IndexingJobRunner(db)
        job = _run(runner, LocalEmbeddingProvider())
        runner.shutdown()

        assert job["status"] == "completed"
        assert job["products_total"] == 0


class TestJobLifecycle:
    def test_second_sweep_is_rejected_while_running(self, catalog, db):
        release = threading.Event()
        runner = IndexingJobRunner(db)
        first = runner.start(SystemConfig(), lambda: BlockingProvider(release))
        try:
            with pytest.raises(IndexingConflictError):
                runner.start(SystemConfig(), LocalEmbeddingProvider)
            running = runner.latest_job()
            assert running["id"] == first["id"]
            assert running["status"] == "running"
            assert running["products_processed"] + running["failures"] <= running["products_total"]
        finally:
            release.set()
            runner.wait(timeout=10)
            runner.shutdown()

        assert db.get_indexing_job(first["id"])["status"] == "completed"

    def test_interrupted_jobs_are_closed_on_startup(self, db):
        orphan = db.create_indexing_job(5)
        IndexingJobRunner(db).shutdown()

        job = db.get_indexing_job(orphan["id"])
        assert job["status"] == "completed"
        assert job["completed_at"] is not None

    def test_no_jobs_yet(self, service):
        assert service.index_health() == {"status": "no jobs yet"}
