from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
import logging
import threading
from typing import Any, Callable

import httpx

from marketplace_search.catalog import Product
from marketplace_search.config import SystemConfig
from marketplace_search.db import MarketplaceDB, utc_now
from marketplace_search.embeddings import EmbeddingProvider, EmbeddingResult
from marketplace_search.errors import IndexingConflictError


_LOGGER = logging.getLogger(__name__)

ImageFetcher = Callable[[str], bytes]


def http_image_fetcher(timeout_seconds: float, client: httpx.Client | None = None) -> ImageFetcher:
    """Download product photos so the sweep can embed them."""
    http = client or httpx.Client(timeout=timeout_seconds, follow_redirects=True)

    def fetch(url: str) -> bytes:
        resp = http.get(url)
        resp.raise_for_status()
        return resp.content

    return fetch


class IndexingJobRunner:
    """Re-embeds stale products on a single background worker.

    The job row is the only progress record; clients poll it.
    """

    def __init__(
        self,
        db: MarketplaceDB,
        *,
        batch_size: int = 100,
        image_fetcher: ImageFetcher | None = None,
    ) -> None:
        self.db = db
        self.batch_size = batch_size
        self.image_fetcher = image_fetcher
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="indexing-sweep")
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._future: Future | None = None

        interrupted = self.db.close_running_jobs()
        if interrupted:
            _LOGGER.warning("Closed %d indexing job(s) interrupted by a restart.", interrupted)

    def start(
        self,
        config: SystemConfig,
        provider_factory: Callable[[], EmbeddingProvider],
    ) -> dict[str, Any]:
        with self._lock:
            latest = self.db.get_latest_indexing_job()
            if latest and latest["status"] == "running":
                raise IndexingConflictError(f"Indexing job {latest['id']} is still running.")

            provider = provider_factory()
            products = self.db.products_needing_indexing(self.batch_size)
            job = self.db.create_indexing_job(len(products))
            _LOGGER.info("Indexing job %s started for %d product(s).", job["id"], len(products))
            self._future = self._executor.submit(
                self._sweep, job["id"], products, provider, config.similarity_dimension
            )
        return job

    @staticmethod
    def _checked(result: EmbeddingResult, dimension: int) -> list[float]:
        if result.degraded:
            raise RuntimeError(f"degraded embedding: {result.error}")
        if len(result.vector) != dimension:
            raise ValueError(f"expected {dimension} dimensions, got {len(result.vector)}")
        return result.vector

    def _index_one(self, product: Product, provider: EmbeddingProvider, dimension: int) -> None:
        text_vector = self._checked(provider.embed_text(product.embedding_text()), dimension)
        image_vectors: list[list[float]] = []
        if self.image_fetcher is not None:
            for url in product.images:
                image_vectors.append(self._checked(provider.embed_image(self.image_fetcher(url)), dimension))

        # Nothing is written until every vector of the product is good.
        if image_vectors:
            self.db.store_image_embeddings(product.id, image_vectors)
        self.db.store_text_embedding(product.id, text_vector)

    def _sweep(self, job_id: str, products: list[Product], provider: EmbeddingProvider, dimension: int) -> None:
        processed = 0
        failures = 0
        try:
            for product in products:
                if self._stop.is_set():
                    _LOGGER.info("Indexing job %s stopped early.", job_id)
                    break
                try:
                    self._index_one(product, provider, dimension)
                    processed += 1
                except Exception as exc:
                    failures += 1
                    _LOGGER.warning("Indexing failed for product %s: %s", product.id, exc)
                self.db.update_indexing_job(job_id, products_processed=processed, failures=failures)
        finally:
            self.db.update_indexing_job(
                job_id,
                status="completed",
                products_processed=processed,
                failures=failures,
                completed_at=utc_now(),
            )
            _LOGGER.info("Indexing job %s completed: %d processed, %d failed.", job_id, processed, failures)

    def wait(self, timeout: float | None = None) -> None:
        future = self._future
        if future is not None:
            future.result(timeout=timeout)

    def latest_job(self) -> dict[str, Any] | None:
        return self.db.get_latest_indexing_job()

    def shutdown(self) -> None:
        self._stop.set()
        self._executor.shutdown(wait=True, cancel_futures=True)
