from __future__ import annotations

from contextlib import contextmanager
import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from marketplace_search.catalog import Product, product_from_row
from marketplace_search.config import SystemConfig


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


_PRODUCT_SELECT = """
    SELECT p.*, b.name AS brand_name
    FROM products p
    LEFT JOIN brands b ON b.id = p.brand_id
"""

_PRODUCT_FIELDS = (
    "brand_id",
    "title",
    "description",
    "price_cents",
    "currency",
    "colors",
    "sizes",
    "fit",
    "gender",
    "tags",
    "images",
    "published",
)
_JSON_FIELDS = {"colors", "sizes", "tags", "images"}
_REQUIRED_PRODUCT_FIELDS = ("title", "price_cents", "currency", "published")

_CONFIG_SCALARS = (
    "embeddings_provider",
    "image_generation_provider",
    "similarity_dimension",
    "similarity_metric",
    "similarity_top_k",
    "enable_rerank",
    "enable_spell_correction",
    "enable_outfit_ai",
    "enable_image_search",
    "enable_multilingual",
    "enable_analytics_stream",
    "image_search_ranking",
)
_CONFIG_BOOLS = {name for name in _CONFIG_SCALARS if name.startswith("enable_")}


class MarketplaceDB:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS merchants (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    city TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS brands (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS products (
                    id TEXT PRIMARY KEY,
                    merchant_id TEXT NOT NULL,
                    brand_id TEXT,
                    title TEXT NOT NULL,
                    description TEXT,
                    price_cents INTEGER NOT NULL,
                    currency TEXT NOT NULL DEFAULT 'EGP',
                    colors TEXT NOT NULL DEFAULT '[]',
                    sizes TEXT NOT NULL DEFAULT '[]',
                    fit TEXT,
                    gender TEXT,
                    tags TEXT NOT NULL DEFAULT '[]',
                    images TEXT NOT NULL DEFAULT '[]',
                    vectors TEXT,
                    published INTEGER NOT NULL DEFAULT 1,
                    views INTEGER NOT NULL DEFAULT 0,
                    clicks INTEGER NOT NULL DEFAULT 0,
                    last_indexed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (merchant_id) REFERENCES merchants(id) ON DELETE CASCADE,
                    FOREIGN KEY (brand_id) REFERENCES brands(id) ON DELETE SET NULL
                );

                CREATE INDEX IF NOT EXISTS idx_products_merchant ON products(merchant_id);
                CREATE INDEX IF NOT EXISTS idx_products_brand ON products(brand_id);
                CREATE INDEX IF NOT EXISTS idx_products_published ON products(published);

                CREATE TABLE IF NOT EXISTS system_config (
                    id TEXT PRIMARY KEY DEFAULT 'singleton',
                    embeddings_provider TEXT NOT NULL,
                    image_generation_provider TEXT NOT NULL,
                    similarity_dimension INTEGER NOT NULL,
                    similarity_metric TEXT NOT NULL,
                    similarity_top_k INTEGER NOT NULL,
                    enable_rerank INTEGER NOT NULL,
                    enable_spell_correction INTEGER NOT NULL,
                    enable_outfit_ai INTEGER NOT NULL,
                    enable_image_search INTEGER NOT NULL,
                    enable_multilingual INTEGER NOT NULL,
                    enable_analytics_stream INTEGER NOT NULL,
                    image_search_ranking TEXT NOT NULL,
                    provider_keys TEXT NOT NULL DEFAULT '{}',
                    synonyms TEXT NOT NULL DEFAULT '{}',
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS indexing_jobs (
                    id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    products_total INTEGER NOT NULL DEFAULT 0,
                    products_processed INTEGER NOT NULL DEFAULT 0,
                    failures INTEGER NOT NULL DEFAULT 0,
                    started_at TEXT NOT NULL,
                    completed_at TEXT
                );

                CREATE TABLE IF NOT EXISTS metrics (
                    id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL,
                    route TEXT NOT NULL,
                    method TEXT NOT NULL,
                    status_code INTEGER NOT NULL,
                    duration_ms INTEGER NOT NULL,
                    user_id TEXT,
                    user_role TEXT,
                    user_agent TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_metrics_route ON metrics(route);
                CREATE INDEX IF NOT EXISTS idx_metrics_created_at ON metrics(created_at);
                """
            )

    # Merchants and brands

    def create_merchant(self, name: str, city: str | None = None) -> dict[str, Any]:
        row = {"id": uuid.uuid4().hex, "name": name, "city": city, "created_at": utc_now()}
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO merchants (id, name, city, created_at) VALUES (:id, :name, :city, :created_at)",
                row,
            )
        return row

    def get_merchant(self, merchant_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM merchants WHERE id = ?", (merchant_id,)).fetchone()
        return dict(row) if row else None

    def delete_merchant(self, merchant_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM merchants WHERE id = ?", (merchant_id,))

    def create_brand(self, name: str) -> dict[str, Any]:
        row = {"id": uuid.uuid4().hex, "name": name, "created_at": utc_now()}
        with self._connect() as conn:
            try:
                conn.execute("INSERT INTO brands (id, name, created_at) VALUES (:id, :name, :created_at)", row)
            except sqlite3.IntegrityError as exc:
                raise ValueError(f"Brand {name!r} already exists.") from exc
        return row

    def get_brand(self, brand_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM brands WHERE id = ?", (brand_id,)).fetchone()
        return dict(row) if row else None

    def delete_brand(self, brand_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM brands WHERE id = ?", (brand_id,))

    # Products

    @staticmethod
    def _encode_product_field(name: str, value: Any) -> Any:
        if name in _JSON_FIELDS:
            return json.dumps(list(value or []), ensure_ascii=False)
        if name == "published":
            return 1 if value else 0
        return value

    def _check_references(self, merchant_id: str | None, brand_id: str | None) -> None:
        if merchant_id is not None and self.get_merchant(merchant_id) is None:
            raise KeyError("Merchant not found.")
        if brand_id is not None and self.get_brand(brand_id) is None:
            raise KeyError("Brand not found.")

    def create_product(self, *, merchant_id: str, title: str, price_cents: int, **fields: Any) -> Product:
        unknown = set(fields) - set(_PRODUCT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown product fields: {sorted(unknown)}")
        self._check_references(merchant_id, fields.get("brand_id"))

        timestamp = utc_now()
        values: dict[str, Any] = {
            "id": uuid.uuid4().hex,
            "merchant_id": merchant_id,
            "title": title,
            "price_cents": int(price_cents),
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        for name, value in fields.items():
            if value is not None:
                values[name] = self._encode_product_field(name, value)

        columns = ", ".join(values)
        placeholders = ", ".join(f":{name}" for name in values)
        with self._connect() as conn:
            conn.execute(f"INSERT INTO products ({columns}) VALUES ({placeholders})", values)
        product = self.get_product(values["id"])
        if product is None:
            raise RuntimeError(f"Product {values['id']} disappeared after insert.")
        return product

    def update_product(self, product_id: str, changes: dict[str, Any]) -> Product:
        unknown = set(changes) - set(_PRODUCT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown product fields: {sorted(unknown)}")
        cleared = [name for name in _REQUIRED_PRODUCT_FIELDS if name in changes and changes[name] is None]
        if cleared:
            raise ValueError(f"Fields cannot be cleared: {cleared}")
        if self.get_product(product_id) is None:
            raise KeyError("Product not found.")
        self._check_references(None, changes.get("brand_id"))

        values = {name: self._encode_product_field(name, value) for name, value in changes.items()}
        values["updated_at"] = utc_now()
        assignments = ", ".join(f"{name} = :{name}" for name in values)
        with self._connect() as conn:
            conn.execute(f"UPDATE products SET {assignments} WHERE id = :product_id", {**values, "product_id": product_id})
        product = self.get_product(product_id)
        if product is None:
            raise KeyError("Product not found.")
        return product

    def get_product(self, product_id: str) -> Product | None:
        with self._connect() as conn:
            row = conn.execute(f"{_PRODUCT_SELECT} WHERE p.id = ?", (product_id,)).fetchone()
        return product_from_row(dict(row)) if row else None

    def list_products(
        self,
        *,
        published: bool | None = None,
        search: str | None = None,
        merchant_id: str | None = None,
        brand_id: str | None = None,
        limit: int | None = None,
    ) -> list[Product]:
        conditions: list[str] = []
        params: list[Any] = []
        if published is not None:
            conditions.append("p.published = ?")
            params.append(1 if published else 0)
        if merchant_id:
            conditions.append("p.merchant_id = ?")
            params.append(merchant_id)
        if brand_id:
            conditions.append("p.brand_id = ?")
            params.append(brand_id)

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"{_PRODUCT_SELECT} {where} ORDER BY p.created_at DESC, p.rowid DESC",
                params,
            ).fetchall()
        products = [product_from_row(dict(row)) for row in rows]

        # SQLite's LIKE only folds ASCII; titles may be Arabic.
        if search:
            needle = search.casefold()
            products = [p for p in products if needle in p.title.casefold()]
        if limit is not None:
            products = products[:limit]
        return products

    def increment_counter(self, product_id: str, counter: str) -> None:
        if counter not in {"views", "clicks"}:
            raise ValueError(f"Unknown counter: {counter}")
        with self._connect() as conn:
            cur = conn.execute(f"UPDATE products SET {counter} = {counter} + 1 WHERE id = ?", (product_id,))
        if cur.rowcount == 0:
            raise KeyError("Product not found.")

    def products_needing_indexing(self, limit: int = 100) -> list[Product]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                {_PRODUCT_SELECT}
                WHERE p.last_indexed_at IS NULL OR p.updated_at > p.last_indexed_at
                ORDER BY p.created_at ASC, p.rowid ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [product_from_row(dict(row)) for row in rows]

    def store_text_embedding(self, product_id: str, embedding: list[float]) -> None:
        """Persist a text vector. ``updated_at`` is left alone so the product stops being stale."""
        with self._connect() as conn:
            row = conn.execute("SELECT vectors FROM products WHERE id = ?", (product_id,)).fetchone()
            if row is None:
                raise KeyError("Product not found.")
            vectors = json.loads(row["vectors"]) if row["vectors"] else {}
            vectors["textEmbedding"] = list(embedding)
            conn.execute(
                "UPDATE products SET vectors = ?, last_indexed_at = ? WHERE id = ?",
                (json.dumps(vectors), utc_now(), product_id),
            )

    def store_image_embeddings(self, product_id: str, embeddings: list[list[float]]) -> None:
        with self._connect() as conn:
            row = conn.execute("SELECT vectors FROM products WHERE id = ?", (product_id,)).fetchone()
            if row is None:
                raise KeyError("Product not found.")
            vectors = json.loads(row["vectors"]) if row["vectors"] else {}
            vectors["imageEmbeddings"] = [list(vec) for vec in embeddings]
            conn.execute("UPDATE products SET vectors = ? WHERE id = ?", (json.dumps(vectors), product_id))

    # System config

    def get_system_config(self) -> SystemConfig | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM system_config WHERE id = 'singleton'").fetchone()
        if not row:
            return None
        data = dict(row)
        kwargs: dict[str, Any] = {
            name: bool(data[name]) if name in _CONFIG_BOOLS else data[name] for name in _CONFIG_SCALARS
        }
        kwargs["provider_keys"] = json.loads(data["provider_keys"] or "{}")
        kwargs["synonyms"] = json.loads(data["synonyms"] or "{}")
        kwargs["updated_at"] = data["updated_at"]
        return SystemConfig(**kwargs)

    def save_system_config(self, config: SystemConfig) -> SystemConfig:
        values: dict[str, Any] = {
            name: int(getattr(config, name)) if name in _CONFIG_BOOLS else getattr(config, name)
            for name in _CONFIG_SCALARS
        }
        values["provider_keys"] = json.dumps(config.provider_keys)
        values["synonyms"] = json.dumps(config.synonyms, ensure_ascii=False)
        values["updated_at"] = utc_now()

        columns = ", ".join(values)
        placeholders = ", ".join(f":{name}" for name in values)
        updates = ", ".join(f"{name}=excluded.{name}" for name in values)
        with self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO system_config (id, {columns}) VALUES ('singleton', {placeholders})
                ON CONFLICT(id) DO UPDATE SET {updates}
                """,
                values,
            )
        saved = self.get_system_config()
        if saved is None:
            raise RuntimeError("System config could not be read back after saving.")
        return saved

    # Indexing jobs

    def create_indexing_job(self, products_total: int) -> dict[str, Any]:
        job = {
            "id": uuid.uuid4().hex,
            "status": "running",
            "products_total": products_total,
            "products_processed": 0,
            "failures": 0,
            "started_at": utc_now(),
            "completed_at": None,
        }
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO indexing_jobs
                    (id, status, products_total, products_processed, failures, started_at, completed_at)
                VALUES (:id, :status, :products_total, :products_processed, :failures, :started_at, :completed_at)
                """,
                job,
            )
        return job

    def update_indexing_job(self, job_id: str, **fields: Any) -> None:
        allowed = {"status", "products_processed", "failures", "completed_at"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown job fields: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = :{name}" for name in fields)
        with self._connect() as conn:
            conn.execute(f"UPDATE indexing_jobs SET {assignments} WHERE id = :job_id", {**fields, "job_id": job_id})

    def close_running_jobs(self) -> int:
        """Finalize jobs left running by a previous process."""
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE indexing_jobs SET status = 'completed', completed_at = ? WHERE status = 'running'",
                (utc_now(),),
            )
        return cur.rowcount

    def get_indexing_job(self, job_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM indexing_jobs WHERE id = ?", (job_id,)).fetchone()
        return dict(row) if row else None

    def get_latest_indexing_job(self) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM indexing_jobs ORDER BY started_at DESC, rowid DESC LIMIT 1"
            ).fetchone()
        return dict(row) if row else None

    # Metrics

    def create_metric(
        self,
        *,
        route: str,
        method: str,
        status_code: int,
        duration_ms: int,
        user_id: str | None = None,
        user_role: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO metrics
                    (id, request_id, route, method, status_code, duration_ms, user_id, user_role, user_agent, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    uuid.uuid4().hex,
                    uuid.uuid4().hex,
                    route,
                    method,
                    status_code,
                    duration_ms,
                    user_id,
                    user_role,
                    user_agent,
                    utc_now(),
                ),
            )

    def list_metrics(self, limit: int = 1000) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM metrics ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [dict(row) for row in rows]

    def stats(self) -> dict[str, Any]:
        with self._connect() as conn:
            counts = conn.execute(
                """
                SELECT
                  (SELECT COUNT(*) FROM products) AS product_count,
                  (SELECT COUNT(*) FROM products WHERE published = 1) AS published_count,
                  (SELECT COUNT(*) FROM products
                     WHERE last_indexed_at IS NULL OR updated_at > last_indexed_at) AS stale_count,
                  (SELECT COUNT(*) FROM indexing_jobs) AS job_count
                """
            ).fetchone()
        return dict(counts) if counts else {"product_count": 0, "published_count": 0, "stale_count": 0, "job_count": 0}
