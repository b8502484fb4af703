from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Product:
    id: str
    merchant_id: str
    title: str
    price_cents: int
    brand_id: str | None = None
    brand_name: str | None = None
    description: str | None = None
    currency: str = "EGP"
    colors: list[str] = field(default_factory=list)
    sizes: list[str] = field(default_factory=list)
    fit: str | None = None
    gender: str | None = None
    tags: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    vectors: dict[str, Any] | None = None
    published: bool = True
    views: int = 0
    clicks: int = 0
    last_indexed_at: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def price(self) -> float:
        return self.price_cents / 100

    @property
    def text_embedding(self) -> list[float] | None:
        if not self.vectors:
            return None
        return self.vectors.get("textEmbedding")

    @property
    def image_embeddings(self) -> list[list[float]]:
        if not self.vectors:
            return []
        return list(self.vectors.get("imageEmbeddings") or [])

    @property
    def is_stale(self) -> bool:
        return self.last_indexed_at is None or self.updated_at > self.last_indexed_at

    def embedding_text(self) -> str:
        return f"{self.title} {self.description or ''} {' '.join(self.tags)}".strip()


def _json_list(raw: str | None) -> list[Any]:
    if not raw:
        return []
    value = json.loads(raw)
    return value if isinstance(value, list) else []


def product_from_row(row: dict[str, Any]) -> Product:
    vectors = json.loads(row["vectors"]) if row.get("vectors") else None
    return Product(
        id=row["id"],
        merchant_id=row["merchant_id"],
        brand_id=row.get("brand_id"),
        brand_name=row.get("brand_name"),
        title=row["title"],
        description=row.get("description"),
        price_cents=int(row["price_cents"]),
        currency=row.get("currency") or "EGP",
        colors=_json_list(row.get("colors")),
        sizes=_json_list(row.get("sizes")),
        fit=row.get("fit"),
        gender=row.get("gender"),
        tags=_json_list(row.get("tags")),
        images=_json_list(row.get("images")),
        vectors=vectors,
        published=bool(row.get("published", 1)),
        views=int(row.get("views") or 0),
        clicks=int(row.get("clicks") or 0),
        last_indexed_at=row.get("last_indexed_at"),
        created_at=row.get("created_at") or "",
        updated_at=row.get("updated_at") or "",
    )


def product_summary(product: Product) -> dict[str, Any]:
    """Display-ready projection returned by catalog and search endpoints."""
    return {
        "id": product.id,
        "merchantId": product.merchant_id,
        "brandId": product.brand_id,
        "brandName": product.brand_name,
        "title": product.title,
        "description": product.description,
        "price": product.price,
        "currency": product.currency,
        "colors": list(product.colors),
        "sizes": list(product.sizes),
        "fit": product.fit,
        "gender": product.gender,
        "tags": list(product.tags),
        "images": list(product.images),
        "published": product.published,
        "views": product.views,
        "clicks": product.clicks,
        "createdAt": product.created_at,
        "updatedAt": product.updated_at,
    }
