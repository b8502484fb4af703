from __future__ import annotations

from contextlib import asynccontextmanager, contextmanager
import logging
import time
from typing import Any, Iterator, Literal

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from marketplace_search.errors import FeatureDisabledError, IndexingConflictError
from marketplace_search.outfits import ShopperProfile
from marketplace_search.search import SearchFilters
from marketplace_search.service import MarketplaceService


_LOGGER = logging.getLogger(__name__)


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class FiltersModel(CamelModel):
    sizes: list[str] | None = None
    colors: list[str] | None = None
    price_min: float | None = Field(default=None, alias="priceMin", ge=0)
    price_max: float | None = Field(default=None, alias="priceMax", ge=0)

    def to_filters(self) -> SearchFilters:
        return SearchFilters(
            sizes=self.sizes or [],
            colors=self.colors or [],
            price_min=self.price_min,
            price_max=self.price_max,
        )


class TextSearchRequest(CamelModel):
    q: str
    filters: FiltersModel | None = None


class SpellRequest(CamelModel):
    q: str
    language: Literal["en", "ar"] = "en"


class OutfitRequest(CamelModel):
    height: int | None = Field(default=None, gt=0, le=300)
    weight: int | None = Field(default=None, gt=0, le=500)
    prompt: str = ""
    product_ids: list[str] | None = Field(default=None, alias="productIds")


class MerchantCreate(CamelModel):
    name: str = Field(min_length=1)
    city: str | None = None


class BrandCreate(CamelModel):
    name: str = Field(min_length=1)


class ProductFields(CamelModel):
    brand_id: str | None = Field(default=None, alias="brandId")
    description: str | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    colors: list[str] | None = None
    sizes: list[str] | None = None
    fit: Literal["slim", "regular", "relaxed", "oversized"] | None = None
    gender: Literal["male", "female", "unisex"] | None = None
    tags: list[str] | None = None
    images: list[str] | None = None
    published: bool | None = None


class ProductCreate(ProductFields):
    merchant_id: str = Field(alias="merchantId")
    title: str = Field(min_length=1)
    price_cents: int = Field(alias="priceCents", ge=0)


class ProductUpdate(ProductFields):
    title: str | None = Field(default=None, min_length=1)
    price_cents: int | None = Field(default=None, alias="priceCents", ge=0)


class ProviderKeysModel(CamelModel):
    huggingface: str | None = None
    openai: str | None = None
    gemini: str | None = None


class ConfigUpdate(CamelModel):
    embeddings_provider: Literal["local", "huggingface", "openai"] | None = Field(
        default=None, alias="embeddingsProvider"
    )
    image_generation_provider: Literal["off", "stable-diffusion", "dalle"] | None = Field(
        default=None, alias="imageGenerationProvider"
    )
    similarity_dimension: int | None = Field(default=None, alias="similarityDimension", gt=0, le=4096)
    similarity_metric: Literal["cosine", "euclidean", "dot"] | None = Field(default=None, alias="similarityMetric")
    similarity_top_k: int | None = Field(default=None, alias="similarityTopK", gt=0, le=500)
    enable_rerank: bool | None = Field(default=None, alias="enableRerank")
    enable_spell_correction: bool | None = Field(default=None, alias="enableSpellCorrection")
    enable_outfit_ai: bool | None = Field(default=None, alias="enableOutfitAI")
    enable_image_search: bool | None = Field(default=None, alias="enableImageSearch")
    enable_multilingual: bool | None = Field(default=None, alias="enableMultilingual")
    enable_analytics_stream: bool | None = Field(default=None, alias="enableAnalyticsStream")
    image_search_ranking: Literal["compat", "similarity"] | None = Field(default=None, alias="imageSearchRanking")
    provider_keys: ProviderKeysModel | None = Field(default=None, alias="providerKeys")
    synonyms: dict[str, str] | None = None

    def to_updates(self) -> dict[str, Any]:
        return {name: value for name, value in self.model_dump(exclude_unset=True).items() if value is not None}


class SynonymCreate(CamelModel):
    source: str = Field(alias="from", min_length=1)
    target: str = Field(alias="to", min_length=1)


@contextmanager
def translate_errors() -> Iterator[None]:
    """Map service exceptions onto HTTP status codes."""
    try:
        yield
    except FeatureDisabledError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except IndexingConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except KeyError as exc:
        detail = exc.args[0] if exc.args else "Not found."
        raise HTTPException(status_code=404, detail=str(detail)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        _LOGGER.exception("Request failed")
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def create_app(service: MarketplaceService) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        service.shutdown()

    app = FastAPI(title="Marketplace Search", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1:5173", "http://localhost:5173", "http://localhost:8000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _is_admin(token: str | None) -> bool:
        expected = service.settings.admin_token
        return expected is None or token == expected

    @app.middleware("http")
    async def record_metrics(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - started) * 1000)
        token = request.headers.get("x-admin-token")
        service.metrics.record(
            route=request.url.path,
            method=request.method,
            status_code=response.status_code,
            duration_ms=duration_ms,
            user_id=request.headers.get("x-user-id"),
            user_role="admin" if token and _is_admin(token) else None,
            user_agent=request.headers.get("user-agent"),
        )
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"error": "Validation Error", "details": details})

    def require_admin(x_admin_token: str | None = Header(default=None)) -> None:
        if _is_admin(x_admin_token):
            return
        if not x_admin_token:
            raise HTTPException(status_code=401, detail="Admin token required.")
        raise HTTPException(status_code=403, detail="Insufficient permissions.")

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "app": "marketplace-search", "stats": service.stats()}

    # Search

    @app.post("/search/text")
    def search_text(request: TextSearchRequest) -> dict:
        filters = request.filters.to_filters() if request.filters else None
        with translate_errors():
            return service.search_text(request.q, filters)

    @app.post("/search/image")
    async def search_image(image: UploadFile = File(...)) -> dict:
        payload = await image.read()
        if not payload:
            raise HTTPException(status_code=400, detail="No image provided")
        with translate_errors():
            return await run_in_threadpool(service.search_image, payload)

    @app.post("/search/spell")
    def spell(request: SpellRequest) -> dict:
        return {"suggestions": service.spell(request.q, request.language)}

    @app.post("/outfit/ai")
    def outfit(request: OutfitRequest) -> dict:
        profile = ShopperProfile(height_cm=request.height, weight_kg=request.weight, prompt=request.prompt)
        with translate_errors():
            return service.suggest_outfit(profile, request.product_ids)

    # Catalog

    @app.post("/merchants", status_code=201)
    def create_merchant(request: MerchantCreate) -> dict:
        return service.create_merchant(request.name, request.city)

    @app.post("/brands", status_code=201)
    def create_brand(request: BrandCreate) -> dict:
        with translate_errors():
            return service.create_brand(request.name)

    @app.get("/products")
    def list_products(
        merchant_id: str | None = Query(default=None, alias="merchantId"),
        brand_id: str | None = Query(default=None, alias="brandId"),
        published: bool | None = None,
        search: str | None = None,
    ) -> list[dict]:
        return service.list_products(merchant_id=merchant_id, brand_id=brand_id, published=published, search=search)

    @app.post("/products", status_code=201)
    def create_product(request: ProductCreate) -> dict:
        fields = request.model_dump(exclude_unset=True, exclude={"merchant_id", "title", "price_cents"})
        with translate_errors():
            return service.create_product(
                merchant_id=request.merchant_id,
                title=request.title,
                price_cents=request.price_cents,
                **fields,
            )

    @app.get("/products/{product_id}")
    def get_product(product_id: str) -> dict:
        with translate_errors():
            return service.view_product(product_id)

    @app.patch("/products/{product_id}")
    def update_product(product_id: str, request: ProductUpdate) -> dict:
        changes = request.model_dump(exclude_unset=True)
        if not changes:
            raise HTTPException(status_code=400, detail="No fields to update.")
        with translate_errors():
            return service.update_product(product_id, changes)

    @app.post("/products/{product_id}/click")
    def record_click(product_id: str) -> dict:
        with translate_errors():
            service.record_click(product_id)
        return {"success": True}

    # Admin

    @app.post("/admin/index/rebuild", dependencies=[Depends(require_admin)])
    def rebuild_index() -> dict:
        with translate_errors():
            return service.start_reindex()

    @app.get("/admin/index/health", dependencies=[Depends(require_admin)])
    def index_health() -> dict:
        return service.index_health()

    @app.get("/admin/config", dependencies=[Depends(require_admin)])
    def get_config() -> dict:
        return service.config.to_public()

    @app.patch("/admin/config", dependencies=[Depends(require_admin)])
    def update_config(request: ConfigUpdate) -> dict:
        with translate_errors():
            return service.update_config(request.to_updates()).to_public()

    @app.post("/admin/synonyms", dependencies=[Depends(require_admin)])
    def add_synonym(request: SynonymCreate) -> dict:
        with translate_errors():
            return {"synonyms": service.add_synonym(request.source, request.target)}

    @app.get("/admin/metrics", dependencies=[Depends(require_admin)])
    def metrics(limit: int = 1000) -> dict:
        safe_limit = max(1, min(limit, 10000))
        return service.metrics_report(safe_limit)

    return app
