"""HTTP-level tests for the FastAPI app."""

from __future__ import annotations

from dataclasses import replace

from fastapi.testclient import TestClient

from marketplace_search.api import create_app
from marketplace_search.service import MarketplaceService


class TestSearchRoutes:
    def test_text_search_with_filters(self, client, catalog):
        resp = client.post("/search/text", json={"q": "", "filters": {"priceMin": 1000, "colors": ["Blue"]}})
        assert resp.status_code == 200
        body = resp.json()
        assert {r["title"] for r in body["results"]} == {"Slim Jeans", "Linen Shirt"}
        assert body["count"] == 2

    def test_validation_errors_have_field_detail(self, client):
        resp = client.post("/search/text", json={"filters": {"priceMin": -5}})
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "Validation Error"
        fields = {d["field"] for d in body["details"]}
        assert "q" in fields
        assert "filters.priceMin" in fields

    def test_image_search(self, client, catalog):
        resp = client.post("/search/image", files={"image": ("look.jpg", b"\xff\xd8fake", "image/jpeg")})
        assert resp.status_code == 200
        body = resp.json()
        assert body["count"] == len(body["results"]) == 4
        assert body["degraded"] is False

    def test_image_search_requires_bytes(self, client):
        resp = client.post("/search/image", files={"image": ("empty.jpg", b"", "image/jpeg")})
        assert resp.status_code == 400

    def test_image_search_disabled(self, client):
        client.patch("/admin/config", json={"enableImageSearch": False})
        resp = client.post("/search/image", files={"image": ("look.jpg", b"img", "image/jpeg")})
        assert resp.status_code == 503

    def test_spell(self, client):
        assert client.post("/search/spell", json={"q": "hoddie"}).json() == {"suggestions": ["hoodie"]}
        assert client.post("/search/spell", json={"q": "تيشيرت", "language": "ar"}).json() == {
            "suggestions": ["t-shirt"]
        }
        assert client.post("/search/spell", json={"q": "x", "language": "fr"}).status_code == 400

    def test_spell_disabled_returns_nothing(self, client):
        client.patch("/admin/config", json={"enableSpellCorrection": False})
        assert client.post("/search/spell", json={"q": "hodie"}).json() == {"suggestions": []}

    def test_custom_synonym(self, client):
        resp = client.post("/admin/synonyms", json={"from": "Sweter", "to": "sweater"})
        assert resp.status_code == 200
        assert resp.json()["synonyms"]["sweter"] == "sweater"
        assert client.post("/search/spell", json={"q": "sweter"}).json() == {"suggestions": ["sweater"]}


class TestOutfitRoute:
    def test_fallback_outfit(self, client, catalog):
        resp = client.post("/outfit/ai", json={"height": 175, "weight": 70, "prompt": "casual"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["top"]["id"] in {catalog["hoodie"]["id"], catalog["shirt"]["id"]}
        assert body["shoe"]["brand"] == "Nike"
        assert body["degraded"] is True

    def test_unknown_product(self, client):
        resp = client.post("/outfit/ai", json={"productIds": ["missing"]})
        assert resp.status_code == 404

    def test_disabled(self, client):
        client.patch("/admin/config", json={"enableOutfitAI": False})
        assert client.post("/outfit/ai", json={}).status_code == 503


class TestCatalogRoutes:
    def test_create_and_fetch_product(self, client):
        merchant = client.post("/merchants", json={"name": "Nile Threads", "city": "Cairo"}).json()
        brand = client.post("/brands", json={"name": "Delta Denim"}).json()
        resp = client.post(
            "/products",
            json={
                "merchantId": merchant["id"],
                "brandId": brand["id"],
                "title": "Wide Leg Jeans",
                "priceCents": 129950,
                "sizes": ["30", "32"],
                "tags": ["jeans"],
            },
        )
        assert resp.status_code == 201
        product = resp.json()
        assert product["price"] == 1299.5
        assert product["brandName"] == "Delta Denim"

        fetched = client.get(f"/products/{product['id']}").json()
        assert fetched["views"] == 1
        assert client.post(f"/products/{product['id']}/click").json() == {"success": True}
        assert client.get(f"/products/{product['id']}").json()["clicks"] == 1

    def test_duplicate_brand(self, client, brand):
        assert client.post("/brands", json={"name": brand["name"]}).status_code == 400

    def test_product_for_unknown_merchant(self, client):
        resp = client.post("/products", json={"merchantId": "missing", "title": "Tee", "priceCents": 100})
        assert resp.status_code == 404

    def test_missing_product(self, client):
        assert client.get("/products/missing").status_code == 404
        assert client.post("/products/missing/click").status_code == 404
        assert client.patch("/products/missing", json={"title": "x"}).status_code == 404

    def test_errors_use_a_single_body_shape(self, client):
        resp = client.get("/products/missing")
        assert resp.json() == {"error": "Product not found."}

        resp = client.get("/no-such-route")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Not Found"}

    def test_update_product(self, client, catalog):
        product_id = catalog["draft"]["id"]
        assert client.patch(f"/products/{product_id}", json={}).status_code == 400

        resp = client.patch(f"/products/{product_id}", json={"published": True, "priceCents": 65000})
        assert resp.status_code == 200
        assert resp.json()["price"] == 650.0
        assert resp.json()["published"] is True

    def test_list_products(self, client, catalog, merchant):
        everything = client.get("/products").json()
        assert len(everything) == len(catalog)
        published = client.get("/products", params={"published": "true", "merchantId": merchant["id"]}).json()
        assert len(published) == len(catalog) - 1
        assert [p["title"] for p in client.get("/products", params={"search": "skirt"}).json()] == ["Midi Skirt"]


class TestAdminRoutes:
    def test_rebuild_and_health(self, client, service, catalog):
        assert client.get("/admin/index/health").json() == {"status": "no jobs yet"}

        resp = client.post("/admin/index/rebuild")
        assert resp.status_code == 200
        assert resp.json()["totalProducts"] == len(catalog)
        service.indexer.wait(timeout=10)

        health = client.get("/admin/index/health").json()
        assert health["status"] == "completed"
        assert health["productsProcessed"] == len(catalog)
        assert health["id"] == resp.json()["jobId"]

    def test_rebuild_without_provider_key(self, settings, db):
        # The default factory resolves real providers from config.
        svc = MarketplaceService(settings, db=db)
        svc.update_config({"embeddings_provider": "openai"})
        with TestClient(create_app(svc)) as test_client:
            resp = test_client.post("/admin/index/rebuild")
        assert resp.status_code == 400
        assert "OpenAI API key required" in resp.json()["error"]

    def test_image_search_without_provider_key_is_a_server_error(self, settings, db):
        svc = MarketplaceService(settings, db=db)
        svc.update_config({"embeddings_provider": "openai"})
        with TestClient(create_app(svc)) as test_client:
            resp = test_client.post("/search/image", files={"image": ("look.jpg", b"\xff\xd8fake", "image/jpeg")})
        svc.shutdown()
        assert resp.status_code == 500
        assert "OpenAI API key required" in resp.json()["error"]

    def test_config_update(self, client):
        resp = client.patch(
            "/admin/config",
            json={"embeddingsProvider": "openai", "providerKeys": {"openai": "sk-test-abcd9876"}, "similarityTopK": 5},
        )
        assert resp.status_code == 200
        config = resp.json()
        assert config["similarityDimension"] == 768
        assert config["similarityTopK"] == 5
        assert config["providerKeys"] == {"openai": "****9876"}
        assert client.get("/admin/config").json() == config

    def test_config_rejects_unknown_values(self, client):
        assert client.patch("/admin/config", json={"similarityMetric": "manhattan"}).status_code == 400
        assert client.patch("/admin/config", json={"similarityTopK": 0}).status_code == 400

    def test_metrics_summary(self, client, service):
        client.post("/search/text", json={"q": "tee"})
        client.post("/search/text", json={"q": "hoodie"})
        # the writer is single-threaded, so this write lands after the two above
        service.metrics.record(route="/flush", method="GET", status_code=200, duration_ms=0).result()

        body = client.get("/admin/metrics", params={"limit": 50}).json()
        summary = {row["route"]: row for row in body["summary"]}
        assert summary["/search/text"]["count"] == 2
        assert len(body["metrics"]) >= 3

    def test_health(self, client, catalog):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["stats"]["product_count"] == len(catalog)
        assert body["stats"]["embeddings_provider"] == "local"


class TestAdminToken:
    def _client(self, settings, db) -> TestClient:
        svc = MarketplaceService(replace(settings, admin_token="secret"), db=db)
        return TestClient(create_app(svc))

    def test_missing_token(self, settings, db):
        with self._client(settings, db) as client:
            assert client.get("/admin/config").status_code == 401

    def test_wrong_token(self, settings, db):
        with self._client(settings, db) as client:
            assert client.get("/admin/config", headers={"X-Admin-Token": "nope"}).status_code == 403

    def test_valid_token(self, settings, db):
        with self._client(settings, db) as client:
            assert client.get("/admin/config", headers={"X-Admin-Token": "secret"}).status_code == 200

    def test_public_routes_stay_open(self, settings, db):
        with self._client(settings, db) as client:
            assert client.post("/search/text", json={"q": ""}).status_code == 200
