from datetime import datetime, timezone

from bson import ObjectId
from fastapi.testclient import TestClient
from pymongo.errors import PyMongoError

import main
from conftest import bearer, register
from main import create_app
from settings import Settings

POT = {
    "name": "Blue Pottery Vase",
    "description": "Hand painted Jaipur blue pottery",
    "price": 1200,
    "category": "Pottery",
    "stock": 4,
}


def test_create_product_uploads_images(client, db, artisan, image_store):
    resp = client.post("/api/products", json={**POT, "images": ["aGVsbG8=", "d29ybGQ="]}, headers=bearer(artisan))

    assert resp.status_code == 201
    product = resp.json()
    assert product["images"] == image_store.uploaded
    assert len(product["images"]) == 2
    assert all(url.startswith("https://") for url in product["images"])
    assert product["artisan"] == artisan["user"]["id"]
    assert product["price"] == 1200
    assert db.products.count_documents({}) == 1


def test_rejected_image_is_skipped(client, artisan, image_store):
    image_store.rejected.add("YmFk")
    resp = client.post("/api/products", json={**POT, "images": ["aGVsbG8=", "YmFk"]}, headers=bearer(artisan))

    assert resp.status_code == 201
    assert len(resp.json()["images"]) == 1


def test_empty_image_entry_is_skipped(client, artisan):
    resp = client.post("/api/products", json={**POT, "images": ["", "aGVsbG8="]}, headers=bearer(artisan))
    assert resp.status_code == 201
    assert len(resp.json()["images"]) == 1


def test_null_images_creates_product_without_images(client, artisan, image_store):
    resp = client.post("/api/products", json={**POT, "images": None}, headers=bearer(artisan))

    assert resp.status_code == 201
    assert resp.json()["images"] == []
    assert image_store.uploaded == []


def test_stock_defaults_to_zero(client, artisan):
    body = {k: v for k, v in POT.items() if k != "stock"}
    resp = client.post("/api/products", json=body, headers=bearer(artisan))
    assert resp.status_code == 201
    assert resp.json()["stock"] == 0
    assert resp.json()["images"] == []


def test_negative_price_is_rejected(client, db, artisan):
    resp = client.post("/api/products", json={**POT, "price": -1}, headers=bearer(artisan))
    assert resp.status_code == 400
    assert db.products.count_documents({}) == 0


def test_only_artisans_create_products(client, db, buyer, image_store):
    resp = client.post("/api/products", json={**POT, "images": ["aGVsbG8="]}, headers=bearer(buyer))
    assert resp.status_code == 403
    assert db.products.count_documents({}) == 0
    assert image_store.uploaded == []


def test_create_product_requires_token(client, db, image_store):
    resp = client.post("/api/products", json={**POT, "images": ["aGVsbG8="]})
    assert resp.status_code == 401
    assert db.products.count_documents({}) == 0
    assert image_store.uploaded == []


def test_failed_save_cleans_up_uploaded_images(client, db, artisan, image_store, monkeypatch):
    def broken_insert(*args, **kwargs):
        raise PyMongoError("write failed")

    monkeypatch.setattr(main, "create_document", broken_insert)
    resp = client.post("/api/products", json={**POT, "images": ["aGVsbG8=", "d29ybGQ="]}, headers=bearer(artisan))

    assert resp.status_code == 500
    assert resp.json()["message"] == "Error creating product"
    assert image_store.deleted == image_store.uploaded
    assert len(image_store.deleted) == 2


def test_failed_save_hides_message_in_production(db, image_store, monkeypatch):
    def broken_insert(*args, **kwargs):
        raise PyMongoError("write failed")

    settings = Settings(environment="production", jwt_secret="test-secret")
    client = TestClient(create_app(settings, db=db, image_store=image_store))
    artisan = register(client)
    monkeypatch.setattr(main, "create_document", broken_insert)
    resp = client.post("/api/products", json={**POT, "images": ["aGVsbG8="]}, headers=bearer(artisan))

    assert resp.status_code == 500
    assert resp.json()["code"] == "DB_ERROR"
    assert resp.json()["message"] == "Internal Server Error"
    assert image_store.deleted == image_store.uploaded


def test_list_products_filters_by_category(client, artisan):
    client.post("/api/products", json=POT, headers=bearer(artisan))
    client.post("/api/products", json={**POT, "name": "Shawl", "category": "Textile"}, headers=bearer(artisan))

    all_products = client.get("/api/products").json()
    assert len(all_products) == 2

    textiles = client.get("/api/products", params={"category": "Textile"}).json()
    assert [p["name"] for p in textiles] == ["Shawl"]


def test_list_products_is_public_and_newest_first(client, db):
    older = datetime(2024, 1, 1, tzinfo=timezone.utc)
    newer = datetime(2024, 6, 1, tzinfo=timezone.utc)
    db.products.insert_many([
        {**POT, "name": "First", "images": [], "artisan": ObjectId(), "createdAt": older},
        {**POT, "name": "Second", "images": [], "artisan": ObjectId(), "createdAt": newer},
    ])

    names = [p["name"] for p in client.get("/api/products").json()]
    assert names == ["Second", "First"]


def test_get_product(client, artisan):
    created = client.post("/api/products", json=POT, headers=bearer(artisan)).json()

    resp = client.get(f"/api/products/{created['id']}")
    assert resp.status_code == 200
    assert resp.json()["name"] == POT["name"]


def test_get_product_not_found(client):
    assert client.get("/api/products/5f1d7f5e9b1e8a3b2c4d6e8f").status_code == 404
    assert client.get("/api/products/not-an-id").status_code == 400
