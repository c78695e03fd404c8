import json

import pytest
from fastapi.testclient import TestClient

from restock.api.main import app, get_settings, get_store
from restock.store.kv import LOCK_KEY
from tests.fakes import variant


@pytest.fixture()
def api(settings, kv_store):
    async def store_override():
        yield kv_store

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_store] = store_override
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


def test_audit_returns_run_summary(api, shop, klaviyo, redis_client):
    shop.add_product(1, "socks", variants=[variant(11, levels=[2])])
    for path in ("/api/audit", "/api/inventory-audit"):
        response = api.get(path, params={"reset": "true"})
        assert response.status_code == 200
        body = response.json()
        assert set(body) == {
            "processed",
            "errors",
            "transitions",
            "notifiedEmails",
            "notifiedSms",
            "notifErrors",
            "partial",
            "nextSinceId",
            "timestamp",
        }
        assert body["processed"] == 1
        assert body["partial"] is False
        assert body["nextSinceId"] is None
    assert LOCK_KEY not in redis_client.data


def test_audit_requires_bearer_when_secret_set(api, settings, shop):
    settings.cron_secret = "s3cret"
    assert api.get("/api/audit").status_code == 401
    assert api.get("/api/audit", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert api.get("/api/audit", headers={"Authorization": "Bearer s3cret"}).status_code == 200


def test_audit_reports_lock_contention(api, shop, redis_client):
    redis_client.data[LOCK_KEY] = "busy"
    response = api.get("/api/audit")
    assert response.status_code == 423
    assert shop.calls == []


def test_audit_rejects_out_of_range_limit(api):
    assert api.get("/api/audit", params={"limit": 0}).status_code == 422
    assert api.get("/api/audit", params={"limit": 500}).status_code == 422


def test_audit_without_credentials_is_server_error(api, settings):
    settings.shopify_token = ""
    response = api.get("/api/audit")
    assert response.status_code == 500
    assert "SHOPIFY_ADMIN_API_KEY" in response.json()["detail"]


def test_signup_then_lookup(api, klaviyo, redis_client):
    payload = {
        "email": "fan@example.com",
        "product_id": 5,
        "product_handle": "tee",
        "product_title": "Tee",
        "full_name": "Ada Lovelace",
        "phone": "555-123-4567",
        "sms_consent": True,
    }
    response = api.post("/api/back-in-stock", json=payload)
    assert response.status_code == 200
    body = response.json()
    assert body["subscriber_count"] == 1
    assert body["rearm_count"] == 0
    assert body["klaviyo_success"] and body["profile_update_success"] and body["event_success"]

    stored = json.loads(redis_client.data["subscribers:5"])
    assert stored[0]["phone"] == "+15551234567"
    assert stored[0]["product_url"] == "https://shop.example.com/products/tee"
    event = klaviyo.posted("events/")[0]
    assert event["data"]["attributes"]["metric"]["data"]["attributes"]["name"] == "Back in Stock Subscriptions"

    again = api.post("/api/back-in-stock", json=payload).json()
    assert again["subscriber_count"] == 1
    assert again["rearm_count"] == 1

    status = api.get("/api/back-in-stock", params={"email": "FAN@example.com", "product_id": "5"}).json()
    assert status["subscribed"] is True
    assert status["total_subscribers"] == 1
    assert status["subscription_details"]["sms_consent"] is True

    missing = api.get("/api/back-in-stock", params={"email": "other@example.com", "product_id": "5"}).json()
    assert missing["subscribed"] is False
    assert missing["subscription_details"] is None


def test_signup_survives_klaviyo_outage(api, klaviyo):
    klaviyo.failing.add("events/")
    response = api.post("/api/back-in-stock", json={"email": "fan@example.com", "product_id": "5"})
    assert response.status_code == 200
    assert response.json()["event_success"] is False
    assert response.json()["klaviyo_success"] is True


def test_signup_rejects_invalid_email(api):
    assert api.post("/api/back-in-stock", json={"email": "nope", "product_id": "5"}).status_code == 422


def test_bundle_status_requires_identifier(api):
    assert api.get("/api/bundle-status").status_code == 400


def test_bundle_status_summarizes_native_components(api, shop):
    shop.graphql_nodes[99] = {
        "id": "gid://shopify/Product/99",
        "handle": "kit",
        "variants": {"edges": [{"node": {"id": "v", "productVariantComponents": {"nodes": [
            {"quantity": 2, "productVariant": {"id": "a", "availableForSale": True, "sellableOnlineQuantity": 5}},
            {"quantity": 1, "productVariant": {"id": "b", "availableForSale": True, "sellableOnlineQuantity": 3}},
        ]}}}]},
    }
    body = api.get("/api/bundle-status", params={"id": 99}).json()
    assert body["handle"] == "kit"
    assert body["finalStatus"] == "ok"
    assert body["totalBuildable"] == 2
    assert body["hasComponents"] is True

    assert api.get("/api/bundle-status", params={"id": 404}).status_code == 404
