import pytest

from restock.config import MAX_PAGE_SIZE, Settings, normalize_store_domain
from restock.errors import NotConfiguredError


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("SHOPIFY_STORE", "https://demo.myshopify.com/")
    monkeypatch.setenv("SHOPIFY_ADMIN_API_KEY", "shpat_x")
    monkeypatch.setenv("AUDIT_PAGE_SIZE", "25")
    monkeypatch.setenv("BUNDLE_TRIGGER", "Status")
    settings = Settings.from_env()
    assert settings.shopify_store == "demo.myshopify.com"
    assert settings.page_size == 25
    assert settings.bundle_trigger == "status"
    assert settings.time_budget == 240.0


def test_from_env_rejects_unknown_trigger(monkeypatch):
    monkeypatch.setenv("BUNDLE_TRIGGER", "always")
    with pytest.raises(ValueError):
        Settings.from_env()


@pytest.mark.parametrize("requested,expected", [(None, 50), (0, 50), (10, 10), (1000, MAX_PAGE_SIZE), (-3, 1)])
def test_clamp_page_size(requested, expected):
    assert Settings().clamp_page_size(requested) == expected


def test_require_audit_lists_every_missing_name():
    with pytest.raises(NotConfiguredError) as excinfo:
        Settings(shopify_store="demo.myshopify.com").require_audit()
    assert excinfo.value.missing == ["SHOPIFY_ADMIN_API_KEY", "KLAVIYO_API_KEY", "KLAVIYO_LIST_ID"]


def test_product_url():
    assert Settings(public_store_domain="shop.example.com").product_url("tee") == "https://shop.example.com/products/tee"
    assert Settings().product_url("tee") == ""
    assert normalize_store_domain(" HTTPS://Shop.Example.com/ ") == "shop.example.com"
