import pytest
import respx

from restock.config import Settings
from restock.store.kv import KeyValueStore
from tests.fakes import STORE, FakeKlaviyo, FakeShop, InMemoryRedis


@pytest.fixture()
def router():
    with respx.mock(assert_all_called=False) as router:
        yield router


@pytest.fixture()
def shop(router):
    return FakeShop(router)


@pytest.fixture()
def klaviyo(router):
    return FakeKlaviyo(router)


@pytest.fixture()
def redis_client():
    return InMemoryRedis()


@pytest.fixture()
def kv_store(redis_client):
    return KeyValueStore(redis_client)


@pytest.fixture()
def settings():
    return Settings(
        shopify_store=STORE,
        shopify_token="shpat_test",
        klaviyo_api_key="pk_test",
        klaviyo_list_id="WAITLIST",
        public_store_domain="shop.example.com",
        shopify_min_interval=0.0,
        notify_pause_seconds=0.0,
    )
