"""Shopify Admin API client with account-wide pacing."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from restock.errors import UpstreamAPIError
from restock.shopify.models import Product, Variant
from restock.utils.rate_limit import RateLimiter
from restock.utils.retry import backoff_delay, retry_async

logger = logging.getLogger(__name__)

MAX_429_ATTEMPTS = 3
PRODUCT_FIELDS = "id,title,handle,tags,variants"

BUNDLE_COMPONENTS_FRAGMENT = """
      id
      handle
      variants(first: $vv) {
        edges {
          node {
            id
            productVariantComponents(first: $cp) {
              nodes {
                quantity
                productVariant {
                  id
                  availableForSale
                  inventoryPolicy
                  sellableOnlineQuantity
                  mf_restock: metafield(namespace: "custom", key: "restock_date") { value }
                  product { handle pmf_restock: metafield(namespace: "custom", key: "restock_date") { value } }
                }
              }
            }
          }
        }
      }
"""

Q_BUNDLE_BY_ID = (
    "query BundleById($id: ID!, $vv: Int!, $cp: Int!) { product(id: $id) {"
    + BUNDLE_COMPONENTS_FRAGMENT
    + "} }"
)
Q_BUNDLE_BY_HANDLE = (
    "query BundleByHandle($handle: String!, $vv: Int!, $cp: Int!) { productByHandle(handle: $handle) {"
    + BUNDLE_COMPONENTS_FRAGMENT
    + "} }"
)


class ShopifyClient:
    def __init__(
        self,
        store: str,
        token: str,
        *,
        api_version: str = "2024-10",
        session: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.base_url = f"https://{store}/admin/api/{api_version}"
        self._session = session or httpx.AsyncClient(timeout=30.0)
        self._headers = {
            "X-Shopify-Access-Token": token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._rate_limiter = rate_limiter or RateLimiter()

    async def close(self) -> None:
        await self._session.aclose()

    async def call(self, endpoint: str, method: str = "GET", body: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        for attempt in range(MAX_429_ATTEMPTS):
            await self._rate_limiter.wait()
            response = await retry_async(self._session.request)(method, url, headers=self._headers, json=body)
            if response.status_code == 429 and attempt < MAX_429_ATTEMPTS - 1:
                delay = backoff_delay(attempt, response.headers.get("Retry-After"))
                logger.info("Shopify 429 on %s %s, retrying in %.1fs", method, endpoint, delay)
                await asyncio.sleep(delay)
                continue
            if response.is_success:
                if not response.content:
                    return {}
                return response.json()
            raise UpstreamAPIError(response.status_code, response.text, endpoint=endpoint)
        raise AssertionError("unreachable")  # pragma: no cover

    async def graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        payload = await self.call("graphql.json", "POST", {"query": query, "variables": variables or {}})
        if payload.get("errors"):
            raise UpstreamAPIError(200, json.dumps(payload["errors"]), endpoint="graphql.json")
        return payload.get("data") or {}

    async def list_products(self, *, since_id: int = 0, limit: int = 50) -> list[Product]:
        endpoint = f"products.json?limit={limit}&since_id={since_id}&fields={PRODUCT_FIELDS}"
        data = await self.call(endpoint)
        return [Product.from_api(item) for item in data.get("products", [])]

    async def get_product(self, product_id: int) -> Product | None:
        try:
            data = await self.call(f"products/{product_id}.json?fields={PRODUCT_FIELDS}")
        except UpstreamAPIError as exc:
            if exc.status == 404:
                return None
            raise
        item = data.get("product")
        return Product.from_api(item) if item else None

    async def get_variant(self, variant_id: int) -> Variant | None:
        try:
            data = await self.call(f"variants/{variant_id}.json")
        except UpstreamAPIError as exc:
            if exc.status == 404:
                return None
            raise
        item = data.get("variant")
        return Variant.from_api(item) if item else None

    async def inventory_levels(self, inventory_item_id: int) -> list[dict[str, Any]]:
        data = await self.call(f"inventory_levels.json?inventory_item_ids={inventory_item_id}")
        return data.get("inventory_levels", [])

    async def product_metafields(self, product_id: int) -> list[dict[str, Any]]:
        data = await self.call(f"products/{product_id}/metafields.json")
        return data.get("metafields", [])

    async def update_product_tags(self, product_id: int, tags: list[str]) -> None:
        await self.call(
            f"products/{product_id}.json",
            "PUT",
            {"product": {"id": product_id, "tags": ", ".join(tags)}},
        )

    async def upsert_product_metafield(
        self,
        product_id: int,
        *,
        namespace: str,
        key: str,
        value: str,
        type_: str = "single_line_text_field",
        existing_id: int | None = None,
    ) -> None:
        if existing_id:
            await self.call(
                f"metafields/{existing_id}.json",
                "PUT",
                {"metafield": {"id": existing_id, "value": value, "type": type_}},
            )
            return
        await self.call(
            f"products/{product_id}/metafields.json",
            "POST",
            {"metafield": {"namespace": namespace, "key": key, "value": value, "type": type_}},
        )

    async def bundle_components(
        self, *, product_id: int | None = None, handle: str | None = None, first: int = 100
    ) -> dict[str, Any] | None:
        if product_id:
            data = await self.graphql(
                Q_BUNDLE_BY_ID, {"id": f"gid://shopify/Product/{product_id}", "vv": first, "cp": first}
            )
            return data.get("product")
        if handle:
            data = await self.graphql(Q_BUNDLE_BY_HANDLE, {"handle": handle, "vv": first, "cp": first})
            return data.get("productByHandle")
        raise ValueError("product_id or handle required")
