"""Sellable inventory resolution with per-run memoization."""

from __future__ import annotations

import logging

from restock.shopify.client import ShopifyClient
from restock.shopify.models import Product, Variant

logger = logging.getLogger(__name__)


def normalize_sku(sku: str | None) -> str:
    return (sku or "").strip().upper()


class SkuIndex:
    """Normalized SKU -> variant, for products discovered during one run.

    Only products seen by the current run are indexed; a SKU belonging to a
    product not yet visited does not resolve.
    """

    def __init__(self) -> None:
        self._by_sku: dict[str, Variant] = {}

    def add_product(self, product: Product) -> None:
        for variant in product.variants:
            key = normalize_sku(variant.sku)
            if key and key not in self._by_sku:
                self._by_sku[key] = variant

    def lookup(self, sku: str | None) -> Variant | None:
        key = normalize_sku(sku)
        if not key:
            return None
        return self._by_sku.get(key)

    def __len__(self) -> int:
        return len(self._by_sku)


class InventoryResolver:
    """Computes sellable quantities; create one per audit run.

    Untracked variants count as 0 sellable. Changing that to "unlimited" would
    make every untracked bundle component report healthy.
    """

    def __init__(self, client: ShopifyClient, sku_index: SkuIndex | None = None) -> None:
        self.client = client
        self.sku_index = sku_index or SkuIndex()
        self._products: dict[int, Product | None] = {}
        self._variants: dict[int, Variant | None] = {}
        self._item_levels: dict[int, int | None] = {}
        self._product_totals: dict[int, int] = {}

    def remember(self, product: Product) -> None:
        self._products[product.id] = product
        for variant in product.variants:
            self._variants.setdefault(variant.id, variant)
        self.sku_index.add_product(product)

    async def get_product(self, product_id: int) -> Product | None:
        if product_id not in self._products:
            product = await self.client.get_product(product_id)
            if product is None:
                self._products[product_id] = None
            else:
                self.remember(product)
        return self._products[product_id]

    async def get_variant(self, variant_id: int) -> Variant | None:
        if variant_id not in self._variants:
            self._variants[variant_id] = await self.client.get_variant(variant_id)
        return self._variants[variant_id]

    async def _item_available(self, inventory_item_id: int) -> int | None:
        if inventory_item_id not in self._item_levels:
            levels = await self.client.inventory_levels(inventory_item_id)
            if levels:
                self._item_levels[inventory_item_id] = sum(int(level.get("available") or 0) for level in levels)
            else:
                self._item_levels[inventory_item_id] = None
        return self._item_levels[inventory_item_id]

    async def sellable_quantity(self, variant: Variant) -> int:
        if not variant.tracked:
            return 0
        available = None
        if variant.inventory_item_id:
            available = await self._item_available(variant.inventory_item_id)
        if available is None:
            available = variant.inventory_quantity
        return max(0, int(available))

    async def product_sellable_total(self, product: Product) -> int:
        if product.id not in self._product_totals:
            total = 0
            for variant in product.variants:
                total += await self.sellable_quantity(variant)
            self._product_totals[product.id] = total
            logger.debug("Product %s sellable total %s", product.id, total)
        return self._product_totals[product.id]
