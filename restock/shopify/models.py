"""Commerce platform data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

BUNDLE_TAG = "bundle"
STATUS_TAG_PREFIX = "bundle-"


def split_tags(raw: str | list[str] | None) -> list[str]:
    if not raw:
        return []
    items = raw if isinstance(raw, list) else str(raw).split(",")
    return [tag.strip() for tag in items if tag and tag.strip()]


@dataclass(slots=True)
class Variant:
    id: int
    product_id: int | None
    sku: str | None = None
    title: str | None = None
    inventory_management: str | None = None
    inventory_item_id: int | None = None
    inventory_quantity: int = 0

    @property
    def tracked(self) -> bool:
        return (self.inventory_management or "").lower() == "shopify"

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "Variant":
        return cls(
            id=int(data["id"]),
            product_id=int(data["product_id"]) if data.get("product_id") else None,
            sku=data.get("sku") or None,
            title=data.get("title"),
            inventory_management=data.get("inventory_management"),
            inventory_item_id=int(data["inventory_item_id"]) if data.get("inventory_item_id") else None,
            inventory_quantity=int(data.get("inventory_quantity") or 0),
        )


@dataclass(slots=True)
class Product:
    id: int
    handle: str
    title: str = ""
    tags: list[str] = field(default_factory=list)
    variants: list[Variant] = field(default_factory=list)

    @property
    def is_bundle(self) -> bool:
        for tag in self.tags:
            lowered = tag.lower()
            if lowered == BUNDLE_TAG or lowered.startswith(STATUS_TAG_PREFIX):
                return True
        return False

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "Product":
        product_id = int(data["id"])
        variants = []
        for item in data.get("variants") or []:
            payload = dict(item)
            payload.setdefault("product_id", product_id)
            variants.append(Variant.from_api(payload))
        return cls(
            id=product_id,
            handle=data.get("handle") or "",
            title=data.get("title") or "",
            tags=split_tags(data.get("tags")),
            variants=variants,
        )
