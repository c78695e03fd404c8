"""Bundle availability from component inventory."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

import pendulum

from restock.errors import ValidationError
from restock.inventory.resolver import InventoryResolver
from restock.shopify.client import ShopifyClient
from restock.shopify.models import Product, Variant
from restock.utils.dates import earliest_restock

logger = logging.getLogger(__name__)

METAFIELD_NAMESPACE = "custom"
STRUCTURE_KEY = "bundle_structure"
STATUS_KEY = "bundle_stock_status"

GID_RE = re.compile(r"(\d+)$")


class BundleStatus(str, Enum):
    OK = "ok"
    UNDERSTOCKED = "understocked"
    OUT_OF_STOCK = "out-of-stock"

    @property
    def tag(self) -> str:
        return f"bundle-{self.value}"

    @classmethod
    def from_tags(cls, tags: Iterable[str]) -> "BundleStatus | None":
        found = None
        for tag in tags:
            lowered = tag.strip().lower()
            for status in cls:
                if lowered == status.tag:
                    found = worst_status([found, status]) if found else status
        return found


STATUS_RANK = {
    BundleStatus.OK: 0,
    BundleStatus.UNDERSTOCKED: 1,
    BundleStatus.OUT_OF_STOCK: 2,
}
STATUS_TAGS = {status.tag for status in BundleStatus}


def worst_status(statuses: Iterable[BundleStatus]) -> BundleStatus:
    worst = BundleStatus.OK
    for status in statuses:
        if STATUS_RANK[status] > STATUS_RANK[worst]:
            worst = status
    return worst


def retag(tags: Iterable[str], status: BundleStatus) -> list[str]:
    kept = [tag for tag in tags if tag.strip().lower() not in STATUS_TAGS]
    return kept + [status.tag]


def _numeric_id(value: Any) -> int | None:
    if value in (None, ""):
        return None
    if isinstance(value, int):
        return value
    match = GID_RE.search(str(value).strip())
    return int(match.group(1)) if match else None


@dataclass(slots=True)
class BundleComponent:
    variant_id: int | None = None
    product_id: int | None = None
    sku: str | None = None
    required: int = 1

    @property
    def label(self) -> str:
        if self.variant_id:
            return f"variant:{self.variant_id}"
        if self.product_id:
            return f"product:{self.product_id}"
        return f"sku:{self.sku}"


def _required_quantity(entry: Mapping[str, Any]) -> int:
    raw = entry.get("required_quantity", entry.get("quantity", entry.get("qty", 1)))
    try:
        value = int(float(raw))
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValidationError(f"Invalid required quantity {raw!r}") from exc
    return max(1, value)


def parse_bundle_structure(raw: str | list | None) -> list[BundleComponent]:
    if raw is None or raw == "":
        return []
    data = raw
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"bundle_structure is not valid JSON: {exc}") from exc
    if not isinstance(data, list):
        raise ValidationError("bundle_structure must be a list of components")
    components = []
    for entry in data:
        if not isinstance(entry, Mapping):
            raise ValidationError(f"Invalid component entry {entry!r}")
        component = BundleComponent(
            variant_id=_numeric_id(entry.get("variant_id")),
            product_id=_numeric_id(entry.get("product_id")),
            sku=(str(entry["sku"]).strip() or None) if entry.get("sku") else None,
            required=_required_quantity(entry),
        )
        if not (component.variant_id or component.product_id or component.sku):
            raise ValidationError(f"Component has no variant, product or sku reference: {entry!r}")
        components.append(component)
    return components


@dataclass(slots=True)
class ComponentState:
    label: str
    need: int
    have: int = 0
    resolved: bool = True
    restock_dates: list[str] = field(default_factory=list)

    @property
    def constraining(self) -> bool:
        return not self.resolved or self.have < self.need


@dataclass(slots=True)
class SetResult:
    status: BundleStatus
    buildable: int


def evaluate_set(states: list[ComponentState]) -> SetResult:
    """Status and buildable count for one component set."""
    if not states:
        return SetResult(BundleStatus.UNDERSTOCKED, 0)
    any_zero = False
    any_short = False
    buildable: int | None = None
    for state in states:
        if not state.resolved:
            any_short = True
            buildable = 0
            continue
        if state.have <= 0:
            any_zero = True
        elif state.have < state.need:
            any_short = True
        count = state.have // state.need
        buildable = count if buildable is None else min(buildable, count)
    if any_zero:
        status = BundleStatus.OUT_OF_STOCK
    elif any_short:
        status = BundleStatus.UNDERSTOCKED
    else:
        status = BundleStatus.OK
    return SetResult(status, max(0, buildable or 0))


@dataclass(slots=True)
class BundleSummary:
    status: BundleStatus
    total_buildable: int = 0
    has_components: bool = False
    origin: str = "none"
    unresolved: list[str] = field(default_factory=list)
    earliest_iso: str | None = None
    earliest_source: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "hasComponents": self.has_components,
            "finalStatus": self.status.value,
            "totalBuildable": self.total_buildable,
            "earliestISO": self.earliest_iso,
            "earliestPretty": self.earliest_iso[:10] if self.earliest_iso else None,
            "source": self.earliest_source,
            "unresolved": self.unresolved,
        }


def summarize_sets(sets: list[list[ComponentState]], *, origin: str) -> BundleSummary:
    populated = [states for states in sets if states]
    if not populated:
        return BundleSummary(status=BundleStatus.UNDERSTOCKED, origin=origin)
    results = [evaluate_set(states) for states in populated]
    summary = BundleSummary(
        status=worst_status(result.status for result in results),
        total_buildable=sum(result.buildable for result in results),
        has_components=True,
        origin=origin,
        unresolved=[state.label for states in populated for state in states if not state.resolved],
    )
    return summary


def summarize_native(node: Mapping[str, Any] | None, *, now: pendulum.DateTime | None = None) -> BundleSummary:
    """Summarize the platform's own composite-product structure."""
    sets: list[list[ComponentState]] = []
    constraining_dates: list[tuple[str, dict[str, Any]]] = []
    any_dates: list[tuple[str, dict[str, Any]]] = []
    edges = ((node or {}).get("variants") or {}).get("edges") or []
    for edge in edges:
        components = (((edge or {}).get("node") or {}).get("productVariantComponents") or {}).get("nodes") or []
        states: list[ComponentState] = []
        for component in components:
            pv = (component or {}).get("productVariant")
            if not pv:
                continue
            have = max(0, int(pv.get("sellableOnlineQuantity") or 0))
            need = max(1, int(component.get("quantity") or 1))
            dates = [
                value
                for value in (
                    (pv.get("mf_restock") or {}).get("value"),
                    ((pv.get("product") or {}).get("pmf_restock") or {}).get("value"),
                )
                if value
            ]
            state = ComponentState(label=str(pv.get("id")), need=need, have=have, restock_dates=dates)
            states.append(state)
            if not dates:
                continue
            source = {"handle": (pv.get("product") or {}).get("handle"), "variantGid": pv.get("id")}
            oos = pv.get("availableForSale") is False or have <= 0
            for value in dates:
                any_dates.append((value, source))
                if oos or state.constraining:
                    constraining_dates.append((value, source))
        sets.append(states)

    summary = summarize_sets(sets, origin="native")
    for pool in (constraining_dates, any_dates):
        chosen = earliest_restock([value for value, _ in pool], now=now)
        if chosen:
            summary.earliest_iso = chosen
            for value, source in pool:
                if chosen.startswith(value):
                    summary.earliest_source = {**source, "date": chosen}
                    break
            break
    return summary


def find_metafield(metafields: Iterable[Mapping[str, Any]], key: str) -> Mapping[str, Any] | None:
    for metafield in metafields:
        if metafield.get("namespace") == METAFIELD_NAMESPACE and metafield.get("key") == key:
            return metafield
    return None


class BundleEvaluator:
    def __init__(self, client: ShopifyClient, resolver: InventoryResolver) -> None:
        self.client = client
        self.resolver = resolver

    async def resolve(self, component: BundleComponent) -> Variant | None:
        if component.variant_id:
            variant = await self.resolver.get_variant(component.variant_id)
            if variant is not None:
                return variant
        if component.product_id:
            product = await self.resolver.get_product(component.product_id)
            if product is not None and len(product.variants) == 1:
                return product.variants[0]
            if product is not None:
                logger.info(
                    "Component product %s has %s variants; not resolving",
                    component.product_id,
                    len(product.variants),
                )
        if component.sku:
            return self.resolver.sku_index.lookup(component.sku)
        return None

    async def component_states(self, components: list[BundleComponent]) -> list[ComponentState]:
        states = []
        for component in components:
            variant = await self.resolve(component)
            if variant is None:
                logger.warning("Unresolved bundle component %s", component.label)
                states.append(ComponentState(label=component.label, need=component.required, resolved=False))
                continue
            have = await self.resolver.sellable_quantity(variant)
            states.append(ComponentState(label=component.label, need=component.required, have=have))
        return states

    async def evaluate(self, product: Product, metafields: list[Mapping[str, Any]]) -> BundleSummary:
        structure = find_metafield(metafields, STRUCTURE_KEY)
        if structure and structure.get("value"):
            components = parse_bundle_structure(structure["value"])
            states = await self.component_states(components)
            return summarize_sets([states], origin="metafield")
        node = await self.client.bundle_components(product_id=product.id)
        return summarize_native(node)
