import json

import pendulum
import pytest

from restock.errors import ValidationError
from restock.inventory.bundles import (
    BundleEvaluator,
    BundleStatus,
    ComponentState,
    evaluate_set,
    parse_bundle_structure,
    retag,
    summarize_native,
    summarize_sets,
    worst_status,
)
from restock.inventory.resolver import InventoryResolver
from restock.shopify.client import ShopifyClient
from restock.shopify.models import Product
from restock.utils.rate_limit import RateLimiter
from tests.fakes import variant

NEEDS = [4, 4, 4, 2, 2, 2, 4, 4, 4, 2]


def states(haves, needs=NEEDS):
    return [ComponentState(label=f"c{i}", need=need, have=have) for i, (have, need) in enumerate(zip(haves, needs))]


def test_all_components_sufficient_is_ok():
    result = evaluate_set(states([8, 9, 12, 4, 5, 6, 8, 8, 9, 4]))
    assert result.status is BundleStatus.OK
    assert result.buildable == 2


def test_any_zero_component_is_out_of_stock():
    result = evaluate_set(states([8, 9, 12, 4, 0, 6, 1, 8, 9, 4]))
    assert result.status is BundleStatus.OUT_OF_STOCK
    assert result.buildable == 0


def test_component_below_requirement_is_understocked():
    result = evaluate_set(states([8, 9, 3, 4, 5, 6, 8, 8, 9, 4]))
    assert result.status is BundleStatus.UNDERSTOCKED
    assert result.buildable == 0


def test_unresolved_component_constrains():
    result = evaluate_set(states([8, 8]) + [ComponentState(label="sku:X", need=1, resolved=False)])
    assert result.status is BundleStatus.UNDERSTOCKED
    assert result.buildable == 0


def test_product_status_is_worst_across_variants():
    healthy = states([4, 4], [2, 2])
    short = states([4, 1], [2, 2])
    empty = states([0, 4], [2, 2])
    summary = summarize_sets([healthy, short, empty], origin="native")
    assert summary.status is BundleStatus.OUT_OF_STOCK
    assert summary.total_buildable == 2
    assert summarize_sets([healthy, short], origin="native").status is BundleStatus.UNDERSTOCKED
    assert summarize_sets([healthy, []], origin="native").status is BundleStatus.OK


def test_bundle_without_components_cannot_be_verified():
    summary = summarize_sets([[], []], origin="native")
    assert summary.status is BundleStatus.UNDERSTOCKED
    assert summary.has_components is False


def test_worst_status_ranking():
    assert worst_status([]) is BundleStatus.OK
    assert worst_status([BundleStatus.OK, BundleStatus.UNDERSTOCKED]) is BundleStatus.UNDERSTOCKED
    assert worst_status([BundleStatus.OUT_OF_STOCK, BundleStatus.UNDERSTOCKED]) is BundleStatus.OUT_OF_STOCK


def test_parse_bundle_structure_defaults_and_floors():
    components = parse_bundle_structure(
        json.dumps(
            [
                {"variant_id": "gid://shopify/ProductVariant/41"},
                {"product_id": 7, "quantity": 2.7},
                {"sku": " ab-1 ", "required_quantity": 0},
            ]
        )
    )
    assert [(c.variant_id, c.product_id, c.sku, c.required) for c in components] == [
        (41, None, None, 1),
        (None, 7, None, 2),
        (None, None, "ab-1", 1),
    ]


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        json.dumps({"variant_id": 1}),
        json.dumps([1, 2]),
        json.dumps([{"required_quantity": 2}]),
        '[{"sku": "a", "quantity": 1e999}]',
        '[{"sku": "a", "quantity": "lots"}]',
    ],
)
def test_parse_bundle_structure_rejects_malformed(payload):
    with pytest.raises(ValidationError):
        parse_bundle_structure(payload)


def test_retag_replaces_previous_status():
    tags = ["bundle", " Bundle-Out-Of-Stock", "summer"]
    assert retag(tags, BundleStatus.OK) == ["bundle", "summer", "bundle-ok"]
    assert BundleStatus.from_tags(tags) is BundleStatus.OUT_OF_STOCK
    assert BundleStatus.from_tags(["bundle"]) is None


def test_summarize_native_prefers_constraining_future_dates():
    now = pendulum.datetime(2025, 3, 1, tz="UTC")

    def component(gid, have, need, date=None, product_date=None, handle="part"):
        return {
            "quantity": need,
            "productVariant": {
                "id": gid,
                "availableForSale": have > 0,
                "inventoryPolicy": "DENY",
                "sellableOnlineQuantity": have,
                "mf_restock": {"value": date} if date else None,
                "product": {"handle": handle, "pmf_restock": {"value": product_date} if product_date else None},
            },
        }

    node = {
        "id": "gid://shopify/Product/1",
        "handle": "kit",
        "variants": {
            "edges": [
                {"node": {"id": "v1", "productVariantComponents": {"nodes": [
                    component("gid://a", 10, 2, date="2025-03-05", handle="plenty"),
                    component("gid://b", 1, 2, date="2025-02-01", product_date="2025-04-10", handle="short"),
                ]}}},
                {"node": {"id": "v2", "productVariantComponents": {"nodes": []}}},
            ]
        },
    }
    summary = summarize_native(node, now=now)
    assert summary.status is BundleStatus.UNDERSTOCKED
    assert summary.total_buildable == 0
    assert summary.earliest_iso == "2025-04-10T00:00:00Z"
    assert summary.earliest_source["handle"] == "short"
    assert summary.as_dict()["earliestPretty"] == "2025-04-10"


def make_evaluator():
    client = ShopifyClient("test-shop.myshopify.com", "token", rate_limiter=RateLimiter(min_interval=0))
    resolver = InventoryResolver(client)
    return BundleEvaluator(client, resolver), resolver


@pytest.mark.asyncio
async def test_evaluator_resolution_rules(shop):
    shop.add_product(10, "single", variants=[variant(101, levels=[5])])
    shop.add_product(20, "multi", variants=[variant(201, levels=[5]), variant(202, levels=[5])])
    sku_product = shop.add_product(30, "by-sku", variants=[variant(301, levels=[3], sku="PART-30")])
    structure = [
        {"variant_id": 202, "required_quantity": 2},
        {"product_id": 10, "required_quantity": 5},
        {"product_id": 20},
        {"sku": "part-30"},
    ]
    bundle = shop.add_product(99, "kit", tags="bundle", structure=structure)

    evaluator, resolver = make_evaluator()
    resolver.remember(Product.from_api(sku_product))
    summary = await evaluator.evaluate(Product.from_api(bundle), shop.metafields[99])

    assert summary.origin == "metafield"
    assert summary.unresolved == ["product:20"]
    assert summary.status is BundleStatus.UNDERSTOCKED


@pytest.mark.asyncio
async def test_evaluator_uses_native_components_without_metafield(shop):
    bundle = shop.add_product(99, "kit", tags="bundle")
    shop.graphql_nodes[99] = {
        "id": "gid://shopify/Product/99",
        "handle": "kit",
        "variants": {"edges": [{"node": {"id": "v", "productVariantComponents": {"nodes": [
            {"quantity": 1, "productVariant": {"id": "p", "availableForSale": True, "sellableOnlineQuantity": 4}}
        ]}}}]},
    }
    evaluator, _ = make_evaluator()
    summary = await evaluator.evaluate(Product.from_api(bundle), [])
    assert summary.origin == "native"
    assert summary.status is BundleStatus.OK
    assert summary.total_buildable == 4
