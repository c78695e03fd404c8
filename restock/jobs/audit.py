"""Resumable inventory audit and restock notification sweep."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from restock.config import Settings
from restock.inventory.bundles import (
    METAFIELD_NAMESPACE,
    STATUS_KEY,
    BundleEvaluator,
    BundleStatus,
    BundleSummary,
    find_metafield,
    retag,
)
from restock.inventory.resolver import InventoryResolver
from restock.notify.dispatcher import (
    NotificationDispatcher,
    ProductContext,
    snapshot_transition,
    status_transition,
)
from restock.shopify.client import ShopifyClient
from restock.shopify.models import Product
from restock.store.kv import AuditState
from restock.store.subscribers import SubscriberStore, pending
from restock.utils.dates import now_iso

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AuditReport:
    processed: int = 0
    errors: int = 0
    transitions: int = 0
    notified_emails: int = 0
    notified_sms: int = 0
    notif_errors: int = 0
    partial: bool = False
    next_since_id: int | None = None
    timestamp: str = ""

    def as_dict(self) -> dict[str, object]:
        return {
            "processed": self.processed,
            "errors": self.errors,
            "transitions": self.transitions,
            "notifiedEmails": self.notified_emails,
            "notifiedSms": self.notified_sms,
            "notifErrors": self.notif_errors,
            "partial": self.partial,
            "nextSinceId": self.next_since_id,
            "timestamp": self.timestamp,
        }


class AuditLoop:
    def __init__(
        self,
        client: ShopifyClient,
        state: AuditState,
        subscribers: SubscriberStore,
        dispatcher: NotificationDispatcher,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.state = state
        self.subscribers = subscribers
        self.dispatcher = dispatcher
        self.settings = settings
        self.clock = clock

    async def run(self, *, reset: bool = False, limit: int | None = None) -> AuditReport:
        started = self.clock()
        report = AuditReport()
        resolver = InventoryResolver(self.client)
        evaluator = BundleEvaluator(self.client, resolver)
        page_size = self.settings.clamp_page_size(limit)

        if reset:
            await self.state.clear_cursor()
        since_id = await self.state.cursor()
        logger.info("Audit starting at since_id=%s (page size %s)", since_id, page_size)

        while True:
            page = await self.client.list_products(since_id=since_id, limit=page_size)
            for product in page:
                resolver.remember(product)
            last_id = since_id
            for product in page:
                if self.clock() - started >= self.settings.time_budget:
                    report.partial = True
                    logger.info("Time budget reached after product %s", last_id)
                    break
                await self.audit_product(product, resolver, evaluator, report)
                report.processed += 1
                last_id = product.id

            more = report.partial or len(page) >= page_size
            if more:
                await self.state.save_cursor(last_id)
                report.next_since_id = last_id
            else:
                await self.state.clear_cursor()
                report.next_since_id = None
            if report.partial or not more:
                break
            since_id = last_id

        report.timestamp = now_iso()
        logger.info(
            "Audit finished: %s processed, %s errors, partial=%s, next=%s",
            report.processed,
            report.errors,
            report.partial,
            report.next_since_id,
        )
        return report

    async def audit_product(
        self,
        product: Product,
        resolver: InventoryResolver,
        evaluator: BundleEvaluator,
        report: AuditReport,
    ) -> None:
        reconciled = False
        try:
            total = await resolver.product_sellable_total(product)
            previous = await self.state.previous_total(product.id)
            fired = snapshot_transition(previous, total)
            if product.is_bundle:
                summary, previous_status = await self.reconcile_bundle(product, evaluator)
                reconciled = True
                if self.settings.bundle_trigger == "status":
                    fired = status_transition(previous_status, summary.status)
            if fired:
                report.transitions += 1
                logger.info("Product %s restocked (%s -> %s)", product.id, previous, total)
                await self.notify(product, total, report)
            await self.state.record_total(product.id, total)
        except Exception as exc:
            report.errors += 1
            logger.warning("Audit failed for product %s: %s", product.id, exc)
            if product.is_bundle and not reconciled:
                await self.fallback_retag(product)

    async def reconcile_bundle(self, product: Product, evaluator: BundleEvaluator) -> tuple[BundleSummary, BundleStatus | None]:
        previous = BundleStatus.from_tags(product.tags)
        metafields = await self.client.product_metafields(product.id)
        summary = await evaluator.evaluate(product, metafields)
        existing = find_metafield(metafields, STATUS_KEY)
        if previous is None and existing and existing.get("value") in {s.value for s in BundleStatus}:
            previous = BundleStatus(existing["value"])
        await self.client.update_product_tags(product.id, retag(product.tags, summary.status))
        await self.client.upsert_product_metafield(
            product.id,
            namespace=METAFIELD_NAMESPACE,
            key=STATUS_KEY,
            value=summary.status.value,
            existing_id=existing.get("id") if existing else None,
        )
        logger.info(
            "Bundle %s: %s -> %s (buildable %s, unresolved %s)",
            product.id,
            previous.value if previous else "unknown",
            summary.status.value,
            summary.total_buildable,
            len(summary.unresolved),
        )
        return summary, previous

    async def fallback_retag(self, product: Product) -> None:
        try:
            await self.client.update_product_tags(product.id, retag(product.tags, BundleStatus.UNDERSTOCKED))
        except Exception as exc:
            logger.warning("Fallback retag failed for bundle %s: %s", product.id, exc)
        else:
            logger.warning("Bundle %s marked understocked after audit failure", product.id)

    async def notify(self, product: Product, total: int, report: AuditReport) -> None:
        subscribers = await self.subscribers.load(product.id, product.handle or None)
        if not pending(subscribers):
            return
        context = ProductContext(
            product_id=product.id,
            title=product.title,
            handle=product.handle,
            url=self.settings.product_url(product.handle),
            sellable=total,
        )
        result = await self.dispatcher.dispatch(context, subscribers)
        await self.subscribers.save(product.id, product.handle or None, subscribers)
        report.notified_emails += result.emails
        report.notified_sms += result.sms
        report.notif_errors += result.errors
