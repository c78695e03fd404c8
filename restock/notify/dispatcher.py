"""Restock detection and per-subscriber notification fan-out."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from restock.inventory.bundles import BundleStatus
from restock.notify.klaviyo import KlaviyoClient
from restock.store.subscribers import Subscriber, pending, to_e164
from restock.utils.dates import now_iso

logger = logging.getLogger(__name__)

RESTOCK_METRIC = "Back in Stock"


def snapshot_transition(previous: int | None, current: int) -> bool:
    """Fires only when a product goes from none sellable to some sellable."""
    return max(previous or 0, 0) <= 0 and current > 0


def status_transition(previous: BundleStatus | None, current: BundleStatus) -> bool:
    """Fires when a bundle that was not healthy becomes healthy."""
    return previous is not None and previous is not BundleStatus.OK and current is BundleStatus.OK


@dataclass(slots=True)
class ProductContext:
    product_id: int
    title: str
    handle: str
    url: str
    sellable: int

    def event_properties(self, subscriber: Subscriber) -> dict[str, Any]:
        return {
            "product_id": str(self.product_id),
            "product_title": self.title or subscriber.product_title,
            "product_handle": self.handle or subscriber.product_handle,
            "product_url": self.url or subscriber.product_url,
            "available_quantity": self.sellable,
            "sms_consent": subscriber.sms_allowed,
        }

    def profile_properties(self, subscriber: Subscriber, notified_at: str) -> dict[str, Any]:
        return {
            "last_back_in_stock_product_id": str(self.product_id),
            "last_back_in_stock_product_name": self.title or subscriber.product_title,
            "last_back_in_stock_product_handle": self.handle or subscriber.product_handle,
            "last_back_in_stock_product_url": self.url or subscriber.product_url,
            "last_back_in_stock_notified_at": notified_at,
        }


@dataclass(slots=True)
class DispatchResult:
    attempted: int = 0
    emails: int = 0
    sms: int = 0
    errors: int = 0


class NotificationDispatcher:
    def __init__(
        self,
        klaviyo: KlaviyoClient,
        list_id: str,
        *,
        pause_every: int = 5,
        pause_seconds: float = 1.0,
    ) -> None:
        self.klaviyo = klaviyo
        self.list_id = list_id
        self.pause_every = pause_every
        self.pause_seconds = pause_seconds

    async def dispatch(self, product: ProductContext, subscribers: list[Subscriber]) -> DispatchResult:
        """Notify every pending subscriber; mutates their notified flags in place."""
        result = DispatchResult()
        candidates = pending(subscribers)
        for index, subscriber in enumerate(candidates, start=1):
            await self._notify(product, subscriber, result)
            if self.pause_every and index % self.pause_every == 0 and index < len(candidates):
                await asyncio.sleep(self.pause_seconds)
        logger.info(
            "Product %s: %s attempted, %s emails, %s sms, %s errors",
            product.product_id,
            result.attempted,
            result.emails,
            result.sms,
            result.errors,
        )
        return result

    async def _notify(self, product: ProductContext, subscriber: Subscriber, result: DispatchResult) -> None:
        result.attempted += 1
        phone = to_e164(subscriber.phone)
        sms = subscriber.sms_allowed
        notified_at = now_iso()

        try:
            await self.klaviyo.subscribe_to_list(self.list_id, email=subscriber.email, phone=phone, sms=sms)
        except Exception as exc:
            result.errors += 1
            logger.warning("List subscription failed for %s: %s", subscriber.identity, exc)

        try:
            await self.klaviyo.update_profile_properties(
                email=subscriber.email,
                properties=product.profile_properties(subscriber, notified_at),
            )
        except Exception as exc:
            result.errors += 1
            logger.warning("Profile update failed for %s: %s", subscriber.identity, exc)

        try:
            await self.klaviyo.track_event(
                RESTOCK_METRIC,
                email=subscriber.email,
                phone=phone if sms else None,
                properties=product.event_properties(subscriber),
            )
        except Exception as exc:
            result.errors += 1
            logger.warning("Restock event failed for %s: %s", subscriber.identity, exc)
        else:
            result.emails += 1
            if sms:
                result.sms += 1

        subscriber.notified = True
        subscriber.notified_at = notified_at
