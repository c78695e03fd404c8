"""Single-run gate around the audit loop."""

from __future__ import annotations

import asyncio
import hmac
import logging

import httpx
from dotenv import load_dotenv

from restock.config import Settings
from restock.errors import LockContentionError
from restock.jobs.audit import AuditLoop, AuditReport
from restock.notify.dispatcher import NotificationDispatcher
from restock.notify.klaviyo import KlaviyoClient
from restock.shopify.client import ShopifyClient
from restock.store.kv import LOCK_KEY, AuditState, KeyValueStore, create_redis_from_url
from restock.store.subscribers import SubscriberStore
from restock.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


def authorized(settings: Settings, authorization: str | None) -> bool:
    """Check a bearer header against CRON_SECRET; open when no secret is set."""
    if not settings.cron_secret:
        return True
    if not authorization or not authorization.startswith("Bearer "):
        return False
    supplied = authorization[len("Bearer "):].strip()
    return hmac.compare_digest(supplied.encode(), settings.cron_secret.encode())


class RunCoordinator:
    def __init__(
        self,
        settings: Settings,
        *,
        store: KeyValueStore | None = None,
        shopify_session: httpx.AsyncClient | None = None,
        klaviyo_session: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self._store = store
        self._shopify_session = shopify_session
        self._klaviyo_session = klaviyo_session

    def audit_state(self, store: KeyValueStore) -> AuditState:
        return AuditState(
            store,
            snapshot_ttl=self.settings.snapshot_ttl,
            cursor_ttl=self.settings.cursor_ttl,
            lock_ttl=self.settings.lock_ttl,
        )

    async def run(self, *, reset: bool = False, limit: int | None = None) -> AuditReport:
        self.settings.require_audit()
        store = self._store or KeyValueStore(create_redis_from_url(self.settings.redis_url))
        try:
            return await self._run_locked(store, reset=reset, limit=limit)
        finally:
            if self._store is None:
                await store.close()

    async def _run_locked(self, store: KeyValueStore, *, reset: bool, limit: int | None) -> AuditReport:
        state = self.audit_state(store)
        token = await state.acquire_lock()
        if token is None:
            raise LockContentionError(LOCK_KEY)

        shopify: ShopifyClient | None = None
        klaviyo: KlaviyoClient | None = None
        try:
            shopify = ShopifyClient(
                self.settings.shopify_store,
                self.settings.shopify_token,
                api_version=self.settings.shopify_api_version,
                session=self._shopify_session,
                rate_limiter=RateLimiter(min_interval=self.settings.shopify_min_interval),
            )
            klaviyo = KlaviyoClient(
                self.settings.klaviyo_api_key,
                revision=self.settings.klaviyo_revision,
                session=self._klaviyo_session,
            )
            dispatcher = NotificationDispatcher(
                klaviyo,
                self.settings.klaviyo_list_id,
                pause_every=self.settings.notify_pause_every,
                pause_seconds=self.settings.notify_pause_seconds,
            )
            loop = AuditLoop(
                shopify,
                state,
                SubscriberStore(store, ttl=self.settings.subscriber_ttl),
                dispatcher,
                self.settings,
            )
            return await loop.run(reset=reset, limit=limit)
        finally:
            try:
                await state.release_lock(token)
            finally:
                if shopify is not None and self._shopify_session is None:
                    await shopify.close()
                if klaviyo is not None and self._klaviyo_session is None:
                    await klaviyo.close()


async def run_audit(*, reset: bool = False, limit: int | None = None) -> AuditReport:
    load_dotenv()
    return await RunCoordinator(Settings.from_env()).run(reset=reset, limit=limit)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    print(asyncio.run(run_audit()).as_dict())
