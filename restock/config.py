"""Environment-driven settings."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from restock.errors import NotConfiguredError

DEFAULT_REDIS_URL = "redis://redis:6379/0"
MAX_PAGE_SIZE = 250

BUNDLE_TRIGGERS = {"snapshot", "status"}


def _int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


def normalize_store_domain(value: str) -> str:
    host = value.strip().lower()
    host = re.sub(r"^https?://", "", host)
    return re.sub(r"/.*$", "", host)


@dataclass(slots=True)
class Settings:
    shopify_store: str = ""
    shopify_token: str = ""
    shopify_api_version: str = "2024-10"
    klaviyo_api_key: str = ""
    klaviyo_list_id: str = ""
    klaviyo_revision: str = "2023-10-15"
    redis_url: str = DEFAULT_REDIS_URL
    cron_secret: str = ""
    public_store_domain: str = ""
    page_size: int = 50
    time_budget: float = 240.0
    lock_ttl: int = 15 * 60
    cursor_ttl: int = 24 * 60 * 60
    snapshot_ttl: int = 30 * 24 * 60 * 60
    subscriber_ttl: int = 90 * 24 * 60 * 60
    shopify_min_interval: float = 0.5
    notify_pause_every: int = 5
    notify_pause_seconds: float = 1.0
    bundle_trigger: str = "snapshot"
    audit_every_min: int = 10

    @classmethod
    def from_env(cls) -> "Settings":
        trigger = os.environ.get("BUNDLE_TRIGGER", "snapshot").strip().lower()
        if trigger not in BUNDLE_TRIGGERS:
            raise ValueError(f"BUNDLE_TRIGGER must be one of {sorted(BUNDLE_TRIGGERS)}, got {trigger!r}")
        return cls(
            shopify_store=normalize_store_domain(os.environ.get("SHOPIFY_STORE", "")),
            shopify_token=os.environ.get("SHOPIFY_ADMIN_API_KEY", "").strip(),
            shopify_api_version=os.environ.get("SHOPIFY_API_VERSION", "2024-10").strip(),
            klaviyo_api_key=os.environ.get("KLAVIYO_API_KEY", "").strip(),
            klaviyo_list_id=os.environ.get("KLAVIYO_LIST_ID", "").strip(),
            klaviyo_revision=os.environ.get("KLAVIYO_REVISION", "2023-10-15").strip(),
            redis_url=os.environ.get("REDIS_URL", DEFAULT_REDIS_URL),
            cron_secret=os.environ.get("CRON_SECRET", "").strip(),
            public_store_domain=normalize_store_domain(os.environ.get("PUBLIC_STORE_DOMAIN", "")),
            page_size=_int("AUDIT_PAGE_SIZE", 50),
            time_budget=_float("AUDIT_TIME_BUDGET", 240.0),
            lock_ttl=_int("AUDIT_LOCK_TTL", 15 * 60),
            cursor_ttl=_int("AUDIT_CURSOR_TTL", 24 * 60 * 60),
            snapshot_ttl=_int("SNAPSHOT_TTL", 30 * 24 * 60 * 60),
            subscriber_ttl=_int("SUBSCRIBER_TTL", 90 * 24 * 60 * 60),
            shopify_min_interval=_float("SHOPIFY_MIN_INTERVAL", 0.5),
            notify_pause_every=_int("NOTIFY_PAUSE_EVERY", 5),
            notify_pause_seconds=_float("NOTIFY_PAUSE_SECONDS", 1.0),
            bundle_trigger=trigger,
            audit_every_min=_int("AUDIT_EVERY_MIN", 10),
        )

    def clamp_page_size(self, requested: int | None = None) -> int:
        size = requested if requested else self.page_size
        return max(1, min(int(size), MAX_PAGE_SIZE))

    def require_shopify(self) -> None:
        missing = [
            name
            for name, value in (
                ("SHOPIFY_STORE", self.shopify_store),
                ("SHOPIFY_ADMIN_API_KEY", self.shopify_token),
            )
            if not value
        ]
        if missing:
            raise NotConfiguredError(missing)

    def require_klaviyo(self) -> None:
        missing = [
            name
            for name, value in (
                ("KLAVIYO_API_KEY", self.klaviyo_api_key),
                ("KLAVIYO_LIST_ID", self.klaviyo_list_id),
            )
            if not value
        ]
        if missing:
            raise NotConfiguredError(missing)

    def require_audit(self) -> None:
        missing: list[str] = []
        for check in (self.require_shopify, self.require_klaviyo):
            try:
                check()
            except NotConfiguredError as exc:
                missing.extend(exc.missing)
        if missing:
            raise NotConfiguredError(missing)

    def product_url(self, handle: str | None) -> str:
        if not handle or not self.public_store_domain:
            return ""
        return f"https://{self.public_store_domain}/products/{handle}"
