"""FastAPI application: audit trigger, waitlist signup and bundle probe."""

from __future__ import annotations

import logging
import os
from typing import Any, AsyncIterator

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from pydantic import BaseModel, EmailStr

from restock.config import MAX_PAGE_SIZE, Settings
from restock.errors import LockContentionError, NotConfiguredError, TransportError, UpstreamAPIError
from restock.inventory.bundles import summarize_native
from restock.jobs.coordinator import RunCoordinator, authorized
from restock.notify.klaviyo import KlaviyoClient
from restock.shopify.client import ShopifyClient
from restock.store.kv import KeyValueStore, create_redis_from_url
from restock.store.subscribers import Signup, Subscriber, SubscriberStore
from restock.utils.rate_limit import RateLimiter

load_dotenv()
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI(title="Restock Audit API")

SIGNUP_METRIC = "Back in Stock Subscriptions"


class AuditResponse(BaseModel):
    processed: int
    errors: int
    transitions: int
    notifiedEmails: int
    notifiedSms: int
    notifErrors: int
    partial: bool
    nextSinceId: int | None
    timestamp: str


class SignupRequest(BaseModel):
    email: EmailStr
    product_id: str | int
    phone: str | None = None
    product_title: str = ""
    product_handle: str = ""
    full_name: str = ""
    first_name: str = ""
    last_name: str = ""
    sms_consent: bool = False
    source: str = "BIS modal"


class SignupResponse(BaseModel):
    success: bool
    message: str
    subscriber_count: int
    rearm_count: int
    klaviyo_success: bool
    profile_update_success: bool
    event_success: bool


class SubscriptionDetails(BaseModel):
    subscribed_at: str | None
    notified: bool
    sms_consent: bool
    product_title: str
    product_handle: str
    product_url: str


class SubscriptionStatus(BaseModel):
    success: bool
    subscribed: bool
    total_subscribers: int
    subscription_details: SubscriptionDetails | None = None


def get_settings() -> Settings:
    return Settings.from_env()


async def get_store(settings: Settings = Depends(get_settings)) -> AsyncIterator[KeyValueStore]:
    store = KeyValueStore(create_redis_from_url(settings.redis_url))
    try:
        yield store
    finally:
        await store.close()


def get_coordinator(
    settings: Settings = Depends(get_settings), store: KeyValueStore = Depends(get_store)
) -> RunCoordinator:
    return RunCoordinator(settings, store=store)


async def get_klaviyo(settings: Settings = Depends(get_settings)) -> AsyncIterator[KlaviyoClient]:
    client = KlaviyoClient(settings.klaviyo_api_key, revision=settings.klaviyo_revision)
    try:
        yield client
    finally:
        await client.close()


async def get_shopify(settings: Settings = Depends(get_settings)) -> AsyncIterator[ShopifyClient]:
    client = ShopifyClient(
        settings.shopify_store,
        settings.shopify_token,
        api_version=settings.shopify_api_version,
        rate_limiter=RateLimiter(min_interval=settings.shopify_min_interval),
    )
    try:
        yield client
    finally:
        await client.close()


def require_caller(
    authorization: str | None = Header(default=None), settings: Settings = Depends(get_settings)
) -> None:
    if not authorized(settings, authorization):
        raise HTTPException(status_code=401, detail="unauthorized")


@app.get("/api/audit", response_model=AuditResponse, dependencies=[Depends(require_caller)])
@app.get("/api/inventory-audit", response_model=AuditResponse, dependencies=[Depends(require_caller)])
async def audit(
    reset: bool = False,
    limit: int | None = Query(default=None, ge=1, le=MAX_PAGE_SIZE),
    coordinator: RunCoordinator = Depends(get_coordinator),
) -> AuditResponse:
    try:
        report = await coordinator.run(reset=reset, limit=limit)
    except LockContentionError as exc:
        raise HTTPException(status_code=423, detail=str(exc)) from exc
    except NotConfiguredError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except (UpstreamAPIError, TransportError) as exc:
        logger.error("Audit aborted: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return AuditResponse(**report.as_dict())


@app.post("/api/back-in-stock", response_model=SignupResponse)
async def back_in_stock_signup(
    payload: SignupRequest,
    settings: Settings = Depends(get_settings),
    store: KeyValueStore = Depends(get_store),
    klaviyo: KlaviyoClient = Depends(get_klaviyo),
) -> SignupResponse:
    try:
        settings.require_klaviyo()
    except NotConfiguredError as exc:
        raise HTTPException(status_code=500, detail=f"Server misconfigured: {exc}") from exc

    signup = Signup(
        email=str(payload.email),
        product_id=str(payload.product_id),
        phone=payload.phone,
        first_name=payload.first_name,
        last_name=payload.last_name,
        full_name=payload.full_name,
        sms_consent=payload.sms_consent,
        product_title=payload.product_title,
        product_handle=payload.product_handle,
        product_url=settings.product_url(payload.product_handle),
        source=payload.source,
    )
    subscribers = SubscriberStore(store, ttl=settings.subscriber_ttl)
    subscriber, everyone = await subscribers.upsert(signup)
    outcome = await _announce_signup(klaviyo, settings.klaviyo_list_id, subscriber)
    return SignupResponse(
        success=True,
        message="Successfully subscribed to the back-in-stock waitlist",
        subscriber_count=len(everyone),
        rearm_count=subscriber.rearm_count,
        **outcome,
    )


async def _announce_signup(klaviyo: KlaviyoClient, list_id: str, subscriber: Subscriber) -> dict[str, bool]:
    outcome = {"klaviyo_success": False, "profile_update_success": False, "event_success": False}
    phone = subscriber.phone or None
    try:
        await klaviyo.subscribe_to_list(list_id, email=subscriber.email, phone=phone, sms=subscriber.sms_allowed)
        outcome["klaviyo_success"] = True
    except Exception as exc:
        logger.warning("Waitlist list subscription failed: %s", exc)
    try:
        await klaviyo.update_profile_properties(
            email=subscriber.email,
            properties={
                "last_waitlist_product_name": subscriber.product_title,
                "last_waitlist_product_url": subscriber.product_url,
                "last_waitlist_product_handle": subscriber.product_handle,
                "last_waitlist_product_id": subscriber.product_id,
                "last_waitlist_subscribed_at": subscriber.subscribed_at,
            },
        )
        outcome["profile_update_success"] = True
    except Exception as exc:
        logger.warning("Waitlist profile update failed: %s", exc)
    try:
        await klaviyo.track_event(
            SIGNUP_METRIC,
            email=subscriber.email,
            phone=phone,
            properties={
                "product_id": subscriber.product_id,
                "product_title": subscriber.product_title,
                "product_handle": subscriber.product_handle,
                "product_url": subscriber.product_url,
                "sms_consent": subscriber.sms_allowed,
                "source": subscriber.source,
            },
        )
        outcome["event_success"] = True
    except Exception as exc:
        logger.warning("Waitlist signup event failed: %s", exc)
    return outcome


@app.get("/api/back-in-stock", response_model=SubscriptionStatus)
async def back_in_stock_status(
    email: EmailStr,
    product_id: str,
    product_handle: str | None = None,
    settings: Settings = Depends(get_settings),
    store: KeyValueStore = Depends(get_store),
) -> SubscriptionStatus:
    subscribers = await SubscriberStore(store, ttl=settings.subscriber_ttl).load(product_id, product_handle)
    wanted = Subscriber(email=str(email)).identity
    match = next((s for s in subscribers if s.identity == wanted), None)
    details = None
    if match:
        details = SubscriptionDetails(
            subscribed_at=match.subscribed_at,
            notified=match.notified,
            sms_consent=match.sms_consent,
            product_title=match.product_title,
            product_handle=match.product_handle,
            product_url=match.product_url,
        )
    return SubscriptionStatus(
        success=True,
        subscribed=match is not None,
        total_subscribers=len(subscribers),
        subscription_details=details,
    )


@app.get("/api/bundle-status", dependencies=[Depends(require_caller)])
async def bundle_status(
    handle: str | None = None,
    product_id: int | None = Query(default=None, alias="id", gt=0),
    settings: Settings = Depends(get_settings),
    shopify: ShopifyClient = Depends(get_shopify),
) -> dict[str, Any]:
    if not handle and not product_id:
        raise HTTPException(status_code=400, detail="missing handle or id")
    try:
        settings.require_shopify()
    except NotConfiguredError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    try:
        node = await shopify.bundle_components(product_id=product_id, handle=None if product_id else handle)
    except (UpstreamAPIError, TransportError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if node is None:
        raise HTTPException(status_code=404, detail="product not found")
    summary = summarize_native(node)
    return {"handle": node.get("handle") or handle, "id": product_id, **summary.as_dict()}
