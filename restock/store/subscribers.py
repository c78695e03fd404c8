"""Waitlist subscribers stored under product id and handle keys."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Iterable, Mapping

import pendulum

from restock.store.kv import KeyValueStore
from restock.utils.dates import now_iso, parse_timestamp

logger = logging.getLogger(__name__)

ID_KEY = "subscribers:{product_id}"
HANDLE_KEY = "subscribers:handle:{handle}"

EPOCH = pendulum.datetime(1970, 1, 1, tz="UTC")


def to_e164(raw: Any) -> str | None:
    if not raw:
        return None
    value = re.sub(r"[^\d+]", "", str(raw).strip())
    if value.startswith("+"):
        return value if re.fullmatch(r"\+\d{8,15}", value) else None
    if re.fullmatch(r"0\d{10}", value):
        return "+234" + value[1:]
    if re.fullmatch(r"(70|80|81|90|91)\d{8}", value):
        return "+234" + value
    if re.fullmatch(r"\d{10}", value):
        return "+1" + value
    return None


def split_name(full: str | None) -> tuple[str, str]:
    parts = str(full or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


@dataclass(slots=True)
class Subscriber:
    email: str = ""
    phone: str = ""
    first_name: str = ""
    last_name: str = ""
    sms_consent: bool = False
    product_id: str = ""
    product_title: str = ""
    product_handle: str = ""
    product_url: str = ""
    notified: bool = False
    notified_at: str | None = None
    subscribed_at: str | None = None
    updated_at: str | None = None
    rearm_count: int = 0
    source: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> str | None:
        email = self.email.strip().lower()
        if email:
            return f"email:{email}"
        phone = to_e164(self.phone)
        if phone:
            return f"phone:{phone}"
        return None

    @property
    def sms_allowed(self) -> bool:
        return bool(self.sms_consent and to_e164(self.phone))

    @property
    def activity(self) -> pendulum.DateTime:
        return parse_timestamp(self.updated_at) or parse_timestamp(self.subscribed_at) or EPOCH

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Subscriber":
        known = {f.name for f in fields(cls)} - {"extra"}
        values = {key: data[key] for key in known if key in data and data[key] is not None}
        extra = {key: value for key, value in data.items() if key not in known and key != "extra"}
        extra.update(data.get("extra") or {})
        subscriber = cls(**values, extra=extra)
        subscriber.product_id = str(subscriber.product_id)
        subscriber.notified = bool(subscriber.notified)
        subscriber.sms_consent = bool(subscriber.sms_consent)
        subscriber.rearm_count = int(subscriber.rearm_count or 0)
        return subscriber

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        extra = data.pop("extra") or {}
        return {**extra, **data}


def merge_subscribers(primary: Iterable[Subscriber], secondary: Iterable[Subscriber]) -> list[Subscriber]:
    """Merge two lists by contact identity.

    On conflict the record with the newer activity timestamp wins and its
    fields are applied over the other; ties keep the record seen first.
    Records without an email or usable phone are kept as they are, once.
    """
    merged: dict[str, Subscriber] = {}
    for subscriber in [*primary, *secondary]:
        key = subscriber.identity
        if key is None:
            key = "raw:" + json.dumps(subscriber.to_dict(), sort_keys=True, default=str)
            if key not in merged:
                logger.warning("Keeping waitlist entry without contact details for product %s", subscriber.product_id)
                merged[key] = subscriber
            continue
        current = merged.get(key)
        if current is None:
            merged[key] = subscriber
            continue
        if subscriber.activity > current.activity:
            older, newer = current, subscriber
        else:
            older, newer = subscriber, current
        merged[key] = Subscriber.from_dict({**older.to_dict(), **newer.to_dict()})
    return list(merged.values())


def pending(subscribers: Iterable[Subscriber]) -> list[Subscriber]:
    return [subscriber for subscriber in subscribers if not subscriber.notified and subscriber.identity]


@dataclass(slots=True)
class Signup:
    email: str
    product_id: str
    phone: str | None = None
    first_name: str = ""
    last_name: str = ""
    full_name: str = ""
    sms_consent: bool = False
    product_title: str = ""
    product_handle: str = ""
    product_url: str = ""
    source: str = "BIS modal"


class SubscriberStore:
    def __init__(self, store: KeyValueStore, *, ttl: int = 90 * 24 * 60 * 60) -> None:
        self.store = store
        self.ttl = ttl

    @staticmethod
    def keys(product_id: int | str, handle: str | None) -> list[str]:
        keys = [ID_KEY.format(product_id=product_id)]
        if handle:
            keys.append(HANDLE_KEY.format(handle=handle))
        return keys

    async def _read(self, key: str) -> list[Subscriber]:
        raw = await self.store.get_json(key)
        if not isinstance(raw, list):
            return []
        return [Subscriber.from_dict(item) for item in raw if isinstance(item, Mapping)]

    async def load(self, product_id: int | str, handle: str | None = None) -> list[Subscriber]:
        lists = [await self._read(key) for key in self.keys(product_id, handle)]
        if len(lists) == 1:
            return merge_subscribers(lists[0], [])
        return merge_subscribers(lists[0], lists[1])

    async def save(self, product_id: int | str, handle: str | None, subscribers: list[Subscriber]) -> None:
        payload = [subscriber.to_dict() for subscriber in subscribers]
        for key in self.keys(product_id, handle):
            await self.store.set_json(key, payload, ttl=self.ttl)

    async def upsert(self, signup: Signup) -> tuple[Subscriber, list[Subscriber]]:
        subscribers = await self.load(signup.product_id, signup.product_handle or None)
        first, last = signup.first_name, signup.last_name
        if not first and not last and signup.full_name:
            first, last = split_name(signup.full_name)
        phone = to_e164(signup.phone)
        sms_allowed = bool(signup.sms_consent and phone)
        now = now_iso()

        incoming = Subscriber(email=signup.email.strip(), phone=phone or "")
        prior = next((s for s in subscribers if s.identity == incoming.identity), None)
        if prior is None:
            subscriber = Subscriber(
                email=incoming.email,
                phone=phone or "",
                first_name=first,
                last_name=last,
                sms_consent=sms_allowed,
                product_id=str(signup.product_id),
                product_title=signup.product_title or "Unknown Product",
                product_handle=signup.product_handle,
                product_url=signup.product_url,
                subscribed_at=now,
                updated_at=now,
                source=signup.source,
            )
            subscribers.append(subscriber)
        else:
            subscriber = prior
            subscriber.phone = phone or prior.phone
            subscriber.first_name = first or prior.first_name
            subscriber.last_name = last or prior.last_name
            subscriber.sms_consent = True if sms_allowed else prior.sms_consent
            subscriber.product_id = str(signup.product_id)
            subscriber.product_title = signup.product_title or prior.product_title or "Unknown Product"
            subscriber.product_handle = signup.product_handle or prior.product_handle
            subscriber.product_url = signup.product_url or prior.product_url
            subscriber.source = signup.source or prior.source
            subscriber.notified = False
            subscriber.notified_at = None
            subscriber.rearm_count += 1
            subscriber.updated_at = now
            logger.info("Re-armed waitlist entry for product %s (count %s)", signup.product_id, subscriber.rearm_count)
        await self.save(signup.product_id, signup.product_handle or None, subscribers)
        return subscriber, subscribers
