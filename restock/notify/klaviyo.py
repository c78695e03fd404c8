"""Klaviyo marketing API helpers."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from restock.errors import UpstreamAPIError
from restock.utils.dates import now_iso
from restock.utils.retry import retry_async

logger = logging.getLogger(__name__)

BASE_URL = "https://a.klaviyo.com/api"
SUBSCRIBED = {"marketing": {"consent": "SUBSCRIBED"}}


class KlaviyoClient:
    def __init__(
        self,
        api_key: str,
        *,
        revision: str = "2023-10-15",
        session: httpx.AsyncClient | None = None,
    ) -> None:
        self._session = session or httpx.AsyncClient(timeout=15.0)
        self._headers = {
            "Authorization": f"Klaviyo-API-Key {api_key}",
            "accept": "application/json",
            "content-type": "application/json",
            "revision": revision,
        }

    async def close(self) -> None:
        await self._session.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> int:
        url = f"{BASE_URL}/{path}"
        response = await retry_async(self._session.post)(url, json=payload, headers=self._headers)
        if not response.is_success:
            raise UpstreamAPIError(response.status_code, response.text, endpoint=path)
        return response.status_code

    async def subscribe_to_list(self, list_id: str, *, email: str, phone: str | None = None, sms: bool = False) -> int:
        subscriptions: dict[str, Any] = {"email": SUBSCRIBED}
        attributes: dict[str, Any] = {"email": email}
        if sms and phone:
            subscriptions["sms"] = SUBSCRIBED
            attributes["phone_number"] = phone
        attributes["subscriptions"] = subscriptions
        payload = {
            "data": {
                "type": "profile-subscription-bulk-create-job",
                "attributes": {"profiles": {"data": [{"type": "profile", "attributes": attributes}]}},
                "relationships": {"list": {"data": {"type": "list", "id": list_id}}},
            }
        }
        return await self._post("profile-subscription-bulk-create-jobs/", payload)

    async def update_profile_properties(self, *, email: str, properties: dict[str, Any]) -> int:
        payload = {
            "data": {
                "type": "profile-properties-bulk-update-job",
                "attributes": {
                    "profiles": {
                        "data": [{"type": "profile", "attributes": {"email": email, "properties": properties}}]
                    }
                },
            }
        }
        return await self._post("profile-properties-bulk-update-jobs/", payload)

    async def track_event(
        self,
        metric: str,
        *,
        email: str,
        phone: str | None = None,
        properties: dict[str, Any] | None = None,
    ) -> int:
        profile: dict[str, Any] = {"email": email}
        if phone:
            profile["phone_number"] = phone
        payload = {
            "data": {
                "type": "event",
                "attributes": {
                    "time": now_iso(),
                    "properties": properties or {},
                    "metric": {"data": {"type": "metric", "attributes": {"name": metric}}},
                    "profile": {"data": {"type": "profile", "attributes": profile}},
                },
            }
        }
        return await self._post("events/", payload)
