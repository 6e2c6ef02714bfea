"""
slotbook/wizard/api.py

HTTP client for the booking wizard.

Wizard → slotbook HTTP API (public + reservation endpoints)

Error mapping:
- transport errors, 5xx      → AvailabilityFetchError
- 409 with a race code       → SlotUnavailable / HoldExpired / HoldMismatch
- 404                        → NotFoundError
- 422                        → ValidationError
"""

import os
import logging
from datetime import date, datetime
from typing import Optional

import httpx
from dotenv import load_dotenv

from ..errors import (
    RACE_ERRORS,
    AvailabilityFetchError,
    BookingError,
    NotFoundError,
    ValidationError,
)
from ..models import SessionType
from ..schemas.bookings import BookingContact
from .backend import BookingReceipt, HoldInfo, SlotOption

load_dotenv()

logger = logging.getLogger(__name__)

API_URL = os.getenv("SLOTBOOK_API_URL", "http://localhost:8000")
API_TIMEOUT = float(os.getenv("SLOTBOOK_API_TIMEOUT", "10.0"))


def _receipt(data: dict) -> BookingReceipt:
    return BookingReceipt(
        id=data["id"],
        slot_id=data.get("slot_id"),
        session_type=data["session_type"],
        is_manual=bool(data.get("is_manual")),
        status=data["status"],
    )


class ApiClient:
    """Async BookingBackend over HTTP for one provider."""

    def __init__(
        self,
        provider_slug: str,
        base_url: str = API_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = API_TIMEOUT,
    ):
        self.provider_slug = provider_slug
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout = timeout

    async def _send(self, client: httpx.AsyncClient, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"API request failed: {method} {path} -> {e}")
            raise AvailabilityFetchError(f"{method} {path}: {e}") from e

    async def _request(self, method: str, path: str, **kwargs) -> Optional[dict | list]:
        """Base HTTP request; raises domain errors instead of returning None."""
        if self.client is not None:
            resp = await self._send(self.client, method, path, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await self._send(client, method, path, **kwargs)

        if resp.status_code == 204:
            return None
        if resp.status_code < 400:
            return resp.json()

        try:
            body = resp.json()
        except ValueError:
            body = {}
        detail = body.get("detail") if isinstance(body, dict) else None
        code = body.get("code") if isinstance(body, dict) else None
        message = detail if isinstance(detail, str) else f"HTTP {resp.status_code}"
        logger.error(f"API error: {method} {path} -> {resp.status_code} {code or ''}")

        if resp.status_code >= 500:
            raise AvailabilityFetchError(message)
        if resp.status_code == 409 and code in RACE_ERRORS:
            raise RACE_ERRORS[code](message)
        if resp.status_code == 404:
            raise NotFoundError(message)
        if resp.status_code == 422:
            raise ValidationError(message)
        raise BookingError(message)

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def list_available_dates(self, session_type: SessionType) -> list[date]:
        """GET /public/{slug}/dates"""
        data = await self._request(
            "GET", f"/public/{self.provider_slug}/dates",
            params={"session_type": SessionType(session_type).value},
        )
        return [date.fromisoformat(d) for d in data["dates"]]

    async def list_available_times(self, session_type: SessionType, target_date: date) -> list[SlotOption]:
        """GET /public/{slug}/times"""
        data = await self._request(
            "GET", f"/public/{self.provider_slug}/times",
            params={
                "session_type": SessionType(session_type).value,
                "date": target_date.isoformat(),
            },
        )
        return [
            SlotOption(
                slot_id=s["slot_id"],
                date=target_date,
                start_time=s["start_time"],
                end_time=s["end_time"],
            )
            for s in data["slots"]
        ]

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    async def hold_slot(self, slot_id: int, holder_token: str, ttl_seconds: Optional[int] = None) -> HoldInfo:
        """POST /reservations/holds"""
        payload = {"slot_id": slot_id, "holder_token": holder_token}
        if ttl_seconds:
            payload["ttl_seconds"] = ttl_seconds
        data = await self._request("POST", "/reservations/holds", json=payload)
        return HoldInfo(
            slot_id=data["slot_id"],
            holder_token=data["holder_token"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )

    async def release_hold(self, slot_id: int, holder_token: str) -> None:
        """DELETE /reservations/holds/{slot_id}"""
        await self._request(
            "DELETE", f"/reservations/holds/{slot_id}",
            params={"holder_token": holder_token},
        )

    async def confirm_booking(self, slot_id: int, holder_token: str, contact: BookingContact) -> BookingReceipt:
        """POST /reservations/confirm"""
        data = await self._request("POST", "/reservations/confirm", json={
            "slot_id": slot_id,
            "holder_token": holder_token,
            "contact": contact.model_dump(mode="json"),
        })
        return _receipt(data)

    async def book_directly(self, slot_id: int, contact: BookingContact) -> BookingReceipt:
        """POST /reservations/book"""
        data = await self._request("POST", "/reservations/book", json={
            "slot_id": slot_id,
            "contact": contact.model_dump(mode="json"),
        })
        return _receipt(data)

    async def create_manual_booking(self, session_type: SessionType, contact: BookingContact) -> BookingReceipt:
        """POST /reservations/manual"""
        data = await self._request("POST", "/reservations/manual", json={
            "provider_slug": self.provider_slug,
            "session_type": SessionType(session_type).value,
            "contact": contact.model_dump(mode="json"),
        })
        return _receipt(data)
