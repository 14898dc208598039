"""
Google Calendar Service
Thin client over the Calendar v3 REST API plus OAuth token handling
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session

from ..config import GOOGLE_API_TIMEOUT, GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET, SECRET_KEY
from ..domain.calendar_sync.exceptions import (
    CalendarAccessError,
    CalendarAuthError,
    EventNotFoundError,
    ProviderError,
    TransientProviderError,
)
from ..models_google_calendar import GoogleCalendarIntegration
from ..shared.time_utils import to_rfc3339, utcnow

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

# 403 reasons that mean "slow down" rather than "forbidden"
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}
ACCESSIBLE_ROLES = {"owner", "writer", "reader"}


def get_cipher_suite() -> Fernet:
    return Fernet(SECRET_KEY.encode()[:44].ljust(44, b"="))


def encrypt_token(token: str) -> str:
    return get_cipher_suite().encrypt(token.encode()).decode()


def decrypt_token(token: str) -> str:
    return get_cipher_suite().decrypt(token.encode()).decode()


async def get_valid_access_token(
    integration: GoogleCalendarIntegration,
    db: Session,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """
    Get a valid access token, refreshing if necessary.
    Raises CalendarAuthError when the stored credentials cannot be used.
    """
    try:
        # Token still valid (more than 5 minutes left), decrypt and return
        if integration.token_expires_at > utcnow() + timedelta(minutes=5):
            return decrypt_token(integration.access_token)

        if not integration.refresh_token:
            raise CalendarAuthError("Google Calendar token expired and no refresh token stored")

        logger.info("🔄 Google Calendar token expired, refreshing...")
        refresh_token = decrypt_token(integration.refresh_token)
    except InvalidToken:
        raise CalendarAuthError("Stored Google Calendar credentials cannot be decrypted")

    try:
        async with httpx.AsyncClient(timeout=GOOGLE_API_TIMEOUT, transport=transport) as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": GOOGLE_CLIENT_ID,
                    "client_secret": GOOGLE_CLIENT_SECRET,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
    except httpx.TimeoutException as e:
        raise TransientProviderError(f"Token refresh timed out: {e}")
    except httpx.TransportError as e:
        raise TransientProviderError(f"Token refresh failed: {e}")

    if response.status_code != 200:
        logger.error(f"❌ Token refresh failed: {response.text}")
        raise CalendarAuthError("Google Calendar token refresh failed", response.status_code)

    tokens = response.json()
    new_access_token = tokens.get("access_token")
    expires_in = tokens.get("expires_in", 3600)

    if not new_access_token:
        logger.error("❌ No access token in refresh response")
        raise CalendarAuthError("No access token in refresh response")

    # Encrypt and save new access token
    integration.access_token = encrypt_token(new_access_token)
    integration.token_expires_at = utcnow() + timedelta(seconds=expires_in)
    db.commit()

    logger.info("✅ Google Calendar token refreshed successfully")
    return new_access_token


async def revoke_token(
    integration: GoogleCalendarIntegration,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """Best-effort revocation on disconnect; the integration is dropped either way"""
    try:
        token = decrypt_token(integration.refresh_token or integration.access_token)
        async with httpx.AsyncClient(timeout=GOOGLE_API_TIMEOUT, transport=transport) as client:
            response = await client.post(GOOGLE_REVOKE_URL, params={"token": token})
        if response.status_code != 200:
            logger.warning(f"⚠️ Google token revocation returned {response.status_code}")
            return False
        logger.info(f"✅ Google Calendar token revoked for user {integration.user_id}")
        return True
    except (InvalidToken, httpx.HTTPError) as e:
        logger.warning(f"⚠️ Could not revoke Google Calendar token: {str(e)}")
        return False


def _error_reasons(response: httpx.Response) -> set:
    try:
        errors = response.json().get("error", {}).get("errors", [])
    except ValueError:
        return set()
    return {error.get("reason") for error in errors if isinstance(error, dict)}


def raise_for_provider_status(response: httpx.Response) -> None:
    """Translate a Google API error response into the sync exception taxonomy"""
    status_code = response.status_code
    if status_code < 400:
        return

    detail = response.text[:500]
    if status_code == 401:
        raise CalendarAuthError("Google Calendar rejected the credentials, reconnect required", status_code)
    if status_code == 403:
        if _error_reasons(response) & RATE_LIMIT_REASONS:
            raise TransientProviderError(f"Google Calendar rate limit: {detail}", status_code)
        raise CalendarAccessError(f"Access to the calendar was denied: {detail}", status_code)
    if status_code in (404, 410):
        raise EventNotFoundError(f"Google Calendar resource not found: {detail}", status_code)
    if status_code == 429 or status_code >= 500:
        raise TransientProviderError(f"Google Calendar temporarily unavailable ({status_code}): {detail}", status_code)
    raise ProviderError(f"Google Calendar API error ({status_code}): {detail}", status_code)


class GoogleCalendarClient:
    """
    Google Calendar v3 client bound to one access token and one calendar.

    Every request carries an explicit timeout; timeouts and network failures
    surface as TransientProviderError.
    """

    def __init__(
        self,
        access_token: str,
        calendar_id: str = "primary",
        timeout: float = GOOGLE_API_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.calendar_id = calendar_id
        self.timeout = timeout
        self.transport = transport

    def _events_path(self, event_id: Optional[str] = None) -> str:
        path = f"/calendars/{quote(self.calendar_id, safe='')}/events"
        if event_id:
            path += f"/{quote(event_id, safe='')}"
        return path

    async def _request(self, method: str, path: str, **kwargs) -> Optional[Dict[str, Any]]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method,
                    f"{GOOGLE_CALENDAR_API}{path}",
                    headers={"Authorization": f"Bearer {self.access_token}"},
                    **kwargs,
                )
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Google Calendar request timed out: {e}")
        except httpx.TransportError as e:
            raise TransientProviderError(f"Google Calendar network error: {e}")

        raise_for_provider_status(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def list_events(self, since: datetime, single_events: bool = True) -> List[dict]:
        """All events starting from `since`, following pagination"""
        params = {
            "timeMin": to_rfc3339(since),
            "singleEvents": "true" if single_events else "false",
            "maxResults": 2500,
        }
        if single_events:
            params["orderBy"] = "startTime"

        events: List[dict] = []
        while True:
            page = await self._request("GET", self._events_path(), params=params) or {}
            events.extend(page.get("items", []))
            next_page = page.get("nextPageToken")
            if not next_page:
                return events
            params["pageToken"] = next_page

    async def get_event(self, event_id: str) -> dict:
        return await self._request("GET", self._events_path(event_id))

    async def insert_event(self, body: dict) -> dict:
        event = await self._request("POST", self._events_path(), json=body)
        logger.info(f"✅ Google Calendar event created: {event.get('id')}")
        return event

    async def update_event(self, event_id: str, body: dict) -> dict:
        event = await self._request("PUT", self._events_path(event_id), json=body)
        logger.info(f"✅ Google Calendar event updated: {event_id}")
        return event

    async def delete_event(self, event_id: str) -> None:
        await self._request("DELETE", self._events_path(event_id))
        logger.info(f"✅ Google Calendar event deleted: {event_id}")

    async def get_calendar(self, calendar_id: Optional[str] = None) -> dict:
        """Fetch calendar metadata; a missing calendar is an access problem"""
        calendar_id = calendar_id or self.calendar_id
        try:
            return await self._request("GET", f"/calendars/{quote(calendar_id, safe='')}")
        except EventNotFoundError as e:
            raise CalendarAccessError(f"Calendar {calendar_id} not found or not shared", e.status_code)

    async def list_calendars(self) -> List[dict]:
        """Calendars the account can at least read"""
        data = await self._request("GET", "/users/me/calendarList") or {}
        return [
            {
                "id": cal.get("id"),
                "summary": cal.get("summary"),
                "primary": cal.get("primary", False),
                "accessRole": cal.get("accessRole"),
                "backgroundColor": cal.get("backgroundColor"),
                "foregroundColor": cal.get("foregroundColor"),
            }
            for cal in data.get("items", [])
            if cal.get("accessRole") in ACCESSIBLE_ROLES
        ]


async def open_calendar_client(
    integration: GoogleCalendarIntegration,
    db: Session,
    calendar_id: Optional[str] = None,
) -> GoogleCalendarClient:
    """Default provider factory used by the sync service"""
    access_token = await get_valid_access_token(integration, db)
    return GoogleCalendarClient(access_token, calendar_id or integration.calendar_id)
