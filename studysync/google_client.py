from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import requests

from studysync.errors import AuthExpiredError, ProviderApiError, SyncTokenExpiredError
from studysync.models import EventPage, GoogleConfig, RemoteEvent, serialize_datetime


logger = logging.getLogger(__name__)

MAX_PAGES = 50


def _error_text(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500] or response.reason or ""
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            description = payload.get("error_description")
            return f"{error}: {description}" if description else error
    return response.text[:500]


def _rfc3339(value: datetime) -> str:
    return serialize_datetime(value.astimezone(timezone.utc)).replace("+00:00", "Z")


def refresh_access_token(
    config: GoogleConfig,
    refresh_token: str,
    session: requests.Session | None = None,
) -> dict[str, Any]:
    """Exchange a refresh token at the OAuth token endpoint.

    Any failure means the user has to reconnect, so everything surfaces as
    AuthExpiredError.
    """
    if not refresh_token:
        raise AuthExpiredError("No refresh token stored for this account")
    http = session or requests.Session()
    try:
        response = http.post(
            config.token_url,
            data={
                "refresh_token": refresh_token,
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "grant_type": "refresh_token",
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=config.timeout_seconds,
        )
    except requests.RequestException as exc:
        raise AuthExpiredError(f"Token refresh failed: {type(exc).__name__}: {exc}") from exc
    if not response.ok:
        raise AuthExpiredError(f"Token refresh failed: {_error_text(response)}")
    payload = response.json()
    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise AuthExpiredError("Token refresh response did not include an access token")
    return payload


class GoogleCalendarClient:
    def __init__(
        self,
        config: GoogleConfig,
        access_token: str,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.access_token = access_token
        self.calendar_id = config.calendar_id
        self.session = session or requests.Session()

    def _events_url(self, suffix: str = "") -> str:
        calendar = quote(self.calendar_id, safe="")
        return f"{self.config.api_base_url}/calendars/{calendar}/events{suffix}"

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = self.session.request(
                method,
                url,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json",
                },
                params=params,
                json=json_body,
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ProviderApiError(0, f"{type(exc).__name__}: {exc}") from exc
        if response.status_code == 410:
            raise SyncTokenExpiredError(_error_text(response))
        if not response.ok:
            raise ProviderApiError(response.status_code, _error_text(response))
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _list_pages(self, params: dict[str, Any]) -> EventPage:
        page = EventPage()
        page_token = ""
        for _ in range(MAX_PAGES):
            query = dict(params)
            if page_token:
                query["pageToken"] = page_token
            payload = self._request("GET", self._events_url(), params=query)
            for item in payload.get("items") or []:
                event = RemoteEvent.from_google(item)
                if event.id:
                    page.items.append(event)
            page_token = str(payload.get("nextPageToken") or "")
            if not page_token:
                page.next_sync_token = str(payload.get("nextSyncToken") or "")
                break
        else:
            logger.warning("Stopped paging events after %s pages", MAX_PAGES)
        return page

    def list_events(self, *, time_min: datetime, time_max: datetime) -> EventPage:
        return self._list_pages(
            {
                "timeMin": _rfc3339(time_min),
                "timeMax": _rfc3339(time_max),
                "singleEvents": "true",
                "maxResults": 250,
            }
        )

    def list_changes(
        self,
        *,
        sync_token: str | None = None,
        updated_min: datetime | None = None,
    ) -> EventPage:
        if sync_token:
            params: dict[str, Any] = {"syncToken": sync_token, "maxResults": 250}
        else:
            params = {"singleEvents": "true", "showDeleted": "true", "maxResults": 250}
            if updated_min is not None:
                params["updatedMin"] = _rfc3339(updated_min)
        return self._list_pages(params)

    def get_event(self, event_id: str) -> RemoteEvent | None:
        try:
            payload = self._request("GET", self._events_url(f"/{quote(event_id, safe='')}"))
        except ProviderApiError as exc:
            if exc.status == 404:
                return None
            raise
        return RemoteEvent.from_google(payload)

    def insert_event(self, payload: dict[str, Any]) -> RemoteEvent:
        created = self._request("POST", self._events_url(), json_body=payload)
        return RemoteEvent.from_google(created)

    def patch_event(self, event_id: str, payload: dict[str, Any]) -> RemoteEvent:
        patched = self._request(
            "PATCH",
            self._events_url(f"/{quote(event_id, safe='')}"),
            json_body=payload,
        )
        return RemoteEvent.from_google(patched)

    def delete_event(self, event_id: str) -> bool:
        try:
            self._request("DELETE", self._events_url(f"/{quote(event_id, safe='')}"))
        except ProviderApiError as exc:
            if exc.status == 404:
                return False
            raise
        return True

    def watch_events(self, *, channel_id: str, address: str, expiration: datetime) -> dict[str, Any]:
        return self._request(
            "POST",
            self._events_url("/watch"),
            json_body={
                "id": channel_id,
                "type": "web_hook",
                "address": address,
                "expiration": str(int(expiration.timestamp() * 1000)),
            },
        )

    def stop_channel(self, *, channel_id: str, resource_id: str) -> None:
        self._request(
            "POST",
            f"{self.config.api_base_url}/channels/stop",
            json_body={"id": channel_id, "resourceId": resource_id},
        )
