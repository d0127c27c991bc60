from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

import requests

from studysync.errors import AuthExpiredError
from studysync.google_client import refresh_access_token
from studysync.models import GoogleConfig, OAuthCredential, utc_now
from studysync.state_store import StateStore


logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)


class TokenManager:
    def __init__(
        self,
        config: GoogleConfig,
        state_store: StateStore,
        *,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.state_store = state_store
        self.refresh_margin = refresh_margin
        self.session = session
        self.clock = clock

    def needs_refresh(self, credential: OAuthCredential, now: datetime | None = None) -> bool:
        if not credential.access_token or credential.expires_at is None:
            return True
        now = now or self.clock()
        return credential.expires_at <= now + self.refresh_margin

    def access_token_for_user(self, user_id: str) -> str:
        credential = self.state_store.get_credential(user_id)
        if credential is None:
            raise AuthExpiredError("No Google credential found for this account")
        return self.ensure_valid_access_token(credential)

    def ensure_valid_access_token(self, credential: OAuthCredential) -> str:
        now = self.clock()
        if not self.needs_refresh(credential, now):
            return credential.access_token

        logger.info("Refreshing Google access token", extra={"user_id": credential.user_id})
        payload = refresh_access_token(self.config, credential.refresh_token, session=self.session)
        expires_in = int(payload.get("expires_in") or 3600)
        refreshed = OAuthCredential(
            user_id=credential.user_id,
            access_token=str(payload["access_token"]),
            refresh_token=str(payload.get("refresh_token") or credential.refresh_token),
            expires_at=now + timedelta(seconds=expires_in),
            scope=str(payload.get("scope") or credential.scope),
        )
        if self.state_store.swap_credential(refreshed, expected_access_token=credential.access_token):
            return refreshed.access_token

        # Another pass refreshed first; keep its token rather than overwrite it.
        current = self.state_store.get_credential(credential.user_id)
        if current is None:
            self.state_store.save_credential(refreshed)
            return refreshed.access_token
        if self.needs_refresh(current, now):
            self.state_store.save_credential(refreshed)
            return refreshed.access_token
        logger.info("Using concurrently refreshed access token", extra={"user_id": credential.user_id})
        return current.access_token
