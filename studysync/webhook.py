from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from studysync.state_store import StateStore
from studysync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

CHANNEL_ID_HEADER = "x-goog-channel-id"
RESOURCE_STATE_HEADER = "x-goog-resource-state"
RESOURCE_ID_HEADER = "x-goog-resource-id"

SYNC_STATE = "sync"
EXISTS_STATE = "exists"

Scheduler = Callable[..., Any]


def _run_inline(func: Callable[..., Any], *args: Any) -> None:
    func(*args)


class WebhookListener:
    def __init__(self, state_store: StateStore, sync_engine: SyncEngine) -> None:
        self.state_store = state_store
        self.sync_engine = sync_engine

    def handle(
        self,
        headers: Mapping[str, str],
        schedule: Scheduler | None = None,
    ) -> tuple[int, dict[str, Any]]:
        """Validate a push notification and queue an incremental pass if needed.

        ``schedule`` receives ``(func, *args)``; it defaults to running inline.
        """
        normalized = {str(key).lower(): str(value) for key, value in headers.items()}
        channel_id = normalized.get(CHANNEL_ID_HEADER, "").strip()
        resource_state = normalized.get(RESOURCE_STATE_HEADER, "").strip()
        resource_id = normalized.get(RESOURCE_ID_HEADER, "").strip()
        if not channel_id or not resource_state or not resource_id:
            return 400, {"error": "Missing webhook headers"}

        channel = self.state_store.get_active_channel(channel_id)
        if channel is None:
            logger.warning("Webhook for unknown channel %s", channel_id)
            return 404, {"error": "Channel not found"}

        if resource_state == SYNC_STATE:
            logger.info("Webhook handshake for channel %s", channel_id, extra={"user_id": channel.user_id})
            return 200, {"success": True, "sync_triggered": False}

        if resource_state != EXISTS_STATE:
            return 200, {"success": True, "sync_triggered": False}

        (schedule or _run_inline)(self.run_triggered_sync, channel.user_id)
        return 200, {"success": True, "sync_triggered": True}

    def run_triggered_sync(self, user_id: str) -> None:
        try:
            self.sync_engine.incremental_sync(user_id, trigger="webhook")
        except Exception:
            # The failed pass is already in the operations log.
            logger.exception("Webhook-triggered sync failed", extra={"user_id": user_id})
