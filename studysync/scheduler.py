from __future__ import annotations

import logging
import threading
from typing import Optional

from studysync.config_manager import ConfigManager
from studysync.state_store import StateStore
from studysync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager, state_store: StateStore) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.state_store = state_store
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="studysync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def run_cycle(self) -> dict[str, int]:
        """Renew channels that are about to lapse, then run one incremental pass per connected user."""
        renewed = self.sync_engine.renew_expiring_channels()
        synced = 0
        failed = 0
        for user_id in self.state_store.credential_user_ids():
            if self._stop_event.is_set():
                break
            try:
                self.sync_engine.incremental_sync(user_id, trigger="scheduled")
            except Exception:
                failed += 1
                logger.exception("Scheduled sync failed", extra={"user_id": user_id})
                continue
            synced += 1
        return {"renewed": renewed, "synced": synced, "failed": failed}

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            stats = self.run_cycle()
            logger.info(
                "Scheduled cycle finished: renewed %s, synced %s, failed %s",
                stats["renewed"],
                stats["synced"],
                stats["failed"],
            )
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            self._stop_event.wait(timeout=interval_seconds)
