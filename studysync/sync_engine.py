from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import requests

from studysync.change_detector import BOTH_CHANGED, LOCAL_ONLY, REMOTE_ONLY, detect_change
from studysync.config_manager import ConfigManager
from studysync.conflict_resolver import ConflictResolver
from studysync.entity_mapper import EntityMapper, is_app_authored
from studysync.errors import (
    AuthExpiredError,
    InvalidRequestError,
    ProviderApiError,
    StudySyncError,
    SyncTimeoutError,
    SyncTokenExpiredError,
)
from studysync.google_client import GoogleCalendarClient
from studysync.models import (
    ENTITY_TYPES,
    AppConfig,
    RemoteEvent,
    ScheduleBlock,
    SyncResult,
    WebhookChannel,
    serialize_datetime,
    sync_window,
    utc_now,
)
from studysync.state_store import StateStore
from studysync.token_manager import TokenManager


logger = logging.getLogger(__name__)

EXPORT_WORKERS = 3
TOKEN_FALLBACK_MESSAGE = "Sync token expired, fell back to full sync"
RENEWAL_HORIZON = timedelta(days=1)


class PassDeadline:
    def __init__(self, budget_seconds: float, monotonic: Callable[[], float] = time.monotonic) -> None:
        self.budget_seconds = budget_seconds
        self._monotonic = monotonic
        self.expires_at = monotonic() + budget_seconds

    def check(self) -> None:
        if self._monotonic() > self.expires_at:
            raise SyncTimeoutError(self.budget_seconds)


@dataclass
class _SyncPass:
    user_id: str
    trigger: str
    config: AppConfig
    client: GoogleCalendarClient
    mapper: EntityMapper
    resolver: ConflictResolver
    user_timezone: str
    deadline: PassDeadline
    result: SyncResult


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.session = session
        self.clock = clock
        self.monotonic = monotonic

    def _client_for(self, user_id: str, config: AppConfig) -> GoogleCalendarClient:
        token_manager = TokenManager(
            config.google,
            self.state_store,
            refresh_margin=timedelta(seconds=config.sync.refresh_margin_seconds),
            session=self.session,
            clock=self.clock,
        )
        access_token = token_manager.access_token_for_user(user_id)
        return GoogleCalendarClient(config.google, access_token, session=self.session)

    def _mapper(self, config: AppConfig) -> EntityMapper:
        return EntityMapper(self.state_store, calendar_id=config.google.calendar_id, clock=self.clock)

    def _execute(
        self,
        *,
        user_id: str,
        operation_type: str,
        trigger: str,
        body: Callable[[_SyncPass], None],
    ) -> SyncResult:
        started = self.monotonic()
        operation_id = self.state_store.start_operation(
            user_id=user_id,
            operation_type=operation_type,
            direction="bidirectional",
            trigger=trigger,
        )
        result = SyncResult(
            status="pending",
            message="",
            operation_type=operation_type,
            trigger=trigger,
            operation_id=operation_id,
            run_at=self.clock(),
        )
        log_extra = {"user_id": user_id, "operation_id": operation_id}
        logger.info("Starting %s", operation_type, extra=log_extra)

        try:
            config = self.config_manager.load()
            deadline = PassDeadline(config.sync.pass_budget_seconds, self.monotonic)
            mapper = self._mapper(config)
            sync_pass = _SyncPass(
                user_id=user_id,
                trigger=trigger,
                config=config,
                client=self._client_for(user_id, config),
                mapper=mapper,
                resolver=ConflictResolver(self.state_store, mapper, self.clock),
                user_timezone=self.state_store.get_user_timezone(user_id),
                deadline=deadline,
                result=result,
            )
            body(sync_pass)
        except Exception as exc:
            error_class = exc.error_class if isinstance(exc, StudySyncError) else "internal"
            result.status = "failed"
            result.message = str(exc) or type(exc).__name__
            result.duration_ms = int((self.monotonic() - started) * 1000)
            self.state_store.finish_operation(
                operation_id,
                status="failed",
                message=result.message,
                error_class=error_class,
                details=self._operation_details(result),
            )
            logger.exception("%s failed", operation_type, extra=log_extra)
            raise

        result.status = "completed"
        result.duration_ms = int((self.monotonic() - started) * 1000)
        self.state_store.finish_operation(
            operation_id,
            status="completed",
            message=result.message,
            details=self._operation_details(result),
        )
        logger.info("%s finished: %s", operation_type, result.message, extra=log_extra)
        return result

    @staticmethod
    def _operation_details(result: SyncResult) -> dict[str, Any]:
        return {
            "imported": result.imported,
            "updated": result.updated,
            "exported": result.exported,
            "unmapped": result.unmapped,
            "skipped": result.skipped,
            "failed": result.failed,
            "conflicts": len(result.conflicts),
            "duration_ms": result.duration_ms,
            "fell_back_to_full_sync": result.fell_back_to_full_sync,
        }

    def full_sync(self, user_id: str, trigger: str = "manual") -> SyncResult:
        return self._execute(
            user_id=user_id,
            operation_type="full_sync",
            trigger=trigger,
            body=self._full_sync_pass,
        )

    def incremental_sync(self, user_id: str, trigger: str = "manual") -> SyncResult:
        result = self._execute(
            user_id=user_id,
            operation_type="incremental_sync",
            trigger=trigger,
            body=self._incremental_pass,
        )
        if not result.fell_back_to_full_sync:
            return result
        full_result = self.full_sync(user_id, trigger=trigger)
        full_result.fell_back_to_full_sync = True
        return full_result

    def _full_sync_pass(self, sync_pass: _SyncPass) -> None:
        settings = sync_pass.config.sync
        time_min, time_max = sync_window(self.clock(), settings.lookback_months, settings.lookahead_months)
        page = sync_pass.client.list_events(time_min=time_min, time_max=time_max)
        self._reconcile_page(sync_pass, page.items)
        self._export_unmapped(sync_pass)
        self._finalize(sync_pass, page.next_sync_token)
        result = sync_pass.result
        result.message = f"Sync completed: imported {result.imported}, exported {result.exported}"

    def _incremental_pass(self, sync_pass: _SyncPass) -> None:
        calendar_id = sync_pass.config.google.calendar_id
        sync_token = self.state_store.get_sync_token(sync_pass.user_id, calendar_id)
        try:
            if sync_token:
                page = sync_pass.client.list_changes(sync_token=sync_token)
            else:
                lookback = timedelta(days=sync_pass.config.sync.incremental_lookback_days)
                page = sync_pass.client.list_changes(updated_min=self.clock() - lookback)
        except SyncTokenExpiredError:
            self.state_store.delete_sync_token(sync_pass.user_id, calendar_id)
            sync_pass.result.fell_back_to_full_sync = True
            sync_pass.result.message = TOKEN_FALLBACK_MESSAGE
            logger.warning("Sync token expired, falling back to full sync", extra={"user_id": sync_pass.user_id})
            return

        self._reconcile_page(sync_pass, page.items)
        self._finalize(sync_pass, page.next_sync_token)
        result = sync_pass.result
        result.message = (
            f"Incremental sync completed: imported {result.imported}, updated {result.updated}, "
            f"unmapped {result.unmapped}, conflicts {len(result.conflicts)}"
        )

    def _finalize(self, sync_pass: _SyncPass, next_sync_token: str) -> None:
        if next_sync_token:
            self.state_store.set_sync_token(sync_pass.user_id, sync_pass.config.google.calendar_id, next_sync_token)
            sync_pass.result.next_sync_token = next_sync_token
        self.state_store.mark_synced(sync_pass.user_id, self.clock())

    def _reconcile_page(self, sync_pass: _SyncPass, events: list[RemoteEvent]) -> None:
        for remote_event in events:
            sync_pass.deadline.check()
            try:
                self._reconcile_remote_event(sync_pass, remote_event)
            except (AuthExpiredError, SyncTimeoutError):
                raise
            except Exception:
                sync_pass.result.failed += 1
                logger.exception(
                    "Failed to reconcile Google event",
                    extra={"user_id": sync_pass.user_id, "google_event_id": remote_event.id},
                )

    def _reconcile_remote_event(self, sync_pass: _SyncPass, remote_event: RemoteEvent) -> str:
        """Apply one remote event to local state and return the outcome name."""
        user_id = sync_pass.user_id
        result = sync_pass.result
        mapping = self.state_store.get_mapping_by_google_id(user_id, remote_event.id)

        if mapping is None:
            if remote_event.cancelled:
                result.skipped += 1
                return "skip_cancelled"
            if is_app_authored(remote_event):
                result.skipped += 1
                return "skip_app_authored"
            entity = sync_pass.mapper.import_event(user_id, remote_event)
            if entity is None:
                result.skipped += 1
                return "skip_already_synced"
            result.imported += 1
            return "new"

        entity = self.state_store.get_entity(mapping.entity_type, mapping.entity_id)
        if remote_event.cancelled or entity is None:
            # Local entity is kept when the remote side is gone.
            self.state_store.delete_mapping(mapping.id)
            result.unmapped += 1
            logger.info(
                "Removed mapping for %s %s",
                mapping.entity_type,
                mapping.entity_id,
                extra={"user_id": user_id, "google_event_id": remote_event.id},
            )
            return "unmapped"

        decision = detect_change(mapping, remote_event, entity)
        if decision.state == REMOTE_ONLY:
            sync_pass.mapper.apply_remote_update(mapping, remote_event)
            result.updated += 1
            return "updated"
        if decision.state == LOCAL_ONLY:
            sync_pass.mapper.push_local_update(sync_pass.client, mapping, entity, sync_pass.user_timezone)
            result.exported += 1
            return "pushed"
        if decision.state == BOTH_CHANGED:
            conflict = sync_pass.resolver.record_conflict(
                user_id,
                mapping,
                entity,
                remote_event,
                trigger=sync_pass.trigger,
            )
            result.conflicts.append(
                {
                    "conflict_id": conflict.id,
                    "entity_type": conflict.entity_type,
                    "entity_id": conflict.entity_id,
                    "google_event_id": conflict.google_event_id,
                }
            )
            return "conflict"
        result.skipped += 1
        return "skip_already_synced"

    def _export_unmapped(self, sync_pass: _SyncPass) -> None:
        settings = self.state_store.get_sync_settings(sync_pass.user_id)
        entity_types = [entity_type for entity_type in ENTITY_TYPES if settings.exports(entity_type)]
        if not entity_types:
            return
        with ThreadPoolExecutor(max_workers=EXPORT_WORKERS) as pool:
            futures = [pool.submit(self._export_entity_type, sync_pass, entity_type) for entity_type in entity_types]
            outcomes = [future.result() for future in futures]
        for exported, failed in outcomes:
            sync_pass.result.exported += exported
            sync_pass.result.failed += failed

    def _export_entity_type(self, sync_pass: _SyncPass, entity_type: str) -> tuple[int, int]:
        exported = 0
        failed = 0
        for entity in self.state_store.list_entities(sync_pass.user_id, entity_type):
            sync_pass.deadline.check()
            if isinstance(entity, ScheduleBlock) and not entity.is_active:
                continue
            try:
                if self.state_store.get_mapping_for_entity(sync_pass.user_id, entity_type, entity.id) is not None:
                    continue
                mapping = sync_pass.mapper.export_entity(sync_pass.client, entity, sync_pass.user_timezone)
            except (AuthExpiredError, SyncTimeoutError):
                raise
            except Exception:
                failed += 1
                logger.exception(
                    "Failed to export %s %s",
                    entity_type,
                    entity.id,
                    extra={"user_id": sync_pass.user_id},
                )
                continue
            if mapping is not None:
                exported += 1
        return exported, failed

    def setup_webhook(self, user_id: str, trigger: str = "manual") -> dict[str, Any]:
        config = self.config_manager.load()
        webhook_url = config.google.webhook_url
        if not webhook_url:
            raise InvalidRequestError("Webhook URL is not configured")

        channel_id = str(uuid.uuid4())
        expiration = self.clock() + timedelta(days=config.sync.channel_ttl_days)
        try:
            client = self._client_for(user_id, config)
            response = client.watch_events(channel_id=channel_id, address=webhook_url, expiration=expiration)
        except StudySyncError as exc:
            self.state_store.record_operation(
                user_id=user_id,
                operation_type="webhook_setup",
                status="failed",
                direction="inbound",
                trigger=trigger,
                message=str(exc),
                error_class=exc.error_class,
            )
            raise

        if response.get("expiration"):
            expiration = datetime.fromtimestamp(int(response["expiration"]) / 1000, tz=timezone.utc)
        channel = WebhookChannel(
            channel_id=str(response.get("id") or channel_id),
            user_id=user_id,
            resource_id=str(response.get("resourceId") or ""),
            calendar_id=config.google.calendar_id,
            expiration=expiration,
            webhook_url=webhook_url,
        )
        self.state_store.save_channel(channel)
        self.state_store.record_operation(
            user_id=user_id,
            operation_type="webhook_setup",
            status="completed",
            direction="inbound",
            trigger=trigger,
            message="Webhook channel registered",
            details={"channel_id": channel.channel_id, "resource_id": channel.resource_id},
        )
        logger.info("Registered webhook channel %s", channel.channel_id, extra={"user_id": user_id})
        return {
            "success": True,
            "channel_id": channel.channel_id,
            "resource_id": channel.resource_id,
            "expiration": serialize_datetime(channel.expiration),
        }

    def renew_expiring_channels(self, now: datetime | None = None) -> int:
        now = now or self.clock()
        renewed = 0
        for channel in self.state_store.channels_expiring_before(now + RENEWAL_HORIZON):
            try:
                self.setup_webhook(channel.user_id, trigger="scheduled")
            except StudySyncError:
                logger.exception(
                    "Failed to renew webhook channel %s",
                    channel.channel_id,
                    extra={"user_id": channel.user_id},
                )
                continue
            self.state_store.deactivate_channel(channel.channel_id)
            renewed += 1
            try:
                self._stop_channel(channel)
            except StudySyncError as exc:
                logger.warning(
                    "Could not stop replaced channel %s: %s",
                    channel.channel_id,
                    exc,
                    extra={"user_id": channel.user_id},
                )
        return renewed

    def _stop_channel(self, channel: WebhookChannel) -> None:
        if not channel.resource_id:
            return
        client = self._client_for(channel.user_id, self.config_manager.load())
        try:
            client.stop_channel(channel_id=channel.channel_id, resource_id=channel.resource_id)
        except ProviderApiError as exc:
            if exc.status != 404:
                raise

    def resolve_conflict(self, user_id: str, conflict_data: dict[str, Any] | None) -> dict[str, Any]:
        if not conflict_data:
            raise InvalidRequestError("conflictData is required")
        config = self.config_manager.load()
        mapper = self._mapper(config)
        resolver = ConflictResolver(self.state_store, mapper, self.clock)
        return resolver.resolve(
            user_id=user_id,
            conflict_id=conflict_data.get("conflict_id"),
            resolution_type=str(conflict_data.get("resolution_type") or ""),
            resolved_data=conflict_data.get("resolved_data"),
            client_provider=lambda: self._client_for(user_id, config),
            user_timezone=self.state_store.get_user_timezone(user_id),
        )

    def list_conflicts(self, user_id: str, include_resolved: bool = False) -> list[dict[str, Any]]:
        resolver = ConflictResolver(self.state_store, self._mapper(self.config_manager.load()), self.clock)
        return resolver.list_conflicts(user_id, include_resolved)

    def list_operations(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        return self.state_store.recent_operations(user_id, limit)
