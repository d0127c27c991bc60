from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from studysync.entity_mapper import EntityMapper
from studysync.errors import ConflictNotFoundError, InvalidRequestError, StudySyncError
from studysync.google_client import GoogleCalendarClient
from studysync.models import EventMapping, LocalEntity, RemoteEvent, SyncConflict, utc_now
from studysync.state_store import StateStore


logger = logging.getLogger(__name__)

PREFER_LOCAL = "prefer_local"
PREFER_GOOGLE = "prefer_google"
MERGE = "merge"
RESOLUTION_TYPES = (PREFER_LOCAL, PREFER_GOOGLE, MERGE)


class ConflictResolver:
    def __init__(
        self,
        state_store: StateStore,
        entity_mapper: EntityMapper,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store
        self.entity_mapper = entity_mapper
        self.clock = clock

    def record_conflict(
        self,
        user_id: str,
        mapping: EventMapping,
        local_entity: LocalEntity,
        remote_event: RemoteEvent,
        *,
        trigger: str = "manual",
    ) -> SyncConflict:
        existing = self.state_store.get_open_conflict_for_mapping(mapping.id)
        if existing is not None:
            return existing

        conflict = self.state_store.create_conflict(
            user_id=user_id,
            mapping_id=mapping.id,
            entity_type=mapping.entity_type,
            entity_id=mapping.entity_id,
            google_event_id=mapping.google_event_id,
            local_data=local_entity.to_dict(),
            google_data=remote_event.to_google(),
        )
        self.state_store.record_operation(
            user_id=user_id,
            operation_type="conflict_detection",
            status="completed",
            direction="bidirectional",
            trigger=trigger,
            message=f"Conflict detected for {mapping.entity_type}",
            entity_type=mapping.entity_type,
            entity_id=mapping.entity_id,
            google_event_id=mapping.google_event_id,
            details={"conflict_id": conflict.id},
        )
        logger.warning(
            "Sync conflict detected for %s %s",
            mapping.entity_type,
            mapping.entity_id,
            extra={"user_id": user_id, "google_event_id": mapping.google_event_id},
        )
        return conflict

    def _load_open_conflict(self, user_id: str, conflict_id: Any) -> SyncConflict:
        try:
            numeric_id = int(conflict_id)
        except (TypeError, ValueError):
            raise ConflictNotFoundError(conflict_id) from None
        conflict = self.state_store.get_conflict(numeric_id, user_id)
        if conflict is None or conflict.resolved:
            raise ConflictNotFoundError(conflict_id)
        return conflict

    def resolve(
        self,
        *,
        user_id: str,
        conflict_id: Any,
        resolution_type: str,
        resolved_data: dict[str, Any] | None = None,
        client_provider: Callable[[], GoogleCalendarClient],
        user_timezone: str = "UTC",
        trigger: str = "manual",
    ) -> dict[str, Any]:
        """Apply a resolution strategy to an open conflict.

        Every strategy ends by moving the mapping's sync watermark past both
        sides, so the same pair of edits is not reported again.
        """
        conflict = self._load_open_conflict(user_id, conflict_id)
        if resolution_type not in RESOLUTION_TYPES:
            raise InvalidRequestError(f"Invalid resolution type: {resolution_type}")
        if resolution_type == MERGE and not resolved_data:
            raise InvalidRequestError("Merge resolution requires resolved_data")

        mapping = self.state_store.get_mapping(conflict.mapping_id) if conflict.mapping_id else None
        if mapping is None:
            raise InvalidRequestError("The conflicting event is no longer mapped")
        entity = self.state_store.get_entity(mapping.entity_type, mapping.entity_id)
        if entity is None:
            raise InvalidRequestError("The conflicting local entity no longer exists")

        try:
            if resolution_type == PREFER_LOCAL:
                self.entity_mapper.push_local_update(client_provider(), mapping, entity, user_timezone)
            elif resolution_type == PREFER_GOOGLE:
                remote_event = RemoteEvent.from_google(conflict.google_data)
                self.entity_mapper.apply_remote_update(mapping, remote_event)
            else:
                merged = self.entity_mapper.push_merged_update(
                    client_provider(), mapping, entity, dict(resolved_data or {}), user_timezone
                )
                if merged is None:
                    raise InvalidRequestError("The conflicting local entity no longer exists")
        except StudySyncError as exc:
            self.state_store.record_operation(
                user_id=user_id,
                operation_type="conflict_resolution",
                status="failed",
                direction="bidirectional",
                trigger=trigger,
                message=str(exc),
                error_class=exc.error_class,
                entity_type=mapping.entity_type,
                entity_id=mapping.entity_id,
                google_event_id=mapping.google_event_id,
                details={"conflict_id": conflict.id, "resolution": resolution_type},
            )
            raise

        if not self.state_store.mark_conflict_resolved(
            conflict.id,
            resolution=resolution_type,
            resolved_data=resolved_data,
        ):
            raise ConflictNotFoundError(conflict_id)

        operation_id = self.state_store.record_operation(
            user_id=user_id,
            operation_type="conflict_resolution",
            status="completed",
            direction="bidirectional",
            trigger=trigger,
            message=f"Conflict resolved with {resolution_type}",
            entity_type=mapping.entity_type,
            entity_id=mapping.entity_id,
            google_event_id=mapping.google_event_id,
            details={"conflict_id": conflict.id, "resolution": resolution_type},
        )
        logger.info(
            "Resolved conflict %s with %s",
            conflict.id,
            resolution_type,
            extra={"user_id": user_id, "operation_id": operation_id},
        )
        return {
            "success": True,
            "conflict_id": conflict.id,
            "resolution": resolution_type,
            "operation_id": operation_id,
        }

    def list_conflicts(self, user_id: str, include_resolved: bool = False) -> list[dict[str, Any]]:
        return [item.to_dict() for item in self.state_store.list_conflicts(user_id, include_resolved)]
