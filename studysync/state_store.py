from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from studysync.models import (
    ASSIGNMENT,
    EXAM,
    SCHEDULE_BLOCK,
    EventMapping,
    LocalEntity,
    OAuthCredential,
    SyncConflict,
    SyncSettings,
    WebhookChannel,
    entity_from_row,
    parse_iso_datetime,
    serialize_datetime,
)


ENTITY_TABLES = {
    SCHEDULE_BLOCK: "schedule_blocks",
    ASSIGNMENT: "assignments",
    EXAM: "exams",
}

ENTITY_COLUMNS = {
    SCHEDULE_BLOCK: (
        "title",
        "description",
        "location",
        "start_time",
        "end_time",
        "day_of_week",
        "specific_date",
        "recurrence",
        "is_active",
        "course_color",
    ),
    ASSIGNMENT: ("title", "description", "due_date", "estimated_hours", "course_color"),
    EXAM: ("title", "exam_date", "duration_minutes", "location", "notes", "course_color"),
}

MAPPING_MUTABLE_FIELDS = (
    "google_event_updated",
    "local_event_updated",
    "last_synced_at",
    "sync_hash",
)

OPERATION_STATUSES = ("pending", "completed", "failed")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def _table_for(entity_type: str) -> str:
    try:
        return ENTITY_TABLES[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type}") from None


def _conflict_from_row(row: sqlite3.Row) -> SyncConflict:
    item = dict(row)
    return SyncConflict(
        id=int(item["id"]),
        user_id=str(item["user_id"]),
        mapping_id=item.get("mapping_id"),
        entity_type=str(item["entity_type"]),
        entity_id=str(item["entity_id"]),
        google_event_id=str(item["google_event_id"]),
        conflict_type=str(item.get("conflict_type") or "content_modified"),
        local_data=json.loads(item.get("local_data_json") or "{}"),
        google_data=json.loads(item.get("google_data_json") or "{}"),
        resolution=item.get("resolution"),
        resolved_at=parse_iso_datetime(item.get("resolved_at")),
        created_at=parse_iso_datetime(item.get("created_at")),
    )


def _operation_from_row(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    item["details"] = json.loads(item.pop("details_json") or "{}")
    return item


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS schedule_blocks (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            location TEXT,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            day_of_week INTEGER NOT NULL,
            specific_date TEXT,
            recurrence TEXT NOT NULL DEFAULT 'none',
            is_active INTEGER NOT NULL DEFAULT 1,
            course_color TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS assignments (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            due_date TEXT NOT NULL,
            estimated_hours REAL,
            course_color TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS exams (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            exam_date TEXT NOT NULL,
            duration_minutes INTEGER,
            location TEXT,
            notes TEXT,
            course_color TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS event_mappings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            google_event_id TEXT NOT NULL,
            google_calendar_id TEXT NOT NULL DEFAULT 'primary',
            google_event_updated TEXT,
            local_event_updated TEXT,
            last_synced_at TEXT NOT NULL,
            sync_hash TEXT,
            created_at TEXT NOT NULL,
            UNIQUE (user_id, entity_type, entity_id),
            UNIQUE (user_id, google_event_id)
        );

        CREATE TABLE IF NOT EXISTS sync_conflicts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            mapping_id INTEGER,
            entity_type TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            google_event_id TEXT NOT NULL,
            conflict_type TEXT NOT NULL,
            local_data_json TEXT NOT NULL,
            google_data_json TEXT NOT NULL,
            resolution TEXT,
            resolved_data_json TEXT,
            resolved_at TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_operations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            operation_type TEXT NOT NULL,
            status TEXT NOT NULL,
            direction TEXT NOT NULL,
            trigger TEXT NOT NULL,
            entity_type TEXT,
            entity_id TEXT,
            google_event_id TEXT,
            message TEXT,
            error_class TEXT,
            details_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            completed_at TEXT
        );

        CREATE TABLE IF NOT EXISTS calendar_channels (
            channel_id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            resource_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL DEFAULT 'primary',
            expiration TEXT,
            webhook_url TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_tokens (
            user_id TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            sync_token TEXT NOT NULL,
            last_used_at TEXT NOT NULL,
            PRIMARY KEY (user_id, calendar_id)
        );

        CREATE TABLE IF NOT EXISTS oauth_credentials (
            user_id TEXT PRIMARY KEY,
            access_token TEXT NOT NULL,
            refresh_token TEXT,
            expires_at TEXT,
            scope TEXT,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS profiles (
            user_id TEXT PRIMARY KEY,
            timezone TEXT NOT NULL DEFAULT 'UTC',
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_settings (
            user_id TEXT PRIMARY KEY,
            sync_schedule_blocks INTEGER NOT NULL DEFAULT 1,
            sync_assignments INTEGER NOT NULL DEFAULT 1,
            sync_exams INTEGER NOT NULL DEFAULT 1,
            last_sync_at TEXT,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS api_keys (
            key_hash TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS rate_limits (
            bucket_key TEXT PRIMARY KEY,
            window_start INTEGER NOT NULL,
            count INTEGER NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # Local entities

    def _insert_entity(self, conn: sqlite3.Connection, entity: LocalEntity) -> None:
        table = _table_for(entity.entity_type)
        payload = entity.to_dict()
        now = _utc_now()
        data_columns = ENTITY_COLUMNS[entity.entity_type]
        columns = ("id", "user_id", *data_columns, "created_at", "updated_at")
        values = [
            payload["id"],
            payload["user_id"],
            *[payload.get(column) for column in data_columns],
            now,
            payload.get("updated_at") or now,
        ]
        placeholders = ", ".join("?" for _ in columns)
        conn.execute(
            f"INSERT INTO {table}({', '.join(columns)}) VALUES ({placeholders})",  # nosec B608
            values,
        )

    def create_entity(self, entity: LocalEntity) -> LocalEntity:
        with self._lock:
            with self._connect() as conn:
                self._insert_entity(conn, entity)
                conn.commit()
        created = self.get_entity(entity.entity_type, entity.id)
        if created is None:
            raise ValueError(f"Entity {entity.id} was not stored")
        return created

    def create_entity_with_mapping(
        self,
        entity: LocalEntity,
        *,
        google_event_id: str,
        google_calendar_id: str = "primary",
        google_event_updated: datetime | None = None,
        last_synced_at: datetime | None = None,
        sync_hash: str = "",
    ) -> EventMapping | None:
        """Insert a local entity and its mapping in one transaction.

        Returns None and leaves no entity behind when the mapping would
        violate a uniqueness constraint (the event is already mapped).
        """
        try:
            with self._lock:
                with self._connect() as conn:
                    self._insert_entity(conn, entity)
                    cursor = self._insert_mapping(
                        conn,
                        user_id=entity.user_id,
                        entity_type=entity.entity_type,
                        entity_id=entity.id,
                        google_event_id=google_event_id,
                        google_calendar_id=google_calendar_id,
                        google_event_updated=google_event_updated,
                        local_event_updated=entity.updated_at,
                        last_synced_at=last_synced_at,
                        sync_hash=sync_hash,
                    )
                    mapping_id = int(cursor.lastrowid)
                    conn.commit()
        except sqlite3.IntegrityError:
            return None
        return self.get_mapping(mapping_id)

    def get_entity(self, entity_type: str, entity_id: str) -> LocalEntity | None:
        table = _table_for(entity_type)
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT * FROM {table} WHERE id = ?",  # nosec B608
                    (str(entity_id),),
                ).fetchone()
        if row is None:
            return None
        return entity_from_row(entity_type, dict(row))

    def list_entities(self, user_id: str, entity_type: str) -> list[LocalEntity]:
        table = _table_for(entity_type)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM {table} WHERE user_id = ? ORDER BY created_at, id",  # nosec B608
                    (str(user_id),),
                ).fetchall()
        return [entity_from_row(entity_type, dict(row)) for row in rows]

    def update_entity(
        self,
        entity_type: str,
        entity_id: str,
        updates: dict[str, Any],
        *,
        updated_at: datetime | None = None,
    ) -> LocalEntity | None:
        table = _table_for(entity_type)
        allowed = ENTITY_COLUMNS[entity_type]
        assignments = [(column, updates[column]) for column in allowed if column in updates]
        assignments.append(("updated_at", serialize_datetime(updated_at) or _utc_now()))
        set_clause = ", ".join(f"{column} = ?" for column, _ in assignments)
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE {table} SET {set_clause} WHERE id = ?",  # nosec B608
                    (*[value for _, value in assignments], str(entity_id)),
                )
                conn.commit()
                if cursor.rowcount == 0:
                    return None
        return self.get_entity(entity_type, entity_id)

    def delete_entity(self, entity_type: str, entity_id: str) -> bool:
        table = _table_for(entity_type)
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"DELETE FROM {table} WHERE id = ?",  # nosec B608
                    (str(entity_id),),
                )
                conn.execute(
                    "DELETE FROM event_mappings WHERE entity_type = ? AND entity_id = ?",
                    (entity_type, str(entity_id)),
                )
                conn.commit()
                return cursor.rowcount > 0

    # Event mappings

    def _insert_mapping(
        self,
        conn: sqlite3.Connection,
        *,
        user_id: str,
        entity_type: str,
        entity_id: str,
        google_event_id: str,
        google_calendar_id: str,
        google_event_updated: datetime | None,
        local_event_updated: datetime | None,
        last_synced_at: datetime | None,
        sync_hash: str,
    ) -> sqlite3.Cursor:
        now = _utc_now()
        return conn.execute(
            """
            INSERT INTO event_mappings(
                user_id, entity_type, entity_id, google_event_id, google_calendar_id,
                google_event_updated, local_event_updated, last_synced_at, sync_hash, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(user_id),
                entity_type,
                str(entity_id),
                google_event_id,
                google_calendar_id,
                serialize_datetime(google_event_updated),
                serialize_datetime(local_event_updated),
                serialize_datetime(last_synced_at) or now,
                sync_hash,
                now,
            ),
        )

    def create_mapping(
        self,
        *,
        user_id: str,
        entity_type: str,
        entity_id: str,
        google_event_id: str,
        google_calendar_id: str = "primary",
        google_event_updated: datetime | None = None,
        local_event_updated: datetime | None = None,
        last_synced_at: datetime | None = None,
        sync_hash: str = "",
    ) -> EventMapping | None:
        try:
            with self._lock:
                with self._connect() as conn:
                    cursor = self._insert_mapping(
                        conn,
                        user_id=user_id,
                        entity_type=entity_type,
                        entity_id=entity_id,
                        google_event_id=google_event_id,
                        google_calendar_id=google_calendar_id,
                        google_event_updated=google_event_updated,
                        local_event_updated=local_event_updated,
                        last_synced_at=last_synced_at,
                        sync_hash=sync_hash,
                    )
                    mapping_id = int(cursor.lastrowid)
                    conn.commit()
        except sqlite3.IntegrityError:
            return None
        return self.get_mapping(mapping_id)

    def _fetch_mapping(self, where: str, params: tuple[Any, ...]) -> EventMapping | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT * FROM event_mappings WHERE {where}",  # nosec B608
                    params,
                ).fetchone()
        return EventMapping.from_row(dict(row)) if row else None

    def get_mapping(self, mapping_id: int) -> EventMapping | None:
        return self._fetch_mapping("id = ?", (int(mapping_id),))

    def get_mapping_by_google_id(self, user_id: str, google_event_id: str) -> EventMapping | None:
        return self._fetch_mapping("user_id = ? AND google_event_id = ?", (str(user_id), google_event_id))

    def get_mapping_for_entity(self, user_id: str, entity_type: str, entity_id: str) -> EventMapping | None:
        return self._fetch_mapping(
            "user_id = ? AND entity_type = ? AND entity_id = ?",
            (str(user_id), entity_type, str(entity_id)),
        )

    def list_mappings(self, user_id: str) -> list[EventMapping]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM event_mappings WHERE user_id = ? ORDER BY id",
                    (str(user_id),),
                ).fetchall()
        return [EventMapping.from_row(dict(row)) for row in rows]

    def update_mapping(self, mapping_id: int, **fields: Any) -> EventMapping | None:
        unknown = set(fields) - set(MAPPING_MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown mapping fields: {sorted(unknown)}")
        assignments = []
        for key in MAPPING_MUTABLE_FIELDS:
            if key not in fields:
                continue
            value = fields[key]
            if isinstance(value, datetime):
                value = serialize_datetime(value)
            assignments.append((key, value))
        if assignments:
            set_clause = ", ".join(f"{column} = ?" for column, _ in assignments)
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        f"UPDATE event_mappings SET {set_clause} WHERE id = ?",  # nosec B608
                        (*[value for _, value in assignments], int(mapping_id)),
                    )
                    conn.commit()
        return self.get_mapping(mapping_id)

    def delete_mapping(self, mapping_id: int) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM event_mappings WHERE id = ?", (int(mapping_id),))
                conn.commit()
                return cursor.rowcount > 0

    # Conflicts

    def create_conflict(
        self,
        *,
        user_id: str,
        mapping_id: int | None,
        entity_type: str,
        entity_id: str,
        google_event_id: str,
        local_data: dict[str, Any],
        google_data: dict[str, Any],
        conflict_type: str = "content_modified",
    ) -> SyncConflict:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_conflicts(
                        user_id, mapping_id, entity_type, entity_id, google_event_id,
                        conflict_type, local_data_json, google_data_json, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(user_id),
                        mapping_id,
                        entity_type,
                        str(entity_id),
                        google_event_id,
                        conflict_type,
                        json.dumps(local_data, ensure_ascii=False),
                        json.dumps(google_data, ensure_ascii=False),
                        _utc_now(),
                    ),
                )
                conflict_id = int(cursor.lastrowid)
                conn.commit()
        conflict = self.get_conflict(conflict_id, user_id)
        if conflict is None:
            raise ValueError(f"Conflict {conflict_id} was not stored")
        return conflict

    def get_conflict(self, conflict_id: int, user_id: str) -> SyncConflict | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM sync_conflicts WHERE id = ? AND user_id = ?",
                    (int(conflict_id), str(user_id)),
                ).fetchone()
        return _conflict_from_row(row) if row else None

    def get_open_conflict_for_mapping(self, mapping_id: int) -> SyncConflict | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM sync_conflicts
                    WHERE mapping_id = ? AND resolved_at IS NULL
                    ORDER BY id DESC
                    LIMIT 1
                    """,
                    (int(mapping_id),),
                ).fetchone()
        return _conflict_from_row(row) if row else None

    def list_conflicts(self, user_id: str, include_resolved: bool = False) -> list[SyncConflict]:
        query = "SELECT * FROM sync_conflicts WHERE user_id = ?"
        if not include_resolved:
            query += " AND resolved_at IS NULL"
        query += " ORDER BY id DESC"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, (str(user_id),)).fetchall()
        return [_conflict_from_row(row) for row in rows]

    def mark_conflict_resolved(
        self,
        conflict_id: int,
        *,
        resolution: str,
        resolved_data: dict[str, Any] | None = None,
    ) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE sync_conflicts
                    SET resolution = ?, resolved_data_json = ?, resolved_at = ?
                    WHERE id = ? AND resolved_at IS NULL
                    """,
                    (
                        resolution,
                        json.dumps(resolved_data, ensure_ascii=False) if resolved_data is not None else None,
                        _utc_now(),
                        int(conflict_id),
                    ),
                )
                conn.commit()
                return cursor.rowcount > 0

    # Sync operations (audit trail)

    def start_operation(
        self,
        *,
        user_id: str,
        operation_type: str,
        direction: str,
        trigger: str,
        message: str = "running",
        entity_type: str | None = None,
        entity_id: str | None = None,
        google_event_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> int:
        return self.record_operation(
            user_id=user_id,
            operation_type=operation_type,
            status="pending",
            direction=direction,
            trigger=trigger,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
            google_event_id=google_event_id,
            details=details,
        )

    def record_operation(
        self,
        *,
        user_id: str,
        operation_type: str,
        status: str,
        direction: str,
        trigger: str,
        message: str = "",
        error_class: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        google_event_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> int:
        if status not in OPERATION_STATUSES:
            raise ValueError(f"Unknown operation status: {status}")
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_operations(
                        user_id, operation_type, status, direction, trigger, entity_type, entity_id,
                        google_event_id, message, error_class, details_json, created_at, completed_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(user_id),
                        operation_type,
                        status,
                        direction,
                        trigger,
                        entity_type,
                        entity_id,
                        google_event_id,
                        message,
                        error_class,
                        json.dumps(details or {}, ensure_ascii=False),
                        now,
                        None if status == "pending" else now,
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def finish_operation(
        self,
        operation_id: int,
        *,
        status: str,
        message: str,
        error_class: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Move a pending operation to its terminal status.

        Rows that already left ``pending`` are never touched again.
        """
        if status not in {"completed", "failed"}:
            raise ValueError(f"Terminal status required, got: {status}")
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE sync_operations
                    SET status = ?, message = ?, error_class = ?, details_json = ?, completed_at = ?
                    WHERE id = ? AND status = 'pending'
                    """,
                    (
                        status,
                        str(message),
                        error_class,
                        json.dumps(details or {}, ensure_ascii=False),
                        _utc_now(),
                        int(operation_id),
                    ),
                )
                conn.commit()
                return cursor.rowcount > 0

    def get_operation(self, operation_id: int) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM sync_operations WHERE id = ?",
                    (int(operation_id),),
                ).fetchone()
        return _operation_from_row(row) if row else None

    def recent_operations(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM sync_operations
                    WHERE user_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (str(user_id), max(1, limit)),
                ).fetchall()
        return [_operation_from_row(row) for row in rows]

    # Webhook channels

    def save_channel(self, channel: WebhookChannel) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO calendar_channels(
                        channel_id, user_id, resource_id, calendar_id, expiration, webhook_url, is_active, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(channel_id) DO UPDATE SET
                        resource_id = excluded.resource_id,
                        expiration = excluded.expiration,
                        webhook_url = excluded.webhook_url,
                        is_active = excluded.is_active
                    """,
                    (
                        channel.channel_id,
                        str(channel.user_id),
                        channel.resource_id,
                        channel.calendar_id,
                        serialize_datetime(channel.expiration),
                        channel.webhook_url,
                        1 if channel.is_active else 0,
                        _utc_now(),
                    ),
                )
                conn.commit()

    def get_active_channel(self, channel_id: str) -> WebhookChannel | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM calendar_channels WHERE channel_id = ? AND is_active = 1",
                    (channel_id,),
                ).fetchone()
        return WebhookChannel.from_row(dict(row)) if row else None

    def deactivate_channel(self, channel_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE calendar_channels SET is_active = 0 WHERE channel_id = ?",
                    (channel_id,),
                )
                conn.commit()

    def channels_expiring_before(self, cutoff: datetime) -> list[WebhookChannel]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM calendar_channels WHERE is_active = 1 ORDER BY created_at",
                ).fetchall()
        channels = [WebhookChannel.from_row(dict(row)) for row in rows]
        return [item for item in channels if item.expiration is None or item.expiration <= cutoff]

    # Sync tokens

    def get_sync_token(self, user_id: str, calendar_id: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT sync_token FROM sync_tokens WHERE user_id = ? AND calendar_id = ?",
                    (str(user_id), calendar_id),
                ).fetchone()
        return str(row["sync_token"]) if row else None

    def set_sync_token(self, user_id: str, calendar_id: str, sync_token: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_tokens(user_id, calendar_id, sync_token, last_used_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id, calendar_id) DO UPDATE SET
                        sync_token = excluded.sync_token,
                        last_used_at = excluded.last_used_at
                    """,
                    (str(user_id), calendar_id, sync_token, _utc_now()),
                )
                conn.commit()

    def delete_sync_token(self, user_id: str, calendar_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM sync_tokens WHERE user_id = ? AND calendar_id = ?",
                    (str(user_id), calendar_id),
                )
                conn.commit()

    # OAuth credentials

    def get_credential(self, user_id: str) -> OAuthCredential | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM oauth_credentials WHERE user_id = ?",
                    (str(user_id),),
                ).fetchone()
        return OAuthCredential.from_row(dict(row)) if row else None

    def save_credential(self, credential: OAuthCredential) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_credentials(user_id, access_token, refresh_token, expires_at, scope, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        access_token = excluded.access_token,
                        refresh_token = excluded.refresh_token,
                        expires_at = excluded.expires_at,
                        scope = excluded.scope,
                        updated_at = excluded.updated_at
                    """,
                    (
                        str(credential.user_id),
                        credential.access_token,
                        credential.refresh_token,
                        serialize_datetime(credential.expires_at),
                        credential.scope,
                        _utc_now(),
                    ),
                )
                conn.commit()

    def swap_credential(self, credential: OAuthCredential, *, expected_access_token: str) -> bool:
        """Replace the stored credential only if it still holds ``expected_access_token``."""
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE oauth_credentials
                    SET access_token = ?, refresh_token = ?, expires_at = ?, scope = ?, updated_at = ?
                    WHERE user_id = ? AND access_token = ?
                    """,
                    (
                        credential.access_token,
                        credential.refresh_token,
                        serialize_datetime(credential.expires_at),
                        credential.scope,
                        _utc_now(),
                        str(credential.user_id),
                        expected_access_token,
                    ),
                )
                conn.commit()
                return cursor.rowcount > 0

    def credential_user_ids(self) -> list[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT user_id FROM oauth_credentials ORDER BY user_id").fetchall()
        return [str(row["user_id"]) for row in rows]

    # Profiles and settings

    def get_user_timezone(self, user_id: str) -> str:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT timezone FROM profiles WHERE user_id = ?",
                    (str(user_id),),
                ).fetchone()
        if row is None:
            return "UTC"
        return str(row["timezone"] or "UTC")

    def set_user_timezone(self, user_id: str, timezone_name: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO profiles(user_id, timezone, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        timezone = excluded.timezone,
                        updated_at = excluded.updated_at
                    """,
                    (str(user_id), timezone_name, _utc_now()),
                )
                conn.commit()

    def get_sync_settings(self, user_id: str) -> SyncSettings:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_settings(user_id, updated_at)
                    VALUES (?, ?)
                    ON CONFLICT(user_id) DO NOTHING
                    """,
                    (str(user_id), _utc_now()),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM sync_settings WHERE user_id = ?",
                    (str(user_id),),
                ).fetchone()
        item = dict(row)
        return SyncSettings(
            user_id=str(item["user_id"]),
            sync_schedule_blocks=bool(item["sync_schedule_blocks"]),
            sync_assignments=bool(item["sync_assignments"]),
            sync_exams=bool(item["sync_exams"]),
            last_sync_at=parse_iso_datetime(item.get("last_sync_at")),
        )

    def update_sync_settings(self, user_id: str, **toggles: bool) -> SyncSettings:
        allowed = ("sync_schedule_blocks", "sync_assignments", "sync_exams")
        self.get_sync_settings(user_id)
        assignments = [(key, 1 if toggles[key] else 0) for key in allowed if key in toggles]
        if assignments:
            set_clause = ", ".join(f"{column} = ?" for column, _ in assignments)
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        f"UPDATE sync_settings SET {set_clause}, updated_at = ? WHERE user_id = ?",  # nosec B608
                        (*[value for _, value in assignments], _utc_now(), str(user_id)),
                    )
                    conn.commit()
        return self.get_sync_settings(user_id)

    def mark_synced(self, user_id: str, synced_at: datetime) -> None:
        self.get_sync_settings(user_id)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE sync_settings SET last_sync_at = ?, updated_at = ? WHERE user_id = ?",
                    (serialize_datetime(synced_at), _utc_now(), str(user_id)),
                )
                conn.commit()

    # Callers and throttling

    def register_api_key(self, user_id: str, api_key: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO api_keys(key_hash, user_id, created_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key_hash) DO UPDATE SET user_id = excluded.user_id
                    """,
                    (_hash_api_key(api_key), str(user_id), _utc_now()),
                )
                conn.commit()

    def user_for_api_key(self, api_key: str) -> str | None:
        if not api_key:
            return None
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT user_id FROM api_keys WHERE key_hash = ?",
                    (_hash_api_key(api_key),),
                ).fetchone()
        return str(row["user_id"]) if row else None

    def increment_rate_counter(self, bucket_key: str, window_start: int) -> int:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO rate_limits(bucket_key, window_start, count)
                    VALUES (?, ?, 1)
                    ON CONFLICT(bucket_key) DO UPDATE SET
                        count = CASE
                            WHEN rate_limits.window_start = excluded.window_start THEN rate_limits.count + 1
                            ELSE 1
                        END,
                        window_start = excluded.window_start
                    """,
                    (bucket_key, int(window_start)),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT count FROM rate_limits WHERE bucket_key = ?",
                    (bucket_key,),
                ).fetchone()
        return int(row["count"])
