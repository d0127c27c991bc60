from __future__ import annotations

import calendar
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, ClassVar, Union


SCHEDULE_BLOCK = "schedule_block"
ASSIGNMENT = "assignment"
EXAM = "exam"
ENTITY_TYPES = (SCHEDULE_BLOCK, ASSIGNMENT, EXAM)

RECURRENCE_KINDS = ("none", "weekly", "biweekly")

_WALL_CLOCK_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2})T(\d{2}:\d{2}(?::\d{2})?)")
_DATE_ONLY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if _DATE_ONLY_PATTERN.match(text):
        return datetime.combine(date.fromisoformat(text), time.min, tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def split_wall_clock(value: str) -> tuple[str, str]:
    """Return the (date, time) written in an ISO string, ignoring its offset.

    ``2025-12-14T06:00:00+04:00`` yields ``("2025-12-14", "06:00:00")`` and a
    date-only value yields midnight.
    """
    text = str(value or "").strip()
    match = _WALL_CLOCK_PATTERN.match(text)
    if match:
        clock = match.group(2)
        if len(clock) == 5:
            clock = f"{clock}:00"
        return match.group(1), clock
    if _DATE_ONLY_PATTERN.match(text):
        return text, "00:00:00"
    parsed = parse_iso_datetime(text)
    if parsed is None:
        raise ValueError(f"Invalid datetime value: {value!r}")
    return parsed.date().isoformat(), parsed.strftime("%H:%M:%S")


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


@dataclass
class GoogleConfig:
    client_id: str = ""
    client_secret: str = ""
    token_url: str = "https://oauth2.googleapis.com/token"
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    calendar_id: str = "primary"
    webhook_url: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            token_url=str(data.get("token_url", "")).strip() or "https://oauth2.googleapis.com/token",
            api_base_url=str(data.get("api_base_url", "")).strip().rstrip("/")
            or "https://www.googleapis.com/calendar/v3",
            calendar_id=str(data.get("calendar_id", "primary")).strip() or "primary",
            webhook_url=str(data.get("webhook_url", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class SyncConfig:
    lookback_months: int = 1
    lookahead_months: int = 3
    incremental_lookback_days: int = 7
    pass_budget_seconds: int = 120
    refresh_margin_seconds: int = 300
    channel_ttl_days: int = 7
    scheduler_enabled: bool = False
    interval_seconds: int = 900

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            lookback_months=max(0, int(data.get("lookback_months", 1))),
            lookahead_months=max(1, int(data.get("lookahead_months", 3))),
            incremental_lookback_days=max(1, int(data.get("incremental_lookback_days", 7))),
            pass_budget_seconds=max(1, int(data.get("pass_budget_seconds", 120))),
            refresh_margin_seconds=max(0, int(data.get("refresh_margin_seconds", 300))),
            channel_ttl_days=max(1, int(data.get("channel_ttl_days", 7))),
            scheduler_enabled=bool(data.get("scheduler_enabled", False)),
            interval_seconds=max(30, int(data.get("interval_seconds", 900))),
        )


@dataclass
class ServerConfig:
    rate_limit_requests: int = 30
    rate_limit_window_seconds: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ServerConfig":
        data = data or {}
        return cls(
            rate_limit_requests=max(1, int(data.get("rate_limit_requests", 30))),
            rate_limit_window_seconds=max(1, int(data.get("rate_limit_window_seconds", 60))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=GoogleConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
            server=ServerConfig.from_dict(data.get("server")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class ScheduleBlock:
    entity_type: ClassVar[str] = SCHEDULE_BLOCK

    id: str
    user_id: str
    title: str = ""
    description: str = ""
    location: str = ""
    start_time: str = "09:00:00"
    end_time: str = "10:00:00"
    day_of_week: int = 1
    specific_date: str | None = None
    recurrence: str = "none"
    is_active: bool = True
    course_color: str = ""
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ScheduleBlock":
        recurrence = str(row.get("recurrence") or "none").strip().lower()
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=str(row.get("title") or ""),
            description=str(row.get("description") or ""),
            location=str(row.get("location") or ""),
            start_time=str(row.get("start_time") or "09:00:00"),
            end_time=str(row.get("end_time") or "10:00:00"),
            day_of_week=int(row.get("day_of_week") or 0),
            specific_date=row.get("specific_date") or None,
            recurrence=recurrence if recurrence in RECURRENCE_KINDS else "none",
            is_active=bool(row.get("is_active", True)),
            course_color=str(row.get("course_color") or ""),
            updated_at=parse_iso_datetime(row.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        return payload


@dataclass
class Assignment:
    entity_type: ClassVar[str] = ASSIGNMENT

    id: str
    user_id: str
    title: str = ""
    description: str = ""
    due_date: str = ""
    estimated_hours: float = 2.0
    course_color: str = ""
    updated_at: datetime | None = None

    @property
    def location(self) -> str:
        return ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Assignment":
        hours = row.get("estimated_hours")
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=str(row.get("title") or ""),
            description=str(row.get("description") or ""),
            due_date=str(row.get("due_date") or ""),
            estimated_hours=float(hours) if hours not in (None, "") else 2.0,
            course_color=str(row.get("course_color") or ""),
            updated_at=parse_iso_datetime(row.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        return payload


@dataclass
class Exam:
    entity_type: ClassVar[str] = EXAM

    id: str
    user_id: str
    title: str = ""
    exam_date: str = ""
    duration_minutes: int = 60
    location: str = ""
    notes: str = ""
    course_color: str = ""
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Exam":
        duration = row.get("duration_minutes")
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=str(row.get("title") or ""),
            exam_date=str(row.get("exam_date") or ""),
            duration_minutes=int(duration) if duration not in (None, "") else 60,
            location=str(row.get("location") or ""),
            notes=str(row.get("notes") or ""),
            course_color=str(row.get("course_color") or ""),
            updated_at=parse_iso_datetime(row.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["updated_at"] = serialize_datetime(self.updated_at)
        return payload


LocalEntity = Union[ScheduleBlock, Assignment, Exam]

ENTITY_CLASSES: dict[str, type] = {
    SCHEDULE_BLOCK: ScheduleBlock,
    ASSIGNMENT: Assignment,
    EXAM: Exam,
}


def entity_from_row(entity_type: str, row: dict[str, Any]) -> LocalEntity:
    try:
        entity_cls = ENTITY_CLASSES[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type}") from None
    return entity_cls.from_row(row)


@dataclass
class EventTime:
    date_time: str = ""
    date: str = ""
    time_zone: str = ""

    @property
    def all_day(self) -> bool:
        return not self.date_time and bool(self.date)

    @property
    def raw(self) -> str:
        return self.date_time or self.date

    @classmethod
    def from_google(cls, data: dict[str, Any] | None) -> "EventTime | None":
        if not data:
            return None
        item = cls(
            date_time=str(data.get("dateTime") or ""),
            date=str(data.get("date") or ""),
            time_zone=str(data.get("timeZone") or ""),
        )
        return item if item.raw else None

    def to_google(self) -> dict[str, str]:
        payload: dict[str, str] = {}
        if self.date_time:
            payload["dateTime"] = self.date_time
        elif self.date:
            payload["date"] = self.date
        if self.time_zone:
            payload["timeZone"] = self.time_zone
        return payload


@dataclass
class RemoteEvent:
    id: str
    summary: str = ""
    description: str = ""
    location: str = ""
    start: EventTime | None = None
    end: EventTime | None = None
    updated: datetime | None = None
    status: str = "confirmed"
    color_id: str = ""
    source_title: str = ""
    recurrence: list[str] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.status == "cancelled"

    @classmethod
    def from_google(cls, data: dict[str, Any]) -> "RemoteEvent":
        source = data.get("source") or {}
        return cls(
            id=str(data.get("id", "")).strip(),
            summary=str(data.get("summary") or ""),
            description=str(data.get("description") or ""),
            location=str(data.get("location") or ""),
            start=EventTime.from_google(data.get("start")),
            end=EventTime.from_google(data.get("end")),
            updated=parse_iso_datetime(data.get("updated")),
            status=str(data.get("status") or "confirmed"),
            color_id=str(data.get("colorId") or ""),
            source_title=str(source.get("title") or "") if isinstance(source, dict) else "",
            recurrence=[str(rule) for rule in data.get("recurrence") or []],
        )

    def to_google(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "summary": self.summary,
            "description": self.description,
            "location": self.location,
            "status": self.status,
        }
        if self.start is not None:
            payload["start"] = self.start.to_google()
        if self.end is not None:
            payload["end"] = self.end.to_google()
        if self.updated is not None:
            payload["updated"] = serialize_datetime(self.updated)
        if self.color_id:
            payload["colorId"] = self.color_id
        if self.source_title:
            payload["source"] = {"title": self.source_title}
        if self.recurrence:
            payload["recurrence"] = list(self.recurrence)
        return payload


@dataclass
class EventPage:
    items: list[RemoteEvent] = field(default_factory=list)
    next_sync_token: str = ""


@dataclass
class EventMapping:
    id: int
    user_id: str
    entity_type: str
    entity_id: str
    google_event_id: str
    google_calendar_id: str = "primary"
    google_event_updated: datetime | None = None
    local_event_updated: datetime | None = None
    last_synced_at: datetime | None = None
    sync_hash: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "EventMapping":
        return cls(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            entity_type=str(row["entity_type"]),
            entity_id=str(row["entity_id"]),
            google_event_id=str(row["google_event_id"]),
            google_calendar_id=str(row.get("google_calendar_id") or "primary"),
            google_event_updated=parse_iso_datetime(row.get("google_event_updated")),
            local_event_updated=parse_iso_datetime(row.get("local_event_updated")),
            last_synced_at=parse_iso_datetime(row.get("last_synced_at")),
            sync_hash=str(row.get("sync_hash") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("google_event_updated", "local_event_updated", "last_synced_at"):
            payload[key] = serialize_datetime(getattr(self, key))
        return payload


@dataclass
class SyncConflict:
    id: int
    user_id: str
    mapping_id: int | None
    entity_type: str
    entity_id: str
    google_event_id: str
    conflict_type: str = "content_modified"
    local_data: dict[str, Any] = field(default_factory=dict)
    google_data: dict[str, Any] = field(default_factory=dict)
    resolution: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["resolved_at"] = serialize_datetime(self.resolved_at)
        payload["created_at"] = serialize_datetime(self.created_at)
        return payload


@dataclass
class OAuthCredential:
    user_id: str
    access_token: str
    refresh_token: str = ""
    expires_at: datetime | None = None
    scope: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "OAuthCredential":
        return cls(
            user_id=str(row["user_id"]),
            access_token=str(row.get("access_token") or ""),
            refresh_token=str(row.get("refresh_token") or ""),
            expires_at=parse_iso_datetime(row.get("expires_at")),
            scope=str(row.get("scope") or ""),
        )


@dataclass
class WebhookChannel:
    channel_id: str
    user_id: str
    resource_id: str
    calendar_id: str = "primary"
    expiration: datetime | None = None
    webhook_url: str = ""
    is_active: bool = True

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "WebhookChannel":
        return cls(
            channel_id=str(row["channel_id"]),
            user_id=str(row["user_id"]),
            resource_id=str(row.get("resource_id") or ""),
            calendar_id=str(row.get("calendar_id") or "primary"),
            expiration=parse_iso_datetime(row.get("expiration")),
            webhook_url=str(row.get("webhook_url") or ""),
            is_active=bool(row.get("is_active", True)),
        )


@dataclass
class SyncSettings:
    user_id: str
    sync_schedule_blocks: bool = True
    sync_assignments: bool = True
    sync_exams: bool = True
    last_sync_at: datetime | None = None

    def exports(self, entity_type: str) -> bool:
        return {
            SCHEDULE_BLOCK: self.sync_schedule_blocks,
            ASSIGNMENT: self.sync_assignments,
            EXAM: self.sync_exams,
        }.get(entity_type, False)


@dataclass
class SyncResult:
    status: str
    message: str
    operation_type: str
    trigger: str
    duration_ms: int = 0
    imported: int = 0
    updated: int = 0
    exported: int = 0
    unmapped: int = 0
    skipped: int = 0
    failed: int = 0
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    operation_id: int | None = None
    next_sync_token: str = ""
    fell_back_to_full_sync: bool = False
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["run_at"] = serialize_datetime(self.run_at)
        return payload


def sync_window(now: datetime, lookback_months: int, lookahead_months: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    return add_months(now_utc, -lookback_months), add_months(now_utc, lookahead_months)


def next_weekday(today: date, day_of_week: int) -> date:
    """Next date (today included) falling on ``day_of_week`` with 0=Sunday."""
    python_weekday = (int(day_of_week) - 1) % 7
    return today + timedelta(days=(python_weekday - today.weekday()) % 7)
