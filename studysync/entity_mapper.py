from __future__ import annotations

import dataclasses
import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from studysync.change_detector import content_hash
from studysync.google_client import GoogleCalendarClient
from studysync.models import (
    ASSIGNMENT,
    EXAM,
    SCHEDULE_BLOCK,
    Assignment,
    EventMapping,
    EventTime,
    Exam,
    LocalEntity,
    RemoteEvent,
    ScheduleBlock,
    next_weekday,
    parse_iso_datetime,
    split_wall_clock,
    utc_now,
)
from studysync.state_store import ENTITY_COLUMNS, StateStore


logger = logging.getLogger(__name__)

APP_MARKER = "[StudySync]"
APP_SOURCE_TITLE = "StudySync"
EXPORT_DESCRIPTION_HEADER = "Synced from StudySync"
IMPORT_NOTE_PREFIX = "Imported from Google Calendar: "

# First matching rule wins.
CLASSIFICATION_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    (EXAM, ("exam", "test")),
    (ASSIGNMENT, ("assignment", "homework")),
)

KIND_LABELS = {EXAM: "Exam: ", ASSIGNMENT: "Assignment: "}

IMPORT_TITLE_FALLBACKS = {
    SCHEDULE_BLOCK: "Imported Event",
    ASSIGNMENT: "Imported Assignment",
    EXAM: "Imported Exam",
}

GOOGLE_COLOR_IDS = {
    "red": "11",
    "orange": "6",
    "yellow": "5",
    "green": "10",
    "blue": "9",
    "purple": "3",
    "pink": "4",
    "gray": "8",
    "grey": "8",
}
DEFAULT_COLOR_ID = "9"

WALL_CLOCK_FORMAT = "%Y-%m-%dT%H:%M:%S"


def classify_title(title: str) -> str:
    lowered = str(title or "").lower()
    for entity_type, keywords in CLASSIFICATION_RULES:
        if any(keyword in lowered for keyword in keywords):
            return entity_type
    return SCHEDULE_BLOCK


def google_color_id(course_color: str | None) -> str:
    return GOOGLE_COLOR_IDS.get(str(course_color or "").strip().lower(), DEFAULT_COLOR_ID)


def is_app_authored(event: RemoteEvent) -> bool:
    return (
        APP_MARKER in event.summary
        or event.description.startswith(EXPORT_DESCRIPTION_HEADER)
        or event.source_title == APP_SOURCE_TITLE
    )


def sync_watermark(*values: datetime | None) -> datetime:
    present = [value for value in values if value is not None]
    if not present:
        return utc_now()
    return max(present)


def _wall_clock(value: str) -> datetime:
    day, clock = split_wall_clock(value)
    return datetime.fromisoformat(f"{day}T{clock}")


def _normalize_clock(value: str) -> str:
    text = str(value or "").strip()
    if len(text) == 5:
        return f"{text}:00"
    return text


def _day_of_week(day: date) -> int:
    # 0=Sunday .. 6=Saturday
    return (day.weekday() + 1) % 7


def _strip_title(summary: str, entity_type: str) -> str:
    title = summary.strip()
    if title.startswith(APP_MARKER):
        title = title[len(APP_MARKER):].strip()
        label = KIND_LABELS.get(entity_type)
        if label and title.startswith(label):
            title = title[len(label):].strip()
    return title or IMPORT_TITLE_FALLBACKS[entity_type]


def _strip_description(description: str) -> str:
    if description.startswith(EXPORT_DESCRIPTION_HEADER):
        return description[len(EXPORT_DESCRIPTION_HEADER):].strip()
    return description


def _start_value(event_time: EventTime) -> str:
    if event_time.date_time:
        return event_time.date_time
    return f"{event_time.date}T00:00:00"


def _duration_minutes(remote_event: RemoteEvent) -> int | None:
    if remote_event.start is None or remote_event.end is None:
        return None
    start = parse_iso_datetime(remote_event.start.raw)
    end = parse_iso_datetime(remote_event.end.raw)
    if start is None or end is None or end < start:
        return None
    return round((end - start).total_seconds() / 60)


def _recurrence_kind(rules: list[str]) -> str:
    for rule in rules:
        text = rule.upper()
        if not text.startswith("RRULE:") or "FREQ=WEEKLY" not in text:
            continue
        return "biweekly" if "INTERVAL=2" in text else "weekly"
    return "none"


def _block_times(start_time: EventTime, end_time: EventTime | None) -> dict[str, Any]:
    start = _wall_clock(start_time.raw)
    if end_time is not None:
        end = _wall_clock(end_time.raw)
    else:
        end = start + timedelta(hours=1)
    return {
        "start_time": start.strftime("%H:%M:%S"),
        "end_time": end.strftime("%H:%M:%S"),
        "specific_date": start.date().isoformat(),
        "day_of_week": _day_of_week(start.date()),
    }


def build_local_entity(user_id: str, remote_event: RemoteEvent, entity_id: str, now: datetime) -> LocalEntity:
    """Create the local record for a remote event seen for the first time."""
    if remote_event.start is None:
        raise ValueError(f"Event {remote_event.id} has no start time")
    entity_type = classify_title(remote_event.summary)
    title = remote_event.summary.strip() or IMPORT_TITLE_FALLBACKS[entity_type]
    notes = f"{IMPORT_NOTE_PREFIX}{remote_event.description}".strip()
    duration = _duration_minutes(remote_event)

    if entity_type == EXAM:
        return Exam(
            id=entity_id,
            user_id=user_id,
            title=title,
            exam_date=_start_value(remote_event.start),
            duration_minutes=duration if duration else 60,
            location=remote_event.location,
            notes=notes,
            updated_at=now,
        )
    if entity_type == ASSIGNMENT:
        return Assignment(
            id=entity_id,
            user_id=user_id,
            title=title,
            description=notes,
            due_date=_start_value(remote_event.start),
            estimated_hours=round(duration / 60, 2) if duration else 1.0,
            updated_at=now,
        )
    times = _block_times(remote_event.start, remote_event.end)
    return ScheduleBlock(
        id=entity_id,
        user_id=user_id,
        title=title,
        description=notes,
        location=remote_event.location,
        start_time=times["start_time"],
        end_time=times["end_time"],
        day_of_week=times["day_of_week"],
        specific_date=times["specific_date"],
        recurrence=_recurrence_kind(remote_event.recurrence),
        updated_at=now,
    )


def local_update_from_remote(entity_type: str, remote_event: RemoteEvent) -> dict[str, Any]:
    """Field updates that make an existing local entity match a remote event."""
    title = _strip_title(remote_event.summary, entity_type)
    description = _strip_description(remote_event.description)
    if entity_type == SCHEDULE_BLOCK:
        updates: dict[str, Any] = {
            "title": title,
            "description": description,
            "location": remote_event.location,
        }
        if remote_event.start is not None:
            updates.update(_block_times(remote_event.start, remote_event.end))
        return updates
    if entity_type == ASSIGNMENT:
        updates = {"title": title, "description": description}
        if remote_event.start is not None:
            updates["due_date"] = _start_value(remote_event.start)
        return updates
    if entity_type == EXAM:
        updates = {"title": title, "location": remote_event.location, "notes": description}
        if remote_event.start is not None:
            updates["exam_date"] = _start_value(remote_event.start)
        duration = _duration_minutes(remote_event)
        if duration:
            updates["duration_minutes"] = duration
        return updates
    raise ValueError(f"Unknown entity type: {entity_type}")


def _today_in(user_timezone: str, now: datetime) -> date:
    try:
        return now.astimezone(ZoneInfo(user_timezone)).date()
    except (ZoneInfoNotFoundError, ValueError):
        return now.date()


def _time_payload(value: datetime, user_timezone: str) -> dict[str, str]:
    return {"dateTime": value.strftime(WALL_CLOCK_FORMAT), "timeZone": user_timezone}


def build_event_payload(entity: LocalEntity, user_timezone: str, now: datetime) -> dict[str, Any]:
    """Google event body for a local entity.

    Times are the entity's stored wall clock paired with the user's timezone,
    so the provider does the zone math once.
    """
    user_timezone = user_timezone or "UTC"
    payload: dict[str, Any] = {"colorId": google_color_id(entity.course_color)}

    if isinstance(entity, ScheduleBlock):
        if entity.specific_date:
            day = date.fromisoformat(entity.specific_date)
        else:
            day = next_weekday(_today_in(user_timezone, now), entity.day_of_week)
        start = datetime.fromisoformat(f"{day.isoformat()}T{_normalize_clock(entity.start_time)}")
        end = datetime.fromisoformat(f"{day.isoformat()}T{_normalize_clock(entity.end_time)}")
        if end <= start:
            end += timedelta(days=1)
        payload["summary"] = f"{APP_MARKER} {entity.title}"
        notes = entity.description
        payload["location"] = entity.location
        if not entity.specific_date and entity.recurrence in {"weekly", "biweekly"}:
            rule = "RRULE:FREQ=WEEKLY;INTERVAL=2" if entity.recurrence == "biweekly" else "RRULE:FREQ=WEEKLY"
            payload["recurrence"] = [rule]
    elif isinstance(entity, Assignment):
        end = _wall_clock(entity.due_date)
        start = end - timedelta(hours=entity.estimated_hours or 2)
        payload["summary"] = f"{APP_MARKER} {KIND_LABELS[ASSIGNMENT]}{entity.title}"
        notes = entity.description
    elif isinstance(entity, Exam):
        start = _wall_clock(entity.exam_date)
        end = start + timedelta(minutes=entity.duration_minutes or 60)
        payload["summary"] = f"{APP_MARKER} {KIND_LABELS[EXAM]}{entity.title}"
        notes = entity.notes
        payload["location"] = entity.location
    else:
        raise ValueError(f"Unsupported entity: {type(entity).__name__}")

    payload["description"] = f"{EXPORT_DESCRIPTION_HEADER}\n\n{notes or ''}".rstrip()
    payload["start"] = _time_payload(start, user_timezone)
    payload["end"] = _time_payload(end, user_timezone)
    return payload


class EntityMapper:
    def __init__(
        self,
        state_store: StateStore,
        *,
        calendar_id: str = "primary",
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self.state_store = state_store
        self.calendar_id = calendar_id
        self.clock = clock
        self.id_factory = id_factory

    def import_event(self, user_id: str, remote_event: RemoteEvent) -> LocalEntity | None:
        """Create a local entity for an unmapped remote event.

        Returns None when nothing was created: the event is already mapped,
        was authored by this app, has no start, or a concurrent pass mapped
        it first.
        """
        if self.state_store.get_mapping_by_google_id(user_id, remote_event.id) is not None:
            return None
        if is_app_authored(remote_event):
            return None
        if remote_event.start is None:
            logger.info("Skipping event without start time", extra={"google_event_id": remote_event.id})
            return None

        now = self.clock()
        entity = build_local_entity(user_id, remote_event, self.id_factory(), now)
        mapping = self.state_store.create_entity_with_mapping(
            entity,
            google_event_id=remote_event.id,
            google_calendar_id=self.calendar_id,
            google_event_updated=remote_event.updated,
            last_synced_at=sync_watermark(now, remote_event.updated),
            sync_hash=content_hash(remote_event),
        )
        if mapping is None:
            logger.info("Event already mapped, skipping import", extra={"google_event_id": remote_event.id})
            return None
        logger.info(
            "Created %s from Google event",
            entity.entity_type,
            extra={"user_id": user_id, "google_event_id": remote_event.id},
        )
        return entity

    def apply_remote_update(self, mapping: EventMapping, remote_event: RemoteEvent) -> LocalEntity | None:
        now = self.clock()
        updates = local_update_from_remote(mapping.entity_type, remote_event)
        entity = self.state_store.update_entity(mapping.entity_type, mapping.entity_id, updates, updated_at=now)
        if entity is None:
            return None
        self.state_store.update_mapping(
            mapping.id,
            google_event_updated=remote_event.updated,
            local_event_updated=now,
            last_synced_at=sync_watermark(now, remote_event.updated),
            sync_hash=content_hash(remote_event),
        )
        return entity

    def push_merged_update(
        self,
        client: GoogleCalendarClient,
        mapping: EventMapping,
        entity: LocalEntity,
        updates: dict[str, Any],
        user_timezone: str,
    ) -> LocalEntity | None:
        """Patch Google with the merged entity, then store the merge locally.

        The local row is only written once the patch has succeeded.
        """
        now = self.clock()
        fields = {key: updates[key] for key in ENTITY_COLUMNS[entity.entity_type] if key in updates}
        merged = dataclasses.replace(entity, **fields, updated_at=now)
        self.push_local_update(client, mapping, merged, user_timezone)
        return self.state_store.update_entity(mapping.entity_type, mapping.entity_id, fields, updated_at=now)

    def export_entity(
        self,
        client: GoogleCalendarClient,
        entity: LocalEntity,
        user_timezone: str,
    ) -> EventMapping | None:
        payload = build_event_payload(entity, user_timezone, self.clock())
        created = client.insert_event(payload)
        mapping = self.state_store.create_mapping(
            user_id=entity.user_id,
            entity_type=entity.entity_type,
            entity_id=entity.id,
            google_event_id=created.id,
            google_calendar_id=self.calendar_id,
            google_event_updated=created.updated,
            local_event_updated=entity.updated_at,
            last_synced_at=sync_watermark(self.clock(), created.updated, entity.updated_at),
            sync_hash=content_hash(created),
        )
        if mapping is None:
            # A concurrent pass exported this entity first; drop our copy.
            logger.warning(
                "Entity already mapped, removing duplicate Google event",
                extra={"user_id": entity.user_id, "google_event_id": created.id},
            )
            client.delete_event(created.id)
            return None
        return mapping

    def push_local_update(
        self,
        client: GoogleCalendarClient,
        mapping: EventMapping,
        entity: LocalEntity,
        user_timezone: str,
    ) -> RemoteEvent:
        payload = build_event_payload(entity, user_timezone, self.clock())
        patched = client.patch_event(mapping.google_event_id, payload)
        self.state_store.update_mapping(
            mapping.id,
            google_event_updated=patched.updated,
            local_event_updated=entity.updated_at,
            last_synced_at=sync_watermark(self.clock(), patched.updated, entity.updated_at),
            sync_hash=content_hash(patched),
        )
        return patched
