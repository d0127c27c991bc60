import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

from studysync.entity_mapper import (
    EntityMapper,
    build_event_payload,
    build_local_entity,
    classify_title,
    google_color_id,
    is_app_authored,
    local_update_from_remote,
)
from studysync.models import Assignment, Exam, RemoteEvent, ScheduleBlock
from studysync.state_store import StateStore


NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _remote(event_id: str = "g1", **overrides) -> RemoteEvent:
    data = {
        "id": event_id,
        "summary": "Lecture",
        "start": {"dateTime": "2025-03-10T14:00:00+01:00"},
        "end": {"dateTime": "2025-03-10T15:30:00+01:00"},
        "updated": "2025-03-01T10:00:00Z",
    }
    data.update(overrides)
    return RemoteEvent.from_google(data)


class ClassificationTests(unittest.TestCase):
    def test_classify_title_rules_in_order(self) -> None:
        self.assertEqual(classify_title("Final Exam"), "exam")
        self.assertEqual(classify_title("Unit test review"), "exam")
        self.assertEqual(classify_title("Homework 3"), "assignment")
        self.assertEqual(classify_title("Assignment: exam prep"), "exam")
        self.assertEqual(classify_title("Chemistry lecture"), "schedule_block")
        self.assertEqual(classify_title(""), "schedule_block")

    def test_google_color_id(self) -> None:
        self.assertEqual(google_color_id("Red"), "11")
        self.assertEqual(google_color_id("grey"), "8")
        self.assertEqual(google_color_id("teal"), "9")
        self.assertEqual(google_color_id(None), "9")

    def test_is_app_authored(self) -> None:
        self.assertTrue(is_app_authored(_remote(summary="[StudySync] Lecture")))
        self.assertTrue(is_app_authored(_remote(description="Synced from StudySync\n\nnotes")))
        self.assertTrue(is_app_authored(_remote(source={"title": "StudySync"})))
        self.assertFalse(is_app_authored(_remote()))


class ImportMappingTests(unittest.TestCase):
    def test_exam_keeps_offset_and_duration(self) -> None:
        remote = _remote(
            summary="Final Exam",
            start={"dateTime": "2025-12-14T06:00:00+04:00"},
            end={"dateTime": "2025-12-14T08:00:00+04:00"},
            location="Hall A",
            description="Bring calculator",
        )
        exam = build_local_entity("u1", remote, "e1", NOW)
        self.assertIsInstance(exam, Exam)
        self.assertEqual(exam.exam_date, "2025-12-14T06:00:00+04:00")
        self.assertEqual(exam.duration_minutes, 120)
        self.assertEqual(exam.location, "Hall A")
        self.assertEqual(exam.notes, "Imported from Google Calendar: Bring calculator")

    def test_exam_without_end_defaults_duration(self) -> None:
        remote = _remote(summary="Midterm exam", end=None)
        self.assertEqual(build_local_entity("u1", remote, "e1", NOW).duration_minutes, 60)

    def test_assignment_due_is_start(self) -> None:
        remote = _remote(summary="Homework 2")
        assignment = build_local_entity("u1", remote, "a1", NOW)
        self.assertIsInstance(assignment, Assignment)
        self.assertEqual(assignment.due_date, "2025-03-10T14:00:00+01:00")
        self.assertEqual(assignment.estimated_hours, 1.5)

    def test_block_uses_wall_clock(self) -> None:
        block = build_local_entity("u1", _remote(), "b1", NOW)
        self.assertIsInstance(block, ScheduleBlock)
        self.assertEqual(block.start_time, "14:00:00")
        self.assertEqual(block.end_time, "15:30:00")
        self.assertEqual(block.specific_date, "2025-03-10")
        self.assertEqual(block.day_of_week, 1)
        self.assertEqual(block.updated_at, NOW)

    def test_block_missing_end_lasts_one_hour(self) -> None:
        block = build_local_entity("u1", _remote(end=None), "b1", NOW)
        self.assertEqual(block.end_time, "15:00:00")

    def test_block_update_without_start_keeps_times(self) -> None:
        updates = local_update_from_remote("schedule_block", _remote(start=None, summary="Seminar"))
        self.assertEqual(updates["title"], "Seminar")
        self.assertNotIn("start_time", updates)
        updates = local_update_from_remote("schedule_block", _remote(end=None))
        self.assertEqual((updates["start_time"], updates["end_time"]), ("14:00:00", "15:00:00"))

    def test_event_without_start_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            build_local_entity("u1", _remote(start=None), "b1", NOW)

    def test_all_day_block_starts_at_midnight(self) -> None:
        remote = _remote(start={"date": "2025-03-16"}, end={"date": "2025-03-17"})
        block = build_local_entity("u1", remote, "b1", NOW)
        self.assertEqual(block.start_time, "00:00:00")
        self.assertEqual(block.specific_date, "2025-03-16")
        self.assertEqual(block.day_of_week, 0)

    def test_weekly_recurrence_is_recognized(self) -> None:
        remote = _remote(recurrence=["RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=MO"])
        self.assertEqual(build_local_entity("u1", remote, "b1", NOW).recurrence, "biweekly")


class ExportMappingTests(unittest.TestCase):
    def test_block_round_trip_keeps_wall_clock(self) -> None:
        block = ScheduleBlock(
            id="b1",
            user_id="u1",
            title="Lecture",
            location="Room 1",
            start_time="14:00:00",
            end_time="15:30:00",
            day_of_week=1,
            specific_date="2025-03-10",
            course_color="green",
        )
        payload = build_event_payload(block, "Europe/Vienna", NOW)
        self.assertEqual(payload["summary"], "[StudySync] Lecture")
        self.assertEqual(payload["start"], {"dateTime": "2025-03-10T14:00:00", "timeZone": "Europe/Vienna"})
        self.assertEqual(payload["end"], {"dateTime": "2025-03-10T15:30:00", "timeZone": "Europe/Vienna"})
        self.assertEqual(payload["colorId"], "10")
        self.assertTrue(payload["description"].startswith("Synced from StudySync"))

        returned = RemoteEvent.from_google(
            {
                "id": "g1",
                "summary": payload["summary"],
                "description": payload["description"],
                "location": payload["location"],
                "start": {"dateTime": "2025-03-10T14:00:00+01:00", "timeZone": "Europe/Vienna"},
                "end": {"dateTime": "2025-03-10T15:30:00+01:00", "timeZone": "Europe/Vienna"},
            }
        )
        updates = local_update_from_remote("schedule_block", returned)
        self.assertEqual(updates["title"], "Lecture")
        self.assertEqual(updates["start_time"], "14:00:00")
        self.assertEqual(updates["end_time"], "15:30:00")
        self.assertEqual(updates["specific_date"], "2025-03-10")
        self.assertEqual(updates["description"], "")

    def test_recurring_block_uses_next_weekday(self) -> None:
        block = ScheduleBlock(
            id="b1",
            user_id="u1",
            title="Lab",
            start_time="09:00",
            end_time="11:00",
            day_of_week=3,
            recurrence="weekly",
        )
        payload = build_event_payload(block, "UTC", NOW)
        self.assertEqual(payload["start"]["dateTime"], "2025-03-12T09:00:00")
        self.assertEqual(payload["recurrence"], ["RRULE:FREQ=WEEKLY"])

    def test_assignment_ends_at_due_date(self) -> None:
        assignment = Assignment(
            id="a1",
            user_id="u1",
            title="Essay",
            due_date="2025-03-14T23:59:00+01:00",
            estimated_hours=3,
        )
        payload = build_event_payload(assignment, "Europe/Vienna", NOW)
        self.assertEqual(payload["summary"], "[StudySync] Assignment: Essay")
        self.assertEqual(payload["start"]["dateTime"], "2025-03-14T20:59:00")
        self.assertEqual(payload["end"]["dateTime"], "2025-03-14T23:59:00")

    def test_exam_duration_sets_end(self) -> None:
        exam = Exam(id="e1", user_id="u1", title="Physics", exam_date="2025-06-02T10:00:00", duration_minutes=90)
        payload = build_event_payload(exam, "UTC", NOW)
        self.assertEqual(payload["summary"], "[StudySync] Exam: Physics")
        self.assertEqual(payload["end"]["dateTime"], "2025-06-02T11:30:00")

        update = local_update_from_remote(
            "exam",
            RemoteEvent.from_google(
                {
                    "id": "g1",
                    "summary": payload["summary"],
                    "start": {"dateTime": "2025-06-02T10:00:00+00:00"},
                    "end": {"dateTime": "2025-06-02T12:00:00+00:00"},
                }
            ),
        )
        self.assertEqual(update["title"], "Physics")
        self.assertEqual(update["duration_minutes"], 120)


class EntityMapperTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.mapper = EntityMapper(self.store, clock=lambda: NOW)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_import_is_idempotent(self) -> None:
        remote = _remote(summary="Final Exam")
        created = self.mapper.import_event("u1", remote)
        self.assertIsNotNone(created)
        self.assertIsNone(self.mapper.import_event("u1", remote))
        self.assertEqual(len(self.store.list_entities("u1", "exam")), 1)
        mapping = self.store.get_mapping_by_google_id("u1", "g1")
        self.assertEqual(mapping.entity_id, created.id)
        self.assertEqual(mapping.last_synced_at, NOW)
        self.assertTrue(mapping.sync_hash)

    def test_app_authored_events_are_not_imported(self) -> None:
        self.assertIsNone(self.mapper.import_event("u1", _remote(summary="[StudySync] Lecture")))
        self.assertEqual(self.store.list_mappings("u1"), [])

    def test_export_of_mapped_entity_removes_duplicate_event(self) -> None:
        block = self.store.create_entity(
            ScheduleBlock(id="b1", user_id="u1", title="Lecture", specific_date="2025-03-10", updated_at=NOW)
        )
        self.store.create_mapping(user_id="u1", entity_type="schedule_block", entity_id="b1", google_event_id="g1")
        client = mock.Mock()
        client.insert_event.return_value = _remote("g-dup", summary="[StudySync] Lecture")

        self.assertIsNone(self.mapper.export_entity(client, block, "UTC"))
        client.delete_event.assert_called_once_with("g-dup")

    def test_push_local_update_advances_mapping(self) -> None:
        block = self.store.create_entity(
            ScheduleBlock(id="b1", user_id="u1", title="Seminar", specific_date="2025-03-10", updated_at=NOW)
        )
        mapping = self.store.create_mapping(
            user_id="u1",
            entity_type="schedule_block",
            entity_id="b1",
            google_event_id="g1",
            last_synced_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
        )
        client = mock.Mock()
        client.patch_event.return_value = _remote("g1", summary="[StudySync] Seminar", updated="2025-03-10T12:00:05Z")

        self.mapper.push_local_update(client, mapping, block, "UTC")

        self.assertEqual(client.patch_event.call_args.args[0], "g1")
        self.assertEqual(client.patch_event.call_args.args[1]["summary"], "[StudySync] Seminar")
        updated = self.store.get_mapping(mapping.id)
        self.assertEqual(updated.last_synced_at, datetime(2025, 3, 10, 12, 0, 5, tzinfo=timezone.utc))
        self.assertEqual(updated.local_event_updated, NOW)


if __name__ == "__main__":
    unittest.main()
