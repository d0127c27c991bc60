import unittest
from datetime import date, datetime, timezone

from studysync.models import (
    AppConfig,
    EventTime,
    RemoteEvent,
    ScheduleBlock,
    SyncSettings,
    add_months,
    entity_from_row,
    next_weekday,
    parse_iso_datetime,
    split_wall_clock,
    sync_window,
)


class ModelsTests(unittest.TestCase):
    def test_app_config_defaults(self) -> None:
        cfg = AppConfig.from_dict({})
        self.assertEqual(cfg.google.calendar_id, "primary")
        self.assertEqual(cfg.google.token_url, "https://oauth2.googleapis.com/token")
        self.assertEqual(cfg.sync.lookback_months, 1)
        self.assertEqual(cfg.sync.lookahead_months, 3)
        self.assertEqual(cfg.sync.refresh_margin_seconds, 300)
        self.assertEqual(cfg.sync.channel_ttl_days, 7)
        self.assertFalse(cfg.sync.scheduler_enabled)

    def test_sync_config_clamps_values(self) -> None:
        cfg = AppConfig.from_dict({"sync": {"interval_seconds": 5, "pass_budget_seconds": 0}})
        self.assertEqual(cfg.sync.interval_seconds, 30)
        self.assertEqual(cfg.sync.pass_budget_seconds, 1)

    def test_parse_iso_datetime_variants(self) -> None:
        self.assertEqual(
            parse_iso_datetime("2025-03-10T12:00:00Z"),
            datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc),
        )
        self.assertEqual(
            parse_iso_datetime("2025-03-10"),
            datetime(2025, 3, 10, 0, 0, tzinfo=timezone.utc),
        )
        self.assertIsNone(parse_iso_datetime(""))

    def test_split_wall_clock_ignores_offset(self) -> None:
        self.assertEqual(split_wall_clock("2025-12-14T06:00:00+04:00"), ("2025-12-14", "06:00:00"))
        self.assertEqual(split_wall_clock("2025-12-14T06:30"), ("2025-12-14", "06:30:00"))
        self.assertEqual(split_wall_clock("2025-12-14"), ("2025-12-14", "00:00:00"))
        with self.assertRaises(ValueError):
            split_wall_clock("not-a-date")

    def test_add_months_clamps_day(self) -> None:
        value = datetime(2025, 1, 31, 8, 0, tzinfo=timezone.utc)
        self.assertEqual(add_months(value, 1), datetime(2025, 2, 28, 8, 0, tzinfo=timezone.utc))
        self.assertEqual(add_months(value, -1), datetime(2024, 12, 31, 8, 0, tzinfo=timezone.utc))

    def test_sync_window(self) -> None:
        start, end = sync_window(datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc), 1, 3)
        self.assertEqual(start, datetime(2025, 2, 10, 12, 0, tzinfo=timezone.utc))
        self.assertEqual(end, datetime(2025, 6, 10, 12, 0, tzinfo=timezone.utc))

    def test_next_weekday_uses_sunday_zero(self) -> None:
        monday = date(2025, 3, 10)
        self.assertEqual(next_weekday(monday, 1), monday)
        self.assertEqual(next_weekday(monday, 3), date(2025, 3, 12))
        self.assertEqual(next_weekday(monday, 0), date(2025, 3, 16))

    def test_remote_event_from_google(self) -> None:
        event = RemoteEvent.from_google(
            {
                "id": "g1",
                "summary": "Lecture",
                "start": {"dateTime": "2025-03-10T14:00:00+01:00", "timeZone": "Europe/Vienna"},
                "end": {"dateTime": "2025-03-10T15:30:00+01:00"},
                "updated": "2025-03-01T10:00:00.000Z",
                "status": "cancelled",
                "source": {"title": "StudySync"},
            }
        )
        self.assertEqual(event.id, "g1")
        self.assertTrue(event.cancelled)
        self.assertEqual(event.start.time_zone, "Europe/Vienna")
        self.assertEqual(event.updated, datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc))
        self.assertEqual(event.source_title, "StudySync")

    def test_event_time_all_day(self) -> None:
        value = EventTime.from_google({"date": "2025-03-10"})
        self.assertTrue(value.all_day)
        self.assertEqual(value.raw, "2025-03-10")
        self.assertIsNone(EventTime.from_google({}))

    def test_entity_from_row_normalizes_recurrence(self) -> None:
        block = entity_from_row(
            "schedule_block",
            {"id": "b1", "user_id": "u1", "recurrence": "MONTHLY", "day_of_week": 2},
        )
        self.assertIsInstance(block, ScheduleBlock)
        self.assertEqual(block.recurrence, "none")
        with self.assertRaises(ValueError):
            entity_from_row("lecture", {"id": "x", "user_id": "u1"})

    def test_sync_settings_exports(self) -> None:
        settings = SyncSettings(user_id="u1", sync_exams=False)
        self.assertTrue(settings.exports("assignment"))
        self.assertFalse(settings.exports("exam"))
        self.assertFalse(settings.exports("unknown"))


if __name__ == "__main__":
    unittest.main()
