import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from studysync.conflict_resolver import ConflictResolver
from studysync.entity_mapper import EntityMapper
from studysync.errors import ConflictNotFoundError, InvalidRequestError, ProviderApiError
from studysync.models import Exam, RemoteEvent, serialize_datetime
from studysync.state_store import StateStore


NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
LAST_SYNC = NOW - timedelta(days=1)


class ConflictResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.resolver = ConflictResolver(self.store, EntityMapper(self.store, clock=lambda: NOW), clock=lambda: NOW)
        self.client = mock.Mock()
        self.client.patch_event.side_effect = lambda event_id, payload: RemoteEvent.from_google(
            dict(payload, id=event_id, updated=serialize_datetime(NOW))
        )

        self.exam = self.store.create_entity(
            Exam(
                id="e1",
                user_id="u1",
                title="Physics",
                exam_date="2025-06-02T10:00:00",
                duration_minutes=90,
                location="Hall A",
                updated_at=NOW - timedelta(hours=1),
            )
        )
        self.mapping = self.store.create_mapping(
            user_id="u1",
            entity_type="exam",
            entity_id="e1",
            google_event_id="g1",
            last_synced_at=LAST_SYNC,
        )
        self.remote = RemoteEvent.from_google(
            {
                "id": "g1",
                "summary": "[StudySync] Exam: Physics II",
                "location": "Hall B",
                "start": {"dateTime": "2025-06-02T11:00:00+00:00"},
                "end": {"dateTime": "2025-06-02T13:00:00+00:00"},
                "updated": serialize_datetime(NOW - timedelta(hours=2)),
            }
        )
        self.conflict = self.resolver.record_conflict("u1", self.mapping, self.exam, self.remote)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _resolve(self, resolution_type: str, conflict_id=None, resolved_data=None, user_id: str = "u1") -> dict:
        return self.resolver.resolve(
            user_id=user_id,
            conflict_id=self.conflict.id if conflict_id is None else conflict_id,
            resolution_type=resolution_type,
            resolved_data=resolved_data,
            client_provider=lambda: self.client,
        )

    def test_record_conflict_is_idempotent(self) -> None:
        again = self.resolver.record_conflict("u1", self.mapping, self.exam, self.remote)
        self.assertEqual(again.id, self.conflict.id)
        self.assertEqual(self.conflict.local_data["title"], "Physics")
        self.assertEqual(self.conflict.google_data["location"], "Hall B")
        operations = self.store.recent_operations("u1")
        self.assertEqual([item["operation_type"] for item in operations], ["conflict_detection"])

    def test_prefer_google_updates_local(self) -> None:
        response = self._resolve("prefer_google")

        self.assertEqual(response["resolution"], "prefer_google")
        exam = self.store.get_entity("exam", "e1")
        self.assertEqual(exam.title, "Physics II")
        self.assertEqual(exam.location, "Hall B")
        self.assertEqual(exam.duration_minutes, 120)
        self.client.patch_event.assert_not_called()
        mapping = self.store.get_mapping(self.mapping.id)
        self.assertEqual(mapping.last_synced_at, NOW)

    def test_prefer_local_patches_remote(self) -> None:
        self._resolve("prefer_local")

        event_id, payload = self.client.patch_event.call_args.args
        self.assertEqual(event_id, "g1")
        self.assertEqual(payload["summary"], "[StudySync] Exam: Physics")
        self.assertEqual(payload["location"], "Hall A")
        self.assertEqual(self.store.get_entity("exam", "e1").title, "Physics")
        mapping = self.store.get_mapping(self.mapping.id)
        self.assertGreaterEqual(mapping.last_synced_at, NOW)

    def test_merge_applies_data_to_both_sides(self) -> None:
        self._resolve("merge", resolved_data={"title": "Physics (merged)", "location": "Hall C"})

        self.assertEqual(self.store.get_entity("exam", "e1").title, "Physics (merged)")
        payload = self.client.patch_event.call_args.args[1]
        self.assertEqual(payload["summary"], "[StudySync] Exam: Physics (merged)")
        self.assertEqual(payload["location"], "Hall C")
        resolved = self.store.list_conflicts("u1", include_resolved=True)[0]
        self.assertEqual(resolved.resolution, "merge")
        mapping = self.store.get_mapping(self.mapping.id)
        self.assertGreaterEqual(mapping.last_synced_at, self.store.get_entity("exam", "e1").updated_at)

    def test_merge_requires_data(self) -> None:
        with self.assertRaises(InvalidRequestError):
            self._resolve("merge")
        self.assertEqual(len(self.store.list_conflicts("u1")), 1)

    def test_unknown_strategy_is_rejected(self) -> None:
        with self.assertRaises(InvalidRequestError):
            self._resolve("prefer_newest")

    def test_missing_or_foreign_conflict_is_not_found(self) -> None:
        with self.assertRaises(ConflictNotFoundError):
            self._resolve("prefer_local", conflict_id=9999)
        with self.assertRaises(ConflictNotFoundError):
            self._resolve("prefer_local", conflict_id="abc")
        with self.assertRaises(ConflictNotFoundError):
            self._resolve("prefer_local", user_id="u2")
        self.client.patch_event.assert_not_called()

    def test_resolved_conflict_cannot_be_resolved_again(self) -> None:
        self._resolve("prefer_google")
        with self.assertRaises(ConflictNotFoundError):
            self._resolve("prefer_local")
        self.client.patch_event.assert_not_called()
        types = [item["operation_type"] for item in self.store.recent_operations("u1")]
        self.assertEqual(types.count("conflict_resolution"), 1)

    def test_provider_failure_leaves_conflict_open(self) -> None:
        self.client.patch_event.side_effect = ProviderApiError(503, "Backend Error")
        with self.assertRaises(ProviderApiError):
            self._resolve("prefer_local")
        self.assertEqual(len(self.store.list_conflicts("u1")), 1)
        failed = self.store.recent_operations("u1")[0]
        self.assertEqual(failed["status"], "failed")
        self.assertEqual(failed["operation_type"], "conflict_resolution")

    def test_failed_merge_leaves_local_untouched(self) -> None:
        self.client.patch_event.side_effect = ProviderApiError(503, "Backend Error")
        with self.assertRaises(ProviderApiError):
            self._resolve("merge", resolved_data={"title": "Merged title"})

        exam = self.store.get_entity("exam", "e1")
        self.assertEqual(exam.title, "Physics")
        self.assertEqual(exam.updated_at, NOW - timedelta(hours=1))
        self.assertEqual(len(self.store.list_conflicts("u1")), 1)
        self.assertEqual(self.store.recent_operations("u1")[0]["status"], "failed")

    def test_list_conflicts_returns_dicts(self) -> None:
        items = self.resolver.list_conflicts("u1")
        self.assertEqual(items[0]["id"], self.conflict.id)
        self.assertIsNone(items[0]["resolved_at"])


if __name__ == "__main__":
    unittest.main()
