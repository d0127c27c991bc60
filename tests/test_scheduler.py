import unittest
from unittest import mock

from studysync.errors import AuthExpiredError
from studysync.scheduler import SyncScheduler


class SyncSchedulerTests(unittest.TestCase):
    def test_run_cycle_renews_then_syncs_each_user(self) -> None:
        engine = mock.Mock()
        engine.renew_expiring_channels.return_value = 2
        engine.incremental_sync.side_effect = [mock.Mock(), AuthExpiredError("revoked"), mock.Mock()]
        state_store = mock.Mock()
        state_store.credential_user_ids.return_value = ["u1", "u2", "u3"]

        scheduler = SyncScheduler(engine, mock.Mock(), state_store)
        stats = scheduler.run_cycle()

        self.assertEqual(stats, {"renewed": 2, "synced": 2, "failed": 1})
        engine.incremental_sync.assert_any_call("u2", trigger="scheduled")
        self.assertEqual(engine.incremental_sync.call_count, 3)

    def test_start_and_stop(self) -> None:
        engine = mock.Mock()
        engine.renew_expiring_channels.return_value = 0
        state_store = mock.Mock()
        state_store.credential_user_ids.return_value = []
        config_manager = mock.Mock()
        config_manager.load.return_value.sync.interval_seconds = 3600

        scheduler = SyncScheduler(engine, config_manager, state_store)
        scheduler.start()
        scheduler.stop()

        self.assertFalse(scheduler.running)


if __name__ == "__main__":
    unittest.main()
