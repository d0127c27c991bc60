import tempfile
import unittest
from pathlib import Path

from studysync.rate_limiter import RateLimiter
from studysync.state_store import StateStore


class RateLimiterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_fixed_window(self) -> None:
        limiter = RateLimiter(self.store, max_requests=2, window_seconds=60)
        self.assertTrue(limiter.allow("caller:u1", now=120.0))
        self.assertTrue(limiter.allow("caller:u1", now=150.0))
        self.assertFalse(limiter.allow("caller:u1", now=179.0))
        self.assertTrue(limiter.allow("caller:u2", now=179.0))
        self.assertTrue(limiter.allow("caller:u1", now=180.0))

    def test_limit_survives_new_instance(self) -> None:
        RateLimiter(self.store, max_requests=1, window_seconds=60).allow("caller:u1", now=10.0)
        self.assertFalse(RateLimiter(self.store, max_requests=1, window_seconds=60).allow("caller:u1", now=20.0))


if __name__ == "__main__":
    unittest.main()
