import threading
import unittest
from uuid import uuid4

from app.db.models import Rating
from app.services.tier_locks import TierBusyError, TierLockRegistry


class TestTierLockRegistry(unittest.TestCase):
    def setUp(self) -> None:
        self.locks = TierLockRegistry(wait_seconds=0.05)
        self.user_id = uuid4()

    def _hold_in_thread(self, user_id, *ratings):
        acquired = threading.Event()
        release = threading.Event()

        def worker():
            with self.locks.hold(user_id, *ratings):
                acquired.set()
                release.wait(5)

        thread = threading.Thread(target=worker)
        thread.start()
        acquired.wait(5)
        return release, thread

    def test_same_tier_is_exclusive(self) -> None:
        release, thread = self._hold_in_thread(self.user_id, Rating.liked)
        try:
            with self.assertRaises(TierBusyError):
                with self.locks.hold(self.user_id, Rating.liked):
                    pass
        finally:
            release.set()
            thread.join()

    def test_other_tiers_and_users_are_independent(self) -> None:
        release, thread = self._hold_in_thread(self.user_id, Rating.liked)
        try:
            with self.locks.hold(self.user_id, Rating.fine):
                pass
            with self.locks.hold(uuid4(), Rating.liked):
                pass
        finally:
            release.set()
            thread.join()

    def test_released_after_block_even_on_error(self) -> None:
        with self.assertRaises(RuntimeError):
            with self.locks.hold(self.user_id, Rating.fine):
                raise RuntimeError("boom")
        self.assertFalse(self.locks.is_held(self.user_id, Rating.fine))

    def test_partial_acquisition_is_rolled_back(self) -> None:
        release, thread = self._hold_in_thread(self.user_id, Rating.disliked)
        try:
            with self.assertRaises(TierBusyError):
                with self.locks.hold(self.user_id, Rating.liked, Rating.disliked):
                    pass
            self.assertFalse(self.locks.is_held(self.user_id, Rating.liked))
        finally:
            release.set()
            thread.join()

    def test_none_and_repeated_ratings_are_ignored(self) -> None:
        with self.locks.hold(self.user_id, None, Rating.fine, Rating.fine):
            self.assertTrue(self.locks.is_held(self.user_id, Rating.fine))
        self.assertFalse(self.locks.is_held(self.user_id, Rating.fine))

    def test_registry_forgets_released_tiers(self) -> None:
        for _ in range(3):
            with self.locks.hold(uuid4(), Rating.liked, Rating.fine):
                self.assertEqual(len(self.locks), 2)
        self.assertEqual(len(self.locks), 0)

    def test_entry_survives_while_someone_waits(self) -> None:
        release, thread = self._hold_in_thread(self.user_id, Rating.liked)
        with self.assertRaises(TierBusyError):
            with self.locks.hold(self.user_id, Rating.liked):
                pass
        self.assertTrue(self.locks.is_held(self.user_id, Rating.liked))
        release.set()
        thread.join()
        self.assertEqual(len(self.locks), 0)
