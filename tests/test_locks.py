"""Tests for per-tenant import exclusion and cooldown"""
import pytest

from hmaptiles.services.locks import ImportLockService, format_wait


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def locks(clock):
    return ImportLockService(cooldown_seconds=300.0, clock=clock)


class TestImportLockService:
    def test_only_one_import_per_tenant(self, locks):
        assert locks.try_acquire("a").success

        busy = locks.try_acquire("a")
        assert not busy.success
        assert busy.reason == "An import is already in progress for this tenant."
        assert busy.wait_time is None

        assert locks.try_acquire("b").success

    def test_cooldown_after_release(self, locks, clock):
        locks.try_acquire("a")
        locks.release("a", success=True)

        clock.now += 45
        attempt = locks.try_acquire("a")

        assert not attempt.success
        assert attempt.wait_time == pytest.approx(255.0)
        assert attempt.reason == "Please wait 4m 15s before starting another import."

        clock.now += 255
        assert locks.try_acquire("a").success

    def test_failed_import_also_cools_down(self, locks, clock):
        locks.try_acquire("a")
        locks.release("a", success=False)

        status = locks.status("a")
        assert not status.is_importing
        assert status.last_was_successful is False
        assert status.cooldown_remaining == pytest.approx(300.0)
        assert not status.can_import

    def test_status_of_unknown_tenant(self, locks):
        status = locks.status("nobody")

        assert status.can_import
        assert not status.is_importing
        assert status.started_at is None

    def test_tracks_created_items_until_success(self, locks):
        locks.track_created_map("a", 1)

        locks.try_acquire("a")
        locks.track_created_map("a", 3)
        locks.track_created_map("a", 2)
        locks.track_created_grid("a", "200")
        locks.track_created_grid("a", "100")

        assert locks.items_to_cleanup("a") == ([2, 3], ["100", "200"])

        locks.release("a", success=False)
        assert locks.items_to_cleanup("a") == ([2, 3], ["100", "200"])

        locks.clear_tracked("a")
        assert locks.items_to_cleanup("a") == ([], [])

    def test_success_clears_tracked_items(self, locks):
        locks.try_acquire("a")
        locks.track_created_map("a", 1)
        locks.release("a", success=True)

        assert locks.items_to_cleanup("a") == ([], [])
        assert locks.items_to_cleanup("nobody") == ([], [])

    def test_moved_grids_keep_their_first_map(self, locks):
        locks.try_acquire("a")
        locks.track_moved_grid("a", "100", 1)
        locks.track_moved_grid("a", "100", 4)

        assert locks.moved_grids("a") == {"100": 1}
        assert locks.moved_grids("nobody") == {}

        locks.clear_tracked("a")
        assert locks.moved_grids("a") == {}


def test_format_wait():
    assert format_wait(0.4) == "0m 0s"
    assert format_wait(61.9) == "1m 1s"
    assert format_wait(300) == "5m 0s"
