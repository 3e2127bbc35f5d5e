"""
tests/test_streaks.py

Unit tests for streak tracking, loss protection and JSON persistence.
"""

import json

import pytest

from baseflip.leaderboard import LeaderboardService
from baseflip.store import JsonFileStore
from baseflip.streaks import LOSS, WIN, StreakStore, milestone_bonus


ADDR = "0x" + "ab" * 20
NOW = "2026-01-01T00:00:00Z"


@pytest.fixture
def store(tmp_path):
    return StreakStore(str(tmp_path / "streaks.json"), clock=lambda: NOW)


class TestMilestones:
    @pytest.mark.parametrize(
        "streak,bonus",
        [(1, 0), (2, 1), (3, 2), (4, 0), (5, 5), (7, 0), (10, 5), (15, 5)],
    )
    def test_bonus_table(self, streak, bonus):
        assert milestone_bonus(streak) == bonus


class TestRecordResult:
    def test_five_wins(self, store):
        for round_id in range(1, 6):
            store.record_result(ADDR, round_id, True)

        streak = store.get_streak(ADDR)
        assert streak.current_streak == 5
        assert streak.max_streak == 5
        assert streak.total_bonus_points == 1 + 2 + 5
        assert streak.last_result == WIN

    def test_duplicate_round_ignored(self, store):
        store.record_result(ADDR, 1, True)
        store.record_result(ADDR, 2, True)
        again = store.record_result(ADDR, 2, True)

        assert again.current_streak == 2
        assert store.get_streak(ADDR).total_bonus_points == 1

    def test_loss_resets_streak(self, store):
        store.record_result(ADDR, 1, True)
        store.record_result(ADDR, 2, True)
        streak = store.record_result(ADDR, 3, False)

        assert streak.current_streak == 0
        assert streak.streak_at_loss == 2
        assert streak.max_streak == 2
        assert streak.last_result == LOSS

    def test_address_case_insensitive(self, store):
        store.record_result(ADDR.upper().replace("0X", "0x"), 1, True)
        assert store.get_streak(ADDR).current_streak == 1

    def test_unknown_address_has_empty_streak(self, store):
        streak = store.get_streak(ADDR)
        assert streak.current_streak == 0
        assert streak.last_result is None
        assert streak.last_update == NOW

    def test_bonus_points_only_positive(self, store):
        other = "0x" + "cd" * 20
        store.record_result(ADDR, 1, True)
        store.record_result(ADDR, 2, True)
        store.record_result(other, 1, True)

        assert store.bonus_points() == {ADDR: 1}


class TestProtection:
    def lose_at_four(self, store):
        for round_id in range(6, 10):
            store.record_result(ADDR, round_id, True)
        return store.record_result(ADDR, 10, False)

    def test_loss_then_protect(self, store):
        lost = self.lose_at_four(store)
        assert lost.streak_at_loss == 4
        assert lost.current_streak == 0

        assert store.protect_streak(ADDR, 10) is True
        streak = store.get_streak(ADDR)
        assert streak.current_streak == 4
        assert streak.streak_at_loss == 0
        assert streak.last_result == WIN

    def test_protect_single_use(self, store):
        self.lose_at_four(store)
        assert store.protect_streak(ADDR, 10) is True
        assert store.protect_streak(ADDR, 10) is False

    def test_protect_wrong_round(self, store):
        self.lose_at_four(store)
        assert store.protect_streak(ADDR, 9) is False
        assert store.get_streak(ADDR).current_streak == 0

    def test_protect_unknown_address(self, store):
        assert store.protect_streak(ADDR, 1) is False

    def test_protect_after_win(self, store):
        store.record_result(ADDR, 1, True)
        assert store.protect_streak(ADDR, 1) is False

    def test_protect_with_nothing_to_restore(self, store):
        store.record_result(ADDR, 1, False)
        assert store.protect_streak(ADDR, 1) is False


class TestPersistence:
    def test_survives_reload(self, tmp_path):
        path = str(tmp_path / "streaks.json")
        StreakStore(path).record_result(ADDR, 1, True)

        with open(path) as f:
            data = json.load(f)
        assert data["streaks"][ADDR]["currentStreak"] == 1
        assert StreakStore(path).get_streak(ADDR).current_streak == 1

    def test_corrupt_file_falls_back_to_empty(self, tmp_path):
        path = tmp_path / "streaks.json"
        path.write_text("{not json")
        store = StreakStore(str(path))

        assert store.get_streak(ADDR).current_streak == 0
        store.record_result(ADDR, 1, True)
        assert json.loads(path.read_text())["streaks"][ADDR]["currentStreak"] == 1

    def test_non_object_file_ignored(self, tmp_path):
        path = tmp_path / "streaks.json"
        path.write_text("[1, 2, 3]")
        assert StreakStore(str(path)).all_streaks() == {}

    def test_wrong_shaped_document_falls_back(self, tmp_path):
        path = tmp_path / "streaks.json"
        path.write_text(json.dumps({"streaks": None}))
        store = StreakStore(str(path), clock=lambda: NOW)

        assert store.get_streak(ADDR).current_streak == 0
        assert store.record_result(ADDR, 1, True).current_streak == 1
        assert json.loads(path.read_text())["streaks"][ADDR]["currentStreak"] == 1

    def test_malformed_record_skipped(self, tmp_path):
        good = "0x" + "cd" * 20
        path = tmp_path / "streaks.json"
        path.write_text(json.dumps({"streaks": {
            ADDR: {"currentStreak": "x", "totalBonusPoints": 3},
            good: {"currentStreak": 2, "maxStreak": 2, "lastRoundId": 2, "totalBonusPoints": 1},
        }}))
        store = StreakStore(str(path), clock=lambda: NOW)

        assert list(store.all_streaks()) == [good]
        assert store.get_streak(ADDR).current_streak == 0
        assert store.protect_streak(ADDR, 2) is False

        board = LeaderboardService(lambda: [], streaks=store).refresh()
        assert board.points == {good: 1}

    def test_malformed_record_replaced_on_write(self, tmp_path):
        path = tmp_path / "streaks.json"
        path.write_text(json.dumps({"streaks": {ADDR: "garbage"}}))
        store = StreakStore(str(path), clock=lambda: NOW)

        store.record_result(ADDR, 7, True)
        assert json.loads(path.read_text())["streaks"][ADDR]["lastRoundId"] == 7


class TestJsonFileStore:
    def test_unchanged_document_not_written(self, tmp_path):
        path = tmp_path / "doc.json"
        store = JsonFileStore(str(path), lambda: {"items": {}})
        with store.mutate():
            pass
        assert not path.exists()

    def test_failed_block_not_written(self, tmp_path):
        path = tmp_path / "doc.json"
        store = JsonFileStore(str(path), lambda: {"items": {}})
        with pytest.raises(RuntimeError):
            with store.mutate() as data:
                data["items"]["a"] = 1
                raise RuntimeError("boom")
        assert not path.exists()

    def test_missing_keys_filled_from_default(self, tmp_path):
        path = tmp_path / "doc.json"
        path.write_text(json.dumps({"other": 1}))
        store = JsonFileStore(str(path), lambda: {"items": {}})
        assert store.read() == {"items": {}, "other": 1}

    def test_wrong_typed_key_replaced_by_default(self, tmp_path):
        path = tmp_path / "doc.json"
        path.write_text(json.dumps({"items": [], "other": 1}))
        store = JsonFileStore(str(path), lambda: {"items": {}})
        assert store.read() == {"items": {}, "other": 1}

    def test_write_failure_reported(self, tmp_path):
        store = JsonFileStore(str(tmp_path / "missing" / "doc.json"), dict)
        assert store.write({"a": 1}) is False
