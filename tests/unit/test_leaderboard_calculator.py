"""Unit tests for LeaderboardCalculator."""

from datetime import datetime, timezone

import pytest
from unittest.mock import MagicMock, Mock

from topfrag_pipeline.services.leaderboard_calculator import (
    LEADERBOARD_SOURCES,
    LEADERBOARD_TYPES,
    WINDOWS,
    LeaderboardCalculator,
    rank_entries,
    window_bounds,
)


NOW = datetime(2026, 10, 19, 15, 30, tzinfo=timezone.utc)


@pytest.fixture
def mock_db():
    """Mock DatabaseManager with a transactional cursor."""
    db = MagicMock()
    cursor = Mock()
    cursor.fetchall.return_value = []
    db.transaction.return_value.__enter__.return_value = cursor
    db.transaction.return_value.__exit__.return_value = False
    return db, cursor


class TestHelpers:
    """Test windowing and ranking."""

    def test_window_starts_at_midnight(self):
        start, end = window_bounds("7d", NOW)

        assert start == datetime(2026, 10, 12, tzinfo=timezone.utc)
        assert end == NOW

    def test_thirty_day_window(self):
        start, _ = window_bounds("30d", NOW)

        assert start == datetime(2026, 9, 19, tzinfo=timezone.utc)

    def test_unknown_window(self):
        with pytest.raises(ValueError, match="Unknown window"):
            window_bounds("90d", NOW)

    def test_rank_descending_with_steam_id_tiebreak(self):
        rows = [
            {"player_id": 1, "steam_id": "3", "value": 1.1},
            {"player_id": 2, "steam_id": "2", "value": 1.5},
            {"player_id": 3, "steam_id": "1", "value": 1.1},
        ]

        ranked = rank_entries(rows)

        assert [entry["player_id"] for entry in ranked] == [2, 3, 1]
        assert [entry["position"] for entry in ranked] == [1, 2, 3]

    def test_every_type_has_a_source(self):
        assert set(LEADERBOARD_TYPES) == {
            "aim", "impact", "round_swing", "fragger", "support", "opener", "closer"
        }
        assert LEADERBOARD_SOURCES["opener"] == "opener_score"
        assert set(WINDOWS) == {"7d", "30d"}


class TestCalculate:
    """Test snapshot replacement."""

    def test_empty_window_clears_snapshot(self, mock_db):
        db, cursor = mock_db

        entries = LeaderboardCalculator(db).calculate(1, "fragger", "7d", now=NOW)

        assert entries == []
        delete = cursor.execute.call_args_list[-1]
        assert "DELETE FROM leaderboard_entries" in delete[0][0]
        assert delete[0][1] == (1, "fragger", "7d")
        cursor.executemany.assert_not_called()

    def test_snapshot_written_in_order(self, mock_db):
        db, cursor = mock_db
        cursor.fetchall.return_value = [
            {"player_id": 11, "steam_id": "a", "value": 72.5, "matches": 3},
            {"player_id": 12, "steam_id": "b", "value": 91.0, "matches": 2},
        ]

        entries = LeaderboardCalculator(db).calculate(1, "impact", "30d", now=NOW)

        assert [entry["player_id"] for entry in entries] == [12, 11]
        select = cursor.execute.call_args_list[0][0][0]
        assert "AVG(pms.average_damage_per_round)" in select
        rows = cursor.executemany.call_args[0][1]
        assert [(row[3], row[4]) for row in rows] == [(12, 1), (11, 2)]

    def test_single_transaction(self, mock_db):
        db, _ = mock_db

        LeaderboardCalculator(db).calculate(1, "aim", "7d", now=NOW)

        assert db.transaction.call_count == 1

    def test_unknown_type(self, mock_db):
        db, _ = mock_db

        with pytest.raises(ValueError, match="Unknown leaderboard type"):
            LeaderboardCalculator(db).calculate(1, "eco", "7d", now=NOW)


class TestRunAll:
    """Test scheduled runs."""

    def test_failures_do_not_stop_run(self, mock_db):
        db, _ = mock_db
        db.list_groups.return_value = [{"id": 1, "name": "alpha"}, {"id": 2, "name": "beta"}]
        calculator = LeaderboardCalculator(db)

        def calculate(group_id, leaderboard_type, window, now=None):
            if group_id == 2:
                raise RuntimeError("boom")
            return []

        calculator.calculate = Mock(side_effect=calculate)

        result = calculator.run_all(now=NOW)

        per_group = len(LEADERBOARD_TYPES) * len(WINDOWS)
        assert result["calculated"] == per_group
        assert result["failed"] == per_group
        assert result["groups"] == 2
