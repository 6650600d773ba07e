"""Unit tests for AggregationWorker."""

import uuid

import pytest
from unittest.mock import MagicMock, Mock, patch

from topfrag_pipeline.services.job_tracker import JobNotFoundError
from topfrag_pipeline.workers.aggregation_worker import (
    MATCH_SUMMARY_COLUMNS,
    PLAYER_SUMMARY_COLUMNS,
    AggregationWorker,
)

from factories import gunfight_record, round_record


JOB_ID = str(uuid.uuid4())
STEAM_A = "76561198000000001"
STEAM_B = "76561198000000002"


@pytest.fixture
def mock_db():
    """Mock DatabaseManager serving a two player match."""
    db = MagicMock()
    cursor = Mock()
    db.transaction.return_value.__enter__.return_value = cursor
    db.transaction.return_value.__exit__.return_value = False

    events = {
        "match_players": [
            {"player_id": 1, "steam_id": STEAM_A, "team": "A"},
            {"player_id": 2, "steam_id": STEAM_B, "team": "B"},
        ],
        "gunfight_events": [
            gunfight_record(
                round_number=1,
                player_1_steam_id=STEAM_A,
                player_2_steam_id=STEAM_B,
                victor_steam_id=STEAM_A,
            )
        ],
        "damage_events": [],
        "grenade_events": [],
        "round_events": [round_record(round_number=1, event_type="end", winner="CT")],
    }

    def execute_query(query, params=None, fetch=True):
        for table, rows in events.items():
            if table in query:
                return rows
        return []

    db.execute_query.side_effect = execute_query
    return db, cursor


@pytest.fixture
def worker(mock_db):
    db, _ = mock_db
    with patch("topfrag_pipeline.workers.aggregation_worker.start_metrics_server"):
        worker = AggregationWorker(database_manager=db, worker_id="test-worker-001")
    worker.job_tracker = Mock()
    worker.job_tracker.find_by_job_id.return_value = {
        "id": 1,
        "uuid": JOB_ID,
        "status": "completed",
        "match_id": 7,
    }
    return worker


class TestProcessMessage:
    """Test match.aggregate handling."""

    def test_completed_job_aggregated(self, worker, mock_db):
        _, cursor = mock_db

        result = worker.process_message({"job_id": JOB_ID})

        assert result == {"success": True, "match_id": 7, "players": 2}
        inserted = cursor.executemany.call_args[0][1]
        assert len(inserted) == 2
        assert all(len(row) == len(PLAYER_SUMMARY_COLUMNS) for row in inserted)
        assert worker.get_stats()["processed_count"] == 1

    def test_summaries_replaced_in_one_transaction(self, worker, mock_db):
        db, cursor = mock_db

        worker.process_message({"job_id": JOB_ID})

        statements = [c[0][0] for c in cursor.execute.call_args_list]
        assert db.transaction.call_count == 1
        assert statements[0].startswith("DELETE FROM player_match_summaries")
        assert any(s.startswith("DELETE FROM match_summaries") for s in statements)
        match_insert = cursor.execute.call_args_list[2][0]
        assert len(match_insert[1]) == len(MATCH_SUMMARY_COLUMNS) + 1

    def test_counters_reconciled(self, worker, mock_db):
        _, cursor = mock_db

        worker.process_message({"job_id": JOB_ID})

        query, params = cursor.execute.call_args[0]
        assert "UPDATE matches" in query
        # total_rounds twice, fights, grenades, match id
        assert params == (1, 1, 1, 0, 7)

    def test_scores_attached(self, worker, mock_db):
        _, cursor = mock_db

        worker.process_message({"job_id": JOB_ID})

        row = dict(zip(PLAYER_SUMMARY_COLUMNS, cursor.executemany.call_args[0][1][0]))
        for role in ("opener", "closer", "support", "fragger"):
            assert isinstance(row[f"{role}_score"], float)

    def test_match_id_message(self, worker):
        result = worker.process_message({"match_id": 7})

        assert result["success"] is True
        worker.job_tracker.find_by_job_id.assert_not_called()

    def test_job_not_completed_skipped(self, worker, mock_db):
        _, cursor = mock_db
        worker.job_tracker.find_by_job_id.return_value["status"] = "failed"

        result = worker.process_message({"job_id": JOB_ID})

        assert result == {"success": True, "skipped": True}
        cursor.execute.assert_not_called()

    def test_unknown_job(self, worker):
        worker.job_tracker.find_by_job_id.side_effect = JobNotFoundError(JOB_ID)

        result = worker.process_message({"job_id": JOB_ID})

        assert result["success"] is False

    def test_missing_ids(self, worker):
        result = worker.process_message({})

        assert result["success"] is False
        assert worker.get_stats()["error_count"] == 1

    def test_store_failure_reraised(self, worker, mock_db):
        _, cursor = mock_db
        cursor.executemany.side_effect = RuntimeError("connection lost")

        with pytest.raises(RuntimeError):
            worker.process_message({"job_id": JOB_ID})
        assert worker.get_stats()["error_count"] == 1
