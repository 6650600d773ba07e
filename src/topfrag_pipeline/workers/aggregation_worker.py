"""
Aggregation Worker

Consumes match.aggregate tasks published when a processing job completes,
recomputes the match's player and match summaries from its raw events,
scores complexions and replaces the stored summaries in one transaction.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from ..core.database_manager import DatabaseManager
from ..core.schema import CLUTCH_SIZES
from ..metrics import (
    AGGREGATION_DURATION,
    AGGREGATIONS_PROCESSED,
    DATABASE_OPERATIONS,
    DATABASE_OPERATION_DURATION,
    QUEUE_MESSAGES_PROCESSED,
    WORKER_ERRORS,
    start_metrics_server,
)
from ..processors.complexion import ComplexionScorer
from ..processors.match_aggregator import COUNT_FIELDS, MatchAggregator, clutch_field
from ..services.job_tracker import STATUS_COMPLETED, JobNotFoundError, JobTracker


PLAYER_SUMMARY_COLUMNS = (
    ["match_id", "player_id"]
    + list(COUNT_FIELDS)
    + ["average_damage_per_round", "enemy_flash_duration", "team_flash_duration"]
    + ["average_smoke_blocking_duration"]
    + [clutch_field(size, outcome) for size in CLUTCH_SIZES for outcome in ("attempted", "successful")]
    + ["kd_ratio", "headshot_percentage", "clutch_success_rate"]
    + ["opener_score", "closer_score", "support_score", "fragger_score"]
)

MATCH_SUMMARY_COLUMNS = [
    "total_kills",
    "total_deaths",
    "total_assists",
    "total_headshots",
    "total_wallbangs",
    "total_damage",
    "total_he_damage",
    "total_effective_flashes",
    "total_smokes_used",
    "total_smoke_blocking_duration",
    "total_molotovs_used",
    "total_first_kills",
    "total_first_deaths",
] + [
    f"total_{clutch_field(size, outcome)}"
    for size in CLUTCH_SIZES
    for outcome in ("attempted", "successful")
]


class AggregationWorker:
    """
    Worker that turns a completed match's events into summaries.

    Responsibilities:
    - Resolve the match from a job id (or take a match id directly)
    - Load the roster and all persisted events
    - Aggregate and score complexions
    - Replace player_match_summaries and match_summaries wholesale
    - Reconcile match counters with the stored events
    """

    def __init__(
        self,
        database_manager: DatabaseManager,
        worker_id: str,
        scorer: Optional[ComplexionScorer] = None,
        logger: Optional[logging.Logger] = None,
        metrics_port: int = 9093,
    ):
        """
        Initialize aggregation worker.

        Args:
            database_manager: Database manager instance
            worker_id: Unique worker identifier
            scorer: Complexion scorer (built from the configured metric table if None)
            logger: Optional logger instance
            metrics_port: Port to expose Prometheus metrics on (default: 9093)
        """
        self.database_manager = database_manager
        self.worker_id = worker_id
        self.logger = logger or logging.getLogger(__name__)
        self.scorer = scorer or ComplexionScorer()
        self.aggregator = MatchAggregator(logger=self.logger)
        self.job_tracker = JobTracker(database_manager, logger=self.logger)

        # Processing counters
        self.processed_count = 0
        self.skipped_count = 0
        self.error_count = 0

        start_metrics_server(port=metrics_port, worker_name=f"aggregation-{worker_id}")

        self.logger.info(f"[{self.worker_id}] Aggregation worker initialized")

    def process_message(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process a match.aggregate task (callback for RabbitMQConsumer).

        Args:
            data: {"job_id": str} or {"match_id": int}

        Returns:
            {"success": bool, "error": str, "players": int}
        """
        start_time = time.time()
        job_id = data.get("job_id")
        match_id = data.get("match_id")

        if not job_id and not match_id:
            error_msg = "Message missing job_id or match_id field"
            self.logger.error(f"[{self.worker_id}] {error_msg}")
            self.error_count += 1
            QUEUE_MESSAGES_PROCESSED.labels(queue_name="match_aggregate", status="failed").inc()
            return {"success": False, "error": error_msg}

        if job_id:
            try:
                job = self.job_tracker.find_by_job_id(job_id)
            except JobNotFoundError as e:
                self.logger.error(f"[{self.worker_id}] {e}")
                self.error_count += 1
                AGGREGATIONS_PROCESSED.labels(status="failed").inc()
                return {"success": False, "error": str(e)}

            if job["status"] != STATUS_COMPLETED or job["match_id"] is None:
                self.logger.info(
                    f"[{self.worker_id}] Job {job_id} is {job['status']}, skipping aggregation"
                )
                self.skipped_count += 1
                AGGREGATIONS_PROCESSED.labels(status="skipped").inc()
                return {"success": True, "skipped": True}
            match_id = job["match_id"]

        try:
            players = self.aggregate_match(int(match_id))
        except Exception as e:
            self.logger.error(
                f"[{self.worker_id}] Failed to aggregate match {match_id}: {e}", exc_info=True
            )
            self.error_count += 1
            AGGREGATIONS_PROCESSED.labels(status="failed").inc()
            WORKER_ERRORS.labels(worker_type="aggregation", error_type=type(e).__name__).inc()
            raise

        self.processed_count += 1
        AGGREGATIONS_PROCESSED.labels(status="success").inc()
        AGGREGATION_DURATION.observe(time.time() - start_time)
        QUEUE_MESSAGES_PROCESSED.labels(queue_name="match_aggregate", status="success").inc()

        self.logger.info(
            f"[{self.worker_id}] Aggregated match {match_id}: {players} player summaries "
            f"in {time.time() - start_time:.2f}s"
        )
        return {"success": True, "match_id": match_id, "players": players}

    def aggregate_match(self, match_id: int) -> int:
        """
        Recompute and store all summaries for a match.

        Returns:
            Number of player summaries written
        """
        roster = self._load_roster(match_id)
        if not roster:
            self.logger.warning(f"[{self.worker_id}] Match {match_id} has no roster")

        result = self.aggregator.aggregate(
            roster,
            self._load_events("gunfight_events", match_id),
            self._load_events("damage_events", match_id),
            self._load_events("grenade_events", match_id),
            self._load_events("round_events", match_id),
        )

        for summary in result["players"]:
            scores = self.scorer.score_player(summary["complexion_inputs"])
            for role, score in scores.items():
                summary[f"{role}_score"] = score

        self._store(match_id, result)
        return len(result["players"])

    def _load_roster(self, match_id: int) -> List[Dict[str, Any]]:
        return self.database_manager.execute_query(
            """
            SELECT p.id AS player_id, p.steam_id, mp.team
            FROM match_players mp
            JOIN players p ON p.id = mp.player_id
            WHERE mp.match_id = %s
            ORDER BY p.steam_id
            """,
            (match_id,),
        ) or []

    def _load_events(self, table: str, match_id: int) -> List[Dict[str, Any]]:
        return self.database_manager.execute_query(
            f"SELECT * FROM {table} WHERE match_id = %s ORDER BY round_number, tick_timestamp, id",
            (match_id,),
        ) or []

    def _store(self, match_id: int, result: Dict[str, Any]) -> None:
        player_placeholders = ", ".join(["%s"] * len(PLAYER_SUMMARY_COLUMNS))
        match_placeholders = ", ".join(["%s"] * (len(MATCH_SUMMARY_COLUMNS) + 1))
        counters = result["counters"]
        start_time = time.time()

        try:
            with self.database_manager.transaction() as cur:
                cur.execute("DELETE FROM player_match_summaries WHERE match_id = %s", (match_id,))
                rows = [
                    tuple(
                        match_id if column == "match_id" else summary[column]
                        for column in PLAYER_SUMMARY_COLUMNS
                    )
                    for summary in result["players"]
                ]
                if rows:
                    cur.executemany(
                        f"INSERT INTO player_match_summaries ({', '.join(PLAYER_SUMMARY_COLUMNS)}) "
                        f"VALUES ({player_placeholders})",
                        rows,
                    )

                cur.execute("DELETE FROM match_summaries WHERE match_id = %s", (match_id,))
                cur.execute(
                    f"INSERT INTO match_summaries (match_id, {', '.join(MATCH_SUMMARY_COLUMNS)}) "
                    f"VALUES ({match_placeholders})",
                    (match_id, *(result["match"][column] for column in MATCH_SUMMARY_COLUMNS)),
                )

                # Round count from metadata is kept when no round end events were stored
                cur.execute(
                    """
                    UPDATE matches
                    SET total_rounds = CASE WHEN %s > 0 THEN %s ELSE total_rounds END,
                        total_fight_events = %s,
                        total_grenade_events = %s,
                        updated_at = NOW()
                    WHERE id = %s
                    """,
                    (
                        counters["total_rounds"],
                        counters["total_rounds"],
                        counters["total_fight_events"],
                        counters["total_grenade_events"],
                        match_id,
                    ),
                )
        except Exception:
            DATABASE_OPERATIONS.labels(
                operation="insert", table="player_match_summaries", status="failed"
            ).inc()
            raise

        DATABASE_OPERATIONS.labels(
            operation="insert", table="player_match_summaries", status="success"
        ).inc()
        DATABASE_OPERATION_DURATION.labels(
            operation="insert", table="player_match_summaries"
        ).observe(time.time() - start_time)

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics."""
        return {
            "worker_id": self.worker_id,
            "processed_count": self.processed_count,
            "skipped_count": self.skipped_count,
            "error_count": self.error_count,
        }


def main():
    import os
    import sys

    from ..core.rabbitmq_consumer import RabbitMQConsumer
    from ..core.rabbitmq_publisher import MATCH_AGGREGATE_QUEUE

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    db_manager = DatabaseManager.from_env(os.environ)

    worker = AggregationWorker(
        database_manager=db_manager,
        worker_id=os.getenv("WORKER_ID", "aggregation-worker-1"),
        metrics_port=int(os.getenv("METRICS_PORT", "9093")),
    )

    consumer = RabbitMQConsumer(
        host=os.getenv("RABBITMQ_HOST"),
        port=int(os.getenv("RABBITMQ_PORT", "5672")),
        username=os.getenv("RABBITMQ_USER", "guest"),
        password=os.getenv("RABBITMQ_PASSWORD", "guest"),
        vhost=os.getenv("RABBITMQ_VHOST", "/"),
        environment=os.getenv("ENVIRONMENT", "prod"),
    )

    print(f"Starting aggregation worker: {worker.worker_id}")
    try:
        consumer.consume(MATCH_AGGREGATE_QUEUE, worker.process_message)
    except KeyboardInterrupt:
        print("\nShutting down...")
        consumer.close()
        db_manager.disconnect()
        sys.exit(0)


if __name__ == "__main__":
    main()
