"""Event Ingestor - persists validated event batches for a job's match.

Batch protocol:
- Every request carries (job_id, event_name) and a batch envelope
  (batch_index, total_batches, is_last); omitted fields mean a single batch.
- The whole batch is validated before anything is written.
- Each (match, event_name, batch_index) is claimed in ingested_batches in the
  same transaction as the row inserts. A replayed batch finds its claim taken
  and is acknowledged without inserting anything.
- Match counters are bumped with atomic increments in that transaction, so
  concurrent batches for the same match never lose an update.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from psycopg.types.json import Jsonb

from ..core.database_manager import DatabaseManager
from ..metrics import (
    DATABASE_OPERATIONS,
    EVENT_BATCH_DURATION,
    EVENT_BATCHES_INGESTED,
    EVENTS_INGESTED,
)
from ..validation.event_validator import (
    EventBatch,
    EventValidationError,
    UnknownEventError,
    validate_batch,
)
from .job_tracker import TERMINAL_STATUSES, JobTracker


INSERT_CHUNK_SIZE = 1000


class IngestionError(Exception):
    """Raised when a valid batch cannot be accepted for its job."""

    pass


def _position(record: Dict[str, Any], key: str) -> Tuple[Any, Any, Any]:
    position = record.get(key) or {}
    return position.get("x"), position.get("y"), position.get("z")


def _gunfight_row(match_id: int, record: Dict[str, Any]) -> Tuple:
    return (
        match_id,
        record["round_number"],
        record["round_time"],
        record["tick_timestamp"],
        record["player_1_steam_id"],
        record["player_2_steam_id"],
        record.get("player_1_side"),
        record.get("player_2_side"),
        record["player_1_hp_start"],
        record["player_2_hp_start"],
        record["player_1_armor"],
        record["player_2_armor"],
        record["player_1_flashed"],
        record["player_2_flashed"],
        record["player_1_weapon"],
        record["player_2_weapon"],
        record["player_1_equipment_value"],
        record["player_2_equipment_value"],
        *_position(record, "player_1_position"),
        *_position(record, "player_2_position"),
        record["distance"],
        record["headshot"],
        record["wallbang"],
        record["penetrated_objects"],
        record.get("victor_steam_id"),
        record["damage_dealt"],
    )


def _grenade_row(match_id: int, record: Dict[str, Any]) -> Tuple:
    affected = record.get("affected_players")
    return (
        match_id,
        record["round_number"],
        record["round_time"],
        record["tick_timestamp"],
        record["player_steam_id"],
        record["grenade_type"],
        *_position(record, "player_position"),
        *_position(record, "player_aim"),
        *_position(record, "grenade_final_position"),
        record["damage_dealt"],
        record.get("flash_duration"),
        Jsonb(affected) if affected is not None else None,
        record["throw_type"],
        record.get("effectiveness_rating"),
        record.get("smoke_blocking_duration"),
    )


def _damage_row(match_id: int, record: Dict[str, Any]) -> Tuple:
    return (
        match_id,
        record["round_number"],
        record["round_time"],
        record["tick_timestamp"],
        record["attacker_steam_id"],
        record["victim_steam_id"],
        record["damage"],
        record["armor_damage"],
        record["health_damage"],
        record["headshot"],
        record["weapon"],
    )


def _round_row(match_id: int, record: Dict[str, Any]) -> Tuple:
    return (
        match_id,
        record["round_number"],
        record.get("round_time"),
        record["tick_timestamp"],
        record["event_type"],
        record.get("winner"),
        record.get("duration"),
    )


# event name -> (table, columns, row builder)
EVENT_TABLES: Dict[str, Tuple[str, Sequence[str], Callable[[int, Dict[str, Any]], Tuple]]] = {
    "gunfight": (
        "gunfight_events",
        (
            "match_id", "round_number", "round_time", "tick_timestamp",
            "player_1_steam_id", "player_2_steam_id",
            "player_1_side", "player_2_side",
            "player_1_hp_start", "player_2_hp_start",
            "player_1_armor", "player_2_armor",
            "player_1_flashed", "player_2_flashed",
            "player_1_weapon", "player_2_weapon",
            "player_1_equipment_value", "player_2_equipment_value",
            "player_1_x", "player_1_y", "player_1_z",
            "player_2_x", "player_2_y", "player_2_z",
            "distance", "headshot", "wallbang", "penetrated_objects",
            "victor_steam_id", "damage_dealt",
        ),
        _gunfight_row,
    ),
    "grenade": (
        "grenade_events",
        (
            "match_id", "round_number", "round_time", "tick_timestamp",
            "player_steam_id", "grenade_type",
            "player_x", "player_y", "player_z",
            "player_aim_x", "player_aim_y", "player_aim_z",
            "grenade_final_x", "grenade_final_y", "grenade_final_z",
            "damage_dealt", "flash_duration", "affected_players",
            "throw_type", "effectiveness_rating", "smoke_blocking_duration",
        ),
        _grenade_row,
    ),
    "damage": (
        "damage_events",
        (
            "match_id", "round_number", "round_time", "tick_timestamp",
            "attacker_steam_id", "victim_steam_id",
            "damage", "armor_damage", "health_damage", "headshot", "weapon",
        ),
        _damage_row,
    ),
    "round": (
        "round_events",
        (
            "match_id", "round_number", "round_time", "tick_timestamp",
            "event_type", "winner", "duration",
        ),
        _round_row,
    ),
}


def insert_statement(event_name: str) -> str:
    table, columns, _ = EVENT_TABLES[event_name]
    placeholders = ", ".join(["%s"] * len(columns))
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


def counter_increments(event_name: str, records: List[Dict[str, Any]]) -> Dict[str, int]:
    """Match counter deltas contributed by a batch.

    total_rounds comes from match metadata and is reconciled by aggregation.
    """
    if event_name == "gunfight":
        return {"total_fight_events": len(records)}
    if event_name == "grenade":
        return {"total_grenade_events": len(records)}
    return {}


class EventIngestor:
    """Validates and stores event batches posted by the parser service.

    Example:
        >>> ingestor = EventIngestor(db, JobTracker(db))
        >>> ingestor.ingest(job_id, "gunfight", {"data": [...], "batch_index": 1,
        ...                                      "total_batches": 2, "is_last": False})
        {'success': True, 'job_id': '...', 'event_name': 'gunfight', 'inserted': 250, 'duplicate': False}
    """

    def __init__(
        self,
        database_manager: DatabaseManager,
        job_tracker: JobTracker,
        logger: Optional[logging.Logger] = None,
    ):
        self.db = database_manager
        self.job_tracker = job_tracker
        self.logger = logger or logging.getLogger(__name__)

    def ingest(self, job_id: str, event_name: str, payload: Any) -> Dict[str, Any]:
        """Validate a batch and persist it for the job's match.

        Args:
            job_id: Job UUID from the request path
            event_name: round, gunfight, grenade or damage
            payload: Request body with data and batch envelope

        Returns:
            {"success", "job_id", "event_name", "inserted", "duplicate"}

        Raises:
            UnknownEventError: For an unknown event name (checked first)
            EventValidationError: If any record is invalid
            JobNotFoundError: If the job does not exist
            IngestionError: If the job has no match or is already terminal
        """
        start_time = time.time()

        try:
            batch = validate_batch(event_name, payload)
        except UnknownEventError:
            EVENT_BATCHES_INGESTED.labels(event_type="unknown", status="rejected").inc()
            raise
        except EventValidationError as e:
            EVENT_BATCHES_INGESTED.labels(event_type=event_name, status="rejected").inc()
            self.logger.warning(f"Rejected {event_name} batch for job {job_id}: {e}")
            raise

        job = self.job_tracker.find_by_job_id(job_id)
        if job["match_id"] is None:
            raise IngestionError(f"Job {job_id} has no match to attach events to")

        try:
            inserted, duplicate = self._persist(job, batch)
        except Exception:
            EVENT_BATCHES_INGESTED.labels(event_type=event_name, status="failed").inc()
            DATABASE_OPERATIONS.labels(
                operation="insert", table=EVENT_TABLES[event_name][0], status="failed"
            ).inc()
            raise

        EVENT_BATCH_DURATION.labels(event_type=event_name).observe(time.time() - start_time)

        if duplicate:
            EVENT_BATCHES_INGESTED.labels(event_type=event_name, status="duplicate").inc()
            self.logger.info(
                f"Duplicate {event_name} batch {batch.batch_index}/{batch.total_batches} "
                f"for job {job_id} acknowledged without insert"
            )
        else:
            EVENT_BATCHES_INGESTED.labels(event_type=event_name, status="success").inc()
            EVENTS_INGESTED.labels(event_type=event_name).inc(inserted)
            DATABASE_OPERATIONS.labels(
                operation="insert", table=EVENT_TABLES[event_name][0], status="success"
            ).inc()
            self.logger.info(
                f"Stored {inserted} {event_name} events for job {job_id} "
                f"(batch {batch.batch_index}/{batch.total_batches}{', last' if batch.is_last else ''})"
            )

        return {
            "success": True,
            "job_id": job_id,
            "event_name": event_name,
            "inserted": inserted,
            "duplicate": duplicate,
        }

    def _persist(self, job: Dict[str, Any], batch: EventBatch) -> Tuple[int, bool]:
        event_name = batch.event_name
        match_id = job["match_id"]
        records = batch.records()
        _, _, build_row = EVENT_TABLES[event_name]

        with self.db.transaction() as cur:
            # Shared lock: a completion callback cannot commit mid-batch
            cur.execute(
                "SELECT status FROM processing_jobs WHERE id = %s FOR SHARE", (job["id"],)
            )
            current = cur.fetchone()
            if current is None or current["status"] in TERMINAL_STATUSES:
                status = current["status"] if current else "deleted"
                raise IngestionError(f"Job {job['uuid']} is {status}, batch not accepted")

            cur.execute(
                """
                INSERT INTO ingested_batches
                    (match_id, job_uuid, event_name, batch_index, total_batches, is_last, row_count)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (match_id, event_name, batch_index) DO NOTHING
                """,
                (
                    match_id,
                    str(job["uuid"]),
                    event_name,
                    batch.batch_index,
                    batch.total_batches,
                    batch.is_last,
                    len(records),
                ),
            )
            if cur.rowcount == 0:
                return 0, True

            statement = insert_statement(event_name)
            for offset in range(0, len(records), INSERT_CHUNK_SIZE):
                chunk = records[offset:offset + INSERT_CHUNK_SIZE]
                cur.executemany(statement, [build_row(match_id, record) for record in chunk])

            increments = counter_increments(event_name, records)
            if increments:
                assignments = ", ".join(f"{column} = {column} + %s" for column in increments)
                cur.execute(
                    f"UPDATE matches SET {assignments}, updated_at = NOW() WHERE id = %s",
                    (*increments.values(), match_id),
                )

        return len(records), False

    def batch_progress(self, job_id: str, event_name: str) -> Dict[str, Any]:
        """Which batches of an event stream have arrived for a job.

        Returns:
            {"job_id", "event_name", "received", "expected", "missing", "complete"}

        Raises:
            UnknownEventError: For an unknown event name
            JobNotFoundError: If the job does not exist
        """
        if event_name not in EVENT_TABLES:
            raise UnknownEventError(event_name)

        job = self.job_tracker.find_by_job_id(job_id)
        rows = []
        if job["match_id"] is not None:
            rows = self.db.execute_query(
                """
                SELECT batch_index, total_batches, is_last
                FROM ingested_batches
                WHERE match_id = %s AND event_name = %s
                ORDER BY batch_index
                """,
                (job["match_id"], event_name),
            ) or []

        received = [row["batch_index"] for row in rows]
        expected = max((row["total_batches"] for row in rows), default=None)
        received_set = set(received)
        missing = (
            [index for index in range(1, expected + 1) if index not in received_set]
            if expected is not None
            else []
        )

        return {
            "job_id": job_id,
            "event_name": event_name,
            "received": received,
            "expected": expected,
            "missing": missing,
            "complete": expected is not None and not missing,
        }
