#!/usr/bin/env python3
"""
Leaderboard Calculator

Ranks the members of each group over trailing 7 and 30 day windows. Every
(group, leaderboard type, window) snapshot is rebuilt from scratch and
swapped in within one transaction, so readers see either the previous
snapshot or the new one.
"""

import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import click
from dotenv import load_dotenv

from topfrag_pipeline.core.database_manager import DatabaseManager
from topfrag_pipeline.metrics import LEADERBOARD_RUN_DURATION, LEADERBOARD_RUNS


# Leaderboard type -> player_match_summaries column it ranks on
LEADERBOARD_SOURCES: Dict[str, str] = {
    "aim": "headshot_percentage",
    "impact": "average_damage_per_round",
    "round_swing": "clutch_success_rate",
    "fragger": "fragger_score",
    "support": "support_score",
    "opener": "opener_score",
    "closer": "closer_score",
}

LEADERBOARD_TYPES = tuple(LEADERBOARD_SOURCES)

# Window name -> trailing days
WINDOWS: Dict[str, int] = {"7d": 7, "30d": 30}


def window_bounds(window: str, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    Start and end of a trailing window.

    The start is floored to midnight UTC so runs during the same day
    rank over the same matches.

    Raises:
        ValueError: For an unknown window
    """
    if window not in WINDOWS:
        raise ValueError(f"Unknown window '{window}', expected one of {', '.join(WINDOWS)}")

    now = now or datetime.now(timezone.utc)
    start = (now - timedelta(days=WINDOWS[window])).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    return start, now


def rank_entries(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Order rows by value descending (ties by steam id) and number them from 1."""
    ordered = sorted(rows, key=lambda row: (-float(row["value"]), str(row["steam_id"])))
    return [
        {
            "position": position,
            "player_id": row["player_id"],
            "steam_id": row["steam_id"],
            "value": round(float(row["value"]), 4),
            "matches": row.get("matches", 0),
        }
        for position, row in enumerate(ordered, start=1)
    ]


class LeaderboardCalculator:
    """
    Computes leaderboard snapshots from player match summaries.

    Example:
        >>> calculator = LeaderboardCalculator(db)
        >>> calculator.calculate(group_id=1, leaderboard_type="fragger", window="7d")
        [{'position': 1, 'player_id': 12, 'steam_id': '7656...', 'value': 1.42, 'matches': 5}, ...]
    """

    def __init__(self, database_manager: DatabaseManager, logger: Optional[logging.Logger] = None):
        self.db = database_manager
        self.logger = logger or logging.getLogger(__name__)

    def calculate(
        self,
        group_id: int,
        leaderboard_type: str,
        window: str,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """
        Rebuild one leaderboard snapshot.

        Args:
            group_id: Group whose members are ranked
            leaderboard_type: One of LEADERBOARD_TYPES
            window: "7d" or "30d"
            now: End of the window (defaults to the current time)

        Returns:
            Ranked entries written to the snapshot (empty if nobody played)

        Raises:
            ValueError: For an unknown type or window
        """
        if leaderboard_type not in LEADERBOARD_SOURCES:
            raise ValueError(
                f"Unknown leaderboard type '{leaderboard_type}', "
                f"expected one of {', '.join(LEADERBOARD_TYPES)}"
            )
        column = LEADERBOARD_SOURCES[leaderboard_type]
        window_start, window_end = window_bounds(window, now)

        with self.db.transaction() as cur:
            cur.execute(
                f"""
                SELECT p.id AS player_id,
                       p.steam_id,
                       AVG(pms.{column}) AS value,
                       COUNT(*) AS matches
                FROM player_match_summaries pms
                JOIN players p ON p.id = pms.player_id
                JOIN group_members gm ON gm.steam_id = p.steam_id AND gm.group_id = %s
                JOIN matches m ON m.id = pms.match_id
                WHERE m.match_datetime >= %s AND m.match_datetime <= %s
                GROUP BY p.id, p.steam_id
                """,
                (group_id, window_start, window_end),
            )
            entries = rank_entries(cur.fetchall())

            cur.execute(
                """
                DELETE FROM leaderboard_entries
                WHERE group_id = %s AND leaderboard_type = %s AND time_window = %s
                """,
                (group_id, leaderboard_type, window),
            )
            if entries:
                cur.executemany(
                    """
                    INSERT INTO leaderboard_entries
                        (group_id, leaderboard_type, time_window, player_id, position, value,
                         window_start, window_end, calculated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, NOW())
                    """,
                    [
                        (
                            group_id,
                            leaderboard_type,
                            window,
                            entry["player_id"],
                            entry["position"],
                            entry["value"],
                            window_start,
                            window_end,
                        )
                        for entry in entries
                    ],
                )

        self.logger.debug(
            f"Leaderboard {leaderboard_type}/{window} for group {group_id}: {len(entries)} entries"
        )
        return entries

    def run_all(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Rebuild every leaderboard for every group.

        A failed snapshot is logged and counted; the remaining ones still run.

        Returns:
            {"groups", "calculated", "failed", "timestamp"}
        """
        start_time = time.time()
        now = now or datetime.now(timezone.utc)
        groups = self.db.list_groups()

        calculated = 0
        failed = 0
        for group in groups:
            for leaderboard_type in LEADERBOARD_TYPES:
                for window in WINDOWS:
                    try:
                        self.calculate(group["id"], leaderboard_type, window, now=now)
                        calculated += 1
                        LEADERBOARD_RUNS.labels(
                            leaderboard_type=leaderboard_type, time_window=window, status="success"
                        ).inc()
                    except Exception as e:
                        failed += 1
                        LEADERBOARD_RUNS.labels(
                            leaderboard_type=leaderboard_type, time_window=window, status="failed"
                        ).inc()
                        self.logger.error(
                            f"Leaderboard {leaderboard_type}/{window} for group "
                            f"{group['id']} failed: {e}",
                            exc_info=True,
                        )

        LEADERBOARD_RUN_DURATION.observe(time.time() - start_time)
        self.logger.info(
            f"Leaderboards rebuilt for {len(groups)} groups: {calculated} snapshots, {failed} failed"
        )
        return {
            "groups": len(groups),
            "calculated": calculated,
            "failed": failed,
            "timestamp": now.isoformat(),
        }

    def get_leaderboard(self, group_id: int, leaderboard_type: str, window: str) -> List[Dict[str, Any]]:
        """Stored snapshot ordered by position."""
        return self.db.execute_query(
            """
            SELECT le.position, le.player_id, p.steam_id, p.name, le.value,
                   le.window_start, le.window_end, le.calculated_at
            FROM leaderboard_entries le
            JOIN players p ON p.id = le.player_id
            WHERE le.group_id = %s AND le.leaderboard_type = %s AND le.time_window = %s
            ORDER BY le.position
            """,
            (group_id, leaderboard_type, window),
        ) or []


@click.command()
@click.option("--env-file", default=".env", help="Path to .env file (default: .env)")
@click.option("--log-level", default="INFO", help="Log level (default: INFO)")
@click.option("--continuous", is_flag=True, default=False, help="Run continuously at intervals")
@click.option(
    "--interval",
    default=lambda: int(os.getenv("LEADERBOARD_INTERVAL", "3600")),
    type=int,
    help="Interval in seconds (default: LEADERBOARD_INTERVAL or 3600)",
)
def calculate_leaderboards(env_file: str, log_level: str, continuous: bool, interval: int):
    """Rebuild all group leaderboards.

    Example:
        python -m topfrag_pipeline.services.leaderboard_calculator --continuous --interval 3600
    """
    load_dotenv(env_file)

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger = logging.getLogger(__name__)

    def run_calculation():
        """Execute a single leaderboard run."""
        try:
            with DatabaseManager.from_env(os.environ) as db:
                result = LeaderboardCalculator(db, logger=logger).run_all()

                click.echo("\n" + "=" * 60)
                click.echo("Leaderboard Calculation Complete")
                click.echo("=" * 60)
                click.echo(f"  Groups: {result['groups']}")
                click.echo(f"  Snapshots calculated: {result['calculated']}")
                click.echo(f"  Failed: {result['failed']}")
                click.echo(f"  Timestamp: {result['timestamp']}")
                click.echo("=" * 60 + "\n")

                if result["failed"] > 0:
                    click.echo(f"Warning: {result['failed']} snapshots failed", err=True)

        except Exception as e:
            logger.error(f"Leaderboard calculation failed: {e}")
            click.echo(f"Error: {e}", err=True)
            if not continuous:
                raise click.Abort()

    if continuous:
        logger.info(f"Starting leaderboard calculator in continuous mode (interval: {interval}s)")

        while True:
            run_calculation()
            logger.info(f"Sleeping for {interval} seconds...")
            time.sleep(interval)
    else:
        run_calculation()


if __name__ == "__main__":
    calculate_leaderboards()
