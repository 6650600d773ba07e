"""Match Registry - match metadata, content hash dedup and player roster.

The match hash is a SHA-256 fingerprint of the scoreline, map, match type,
round/tick counts and the roster sorted by steam id, so the same demo parsed
twice hashes identically no matter which order the roster arrived in.
"""

import hashlib
import logging
from typing import Any, Dict, List, Optional

import psycopg

from ..core.database_manager import DatabaseManager
from .job_tracker import TERMINAL_STATUSES, JobNotFoundError, normalize_job_id


MATCH_TYPE_ALIASES = {
    "hltv": "hltv",
    "mm": "matchmaking",
    "matchmaking": "matchmaking",
    "faceit": "faceit",
    "esportal": "esportal",
}

PRODUCTION_ENVIRONMENT = "prod"


class DuplicateMatchError(Exception):
    """Raised when a match hash already belongs to a different match."""

    def __init__(self, match_hash: str, existing_match_id: Optional[int] = None):
        self.match_hash = match_hash
        self.existing_match_id = existing_match_id
        existing = f" as match {existing_match_id}" if existing_match_id is not None else ""
        super().__init__(f"Match already uploaded{existing} (hash {match_hash[:12]}...)")


def normalize_match_type(match_type: Optional[str]) -> str:
    """Map parser match types onto hltv/matchmaking/faceit/esportal/other."""
    return MATCH_TYPE_ALIASES.get(str(match_type or "other").lower(), "other")


def normalize_team(team: Optional[str]) -> str:
    """Map a team label onto A/B, defaulting to A."""
    return "B" if str(team or "A").upper() == "B" else "A"


def match_hash(match_meta: Dict[str, Any], players: Optional[List[Dict[str, Any]]] = None) -> str:
    """Deterministic content hash of a match.

    Args:
        match_meta: Match metadata from the parser
        players: Roster entries with steam_id and team

    Returns:
        Hex SHA-256 digest
    """
    parts = [
        match_meta.get("map") or "Unknown",
        match_meta.get("winning_team_score") or 0,
        match_meta.get("losing_team_score") or 0,
        match_meta.get("match_type") or "other",
        match_meta.get("total_rounds") or 0,
        match_meta.get("playback_ticks") or 0,
    ]

    for player in sorted(players or [], key=lambda p: str(p.get("steam_id") or "")):
        parts.append(player.get("steam_id") or "Unknown")
        parts.append(player.get("team") or "A")

    return hashlib.sha256("|".join(str(part) for part in parts).encode("utf-8")).hexdigest()


class MatchRegistry:
    """Creates and fills matches, and keeps the player roster.

    Example:
        >>> registry = MatchRegistry(db, environment="prod")
        >>> registry.apply_match_metadata(job_id, {"map": "de_dust2", ...}, players)
        42
    """

    def __init__(
        self,
        database_manager: DatabaseManager,
        environment: str = PRODUCTION_ENVIRONMENT,
        logger: Optional[logging.Logger] = None,
    ):
        self.db = database_manager
        self.environment = environment.lower()
        self.logger = logger or logging.getLogger(__name__)

    def compute_match_hash(
        self, match_meta: Dict[str, Any], players: Optional[List[Dict[str, Any]]] = None
    ) -> Optional[str]:
        """Match hash, or None outside production where dedup is disabled."""
        if self.environment != PRODUCTION_ENVIRONMENT:
            return None
        return match_hash(match_meta, players)

    def apply_match_metadata(
        self,
        job_id: str,
        match_meta: Dict[str, Any],
        players: Optional[List[Dict[str, Any]]] = None,
    ) -> int:
        """Fill the job's match with parser metadata and register its roster.

        Runs in one transaction with the job row locked, so repeated progress
        callbacks for the same job are applied one at a time.

        Args:
            job_id: Job UUID
            match_meta: map, scores, match_type, total_rounds, playback_ticks...
            players: Roster entries with steam_id, name and team

        Returns:
            The match id

        Raises:
            JobNotFoundError: If the job does not exist
            DuplicateMatchError: If another match already has the same hash
        """
        normalized = normalize_job_id(job_id)
        if normalized is None:
            raise JobNotFoundError(job_id)

        hash_value = self.compute_match_hash(match_meta, players)
        winning_team, winning_score, losing_score = self._scoreline(match_meta)

        with self.db.transaction() as cur:
            cur.execute(
                "SELECT id, match_id, status FROM processing_jobs WHERE uuid = %s FOR UPDATE",
                (normalized,),
            )
            job = cur.fetchone()
            if job is None:
                raise JobNotFoundError(job_id)

            match_id = job["match_id"]
            if job["status"] in TERMINAL_STATUSES and match_id is not None:
                self.logger.warning(
                    f"Match metadata for {job['status']} job {job_id} ignored"
                )
                return match_id

            if match_id is None:
                cur.execute("INSERT INTO matches DEFAULT VALUES RETURNING id")
                match_id = cur.fetchone()["id"]
                cur.execute(
                    "UPDATE processing_jobs SET match_id = %s, updated_at = NOW() WHERE id = %s",
                    (match_id, job["id"]),
                )

            if hash_value is not None:
                cur.execute(
                    "SELECT id FROM matches WHERE match_hash = %s AND id <> %s",
                    (hash_value, match_id),
                )
                existing = cur.fetchone()
                if existing is not None:
                    raise DuplicateMatchError(hash_value, existing["id"])

            try:
                cur.execute(
                    """
                    UPDATE matches
                    SET match_hash = %s,
                        map = %s,
                        winning_team = %s,
                        winning_team_score = %s,
                        losing_team_score = %s,
                        match_type = %s,
                        total_rounds = %s,
                        playback_ticks = %s,
                        match_datetime = COALESCE(%s, match_datetime),
                        updated_at = NOW()
                    WHERE id = %s
                    """,
                    (
                        hash_value,
                        match_meta.get("map") or "Unknown",
                        winning_team,
                        winning_score,
                        losing_score,
                        normalize_match_type(match_meta.get("match_type")),
                        int(match_meta.get("total_rounds") or 0),
                        int(match_meta.get("playback_ticks") or 0),
                        match_meta.get("match_datetime"),
                        match_id,
                    ),
                )
            except psycopg.errors.UniqueViolation as e:
                # Another job stored the same hash after the check above
                raise DuplicateMatchError(hash_value) from e

            added = self._register_roster(cur, match_id, players or [])

        self.logger.info(
            f"Applied metadata to match {match_id} for job {job_id} "
            f"({match_meta.get('map') or 'Unknown'} {winning_score}-{losing_score}, {added} new roster entries)"
        )
        return match_id

    def upsert_player(self, steam_id: str, display_name: Optional[str] = None) -> Dict[str, Any]:
        """Create the player if needed and count one more match for them.

        Both steps are one INSERT ... ON CONFLICT statement, so concurrent
        callers with a brand-new steam id create a single row and every call
        is counted.

        Returns:
            The player row after the update
        """
        with self.db.transaction() as cur:
            return self._upsert_player(cur, steam_id, display_name)

    def get_roster(self, match_id: int) -> List[Dict[str, Any]]:
        """Players of a match with their team, ordered by steam id."""
        return self.db.execute_query(
            """
            SELECT p.id AS player_id, p.steam_id, p.name, mp.team
            FROM match_players mp
            JOIN players p ON p.id = mp.player_id
            WHERE mp.match_id = %s
            ORDER BY p.steam_id
            """,
            (match_id,),
        ) or []

    def _upsert_player(self, cur, steam_id: str, display_name: Optional[str]) -> Dict[str, Any]:
        cur.execute(
            """
            INSERT INTO players (steam_id, name, first_seen_at, last_seen_at, total_matches)
            VALUES (%s, %s, NOW(), NOW(), 1)
            ON CONFLICT (steam_id) DO UPDATE
            SET total_matches = players.total_matches + 1,
                last_seen_at = NOW(),
                name = COALESCE(%s, players.name)
            RETURNING id, steam_id, name, first_seen_at, last_seen_at, total_matches
            """,
            (steam_id, display_name or "Unknown", display_name),
        )
        return cur.fetchone()

    def _register_roster(self, cur, match_id: int, players: List[Dict[str, Any]]) -> int:
        """Add players not yet on the match roster. Teams of existing entries never change."""
        cur.execute(
            """
            SELECT p.steam_id
            FROM match_players mp
            JOIN players p ON p.id = mp.player_id
            WHERE mp.match_id = %s
            """,
            (match_id,),
        )
        on_roster = {row["steam_id"] for row in cur.fetchall()}

        added = 0
        for player in players:
            steam_id = player.get("steam_id")
            if not steam_id:
                self.logger.warning(f"Skipping roster entry without steam_id for match {match_id}")
                continue
            if steam_id in on_roster:
                continue

            row = self._upsert_player(cur, str(steam_id), player.get("name"))
            cur.execute(
                """
                INSERT INTO match_players (match_id, player_id, team)
                VALUES (%s, %s, %s)
                ON CONFLICT (match_id, player_id) DO NOTHING
                """,
                (match_id, row["id"], normalize_team(player.get("team"))),
            )
            on_roster.add(steam_id)
            added += 1

        return added

    @staticmethod
    def _scoreline(match_meta: Dict[str, Any]):
        """Winning team and scores, with the larger score always stored as the winner's."""
        winning_team = normalize_team(match_meta.get("winning_team"))
        winning_score = int(match_meta.get("winning_team_score") or 0)
        losing_score = int(match_meta.get("losing_team_score") or 0)

        if losing_score > winning_score:
            winning_team = "A" if winning_team == "B" else "B"
            winning_score, losing_score = losing_score, winning_score

        return winning_team, winning_score, losing_score
