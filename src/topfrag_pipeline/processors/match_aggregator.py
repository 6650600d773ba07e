"""
Match Aggregator

Derives per-player and per-match statistics from a match's raw events.
Pure computation: callers load the roster and events and persist the result.
"""

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..core.schema import CLUTCH_SIZES


TICK_RATE = 64

# A kill counts as a trade if it lands within this window of the teammate's death
TRADE_WINDOW_TICKS = 5 * TICK_RATE

# Fuse and pop time between a flash leaving the hand and blinding anyone
FLASH_DETONATION_TICKS = 2 * TICK_RATE

EFFECTIVE_FLASH_SECONDS = 1.0

FIRE_GRENADES = ("molotov", "incendiary")

DAMAGING_GRENADES = ("hegrenade", "molotov", "incendiary")

TEAMS = ("A", "B")

COUNT_FIELDS = (
    "kills",
    "deaths",
    "assists",
    "headshots",
    "wallbangs",
    "first_kills",
    "first_deaths",
    "total_damage",
    "damage_taken",
    "he_damage",
    "grenade_damage",
    "effective_flashes",
    "smokes_used",
    "smoke_blocking_duration",
    "molotovs_used",
    "he_grenades_used",
    "flashbangs_used",
    "grenades_thrown",
    "flashes_leading_to_kills",
    "trade_kills",
    "traded_deaths",
    "trade_opportunities",
)


def clutch_field(size: int, outcome: str) -> str:
    return f"clutches_1v{size}_{outcome}"


def percentage(part: float, whole: float) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class MatchAggregator:
    """
    Aggregates one match worth of events into summaries.

    Rules:
    - A gunfight is decisive when its victor is one of the two participants;
      the other participant died.
    - First kill/death is the earliest decisive gunfight of a round by tick.
    - Assist: damage dealt to a victim later killed by a teammate in the same round.
    - Trade: killing the killer of a teammate within 5 seconds of that death.
    - Clutch: a player left as the last one alive on their team facing N
      opponents attempts a 1vN. It succeeds if their side wins the round per
      the round end event, or, when sides are unknown, if every opponent dies.
    """

    def __init__(self, logger=None):
        self.logger = logger

    def aggregate(
        self,
        roster: List[Dict[str, Any]],
        gunfights: List[Dict[str, Any]],
        damage_events: List[Dict[str, Any]],
        grenade_events: List[Dict[str, Any]],
        round_events: List[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """
        Aggregate a match.

        Args:
            roster: Rows with player_id, steam_id and team (A/B)
            gunfights: gunfight_events rows
            damage_events: damage_events rows
            grenade_events: grenade_events rows (affected_players decoded)
            round_events: round_events rows

        Returns:
            {"players": [...], "match": {...}, "counters": {...}}
        """
        team_of = {player["steam_id"]: player["team"] for player in roster}
        tallies = {player["steam_id"]: self._new_tally() for player in roster}

        kills = self._decisive_kills(gunfights, team_of)
        kills_by_round = defaultdict(list)
        for kill in kills:
            kills_by_round[kill["round_number"]].append(kill)

        round_ends = [event for event in round_events if event["event_type"] == "end"]
        winners = {
            event["round_number"]: event.get("winner") for event in round_ends if event.get("winner")
        }
        rounds_played = len(round_ends) or self._max_round(gunfights, damage_events, grenade_events)

        self._tally_kills(kills, tallies, team_of)
        self._tally_contact(gunfights, tallies)
        sides = self._sides_by_round(gunfights)

        for round_number, round_kills in kills_by_round.items():
            self._tally_first_kill(round_kills, tallies, team_of)
            self._tally_trades(round_kills, tallies, team_of)
            self._tally_clutches(
                round_kills, tallies, team_of, winners.get(round_number), sides.get(round_number, {})
            )

        self._tally_damage(damage_events, kills, tallies, team_of)
        self._tally_grenades(grenade_events, kills, tallies, team_of)

        if self.logger:
            unknown = self._unknown_participants(gunfights, team_of)
            if unknown:
                self.logger.debug(f"Ignored events for {len(unknown)} player(s) not on the roster")

        players = [
            self._player_summary(player, tallies[player["steam_id"]], rounds_played)
            for player in roster
        ]

        return {
            "players": players,
            "match": self._match_summary(players),
            "counters": {
                "total_rounds": len(round_ends),
                "total_fight_events": len(gunfights),
                "total_grenade_events": len(grenade_events),
            },
        }

    # ------------------------------------------------------------------
    # Event preparation
    # ------------------------------------------------------------------

    @staticmethod
    def _new_tally() -> Dict[str, Any]:
        tally: Dict[str, Any] = {field: 0 for field in COUNT_FIELDS}
        tally["enemy_flash_duration"] = 0.0
        tally["team_flash_duration"] = 0.0
        tally["death_times"] = []
        tally["contact_times"] = []
        tally["effectiveness_ratings"] = []
        for size in CLUTCH_SIZES:
            tally[clutch_field(size, "attempted")] = 0
            tally[clutch_field(size, "successful")] = 0
        return tally

    @staticmethod
    def _decisive_kills(
        gunfights: List[Dict[str, Any]], team_of: Dict[str, str]
    ) -> List[Dict[str, Any]]:
        kills = []
        for fight in gunfights:
            victor = fight.get("victor_steam_id")
            first, second = fight["player_1_steam_id"], fight["player_2_steam_id"]
            if victor not in (first, second):
                continue
            victim = second if victor == first else first
            if victor not in team_of or victim not in team_of:
                continue
            kills.append(
                {
                    "round_number": fight["round_number"],
                    "round_time": fight["round_time"],
                    "tick": fight["tick_timestamp"],
                    "killer": victor,
                    "victim": victim,
                    "headshot": bool(fight.get("headshot")),
                    "wallbang": bool(fight.get("wallbang")),
                }
            )
        kills.sort(key=lambda kill: (kill["round_number"], kill["tick"]))
        return kills

    @staticmethod
    def _sides_by_round(gunfights: List[Dict[str, Any]]) -> Dict[int, Dict[str, str]]:
        sides: Dict[int, Dict[str, str]] = defaultdict(dict)
        for fight in gunfights:
            for slot in ("player_1", "player_2"):
                side = fight.get(f"{slot}_side")
                if side:
                    sides[fight["round_number"]][fight[f"{slot}_steam_id"]] = side
        return sides

    @staticmethod
    def _max_round(*event_lists: Iterable[Dict[str, Any]]) -> int:
        return max(
            (event["round_number"] for events in event_lists for event in events), default=0
        )

    @staticmethod
    def _unknown_participants(
        gunfights: List[Dict[str, Any]], team_of: Dict[str, str]
    ) -> Set[str]:
        seen = set()
        for fight in gunfights:
            seen.add(fight["player_1_steam_id"])
            seen.add(fight["player_2_steam_id"])
        return seen - set(team_of)

    # ------------------------------------------------------------------
    # Tallies
    # ------------------------------------------------------------------

    @staticmethod
    def _tally_kills(kills, tallies, team_of) -> None:
        for kill in kills:
            killer, victim = tallies[kill["killer"]], tallies[kill["victim"]]
            victim["deaths"] += 1
            victim["death_times"].append(kill["round_time"])

            # Team kills count as a death only
            if team_of[kill["killer"]] == team_of[kill["victim"]]:
                continue

            killer["kills"] += 1
            if kill["headshot"]:
                killer["headshots"] += 1
            if kill["wallbang"]:
                killer["wallbangs"] += 1

    @staticmethod
    def _tally_contact(gunfights, tallies) -> None:
        first_contact: Dict[Tuple[str, int], int] = {}
        for fight in gunfights:
            for steam_id in (fight["player_1_steam_id"], fight["player_2_steam_id"]):
                if steam_id not in tallies:
                    continue
                key = (steam_id, fight["round_number"])
                if key not in first_contact or fight["round_time"] < first_contact[key]:
                    first_contact[key] = fight["round_time"]

        for (steam_id, _), round_time in first_contact.items():
            tallies[steam_id]["contact_times"].append(round_time)

    @staticmethod
    def _tally_first_kill(round_kills, tallies, team_of) -> None:
        # Team kills never open a round
        opening = next(
            (kill for kill in round_kills if team_of[kill["killer"]] != team_of[kill["victim"]]), None
        )
        if opening is None:
            return
        tallies[opening["killer"]]["first_kills"] += 1
        tallies[opening["victim"]]["first_deaths"] += 1

    @staticmethod
    def _tally_trades(round_kills, tallies, team_of) -> None:
        alive = set(tallies)
        traded: Set[int] = set()

        for index, kill in enumerate(round_kills):
            victim, killer = kill["victim"], kill["killer"]
            alive.discard(victim)

            # Every living teammate had a chance to trade this death
            for steam_id in alive:
                if team_of[steam_id] == team_of[victim]:
                    tallies[steam_id]["trade_opportunities"] += 1

            if team_of[killer] == team_of[victim]:
                continue

            is_trade = False
            for earlier_index in range(index):
                earlier = round_kills[earlier_index]
                if (
                    earlier["killer"] == victim
                    and team_of[earlier["victim"]] == team_of[killer]
                    and kill["tick"] - earlier["tick"] <= TRADE_WINDOW_TICKS
                ):
                    is_trade = True
                    if earlier_index not in traded:
                        traded.add(earlier_index)
                        tallies[earlier["victim"]]["traded_deaths"] += 1
            if is_trade:
                tallies[killer]["trade_kills"] += 1

    @staticmethod
    def _tally_clutches(round_kills, tallies, team_of, winner: Optional[str], sides) -> None:
        alive = {team: {sid for sid in tallies if team_of[sid] == team} for team in TEAMS}
        clutches: Dict[str, Tuple[str, int]] = {}

        for kill in round_kills:
            alive[team_of[kill["victim"]]].discard(kill["victim"])

            for team in TEAMS:
                other = "B" if team == "A" else "A"
                if team in clutches or len(alive[team]) != 1 or not alive[other]:
                    continue
                clutcher = next(iter(alive[team]))
                size = min(len(alive[other]), max(CLUTCH_SIZES))
                clutches[team] = (clutcher, size)

        for team, (clutcher, size) in clutches.items():
            other = "B" if team == "A" else "A"
            # Teammates share a side within a round
            side = sides.get(clutcher) or next(
                (side for sid, side in sides.items() if team_of.get(sid) == team), None
            )
            if winner and side:
                won = winner == side
            else:
                won = not alive[other]

            tallies[clutcher][clutch_field(size, "attempted")] += 1
            if won:
                tallies[clutcher][clutch_field(size, "successful")] += 1

    @staticmethod
    def _tally_damage(damage_events, kills, tallies, team_of) -> None:
        deaths = {(kill["round_number"], kill["victim"]): kill for kill in kills}
        assists: Set[Tuple[str, int, str]] = set()

        for event in damage_events:
            attacker, victim = event["attacker_steam_id"], event["victim_steam_id"]
            if victim in tallies:
                tallies[victim]["damage_taken"] += event["health_damage"]

            if attacker not in tallies or victim not in tallies or attacker == victim:
                continue
            if team_of[attacker] == team_of[victim]:
                continue

            tallies[attacker]["total_damage"] += event["health_damage"]

            death = deaths.get((event["round_number"], victim))
            if (
                death is not None
                and death["killer"] != attacker
                and team_of[death["killer"]] == team_of[attacker]
                and event["tick_timestamp"] <= death["tick"]
            ):
                assists.add((attacker, event["round_number"], victim))

        for attacker, _, _ in assists:
            tallies[attacker]["assists"] += 1

    @staticmethod
    def _tally_grenades(grenade_events, kills, tallies, team_of) -> None:
        kills_by_round = defaultdict(list)
        for kill in kills:
            kills_by_round[kill["round_number"]].append(kill)

        for grenade in grenade_events:
            thrower = grenade["player_steam_id"]
            if thrower not in tallies:
                continue
            tally = tallies[thrower]
            grenade_type = grenade["grenade_type"]

            tally["grenades_thrown"] += 1
            if grenade.get("effectiveness_rating") is not None:
                tally["effectiveness_ratings"].append(grenade["effectiveness_rating"])

            if grenade_type in DAMAGING_GRENADES:
                tally["grenade_damage"] += grenade["damage_dealt"] or 0
            if grenade_type == "hegrenade":
                tally["he_grenades_used"] += 1
                tally["he_damage"] += grenade["damage_dealt"] or 0
            elif grenade_type in FIRE_GRENADES:
                tally["molotovs_used"] += 1
            elif grenade_type == "smokegrenade":
                tally["smokes_used"] += 1
                tally["smoke_blocking_duration"] += grenade.get("smoke_blocking_duration") or 0
            elif grenade_type == "flashbang":
                tally["flashbangs_used"] += 1
                MatchAggregator._tally_flash(
                    grenade, tally, team_of, kills_by_round[grenade["round_number"]]
                )

    @staticmethod
    def _tally_flash(grenade, tally, team_of, round_kills) -> None:
        thrower_team = team_of[grenade["player_steam_id"]]
        effective = False
        led_to_kill = False

        for affected in grenade.get("affected_players") or []:
            duration = affected.get("flash_duration") or 0.0
            steam_id = affected.get("steam_id")
            if duration <= 0 or steam_id not in team_of:
                continue

            if team_of[steam_id] == thrower_team:
                tally["team_flash_duration"] += duration
                continue

            tally["enemy_flash_duration"] += duration
            if duration >= EFFECTIVE_FLASH_SECONDS:
                effective = True

            window_end = grenade["tick_timestamp"] + FLASH_DETONATION_TICKS + duration * TICK_RATE
            for kill in round_kills:
                if (
                    kill["victim"] == steam_id
                    and team_of[kill["killer"]] == thrower_team
                    and grenade["tick_timestamp"] <= kill["tick"] <= window_end
                ):
                    led_to_kill = True

        if effective:
            tally["effective_flashes"] += 1
        if led_to_kill:
            tally["flashes_leading_to_kills"] += 1

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    @staticmethod
    def _player_summary(player, tally, rounds_played: int) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "player_id": player.get("player_id"),
            "steam_id": player["steam_id"],
            "team": player["team"],
        }
        for field in COUNT_FIELDS:
            summary[field] = tally[field]
        summary["enemy_flash_duration"] = round(tally["enemy_flash_duration"], 2)
        summary["team_flash_duration"] = round(tally["team_flash_duration"], 2)
        smokes = tally["smokes_used"]
        summary["average_smoke_blocking_duration"] = (
            round(tally["smoke_blocking_duration"] / smokes, 1) if smokes else 0.0
        )

        attempts = successes = 0
        for size in CLUTCH_SIZES:
            attempted = tally[clutch_field(size, "attempted")]
            successful = tally[clutch_field(size, "successful")]
            summary[clutch_field(size, "attempted")] = attempted
            summary[clutch_field(size, "successful")] = successful
            attempts += attempted
            successes += successful

        rounds = max(rounds_played, 1)
        summary["average_damage_per_round"] = round(tally["total_damage"] / rounds, 2)
        summary["kd_ratio"] = round(tally["kills"] / max(tally["deaths"], 1), 2)
        summary["headshot_percentage"] = percentage(tally["headshots"], tally["kills"])
        summary["clutch_success_rate"] = percentage(successes, attempts)

        summary["complexion_inputs"] = {
            # opener
            "average_round_time_of_death": mean(tally["death_times"]),
            "average_time_to_contact": mean(tally["contact_times"]),
            "first_kills_plus_minus": tally["first_kills"] - tally["first_deaths"],
            "first_kill_attempts": tally["first_kills"] + tally["first_deaths"],
            "traded_death_percentage": percentage(tally["traded_deaths"], tally["deaths"]),
            # closer
            "average_round_time_to_death": mean(tally["death_times"]),
            "average_round_time_to_contact": mean(tally["contact_times"]),
            "clutch_win_percentage": summary["clutch_success_rate"],
            "total_clutch_attempts": attempts,
            # support
            "total_grenades_thrown": tally["grenades_thrown"],
            "damage_dealt_from_grenades": tally["grenade_damage"],
            "enemy_flash_duration": tally["enemy_flash_duration"],
            "average_grenade_effectiveness": mean(tally["effectiveness_ratings"]),
            "total_flashes_leading_to_kills": tally["flashes_leading_to_kills"],
            # fragger
            "kill_death_ratio": tally["kills"] / max(tally["deaths"], 1),
            "total_kills_per_round": tally["kills"] / rounds,
            "average_damage_per_round": tally["total_damage"] / rounds,
            "trade_kill_percentage": percentage(tally["trade_kills"], tally["trade_opportunities"]),
            "trade_opportunities_per_round": tally["trade_opportunities"] / rounds,
        }
        return summary

    @staticmethod
    def _match_summary(players: List[Dict[str, Any]]) -> Dict[str, int]:
        def total(field: str) -> int:
            return sum(player[field] for player in players)

        summary = {
            "total_kills": total("kills"),
            "total_deaths": total("deaths"),
            "total_assists": total("assists"),
            "total_headshots": total("headshots"),
            "total_wallbangs": total("wallbangs"),
            "total_damage": total("total_damage"),
            "total_he_damage": total("he_damage"),
            "total_effective_flashes": total("effective_flashes"),
            "total_smokes_used": total("smokes_used"),
            "total_smoke_blocking_duration": total("smoke_blocking_duration"),
            "total_molotovs_used": total("molotovs_used"),
            "total_first_kills": total("first_kills"),
            "total_first_deaths": total("first_deaths"),
        }
        for size in CLUTCH_SIZES:
            for outcome in ("attempted", "successful"):
                field = clutch_field(size, outcome)
                summary[f"total_{field}"] = total(field)
        return summary
