"""Unit tests for event batch validation."""

import pytest

from topfrag_pipeline.validation.event_validator import (
    EVENT_NAMES,
    EventValidationError,
    UnknownEventError,
    validate_batch,
)

from factories import damage_record, grenade_record, gunfight_record, round_record


RECORDS = {
    "round": round_record,
    "gunfight": gunfight_record,
    "grenade": grenade_record,
    "damage": damage_record,
}

LONG_STEAM_ID = "7" * 256


def flashed(**player):
    return [{"steam_id": "76561198000000006", **player}]


# ============================================================================
# Event Names
# ============================================================================


class TestEventNames:
    """Test event name handling."""

    def test_unknown_event_lists_valid_names(self):
        """Should list exactly the four event names."""
        with pytest.raises(UnknownEventError) as exc_info:
            validate_batch("kill", {"data": [gunfight_record()]})

        assert str(exc_info.value) == (
            "Invalid event name 'kill'. Must be one of: round, gunfight, grenade, damage"
        )

    def test_event_names(self):
        assert EVENT_NAMES == ("round", "gunfight", "grenade", "damage")

    def test_unknown_event_checked_before_body(self):
        """Should reject the event name even when the body is invalid."""
        with pytest.raises(UnknownEventError):
            validate_batch("kill", None)


# ============================================================================
# Record Validation
# ============================================================================


class TestRecordValidation:
    """Test per-record range and type rules."""

    @pytest.mark.parametrize(
        "event_name,record",
        [
            ("gunfight", gunfight_record()),
            ("grenade", grenade_record()),
            ("damage", damage_record()),
            ("round", round_record()),
            ("round", round_record(event_type="end", winner="CT", duration=95, round_time=95)),
        ],
    )
    def test_valid_records_accepted(self, event_name, record):
        batch = validate_batch(event_name, {"data": [record]})

        assert len(batch.data) == 1
        assert batch.event_name == event_name

    def test_hp_out_of_range_rejected_with_path(self):
        """Should name the offending record and field."""
        records = [gunfight_record(), gunfight_record(player_1_hp_start=101)]

        with pytest.raises(EventValidationError) as exc_info:
            validate_batch("gunfight", {"data": records})

        assert "data.1.player_1_hp_start" in exc_info.value.errors
        assert "player_1_hp_start" in str(exc_info.value)

    def test_round_time_upper_bound(self):
        with pytest.raises(EventValidationError) as exc_info:
            validate_batch("damage", {"data": [damage_record(round_time=301)]})

        assert "data.0.round_time" in exc_info.value.errors

    def test_round_number_must_be_positive(self):
        with pytest.raises(EventValidationError) as exc_info:
            validate_batch("damage", {"data": [damage_record(round_number=0)]})

        assert "data.0.round_number" in exc_info.value.errors

    def test_coordinates_out_of_range(self):
        record = gunfight_record(player_2_position={"x": 10001, "y": 0, "z": 0})

        with pytest.raises(EventValidationError) as exc_info:
            validate_batch("gunfight", {"data": [record]})

        assert "data.0.player_2_position.x" in exc_info.value.errors

    def test_aim_components_bounded(self):
        record = grenade_record(player_aim={"x": 1.5, "y": 0, "z": 0})

        with pytest.raises(EventValidationError) as exc_info:
            validate_batch("grenade", {"data": [record]})

        assert "data.0.player_aim.x" in exc_info.value.errors

    def test_unknown_grenade_type(self):
        with pytest.raises(EventValidationError) as exc_info:
            validate_batch("grenade", {"data": [grenade_record(grenade_type="c4")]})

        assert "data.0.grenade_type" in exc_info.value.errors

    def test_round_winner_must_be_side(self):
        with pytest.raises(EventValidationError) as exc_info:
            validate_batch("round", {"data": [round_record(event_type="end", winner="A")]})

        assert "data.0.winner" in exc_info.value.errors

    def test_weapon_length_limit(self):
        with pytest.raises(EventValidationError):
            validate_batch("damage", {"data": [damage_record(weapon="x" * 51)]})

    def test_victor_optional(self):
        batch = validate_batch("gunfight", {"data": [gunfight_record(victor_steam_id=None)]})

        assert batch.records()[0]["victor_steam_id"] is None

    def test_unknown_fields_ignored(self):
        batch = validate_batch("damage", {"data": [damage_record(hitgroup="head")]})

        assert "hitgroup" not in batch.records()[0]


# ============================================================================
# Batch Envelope
# ============================================================================


class TestBatchEnvelope:
    """Test the batch envelope shared by all event types."""

    def test_envelope_defaults_to_single_batch(self):
        batch = validate_batch("damage", {"data": [damage_record()]})

        assert (batch.batch_index, batch.total_batches, batch.is_last) == (1, 1, True)

    def test_envelope_fields_accepted_for_every_event(self):
        for event_name, record in [
            ("round", round_record()),
            ("gunfight", gunfight_record()),
            ("grenade", grenade_record()),
            ("damage", damage_record()),
        ]:
            batch = validate_batch(
                event_name,
                {"data": [record], "batch_index": 2, "total_batches": 3, "is_last": False},
            )
            assert batch.batch_index == 2
            assert batch.is_last is False

    def test_empty_data_rejected(self):
        with pytest.raises(EventValidationError) as exc_info:
            validate_batch("gunfight", {"data": []})

        assert "data" in exc_info.value.errors

    def test_missing_data_rejected(self):
        with pytest.raises(EventValidationError) as exc_info:
            validate_batch("round", {"batch_index": 1})

        assert "data" in exc_info.value.errors

    def test_batch_index_cannot_exceed_total(self):
        with pytest.raises(EventValidationError) as exc_info:
            validate_batch(
                "damage", {"data": [damage_record()], "batch_index": 3, "total_batches": 2}
            )

        assert "batch_index" in exc_info.value.errors

    def test_non_object_body_rejected(self):
        with pytest.raises(EventValidationError) as exc_info:
            validate_batch("damage", [damage_record()])

        assert "__root__" in exc_info.value.errors

    def test_one_bad_record_rejects_whole_batch(self):
        records = [damage_record() for _ in range(5)] + [damage_record(health_damage=-1)]

        with pytest.raises(EventValidationError) as exc_info:
            validate_batch("damage", {"data": records})

        assert list(exc_info.value.errors) == ["data.5.health_damage"]


# ============================================================================
# Field Bounds
# ============================================================================


class TestFieldBounds:
    """Test every numeric, length and enum bound on both sides."""

    @pytest.mark.parametrize(
        "event_name,field,bad_value,expected_path",
        [
            ("round", "round_number", 0, "data.0.round_number"),
            ("round", "tick_timestamp", -1, "data.0.tick_timestamp"),
            ("round", "round_time", -1, "data.0.round_time"),
            ("round", "round_time", 301, "data.0.round_time"),
            ("round", "duration", 0, "data.0.duration"),
            ("round", "duration", 301, "data.0.duration"),
            ("round", "event_type", "freeze", "data.0.event_type"),
            ("gunfight", "tick_timestamp", -1, "data.0.tick_timestamp"),
            ("gunfight", "round_time", -1, "data.0.round_time"),
            ("gunfight", "round_time", 301, "data.0.round_time"),
            ("gunfight", "player_1_steam_id", LONG_STEAM_ID, "data.0.player_1_steam_id"),
            ("gunfight", "victor_steam_id", LONG_STEAM_ID, "data.0.victor_steam_id"),
            ("gunfight", "player_2_hp_start", -1, "data.0.player_2_hp_start"),
            ("gunfight", "player_1_armor", -1, "data.0.player_1_armor"),
            ("gunfight", "player_2_armor", 101, "data.0.player_2_armor"),
            ("gunfight", "player_1_equipment_value", -1, "data.0.player_1_equipment_value"),
            ("gunfight", "player_2_equipment_value", 10001, "data.0.player_2_equipment_value"),
            ("gunfight", "player_1_weapon", "x" * 51, "data.0.player_1_weapon"),
            ("gunfight", "player_1_position", {"x": 0, "y": 0, "z": -10000.5}, "data.0.player_1_position.z"),
            ("gunfight", "distance", -0.5, "data.0.distance"),
            ("gunfight", "distance", 10000.5, "data.0.distance"),
            ("gunfight", "penetrated_objects", -1, "data.0.penetrated_objects"),
            ("gunfight", "penetrated_objects", 101, "data.0.penetrated_objects"),
            ("gunfight", "damage_dealt", -1, "data.0.damage_dealt"),
            ("gunfight", "damage_dealt", 1001, "data.0.damage_dealt"),
            ("gunfight", "player_1_side", "A", "data.0.player_1_side"),
            ("grenade", "round_time", -1, "data.0.round_time"),
            ("grenade", "round_time", 301, "data.0.round_time"),
            ("grenade", "player_steam_id", LONG_STEAM_ID, "data.0.player_steam_id"),
            ("grenade", "player_aim", {"x": 0, "y": -1.01, "z": 0}, "data.0.player_aim.y"),
            ("grenade", "grenade_final_position", {"x": 10001, "y": 0, "z": 0}, "data.0.grenade_final_position.x"),
            ("grenade", "damage_dealt", -1, "data.0.damage_dealt"),
            ("grenade", "damage_dealt", 1001, "data.0.damage_dealt"),
            ("grenade", "flash_duration", -0.5, "data.0.flash_duration"),
            ("grenade", "flash_duration", 10.5, "data.0.flash_duration"),
            ("grenade", "throw_type", "wallbang", "data.0.throw_type"),
            ("grenade", "effectiveness_rating", -1, "data.0.effectiveness_rating"),
            ("grenade", "effectiveness_rating", 101, "data.0.effectiveness_rating"),
            ("grenade", "smoke_blocking_duration", -1, "data.0.smoke_blocking_duration"),
            ("grenade", "affected_players", flashed(flash_duration=-0.1), "data.0.affected_players.0.flash_duration"),
            ("grenade", "affected_players", flashed(flash_duration=10.5), "data.0.affected_players.0.flash_duration"),
            ("grenade", "affected_players", flashed(damage_taken=-1), "data.0.affected_players.0.damage_taken"),
            ("grenade", "affected_players", flashed(damage_taken=1001), "data.0.affected_players.0.damage_taken"),
            ("grenade", "affected_players", [{"steam_id": LONG_STEAM_ID}], "data.0.affected_players.0.steam_id"),
            ("damage", "round_time", 301, "data.0.round_time"),
            ("damage", "attacker_steam_id", LONG_STEAM_ID, "data.0.attacker_steam_id"),
            ("damage", "victim_steam_id", LONG_STEAM_ID, "data.0.victim_steam_id"),
            ("damage", "damage", -1, "data.0.damage"),
            ("damage", "damage", 1001, "data.0.damage"),
            ("damage", "armor_damage", -1, "data.0.armor_damage"),
            ("damage", "armor_damage", 1001, "data.0.armor_damage"),
            ("damage", "health_damage", 1001, "data.0.health_damage"),
        ],
    )
    def test_out_of_range_rejected(self, event_name, field, bad_value, expected_path):
        record = RECORDS[event_name](**{field: bad_value})

        with pytest.raises(EventValidationError) as exc_info:
            validate_batch(event_name, {"data": [record]})

        assert list(exc_info.value.errors) == [expected_path]

    @pytest.mark.parametrize(
        "event_name,field,value",
        [
            ("round", "tick_timestamp", 0),
            ("round", "round_time", 0),
            ("round", "round_time", 300),
            ("round", "duration", 1),
            ("round", "duration", 300),
            ("gunfight", "round_number", 1),
            ("gunfight", "round_time", 0),
            ("gunfight", "round_time", 300),
            ("gunfight", "player_1_hp_start", 0),
            ("gunfight", "player_2_hp_start", 100),
            ("gunfight", "player_1_armor", 100),
            ("gunfight", "player_2_equipment_value", 10000),
            ("gunfight", "distance", 0),
            ("gunfight", "distance", 10000),
            ("gunfight", "penetrated_objects", 100),
            ("gunfight", "damage_dealt", 1000),
            ("gunfight", "player_1_steam_id", "7" * 255),
            ("gunfight", "player_1_position", {"x": -10000, "y": 10000, "z": 0}),
            ("grenade", "player_aim", {"x": -1, "y": 1, "z": 0}),
            ("grenade", "flash_duration", 10),
            ("grenade", "affected_players", flashed(flash_duration=10, damage_taken=1000)),
            ("grenade", "effectiveness_rating", 100),
            ("grenade", "smoke_blocking_duration", 0),
            ("damage", "damage", 0),
            ("damage", "armor_damage", 1000),
            ("damage", "weapon", "x" * 50),
        ],
    )
    def test_edges_accepted(self, event_name, field, value):
        batch = validate_batch(event_name, {"data": [RECORDS[event_name](**{field: value})]})

        assert batch.records()[0][field] == value

    def test_smoke_blocking_duration_kept(self):
        smoke = grenade_record(grenade_type="smokegrenade", smoke_blocking_duration=640)

        batch = validate_batch("grenade", {"data": [smoke, grenade_record()]})

        records = batch.records()
        assert records[0]["smoke_blocking_duration"] == 640
        assert records[1]["smoke_blocking_duration"] is None


# ============================================================================
# Boolean Fields
# ============================================================================


class TestBooleanFields:
    """Test that flags accept only true/false and 1/0."""

    @pytest.mark.parametrize(
        "value,expected",
        [(True, True), (False, False), (1, True), (0, False), ("1", True), ("0", False)],
    )
    @pytest.mark.parametrize(
        "event_name,field",
        [
            ("gunfight", "player_1_flashed"),
            ("gunfight", "player_2_flashed"),
            ("gunfight", "headshot"),
            ("gunfight", "wallbang"),
            ("damage", "headshot"),
        ],
    )
    def test_accepted_values(self, event_name, field, value, expected):
        batch = validate_batch(event_name, {"data": [RECORDS[event_name](**{field: value})]})

        assert batch.records()[0][field] is expected

    @pytest.mark.parametrize("value", ["true", "yes", "on", "TRUE", "", 1.0, 2, -1, None, [True]])
    def test_rejected_values(self, value):
        with pytest.raises(EventValidationError) as exc_info:
            validate_batch("gunfight", {"data": [gunfight_record(headshot=value)]})

        assert list(exc_info.value.errors) == ["data.0.headshot"]

    @pytest.mark.parametrize("value,expected", [("0", False), (1, True)])
    def test_is_last_accepts_numeric_flags(self, value, expected):
        batch = validate_batch("damage", {"data": [damage_record()], "is_last": value})

        assert batch.is_last is expected

    def test_is_last_rejects_words(self):
        with pytest.raises(EventValidationError) as exc_info:
            validate_batch("damage", {"data": [damage_record()], "is_last": "yes"})

        assert "is_last" in exc_info.value.errors
