"""Event Validator - structural and range validation of parser event batches.

Each event type has a pydantic model describing one record; a batch wraps
the records in a common envelope (batch_index / total_batches / is_last).
Any invalid record rejects the whole batch.

Example:
    >>> batch = validate_batch("damage", {"data": [record]})
    >>> batch.batch_index, batch.total_batches, batch.is_last
    (1, 1, True)
"""

import logging
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Type

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)


logger = logging.getLogger(__name__)


EVENT_NAMES = ("round", "gunfight", "grenade", "damage")

SteamId = Annotated[str, Field(max_length=255)]
Coordinate = Annotated[float, Field(ge=-10000, le=10000)]
AimComponent = Annotated[float, Field(ge=-1, le=1)]
RoundTime = Annotated[int, Field(ge=0, le=300)]


def _boolean(value: Any) -> bool:
    # Only true/false, 1/0 and "1"/"0"; pydantic would also take "yes", "on", 1.0
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value in ("0", "1"):
        return value == "1"
    raise ValueError("must be true, false, 1 or 0")


Boolean = Annotated[bool, BeforeValidator(_boolean)]


class EventValidationError(Exception):
    """Raised when a batch fails validation.

    Attributes:
        errors: Dotted field path (e.g. "data.3.player_1_hp_start") -> message
    """

    def __init__(self, errors: Dict[str, str]):
        self.errors = errors
        fields = ", ".join(sorted(errors))
        super().__init__(f"The given data was invalid: {fields}")


class UnknownEventError(Exception):
    """Raised for event names outside round, gunfight, grenade, damage."""

    def __init__(self, event_name: str):
        self.event_name = event_name
        super().__init__(
            f"Invalid event name '{event_name}'. Must be one of: {', '.join(EVENT_NAMES)}"
        )


# ============================================================================
# Record models
# ============================================================================


class Position(BaseModel):
    x: Coordinate
    y: Coordinate
    z: Coordinate


class AimVector(BaseModel):
    x: AimComponent
    y: AimComponent
    z: AimComponent


class EventRecord(BaseModel):
    """Fields shared by every event record."""

    model_config = ConfigDict(extra="ignore")

    round_number: int = Field(..., ge=1)
    tick_timestamp: int = Field(..., ge=0)


class RoundEvent(EventRecord):
    round_time: Optional[int] = Field(None, ge=0, le=300)
    event_type: Literal["start", "end"]
    winner: Optional[Literal["CT", "T"]] = None
    duration: Optional[int] = Field(None, ge=1, le=300)


class GunfightEvent(EventRecord):
    round_time: RoundTime
    player_1_steam_id: SteamId
    player_2_steam_id: SteamId
    player_1_side: Optional[Literal["CT", "T"]] = None
    player_2_side: Optional[Literal["CT", "T"]] = None
    player_1_hp_start: int = Field(..., ge=0, le=100)
    player_2_hp_start: int = Field(..., ge=0, le=100)
    player_1_armor: int = Field(..., ge=0, le=100)
    player_2_armor: int = Field(..., ge=0, le=100)
    player_1_flashed: Boolean
    player_2_flashed: Boolean
    player_1_weapon: str = Field(..., max_length=50)
    player_2_weapon: str = Field(..., max_length=50)
    player_1_equipment_value: int = Field(..., ge=0, le=10000)
    player_2_equipment_value: int = Field(..., ge=0, le=10000)
    player_1_position: Position
    player_2_position: Position
    distance: float = Field(..., ge=0, le=10000)
    headshot: Boolean
    wallbang: Boolean
    penetrated_objects: int = Field(..., ge=0, le=100)
    victor_steam_id: Optional[str] = Field(None, max_length=255)
    damage_dealt: int = Field(..., ge=0, le=1000)


class AffectedPlayer(BaseModel):
    steam_id: SteamId
    flash_duration: Optional[float] = Field(None, ge=0, le=10)
    damage_taken: Optional[int] = Field(None, ge=0, le=1000)


class GrenadeEvent(EventRecord):
    round_time: RoundTime
    player_steam_id: SteamId
    grenade_type: Literal["hegrenade", "flashbang", "smokegrenade", "molotov", "incendiary", "decoy"]
    player_position: Position
    player_aim: AimVector
    grenade_final_position: Optional[Position] = None
    damage_dealt: int = Field(..., ge=0, le=1000)
    flash_duration: Optional[float] = Field(None, ge=0, le=10)
    affected_players: Optional[List[AffectedPlayer]] = None
    throw_type: Literal["lineup", "reaction", "pre_aim", "utility"]
    effectiveness_rating: Optional[int] = Field(None, ge=0, le=100)
    # Ticks the smoke blocked enemy line of sight
    smoke_blocking_duration: Optional[int] = Field(None, ge=0)


class DamageEvent(EventRecord):
    round_time: RoundTime
    attacker_steam_id: SteamId
    victim_steam_id: SteamId
    damage: int = Field(..., ge=0, le=1000)
    armor_damage: int = Field(..., ge=0, le=1000)
    health_damage: int = Field(..., ge=0, le=1000)
    headshot: Boolean
    weapon: str = Field(..., max_length=50)


# ============================================================================
# Batch envelopes
# ============================================================================


class EventBatch(BaseModel):
    """Envelope shared by all event types.

    Omitted envelope fields describe a single, final batch.
    """

    event_name: ClassVar[str] = ""

    total_batches: int = Field(1, ge=1)
    batch_index: int = Field(1, ge=1)
    is_last: Boolean = True

    @field_validator("batch_index")
    @classmethod
    def _index_within_total(cls, value: int, info: ValidationInfo) -> int:
        total = info.data.get("total_batches")
        if total is not None and value > total:
            raise ValueError(f"batch index {value} exceeds total batches {total}")
        return value

    def records(self) -> List[Dict[str, Any]]:
        """Validated records as plain dictionaries."""
        return [record.model_dump() for record in self.data]


class RoundBatch(EventBatch):
    event_name: ClassVar[str] = "round"
    data: List[RoundEvent] = Field(..., min_length=1)


class GunfightBatch(EventBatch):
    event_name: ClassVar[str] = "gunfight"
    data: List[GunfightEvent] = Field(..., min_length=1)


class GrenadeBatch(EventBatch):
    event_name: ClassVar[str] = "grenade"
    data: List[GrenadeEvent] = Field(..., min_length=1)


class DamageBatch(EventBatch):
    event_name: ClassVar[str] = "damage"
    data: List[DamageEvent] = Field(..., min_length=1)


BATCH_MODELS: Dict[str, Type[EventBatch]] = {
    "round": RoundBatch,
    "gunfight": GunfightBatch,
    "grenade": GrenadeBatch,
    "damage": DamageBatch,
}


def _format_errors(exc: ValidationError) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for error in exc.errors():
        path = ".".join(str(part) for part in error["loc"]) or "__root__"
        errors.setdefault(path, error["msg"])
    return errors


def validate_batch(event_name: str, payload: Any) -> EventBatch:
    """Validate an inbound event batch.

    Args:
        event_name: One of round, gunfight, grenade, damage
        payload: Decoded request body ({"data": [...], batch fields...})

    Returns:
        Validated batch model for the event type

    Raises:
        UnknownEventError: If event_name is not a known event type
        EventValidationError: If the envelope or any record is invalid
    """
    model = BATCH_MODELS.get(event_name)
    if model is None:
        raise UnknownEventError(event_name)

    if not isinstance(payload, dict):
        raise EventValidationError({"__root__": "Request body must be a JSON object"})

    try:
        return model.model_validate(payload)
    except ValidationError as e:
        errors = _format_errors(e)
        logger.info(f"Rejected {event_name} batch with {len(errors)} invalid field(s)")
        raise EventValidationError(errors) from e
