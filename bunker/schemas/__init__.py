# Pydantic schemas
from .common import ErrorResponse, MessageResponse, RoomEvent, SystemHealth
from .game import (
    GamePhase, CharacteristicCategory, CardType, PlayerEffects,
    ImmunityEffect, DoubleVoteEffect, VoteRestriction, TransitionResult,
)
from .room import RoundMode, RoomSettings

__all__ = [
    "ErrorResponse", "MessageResponse", "RoomEvent", "SystemHealth",
    "GamePhase", "CharacteristicCategory", "CardType", "PlayerEffects",
    "ImmunityEffect", "DoubleVoteEffect", "VoteRestriction", "TransitionResult",
    "RoundMode", "RoomSettings",
]
