# Database models
from .room import Room
from .player import Player
from .vote import Vote
from .characteristic import Characteristic
from .special_card import SpecialCard
from .chat import ChatMessage
from .profile import Profile

__all__ = [
    "Room",
    "Player",
    "Vote",
    "Characteristic",
    "SpecialCard",
    "ChatMessage",
    "Profile",
]
