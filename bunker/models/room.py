"""
Room model
房间数据模型
"""

from sqlalchemy import Column, String, Integer, DateTime, Enum, JSON
from bunker.core.database import Base
from bunker.core.utils import utcnow
from bunker.schemas.game import GamePhase
from bunker.schemas.room import RoomSettings


def phase_enum():
    return Enum(
        GamePhase,
        name="room_phase",
        values_callable=lambda enum: [member.value for member in enum],
        validate_strings=True,
    )


class Room(Base):
    """Room model for game sessions"""

    __tablename__ = "rooms"

    id = Column(String(36), primary_key=True, index=True)
    room_code = Column(String(12), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    host_id = Column(String(64), nullable=False, index=True)  # 房主 user_id

    # Lifecycle
    phase = Column(phase_enum(), default=GamePhase.WAITING, nullable=False, index=True)
    current_round = Column(Integer, default=1, nullable=False)
    round_started_at = Column(DateTime, nullable=True)  # 计时锚点，由客户端推算剩余时间

    # Room configuration
    max_players = Column(Integer, default=12, nullable=False)
    password_hash = Column(String(100), nullable=True)
    settings = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Room(id={self.id}, code={self.room_code}, phase={self.phase}, round={self.current_round})>"

    @property
    def room_settings(self) -> RoomSettings:
        """Typed view of the settings JSON"""
        return RoomSettings.model_validate(self.settings or {})

    def apply_settings(self, room_settings: RoomSettings) -> None:
        # 重新赋值整个 dict，确保 JSON 列变更被检测到
        self.settings = room_settings.model_dump(mode="json")

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)
