"""
Player model
房间内玩家数据模型
"""

from sqlalchemy import Column, String, Boolean, DateTime, JSON, ForeignKey, UniqueConstraint
from bunker.core.database import Base
from bunker.core.utils import utcnow
from bunker.schemas.game import PlayerEffects


class Player(Base):
    """A user's seat in one room"""

    __tablename__ = "players"
    __table_args__ = (
        UniqueConstraint("room_id", "user_id", name="uq_players_room_user"),
    )

    id = Column(String(36), primary_key=True, index=True)
    room_id = Column(String(36), ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(50), nullable=False)

    is_host = Column(Boolean, default=False, nullable=False)
    is_ready = Column(Boolean, default=False, nullable=False)
    is_eliminated = Column(Boolean, default=False, nullable=False)

    # Presence
    joined_at = Column(DateTime, default=utcnow, nullable=False)
    last_seen_at = Column(DateTime, nullable=True)

    # 卡牌效果（免疫、双倍投票、投票限制），"metadata" 是 SQLAlchemy 保留属性名
    effects_data = Column("metadata", JSON, nullable=True)

    def __repr__(self):
        return f"<Player(id={self.id}, room_id={self.room_id}, name={self.name}, eliminated={self.is_eliminated})>"

    @property
    def effects(self) -> PlayerEffects:
        return PlayerEffects.model_validate(self.effects_data or {})

    def apply_effects(self, effects: PlayerEffects) -> None:
        self.effects_data = effects.model_dump(mode="json")
