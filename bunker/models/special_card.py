"""
Special card model
特殊卡数据模型
"""

from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey
from bunker.core.database import Base
from bunker.core.utils import utcnow


class SpecialCard(Base):
    """One-shot ability card held by a player"""

    __tablename__ = "special_cards"

    id = Column(String(36), primary_key=True, index=True)
    room_id = Column(String(36), ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False, index=True)
    player_id = Column(String(36), ForeignKey("players.id", ondelete="CASCADE"), nullable=False, index=True)
    card_type = Column(String(40), nullable=False)

    is_used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime, nullable=True)
    used_in_round = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<SpecialCard(id={self.id}, type={self.card_type}, used={self.is_used})>"
