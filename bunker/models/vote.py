"""
Vote model
投票数据模型
"""

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, UniqueConstraint
from bunker.core.database import Base
from bunker.core.utils import utcnow


class Vote(Base):
    """One ballot per voter per round; re-voting overwrites the target"""

    __tablename__ = "votes"
    __table_args__ = (
        UniqueConstraint("room_id", "round", "voter_id", name="uq_votes_room_round_voter"),
    )

    id = Column(String(36), primary_key=True, index=True)
    room_id = Column(String(36), ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False, index=True)
    round = Column(Integer, nullable=False)
    voter_id = Column(String(36), ForeignKey("players.id", ondelete="CASCADE"), nullable=False)
    target_id = Column(String(36), ForeignKey("players.id", ondelete="CASCADE"), nullable=False)
    weight = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Vote(round={self.round}, voter={self.voter_id}, target={self.target_id}, weight={self.weight})>"
