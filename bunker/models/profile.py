"""
Profile model
用户统计数据模型（仅由游戏结束统计写入）
"""

from sqlalchemy import Column, String, Integer, DateTime, JSON
from bunker.core.database import Base
from bunker.core.utils import utcnow


class Profile(Base):
    """Per-user game statistics"""

    __tablename__ = "profiles"

    user_id = Column(String(64), primary_key=True)
    games_played = Column(Integer, default=0, nullable=False)
    games_won = Column(Integer, default=0, nullable=False)
    last_game_at = Column(DateTime, nullable=True)
    achievements = Column(JSON, default=list, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<Profile(user_id={self.user_id}, played={self.games_played}, won={self.games_won})>"

    @property
    def win_rate(self) -> float:
        """Calculate win rate percentage"""
        if self.games_played == 0:
            return 0.0
        return (self.games_won / self.games_played) * 100
