"""
Characteristic model
玩家特征数据模型
"""

from sqlalchemy import Column, String, Integer, Boolean, ForeignKey
from bunker.core.database import Base


class Characteristic(Base):
    """A private attribute of a player, revealed during play"""

    __tablename__ = "characteristics"

    id = Column(String(36), primary_key=True, index=True)
    player_id = Column(String(36), ForeignKey("players.id", ondelete="CASCADE"), nullable=False, index=True)
    category = Column(String(32), nullable=False)
    name = Column(String(64), nullable=False)  # 展示用标签
    value = Column(String(255), nullable=False)
    is_revealed = Column(Boolean, default=False, nullable=False)
    reveal_round = Column(Integer, nullable=True)
    sort_order = Column(Integer, default=0, nullable=False)

    def __repr__(self):
        return f"<Characteristic(player={self.player_id}, {self.category}={self.value}, revealed={self.is_revealed})>"

    def reveal(self, round_number: int) -> None:
        if not self.is_revealed:
            self.is_revealed = True
            self.reveal_round = round_number
