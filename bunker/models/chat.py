"""
Chat message model
房间聊天消息数据模型
"""

from sqlalchemy import Column, String, DateTime, Text, ForeignKey
from bunker.core.database import Base
from bunker.core.utils import utcnow


class ChatMessage(Base):
    """Room chat line; player_id is NULL for system messages"""

    __tablename__ = "chat_messages"

    id = Column(String(36), primary_key=True, index=True)
    room_id = Column(String(36), ForeignKey("rooms.id", ondelete="CASCADE"), nullable=False, index=True)
    player_id = Column(String(36), ForeignKey("players.id", ondelete="SET NULL"), nullable=True)
    message = Column(Text, nullable=False)
    message_type = Column(String(16), default="chat", nullable=False)  # chat / system
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<ChatMessage(room={self.room_id}, type={self.message_type})>"
