"""
Room event publisher
房间事件发布 - 本地 WebSocket 广播 + Redis 频道，尽力而为
"""

import logging
from typing import Any, Dict, Optional

from bunker.core.redis_client import RedisManager, redis_manager
from bunker.schemas.common import RoomEvent
from bunker.websocket.connection_manager import ConnectionManager, connection_manager

logger = logging.getLogger(__name__)


class EventType:
    PHASE_CHANGED = "phase_changed"
    VOTE_CAST = "vote_cast"
    PLAYER_ELIMINATED = "player_eliminated"
    GAME_FINISHED = "game_finished"
    CARD_USED = "card_used"
    PLAYER_JOINED = "player_joined"
    PLAYER_LEFT = "player_left"
    PLAYER_KICKED = "player_kicked"
    PLAYER_READY = "player_ready"
    PLAYERS_REMOVED = "players_removed"
    ROOM_CLOSED = "room_closed"
    CHAT_MESSAGE = "chat_message"


def room_channel(room_id: str) -> str:
    return f"room:{room_id}:events"


class RoomEventPublisher:
    """
    Fan out a room event to every subscriber.
    发布失败只记录日志，不影响已提交的状态变更
    """

    def __init__(
        self,
        connections: ConnectionManager = connection_manager,
        redis: Optional[RedisManager] = redis_manager,
    ):
        self.connections = connections
        self.redis = redis

    async def publish(self, room_id: str, event_type: str, data: Optional[Dict[str, Any]] = None) -> RoomEvent:
        event = RoomEvent(type=event_type, room_id=room_id, data=data or {})
        message = event.model_dump(mode="json")

        try:
            await self.connections.broadcast_to_room(room_id, message)
        except Exception as e:
            logger.error(f"[EVENT] Local broadcast of {event_type} to room {room_id} failed: {e}")

        if self.redis is not None and self.redis.client is not None:
            try:
                await self.redis.publish_message(room_channel(room_id), message)
            except Exception as e:
                logger.warning(f"[EVENT] Redis publish of {event_type} to room {room_id} failed: {e}")

        if event_type == EventType.ROOM_CLOSED:
            await self.connections.close_room(room_id, "Room closed")

        return event


# 全局事件发布器
room_events = RoomEventPublisher()


def get_event_publisher() -> RoomEventPublisher:
    """依赖注入入口，测试中可覆盖"""
    return room_events
