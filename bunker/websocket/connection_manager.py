"""
WebSocket连接管理器
管理本进程内的房间 WebSocket 连接与房间广播
"""

import json
import logging
from typing import Dict, Set, Optional, List
from datetime import datetime
from fastapi import WebSocket
from starlette.websockets import WebSocketState

from bunker.core.config import settings

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    WebSocket连接管理器
    每个用户同一时间保持一个连接，连接绑定到一个房间
    """

    def __init__(self, max_connections: int = settings.MAX_WEBSOCKET_CONNECTIONS):
        # 活跃连接: user_id -> WebSocket
        self.active_connections: Dict[str, WebSocket] = {}

        # 房间连接映射: room_id -> Set[user_id]
        self.room_connections: Dict[str, Set[str]] = {}

        # 用户房间映射: user_id -> room_id
        self.user_rooms: Dict[str, str] = {}

        self.connected_at: Dict[str, datetime] = {}
        self.max_connections = max_connections

    async def connect(self, user_id: str, websocket: WebSocket, room_id: str) -> bool:
        """建立WebSocket连接并加入房间"""
        if len(self.active_connections) >= self.max_connections and user_id not in self.active_connections:
            logger.warning(f"Connection limit reached, rejecting user {user_id}")
            return False

        await websocket.accept()

        # 如果用户已有连接，先断开旧连接
        if user_id in self.active_connections:
            await self.disconnect(user_id, "New connection established")

        self.active_connections[user_id] = websocket
        self.connected_at[user_id] = datetime.now()
        self.join_room(user_id, room_id)

        logger.info(f"User {user_id} connected to WebSocket in room {room_id}")
        return True

    async def disconnect(self, user_id: str, reason: str = "Connection closed") -> None:
        """断开WebSocket连接"""
        room_id = self.user_rooms.get(user_id)
        if room_id:
            self.leave_room(user_id, room_id)

        websocket = self.active_connections.pop(user_id, None)
        if websocket is not None and websocket.client_state == WebSocketState.CONNECTED:
            try:
                await websocket.close(code=1000, reason=reason)
            except RuntimeError:
                # 连接可能已经关闭
                logger.debug(f"WebSocket for user {user_id} already closed")

        self.connected_at.pop(user_id, None)
        logger.info(f"User {user_id} disconnected: {reason}")

    def join_room(self, user_id: str, room_id: str) -> None:
        old_room_id = self.user_rooms.get(user_id)
        if old_room_id and old_room_id != room_id:
            self.leave_room(user_id, old_room_id)

        self.room_connections.setdefault(room_id, set()).add(user_id)
        self.user_rooms[user_id] = room_id

    def leave_room(self, user_id: str, room_id: str) -> None:
        users = self.room_connections.get(room_id)
        if users is not None:
            users.discard(user_id)
            if not users:
                del self.room_connections[room_id]

        if self.user_rooms.get(user_id) == room_id:
            del self.user_rooms[user_id]

    async def send_to_user(self, user_id: str, message: dict) -> bool:
        """发送消息给特定用户；离线用户直接丢弃（客户端重连后会重新拉取状态）"""
        websocket = self.active_connections.get(user_id)
        if websocket is None:
            return False

        try:
            await websocket.send_text(json.dumps(message, default=str))
            return True
        except (RuntimeError, ConnectionError) as e:
            logger.warning(f"Error sending message to user {user_id}: {e}")
            await self.disconnect(user_id, "Send failed")
            return False

    async def broadcast_to_room(self, room_id: str, message: dict, exclude_user: Optional[str] = None) -> int:
        """广播消息到房间所有本地连接"""
        sent_count = 0
        for user_id in list(self.room_connections.get(room_id, set())):
            if exclude_user and user_id == exclude_user:
                continue
            if await self.send_to_user(user_id, message):
                sent_count += 1

        logger.debug(f"[BROADCAST] Sent '{message.get('type', 'unknown')}' to {sent_count} users in room {room_id}")
        return sent_count

    async def close_room(self, room_id: str, reason: str = "Room closed") -> None:
        """房间被删除时断开所有连接"""
        for user_id in list(self.room_connections.get(room_id, set())):
            await self.disconnect(user_id, reason)

    def get_connection_count(self) -> int:
        return len(self.active_connections)

    def get_room_users(self, room_id: str) -> List[str]:
        """获取房间内的用户列表"""
        return list(self.room_connections.get(room_id, set()))

    def is_user_connected(self, user_id: str) -> bool:
        return user_id in self.active_connections


# 全局连接管理器实例
connection_manager = ConnectionManager()
