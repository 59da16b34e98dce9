"""
WebSocket endpoints
WebSocket连接端点 - 房间事件推送与心跳
"""

import json
import logging
from typing import Optional
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.ext.asyncio import AsyncSession

from bunker.core.database import get_db
from bunker.core.errors import GameError
from bunker.services.events import RoomEventPublisher, get_event_publisher
from bunker.services.presence import PresenceService
from bunker.services.room_store import RoomStore
from bunker.utils.security import verify_token
from bunker.websocket.connection_manager import connection_manager

logger = logging.getLogger(__name__)
router = APIRouter()


def get_user_from_websocket_token(websocket: WebSocket) -> Optional[str]:
    """从查询参数 token 中验证用户身份"""
    token = websocket.query_params.get("token")
    if not token:
        logger.warning("No token provided for WebSocket connection")
        return None

    user_id = verify_token(token)
    if not user_id:
        logger.warning("Invalid token for WebSocket connection")
    return user_id


@router.websocket("/{room_id}")
async def websocket_room_endpoint(
    websocket: WebSocket,
    room_id: str,
    db: AsyncSession = Depends(get_db),
    publisher: RoomEventPublisher = Depends(get_event_publisher),
):
    """
    房间WebSocket连接端点
    只推送事件；所有状态修改都通过 HTTP API
    """
    logger.info(f"[WS_CONNECT] WebSocket connection attempt for room {room_id}")

    user_id = get_user_from_websocket_token(websocket)
    if not user_id:
        await websocket.close(code=4001, reason="Authentication required")
        return

    player = await RoomStore(db).find_player_for_user(room_id, user_id)
    if player is None:
        logger.warning(f"[WS_CONNECT] User {user_id} is not a member of room {room_id}")
        await websocket.close(code=4003, reason="Not a member of this room")
        return
    player_id = player.id

    connected = await connection_manager.connect(user_id, websocket, room_id)
    if not connected:
        await websocket.close(code=4002, reason="Connection failed")
        return

    presence = PresenceService(db)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message_data = json.loads(data)
            except json.JSONDecodeError:
                await connection_manager.send_to_user(user_id, {
                    "type": "error",
                    "data": {"message": "Invalid JSON format"}
                })
                continue

            if not isinstance(message_data, dict) or "type" not in message_data:
                await connection_manager.send_to_user(user_id, {
                    "type": "error",
                    "data": {"message": "Invalid message format"}
                })
                continue

            message_type = message_data["type"]
            if message_type == "ping":
                await connection_manager.send_to_user(user_id, {
                    "type": "pong",
                    "data": {"timestamp": message_data.get("data", {}).get("timestamp")}
                })
            elif message_type == "heartbeat":
                try:
                    await presence.record_heartbeat(room_id, player_id, user_id, publisher=publisher)
                except GameError as e:
                    # 玩家已被移除
                    await connection_manager.send_to_user(user_id, {
                        "type": "error",
                        "data": e.to_dict()
                    })
                    break
            else:
                await connection_manager.send_to_user(user_id, {
                    "type": "error",
                    "data": {"message": f"Unknown message type: {message_type}"}
                })

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for user {user_id} in room {room_id}")

    finally:
        # 只清理 WebSocket 连接，离开房间需通过 API
        await connection_manager.disconnect(user_id, "Connection closed")
