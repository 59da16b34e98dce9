"""
Room management API endpoints
房间管理API端点
"""

from typing import List
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from bunker.api.v1.endpoints.deps import (
    get_current_user_id, get_presence_service, get_room_service, rate_limit,
)
from bunker.core.database import get_db
from bunker.schemas.common import MessageResponse
from bunker.schemas.room import (
    ChatMessageCreate, ChatMessageResponse, HeartbeatRequest, JoinResponse, PlayerTargetRequest,
    ReadyRequest, RoomCreate, RoomJoinRequest, RoomStateResponse, RoomSummary, SweepReportResponse,
    UnbanRequest,
)
from bunker.services.cleanup import CleanupSweeper
from bunker.services.events import RoomEventPublisher, get_event_publisher
from bunker.services.presence import PresenceService
from bunker.services.room import RoomService

router = APIRouter()


@router.post("", response_model=JoinResponse, status_code=status.HTTP_201_CREATED)
async def create_room(
    room_data: RoomCreate,
    user_id: str = Depends(get_current_user_id),
    room_service: RoomService = Depends(get_room_service),
):
    """
    创建新房间

    - **name**: 房间名称
    - **player_name**: 房主昵称
    - **max_players**: 最大玩家数 (2-20)
    - **password**: 房间密码(可选)
    - **settings**: 房间设置
    """
    return await room_service.create_room(room_data, user_id)


@router.get("", response_model=List[RoomSummary])
async def list_rooms(room_service: RoomService = Depends(get_room_service)):
    """获取房间列表（先清理被遗弃的房间）"""
    return await room_service.list_rooms()


@router.post("/join", response_model=JoinResponse)
async def join_room(
    join_data: RoomJoinRequest,
    user_id: str = Depends(rate_limit("join")),
    room_service: RoomService = Depends(get_room_service),
):
    """通过房间码加入房间"""
    return await room_service.join_room(join_data, user_id)


@router.post("/cleanup", response_model=SweepReportResponse)
async def cleanup_rooms(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    publisher: RoomEventPublisher = Depends(get_event_publisher),
):
    """手动触发一次清理"""
    report = await CleanupSweeper(db, publisher).sweep_all()
    return SweepReportResponse(
        rooms_deleted=report.rooms_deleted,
        players_removed=report.players_removed,
        reasons=report.reasons,
    )


@router.get("/{room_id}", response_model=RoomStateResponse)
async def get_room_state(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    room_service: RoomService = Depends(get_room_service),
):
    """获取房间完整状态"""
    return await room_service.get_room_state(room_id, user_id)


@router.post("/{room_id}/leave", response_model=MessageResponse)
async def leave_room(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    room_service: RoomService = Depends(get_room_service),
):
    """离开房间；房主离开会解散房间"""
    await room_service.leave_room(room_id, user_id)
    return MessageResponse(message="已离开房间")


@router.post("/{room_id}/kick", response_model=MessageResponse)
async def kick_player(
    room_id: str,
    target: PlayerTargetRequest,
    user_id: str = Depends(get_current_user_id),
    room_service: RoomService = Depends(get_room_service),
):
    """踢出玩家（仅房主）"""
    await room_service.kick_player(room_id, target.player_id, user_id)
    return MessageResponse(message="玩家已被踢出")


@router.post("/{room_id}/ban", response_model=MessageResponse)
async def ban_player(
    room_id: str,
    target: PlayerTargetRequest,
    user_id: str = Depends(get_current_user_id),
    room_service: RoomService = Depends(get_room_service),
):
    """踢出并封禁玩家（仅房主）"""
    await room_service.kick_player(room_id, target.player_id, user_id, ban=True)
    return MessageResponse(message="玩家已被封禁")


@router.post("/{room_id}/unban", response_model=MessageResponse)
async def unban_user(
    room_id: str,
    target: UnbanRequest,
    user_id: str = Depends(get_current_user_id),
    room_service: RoomService = Depends(get_room_service),
):
    """解除封禁（仅房主）"""
    changed = await room_service.unban_user(room_id, target.user_id, user_id)
    return MessageResponse(message="已解除封禁" if changed else "该用户未被封禁", success=changed)


@router.post("/{room_id}/ready", response_model=MessageResponse)
async def set_ready(
    room_id: str,
    ready: ReadyRequest,
    user_id: str = Depends(get_current_user_id),
    room_service: RoomService = Depends(get_room_service),
):
    is_ready = await room_service.set_ready(room_id, user_id, ready.is_ready)
    return MessageResponse(message="已准备" if is_ready else "已取消准备")


@router.post("/{room_id}/heartbeat", response_model=MessageResponse)
async def heartbeat(
    room_id: str,
    beat: HeartbeatRequest,
    user_id: str = Depends(rate_limit("heartbeat")),
    presence: PresenceService = Depends(get_presence_service),
    publisher: RoomEventPublisher = Depends(get_event_publisher),
):
    """心跳：刷新在线时间并清理该房间"""
    await presence.record_heartbeat(room_id, beat.player_id, user_id, publisher=publisher)
    return MessageResponse(message="ok")


@router.post("/{room_id}/chat", response_model=ChatMessageResponse, status_code=status.HTTP_201_CREATED)
async def post_message(
    room_id: str,
    chat: ChatMessageCreate,
    user_id: str = Depends(rate_limit("chat")),
    room_service: RoomService = Depends(get_room_service),
):
    return await room_service.post_message(room_id, user_id, chat.message)


@router.get("/{room_id}/chat", response_model=List[ChatMessageResponse])
async def get_messages(
    room_id: str,
    limit: int = 100,
    user_id: str = Depends(get_current_user_id),
    room_service: RoomService = Depends(get_room_service),
):
    return await room_service.get_messages(room_id, user_id, min(max(limit, 1), 500))
