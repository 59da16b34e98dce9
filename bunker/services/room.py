"""
Room management service
房间管理服务 - 创建、加入、离开、踢出、封禁、准备、聊天、房间状态
"""

import uuid
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bunker.core.errors import Forbidden, NotFound, PreconditionFailed, ValidationFailed
from bunker.core.utils import utcnow
from bunker.models.chat import ChatMessage
from bunker.models.player import Player
from bunker.models.room import Room
from bunker.schemas.game import GamePhase
from bunker.schemas.room import (
    CharacteristicView, ChatMessageResponse, JoinResponse, PlayerView, RoomCreate,
    RoomJoinRequest, RoomStateResponse, RoomSummary,
)
from bunker.services.cleanup import CleanupSweeper
from bunker.services.events import EventType, RoomEventPublisher
from bunker.services.presence import is_active
from bunker.services.room_store import RoomStore
from bunker.services.tally import Ballot, Candidate, count_votes
from bunker.utils.security import hash_password, verify_password

logger = logging.getLogger(__name__)


def time_remaining(room: Room, now: datetime) -> Optional[int]:
    """Seconds left on the current timer, derived from the anchor"""
    if room.round_started_at is None:
        return None
    room_settings = room.room_settings
    if room.phase == GamePhase.PLAYING:
        duration = room_settings.discussion_seconds
    elif room.phase == GamePhase.VOTING:
        duration = room_settings.voting_seconds
    else:
        return None
    elapsed = (now - room.round_started_at).total_seconds()
    return max(0, int(duration - elapsed))


class RoomService:
    """房间管理服务类"""

    def __init__(self, db: AsyncSession, publisher: Optional[RoomEventPublisher] = None):
        self.db = db
        self.store = RoomStore(db)
        self.publisher = publisher

    async def _publish(self, room_id: str, event_type: str, data: Optional[dict] = None) -> None:
        if self.publisher is not None:
            await self.publisher.publish(room_id, event_type, data)

    # ------------------------------------------------------------------
    # create / list
    # ------------------------------------------------------------------

    async def create_room(self, room_data: RoomCreate, user_id: str) -> JoinResponse:
        """
        创建新房间，创建者自动成为房主并加入
        """
        room_id = str(uuid.uuid4())
        room_code = await self.store.generate_room_code()
        now = utcnow()

        db_room = Room(
            id=room_id,
            room_code=room_code,
            name=room_data.name,
            host_id=user_id,
            phase=GamePhase.WAITING,
            current_round=1,
            max_players=room_data.max_players,
            password_hash=hash_password(room_data.password) if room_data.password else None,
        )
        db_room.apply_settings(room_data.settings.to_settings())

        host = Player(
            id=str(uuid.uuid4()),
            room_id=room_id,
            user_id=user_id,
            name=room_data.player_name,
            is_host=True,
            joined_at=now,
            last_seen_at=now,
        )
        self.db.add(db_room)
        await self.db.flush()
        self.db.add(host)
        await self.db.commit()

        logger.info(f"[ROOM] User {user_id} created room {room_id} ({room_code})")
        return JoinResponse(room_id=room_id, room_code=room_code, player_id=host.id)

    async def list_rooms(self, sweep: bool = True) -> List[RoomSummary]:
        """房间列表；列表前先清理被遗弃的房间"""
        if sweep:
            await CleanupSweeper(self.db, self.publisher).sweep_all()

        stmt = (
            select(Room, func.count(Player.id))
            .outerjoin(Player, Player.room_id == Room.id)
            .group_by(Room.id)
            .order_by(Room.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return [
            RoomSummary(
                id=room.id,
                room_code=room.room_code,
                name=room.name,
                host_id=room.host_id,
                phase=room.phase,
                current_round=room.current_round,
                max_players=room.max_players,
                player_count=player_count,
                has_password=room.has_password,
                created_at=room.created_at,
            )
            for room, player_count in result.all()
        ]

    # ------------------------------------------------------------------
    # membership
    # ------------------------------------------------------------------

    async def join_room(self, request: RoomJoinRequest, user_id: str) -> JoinResponse:
        """
        通过房间码加入房间；已在房间中的用户视为重连
        """
        room = await self.store.find_room_by_code(request.room_code)
        if not room:
            raise NotFound("房间不存在")
        room_id, room_code = room.id, room.room_code

        room_settings = room.room_settings
        if user_id in room_settings.banned_user_ids:
            raise Forbidden("你已被禁止进入该房间")

        existing = await self.store.find_player_for_user(room.id, user_id)
        if existing:
            existing.last_seen_at = utcnow()
            await self.db.commit()
            logger.info(f"[ROOM] User {user_id} rejoined room {room.id}")
            return JoinResponse(room_id=room.id, room_code=room.room_code, player_id=existing.id, rejoined=True)

        if room.phase != GamePhase.WAITING:
            raise PreconditionFailed("游戏已经开始，无法加入")

        if room.password_hash:
            if not request.password:
                raise Forbidden("此房间需要密码才能加入")
            if not verify_password(request.password, room.password_hash):
                raise Forbidden("房间密码错误")

        if await self.store.count_players(room.id) >= room.max_players:
            raise PreconditionFailed("房间已满")

        now = utcnow()
        player = Player(
            id=str(uuid.uuid4()),
            room_id=room.id,
            user_id=user_id,
            name=request.player_name,
            is_host=False,
            joined_at=now,
            last_seen_at=now,
        )
        self.db.add(player)
        try:
            await self.db.commit()
        except IntegrityError:
            # 同一用户并发加入
            await self.db.rollback()
            existing = await self.store.get_player_for_user(room_id, user_id)
            return JoinResponse(room_id=room_id, room_code=room_code, player_id=existing.id, rejoined=True)

        logger.info(f"[ROOM] User {user_id} joined room {room.id}")
        await self._publish(room.id, EventType.PLAYER_JOINED, {"player_id": player.id, "name": player.name})
        return JoinResponse(room_id=room.id, room_code=room.room_code, player_id=player.id)

    async def leave_room(self, room_id: str, user_id: str) -> bool:
        """
        离开房间；房主离开时解散房间
        """
        room = await self.store.get_room(room_id)
        player = await self.store.get_player_for_user(room_id, user_id)

        if room.host_id == user_id:
            report = await CleanupSweeper(self.db, self.publisher).host_left(room_id)
            return report.rooms_deleted > 0

        player_id = player.id
        await self.store.delete_players([player_id])
        await self.db.commit()
        logger.info(f"[ROOM] User {user_id} left room {room_id}")
        await self._publish(room_id, EventType.PLAYER_LEFT, {"player_id": player_id})
        return True

    async def kick_player(self, room_id: str, player_id: str, operator_id: str, ban: bool = False) -> bool:
        """踢出（可选封禁）玩家，仅房主可操作"""
        room = await self.store.get_room(room_id)
        if room.host_id != operator_id:
            raise Forbidden("只有房主可以踢出玩家")

        target = await self.store.get_player(room_id, player_id)
        if target.is_host or target.user_id == room.host_id:
            raise ValidationFailed("不能踢出房主")

        target_user_id = target.user_id
        if ban:
            room_settings = room.room_settings
            if target_user_id not in room_settings.banned_user_ids:
                room_settings.banned_user_ids.append(target_user_id)
                room.apply_settings(room_settings)

        await self.store.delete_players([player_id])
        await self.db.commit()

        logger.info(f"[ROOM] Player {player_id} kicked from room {room_id} (ban={ban})")
        await self._publish(room_id, EventType.PLAYER_KICKED, {
            "player_id": player_id,
            "user_id": target_user_id,
            "banned": ban,
        })
        return True

    async def unban_user(self, room_id: str, user_id: str, operator_id: str) -> bool:
        room = await self.store.get_room(room_id)
        if room.host_id != operator_id:
            raise Forbidden("只有房主可以解除封禁")

        room_settings = room.room_settings
        if user_id not in room_settings.banned_user_ids:
            return False
        room_settings.banned_user_ids = [u for u in room_settings.banned_user_ids if u != user_id]
        room.apply_settings(room_settings)
        await self.db.commit()
        return True

    async def set_ready(self, room_id: str, user_id: str, is_ready: bool) -> bool:
        room = await self.store.get_room(room_id)
        if room.phase != GamePhase.WAITING:
            raise PreconditionFailed("只能在等待阶段准备")

        player = await self.store.get_player_for_user(room_id, user_id)
        player.is_ready = is_ready
        player.last_seen_at = utcnow()
        player_id = player.id
        await self.db.commit()
        await self._publish(room_id, EventType.PLAYER_READY, {"player_id": player_id, "is_ready": is_ready})
        return is_ready

    # ------------------------------------------------------------------
    # chat
    # ------------------------------------------------------------------

    async def post_message(self, room_id: str, user_id: str, message: str) -> ChatMessageResponse:
        await self.store.get_room(room_id)
        player = await self.store.get_player_for_user(room_id, user_id)

        chat = ChatMessage(
            id=str(uuid.uuid4()),
            room_id=room_id,
            player_id=player.id,
            message=message,
            message_type="chat",
        )
        self.db.add(chat)
        await self.db.commit()

        response = ChatMessageResponse(
            id=chat.id,
            room_id=room_id,
            player_id=chat.player_id,
            message=chat.message,
            message_type=chat.message_type,
            created_at=chat.created_at,
        )
        await self._publish(room_id, EventType.CHAT_MESSAGE, response.model_dump(mode="json"))
        return response

    async def get_messages(self, room_id: str, user_id: str, limit: int = 100) -> List[ChatMessageResponse]:
        await self.store.get_player_for_user(room_id, user_id)
        stmt = (
            select(ChatMessage)
            .where(ChatMessage.room_id == room_id)
            .order_by(ChatMessage.created_at.desc(), ChatMessage.id)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        messages = list(result.scalars().all())
        messages.reverse()
        return [
            ChatMessageResponse(
                id=m.id, room_id=m.room_id, player_id=m.player_id,
                message=m.message, message_type=m.message_type, created_at=m.created_at,
            )
            for m in messages
        ]

    # ------------------------------------------------------------------
    # read model
    # ------------------------------------------------------------------

    async def get_room_state(self, room_id: str, user_id: str) -> RoomStateResponse:
        """
        房间完整状态：自己的特征全部可见，他人只显示已公开的特征
        """
        room = await self.store.get_room(room_id)
        players = await self.store.get_players(room_id)
        me = next((p for p in players if p.user_id == user_id), None)
        if me is None:
            raise Forbidden("你不在该房间中")

        now = utcnow()
        characteristics = await self.store.get_characteristics([p.id for p in players])
        by_player = {}
        for c in characteristics:
            visible = c.player_id == me.id or c.is_revealed
            by_player.setdefault(c.player_id, []).append(CharacteristicView(
                id=c.id,
                category=c.category,
                name=c.name,
                value=c.value if visible else None,
                is_revealed=c.is_revealed,
                reveal_round=c.reveal_round,
            ))

        vote_counts = {}
        if room.phase in (GamePhase.VOTING, GamePhase.RESULTS):
            votes = await self.store.get_round_votes(room_id, room.current_round)
            vote_counts = count_votes(
                [Ballot(v.voter_id, v.target_id, v.weight) for v in votes],
                [Candidate(p.id) for p in players],
            )

        return RoomStateResponse(
            id=room.id,
            room_code=room.room_code,
            name=room.name,
            host_id=room.host_id,
            phase=room.phase,
            current_round=room.current_round,
            round_started_at=room.round_started_at,
            time_remaining=time_remaining(room, now),
            settings=room.room_settings,
            players=[
                PlayerView(
                    id=p.id,
                    user_id=p.user_id,
                    name=p.name,
                    is_host=p.is_host,
                    is_ready=p.is_ready,
                    is_eliminated=p.is_eliminated,
                    is_active=is_active(p, now),
                    characteristics=by_player.get(p.id, []),
                )
                for p in players
            ],
            vote_counts=vote_counts,
            my_player_id=me.id,
        )
