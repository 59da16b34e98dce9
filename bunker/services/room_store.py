"""
Room store
房间数据访问层 - 查询、阶段乐观锁更新、级联删除
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bunker.core.config import settings
from bunker.core.errors import Internal, NotFound
from bunker.core.utils import generate_room_code, utcnow
from bunker.models.characteristic import Characteristic
from bunker.models.chat import ChatMessage
from bunker.models.player import Player
from bunker.models.room import Room
from bunker.models.special_card import SpecialCard
from bunker.models.vote import Vote
from bunker.schemas.game import GamePhase

logger = logging.getLogger(__name__)


class RoomStore:
    """Persistence helpers shared by the game services"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_room(self, room_id: str) -> Room:
        stmt = select(Room).where(Room.id == room_id)
        result = await self.db.execute(stmt)
        room = result.scalar_one_or_none()
        if not room:
            raise NotFound("房间不存在")
        return room

    async def find_room(self, room_id: str) -> Optional[Room]:
        stmt = select(Room).where(Room.id == room_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def reload_room(self, room_id: str) -> Room:
        """Re-read the row, overwriting whatever the identity map holds"""
        stmt = select(Room).where(Room.id == room_id).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        room = result.scalar_one_or_none()
        if not room:
            raise NotFound("房间不存在")
        return room

    async def find_room_by_code(self, room_code: str) -> Optional[Room]:
        stmt = select(Room).where(Room.room_code == room_code.upper())
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_rooms(self) -> List[Room]:
        stmt = select(Room).order_by(Room.created_at.desc())
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_players(self, room_id: str) -> List[Player]:
        stmt = select(Player).where(Player.room_id == room_id).order_by(Player.joined_at, Player.id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_player(self, room_id: str, player_id: str) -> Player:
        """Player of this room; players of other rooms are reported as missing"""
        stmt = select(Player).where(Player.id == player_id, Player.room_id == room_id)
        result = await self.db.execute(stmt)
        player = result.scalar_one_or_none()
        if not player:
            raise NotFound("玩家不存在")
        return player

    async def find_player_for_user(self, room_id: str, user_id: str) -> Optional[Player]:
        stmt = select(Player).where(Player.room_id == room_id, Player.user_id == user_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_player_for_user(self, room_id: str, user_id: str) -> Player:
        player = await self.find_player_for_user(room_id, user_id)
        if not player:
            raise NotFound("你不在该房间中")
        return player

    async def count_players(self, room_id: str) -> int:
        return len(await self.get_players(room_id))

    async def get_round_votes(self, room_id: str, round_number: int) -> List[Vote]:
        stmt = (
            select(Vote)
            .where(Vote.room_id == room_id, Vote.round == round_number)
            .order_by(Vote.updated_at, Vote.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_characteristics(self, player_ids: Sequence[str]) -> List[Characteristic]:
        if not player_ids:
            return []
        stmt = (
            select(Characteristic)
            .where(Characteristic.player_id.in_(list(player_ids)))
            .order_by(Characteristic.player_id, Characteristic.sort_order)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def generate_room_code(self) -> str:
        """生成在所有已存储房间中唯一的房间码"""
        for _ in range(20):
            code = generate_room_code(settings.ROOM_CODE_LENGTH, settings.ROOM_CODE_ALPHABET)
            if await self.find_room_by_code(code) is None:
                return code
        raise Internal("无法生成唯一房间码，请重试")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def compare_and_set_phase(
        self,
        room_id: str,
        expected: Sequence[GamePhase],
        values: Dict[str, Any],
        conditions: Sequence[Any] = (),
    ) -> bool:
        """
        UPDATE rooms SET ... WHERE id = :id AND phase IN (:expected)

        Returns True when this caller won the transition. Does not commit.
        """
        values = dict(values)
        values.setdefault("updated_at", utcnow())
        stmt = (
            update(Room)
            .where(Room.id == room_id, Room.phase.in_(list(expected)), *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    def add_system_message(self, room_id: str, message: str) -> ChatMessage:
        chat = ChatMessage(
            id=str(uuid.uuid4()),
            room_id=room_id,
            player_id=None,
            message=message,
            message_type="system",
        )
        self.db.add(chat)
        return chat

    async def delete_players(self, player_ids: Sequence[str]) -> int:
        """删除玩家及其投票、卡牌、特征（不提交）"""
        ids = list(player_ids)
        if not ids:
            return 0
        await self.db.execute(delete(Vote).where(or_(Vote.voter_id.in_(ids), Vote.target_id.in_(ids))))
        await self.db.execute(delete(SpecialCard).where(SpecialCard.player_id.in_(ids)))
        await self.db.execute(delete(Characteristic).where(Characteristic.player_id.in_(ids)))
        await self.db.execute(update(ChatMessage).where(ChatMessage.player_id.in_(ids)).values(player_id=None))
        result = await self.db.execute(delete(Player).where(Player.id.in_(ids)))
        return result.rowcount or 0

    async def delete_room_cascade(self, room_id: str) -> bool:
        """
        Remove a room together with everything it owns, then commit.

        Dependents go first; a failing dependent delete is logged and the
        parent delete still runs. Deleting a missing room returns False.
        """
        player_ids = select(Player.id).where(Player.room_id == room_id).scalar_subquery()
        dependents = [
            ("votes", delete(Vote).where(Vote.room_id == room_id)),
            ("chat_messages", delete(ChatMessage).where(ChatMessage.room_id == room_id)),
            ("special_cards", delete(SpecialCard).where(SpecialCard.room_id == room_id)),
            ("characteristics", delete(Characteristic).where(Characteristic.player_id.in_(player_ids))),
            ("players", delete(Player).where(Player.room_id == room_id)),
        ]
        for table, stmt in dependents:
            try:
                await self.db.execute(stmt)
            except SQLAlchemyError as e:
                logger.error(f"[CLEANUP] Failed to delete {table} of room {room_id}: {e}")

        result = await self.db.execute(delete(Room).where(Room.id == room_id))
        await self.db.commit()
        deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.info(f"[CLEANUP] Room {room_id} deleted")
        return deleted
