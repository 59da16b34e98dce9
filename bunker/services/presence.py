"""
Presence / liveness tracking
玩家在线状态判定与心跳
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bunker.core.config import settings
from bunker.core.errors import NotFound
from bunker.core.utils import utcnow
from bunker.models.player import Player

logger = logging.getLogger(__name__)

ACTIVE_THRESHOLD = timedelta(seconds=settings.PRESENCE_ACTIVE_SECONDS)
JOIN_GRACE = timedelta(seconds=settings.PRESENCE_JOIN_GRACE_SECONDS)
FINISHED_RETENTION = timedelta(seconds=settings.FINISHED_ROOM_RETENTION_SECONDS)


def is_active(
    player: Player,
    now: datetime,
    threshold: timedelta = ACTIVE_THRESHOLD,
    grace: timedelta = JOIN_GRACE,
) -> bool:
    """
    A player is active if they sent a heartbeat within ``threshold``, or,
    having never sent one, joined within ``grace``.
    """
    if player.last_seen_at is not None:
        return now - player.last_seen_at <= threshold
    if player.joined_at is None:
        return False
    return now - player.joined_at <= grace


def active_players(
    players: Iterable[Player],
    now: datetime,
    threshold: timedelta = ACTIVE_THRESHOLD,
    grace: timedelta = JOIN_GRACE,
) -> List[Player]:
    return [p for p in players if is_active(p, now, threshold, grace)]


class PresenceService:
    """心跳服务"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_heartbeat(
        self,
        room_id: str,
        player_id: str,
        user_id: str,
        now: Optional[datetime] = None,
        publisher=None,
        sweep: bool = True,
    ) -> Player:
        """
        Refresh the caller's last_seen_at, then sweep the room.
        玩家必须属于调用者且属于该房间，否则视为不存在
        """
        stmt = select(Player).where(
            Player.id == player_id,
            Player.room_id == room_id,
            Player.user_id == user_id,
        )
        result = await self.db.execute(stmt)
        player = result.scalar_one_or_none()
        if not player:
            raise NotFound("玩家不存在或不属于该房间")

        now = now or utcnow()
        player.last_seen_at = now
        await self.db.commit()
        logger.debug(f"[HEARTBEAT] player={player_id} room={room_id}")

        if sweep:
            # 避免循环导入
            from bunker.services.cleanup import CleanupSweeper
            await CleanupSweeper(self.db, publisher).sweep_room(room_id, now)
        return player
