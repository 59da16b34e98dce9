"""
Session cleanup sweeper
房间清理 - 根据玩家在线状态删除被遗弃的房间和掉线玩家
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bunker.core.utils import utcnow
from bunker.models.room import Room
from bunker.schemas.game import GamePhase
from bunker.services.events import EventType, RoomEventPublisher
from bunker.services.presence import FINISHED_RETENTION, active_players
from bunker.services.room_store import RoomStore

logger = logging.getLogger(__name__)


class SweepReason:
    FINISHED_EXPIRED = "finished_expired"
    EMPTY = "no_active_players"
    HOST_ABANDONED = "host_abandoned"
    HOST_LEFT = "host_left"


@dataclass
class SweepReport:
    rooms_deleted: int = 0
    players_removed: int = 0
    reasons: Dict[str, int] = field(default_factory=dict)

    def room_deleted(self, reason: str) -> None:
        self.rooms_deleted += 1
        self.reasons[reason] = self.reasons.get(reason, 0) + 1

    def merge(self, other: "SweepReport") -> None:
        self.players_removed += other.players_removed
        for reason, count in other.reasons.items():
            self.rooms_deleted += count
            self.reasons[reason] = self.reasons.get(reason, 0) + count


class CleanupSweeper:
    """
    Reclaims rooms and seats whose owners went away.

    Safe to run repeatedly and concurrently: deleting an already deleted
    room or player is a no-op. Errors are logged, never raised.
    """

    def __init__(self, db: AsyncSession, publisher: Optional[RoomEventPublisher] = None):
        self.db = db
        self.store = RoomStore(db)
        self.publisher = publisher

    async def sweep_all(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()

        result = await self.db.execute(select(Room.id))
        room_ids = [row[0] for row in result.all()]
        for room_id in room_ids:
            report.merge(await self.sweep_room(room_id, now))

        if report.rooms_deleted or report.players_removed:
            logger.info(
                f"[SWEEP] Checked {len(room_ids)} rooms: deleted {report.rooms_deleted}, "
                f"removed {report.players_removed} players {report.reasons}"
            )
        return report

    async def sweep_room(self, room_id: str, now: Optional[datetime] = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()
        try:
            await self._sweep_room(room_id, now, report)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"[SWEEP] Failed to sweep room {room_id}: {e}")
        return report

    async def _sweep_room(self, room_id: str, now: datetime, report: SweepReport) -> None:
        room = await self.store.find_room(room_id)
        if room is None:
            return

        players = await self.store.get_players(room_id)

        if room.phase == GamePhase.FINISHED:
            # 已结束房间：1 小时内无人活动则删除（加入宽限期同为 1 小时）
            if not active_players(players, now, FINISHED_RETENTION, FINISHED_RETENTION):
                await self._delete_room(room_id, SweepReason.FINISHED_EXPIRED, report)
            return

        active = active_players(players, now)
        if not active:
            await self._delete_room(room_id, SweepReason.EMPTY, report)
            return

        active_ids = {p.id for p in active}
        host = next((p for p in players if p.user_id == room.host_id), None)
        if host is None or host.id not in active_ids:
            await self._delete_room(room_id, SweepReason.HOST_ABANDONED, report)
            return

        stale = [p for p in players if p.id not in active_ids and not p.is_host]
        if stale:
            removed = await self.store.delete_players([p.id for p in stale])
            await self.db.commit()
            report.players_removed += removed
            logger.info(f"[SWEEP] Removed {removed} inactive players from room {room_id}")
            await self._publish(room_id, EventType.PLAYERS_REMOVED, {
                "player_ids": [p.id for p in stale],
            })

    async def host_left(self, room_id: str) -> SweepReport:
        """房主离开：无条件解散房间"""
        report = SweepReport()
        try:
            await self._delete_room(room_id, SweepReason.HOST_LEFT, report)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"[SWEEP] Failed to tear down room {room_id} after host left: {e}")
        return report

    async def _delete_room(self, room_id: str, reason: str, report: SweepReport) -> None:
        if await self.store.delete_room_cascade(room_id):
            report.room_deleted(reason)
            logger.info(f"[SWEEP] Room {room_id} deleted ({reason})")
            await self._publish(room_id, EventType.ROOM_CLOSED, {"reason": reason})

    async def _publish(self, room_id: str, event_type: str, data: dict) -> None:
        if self.publisher is not None:
            await self.publisher.publish(room_id, event_type, data)
