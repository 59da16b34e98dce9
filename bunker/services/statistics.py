"""
Game statistics and achievements
游戏结束统计 - 更新用户战绩并解锁成就
"""

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bunker.core.utils import utcnow
from bunker.models.player import Player
from bunker.models.profile import Profile

logger = logging.getLogger(__name__)


# code -> (field, threshold)
ACHIEVEMENTS: Dict[str, tuple] = {
    "first_game": ("games_played", 1),
    "veteran": ("games_played", 10),
    "first_win": ("games_won", 1),
    "survivor": ("games_won", 5),
}


def unlocked_achievements(profile: Profile) -> List[str]:
    """Achievement codes the profile qualifies for"""
    earned = []
    for code, (field, threshold) in ACHIEVEMENTS.items():
        if (getattr(profile, field) or 0) >= threshold:
            earned.append(code)
    return earned


class StatisticsService:
    """统计服务"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_game_finished(
        self,
        room_id: str,
        survivor_player_ids: Iterable[str],
        all_player_ids: Iterable[str],
    ) -> Dict[str, List[str]]:
        """
        Credit a finished game to every participant's profile.

        games_played grows for everybody, games_won for survivors. Returns the
        newly unlocked achievements per user id.
        """
        survivors = set(survivor_player_ids)
        player_ids = list(all_player_ids)
        if not player_ids:
            return {}

        stmt = select(Player).where(Player.room_id == room_id, Player.id.in_(player_ids))
        result = await self.db.execute(stmt)
        players = result.scalars().all()

        now = utcnow()
        new_achievements: Dict[str, List[str]] = {}
        for player in players:
            profile = await self.db.get(Profile, player.user_id)
            if profile is None:
                profile = Profile(user_id=player.user_id, games_played=0, games_won=0, achievements=[])
                self.db.add(profile)

            profile.games_played = (profile.games_played or 0) + 1
            if player.id in survivors:
                profile.games_won = (profile.games_won or 0) + 1
            profile.last_game_at = now

            owned = list(profile.achievements or [])
            fresh = [code for code in unlocked_achievements(profile) if code not in owned]
            if fresh:
                profile.achievements = owned + fresh
                new_achievements[player.user_id] = fresh

        await self.db.commit()
        logger.info(
            f"[STATS] Room {room_id} finished: {len(players)} players, {len(survivors)} survivors, "
            f"achievements unlocked for {len(new_achievements)} users"
        )
        return new_achievements


class StatisticsHook:
    """
    Callable handed to the game engine; runs once per finished game.
    失败只记录日志，不回滚阶段转换
    """

    async def __call__(
        self,
        db: AsyncSession,
        room_id: str,
        survivor_player_ids: List[str],
        all_player_ids: List[str],
    ) -> Optional[Dict[str, List[str]]]:
        try:
            return await StatisticsService(db).record_game_finished(room_id, survivor_player_ids, all_player_ids)
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"[STATS] Failed to record statistics for room {room_id}: {e}")
            return None


statistics_hook = StatisticsHook()


def get_statistics_hook() -> StatisticsHook:
    return statistics_hook
