"""
Shared API dependencies
API 公共依赖 - 身份、限流、事件发布、统计钩子、服务工厂
"""

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from bunker.core.database import get_db
from bunker.core.errors import Unauthorized
from bunker.services.abilities import AbilityResolver
from bunker.services.events import RoomEventPublisher, get_event_publisher
from bunker.services.game import GameEngine
from bunker.services.presence import PresenceService
from bunker.services.room import RoomService
from bunker.services.statistics import StatisticsHook, get_statistics_hook
from bunker.utils.security import RateLimiter, get_rate_limiter, verify_token

# auto_error=False 使得 HTTPBearer 在没有 token 时不会自动返回 403
# 我们手动处理，统一返回 401
security = HTTPBearer(auto_error=False)


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """Opaque user id from the bearer token"""
    if credentials is None:
        raise Unauthorized("未提供认证凭据")

    user_id = verify_token(credentials.credentials)
    if user_id is None:
        raise Unauthorized("无效的认证凭据")
    return user_id


def rate_limit(action: str):
    """按动作名限流的依赖"""
    async def _check(
        user_id: str = Depends(get_current_user_id),
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> str:
        await limiter.check(action, user_id)
        return user_id
    return _check


async def get_room_service(
    db: AsyncSession = Depends(get_db),
    publisher: RoomEventPublisher = Depends(get_event_publisher),
) -> RoomService:
    """获取房间服务依赖"""
    return RoomService(db, publisher)


async def get_game_engine(
    db: AsyncSession = Depends(get_db),
    publisher: RoomEventPublisher = Depends(get_event_publisher),
    stats_hook: StatisticsHook = Depends(get_statistics_hook),
) -> GameEngine:
    """获取游戏引擎依赖"""
    return GameEngine(db, publisher, stats_hook)


async def get_ability_resolver(
    db: AsyncSession = Depends(get_db),
    publisher: RoomEventPublisher = Depends(get_event_publisher),
) -> AbilityResolver:
    return AbilityResolver(db, publisher)


async def get_presence_service(db: AsyncSession = Depends(get_db)) -> PresenceService:
    return PresenceService(db)
