"""
Security utilities
安全工具 - JWT 身份解析、房间密码哈希、Redis 滑动窗口限流
"""

import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from jose import JWTError, jwt

from bunker.core.config import settings
from bunker.core.errors import TooManyRequests
from bunker.core.redis_client import RedisManager, redis_manager

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """签发访问令牌（身份系统之外的工具和测试使用）"""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": user_id, "exp": expire}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def verify_token(token: str) -> Optional[str]:
    """Return the user id carried by ``token``, or None when invalid"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        logger.debug(f"Token verification failed: {e}")
        return None
    user_id = payload.get("sub")
    return str(user_id) if user_id else None


# ---------------------------------------------------------------------------
# Room passwords
# ---------------------------------------------------------------------------

def hash_password(password: str) -> str:
    """Hash password using bcrypt"""
    # bcrypt 只使用前 72 字节
    password_bytes = password.encode('utf-8')[:72]
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password_bytes, salt).decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify password against hash"""
    password_bytes = plain_password.encode('utf-8')[:72]
    return bcrypt.checkpw(password_bytes, hashed_password.encode('utf-8'))


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class RateLimiter:
    """
    Sliding-window rate limiter on Redis sorted sets.

    Shared across instances through Redis. When Redis is unavailable the
    limiter lets requests through and logs a warning.
    """

    def __init__(self, redis: RedisManager = redis_manager, window: int = settings.RATE_LIMIT_WINDOW):
        self.redis = redis
        self.window = window
        self.rules = settings.rate_limit_rules

    def limit_for(self, action: str) -> int:
        return self.rules.get(action, settings.RATE_LIMIT_DEFAULT)

    async def is_rate_limited(self, identifier: str, limit: int, window: Optional[int] = None) -> bool:
        """检查标识符是否被速率限制"""
        window = window or self.window
        current_time = time.time()

        try:
            client = await self.redis.get_client()
        except RuntimeError as e:
            logger.warning(f"Rate limiter unavailable, allowing {identifier}: {e}")
            return False

        key = f"rate_limit:{identifier}"
        try:
            await client.zremrangebyscore(key, 0, current_time - window)
            current_count = await client.zcard(key)

            if current_count >= limit:
                logger.warning(f"Rate limit exceeded for {identifier}: {current_count}/{limit}")
                return True

            await client.zadd(key, {f"{current_time}:{uuid.uuid4().hex[:8]}": current_time})
            await client.expire(key, window)
            return False

        except Exception as e:
            logger.warning(f"Redis rate limiting failed for {identifier}, allowing: {e}")
            return False

    async def check(self, action: str, user_id: str) -> None:
        """超过限制时抛出 TooManyRequests，不重试"""
        if await self.is_rate_limited(f"{action}:{user_id}", self.limit_for(action)):
            raise TooManyRequests(retry_after=self.window)


# Global rate limiter instance
rate_limiter = RateLimiter()


def get_rate_limiter() -> RateLimiter:
    return rate_limiter
