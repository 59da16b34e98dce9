"""
Health check endpoints
健康检查端点
"""

from fastapi import APIRouter

from bunker.core.database import health_check as db_health_check
from bunker.core.redis_client import redis_health_check
from bunker.schemas.common import SystemHealth
from bunker.websocket.connection_manager import connection_manager

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint
    基础健康检查端点
    """
    return {
        "status": "healthy",
        "service": "bunker-game",
        "version": "1.0.0"
    }


@router.get("/health/detailed", response_model=SystemHealth)
async def detailed_health_check():
    """
    Database, Redis and WebSocket status
    数据库、Redis 与 WebSocket 状态
    """
    database = await db_health_check()
    redis_status = await redis_health_check()

    # Redis 不可用时仍可运行（仅本进程广播）
    if database.get("status") != "healthy":
        overall = "error"
    elif redis_status.get("status") != "healthy":
        overall = "degraded"
    else:
        overall = "healthy"

    return SystemHealth(
        status=overall,
        services={
            "database": database,
            "redis": redis_status,
            "websocket": {"connections": connection_manager.get_connection_count()},
        },
        version="1.0.0",
    )
