"""
Background tasks service
后台任务服务 - 定期清理被遗弃的房间
"""

import asyncio
import logging
from typing import Optional

from bunker.core.config import settings
from bunker.core.database import db_manager
from bunker.services.cleanup import CleanupSweeper, SweepReport
from bunker.services.events import room_events

logger = logging.getLogger(__name__)


class BackgroundTaskService:
    """后台任务服务类"""

    def __init__(self):
        self.is_running = False
        self.cleanup_task: Optional[asyncio.Task] = None

    async def start_room_cleanup_task(self, interval_seconds: int = settings.SWEEP_INTERVAL_SECONDS):
        """启动房间清理任务"""
        if self.is_running:
            logger.warning("房间清理任务已在运行")
            return

        self.is_running = True
        self.cleanup_task = asyncio.create_task(self._room_cleanup_loop(interval_seconds))
        logger.info(f"房间清理任务已启动，检查间隔: {interval_seconds}秒")

    async def stop_room_cleanup_task(self):
        """停止房间清理任务"""
        if not self.is_running:
            return

        self.is_running = False
        if self.cleanup_task:
            self.cleanup_task.cancel()
            try:
                await self.cleanup_task
            except asyncio.CancelledError:
                pass

        logger.info("房间清理任务已停止")

    async def _room_cleanup_loop(self, interval_seconds: int):
        """房间清理循环任务"""
        while self.is_running:
            try:
                await self.cleanup_rooms_once()
            except Exception as e:
                logger.error(f"房间清理任务执行失败: {e}")

            await asyncio.sleep(interval_seconds)

    async def cleanup_rooms_once(self) -> SweepReport:
        """执行一次房间清理"""
        async with db_manager.get_session() as session:
            report = await CleanupSweeper(session, room_events).sweep_all()
        if report.rooms_deleted or report.players_removed:
            logger.info(f"定期清理: 删除 {report.rooms_deleted} 个房间, 移除 {report.players_removed} 名玩家")
        return report


# 全局后台任务服务实例
background_service = BackgroundTaskService()


async def start_background_tasks():
    """启动所有后台任务"""
    await background_service.start_room_cleanup_task()


async def stop_background_tasks():
    """停止所有后台任务"""
    await background_service.stop_room_cleanup_task()
