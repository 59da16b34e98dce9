"""
Common Pydantic schemas
通用数据验证和序列化模型
"""

from pydantic import BaseModel, Field
from typing import Optional, Any, Dict
from datetime import datetime

from bunker.core.utils import utcnow


class ErrorResponse(BaseModel):
    """错误响应模型"""
    detail: Any = Field(..., description="错误信息")
    code: str = Field(..., description="错误代码")


class MessageResponse(BaseModel):
    """简单消息响应"""
    message: str = Field(..., description="响应消息")
    success: bool = Field(default=True, description="操作是否成功")


class RoomEvent(BaseModel):
    """房间事件（WebSocket / Redis 频道消息）"""
    type: str = Field(..., description="事件类型")
    room_id: str = Field(..., description="房间ID")
    data: Dict[str, Any] = Field(default_factory=dict, description="事件数据")
    timestamp: datetime = Field(default_factory=utcnow)


class SystemHealth(BaseModel):
    """系统健康状态"""
    status: str = Field(..., description="系统状态: healthy, degraded, error")
    timestamp: datetime = Field(default_factory=utcnow)
    services: Dict[str, Any] = Field(default_factory=dict, description="服务状态")
    version: Optional[str] = None
