"""
Room Pydantic schemas
房间数据验证和序列化模型
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum

from bunker.core.config import settings as app_settings
from bunker.schemas.game import GamePhase, CharacteristicCategory


class RoundMode(str, Enum):
    """回合模式：automatic 按计时推进，manual 由房主控制"""
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class RoomSettings(BaseModel):
    """房间设置（存储在 rooms.settings JSON 中，读取时解析一次）"""
    round_mode: RoundMode = Field(default=RoundMode.AUTOMATIC, description="回合模式")
    discussion_seconds: int = Field(default=app_settings.DEFAULT_DISCUSSION_SECONDS, ge=10, le=3600, description="讨论时长(秒)")
    voting_seconds: int = Field(default=app_settings.DEFAULT_VOTING_SECONDS, ge=10, le=600, description="投票时长(秒)")
    eliminated_can_vote: bool = Field(default=False, description="被淘汰玩家可以投票")
    show_intro: bool = Field(default=True, description="第一回合前显示灾难介绍")
    intro_skipped: bool = Field(default=False, description="介绍已被跳过")
    special_cards_per_player: int = Field(default=app_settings.DEFAULT_SPECIAL_CARDS_PER_PLAYER, ge=0, le=10, description="每名玩家的特殊卡数量")
    enabled_categories: List[CharacteristicCategory] = Field(
        default_factory=lambda: list(CharacteristicCategory), description="启用的特征类别"
    )
    banned_user_ids: List[str] = Field(default_factory=list, description="被封禁的用户")

    @property
    def is_manual(self) -> bool:
        return self.round_mode == RoundMode.MANUAL


class RoomSettingsInput(BaseModel):
    """创建房间时可设置的字段"""
    round_mode: RoundMode = RoundMode.AUTOMATIC
    discussion_seconds: int = Field(default=app_settings.DEFAULT_DISCUSSION_SECONDS, ge=10, le=3600)
    voting_seconds: int = Field(default=app_settings.DEFAULT_VOTING_SECONDS, ge=10, le=600)
    eliminated_can_vote: bool = False
    show_intro: bool = True
    special_cards_per_player: int = Field(default=app_settings.DEFAULT_SPECIAL_CARDS_PER_PLAYER, ge=0, le=10)
    enabled_categories: Optional[List[CharacteristicCategory]] = None

    def to_settings(self) -> RoomSettings:
        data = self.model_dump(exclude_none=True)
        return RoomSettings(**data)


class RoomCreate(BaseModel):
    """创建房间请求模型"""
    name: str = Field(..., min_length=1, max_length=100, description="房间名称")
    player_name: str = Field(..., min_length=1, max_length=50, description="房主在房间中的昵称")
    max_players: int = Field(
        default=12, ge=app_settings.MIN_PLAYERS_PER_ROOM, le=app_settings.MAX_PLAYERS_PER_ROOM,
        description="最大玩家数"
    )
    password: Optional[str] = Field(None, min_length=1, max_length=50, description="房间密码(可选)")
    settings: RoomSettingsInput = Field(default_factory=RoomSettingsInput, description="房间设置")

    @field_validator("name", "player_name")
    @classmethod
    def strip_names(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("名称不能为空")
        return v


class RoomJoinRequest(BaseModel):
    """加入房间请求"""
    room_code: str = Field(..., min_length=4, max_length=12, description="房间码")
    player_name: str = Field(..., min_length=1, max_length=50, description="昵称")
    password: Optional[str] = Field(None, max_length=50, description="房间密码")

    @field_validator("room_code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()


class PlayerTargetRequest(BaseModel):
    """房主对玩家的操作（踢出/封禁）"""
    player_id: str


class UnbanRequest(BaseModel):
    user_id: str


class ReadyRequest(BaseModel):
    is_ready: bool = True


class HeartbeatRequest(BaseModel):
    player_id: str


class ChatMessageCreate(BaseModel):
    message: str = Field(..., min_length=1, max_length=app_settings.CHAT_MESSAGE_MAX_LENGTH)

    @field_validator("message")
    @classmethod
    def strip_message(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("消息不能为空")
        return v


class CharacteristicView(BaseModel):
    id: str
    category: str
    name: str
    value: Optional[str] = None  # 未公开的他人特征不返回值
    is_revealed: bool
    reveal_round: Optional[int] = None


class PlayerView(BaseModel):
    id: str
    user_id: str
    name: str
    is_host: bool
    is_ready: bool
    is_eliminated: bool
    is_active: bool
    characteristics: List[CharacteristicView] = Field(default_factory=list)


class RoomSummary(BaseModel):
    """房间列表项"""
    id: str
    room_code: str
    name: str
    host_id: str
    phase: GamePhase
    current_round: int
    max_players: int
    player_count: int
    has_password: bool
    created_at: Optional[datetime] = None


class RoomStateResponse(BaseModel):
    """房间完整状态（读模型）"""
    id: str
    room_code: str
    name: str
    host_id: str
    phase: GamePhase
    current_round: int
    round_started_at: Optional[datetime] = None
    time_remaining: Optional[int] = None
    settings: RoomSettings
    players: List[PlayerView] = Field(default_factory=list)
    vote_counts: dict = Field(default_factory=dict)
    my_player_id: Optional[str] = None


class JoinResponse(BaseModel):
    room_id: str
    room_code: str
    player_id: str
    rejoined: bool = False


class ChatMessageResponse(BaseModel):
    id: str
    room_id: str
    player_id: Optional[str] = None
    message: str
    message_type: str
    created_at: Optional[datetime] = None


class SweepReportResponse(BaseModel):
    rooms_deleted: int = 0
    players_removed: int = 0
    reasons: dict = Field(default_factory=dict)
