"""
Game Pydantic schemas
游戏数据验证和序列化模型 - 阶段、效果、投票、特殊卡
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class GamePhase(str, Enum):
    """房间阶段枚举"""
    WAITING = "waiting"
    PLAYING = "playing"
    VOTING = "voting"
    RESULTS = "results"
    FINISHED = "finished"


class CharacteristicCategory(str, Enum):
    """特征类别"""
    GENDER = "gender"
    AGE = "age"
    PROFESSION = "profession"
    BIO = "bio"
    HEALTH = "health"
    HOBBY = "hobby"
    PHOBIA = "phobia"
    BAGGAGE = "baggage"
    FACT = "fact"
    TRAIT = "trait"


RESHUFFLE_CATEGORIES = (
    CharacteristicCategory.BIO,
    CharacteristicCategory.BAGGAGE,
    CharacteristicCategory.HEALTH,
    CharacteristicCategory.FACT,
    CharacteristicCategory.HOBBY,
)


class CardType(str, Enum):
    """特殊卡类型（exchange-<类别> / reshuffle-<类别> 另见 card_category）"""
    EXCHANGE = "exchange"
    PEEK = "peek"
    IMMUNITY = "immunity"
    REROLL = "reroll"
    REVEAL = "reveal"
    STEAL = "steal"
    DOUBLE_VOTE = "double-vote"
    NO_VOTE_AGAINST = "no-vote-against"
    RESHUFFLE = "reshuffle"
    REVOTE = "revote"
    REPLACE_PROFESSION = "replace-profession"
    REPLACE_HEALTH = "replace-health"
    DISCARD_HEALTH = "discard-health"


# Cards dealt at game start; category-bound cards are filtered by enabled categories
DEALABLE_CARD_TYPES: List[str] = (
    [f"exchange-{c.value}" for c in CharacteristicCategory]
    + [
        "exchange", "peek", "immunity", "reroll", "reveal", "steal",
        "double-vote", "no-vote-against",
    ]
    + [f"reshuffle-{c.value}" for c in RESHUFFLE_CATEGORIES]
    + ["revote", "replace-profession", "replace-health"]
)


def split_card_type(card_type: str) -> tuple:
    """
    Split a stored card type into (base type, bound category or None)
    例: "exchange-health" -> ("exchange", "health"), "double-vote" -> ("double-vote", None)
    """
    for base in (CardType.EXCHANGE.value, CardType.RESHUFFLE.value):
        prefix = f"{base}-"
        if card_type.startswith(prefix):
            return base, card_type[len(prefix):]
    if card_type == CardType.REPLACE_PROFESSION.value:
        return card_type, CharacteristicCategory.PROFESSION.value
    if card_type in (CardType.REPLACE_HEALTH.value, CardType.DISCARD_HEALTH.value):
        return card_type, CharacteristicCategory.HEALTH.value
    return card_type, None


# ---------------------------------------------------------------------------
# Player effects (typed replacement for the free-form metadata bag)
# ---------------------------------------------------------------------------

class ImmunityEffect(BaseModel):
    through_round: int = Field(..., ge=1)
    granted_at: Optional[datetime] = None


class DoubleVoteEffect(BaseModel):
    round: int = Field(..., ge=1)
    granted_at: Optional[datetime] = None


class VoteRestriction(BaseModel):
    """禁止对 target_id 投票；card_type 为 revote 的限制在本轮投票结束后清除"""
    target_id: str
    card_type: str
    granted_at: Optional[datetime] = None


class PlayerEffects(BaseModel):
    immunity: Optional[ImmunityEffect] = None
    double_vote: Optional[DoubleVoteEffect] = None
    cannot_vote_against: List[VoteRestriction] = Field(default_factory=list)

    def is_immune(self, current_round: int) -> bool:
        return self.immunity is not None and self.immunity.through_round >= current_round

    def vote_weight(self, current_round: int) -> int:
        if self.double_vote is not None and self.double_vote.round == current_round:
            return 2
        return 1

    def restricts(self, target_id: str) -> bool:
        return any(r.target_id == target_id for r in self.cannot_vote_against)

    def without_restrictions(self, card_type: str) -> "PlayerEffects":
        return self.model_copy(update={
            "cannot_vote_against": [r for r in self.cannot_vote_against if r.card_type != card_type]
        })


# ---------------------------------------------------------------------------
# Requests / responses
# ---------------------------------------------------------------------------

class VoteRequest(BaseModel):
    """投票请求"""
    target_id: str = Field(..., description="被投票玩家ID")


class EndVotingRequest(BaseModel):
    """结束投票请求（手动模式可指定淘汰玩家）"""
    player_id: Optional[str] = Field(None, description="手动模式下指定淘汰的玩家ID")


class UseCardRequest(BaseModel):
    """使用特殊卡请求"""
    player_id: str = Field(..., description="使用者玩家ID")
    card_id: str = Field(..., description="卡牌ID")
    card_type: str = Field(..., description="卡牌类型，需与卡牌一致")
    target_player_id: Optional[str] = Field(None, description="目标玩家ID")
    characteristic_id: Optional[str] = Field(None, description="涉及的特征ID")
    category: Optional[CharacteristicCategory] = Field(None, description="未绑定类别的卡需要指定类别")


class TransitionResult(BaseModel):
    """阶段转换结果；applied=False 表示另一请求已完成同样的转换"""
    applied: bool = True
    phase: GamePhase
    current_round: int
    round_started_at: Optional[datetime] = None
    eliminated_player_id: Optional[str] = None
    saved_by_immunity_id: Optional[str] = None
    vote_counts: Dict[str, int] = Field(default_factory=dict)
    survivor_ids: List[str] = Field(default_factory=list)


class VoteResponse(BaseModel):
    vote_id: str
    target_id: str
    weight: int
    changed: bool = True


class VoteCountsResponse(BaseModel):
    round: int
    counts: Dict[str, int] = Field(default_factory=dict)
    total_voters: int = 0


class CardInfo(BaseModel):
    id: str
    card_type: str
    is_used: bool
    used_in_round: Optional[int] = None


class CardUseResult(BaseModel):
    """卡牌使用结果；peek 的值只返回给使用者"""
    card_id: str
    card_type: str
    used_in_round: int
    target_player_id: Optional[str] = None
    revealed: Optional[Dict[str, Any]] = None
    affected_characteristic_ids: List[str] = Field(default_factory=list)
