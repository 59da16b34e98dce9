"""
Game API endpoints
游戏流程API端点 - 阶段转换、投票、特殊卡
"""

from typing import List
from fastapi import APIRouter, Depends

from bunker.api.v1.endpoints.deps import (
    get_ability_resolver, get_current_user_id, get_game_engine, rate_limit,
)
from bunker.schemas.game import (
    CardInfo, CardUseResult, EndVotingRequest, TransitionResult, UseCardRequest,
    VoteCountsResponse, VoteRequest, VoteResponse,
)
from bunker.services.abilities import AbilityResolver
from bunker.services.game import GameEngine

router = APIRouter()


@router.post("/{room_id}/start", response_model=TransitionResult)
async def start_game(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: GameEngine = Depends(get_game_engine),
):
    """开始游戏（仅房主）"""
    return await engine.start_game(room_id, user_id)


@router.post("/{room_id}/skip-intro", response_model=TransitionResult)
async def skip_intro(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: GameEngine = Depends(get_game_engine),
):
    """跳过灾难介绍，开始第一回合计时"""
    return await engine.skip_intro(room_id, user_id)


@router.post("/{room_id}/voting/start", response_model=TransitionResult)
async def start_voting(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: GameEngine = Depends(get_game_engine),
):
    return await engine.start_voting(room_id, user_id)


@router.post("/{room_id}/vote", response_model=VoteResponse)
async def cast_vote(
    room_id: str,
    vote: VoteRequest,
    user_id: str = Depends(rate_limit("vote")),
    engine: GameEngine = Depends(get_game_engine),
):
    """投票；重复投票会覆盖之前的选择"""
    return await engine.cast_vote(room_id, user_id, vote.target_id)


@router.get("/{room_id}/votes", response_model=VoteCountsResponse)
async def get_votes(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: GameEngine = Depends(get_game_engine),
):
    return await engine.get_vote_counts(room_id, user_id)


@router.post("/{room_id}/voting/end", response_model=TransitionResult)
async def end_voting(
    room_id: str,
    body: EndVotingRequest = None,
    user_id: str = Depends(get_current_user_id),
    engine: GameEngine = Depends(get_game_engine),
):
    """结束投票并结算淘汰"""
    player_id = body.player_id if body else None
    return await engine.end_voting(room_id, user_id, player_id)


@router.post("/{room_id}/round/next", response_model=TransitionResult)
async def advance_round(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: GameEngine = Depends(get_game_engine),
):
    """进入下一回合，存活人数不足时结束游戏"""
    return await engine.advance_round(room_id, user_id)


@router.post("/{room_id}/finish", response_model=TransitionResult)
async def finish_game(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    engine: GameEngine = Depends(get_game_engine),
):
    """手动模式下提前结束游戏"""
    return await engine.finish_manually(room_id, user_id)


@router.get("/{room_id}/cards", response_model=List[CardInfo])
async def list_cards(
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    resolver: AbilityResolver = Depends(get_ability_resolver),
):
    """我的特殊卡"""
    return await resolver.list_cards(room_id, user_id)


@router.post("/{room_id}/cards/use", response_model=CardUseResult)
async def use_card(
    room_id: str,
    request: UseCardRequest,
    user_id: str = Depends(get_current_user_id),
    resolver: AbilityResolver = Depends(get_ability_resolver),
):
    """使用特殊卡"""
    return await resolver.use_card(room_id, user_id, request)
