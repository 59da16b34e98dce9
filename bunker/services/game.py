"""
Game engine - round/phase state machine
游戏引擎 - 回合与阶段状态机、投票、淘汰
"""

import logging
import random
import uuid
from typing import Callable, Collection, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bunker.core.config import settings
from bunker.core.errors import Forbidden, PreconditionFailed, ValidationFailed
from bunker.core.utils import utcnow
from bunker.models.characteristic import Characteristic
from bunker.models.player import Player
from bunker.models.room import Room
from bunker.models.special_card import SpecialCard
from bunker.models.vote import Vote
from bunker.schemas.game import (
    DEALABLE_CARD_TYPES, CardType, GamePhase, TransitionResult, VoteCountsResponse,
    VoteResponse, split_card_type,
)
from bunker.schemas.room import RoomSettings
from bunker.services.characteristics import deal_characteristics
from bunker.services.events import EventType, RoomEventPublisher
from bunker.services.room_store import RoomStore
from bunker.services.tally import Ballot, Candidate, count_votes, resolve_elimination

logger = logging.getLogger(__name__)


def allowed_card_types(room_settings: RoomSettings) -> List[str]:
    """与已关闭类别绑定的卡牌不发放"""
    enabled = {c.value for c in room_settings.enabled_categories}
    allowed = []
    for card_type in DEALABLE_CARD_TYPES:
        _, category = split_card_type(card_type)
        if category is None or category in enabled:
            allowed.append(card_type)
    return allowed


class GameEngine:
    """
    Drives a room through waiting -> playing -> voting -> results -> (playing | finished).

    Every transition is an optimistic compare-and-set on rooms.phase. A caller
    that loses the race against an identical transition gets a result with
    applied=False instead of an error.
    """

    def __init__(
        self,
        db: AsyncSession,
        publisher: Optional[RoomEventPublisher] = None,
        stats_hook: Optional[Callable] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.store = RoomStore(db)
        self.publisher = publisher
        self.stats_hook = stats_hook
        self.rng = rng or random.Random()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_host(room: Room, user_id: str) -> None:
        if room.host_id != user_id:
            raise Forbidden("只有房主可以执行此操作")

    @staticmethod
    def _anchor(room_settings: RoomSettings):
        # 手动模式不计时
        return None if room_settings.is_manual else utcnow()

    @staticmethod
    def _result(room: Room, applied: bool = True, **extra) -> TransitionResult:
        return TransitionResult(
            applied=applied,
            phase=room.phase,
            current_round=room.current_round,
            round_started_at=room.round_started_at,
            **extra,
        )

    def _check_phase(self, room: Room, expected: Collection[GamePhase], settled: Collection[GamePhase], action: str):
        """Returns a no-op result when the room already sits in a settled phase"""
        if room.phase in expected:
            return None
        if room.phase in settled:
            logger.info(f"[PHASE] {action} on room {room.id} is a no-op, phase already {room.phase.value}")
            return self._result(room, applied=False)
        raise PreconditionFailed(f"当前阶段({room.phase.value})不能{action}")

    async def _lost_race(self, room_id: str, settled: Collection[GamePhase], action: str) -> TransitionResult:
        await self.db.rollback()
        room = await self.store.reload_room(room_id)
        if room.phase in settled:
            logger.info(f"[PHASE] {action} on room {room_id} lost the race, phase already {room.phase.value}")
            return self._result(room, applied=False)
        raise PreconditionFailed(f"当前阶段({room.phase.value})不能{action}")

    async def _publish(self, room_id: str, event_type: str, data: Optional[dict] = None) -> None:
        if self.publisher is not None:
            await self.publisher.publish(room_id, event_type, data)

    async def _publish_phase(self, room: Room) -> None:
        await self._publish(room.id, EventType.PHASE_CHANGED, {
            "phase": room.phase.value,
            "current_round": room.current_round,
            "round_started_at": room.round_started_at.isoformat() if room.round_started_at else None,
        })

    async def _run_stats_hook(self, room_id: str, survivor_ids: List[str], all_ids: List[str]) -> None:
        if self.stats_hook is None:
            return
        try:
            await self.stats_hook(self.db, room_id, survivor_ids, all_ids)
        except Exception:
            logger.exception(f"[STATS] Statistics hook failed for room {room_id}")

    # ------------------------------------------------------------------
    # waiting -> playing
    # ------------------------------------------------------------------

    async def start_game(self, room_id: str, user_id: str) -> TransitionResult:
        """
        开始游戏：发放特征与特殊卡
        """
        room = await self.store.get_room(room_id)
        self._require_host(room, user_id)
        settled = (GamePhase.PLAYING,)
        noop = self._check_phase(room, (GamePhase.WAITING,), settled, "开始游戏")
        if noop:
            return noop

        players = await self.store.get_players(room_id)
        if len(players) < settings.MIN_PLAYERS_TO_START:
            raise PreconditionFailed(f"至少需要{settings.MIN_PLAYERS_TO_START}名玩家才能开始游戏")

        room_settings = room.room_settings
        anchor = None if room_settings.show_intro else self._anchor(room_settings)
        won = await self.store.compare_and_set_phase(room_id, [GamePhase.WAITING], {
            "phase": GamePhase.PLAYING,
            "current_round": 1,
            "round_started_at": anchor,
        })
        if not won:
            return await self._lost_race(room_id, settled, "开始游戏")

        player_ids = [p.id for p in players]
        await self.db.execute(delete(Characteristic).where(Characteristic.player_id.in_(player_ids)))
        await self.db.execute(delete(SpecialCard).where(SpecialCard.room_id == room_id))

        categories = [c.value for c in room_settings.enabled_categories]
        card_pool = allowed_card_types(room_settings)
        cards_per_player = min(room_settings.special_cards_per_player, len(card_pool))
        for player in players:
            player.is_ready = False
            player.is_eliminated = False
            player.effects_data = {}
            self.db.add_all(deal_characteristics(player.id, categories, self.rng))
            for card_type in self.rng.sample(card_pool, cards_per_player):
                self.db.add(SpecialCard(
                    id=str(uuid.uuid4()),
                    room_id=room_id,
                    player_id=player.id,
                    card_type=card_type,
                    is_used=False,
                ))

        self.store.add_system_message(room_id, "游戏开始！第 1 回合")
        await self.db.commit()

        room = await self.store.reload_room(room_id)
        logger.info(f"[GAME] Room {room_id} started with {len(players)} players")
        await self._publish_phase(room)
        return self._result(room)

    # ------------------------------------------------------------------
    # intra-playing: skip the catastrophe intro
    # ------------------------------------------------------------------

    async def skip_intro(self, room_id: str, user_id: str) -> TransitionResult:
        room = await self.store.reload_room(room_id)
        self._require_host(room, user_id)
        if room.phase != GamePhase.PLAYING or room.current_round != 1:
            raise PreconditionFailed("只能在第一回合讨论阶段跳过介绍")

        room_settings = room.room_settings
        if room_settings.intro_skipped:
            return self._result(room, applied=False)

        updated = room_settings.model_copy(update={"intro_skipped": True})
        # settings 是 JSON 列，用 updated_at 确认读到的行未被改动
        won = await self.store.compare_and_set_phase(
            room_id,
            [GamePhase.PLAYING],
            {"round_started_at": self._anchor(room_settings), "settings": updated.model_dump(mode="json")},
            conditions=(Room.current_round == 1, Room.updated_at == room.updated_at),
        )
        if not won:
            await self.db.rollback()
            room = await self.store.reload_room(room_id)
            if room.phase == GamePhase.PLAYING and room.room_settings.intro_skipped:
                logger.info(f"[PHASE] Skip intro on room {room_id} lost the race, intro already skipped")
                return self._result(room, applied=False)
            raise PreconditionFailed("只能在第一回合讨论阶段跳过介绍")

        await self.db.commit()
        room = await self.store.reload_room(room_id)
        await self._publish_phase(room)
        return self._result(room)

    # ------------------------------------------------------------------
    # playing -> voting
    # ------------------------------------------------------------------

    async def start_voting(self, room_id: str, user_id: str) -> TransitionResult:
        room = await self.store.get_room(room_id)
        self._require_host(room, user_id)
        settled = (GamePhase.VOTING,)
        noop = self._check_phase(room, (GamePhase.PLAYING,), settled, "开始投票")
        if noop:
            return noop

        won = await self.store.compare_and_set_phase(room_id, [GamePhase.PLAYING], {
            "phase": GamePhase.VOTING,
            "round_started_at": self._anchor(room.room_settings),
        })
        if not won:
            return await self._lost_race(room_id, settled, "开始投票")

        self.store.add_system_message(room_id, f"第 {room.current_round} 回合投票开始")
        await self.db.commit()
        room = await self.store.reload_room(room_id)
        logger.info(f"[PHASE] Room {room_id} round {room.current_round}: voting started")
        await self._publish_phase(room)
        return self._result(room)

    # ------------------------------------------------------------------
    # votes
    # ------------------------------------------------------------------

    async def cast_vote(self, room_id: str, user_id: str, target_id: str) -> VoteResponse:
        """
        投票；同一回合重复投票覆盖之前的选择
        """
        room = await self.store.get_room(room_id)
        if room.phase != GamePhase.VOTING:
            raise PreconditionFailed("当前不是投票阶段")

        voter = await self.store.find_player_for_user(room_id, user_id)
        if not voter:
            raise Forbidden("你不是该房间的玩家")
        if voter.is_eliminated and not room.room_settings.eliminated_can_vote:
            raise Forbidden("已淘汰的玩家不能投票")

        target = await self.store.get_player(room_id, target_id)
        if target.is_eliminated:
            raise ValidationFailed("不能投票给已淘汰的玩家")
        if target.id == voter.id:
            raise ValidationFailed("不能投票给自己")

        effects = voter.effects
        if effects.restricts(target.id):
            raise Forbidden("你不能对该玩家投票")
        weight = effects.vote_weight(room.current_round)

        # 回滚会使 ORM 对象过期，先取出标识
        round_number, voter_id = room.current_round, voter.id
        vote, changed = await self._upsert_vote(room_id, round_number, voter_id, target.id, weight)
        if changed:
            logger.info(f"[VOTE] Room {room_id} round {round_number}: {voter_id} -> {target_id} (x{weight})")
            await self._publish(room_id, EventType.VOTE_CAST, {
                "voter_id": voter_id,
                "round": round_number,
            })
        return VoteResponse(vote_id=vote.id, target_id=vote.target_id, weight=vote.weight, changed=changed)

    async def _upsert_vote(self, room_id: str, round_number: int, voter_id: str, target_id: str, weight: int):
        for attempt in range(2):
            stmt = select(Vote).where(
                Vote.room_id == room_id,
                Vote.round == round_number,
                Vote.voter_id == voter_id,
            )
            result = await self.db.execute(stmt)
            existing = result.scalar_one_or_none()

            if existing:
                if existing.target_id == target_id and existing.weight == weight:
                    return existing, False
                existing.target_id = target_id
                existing.weight = weight
                existing.updated_at = utcnow()
                await self.db.commit()
                return existing, True

            vote = Vote(
                id=str(uuid.uuid4()),
                room_id=room_id,
                round=round_number,
                voter_id=voter_id,
                target_id=target_id,
                weight=weight,
            )
            self.db.add(vote)
            try:
                await self.db.commit()
                return vote, True
            except IntegrityError:
                # 并发的同一投票者先插入了，改为更新
                await self.db.rollback()
                if attempt == 1:
                    raise
        raise PreconditionFailed("投票失败，请重试")

    async def get_vote_counts(self, room_id: str, user_id: str) -> VoteCountsResponse:
        room = await self.store.get_room(room_id)
        await self.store.get_player_for_user(room_id, user_id)
        players = await self.store.get_players(room_id)
        votes = await self.store.get_round_votes(room_id, room.current_round)
        counts = count_votes(
            [Ballot(v.voter_id, v.target_id, v.weight) for v in votes],
            [Candidate(p.id, p.is_eliminated) for p in players],
        )
        return VoteCountsResponse(round=room.current_round, counts=counts, total_voters=len(votes))

    # ------------------------------------------------------------------
    # voting -> results
    # ------------------------------------------------------------------

    async def end_voting(self, room_id: str, user_id: str, player_id: Optional[str] = None) -> TransitionResult:
        """
        结束投票并结算淘汰

        In manual mode the host may name the player to eliminate instead of
        using the tally.
        """
        room = await self.store.get_room(room_id)
        self._require_host(room, user_id)
        settled = (GamePhase.RESULTS,)
        noop = self._check_phase(room, (GamePhase.VOTING,), settled, "结束投票")
        if noop:
            return noop

        room_settings = room.room_settings
        round_number = room.current_round
        players = await self.store.get_players(room_id)
        by_id: Dict[str, Player] = {p.id: p for p in players}

        chosen: Optional[Player] = None
        if player_id is not None:
            if not room_settings.is_manual:
                raise ValidationFailed("只有手动模式可以指定淘汰玩家")
            chosen = by_id.get(player_id)
            if chosen is None or chosen.is_eliminated:
                raise ValidationFailed("指定的玩家不存在或已被淘汰")
            if chosen.effects.is_immune(round_number):
                raise ValidationFailed("该玩家本回合拥有免疫")

        won = await self.store.compare_and_set_phase(room_id, [GamePhase.VOTING], {
            "phase": GamePhase.RESULTS,
            "round_started_at": None,
        })
        if not won:
            return await self._lost_race(room_id, settled, "结束投票")

        votes = await self.store.get_round_votes(room_id, round_number)
        outcome = resolve_elimination(
            [Ballot(v.voter_id, v.target_id, v.weight) for v in votes],
            [Candidate(p.id, p.is_eliminated, p.effects.is_immune(round_number)) for p in players],
            self.rng,
        )
        eliminated_id = chosen.id if chosen is not None else outcome.eliminated_id
        saved_id = None if chosen is not None else outcome.saved_by_immunity_id

        if eliminated_id:
            eliminated = by_id[eliminated_id]
            eliminated.is_eliminated = True
            # 淘汰时全部特征公开，揭示回合统一记为本回合
            await self.db.execute(
                update(Characteristic)
                .where(Characteristic.player_id == eliminated_id)
                .values(is_revealed=True, reveal_round=round_number)
            )
            self.store.add_system_message(room_id, f"{eliminated.name} 被淘汰出局")
        elif not outcome.counts:
            self.store.add_system_message(room_id, "本回合没有人投票，无人淘汰")
        else:
            self.store.add_system_message(room_id, "本回合无人淘汰")

        if saved_id and eliminated_id:
            self.store.add_system_message(room_id, f"{by_id[saved_id].name} 因免疫而幸免")

        # 重新投票卡施加的限制只在本回合有效
        for player in players:
            effects = player.effects
            if any(r.card_type == CardType.REVOTE.value for r in effects.cannot_vote_against):
                player.apply_effects(effects.without_restrictions(CardType.REVOTE.value))

        await self.db.commit()
        room = await self.store.reload_room(room_id)
        logger.info(
            f"[PHASE] Room {room_id} round {round_number}: voting ended, eliminated={eliminated_id}, "
            f"saved={saved_id}, counts={outcome.counts}"
        )

        if eliminated_id:
            await self._publish(room_id, EventType.PLAYER_ELIMINATED, {
                "player_id": eliminated_id,
                "round": round_number,
            })
        await self._publish_phase(room)
        return self._result(
            room,
            eliminated_player_id=eliminated_id,
            saved_by_immunity_id=saved_id,
            vote_counts=outcome.counts,
        )

    # ------------------------------------------------------------------
    # results -> playing | finished
    # ------------------------------------------------------------------

    async def advance_round(self, room_id: str, user_id: str) -> TransitionResult:
        room = await self.store.get_room(room_id)
        self._require_host(room, user_id)
        room_settings = room.room_settings

        if room.phase == GamePhase.VOTING and room_settings.is_manual:
            return await self.end_voting(room_id, user_id)

        settled = (GamePhase.PLAYING, GamePhase.FINISHED)
        noop = self._check_phase(room, (GamePhase.RESULTS,), settled, "进入下一回合")
        if noop:
            return noop

        players = await self.store.get_players(room_id)
        survivors = [p for p in players if not p.is_eliminated]

        if len(survivors) <= settings.FINISH_THRESHOLD:
            return await self._finish(room, players, [GamePhase.RESULTS], settled, "结束游戏")

        won = await self.store.compare_and_set_phase(room_id, [GamePhase.RESULTS], {
            "phase": GamePhase.PLAYING,
            "current_round": Room.current_round + 1,
            "round_started_at": self._anchor(room_settings),
        })
        if not won:
            return await self._lost_race(room_id, settled, "进入下一回合")

        self.store.add_system_message(room_id, f"第 {room.current_round + 1} 回合开始")
        await self.db.commit()
        room = await self.store.reload_room(room_id)
        logger.info(f"[PHASE] Room {room_id} advanced to round {room.current_round}")
        await self._publish_phase(room)
        return self._result(room)

    async def finish_manually(self, room_id: str, user_id: str) -> TransitionResult:
        """手动模式下房主提前结束游戏（至少进行到第二回合）"""
        room = await self.store.get_room(room_id)
        self._require_host(room, user_id)
        if room.phase == GamePhase.FINISHED:
            return self._result(room, applied=False)
        if not room.room_settings.is_manual:
            raise PreconditionFailed("只有手动模式可以提前结束游戏")
        if room.current_round < 2:
            raise PreconditionFailed("至少进行到第二回合才能结束游戏")

        expected = (GamePhase.PLAYING, GamePhase.VOTING, GamePhase.RESULTS)
        noop = self._check_phase(room, expected, (GamePhase.FINISHED,), "结束游戏")
        if noop:
            return noop

        players = await self.store.get_players(room_id)
        return await self._finish(room, players, list(expected), (GamePhase.FINISHED,), "结束游戏")

    async def _finish(self, room: Room, players: List[Player], expected, settled, action: str) -> TransitionResult:
        room_id = room.id
        won = await self.store.compare_and_set_phase(room_id, expected, {
            "phase": GamePhase.FINISHED,
            "round_started_at": None,
        })
        if not won:
            return await self._lost_race(room_id, settled, action)

        survivor_ids = [p.id for p in players if not p.is_eliminated]
        all_ids = [p.id for p in players]
        names = ", ".join(p.name for p in players if not p.is_eliminated)
        self.store.add_system_message(room_id, f"游戏结束！进入地堡的幸存者: {names}")
        await self.db.commit()

        # 只有赢得转换的调用者执行统计
        await self._run_stats_hook(room_id, survivor_ids, all_ids)

        room = await self.store.reload_room(room_id)
        logger.info(f"[GAME] Room {room_id} finished in round {room.current_round}, survivors={survivor_ids}")
        await self._publish(room_id, EventType.GAME_FINISHED, {"survivor_ids": survivor_ids})
        await self._publish_phase(room)
        return self._result(room, survivor_ids=survivor_ids)
