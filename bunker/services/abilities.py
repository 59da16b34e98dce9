"""
Special ability resolver
特殊卡结算 - 校验、执行效果、标记卡牌已使用，同一事务内完成
"""

import logging
import random
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bunker.core.errors import Forbidden, GameError, NotFound, PreconditionFailed, ValidationFailed
from bunker.core.utils import utcnow
from bunker.models.characteristic import Characteristic
from bunker.models.player import Player
from bunker.models.room import Room
from bunker.models.special_card import SpecialCard
from bunker.models.vote import Vote
from bunker.schemas.game import (
    RESHUFFLE_CATEGORIES, CardInfo, CardType, CardUseResult, CharacteristicCategory,
    DoubleVoteEffect, GamePhase, ImmunityEffect, UseCardRequest, VoteRestriction,
    split_card_type,
)
from bunker.services.characteristics import random_value
from bunker.services.events import EventType, RoomEventPublisher
from bunker.services.room_store import RoomStore

logger = logging.getLogger(__name__)

USABLE_PHASES = (GamePhase.PLAYING, GamePhase.VOTING)


class CardContext:
    """Everything a card handler needs, loaded and verified up front"""

    def __init__(self, room: Room, holder: Player, card: SpecialCard, request: UseCardRequest, category: Optional[str]):
        self.room = room
        self.holder = holder
        self.card = card
        self.request = request
        self.category = category
        self.result = CardUseResult(
            card_id=card.id,
            card_type=card.card_type,
            used_in_round=room.current_round,
            target_player_id=request.target_player_id,
        )

    @property
    def round(self) -> int:
        return self.room.current_round


class AbilityResolver:
    """特殊卡服务"""

    def __init__(self, db: AsyncSession, publisher: Optional[RoomEventPublisher] = None, rng: Optional[random.Random] = None):
        self.db = db
        self.store = RoomStore(db)
        self.publisher = publisher
        self.rng = rng or random.Random()
        self.handlers = {
            CardType.IMMUNITY.value: self._immunity,
            CardType.DOUBLE_VOTE.value: self._double_vote,
            CardType.NO_VOTE_AGAINST.value: self._no_vote_against,
            CardType.REVOTE.value: self._revote,
            CardType.EXCHANGE.value: self._exchange,
            CardType.PEEK.value: self._peek,
            CardType.REVEAL.value: self._reveal,
            CardType.REROLL.value: self._reroll,
            CardType.STEAL.value: self._steal,
            CardType.RESHUFFLE.value: self._reshuffle,
            CardType.REPLACE_PROFESSION.value: self._replace_revealed,
            CardType.REPLACE_HEALTH.value: self._replace_revealed,
            CardType.DISCARD_HEALTH.value: self._discard_health,
        }

    async def list_cards(self, room_id: str, user_id: str) -> List[CardInfo]:
        player = await self.store.get_player_for_user(room_id, user_id)
        stmt = select(SpecialCard).where(
            SpecialCard.room_id == room_id,
            SpecialCard.player_id == player.id,
        ).order_by(SpecialCard.created_at, SpecialCard.id)
        result = await self.db.execute(stmt)
        return [
            CardInfo(id=c.id, card_type=c.card_type, is_used=c.is_used, used_in_round=c.used_in_round)
            for c in result.scalars().all()
        ]

    async def use_card(self, room_id: str, user_id: str, request: UseCardRequest) -> CardUseResult:
        """
        Apply a card's effect and consume it.

        Any failure rolls back the whole use: the card stays unused and no
        characteristic, vote or effect changes.
        """
        try:
            ctx = await self._load(room_id, user_id, request)
            handler = self.handlers.get(split_card_type(ctx.card.card_type)[0])
            if handler is None:
                raise ValidationFailed(f"未知的卡牌类型: {ctx.card.card_type}")

            await handler(ctx)
            await self._claim(ctx)
            result = ctx.result
            holder_id, card_type = ctx.holder.id, ctx.card.card_type
            await self.db.commit()
        except GameError:
            await self.db.rollback()
            raise

        logger.info(f"[CARD] Room {room_id}: player {holder_id} used {card_type} on {request.target_player_id}")
        if self.publisher is not None:
            # peek 的结果只返回给使用者
            await self.publisher.publish(room_id, EventType.CARD_USED, {
                "player_id": holder_id,
                "card_type": card_type,
                "target_player_id": request.target_player_id,
                "characteristic_ids": result.affected_characteristic_ids,
            })
        return result

    # ------------------------------------------------------------------
    # loading / validation
    # ------------------------------------------------------------------

    async def _load(self, room_id: str, user_id: str, request: UseCardRequest) -> CardContext:
        room = await self.store.get_room(room_id)
        if room.phase not in USABLE_PHASES:
            raise PreconditionFailed("当前阶段不能使用特殊卡")

        holder = await self.store.get_player(room_id, request.player_id)
        if holder.user_id != user_id:
            raise Forbidden("不能使用其他玩家的卡牌")
        if holder.is_eliminated:
            raise Forbidden("已淘汰的玩家不能使用特殊卡")

        stmt = select(SpecialCard).where(
            SpecialCard.id == request.card_id,
            SpecialCard.room_id == room_id,
            SpecialCard.player_id == holder.id,
        )
        result = await self.db.execute(stmt)
        card = result.scalar_one_or_none()
        if not card:
            raise NotFound("卡牌不存在")
        if card.is_used:
            raise PreconditionFailed("卡牌已经使用过")
        if card.card_type != request.card_type:
            raise ValidationFailed("卡牌类型不匹配")

        _, bound = split_card_type(card.card_type)
        category = bound or (request.category.value if request.category else None)
        return CardContext(room, holder, card, request, category)

    async def _claim(self, ctx: CardContext) -> None:
        stmt = (
            update(SpecialCard)
            .where(SpecialCard.id == ctx.card.id, SpecialCard.is_used.is_(False))
            .values(is_used=True, used_at=utcnow(), used_in_round=ctx.round)
        )
        result = await self.db.execute(stmt)
        if result.rowcount != 1:
            raise PreconditionFailed("卡牌已经使用过")

    async def _target(self, ctx: CardContext, allow_self: bool = False, allow_eliminated: bool = False) -> Player:
        if not ctx.request.target_player_id:
            raise ValidationFailed("需要指定目标玩家")
        target = await self.store.get_player(ctx.room.id, ctx.request.target_player_id)
        if not allow_self and target.id == ctx.holder.id:
            raise ValidationFailed("不能以自己为目标")
        if not allow_eliminated and target.is_eliminated:
            raise ValidationFailed("目标玩家已被淘汰")
        return target

    async def _characteristic_of(self, player: Player, characteristic_id: Optional[str]) -> Characteristic:
        """The characteristic must belong to ``player`` (and so to this room)"""
        if not characteristic_id:
            raise ValidationFailed("需要指定特征")
        stmt = select(Characteristic).where(
            Characteristic.id == characteristic_id,
            Characteristic.player_id == player.id,
        )
        result = await self.db.execute(stmt)
        characteristic = result.scalar_one_or_none()
        if not characteristic:
            raise NotFound("特征不存在")
        return characteristic

    async def _category_of(self, player: Player, category: str) -> Optional[Characteristic]:
        stmt = select(Characteristic).where(
            Characteristic.player_id == player.id,
            Characteristic.category == category,
        ).order_by(Characteristic.sort_order).limit(1)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _require_category(characteristic: Characteristic, category: Optional[str]) -> None:
        if category is not None and characteristic.category != category:
            raise ValidationFailed(f"该卡只能作用于 {category} 类别")

    # ------------------------------------------------------------------
    # effect cards
    # ------------------------------------------------------------------

    async def _immunity(self, ctx: CardContext) -> None:
        effects = ctx.holder.effects
        effects.immunity = ImmunityEffect(through_round=ctx.round, granted_at=utcnow())
        ctx.holder.apply_effects(effects)

    async def _double_vote(self, ctx: CardContext) -> None:
        effects = ctx.holder.effects
        effects.double_vote = DoubleVoteEffect(round=ctx.round, granted_at=utcnow())
        ctx.holder.apply_effects(effects)

        # 本回合已投的票同步加权
        stmt = (
            update(Vote)
            .where(Vote.room_id == ctx.room.id, Vote.round == ctx.round, Vote.voter_id == ctx.holder.id)
            .values(weight=2)
        )
        await self.db.execute(stmt)

    async def _no_vote_against(self, ctx: CardContext) -> None:
        target = await self._target(ctx)
        effects = target.effects
        if not effects.restricts(ctx.holder.id):
            effects.cannot_vote_against.append(VoteRestriction(
                target_id=ctx.holder.id,
                card_type=CardType.NO_VOTE_AGAINST.value,
                granted_at=utcnow(),
            ))
            target.apply_effects(effects)

    async def _revote(self, ctx: CardContext) -> None:
        """
        Throw away this round's ballots. Whoever voted against the holder may
        not vote against them again until voting ends.
        """
        if ctx.room.phase != GamePhase.VOTING:
            raise PreconditionFailed("重新投票卡只能在投票阶段使用")

        votes = await self.store.get_round_votes(ctx.room.id, ctx.round)
        against = {v.voter_id for v in votes if v.target_id == ctx.holder.id}

        if against:
            stmt = select(Player).where(Player.room_id == ctx.room.id, Player.id.in_(against))
            result = await self.db.execute(stmt)
            for voter in result.scalars().all():
                effects = voter.effects
                effects.cannot_vote_against.append(VoteRestriction(
                    target_id=ctx.holder.id,
                    card_type=CardType.REVOTE.value,
                    granted_at=utcnow(),
                ))
                voter.apply_effects(effects)

        await self.db.execute(
            delete(Vote)
            .where(Vote.room_id == ctx.room.id, Vote.round == ctx.round)
        )
        ctx.result.revealed = {"cleared_votes": len(votes), "restricted_voters": sorted(against)}

    # ------------------------------------------------------------------
    # characteristic cards
    # ------------------------------------------------------------------

    async def _exchange(self, ctx: CardContext) -> None:
        target = await self._target(ctx)
        if ctx.request.characteristic_id is None and ctx.category is not None:
            own = await self._category_of(ctx.holder, ctx.category)
            if own is None:
                raise ValidationFailed("你没有该类别的特征")
        else:
            own = await self._characteristic_of(ctx.holder, ctx.request.characteristic_id)
        self._require_category(own, ctx.category)

        theirs = await self._category_of(target, own.category)
        if theirs is None:
            raise ValidationFailed("目标玩家没有该类别的特征")

        own.value, theirs.value = theirs.value, own.value
        ctx.result.affected_characteristic_ids = [own.id, theirs.id]

    async def _peek(self, ctx: CardContext) -> None:
        target = await self._target(ctx, allow_eliminated=True)
        characteristic = await self._characteristic_of(target, ctx.request.characteristic_id)
        ctx.result.revealed = {
            "characteristic_id": characteristic.id,
            "category": characteristic.category,
            "value": characteristic.value,
        }

    async def _reveal(self, ctx: CardContext) -> None:
        target = await self._target(ctx, allow_self=True)
        characteristic = await self._characteristic_of(target, ctx.request.characteristic_id)
        characteristic.reveal(ctx.round)
        ctx.result.affected_characteristic_ids = [characteristic.id]

    async def _reroll(self, ctx: CardContext) -> None:
        characteristic = await self._characteristic_of(ctx.holder, ctx.request.characteristic_id)
        self._require_category(characteristic, ctx.category)
        old_value = characteristic.value
        characteristic.value = random_value(characteristic.category, self.rng, exclude=old_value)
        ctx.result.affected_characteristic_ids = [characteristic.id]
        ctx.result.revealed = {"old_value": old_value, "new_value": characteristic.value}

    async def _steal(self, ctx: CardContext) -> None:
        target = await self._target(ctx)
        stolen = await self._characteristic_of(target, ctx.request.characteristic_id)
        existing = await self._category_of(ctx.holder, stolen.category)

        if existing is not None:
            existing.value = stolen.value
            await self.db.delete(stolen)
            ctx.result.affected_characteristic_ids = [existing.id, stolen.id]
        else:
            stolen.player_id = ctx.holder.id
            stolen.is_revealed = False
            stolen.reveal_round = None
            ctx.result.affected_characteristic_ids = [stolen.id]

    async def _reshuffle(self, ctx: CardContext) -> None:
        """公开的同类别特征在存活玩家之间随机重新分配"""
        allowed = {c.value for c in RESHUFFLE_CATEGORIES}
        if ctx.category not in allowed:
            raise ValidationFailed(f"重新洗牌只支持类别: {', '.join(sorted(allowed))}")

        stmt = (
            select(Characteristic)
            .join(Player, Player.id == Characteristic.player_id)
            .where(
                Player.room_id == ctx.room.id,
                Player.is_eliminated.is_(False),
                Characteristic.category == ctx.category,
                Characteristic.is_revealed.is_(True),
            )
            .order_by(Characteristic.id)
        )
        result = await self.db.execute(stmt)
        revealed = list(result.scalars().all())
        if len(revealed) < 2:
            raise PreconditionFailed("公开的该类别特征不足两张，无法洗牌")

        values = [c.value for c in revealed]
        self.rng.shuffle(values)
        for characteristic, value in zip(revealed, values):
            characteristic.value = value
        ctx.result.affected_characteristic_ids = [c.id for c in revealed]

    async def _replace_revealed(self, ctx: CardContext) -> None:
        target = await self._target(ctx, allow_self=True)
        characteristic = await self._characteristic_of(target, ctx.request.characteristic_id)
        self._require_category(characteristic, ctx.category)
        if not characteristic.is_revealed:
            raise PreconditionFailed("只能替换已公开的特征")
        characteristic.value = random_value(characteristic.category, self.rng, exclude=characteristic.value)
        ctx.result.affected_characteristic_ids = [characteristic.id]

    async def _discard_health(self, ctx: CardContext) -> None:
        target = await self._target(ctx, allow_self=True)
        characteristic = await self._characteristic_of(target, ctx.request.characteristic_id)
        self._require_category(characteristic, CharacteristicCategory.HEALTH.value)
        if not characteristic.is_revealed:
            raise PreconditionFailed("只能丢弃已公开的健康特征")
        await self.db.delete(characteristic)
        ctx.result.affected_characteristic_ids = [characteristic.id]
