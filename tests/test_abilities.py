"""
Special ability resolver tests
特殊卡结算测试
"""

import random
import pytest
from sqlalchemy import select

from bunker.core.errors import Forbidden, NotFound, PreconditionFailed, ValidationFailed
from bunker.models.characteristic import Characteristic
from bunker.models.player import Player
from bunker.models.special_card import SpecialCard
from bunker.models.vote import Vote
from bunker.schemas.game import UseCardRequest
from bunker.services.abilities import AbilityResolver
from bunker.services.events import EventType
from bunker.services.game import GameEngine
from tests.conftest import create_room_with_players, give_card


async def started_room(db_session, player_count=4, voting=False, **settings_overrides):
    room_id, players = await create_room_with_players(
        db_session, player_count, special_cards_per_player=0, **settings_overrides
    )
    engine = GameEngine(db_session, rng=random.Random(3))
    await engine.start_game(room_id, "user-0")
    if voting:
        await engine.start_voting(room_id, "user-0")
    return room_id, players, engine


async def characteristic(db_session, player_id, category) -> Characteristic:
    result = await db_session.execute(
        select(Characteristic).where(Characteristic.player_id == player_id, Characteristic.category == category)
    )
    return result.scalar_one()


def resolver(db_session, publisher=None) -> AbilityResolver:
    return AbilityResolver(db_session, publisher, rng=random.Random(11))


class TestCardValidation:
    """测试卡牌使用前的校验"""

    @pytest.mark.asyncio
    async def test_card_is_consumed_once(self, db_session, publisher):
        room_id, players, _ = await started_room(db_session)
        card_id = await give_card(db_session, room_id, players["user-1"], "immunity")
        request = UseCardRequest(player_id=players["user-1"], card_id=card_id, card_type="immunity")

        result = await resolver(db_session, publisher).use_card(room_id, "user-1", request)

        assert result.used_in_round == 1
        card = await db_session.get(SpecialCard, card_id)
        assert card.is_used and card.used_in_round == 1
        assert EventType.CARD_USED in publisher.types()

        with pytest.raises(PreconditionFailed):
            await resolver(db_session).use_card(room_id, "user-1", request)

    @pytest.mark.asyncio
    async def test_cards_only_during_play(self, db_session):
        room_id, players = await create_room_with_players(db_session, 3)
        card_id = await give_card(db_session, room_id, players["user-1"], "immunity")

        with pytest.raises(PreconditionFailed):
            await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
                player_id=players["user-1"], card_id=card_id, card_type="immunity",
            ))

    @pytest.mark.asyncio
    async def test_cannot_play_someone_elses_card(self, db_session):
        room_id, players, _ = await started_room(db_session)
        card_id = await give_card(db_session, room_id, players["user-1"], "immunity")

        with pytest.raises(Forbidden):
            await resolver(db_session).use_card(room_id, "user-2", UseCardRequest(
                player_id=players["user-1"], card_id=card_id, card_type="immunity",
            ))

    @pytest.mark.asyncio
    async def test_card_type_must_match(self, db_session):
        room_id, players, _ = await started_room(db_session)
        card_id = await give_card(db_session, room_id, players["user-1"], "immunity")

        with pytest.raises(ValidationFailed):
            await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
                player_id=players["user-1"], card_id=card_id, card_type="double-vote",
            ))

    @pytest.mark.asyncio
    async def test_unknown_card(self, db_session):
        room_id, players, _ = await started_room(db_session)

        with pytest.raises(NotFound):
            await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
                player_id=players["user-1"], card_id="nope", card_type="immunity",
            ))

    @pytest.mark.asyncio
    async def test_failed_use_leaves_card_unused(self, db_session):
        room_id, players, _ = await started_room(db_session)
        card_id = await give_card(db_session, room_id, players["user-1"], "peek")

        with pytest.raises(ValidationFailed):
            await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
                player_id=players["user-1"], card_id=card_id, card_type="peek",
            ))

        card = await db_session.get(SpecialCard, card_id)
        assert not card.is_used

    @pytest.mark.asyncio
    async def test_list_cards(self, db_session):
        room_id, players, _ = await started_room(db_session)
        await give_card(db_session, room_id, players["user-1"], "peek")
        await give_card(db_session, room_id, players["user-1"], "immunity")

        cards = await resolver(db_session).list_cards(room_id, "user-1")

        assert sorted(c.card_type for c in cards) == ["immunity", "peek"]


class TestVoteCards:
    """测试影响投票的卡牌"""

    @pytest.mark.asyncio
    async def test_immunity_saves_from_elimination(self, db_session):
        room_id, players, engine = await started_room(db_session, voting=True)
        card_id = await give_card(db_session, room_id, players["user-2"], "immunity")
        await resolver(db_session).use_card(room_id, "user-2", UseCardRequest(
            player_id=players["user-2"], card_id=card_id, card_type="immunity",
        ))
        await engine.cast_vote(room_id, "user-0", players["user-2"])
        await engine.cast_vote(room_id, "user-1", players["user-2"])
        await engine.cast_vote(room_id, "user-2", players["user-3"])

        result = await engine.end_voting(room_id, "user-0")

        assert result.saved_by_immunity_id == players["user-2"]
        assert result.eliminated_player_id == players["user-3"]

    @pytest.mark.asyncio
    async def test_double_vote_reweights_existing_ballot(self, db_session):
        room_id, players, engine = await started_room(db_session, voting=True)
        await engine.cast_vote(room_id, "user-1", players["user-3"])
        card_id = await give_card(db_session, room_id, players["user-1"], "double-vote")

        await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
            player_id=players["user-1"], card_id=card_id, card_type="double-vote",
        ))

        counts = await engine.get_vote_counts(room_id, "user-1")
        assert counts.counts == {players["user-3"]: 2}

        # 之后改票仍保持双倍
        vote = await engine.cast_vote(room_id, "user-1", players["user-2"])
        assert vote.weight == 2

    @pytest.mark.asyncio
    async def test_no_vote_against_blocks_target(self, db_session):
        room_id, players, engine = await started_room(db_session, voting=True)
        card_id = await give_card(db_session, room_id, players["user-1"], "no-vote-against")

        await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
            player_id=players["user-1"], card_id=card_id, card_type="no-vote-against",
            target_player_id=players["user-2"],
        ))

        with pytest.raises(Forbidden):
            await engine.cast_vote(room_id, "user-2", players["user-1"])
        vote = await engine.cast_vote(room_id, "user-2", players["user-3"])
        assert vote.target_id == players["user-3"]

    @pytest.mark.asyncio
    async def test_revote_clears_ballots_and_restricts_accusers(self, db_session):
        room_id, players, engine = await started_room(db_session, voting=True)
        await engine.cast_vote(room_id, "user-2", players["user-1"])
        await engine.cast_vote(room_id, "user-3", players["user-1"])
        await engine.cast_vote(room_id, "user-1", players["user-2"])
        card_id = await give_card(db_session, room_id, players["user-1"], "revote")

        result = await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
            player_id=players["user-1"], card_id=card_id, card_type="revote",
        ))

        assert result.revealed["cleared_votes"] == 3
        assert result.revealed["restricted_voters"] == sorted([players["user-2"], players["user-3"]])
        remaining = (await db_session.execute(select(Vote).where(Vote.room_id == room_id))).scalars().all()
        assert remaining == []
        with pytest.raises(Forbidden):
            await engine.cast_vote(room_id, "user-2", players["user-1"])

        # 投票结束后限制解除
        await engine.end_voting(room_id, "user-0")
        accuser = await db_session.get(Player, players["user-2"])
        assert accuser.effects.cannot_vote_against == []

    @pytest.mark.asyncio
    async def test_revote_only_while_voting(self, db_session):
        room_id, players, _ = await started_room(db_session)
        card_id = await give_card(db_session, room_id, players["user-1"], "revote")

        with pytest.raises(PreconditionFailed):
            await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
                player_id=players["user-1"], card_id=card_id, card_type="revote",
            ))


class TestCharacteristicCards:
    """测试作用于特征的卡牌"""

    @pytest.mark.asyncio
    async def test_exchange_swaps_bound_category(self, db_session):
        room_id, players, _ = await started_room(db_session)
        mine = await characteristic(db_session, players["user-1"], "health")
        theirs = await characteristic(db_session, players["user-2"], "health")
        my_value, their_value = mine.value, theirs.value
        card_id = await give_card(db_session, room_id, players["user-1"], "exchange-health")

        result = await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
            player_id=players["user-1"], card_id=card_id, card_type="exchange-health",
            target_player_id=players["user-2"],
        ))

        assert mine.value == their_value
        assert theirs.value == my_value
        assert set(result.affected_characteristic_ids) == {mine.id, theirs.id}

    @pytest.mark.asyncio
    async def test_exchange_rejects_wrong_category(self, db_session):
        room_id, players, _ = await started_room(db_session)
        hobby = await characteristic(db_session, players["user-1"], "hobby")
        card_id = await give_card(db_session, room_id, players["user-1"], "exchange-health")

        with pytest.raises(ValidationFailed):
            await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
                player_id=players["user-1"], card_id=card_id, card_type="exchange-health",
                target_player_id=players["user-2"], characteristic_id=hobby.id,
            ))

    @pytest.mark.asyncio
    async def test_peek_returns_value_without_revealing(self, db_session, publisher):
        room_id, players, _ = await started_room(db_session)
        secret = await characteristic(db_session, players["user-2"], "phobia")
        card_id = await give_card(db_session, room_id, players["user-1"], "peek")

        result = await resolver(db_session, publisher).use_card(room_id, "user-1", UseCardRequest(
            player_id=players["user-1"], card_id=card_id, card_type="peek",
            target_player_id=players["user-2"], characteristic_id=secret.id,
        ))

        assert result.revealed["value"] == secret.value
        assert not secret.is_revealed
        # 广播事件中不包含偷看到的值
        card_events = [data for _, event_type, data in publisher.events if event_type == EventType.CARD_USED]
        assert secret.value not in str(card_events)

    @pytest.mark.asyncio
    async def test_characteristic_of_another_player_is_not_found(self, db_session):
        room_id, players, _ = await started_room(db_session)
        not_theirs = await characteristic(db_session, players["user-3"], "phobia")
        card_id = await give_card(db_session, room_id, players["user-1"], "peek")

        with pytest.raises(NotFound):
            await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
                player_id=players["user-1"], card_id=card_id, card_type="peek",
                target_player_id=players["user-2"], characteristic_id=not_theirs.id,
            ))

    @pytest.mark.asyncio
    async def test_reveal_marks_round(self, db_session):
        room_id, players, _ = await started_room(db_session)
        target = await characteristic(db_session, players["user-2"], "fact")
        card_id = await give_card(db_session, room_id, players["user-1"], "reveal")

        await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
            player_id=players["user-1"], card_id=card_id, card_type="reveal",
            target_player_id=players["user-2"], characteristic_id=target.id,
        ))

        assert target.is_revealed
        assert target.reveal_round == 1

    @pytest.mark.asyncio
    async def test_reroll_draws_a_new_value(self, db_session):
        room_id, players, _ = await started_room(db_session)
        own = await characteristic(db_session, players["user-1"], "profession")
        old_value = own.value
        card_id = await give_card(db_session, room_id, players["user-1"], "reroll")

        result = await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
            player_id=players["user-1"], card_id=card_id, card_type="reroll",
            characteristic_id=own.id,
        ))

        assert own.value != old_value
        assert result.revealed == {"old_value": old_value, "new_value": own.value}

    @pytest.mark.asyncio
    async def test_steal_replaces_own_characteristic(self, db_session):
        room_id, players, _ = await started_room(db_session)
        mine = await characteristic(db_session, players["user-1"], "baggage")
        theirs = await characteristic(db_session, players["user-2"], "baggage")
        stolen_value, stolen_id = theirs.value, theirs.id
        card_id = await give_card(db_session, room_id, players["user-1"], "steal")

        await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
            player_id=players["user-1"], card_id=card_id, card_type="steal",
            target_player_id=players["user-2"], characteristic_id=stolen_id,
        ))

        assert mine.value == stolen_value
        assert await db_session.get(Characteristic, stolen_id) is None

    @pytest.mark.asyncio
    async def test_reshuffle_needs_two_revealed(self, db_session):
        room_id, players, _ = await started_room(db_session)
        card_id = await give_card(db_session, room_id, players["user-1"], "reshuffle-bio")

        with pytest.raises(PreconditionFailed):
            await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
                player_id=players["user-1"], card_id=card_id, card_type="reshuffle-bio",
            ))

    @pytest.mark.asyncio
    async def test_reshuffle_permutes_revealed_values(self, db_session):
        room_id, players, _ = await started_room(db_session)
        revealed = []
        for user in ("user-0", "user-1", "user-2"):
            c = await characteristic(db_session, players[user], "hobby")
            c.reveal(1)
            revealed.append(c)
        hidden = await characteristic(db_session, players["user-3"], "hobby")
        hidden_value = hidden.value
        await db_session.commit()
        before = sorted(c.value for c in revealed)
        card_id = await give_card(db_session, room_id, players["user-1"], "reshuffle-hobby")

        result = await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
            player_id=players["user-1"], card_id=card_id, card_type="reshuffle-hobby",
        ))

        assert sorted(c.value for c in revealed) == before
        assert hidden.value == hidden_value
        assert set(result.affected_characteristic_ids) == {c.id for c in revealed}

    @pytest.mark.asyncio
    async def test_replace_requires_revealed_characteristic(self, db_session):
        room_id, players, _ = await started_room(db_session)
        profession = await characteristic(db_session, players["user-2"], "profession")
        card_id = await give_card(db_session, room_id, players["user-1"], "replace-profession")
        request = UseCardRequest(
            player_id=players["user-1"], card_id=card_id, card_type="replace-profession",
            target_player_id=players["user-2"], characteristic_id=profession.id,
        )

        with pytest.raises(PreconditionFailed):
            await resolver(db_session).use_card(room_id, "user-1", request)

        profession = await characteristic(db_session, players["user-2"], "profession")
        profession.reveal(1)
        await db_session.commit()
        old_value = profession.value

        await resolver(db_session).use_card(room_id, "user-1", request)

        assert profession.value != old_value

    @pytest.mark.asyncio
    async def test_discard_health_removes_revealed_health(self, db_session):
        room_id, players, _ = await started_room(db_session)
        health = await characteristic(db_session, players["user-1"], "health")
        health.reveal(1)
        await db_session.commit()
        health_id = health.id
        card_id = await give_card(db_session, room_id, players["user-1"], "discard-health")

        await resolver(db_session).use_card(room_id, "user-1", UseCardRequest(
            player_id=players["user-1"], card_id=card_id, card_type="discard-health",
            target_player_id=players["user-1"], characteristic_id=health_id,
        ))

        assert await db_session.get(Characteristic, health_id) is None
