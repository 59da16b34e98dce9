"""
Pytest configuration and fixtures
测试配置和固件
"""

import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_TO_FILE", "false")

import pytest
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from bunker.core.database import Base, build_engine, build_session_factory
from bunker.core.utils import utcnow
from bunker.models.player import Player
from bunker.models.special_card import SpecialCard
from bunker.schemas.room import RoomCreate, RoomJoinRequest, RoomSettingsInput
from bunker.services.room import RoomService
import bunker.models  # noqa: F401  注册所有表


# Test database URL (in-memory SQLite for fast testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class RecordingPublisher:
    """记录发布的事件，代替 WebSocket / Redis"""

    def __init__(self):
        self.events: List[Tuple[str, str, dict]] = []

    async def publish(self, room_id: str, event_type: str, data: Optional[dict] = None):
        self.events.append((room_id, event_type, data or {}))

    def types(self) -> List[str]:
        return [event_type for _, event_type, _ in self.events]


class RecordingStatsHook:
    def __init__(self):
        self.calls = []

    async def __call__(self, db, room_id, survivor_ids, all_ids):
        self.calls.append((room_id, list(survivor_ids), list(all_ids)))


@pytest.fixture
async def test_engine():
    """Create test database engine"""
    engine = build_engine(TEST_DATABASE_URL)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
async def db_session(test_engine):
    """Create test database session"""
    session_factory = build_session_factory(test_engine)
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def rival_session(test_engine):
    """Second session on the same database, acting as a concurrent caller"""
    session_factory = build_session_factory(test_engine)
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def stats_hook():
    return RecordingStatsHook()


async def create_room_with_players(
    db_session,
    player_count: int = 4,
    password: Optional[str] = None,
    **settings_overrides,
) -> Tuple[str, Dict[str, str]]:
    """
    Create a room hosted by "user-0" and join "user-1".."user-N-1".
    返回 (room_id, {user_id: player_id})
    """
    service = RoomService(db_session)
    created = await service.create_room(
        RoomCreate(
            name="Test bunker",
            player_name="Host",
            password=password,
            settings=RoomSettingsInput(**settings_overrides),
        ),
        "user-0",
    )
    players = {"user-0": created.player_id}
    for i in range(1, player_count):
        joined = await service.join_room(
            RoomJoinRequest(room_code=created.room_code, player_name=f"Player {i}", password=password),
            f"user-{i}",
        )
        players[f"user-{i}"] = joined.player_id
    return created.room_id, players


async def give_card(db_session, room_id: str, player_id: str, card_type: str) -> str:
    card = SpecialCard(
        id=f"card-{card_type}-{player_id}",
        room_id=room_id,
        player_id=player_id,
        card_type=card_type,
        is_used=False,
    )
    db_session.add(card)
    await db_session.commit()
    return card.id


async def age_players(db_session, player_ids, seconds: int) -> None:
    """把玩家的最后心跳时间往前推"""
    stale = utcnow() - timedelta(seconds=seconds)
    for player_id in player_ids:
        player = await db_session.get(Player, player_id)
        player.last_seen_at = stale
    await db_session.commit()
