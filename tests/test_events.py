"""
Event fan-out, connection manager and security helper tests
事件广播、连接管理与安全工具测试
"""

import json
import pytest
from typing import List
from hypothesis import given, strategies as st, settings
from starlette.websockets import WebSocketState

from bunker.core.errors import TooManyRequests
from bunker.services.events import EventType, RoomEventPublisher, room_channel
from bunker.utils.security import (
    RateLimiter, create_access_token, hash_password, verify_password, verify_token,
)
from bunker.websocket.connection_manager import ConnectionManager


class MockWebSocket:
    """Mock WebSocket for testing"""

    def __init__(self, broken: bool = False):
        self.messages_sent: List[str] = []
        self.client_state = WebSocketState.CONNECTING
        self.close_code = None
        self.broken = broken

    async def accept(self):
        self.client_state = WebSocketState.CONNECTED

    async def close(self, code: int = 1000, reason: str = ""):
        self.client_state = WebSocketState.DISCONNECTED
        self.close_code = code

    async def send_text(self, data: str):
        if self.broken or self.client_state != WebSocketState.CONNECTED:
            raise RuntimeError("WebSocket is closed")
        self.messages_sent.append(data)

    def types(self) -> List[str]:
        return [json.loads(m)["type"] for m in self.messages_sent]


class MockRedisManager:
    """只记录 publish 的 Redis 管理器"""

    def __init__(self, fail: bool = False):
        self.client = object()
        self.fail = fail
        self.published = []

    async def publish_message(self, channel: str, message: dict) -> int:
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, message))
        return 1


class MockRedisClient:
    """Sorted-set subset used by the rate limiter"""

    def __init__(self):
        self.sets = {}

    async def zremrangebyscore(self, key, low, high):
        members = self.sets.get(key, {})
        for member, score in list(members.items()):
            if low <= score <= high:
                del members[member]

    async def zcard(self, key):
        return len(self.sets.get(key, {}))

    async def zadd(self, key, mapping):
        self.sets.setdefault(key, {}).update(mapping)

    async def expire(self, key, seconds):
        return True


class MockLimiterRedis:
    def __init__(self, client=None):
        self.client = client

    async def get_client(self):
        if self.client is None:
            raise RuntimeError("Redis client not available")
        return self.client


class TestConnectionManager:
    """测试连接管理"""

    @pytest.mark.asyncio
    @given(user_ids=st.lists(st.text(alphabet="abcdef0123456789", min_size=1, max_size=8), min_size=1, max_size=8, unique=True))
    @settings(max_examples=30, deadline=None)
    async def test_broadcast_reaches_exactly_the_room(self, user_ids):
        manager = ConnectionManager(max_connections=100)
        sockets = {}
        for i, user_id in enumerate(user_ids):
            sockets[user_id] = MockWebSocket()
            room_id = "room-a" if i % 2 == 0 else "room-b"
            assert await manager.connect(user_id, sockets[user_id], room_id)

        sent = await manager.broadcast_to_room("room-a", {"type": "ping"})

        in_room = set(manager.get_room_users("room-a"))
        assert sent == len(in_room)
        for user_id, ws in sockets.items():
            assert (ws.types() == ["ping"]) == (user_id in in_room)

    @pytest.mark.asyncio
    async def test_connection_limit(self):
        manager = ConnectionManager(max_connections=1)

        assert await manager.connect("u1", MockWebSocket(), "r")
        assert not await manager.connect("u2", MockWebSocket(), "r")

    @pytest.mark.asyncio
    async def test_reconnect_replaces_old_socket(self):
        manager = ConnectionManager(max_connections=10)
        old, new = MockWebSocket(), MockWebSocket()

        await manager.connect("u1", old, "r1")
        await manager.connect("u1", new, "r2")

        assert old.client_state == WebSocketState.DISCONNECTED
        assert manager.get_room_users("r1") == []
        assert manager.get_room_users("r2") == ["u1"]

    @pytest.mark.asyncio
    async def test_failed_send_disconnects(self):
        manager = ConnectionManager(max_connections=10)
        ws = MockWebSocket()
        await manager.connect("u1", ws, "r")
        ws.broken = True

        assert not await manager.send_to_user("u1", {"type": "x"})
        assert not manager.is_user_connected("u1")


class TestRoomEventPublisher:
    """测试事件发布"""

    @pytest.mark.asyncio
    async def test_event_goes_to_sockets_and_redis(self):
        manager = ConnectionManager(max_connections=10)
        ws = MockWebSocket()
        await manager.connect("u1", ws, "room-1")
        redis = MockRedisManager()

        event = await RoomEventPublisher(manager, redis).publish("room-1", EventType.VOTE_CAST, {"round": 1})

        assert event.type == EventType.VOTE_CAST
        assert ws.types() == [EventType.VOTE_CAST]
        channel, message = redis.published[0]
        assert channel == room_channel("room-1")
        assert message["data"] == {"round": 1}

    @pytest.mark.asyncio
    async def test_redis_failure_is_swallowed(self):
        manager = ConnectionManager(max_connections=10)
        ws = MockWebSocket()
        await manager.connect("u1", ws, "room-1")

        await RoomEventPublisher(manager, MockRedisManager(fail=True)).publish("room-1", EventType.PHASE_CHANGED)

        assert ws.types() == [EventType.PHASE_CHANGED]

    @pytest.mark.asyncio
    async def test_room_closed_disconnects_everyone(self):
        manager = ConnectionManager(max_connections=10)
        sockets = [MockWebSocket(), MockWebSocket()]
        await manager.connect("u1", sockets[0], "room-1")
        await manager.connect("u2", sockets[1], "room-1")

        await RoomEventPublisher(manager, None).publish("room-1", EventType.ROOM_CLOSED, {"reason": "host_left"})

        assert all(ws.types() == [EventType.ROOM_CLOSED] for ws in sockets)
        assert all(ws.client_state == WebSocketState.DISCONNECTED for ws in sockets)
        assert manager.get_room_users("room-1") == []


class TestSecurity:
    """测试令牌、密码与限流"""

    def test_token_round_trip(self):
        assert verify_token(create_access_token("user-42")) == "user-42"
        assert verify_token("garbage") is None

    def test_password_hashing(self):
        hashed = hash_password("hunter2")

        assert hashed != "hunter2"
        assert verify_password("hunter2", hashed)
        assert not verify_password("hunter3", hashed)

    @pytest.mark.asyncio
    async def test_limiter_blocks_after_limit(self):
        limiter = RateLimiter(MockLimiterRedis(MockRedisClient()), window=60)
        limit = limiter.limit_for("vote")

        for _ in range(limit):
            await limiter.check("vote", "user-1")
        with pytest.raises(TooManyRequests):
            await limiter.check("vote", "user-1")

        # 其他用户不受影响
        await limiter.check("vote", "user-2")

    @pytest.mark.asyncio
    async def test_limiter_fails_open_without_redis(self):
        limiter = RateLimiter(MockLimiterRedis(None), window=60)

        for _ in range(limiter.limit_for("join") + 5):
            await limiter.check("join", "user-1")
