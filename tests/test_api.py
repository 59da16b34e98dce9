"""
HTTP API tests
HTTP 接口测试 - 认证、错误格式、限流、完整游戏流程
"""

import pytest
from httpx import ASGITransport, AsyncClient

from bunker.core.database import get_db
from bunker.core.errors import TooManyRequests
from bunker.main import app
from bunker.services.events import get_event_publisher
from bunker.services.statistics import get_statistics_hook
from bunker.utils.security import create_access_token, get_rate_limiter


class StubLimiter:
    """按动作名拒绝请求的限流器"""

    def __init__(self, blocked=()):
        self.blocked = set(blocked)
        self.checked = []

    async def check(self, action: str, user_id: str) -> None:
        self.checked.append((action, user_id))
        if action in self.blocked:
            raise TooManyRequests(retry_after=60)


def auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def limiter():
    return StubLimiter()


@pytest.fixture
async def client(db_session, publisher, stats_hook, limiter):
    """Override dependencies and yield an async HTTP client"""
    async def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_event_publisher] = lambda: publisher
    app.dependency_overrides[get_statistics_hook] = lambda: stats_hook
    app.dependency_overrides[get_rate_limiter] = lambda: limiter

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def create_room(client, user_id="user-0", **body) -> dict:
    payload = {"name": "API bunker", "player_name": "Host"}
    payload.update(body)
    response = await client.post("/api/v1/rooms", json=payload, headers=auth(user_id))
    assert response.status_code == 201, response.text
    return response.json()


async def join_room(client, code: str, user_id: str) -> dict:
    response = await client.post(
        "/api/v1/rooms/join", json={"room_code": code, "player_name": user_id}, headers=auth(user_id)
    )
    assert response.status_code == 200, response.text
    return response.json()


class TestAuthAndErrors:
    """测试认证与错误格式"""

    @pytest.mark.asyncio
    async def test_health_needs_no_auth(self, client):
        response = await client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_missing_token_is_unauthorized(self, client):
        response = await client.post("/api/v1/rooms", json={"name": "x", "player_name": "y"})

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_invalid_token_is_unauthorized(self, client):
        response = await client.get("/api/v1/rooms/anything", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_room_has_error_code(self, client):
        response = await client.post("/api/v1/games/missing/start", headers=auth("user-0"))

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_wrong_phase_is_conflict(self, client):
        room = await create_room(client)

        response = await client.post(f"/api/v1/games/{room['room_id']}/voting/start", headers=auth("user-0"))

        assert response.status_code == 409
        assert response.json()["code"] == "PRECONDITION_FAILED"


class TestRateLimiting:
    """测试限流"""

    @pytest.mark.asyncio
    async def test_join_is_rate_limited(self, client, limiter):
        room = await create_room(client)
        limiter.blocked.add("join")

        response = await client.post(
            "/api/v1/rooms/join",
            json={"room_code": room["room_code"], "player_name": "Spammer"},
            headers=auth("user-1"),
        )

        assert response.status_code == 429
        assert response.json()["code"] == "TOO_MANY_REQUESTS"
        assert response.headers["Retry-After"] == "60"

    @pytest.mark.asyncio
    async def test_votes_are_checked_per_user(self, client, limiter):
        room = await create_room(client)
        guest = await join_room(client, room["room_code"], "user-1")
        room_id = room["room_id"]
        await client.post(f"/api/v1/games/{room_id}/start", headers=auth("user-0"))
        await client.post(f"/api/v1/games/{room_id}/voting/start", headers=auth("user-0"))

        response = await client.post(
            f"/api/v1/games/{room_id}/vote", json={"target_id": guest["player_id"]}, headers=auth("user-0")
        )

        assert response.status_code == 200
        assert ("vote", "user-0") in limiter.checked


class TestGameOverHttp:
    """通过 HTTP 完整进行一局游戏"""

    @pytest.mark.asyncio
    async def test_full_game(self, client, publisher, stats_hook):
        room = await create_room(client, settings={"show_intro": False})
        room_id = room["room_id"]
        p1 = await join_room(client, room["room_code"], "user-1")
        p2 = await join_room(client, room["room_code"], "user-2")

        started = await client.post(f"/api/v1/games/{room_id}/start", headers=auth("user-0"))
        assert started.json()["phase"] == "playing"

        heartbeat = await client.post(
            f"/api/v1/rooms/{room_id}/heartbeat", json={"player_id": p1["player_id"]}, headers=auth("user-1")
        )
        assert heartbeat.status_code == 200

        cards = await client.get(f"/api/v1/games/{room_id}/cards", headers=auth("user-1"))
        assert len(cards.json()) == 2

        await client.post(f"/api/v1/games/{room_id}/voting/start", headers=auth("user-0"))
        for voter in ("user-0", "user-1"):
            vote = await client.post(
                f"/api/v1/games/{room_id}/vote", json={"target_id": p2["player_id"]}, headers=auth(voter)
            )
            assert vote.status_code == 200

        votes = await client.get(f"/api/v1/games/{room_id}/votes", headers=auth("user-2"))
        assert votes.json()["counts"] == {p2["player_id"]: 2}

        ended = await client.post(f"/api/v1/games/{room_id}/voting/end", headers=auth("user-0"))
        assert ended.json()["eliminated_player_id"] == p2["player_id"]

        finished = await client.post(f"/api/v1/games/{room_id}/round/next", headers=auth("user-0"))
        body = finished.json()
        assert body["phase"] == "finished"
        assert sorted(body["survivor_ids"]) == sorted([room["player_id"], p1["player_id"]])
        assert len(stats_hook.calls) == 1

        state = await client.get(f"/api/v1/rooms/{room_id}", headers=auth("user-2"))
        assert state.status_code == 200
        eliminated = next(p for p in state.json()["players"] if p["id"] == p2["player_id"])
        assert eliminated["is_eliminated"]
        assert all(c["is_revealed"] for c in eliminated["characteristics"])

        assert "game_finished" in publisher.types()

    @pytest.mark.asyncio
    async def test_non_host_cannot_advance(self, client):
        room = await create_room(client)
        await join_room(client, room["room_code"], "user-1")

        response = await client.post(f"/api/v1/games/{room['room_id']}/start", headers=auth("user-1"))

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_host_leaving_closes_room(self, client):
        room = await create_room(client)
        await join_room(client, room["room_code"], "user-1")

        left = await client.post(f"/api/v1/rooms/{room['room_id']}/leave", headers=auth("user-0"))
        state = await client.get(f"/api/v1/rooms/{room['room_id']}", headers=auth("user-1"))

        assert left.status_code == 200
        assert state.status_code == 404
