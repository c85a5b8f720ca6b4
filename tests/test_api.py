"""
Tests for the HTTP API.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from gmtea.api.dependencies import get_database
from gmtea.api.main import create_app
from gmtea.core.config import Settings
from gmtea.indexer.decoders import BADGE_MINTED, CHECKIN_COMPLETED
from gmtea.scheduler.main import build_indexing_scheduler
from gmtea.services.cache import InMemoryTTLCache
from tests.conftest import (
    ALICE,
    BADGE_CONTRACT,
    BOB,
    CAROL,
    CHECKIN_CONTRACT,
    DEPLOY_BLOCK,
    block_time,
    make_log,
    tx_hash,
)

ADMIN_KEY = "secret"


@pytest.fixture
def scheduler(session_scope, ledger, sink):
    config = Settings(
        environment="test",
        checkin_contract_address=CHECKIN_CONTRACT,
        badge_contract_address=BADGE_CONTRACT,
        deploy_block=DEPLOY_BLOCK,
    )
    ledger.height = 2000
    ledger.add(
        make_log(BADGE_MINTED, BADGE_CONTRACT, 1100, tx_hash(1), to=ALICE, tokenId=1, tier=2, referrer=BOB),
        make_log(
            CHECKIN_COMPLETED, CHECKIN_CONTRACT, 1200, tx_hash(2),
            user=ALICE, timestamp=block_time(1200), message="gm", count=1,
        ),
        make_log(
            CHECKIN_COMPLETED, CHECKIN_CONTRACT, 1300, tx_hash(3),
            user=BOB, timestamp=block_time(1300), message="gm", count=1,
        ),
    )
    return build_indexing_scheduler(config, session_scope, ledger=ledger, notifier=sink, cache=InMemoryTTLCache())


@pytest_asyncio.fixture
async def client(session_scope, scheduler):
    app = create_app()
    
    async def override_database():
        async with session_scope() as db:
            yield db
    
    app.dependency_overrides[get_database] = override_database
    app.state.scheduler = scheduler
    app.state.cache = scheduler.cache
    app.state.admin_api_key = ADMIN_KEY
    
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


async def _index(client):
    response = await client.post("/api/v1/admin/index", headers={"X-Admin-Key": ADMIN_KEY})
    assert response.status_code == 200
    return response.json()["data"]


@pytest.mark.asyncio
async def test_unknown_user_is_not_found(client):
    response = await client.get(f"/api/v1/users/{CAROL}/points")
    
    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["error_code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_invalid_address_is_rejected(client):
    response = await client.get("/api/v1/users/0xnothex/points")
    
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "INVALID_ADDRESS"


@pytest.mark.asyncio
async def test_points_breakdown_after_indexing(client):
    report = await _index(client)
    assert report["errors"] == {}
    
    response = await client.get(f"/api/v1/users/{ALICE.upper().replace('0X', '0x')}/points")
    
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["address"] == ALICE
    # tier 2 boost 1.3, gold badge 50, first check-in milestone 50
    assert (data["checkin_points"], data["badge_points"], data["other_points"]) == (13, 50, 50)
    assert data["total_points"] == 113
    assert data["rank"] == 1
    assert data["has_badge"] is True
    assert data["referral_points"] == 0
    
    badges = (await client.get(f"/api/v1/users/{ALICE}/badges")).json()["data"]
    assert [badge["token_id"] for badge in badges] == [1]
    checkins = (await client.get(f"/api/v1/users/{ALICE}/checkins")).json()["data"]
    assert checkins[0]["tier_at_checkin"] == 2


@pytest.mark.asyncio
async def test_points_leaderboard(client):
    await _index(client)
    
    response = await client.get("/api/v1/leaderboards/points", params={"limit": 10})
    
    assert response.status_code == 200
    page = response.json()["data"]
    assert [entry["address"] for entry in page["entries"]] == [ALICE, BOB]
    assert [entry["points"] for entry in page["entries"]] == [113, 60]
    
    stats = (await client.get("/api/v1/leaderboards/badges")).json()["data"]
    assert stats["total"] == 1


@pytest.mark.asyncio
async def test_admin_routes_require_key(client):
    assert (await client.get("/api/v1/admin/status")).status_code == 401
    assert (await client.get("/api/v1/admin/status", headers={"X-Admin-Key": "wrong"})).status_code == 401
    
    response = await client.get("/api/v1/admin/status", headers={"X-Admin-Key": ADMIN_KEY})
    assert response.status_code == 200
    assert response.json()["data"]["interval_minutes"] == 5


@pytest.mark.asyncio
async def test_admin_recalculate_rejects_bad_address(client):
    response = await client.post(
        "/api/v1/admin/recalculate",
        json={"address": "0x123"},
        headers={"X-Admin-Key": ADMIN_KEY},
    )
    
    assert response.status_code == 400
    assert response.json()["error_code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_admin_reindex_unknown_source(client):
    response = await client.post(
        "/api/v1/admin/reindex",
        json={"source": "transfers"},
        headers={"X-Admin-Key": ADMIN_KEY},
    )
    
    assert response.status_code == 400
    assert response.json()["details"]["available"] == ["badge", "checkin"]


@pytest.mark.asyncio
async def test_admin_interval_update(client):
    response = await client.put(
        "/api/v1/admin/interval",
        json={"minutes": 10},
        headers={"X-Admin-Key": ADMIN_KEY},
    )
    
    assert response.status_code == 200
    assert response.json()["data"]["interval_minutes"] == 10
