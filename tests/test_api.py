from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from playguard.errors import StoreUnavailable
from playguard.main import RateLimiter, Services, app, get_services, rate_limiter
from playguard.models import utcnow
from playguard.store import AnomalyRecord, MemoryStore
from conftest import OTHER_WALLET, WALLET


@pytest.fixture()
def svc():
    services = Services(MemoryStore())
    app.dependency_overrides[get_services] = lambda: services
    rate_limiter.requests.clear()
    yield services
    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def client(svc):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def new_session(client, wallet=WALLET, game_type="dash-trials"):
    res = await client.post("/api/v1/game/session", json={"wallet_address": wallet, "game_type": game_type})
    assert res.status_code == 200, res.text
    return res.json()["session_token"]


def dash_result(token, **overrides):
    body = {
        "wallet_address": WALLET,
        "game_type": "dash-trials",
        "session_token": token,
        "score": 100,
        "distance": 100,
        "time_ms": 10_000,
    }
    body.update(overrides)
    return body


@pytest.mark.asyncio
async def test_health(client):
    res = await client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_create_session(client):
    res = await client.post("/api/v1/game/session", json={"wallet_address": WALLET, "game_type": "dash-trials"})
    assert res.status_code == 200
    data = res.json()
    assert data["success"] is True
    assert len(data["session_token"]) == 64
    assert "expires_at" in data


@pytest.mark.asyncio
async def test_create_session_rejects_bad_wallet(client):
    res = await client.post("/api/v1/game/session", json={"wallet_address": "0x123", "game_type": "dash-trials"})
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_create_session_unknown_game_type(client):
    res = await client.post("/api/v1/game/session", json={"wallet_address": WALLET, "game_type": "moon-hopper"})
    assert res.status_code == 400
    data = res.json()
    assert data["success"] is False
    assert data["reason"] == "UnknownGameType"


@pytest.mark.asyncio
async def test_record_accepted_then_replay_refused(client, svc):
    token = await new_session(client)

    res = await client.post("/api/v1/game/record", json=dash_result(token))
    assert res.status_code == 200, res.text
    assert res.json()["accepted"] is True

    res = await client.post("/api/v1/game/record", json=dash_result(token))
    assert res.status_code == 403
    data = res.json()
    assert data["accepted"] is False
    assert data["reason"] == "TokenAlreadyUsed"
    assert data["state"] == "Rejected"
    assert data["stage"] == "Received"

    records = await svc.store.records_for_wallet(WALLET)
    assert len(records) == 1


@pytest.mark.asyncio
async def test_wallet_address_case_is_normalised(client, svc):
    upper = "0x" + "A" * 64
    token = await new_session(client, wallet=upper)
    res = await client.post("/api/v1/game/record", json=dash_result(token, wallet_address=upper))
    assert res.status_code == 200
    assert len(await svc.store.records_for_wallet(WALLET)) == 1


@pytest.mark.asyncio
async def test_forged_token_is_forbidden(client):
    res = await client.post("/api/v1/game/record", json=dash_result("0" * 64))
    assert res.status_code == 403
    assert res.json()["reason"] == "TokenInvalid"


@pytest.mark.asyncio
async def test_token_bound_to_wallet(client):
    token = await new_session(client, wallet=OTHER_WALLET)
    res = await client.post("/api/v1/game/record", json=dash_result(token))
    assert res.status_code == 403
    assert res.json()["reason"] == "TokenWalletMismatch"


@pytest.mark.asyncio
async def test_implausible_run_is_unprocessable_and_logged(client, svc):
    token = await new_session(client)
    res = await client.post(
        "/api/v1/game/record",
        json=dash_result(token, distance=5000, score=5000),
        headers={"user-agent": "speedhack/2.0"},
    )
    assert res.status_code == 422
    data = res.json()
    assert data["reason"] == "SubmissionRejected"
    assert "ImpossibleSpeed" in [e["code"] for e in data["errors"]]

    await svc.anomalies.flush()
    assert svc.store.anomalies[0].reason == "Submission rejected"
    assert svc.store.anomalies[0].user_agent == "speedhack/2.0"


@pytest.mark.asyncio
async def test_negative_values_reach_validator(client):
    token = await new_session(client)
    res = await client.post("/api/v1/game/record", json=dash_result(token, coin_count=-5))
    assert res.status_code == 422
    assert "NegativeValue" in [e["code"] for e in res.json()["errors"]]


@pytest.mark.asyncio
async def test_flap_items_collected_dict_is_summed(client, svc):
    token = await new_session(client, game_type="cosmic-flap")
    res = await client.post("/api/v1/game/record", json={
        "wallet_address": WALLET,
        "game_type": "cosmic-flap",
        "session_token": token,
        "score": 8,
        "distance": 100,
        "time_ms": 10_000,
        "obstacles_passed": 8,
        "flap_count": 30,
        "items_collected": {"gem": 3, "star": 2},
    })
    assert res.status_code == 200, res.text
    records = await svc.store.records_for_wallet(WALLET, "cosmic-flap")
    assert records[0]["game_metadata"]["items_collected"] == 5


@pytest.mark.asyncio
async def test_session_refused_right_after_a_submission(client):
    token = await new_session(client)
    assert (await client.post("/api/v1/game/record", json=dash_result(token))).status_code == 200

    res = await client.post("/api/v1/game/session", json={"wallet_address": WALLET, "game_type": "dash-trials"})
    assert res.status_code == 429
    assert res.json()["errors"][0]["code"] == "TooFast"


@pytest.mark.asyncio
async def test_hourly_quota_refuses_record(client, svc):
    token = await new_session(client)
    now = utcnow()
    for i in range(20):
        await svc.store.insert_record({
            "wallet_address": WALLET, "game_type": "dash-trials",
            "score": 100, "distance": 100, "time_ms": 10_000,
            "played_at": now - timedelta(minutes=1 + i),
        })

    res = await client.post("/api/v1/game/record", json=dash_result(token))
    assert res.status_code == 429
    data = res.json()
    assert data["reason"] == "RateLimitExceeded"
    assert [e["code"] for e in data["errors"]] == ["Hourly"]


@pytest.mark.asyncio
async def test_get_records_and_high_score(client):
    token = await new_session(client)
    await client.post("/api/v1/game/record", json=dash_result(token, score=105))

    res = await client.get("/api/v1/game/record", params={"address": WALLET})
    assert res.status_code == 200
    data = res.json()
    assert len(data["records"]) == 1
    assert data["high_score"] == 105
    assert data["records"][0]["game_type"] == "dash-trials"


@pytest.mark.asyncio
async def test_get_records_empty(client):
    res = await client.get("/api/v1/game/record", params={"address": OTHER_WALLET})
    assert res.json() == {"records": [], "high_score": 0}


@pytest.mark.asyncio
async def test_suspicious_wallets_endpoint(client, svc):
    now = utcnow()
    for hours in (1, 2, 3):
        await svc.store.append_anomaly(AnomalyRecord(WALLET, "Submission rejected", timestamp=now - timedelta(hours=hours)))
    await svc.store.append_anomaly(AnomalyRecord(OTHER_WALLET, "Rate limit exceeded", timestamp=now))

    res = await client.get("/api/v1/anomalies/suspicious-wallets")
    assert res.status_code == 200
    wallets = res.json()["wallets"]
    assert [w["wallet_address"] for w in wallets] == [WALLET]
    assert wallets[0]["incident_count"] == 3
    assert isinstance(wallets[0]["first_incident"], str)

    res = await client.get("/api/v1/anomalies/suspicious-wallets", params={"min_incidents": 1})
    assert len(res.json()["wallets"]) == 2


@pytest.mark.asyncio
async def test_game_types(client):
    res = await client.get("/api/v1/game/types")
    assert res.json() == {"game_types": ["cosmic-flap", "dash-trials"]}


class HistoryDownStore(MemoryStore):
    async def recent_submission_times(self, wallet, since):
        raise StoreUnavailable("timeout")


@pytest.mark.asyncio
async def test_store_outage_is_503(client):
    broken = Services(HistoryDownStore())
    app.dependency_overrides[get_services] = lambda: broken
    res = await client.post("/api/v1/game/session", json={"wallet_address": WALLET, "game_type": "dash-trials"})
    assert res.status_code == 503
    assert res.json()["reason"] == "ServiceUnavailable"


def test_per_ip_throttle():
    limiter = RateLimiter(max_per_minute=2)
    assert limiter.is_limited("10.0.0.1") is False
    assert limiter.is_limited("10.0.0.1") is False
    assert limiter.is_limited("10.0.0.1") is True
    assert limiter.is_limited("10.0.0.2") is False


def test_per_ip_throttle_forgets_idle_addresses():
    now = [1000.0]
    limiter = RateLimiter(max_per_minute=5, clock=lambda: now[0])
    limiter.is_limited("10.0.0.1")
    limiter.is_limited("10.0.0.2")
    assert set(limiter.requests) == {"10.0.0.1", "10.0.0.2"}

    now[0] += 30
    limiter.is_limited("10.0.0.2")
    assert set(limiter.requests) == {"10.0.0.1", "10.0.0.2"}

    now[0] += 61
    limiter.is_limited("10.0.0.3")
    assert set(limiter.requests) == {"10.0.0.3"}
