import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import shift_allocation.api as api
from shift_allocation.api import create_app
from shift_allocation.config import AllocationConfig
from shift_allocation.core import AllocationCore
from shift_allocation.models import Shift, WorkerProfile, WorkerTier

from conftest import NOW, seed_network


def _p(msg: str) -> None:
    # pytest captures stdout unless you run with -s
    print(msg, flush=True)


def _banner(name: str) -> None:
    _p("\n" + "=" * 88)
    _p(f"test: {name}")
    _p("=" * 88)


def _dump_core(app) -> None:
    core: AllocationCore = app.state.core
    repo = core.repository
    _p("workers:")
    for w in sorted((r for r in repo.db.all() if isinstance(r, WorkerProfile)), key=lambda x: x.id):
        _p(f"  - {w.id} | restaurant={w.restaurant_id} tier={w.tier} reliability={w.reliability_score}")
    _p("shifts:")
    for s in sorted((r for r in repo.db.all() if isinstance(r, Shift)), key=lambda x: x.id):
        _p(
            f"  - {s.id} | restaurant={s.restaurant_id} status={s.status} "
            f"assigned={s.assigned_worker_id} version={s.version}"
        )


def _seed(app) -> None:
    core: AllocationCore = app.state.core
    app.state.now_fn = lambda: NOW
    seed_network(core)

    def worker(worker_id: str, restaurant_id: str, *, shifts: int = 10, average: float = 4.0) -> WorkerProfile:
        return WorkerProfile(
            id=worker_id,
            user_id=worker_id.split("-")[0],
            restaurant_id=restaurant_id,
            positions={"server"},
            tier=WorkerTier.PRIMARY,
            shifts_completed=shifts,
            rating_sum=average * shifts,
            rating_count=shifts,
        )

    core.repository.add(worker("alice-a", "rest-a"))
    core.repository.add(worker("bob-b", "rest-b", average=4.2))
    core.repository.add(worker("carol-b", "rest-b", shifts=0, average=0))
    for shift_id, min_reputation in (("a-dinner", None), ("a-premium", 4.0)):
        core.repository.add(
            Shift(
                id=shift_id,
                restaurant_id="rest-a",
                position="server",
                start_time=NOW + timedelta(hours=6),
                end_time=NOW + timedelta(hours=14),
                min_reputation=min_reputation,
            )
        )


@pytest.fixture(autouse=True)
def notifier_mock(monkeypatch):
    """
    Patch the api-level name: create_app's emit looks up `api.log_event`
    at call time.
    """
    emit = AsyncMock(return_value=None)
    monkeypatch.setattr(api, "log_event", emit)
    return emit


async def _client_for(app):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client

    # cancel any pending claim-window tasks
    await app.state.core.shutdown()


@pytest_asyncio.fixture
async def client():
    app = create_app()
    _seed(app)
    async for c in _client_for(app):
        yield c


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    _banner("health_check returns ok")
    resp = await client.get("/health")
    _p(f"GET /health -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_visible_shifts_for_network_worker(client: AsyncClient) -> None:
    _banner("network worker sees the other restaurant's shift 6h out")
    _dump_core(client._transport.app)

    resp = await client.get("/workers/bob-b/visible-shifts")
    _p(f"GET visible-shifts -> status={resp.status_code}, body={resp.json()}")

    assert resp.status_code == 200
    shifts = resp.json()["shifts"]
    # a-premium needs 4.0; bob's network rating is 5.0
    assert [s["shift"]["id"] for s in shifts] == ["a-dinner", "a-premium"]
    assert shifts[0]["phase"] == "NETWORK"
    assert shifts[0]["hours_until_start"] == 6.0


@pytest.mark.asyncio
async def test_visible_shifts_unknown_worker(client: AsyncClient) -> None:
    resp = await client.get("/workers/nobody/visible-shifts")
    assert resp.status_code == 404
    assert "worker" in resp.json()["detail"].lower()


@pytest.mark.asyncio
async def test_claim_unknown_shift(client: AsyncClient) -> None:
    resp = await client.post("/shifts/nonexistent/claims", json={"worker_id": "bob-b"})
    _p(f"POST claims (unknown shift) -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 404
    assert "shift" in resp.json()["detail"].lower()


@pytest.mark.asyncio
async def test_claim_below_minimum_reputation(client: AsyncClient) -> None:
    _banner("rejected claim returns the reason and creates no record")
    resp = await client.post("/shifts/a-premium/claims", json={"worker_id": "carol-b"})
    _p(f"POST claims -> status={resp.status_code}, body={resp.json()}")

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "rejected"
    assert data["reason"] == "BELOW_MINIMUM_REPUTATION"
    assert data["required_reputation"] == 4.0
    assert data["actual_reputation"] == 3.5

    listed = await client.get("/shifts/a-premium/claims")
    assert listed.json()["claims"] == []


@pytest.mark.asyncio
async def test_claim_then_resolve(client: AsyncClient, notifier_mock) -> None:
    _banner("claim is pending until resolution assigns the shift")
    app = client._transport.app

    claimed = await client.post("/shifts/a-dinner/claims", json={"worker_id": "bob-b"})
    _p(f"POST claims -> status={claimed.status_code}, body={claimed.json()}")
    assert claimed.status_code == 200
    assert claimed.json()["status"] == "pending"
    assert claimed.json()["claim"]["priority_score"] == 1620
    assert notifier_mock.await_count == 0

    resolved = await client.post("/shifts/a-dinner/resolve")
    _p(f"POST resolve -> status={resolved.status_code}, body={resolved.json()}")
    _dump_core(app)

    assert resolved.status_code == 200
    data = resolved.json()
    assert data["outcome"] == "ASSIGNED"
    assert data["winner"]["worker_id"] == "bob-b"
    assert data["approved_count"] == 1
    assert data["rejected_count"] == 0

    kinds = [args[0].kind for (args, _kw) in notifier_mock.await_args_list]
    assert kinds == ["claim_approved", "shift_assigned"]


@pytest.mark.asyncio
async def test_only_one_worker_wins_even_if_both_claim_at_once(client: AsyncClient) -> None:
    _banner("race: two workers claim at the same time -> only one is approved")
    app = client._transport.app

    r1, r2 = await asyncio.gather(
        client.post("/shifts/a-dinner/claims", json={"worker_id": "alice-a"}),
        client.post("/shifts/a-dinner/claims", json={"worker_id": "bob-b"}),
    )
    _p(f"alice -> {r1.json()['status']}, bob -> {r2.json()['status']}")
    assert r1.json()["status"] == r2.json()["status"] == "pending"

    first, second = await asyncio.gather(
        client.post("/shifts/a-dinner/resolve"),
        client.post("/shifts/a-dinner/resolve"),
    )
    _dump_core(app)

    outcomes = sorted([first.json()["outcome"], second.json()["outcome"]])
    assert outcomes == ["ASSIGNED", "SHIFT_UNAVAILABLE"]

    claims = (await client.get("/shifts/a-dinner/claims")).json()["claims"]
    statuses = {c["worker_id"]: c["status"] for c in claims}
    # bob 1620 vs alice 1600
    assert statuses == {"bob-b": "APPROVED", "alice-a": "REJECTED"}


@pytest.mark.asyncio
async def test_withdraw_claim(client: AsyncClient) -> None:
    claimed = (await client.post("/shifts/a-dinner/claims", json={"worker_id": "alice-a"})).json()
    claim_id = claimed["claim"]["id"]

    wrong = await client.delete(f"/claims/{claim_id}", params={"worker_id": "bob-b"})
    ok = await client.delete(f"/claims/{claim_id}", params={"worker_id": "alice-a"})

    assert wrong.status_code == 404
    assert ok.status_code == 200
    assert ok.json() == {"status": "withdrawn", "claim_id": claim_id}


@pytest.mark.asyncio
async def test_withdraw_resolved_claim_is_a_conflict(client: AsyncClient) -> None:
    claimed = (await client.post("/shifts/a-dinner/claims", json={"worker_id": "alice-a"})).json()
    await client.post("/shifts/a-dinner/resolve")

    resp = await client.delete(
        f"/claims/{claimed['claim']['id']}", params={"worker_id": "alice-a"}
    )

    assert resp.status_code == 409
    assert resp.json()["retry"] is False


@pytest.mark.asyncio
async def test_contended_shift_returns_retryable_conflict() -> None:
    _banner("lock held elsewhere -> 409 with retry hint")
    app = create_app(AllocationConfig(lock_timeout_seconds=0.01))
    _seed(app)

    async for client in _client_for(app):
        async with app.state.core.locks.hold("a-dinner"):
            resp = await client.post("/shifts/a-dinner/resolve")
        _p(f"POST resolve -> status={resp.status_code}, body={resp.json()}")

        assert resp.status_code == 409
        assert resp.json()["retry"] is True
        assert "busy" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_reputation_endpoints(client: AsyncClient) -> None:
    reputation = await client.get("/identities/bob/reputation")
    breakdown = await client.get("/identities/bob/reputation/breakdown")
    missing = await client.get("/identities/nobody/reputation")

    assert reputation.status_code == 200
    assert reputation.json()["score"] == 500
    assert reputation.json()["tier"] == "PLATINUM"
    assert [r["worker_id"] for r in breakdown.json()["restaurants"]] == ["bob-b"]
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_unexpected_failure_is_reported_as_internal_error(
    client: AsyncClient, monkeypatch
) -> None:
    core: AllocationCore = client._transport.app.state.core

    def explode(_user_id: str):
        raise RuntimeError("cache backend unavailable")

    monkeypatch.setattr(core.reputation, "get_network_reputation", explode)

    resp = await client.get("/identities/bob/reputation")

    assert resp.status_code == 500
    assert resp.json() == {"detail": "Internal error"}


@pytest.mark.asyncio
async def test_manager_approves_a_claim(client: AsyncClient, notifier_mock) -> None:
    _banner("manager approval assigns the shift and records who decided")
    alice = (await client.post("/shifts/a-dinner/claims", json={"worker_id": "alice-a"})).json()
    bob = (await client.post("/shifts/a-dinner/claims", json={"worker_id": "bob-b"})).json()

    pending = await client.get("/restaurants/rest-a/pending-claims")
    # bob 1620 outranks alice 1600
    assert [c["worker_id"] for c in pending.json()["claims"]] == ["bob-b", "alice-a"]

    resp = await client.post(
        f"/claims/{alice['claim']['id']}/approve", json={"resolved_by": "manager-1"}
    )
    _p(f"POST approve -> status={resp.status_code}, body={resp.json()}")

    assert resp.status_code == 200
    data = resp.json()
    assert data["outcome"] == "ASSIGNED"
    assert data["winner"]["worker_id"] == "alice-a"
    assert data["winner"]["resolved_by"] == "manager-1"
    assert data["losers"][0]["id"] == bob["claim"]["id"]
    assert (await client.get("/restaurants/rest-a/pending-claims")).json()["claims"] == []

    again = await client.post(
        f"/claims/{alice['claim']['id']}/approve", json={"resolved_by": "manager-1"}
    )
    assert again.status_code == 409
    assert again.json()["retry"] is False


@pytest.mark.asyncio
async def test_manager_rejects_a_claim(client: AsyncClient) -> None:
    claimed = (await client.post("/shifts/a-dinner/claims", json={"worker_id": "alice-a"})).json()

    resp = await client.post(
        f"/claims/{claimed['claim']['id']}/reject", json={"resolved_by": "manager-1"}
    )
    missing = await client.post("/claims/nope/reject", json={"resolved_by": "manager-1"})

    assert resp.status_code == 200
    assert resp.json()["status"] == "rejected"
    assert resp.json()["claim"]["rejection_reason"] == "MANAGER_REJECTED"
    assert resp.json()["claim"]["resolved_by"] == "manager-1"
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_worker_claims(client: AsyncClient) -> None:
    await client.post("/shifts/a-dinner/claims", json={"worker_id": "bob-b"})
    await client.post("/shifts/a-premium/claims", json={"worker_id": "bob-b"})
    await client.post("/shifts/a-dinner/resolve")

    everything = await client.get("/workers/bob-b/claims")
    pending = await client.get("/workers/bob-b/claims", params={"status": "PENDING"})
    missing = await client.get("/workers/nobody/claims")

    assert sorted(c["shift_id"] for c in everything.json()["claims"]) == ["a-dinner", "a-premium"]
    assert [c["shift_id"] for c in pending.json()["claims"]] == ["a-premium"]
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_eligible_workers(client: AsyncClient) -> None:
    resp = await client.get("/shifts/a-premium/eligible-workers")
    missing = await client.get("/shifts/nope/eligible-workers")
    _p(f"GET eligible-workers -> status={resp.status_code}, body={resp.json()}")

    assert resp.status_code == 200
    data = resp.json()
    assert data["phase"] == "NETWORK"
    assert [w["id"] for w in data["own_restaurant_workers"]] == ["alice-a"]
    # carol-b is below the shift's 4.0 minimum
    assert [w["id"] for w in data["network_workers"]] == ["bob-b"]
    assert data["total_eligible"] == 2
    assert missing.status_code == 404
