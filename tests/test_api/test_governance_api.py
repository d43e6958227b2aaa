"""HTTP tests: band setup, proposal lifecycle, effects execution through the API."""

import pytest
from httpx import ASGITransport, AsyncClient

from bandgov.config import Settings
from bandgov.core.effects import STRUCTURE_ERROR
from bandgov.db.engine import create_engine, create_tables
from bandgov.main import create_app

ROSTER = [
    ("u-founder", "FOUNDER"),
    ("u-conductor", "CONDUCTOR"),
    ("u-member-1", "VOTING_MEMBER"),
    ("u-member-2", "VOTING_MEMBER"),
]

TOUR_BUCKET = {
    "type": "CREATE_BUCKET",
    "payload": {"bucket": {"name": "Tour Fund", "type": "PROJECT", "visibility": "MEMBERS"}},
    "order": 1,
}


@pytest.fixture
async def app_and_engine():
    """Create test app + engine sharing the same in-memory database."""
    settings = Settings(database_url="sqlite+aiosqlite:///:memory:")
    application = create_app(settings)
    eng = create_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(eng)
    application.state.engine = eng
    yield application, eng
    await eng.dispose()


@pytest.fixture
async def client(app_and_engine):
    application, _ = app_and_engine
    async with AsyncClient(
        transport=ASGITransport(app=application), base_url="http://test"
    ) as ac:
        yield ac


@pytest.fixture
async def band_id(client: AsyncClient) -> str:
    r = await client.post("/api/bands", json={"name": "The Late Shift", "slug": "late-shift"})
    assert r.status_code == 200
    bid = r.json()["data"]["id"]
    for user_id, role in ROSTER:
        r = await client.post(f"/api/bands/{bid}/members", json={"user_id": user_id, "role": role})
        assert r.status_code == 200
    return bid


class TestHealth:
    async def test_health(self, client: AsyncClient):
        r = await client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "ok", "env": "development"}


class TestBands:
    async def test_duplicate_slug(self, client: AsyncClient, band_id: str):
        r = await client.post("/api/bands", json={"name": "Other", "slug": "late-shift"})
        assert r.status_code == 409

    async def test_duplicate_member(self, client: AsyncClient, band_id: str):
        r = await client.post(f"/api/bands/{band_id}/members", json={"user_id": "u-founder"})
        assert r.status_code == 409

    async def test_quorum_out_of_range(self, client: AsyncClient):
        r = await client.post(
            "/api/bands", json={"name": "X", "slug": "x", "quorum_percentage": 150}
        )
        assert r.status_code == 422


class TestProposalLifecycle:
    async def test_governance_proposal_end_to_end(self, client: AsyncClient, band_id: str):
        r = await client.post(
            f"/api/bands/{band_id}/proposals",
            json={
                "author_id": "u-conductor",
                "title": "Start a tour fund",
                "execution_type": "GOVERNANCE",
                "execution_subtype": "FINANCE_BUCKET_GOVERNANCE_V1",
                "effects": [TOUR_BUCKET],
            },
        )
        assert r.status_code == 200
        proposal = r.json()["data"]
        assert proposal["status"] == "DRAFT"
        assert proposal["effects_validated_at"] is not None
        pid = proposal["id"]

        r = await client.post(f"/api/proposals/{pid}/submit", json={"actor_id": "u-conductor"})
        assert r.status_code == 200
        assert r.json()["data"]["status"] == "OPEN"

        for user_id in ("u-founder", "u-conductor", "u-member-1"):
            r = await client.post(
                f"/api/proposals/{pid}/votes", json={"user_id": user_id, "vote": "YES"}
            )
            assert r.status_code == 200

        r = await client.get(f"/api/proposals/{pid}")
        assert len(r.json()["data"]["votes"]) == 3

        r = await client.post(
            f"/api/proposals/{pid}/close", json={"actor_id": "u-founder", "force_close": True}
        )
        assert r.status_code == 200
        result = r.json()["data"]
        assert result["status"] == "APPROVED"
        assert result["quorum_info"]["met"] is True
        assert result["execution_result"]["success"] is True

        r = await client.get(f"/api/proposals/{pid}/execution-logs")
        logs = r.json()["data"]
        assert [log["status"] for log in logs] == ["SUCCESS"]
        assert logs[0]["execution_subtype"] == "FINANCE_BUCKET_GOVERNANCE_V1"

        r = await client.post(
            f"/api/proposals/{pid}/close", json={"actor_id": "u-founder", "force_close": True}
        )
        assert r.status_code == 400

    async def test_close_before_deadline(self, client: AsyncClient, band_id: str):
        r = await client.post(
            f"/api/bands/{band_id}/proposals",
            json={"author_id": "u-conductor", "title": "New van"},
        )
        pid = r.json()["data"]["id"]
        await client.post(f"/api/proposals/{pid}/submit", json={"actor_id": "u-conductor"})

        r = await client.post(f"/api/proposals/{pid}/close", json={"actor_id": "u-conductor"})
        assert r.status_code == 400
        assert "Voting period has not ended yet" in r.json()["detail"]

        r = await client.post(
            f"/api/proposals/{pid}/close", json={"actor_id": "u-conductor", "force_close": True}
        )
        assert r.status_code == 403

    async def test_voting_member_cannot_propose(self, client: AsyncClient, band_id: str):
        r = await client.post(
            f"/api/bands/{band_id}/proposals",
            json={"author_id": "u-member-1", "title": "New van"},
        )
        assert r.status_code == 403

    async def test_list_by_status(self, client: AsyncClient, band_id: str):
        for title in ("One", "Two"):
            await client.post(
                f"/api/bands/{band_id}/proposals",
                json={"author_id": "u-conductor", "title": title},
            )
        r = await client.get(f"/api/bands/{band_id}/proposals", params={"status": "DRAFT"})
        assert {p["title"] for p in r.json()["data"]} == {"One", "Two"}
        r = await client.get(f"/api/bands/{band_id}/proposals", params={"status": "OPEN"})
        assert r.json()["data"] == []

    async def test_unknown_proposal(self, client: AsyncClient):
        r = await client.get("/api/proposals/does-not-exist")
        assert r.status_code == 404


class TestEffectsErrors:
    async def test_invalid_effects_rejected_with_list(self, client: AsyncClient, band_id: str):
        bad = {
            "type": "CREATE_BUCKET",
            "payload": {"bucket": {"name": "Savings", "type": "SAVINGS", "visibility": "MEMBERS"}},
        }
        r = await client.post(
            f"/api/bands/{band_id}/proposals",
            json={
                "author_id": "u-conductor",
                "title": "Savings",
                "execution_type": "GOVERNANCE",
                "effects": [bad],
            },
        )
        assert r.status_code == 400
        detail = r.json()["detail"]
        assert detail["message"].startswith("Invalid effects")
        assert detail["errors"]
        assert all(e.startswith("CREATE_BUCKET") for e in detail["errors"])

        r = await client.get(f"/api/bands/{band_id}/proposals")
        assert r.json()["data"] == []

    async def test_validate_endpoint(self, client: AsyncClient, band_id: str):
        r = await client.post(
            "/api/effects/validate",
            json={
                "band_id": band_id,
                "execution_type": "GOVERNANCE",
                "execution_subtype": "FINANCE_BUCKET_GOVERNANCE_V1",
                "effects": [TOUR_BUCKET],
            },
        )
        assert r.status_code == 200
        assert r.json()["data"]["valid"] is True

    async def test_validate_endpoint_bad_structure(self, client: AsyncClient, band_id: str):
        r = await client.post(
            "/api/effects/validate",
            json={"band_id": band_id, "execution_type": "GOVERNANCE", "effects": {"type": "X"}},
        )
        data = r.json()["data"]
        assert data["valid"] is False
        assert len(data["errors"]) == 1

    async def test_effect_without_payload_is_a_structure_error(
        self, client: AsyncClient, band_id: str
    ):
        r = await client.post(
            f"/api/bands/{band_id}/proposals",
            json={
                "author_id": "u-conductor",
                "title": "Officers only",
                "execution_type": "GOVERNANCE",
                "execution_subtype": "FINANCE_BUCKET_GOVERNANCE_V1",
                "effects": [{"type": "SET_BUCKET_MANAGEMENT_POLICY"}],
            },
        )
        assert r.status_code == 400
        assert r.json()["detail"]["errors"] == [STRUCTURE_ERROR]

    async def test_edit_with_malformed_effects_is_refused(
        self, client: AsyncClient, band_id: str
    ):
        r = await client.post(
            f"/api/bands/{band_id}/proposals",
            json={
                "author_id": "u-conductor",
                "title": "Start a tour fund",
                "execution_type": "GOVERNANCE",
                "effects": [TOUR_BUCKET],
            },
        )
        pid = r.json()["data"]["id"]
        r = await client.patch(
            f"/api/proposals/{pid}",
            json={"actor_id": "u-conductor", "effects": {"type": "CREATE_BUCKET"}},
        )
        assert r.status_code == 400
        assert r.json()["detail"]["errors"] == [STRUCTURE_ERROR]
        r = await client.get(f"/api/proposals/{pid}")
        assert r.json()["data"]["effects"] == [TOUR_BUCKET]
