"""
Test Configuration — Fixtures for async DB, test client, and seeded hubs.

Every test gets its own in-memory SQLite database with the schema built
from the models. Engine operations flush only; tests commit the way the
routers do.
"""

from datetime import date, datetime

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import StaticPool

from api.deps import get_db
from api.main import app
from db.session import Base, build_engine

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

HUB_ID = "HUB-PAR-01"
ACTOR = "ops@hubops.test"
NOW = datetime(2026, 3, 2, 9, 0, 0)
SLOT_DAY = date(2026, 3, 10)  # a Tuesday


@pytest.fixture
async def test_engine():
    """Fresh in-memory database per test."""
    engine = build_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session = AsyncSession(bind=test_engine, expire_on_commit=False)
    yield session
    await session.close()


@pytest.fixture
async def client(test_db):
    """Create an async test client bound to the test session."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Actor-Id": ACTOR},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


def capacity_profile(**overrides) -> dict:
    """A small hub: 20 auth, 8 sewing, 10 QA slots, no overbooking."""
    payload = {
        "auth_capacity": 20,
        "sewing_capacity": 8,
        "qa_capacity": 10,
        "qa_headcount": 2,
        "qa_shift_minutes": 240,
        "overbooking_percent": 0,
        "rush_bucket_percent": 20,
        "seasonality_multipliers": {},
        "working_days": ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday"],
        "working_hours": {"start": "08:00", "end": "19:00"},
    }
    payload.update(overrides)
    return payload


def sla_policy(**overrides) -> dict:
    payload = {
        "name": "Default SLA",
        "sla_targets": {
            "timeToClassify": 24,
            "urbanWGMaxHours": 12,
            "interCityWGMaxHours": 48,
            "tier2MaxHours": 48,
            "tier3MaxHours": 72,
            "tier3QABuffer": 4,
        },
        "margin_thresholds": {
            "minimumMargin": 10,
            "targetMargin": 25,
            "components": {"authentication": 15, "sewing": 20},
        },
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def profile_payload():
    return capacity_profile


@pytest.fixture
def sla_payload():
    return sla_policy


@pytest.fixture
async def published_hub(test_db):
    """HUB_ID with a published capacity profile effective at NOW."""
    from policy.publish import publish

    result = await publish(
        test_db,
        kind="hub_capacity",
        scope_id=HUB_ID,
        payload=capacity_profile(),
        effective_date=NOW,
        state="published",
        actor_id=ACTOR,
        change_reason="initial profile",
        now=NOW,
    )
    await test_db.commit()
    return result
