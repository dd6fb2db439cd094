"""
Integrity Auditor tests.

The partial unique indexes stop the engine from ever writing the rows the
policy checks look for, so those tests drop the index first and insert
the bad rows directly.
"""

import uuid
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import text

from db.models import PolicyVersion, Reservation
from integrity.auditor import Violation, check_integrity, summarize

HUB_ID = "HUB-PAR-01"
ACTOR = "ops@hubops.test"
NOW = datetime(2026, 3, 2, 9, 0, 0)
SLOT_DAY = date(2026, 3, 10)


def _version(version: int, state: str, effective: datetime, policy_id: str = "global") -> PolicyVersion:
    return PolicyVersion(
        version_id=uuid.uuid4(),
        kind="sla_margin",
        policy_id=policy_id,
        version=version,
        state=state,
        effective_date=effective,
        payload={"name": f"v{version}"},
        idempotency_key=uuid.uuid4().hex,
        payload_hash=uuid.uuid4().hex,
        change_reason="seed",
        actor_id=ACTOR,
    )


def _reservation(
    slots: int,
    reservation_type: str = "booking",
    expires_at=None,
    lane: str = "qa",
    day: date = SLOT_DAY,
    status: str = "active",
) -> Reservation:
    return Reservation(
        reservation_id=uuid.uuid4(),
        shipment_id=f"SHP-{uuid.uuid4().hex[:6]}",
        hub_id=HUB_ID,
        lane=lane,
        reservation_date=day,
        slots_reserved=slots,
        tier="T3",
        priority="standard",
        reservation_type=reservation_type,
        status=status,
        expires_at=expires_at,
        created_by=ACTOR,
    )


@pytest.mark.asyncio
class TestIntegrityChecks:

    async def test_clean_database(self, test_db, published_hub):
        violations = await check_integrity(test_db, now=NOW)
        assert violations == []
        report = summarize(violations)
        assert report["success"] is True
        assert report["summary"]["total_violations"] == 0

    async def test_multiple_published_detected(self, test_db):
        await test_db.execute(text("DROP INDEX uq_policy_one_published"))
        test_db.add_all(
            [
                _version(1, "published", NOW - timedelta(days=2)),
                _version(2, "published", NOW - timedelta(days=1)),
            ]
        )
        await test_db.commit()

        violations = await check_integrity(test_db, now=NOW)
        names = [violation.check_name for violation in violations]
        assert names == ["multiple_published_versions"]
        assert violations[0].details[0]["published"] == 2

    async def test_coinciding_live_versions_detected(self, test_db):
        await test_db.execute(text("DROP INDEX uq_policy_effective_instant"))
        effective = NOW + timedelta(days=5)
        test_db.add_all(
            [
                _version(1, "published", NOW - timedelta(days=1)),
                _version(2, "scheduled", effective),
                _version(3, "scheduled", effective),
            ]
        )
        await test_db.commit()

        violations = await check_integrity(test_db, now=NOW)
        assert [violation.check_name for violation in violations] == ["coinciding_scheduled_versions"]
        assert violations[0].details[0]["versions"] == 2

    async def test_drafts_do_not_coincide(self, test_db):
        effective = NOW + timedelta(days=5)
        test_db.add_all([_version(1, "draft", effective), _version(2, "scheduled", effective)])
        await test_db.commit()
        assert await check_integrity(test_db, now=NOW) == []

    async def test_oversold_lane_detected(self, test_db, published_hub):
        # qa limit is 10 standard + 2 rush
        test_db.add_all([_reservation(8), _reservation(5)])
        await test_db.commit()

        violations = await check_integrity(test_db, now=NOW)
        assert [violation.check_name for violation in violations] == ["capacity_oversold"]
        detail = violations[0].details[0]
        assert detail["lane"] == "qa"
        assert detail["reserved_slots"] == 13
        assert detail["limit"] == 12

    async def test_oversold_past_day_detected(self, test_db, published_hub):
        yesterday = NOW.date() - timedelta(days=1)
        test_db.add_all([_reservation(1, day=yesterday) for _ in range(15)])
        await test_db.commit()

        violations = await check_integrity(test_db, now=NOW)
        assert [violation.check_name for violation in violations] == ["capacity_oversold"]
        detail = violations[0].details[0]
        assert detail["date"] == yesterday.isoformat()
        assert detail["reserved_slots"] == 15
        assert detail["limit"] == 12

    async def test_closed_reservations_on_past_days_not_counted(self, test_db, published_hub):
        yesterday = NOW.date() - timedelta(days=1)
        test_db.add_all(
            [
                _reservation(10, day=yesterday, status="completed"),
                _reservation(10, day=yesterday, status="released"),
                _reservation(4, day=yesterday),
            ]
        )
        await test_db.commit()
        assert await check_integrity(test_db, now=NOW) == []

    async def test_expired_holds_flagged_and_not_counted(self, test_db, published_hub):
        test_db.add_all(
            [
                _reservation(12, reservation_type="hold", expires_at=NOW - timedelta(minutes=5)),
                _reservation(1, reservation_type="hold", expires_at=NOW + timedelta(minutes=5)),
            ]
        )
        await test_db.commit()

        violations = await check_integrity(test_db, now=NOW)
        assert [violation.check_name for violation in violations] == ["expired_holds_active"]
        assert violations[0].count == 1

    async def test_profiles_without_publication_are_skipped(self, test_db):
        test_db.add(_reservation(500))
        await test_db.commit()
        assert await check_integrity(test_db, now=NOW) == []


def test_summarize_groups_by_check():
    report = summarize(
        [
            Violation(check_name="expired_holds_active", count=3),
            Violation(check_name="capacity_oversold", count=1, details=[{"lane": "qa"}]),
        ]
    )
    assert report["success"] is False
    assert report["summary"] == {
        "total_violations": 4,
        "checks_failed": 2,
        "by_check": {"expired_holds_active": 3, "capacity_oversold": 1},
    }
    assert report["violations"][1]["details"] == [{"lane": "qa"}]
