"""
Policy publish / schedule workflow tests.

Covers idempotent replay, supersession on publish, the overlap rule,
schedule preconditions and the activation tick.
"""

from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import func, select

from core.errors import CapacityConflictError, InvalidScheduleDateError, OverlappingPolicyError
from db.models import PolicyEvent, PolicyScope, PolicyVersion
from policy.publish import activate_due_policies, publish, schedule_policy
from policy.store import get_active_policies, get_active_policy, get_policy_history, get_policy_version

NOW = datetime(2026, 3, 2, 9, 0, 0)
ACTOR = "ops@hubops.test"


async def _publish(db, sla_payload, *, now=NOW, effective_date=None, state="published", **overrides):
    payload = overrides.pop("payload", None) or sla_payload()
    result = await publish(
        db,
        kind=overrides.pop("kind", "sla_margin"),
        scope_id=overrides.pop("scope_id", "global"),
        payload=payload,
        effective_date=effective_date or now,
        state=state,
        actor_id=overrides.pop("actor_id", ACTOR),
        change_reason=overrides.pop("change_reason", "quarterly review"),
        now=now,
        **overrides,
    )
    await db.commit()
    return result


async def _count(db, model, *criteria) -> int:
    result = await db.execute(select(func.count()).select_from(model).where(*criteria))
    return result.scalar_one()


class _UntouchableSession:
    def __getattr__(self, name):
        raise AssertionError(f"session.{name} accessed")


@pytest.mark.asyncio
class TestPublish:

    async def test_first_publish_creates_version_one(self, test_db, sla_payload):
        result = await _publish(test_db, sla_payload)
        assert result.action_taken == "published"
        assert result.is_duplicate is False
        assert result.version == 1
        assert result.state == "published"
        assert result.policy_id == "global"

        active = await get_active_policy(test_db, "sla_margin", "global")
        assert active.version_id == result.version_id

    async def test_replay_with_request_id_is_duplicate(self, test_db, sla_payload):
        first = await _publish(test_db, sla_payload, request_id="req-42")
        replay = await _publish(
            test_db,
            sla_payload,
            request_id="req-42",
            effective_date=NOW,
            now=NOW + timedelta(minutes=10),
        )

        assert replay.is_duplicate is True
        assert replay.action_taken == "skipped"
        assert replay.version_id == first.version_id
        assert replay.idempotency_key == first.idempotency_key
        assert await _count(test_db, PolicyVersion) == 1

    async def test_replay_within_window_is_duplicate(self, test_db, sla_payload):
        first = await _publish(test_db, sla_payload)
        replay = await _publish(test_db, sla_payload)
        assert replay.is_duplicate is True
        assert replay.version_id == first.version_id

    async def test_immediate_publish_retry_is_duplicate(self, test_db, sla_payload):
        async def _save(now):
            result = await publish(
                test_db,
                kind="sla_margin",
                scope_id="global",
                payload=sla_payload(),
                state="published",
                actor_id=ACTOR,
                change_reason="settings save",
                now=now,
            )
            await test_db.commit()
            return result

        first = await _save(NOW + timedelta(seconds=5))
        retry = await _save(NOW + timedelta(seconds=40))
        assert first.effective_date == NOW + timedelta(seconds=5)
        assert retry.is_duplicate is True
        assert retry.version_id == first.version_id

    async def test_reordered_payload_replay_is_duplicate(self, test_db, sla_payload):
        payload = sla_payload()
        reordered = dict(reversed(list(payload.items())))
        first = await _publish(test_db, sla_payload, payload=payload, request_id="r-1")
        replay = await _publish(test_db, sla_payload, payload=reordered, request_id="r-1")
        assert replay.is_duplicate is True
        assert replay.payload_hash == first.payload_hash

    async def test_v1_superseded_by_v2(self, test_db, sla_payload):
        v1 = await _publish(test_db, sla_payload)
        later = NOW + timedelta(days=1)
        v2 = await _publish(test_db, sla_payload, payload=sla_payload(name="Tighter SLA"), now=later)

        assert v2.version == 2
        old = await get_policy_version(test_db, v1.version_id)
        await test_db.refresh(old)
        assert old.state == "archived"
        assert old.superseded_by == v2.version_id
        assert old.archived_at == later

        active = await get_active_policy(test_db, "sla_margin", "global")
        assert active.version_id == v2.version_id
        assert await _count(test_db, PolicyVersion, PolicyVersion.state == "published") == 1

        history = await get_policy_history(test_db, "sla_margin", "global")
        assert [row.version for row in history] == [2, 1]

        scope = (await test_db.execute(select(PolicyScope))).scalar_one()
        assert scope.latest_version == 2
        assert scope.published_version_id == v2.version_id

    async def test_publish_before_live_window_is_overlap(self, test_db, sla_payload):
        await _publish(test_db, sla_payload, effective_date=NOW + timedelta(days=5))
        with pytest.raises(OverlappingPolicyError) as exc_info:
            await _publish(
                test_db,
                sla_payload,
                payload=sla_payload(name="Backdated"),
                effective_date=NOW + timedelta(days=2),
            )
        assert exc_info.value.code == "OVERLAPPING_POLICY"
        assert exc_info.value.details["conflicting_versions"][0]["state"] == "published"

    async def test_scheduled_versions_at_same_instant_overlap(self, test_db, sla_payload):
        go_live = NOW + timedelta(days=3)
        await schedule_policy(
            test_db,
            kind="sla_margin",
            scope_id="global",
            payload=sla_payload(),
            effective_at=go_live,
            actor_id=ACTOR,
            change_reason="spring rollout",
            now=NOW,
        )
        with pytest.raises(OverlappingPolicyError):
            await schedule_policy(
                test_db,
                kind="sla_margin",
                scope_id="global",
                payload=sla_payload(name="Competing"),
                effective_at=go_live,
                actor_id="someone-else",
                change_reason="competing rollout",
                now=NOW,
            )

    async def test_drafts_are_exempt_from_overlap(self, test_db, sla_payload):
        await _publish(test_db, sla_payload)
        draft = await _publish(test_db, sla_payload, payload=sla_payload(name="Draft"), state="draft")
        assert draft.action_taken == "created"
        assert draft.state == "draft"
        assert draft.version == 2
        assert len(await get_active_policies(test_db, "sla_margin")) == 1

    async def test_publish_archives_earlier_scheduled_versions(self, test_db, sla_payload):
        await _publish(test_db, sla_payload)
        scheduled = await schedule_policy(
            test_db,
            kind="sla_margin",
            scope_id="global",
            payload=sla_payload(name="Next week"),
            effective_at=NOW + timedelta(days=1),
            actor_id=ACTOR,
            change_reason="next week",
            now=NOW,
        )
        later_schedule = await schedule_policy(
            test_db,
            kind="sla_margin",
            scope_id="global",
            payload=sla_payload(name="Next month"),
            effective_at=NOW + timedelta(days=30),
            actor_id=ACTOR,
            change_reason="next month",
            now=NOW,
        )
        await test_db.commit()

        published = await _publish(
            test_db,
            sla_payload,
            payload=sla_payload(name="Hotfix"),
            effective_date=NOW + timedelta(days=2),
        )

        superseded = await get_policy_version(test_db, scheduled.version_id)
        await test_db.refresh(superseded)
        assert superseded.state == "archived"
        assert superseded.superseded_by == published.version_id

        untouched = await get_policy_version(test_db, later_schedule.version_id)
        await test_db.refresh(untouched)
        assert untouched.state == "scheduled"

    async def test_scopes_are_independent(self, test_db, profile_payload):
        await _publish(test_db, None, kind="hub_capacity", scope_id="HUB-A", payload=profile_payload())
        await _publish(test_db, None, kind="hub_capacity", scope_id="HUB-B", payload=profile_payload())
        active = await get_active_policies(test_db, "hub_capacity")
        assert {row.policy_id for row in active} == {"HUB-A", "HUB-B"}

    async def test_events_recorded(self, test_db, sla_payload):
        await _publish(test_db, sla_payload)
        await _publish(test_db, sla_payload, payload=sla_payload(name="v2"), now=NOW + timedelta(days=1))
        types = (await test_db.execute(select(PolicyEvent.event_type).order_by(PolicyEvent.created_at))).scalars().all()
        assert types.count("policy.published") == 2
        assert "policy.archived" in types

    async def test_capacity_profile_below_bookings_rejected(self, test_db, published_hub, profile_payload):
        from capacity.reservations import promote, reserve

        reservation = await reserve(
            test_db,
            hub_id=published_hub.policy_id,
            lane="qa",
            day=date(2026, 3, 10),
            slots=8,
            tier="T3",
            priority="standard",
            shipment_id="SHP-1",
            actor_id=ACTOR,
            now=NOW,
        )
        await promote(test_db, reservation.reservation_id, "booking", ACTOR, now=NOW)
        await test_db.commit()

        with pytest.raises(CapacityConflictError) as exc_info:
            await publish(
                test_db,
                kind="hub_capacity",
                scope_id=published_hub.policy_id,
                payload=profile_payload(qa_capacity=5),
                effective_date=NOW + timedelta(hours=1),
                state="published",
                actor_id=ACTOR,
                change_reason="staff shortage",
                now=NOW + timedelta(hours=1),
            )
        conflict = exc_info.value.details["conflicts"][0]
        assert conflict["lane"] == "qa"
        assert conflict["committed_slots"] == 8
        assert conflict["effective_capacity"] == 5


@pytest.mark.asyncio
class TestSchedule:

    async def test_past_date_rejected_before_store_access(self, sla_payload):
        with pytest.raises(InvalidScheduleDateError) as exc_info:
            await schedule_policy(
                _UntouchableSession(),
                kind="sla_margin",
                scope_id="global",
                payload=sla_payload(),
                effective_at=NOW - timedelta(minutes=1),
                actor_id=ACTOR,
                change_reason="too late",
                now=NOW,
            )
        assert exc_info.value.code == "INVALID_SCHEDULE_DATE"

    async def test_now_is_not_in_the_future(self, sla_payload):
        with pytest.raises(InvalidScheduleDateError):
            await schedule_policy(
                _UntouchableSession(),
                kind="sla_margin",
                scope_id="global",
                payload=sla_payload(),
                effective_at=NOW,
                actor_id=ACTOR,
                change_reason="right now",
                now=NOW,
            )

    async def test_schedule_creates_scheduled_version(self, test_db, sla_payload):
        result = await schedule_policy(
            test_db,
            kind="sla_margin",
            scope_id="global",
            payload=sla_payload(),
            effective_at=NOW + timedelta(hours=4),
            actor_id=ACTOR,
            change_reason="afternoon rollout",
            now=NOW,
        )
        assert result.action_taken == "scheduled"
        assert result.state == "scheduled"
        assert await get_active_policy(test_db, "sla_margin", "global") is None

    @pytest.mark.parametrize("effective_date", [datetime(2020, 1, 1), NOW, None])
    async def test_publish_in_scheduled_state_requires_future_date(self, sla_payload, effective_date):
        with pytest.raises(InvalidScheduleDateError) as exc_info:
            await publish(
                _UntouchableSession(),
                kind="sla_margin",
                scope_id="global",
                payload=sla_payload(),
                effective_date=effective_date,
                state="scheduled",
                actor_id=ACTOR,
                change_reason="backdated schedule",
                now=NOW,
            )
        assert exc_info.value.code == "INVALID_SCHEDULE_DATE"

    async def test_publish_in_scheduled_state_with_future_date(self, test_db, sla_payload):
        result = await _publish(test_db, sla_payload, effective_date=NOW + timedelta(days=1), state="scheduled")
        assert result.action_taken == "scheduled"
        assert result.version == 1


@pytest.mark.asyncio
class TestActivateDue:

    async def _schedule(self, db, sla_payload, hours: int, name: str):
        result = await schedule_policy(
            db,
            kind="sla_margin",
            scope_id="global",
            payload=sla_payload(name=name),
            effective_at=NOW + timedelta(hours=hours),
            actor_id=ACTOR,
            change_reason=name,
            now=NOW,
        )
        await db.commit()
        return result

    async def test_due_version_becomes_published(self, test_db, sla_payload):
        v1 = await _publish(test_db, sla_payload)
        v2 = await self._schedule(test_db, sla_payload, 1, "Afternoon")

        outcomes = await activate_due_policies(test_db, now=NOW + timedelta(hours=2))
        await test_db.commit()

        assert [(o.version_id, o.outcome) for o in outcomes] == [(v2.version_id, "activated")]
        assert outcomes[0].archived_version_id == v1.version_id
        active = await get_active_policy(test_db, "sla_margin", "global")
        assert active.version_id == v2.version_id
        assert await _count(test_db, PolicyVersion, PolicyVersion.state == "published") == 1

    async def test_activation_is_idempotent(self, test_db, sla_payload):
        await _publish(test_db, sla_payload)
        await self._schedule(test_db, sla_payload, 1, "Afternoon")

        first = await activate_due_policies(test_db, now=NOW + timedelta(hours=2))
        await test_db.commit()
        second = await activate_due_policies(test_db, now=NOW + timedelta(hours=2))
        assert len(first) == 1
        assert second == []

    async def test_not_yet_due_is_left_alone(self, test_db, sla_payload):
        await _publish(test_db, sla_payload)
        await self._schedule(test_db, sla_payload, 5, "Evening")
        assert await activate_due_policies(test_db, now=NOW + timedelta(hours=1)) == []

    async def test_latest_due_wins_and_earlier_are_superseded(self, test_db, sla_payload):
        early = await self._schedule(test_db, sla_payload, 1, "Early")
        late = await self._schedule(test_db, sla_payload, 2, "Late")

        outcomes = await activate_due_policies(test_db, now=NOW + timedelta(hours=3))
        await test_db.commit()

        by_version = {o.version_id: o.outcome for o in outcomes}
        assert by_version == {early.version_id: "superseded", late.version_id: "activated"}
        active = await get_active_policy(test_db, "sla_margin", "global")
        assert active.version_id == late.version_id
