"""
Blackout Registry — lane closures per hub.

Rules are either one-time date ranges or recurring patterns written in a
small RRULE subset:

  FREQ=DAILY | WEEKLY | MONTHLY | YEARLY
  BYDAY=MO,TU,...        weekly; defaults to the start date's weekday
  BYMONTHDAY=1,15,-1     monthly; -1 is the last day of the month
  UNTIL=YYYYMMDD         last date the rule applies

DAILY/WEEKLY/MONTHLY rules apply between start_date and end_date/UNTIL.
YEARLY rules repeat the start_date..end_date month/day span every year
from the start year on (the span may wrap the year end, e.g. Dec 24 to
Jan 2).

Rules overlapping each other is fine; any active matching rule closes
the lane for that day.
"""

from __future__ import annotations

import calendar
import uuid
from dataclasses import dataclass
from datetime import date, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from capacity.events import record_capacity_event
from core.errors import BlackoutRuleError, UnknownScopeError, storage_errors
from db.models import LANES, BlackoutRule

logger = structlog.get_logger()

RULE_TYPES = ("recurring", "one_time")
FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY", "YEARLY")
WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")


@dataclass(frozen=True)
class Recurrence:
    freq: str
    by_day: tuple[int, ...] = ()
    by_month_day: tuple[int, ...] = ()
    until: date | None = None


def parse_recurrence(rule: str) -> Recurrence:
    """Parse ``FREQ=WEEKLY;BYDAY=SA,SU`` style rules."""
    parts: dict[str, str] = {}
    for chunk in (rule or "").strip().split(";"):
        if not chunk:
            continue
        name, sep, value = chunk.partition("=")
        if not sep or not value:
            raise BlackoutRuleError(f"Malformed recurrence part: {chunk}", recurrence_rule=rule)
        parts[name.strip().upper()] = value.strip().upper()

    freq = parts.pop("FREQ", None)
    if freq not in FREQUENCIES:
        raise BlackoutRuleError(f"Unsupported recurrence frequency: {freq}", recurrence_rule=rule)

    by_day: tuple[int, ...] = ()
    if "BYDAY" in parts:
        codes = parts.pop("BYDAY").split(",")
        unknown = [code for code in codes if code not in WEEKDAY_CODES]
        if unknown:
            raise BlackoutRuleError(f"Unknown BYDAY values: {unknown}", recurrence_rule=rule)
        by_day = tuple(WEEKDAY_CODES.index(code) for code in codes)

    by_month_day: tuple[int, ...] = ()
    if "BYMONTHDAY" in parts:
        try:
            by_month_day = tuple(int(value) for value in parts.pop("BYMONTHDAY").split(","))
        except ValueError as exc:
            raise BlackoutRuleError("BYMONTHDAY must be a list of integers", recurrence_rule=rule) from exc
        if any(value == 0 or not -31 <= value <= 31 for value in by_month_day):
            raise BlackoutRuleError("BYMONTHDAY values must be in 1..31 or -31..-1", recurrence_rule=rule)

    until = None
    if "UNTIL" in parts:
        raw_until = parts.pop("UNTIL")
        try:
            until = datetime.strptime(raw_until[:8], "%Y%m%d").date()
        except ValueError as exc:
            raise BlackoutRuleError(f"UNTIL must be YYYYMMDD: {raw_until}", recurrence_rule=rule) from exc

    if parts:
        raise BlackoutRuleError(f"Unsupported recurrence parts: {sorted(parts)}", recurrence_rule=rule)
    if by_day and freq != "WEEKLY":
        raise BlackoutRuleError("BYDAY is only supported with FREQ=WEEKLY", recurrence_rule=rule)
    if by_month_day and freq != "MONTHLY":
        raise BlackoutRuleError("BYMONTHDAY is only supported with FREQ=MONTHLY", recurrence_rule=rule)

    return Recurrence(freq=freq, by_day=by_day, by_month_day=by_month_day, until=until)


def _month_day_matches(day: date, month_days: tuple[int, ...]) -> bool:
    last = calendar.monthrange(day.year, day.month)[1]
    for value in month_days:
        target = value if value > 0 else last + value + 1
        if day.day == target:
            return True
    return False


def _in_yearly_span(day: date, start: date, end: date) -> bool:
    day_md = (day.month, day.day)
    start_md = (start.month, start.day)
    end_md = (end.month, end.day)
    if start_md <= end_md:
        return start_md <= day_md <= end_md
    return day_md >= start_md or day_md <= end_md


def rule_matches(rule: BlackoutRule, lane: str, day: date) -> bool:
    """Does ``rule`` close ``lane`` on ``day``?"""
    if not rule.is_active or lane not in (rule.affected_lanes or []):
        return False
    if day < rule.start_date:
        return False

    if rule.rule_type == "one_time":
        return day <= (rule.end_date or rule.start_date)

    recurrence = parse_recurrence(rule.recurrence_rule)
    if recurrence.until is not None and day > recurrence.until:
        return False

    if recurrence.freq == "YEARLY":
        return _in_yearly_span(day, rule.start_date, rule.end_date or rule.start_date)

    if rule.end_date is not None and day > rule.end_date:
        return False
    if recurrence.freq == "DAILY":
        return True
    if recurrence.freq == "WEEKLY":
        return day.weekday() in (recurrence.by_day or (rule.start_date.weekday(),))
    return _month_day_matches(day, recurrence.by_month_day or (rule.start_date.day,))


async def active_rules(db: AsyncSession, hub_id: str, day: date | None = None) -> list[BlackoutRule]:
    query = select(BlackoutRule).where(BlackoutRule.hub_id == hub_id, BlackoutRule.is_active.is_(True))
    if day is not None:
        query = query.where(BlackoutRule.start_date <= day)
    result = await db.execute(query.order_by(BlackoutRule.start_date))
    return list(result.scalars().all())


async def is_blacked_out(db: AsyncSession, hub_id: str, lane: str, day: date) -> bool:
    for rule in await active_rules(db, hub_id, day):
        if rule_matches(rule, lane, day):
            return True
    return False


async def create_blackout_rule(
    db: AsyncSession,
    *,
    hub_id: str,
    name: str,
    rule_type: str,
    start_date: date,
    actor_id: str,
    end_date: date | None = None,
    recurrence_rule: str | None = None,
    affected_lanes: list[str] | None = None,
    reason: str | None = None,
) -> BlackoutRule:
    if rule_type not in RULE_TYPES:
        raise BlackoutRuleError(f"rule_type must be one of {RULE_TYPES}", rule_type=rule_type)

    lanes = list(dict.fromkeys(affected_lanes)) if affected_lanes else list(LANES)
    unknown = [lane for lane in lanes if lane not in LANES]
    if unknown:
        raise BlackoutRuleError(f"Unknown lanes: {unknown}", affected_lanes=lanes)

    if rule_type == "one_time":
        end_date = end_date or start_date
        recurrence_rule = None
    else:
        if not recurrence_rule:
            raise BlackoutRuleError("Recurring blackout rules need a recurrence_rule")
        parse_recurrence(recurrence_rule)

    if end_date is not None and end_date < start_date:
        raise BlackoutRuleError(
            "end_date must be on or after start_date",
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )

    rule = BlackoutRule(
        rule_id=uuid.uuid4(),
        hub_id=hub_id,
        name=name,
        rule_type=rule_type,
        start_date=start_date,
        end_date=end_date,
        recurrence_rule=recurrence_rule,
        affected_lanes=lanes,
        reason=reason,
        is_active=True,
        created_by=actor_id,
    )
    with storage_errors("create_blackout_rule"):
        db.add(rule)
        record_capacity_event(
            db,
            event_type="hub_capacity.blackout.created",
            hub_id=hub_id,
            entity_type="blackout",
            entity_id=rule.rule_id,
            actor_id=actor_id,
            data={
                "name": name,
                "rule_type": rule_type,
                "start_date": start_date.isoformat(),
                "end_date": end_date.isoformat() if end_date else None,
                "affected_lanes": lanes,
            },
        )
        await db.flush()

    logger.info("blackout.created", hub_id=hub_id, rule_id=str(rule.rule_id), rule_type=rule_type, lanes=lanes)
    return rule


async def list_blackout_rules(db: AsyncSession, hub_id: str, active_only: bool = True) -> list[BlackoutRule]:
    query = select(BlackoutRule).where(BlackoutRule.hub_id == hub_id)
    if active_only:
        query = query.where(BlackoutRule.is_active.is_(True))
    with storage_errors("list_blackout_rules"):
        result = await db.execute(query.order_by(BlackoutRule.start_date))
        return list(result.scalars().all())


async def deactivate_blackout_rule(
    db: AsyncSession,
    rule_id: uuid.UUID,
    actor_id: str,
    now: datetime | None = None,
) -> BlackoutRule:
    now = now or datetime.utcnow()
    with storage_errors("deactivate_blackout_rule"):
        rule = await db.get(BlackoutRule, rule_id)
        if rule is None:
            raise UnknownScopeError(f"Blackout rule {rule_id} not found", rule_id=str(rule_id))
        if not rule.is_active:
            return rule

        rule.is_active = False
        rule.deactivated_at = now
        record_capacity_event(
            db,
            event_type="hub_capacity.blackout.deactivated",
            hub_id=rule.hub_id,
            entity_type="blackout",
            entity_id=rule.rule_id,
            actor_id=actor_id,
            data={"name": rule.name},
        )
        await db.flush()

    logger.info("blackout.deactivated", hub_id=rule.hub_id, rule_id=str(rule.rule_id))
    return rule
