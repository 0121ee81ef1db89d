from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime
from typing import Union

from creatorpay.core.config import settings
from creatorpay.core.errors import InvalidTransition
from creatorpay.core.security import now_utc
from creatorpay.models.billing import Subscription

PENDING = "PENDING"
ACTIVE = "ACTIVE"
PAST_DUE = "PAST_DUE"
CANCELED = "CANCELED"

RENEWABLE_STATUSES = (ACTIVE, PAST_DUE)


@dataclass(frozen=True)
class Activate:
    external_payment_ref: str | None
    start: datetime
    end: datetime


@dataclass(frozen=True)
class AdvancePeriod:
    external_payment_ref: str | None
    start: datetime
    end: datetime


@dataclass(frozen=True)
class MarkPastDue:
    bump_attempt: bool = False


@dataclass(frozen=True)
class ScheduleCancel:
    pass


@dataclass(frozen=True)
class CancelNow:
    at: datetime


UpdateCommand = Union[Activate, AdvancePeriod, MarkPastDue, ScheduleCancel, CancelNow]


def _require(sub: Subscription, allowed: tuple[str, ...], cmd) -> None:
    if sub.status not in allowed:
        raise InvalidTransition(f"{type(cmd).__name__} not allowed from {sub.status} (subscription {sub.id})")


def _check_period(start: datetime, end: datetime) -> None:
    if end <= start:
        raise InvalidTransition(f"period end {end.isoformat()} must be after start {start.isoformat()}")


def apply_command(sub: Subscription, cmd: UpdateCommand) -> Subscription:
    """Single entry point for subscription status/period mutations."""
    if isinstance(cmd, Activate):
        _require(sub, (PENDING,), cmd)
        _check_period(cmd.start, cmd.end)
        sub.status = ACTIVE
        sub.current_period_start = cmd.start
        sub.current_period_end = cmd.end
        sub.external_payment_ref = cmd.external_payment_ref or sub.external_payment_ref
        sub.renewal_attempt = 0
    elif isinstance(cmd, AdvancePeriod):
        _require(sub, RENEWABLE_STATUSES, cmd)
        _check_period(cmd.start, cmd.end)
        if cmd.end <= sub.current_period_end:
            raise InvalidTransition(f"period for subscription {sub.id} can only move forward")
        sub.status = ACTIVE
        sub.current_period_start = cmd.start
        sub.current_period_end = cmd.end
        sub.external_payment_ref = cmd.external_payment_ref or sub.external_payment_ref
        sub.renewal_attempt = 0
    elif isinstance(cmd, MarkPastDue):
        _require(sub, RENEWABLE_STATUSES, cmd)
        sub.status = PAST_DUE
        if cmd.bump_attempt:
            sub.renewal_attempt = int(sub.renewal_attempt or 0) + 1
    elif isinstance(cmd, ScheduleCancel):
        _require(sub, RENEWABLE_STATUSES, cmd)
        sub.cancel_at_period_end = True
    elif isinstance(cmd, CancelNow):
        _require(sub, (PENDING, ACTIVE, PAST_DUE), cmd)
        sub.status = CANCELED
        sub.canceled_at = cmd.at
    else:
        raise TypeError(f"unknown subscription command: {cmd!r}")
    return sub


def add_months(dt: datetime, months: int) -> datetime:
    month = dt.month - 1 + months
    year = dt.year + month // 12
    month = month % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def period_from(start: datetime) -> tuple[datetime, datetime]:
    return start, add_months(start, int(settings.BILLING_PERIOD_MONTHS))


def has_access(sub: Subscription | None, now: datetime | None = None) -> bool:
    if sub is None:
        return False
    return sub.status == ACTIVE and sub.current_period_end >= (now or now_utc())
