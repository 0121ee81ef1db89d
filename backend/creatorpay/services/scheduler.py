"""Cron-style recurring jobs with slot claiming.

Each job fires on the minutes matched by a five-field cron expression. A run
is bound to a *slot* (the matched minute) and claimed by inserting a unique
``(job_name, slot)`` row, so concurrent instances run a slot once and a
restarted process catches up on the latest slot it missed.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import random

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creatorpay.core.security import now_utc
from creatorpay.models.scheduled_job import ScheduledJobRun

logger = logging.getLogger(__name__)

_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
)
_MAX_LOOKAHEAD_MINUTES = 366 * 24 * 60


def _parse_field(raw: str, name: str, lo: int, hi: int) -> frozenset[int]:
    values: set[int] = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            raise ValueError(f"cron {name}: empty item")
        step = 1
        if "/" in part:
            part, step_raw = part.split("/", 1)
            step = int(step_raw)
            if step <= 0:
                raise ValueError(f"cron {name}: step must be positive")
        if part == "*":
            start, end = lo, hi
        elif "-" in part:
            a, b = part.split("-", 1)
            start, end = int(a), int(b)
        else:
            start = end = int(part)
        if start < lo or end > hi or start > end:
            raise ValueError(f"cron {name}: {part} outside {lo}-{hi}")
        values.update(range(start, end + 1, step))
    if name == "weekday":
        # 7 is an alias for Sunday
        values = {v % 7 for v in values}
    return frozenset(values)


@dataclass(frozen=True)
class CronSpec:
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    day_restricted: bool
    weekday_restricted: bool

    @classmethod
    def parse(cls, expr: str) -> CronSpec:
        parts = (expr or "").split()
        if len(parts) != 5:
            raise ValueError(f"cron expression needs 5 fields, got {len(parts)}: {expr!r}")
        parsed = [_parse_field(raw, name, lo, hi) for raw, (name, lo, hi) in zip(parts, _FIELDS)]
        return cls(*parsed, day_restricted=parts[2] != "*", weekday_restricted=parts[4] != "*")

    def matches(self, dt: datetime) -> bool:
        if dt.minute not in self.minutes or dt.hour not in self.hours or dt.month not in self.months:
            return False
        cron_weekday = (dt.weekday() + 1) % 7
        day_ok = dt.day in self.days
        weekday_ok = cron_weekday in self.weekdays
        if self.day_restricted and self.weekday_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def next_after(self, dt: datetime) -> datetime:
        candidate = dt.replace(second=0, microsecond=0) + timedelta(minutes=1)
        for _ in range(_MAX_LOOKAHEAD_MINUTES):
            if self.matches(candidate):
                return candidate
            candidate += timedelta(minutes=1)
        raise ValueError("cron expression never fires")

    def latest_at_or_before(self, dt: datetime) -> datetime:
        candidate = dt.replace(second=0, microsecond=0)
        for _ in range(_MAX_LOOKAHEAD_MINUTES):
            if self.matches(candidate):
                return candidate
            candidate -= timedelta(minutes=1)
        raise ValueError("cron expression never fires")


def jitter(max_seconds: int, rng: random.Random | None = None) -> float:
    if max_seconds <= 0:
        return 0.0
    return (rng or random).uniform(0, max_seconds)


def claim_slot(db: Session, job_name: str, slot: datetime) -> ScheduledJobRun | None:
    """Claim ``slot`` for ``job_name``; None when another run already owns it."""
    if slot.tzinfo is None:
        slot = slot.replace(tzinfo=timezone.utc)
    run = ScheduledJobRun(job_name=job_name, slot=slot, status="running", started_at=now_utc())
    try:
        with db.begin_nested():
            db.add(run)
            db.flush()
    except IntegrityError:
        logger.debug("job %s slot %s already claimed", job_name, slot.isoformat())
        return None
    return run


def finish_run(db: Session, run: ScheduledJobRun, *, succeeded: bool, detail: dict | None = None) -> ScheduledJobRun:
    run.status = "succeeded" if succeeded else "failed"
    run.detail = detail or {}
    run.finished_at = now_utc()
    db.flush()
    return run
