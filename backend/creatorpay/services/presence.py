from __future__ import annotations

from datetime import datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.orm import Session

from creatorpay.core.config import settings
from creatorpay.core.security import now_utc
from creatorpay.models.notification import Presence


def touch(db: Session, account_id, *, now: datetime | None = None, ttl_seconds: int | None = None) -> Presence:
    """Record a heartbeat for ``account_id``; presence lapses after the TTL."""
    ts = now or now_utc()
    ttl = int(ttl_seconds if ttl_seconds is not None else settings.PRESENCE_TTL_SECONDS)
    row = db.get(Presence, account_id)
    if row is None:
        row = Presence(account_id=account_id, last_seen_at=ts, expires_at=ts + timedelta(seconds=ttl))
        db.add(row)
    else:
        row.last_seen_at = ts
        row.expires_at = ts + timedelta(seconds=ttl)
    db.flush()
    return row


def is_online(db: Session, account_id, *, now: datetime | None = None) -> bool:
    ts = now or now_utc()
    found = db.execute(
        sa.select(Presence.account_id).where(Presence.account_id == account_id, Presence.expires_at > ts)
    ).first()
    return found is not None


def purge_expired(db: Session, *, now: datetime | None = None) -> int:
    result = db.execute(sa.delete(Presence).where(Presence.expires_at <= (now or now_utc())))
    return int(result.rowcount or 0)
