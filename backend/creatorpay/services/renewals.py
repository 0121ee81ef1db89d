"""Renewal runs and the in-process worker that triggers them."""
from __future__ import annotations

import asyncio
from collections import Counter
from contextlib import suppress
from datetime import datetime, timedelta
import logging
from typing import Callable

from sqlalchemy.orm import Session

from creatorpay.core.config import settings
from creatorpay.core.security import now_utc
from creatorpay.services.gateway import PaymentGateway
from creatorpay.services.notifications import DatabaseNotificationSink, NotificationSink
from creatorpay.services.reconciliation import expire_stale_pending_charges
from creatorpay.services.scheduler import CronSpec, claim_slot, finish_run, jitter
from creatorpay.services.subscriptions import due_subscription_ids, renew

logger = logging.getLogger(__name__)

RENEWAL_JOB = "subscription_renewals"

SessionFactory = Callable[[], Session]
SinkFactory = Callable[[Session], NotificationSink]


def run_due_renewals(
    session_factory: SessionFactory,
    gateway: PaymentGateway,
    *,
    now: datetime | None = None,
    limit: int | None = None,
    sink_factory: SinkFactory = DatabaseNotificationSink,
) -> dict:
    """Renew every due subscription, one transaction each.

    A failing subscription is rolled back and reported; the rest still run.
    """
    ts = now or now_utc()
    batch = int(limit or settings.BILLING_RENEWAL_BATCH_LIMIT)
    db = session_factory()
    try:
        ids = due_subscription_ids(db, now=ts, limit=batch)
    finally:
        db.close()

    outcomes: Counter = Counter()
    errors: list[dict] = []
    for subscription_id in ids:
        db = session_factory()
        try:
            outcome = renew(db, gateway, sink_factory(db), subscription_id, now=ts)
            db.commit()
            outcomes[outcome] += 1
        except Exception as exc:
            db.rollback()
            logger.exception("renewal failed for subscription %s", subscription_id)
            errors.append({"subscription_id": str(subscription_id), "error": type(exc).__name__})
        finally:
            db.close()

    summary = {
        "due": len(ids),
        "renewed": outcomes["renewed"],
        "canceled": outcomes["canceled"],
        "past_due": outcomes["past_due"],
        "pending": outcomes["pending"],
        "skipped": outcomes["skipped"],
        "errors": errors,
    }
    logger.info(
        "renewal run at %s: due=%s renewed=%s canceled=%s past_due=%s pending=%s skipped=%s errors=%s",
        ts.isoformat(),
        summary["due"],
        summary["renewed"],
        summary["canceled"],
        summary["past_due"],
        summary["pending"],
        summary["skipped"],
        len(errors),
    )
    return summary


def sweep_stale_pending(
    session_factory: SessionFactory,
    gateway: PaymentGateway,
    *,
    now: datetime | None = None,
    sink_factory: SinkFactory = DatabaseNotificationSink,
) -> dict:
    ts = now or now_utc()
    db = session_factory()
    try:
        result = expire_stale_pending_charges(
            db,
            gateway,
            sink_factory(db),
            older_than=ts - timedelta(hours=int(settings.BILLING_PENDING_CHARGE_TTL_HOURS)),
            now=ts,
        )
        db.commit()
        return result
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def run_scheduled_renewals(
    session_factory: SessionFactory,
    gateway: PaymentGateway,
    spec: CronSpec,
    *,
    now: datetime | None = None,
) -> dict | None:
    """Run the renewal job for the latest cron slot at or before ``now`` unless already claimed."""
    ts = now or now_utc()
    slot = spec.latest_at_or_before(ts)

    db = session_factory()
    try:
        run = claim_slot(db, RENEWAL_JOB, slot)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    if run is None:
        return None

    succeeded = False
    detail: dict = {}
    try:
        detail = run_due_renewals(session_factory, gateway, now=ts)
        detail["stale_pending"] = sweep_stale_pending(session_factory, gateway, now=ts)
        succeeded = not detail["errors"]
        return detail
    finally:
        stored = {k: v for k, v in detail.items() if k != "errors"}
        stored["error_count"] = len(detail.get("errors", []))
        db = session_factory()
        try:
            finish_run(db, db.merge(run), succeeded=succeeded, detail=stored)
            db.commit()
        finally:
            db.close()


class RenewalWorker:
    """Background task that fires the renewal job on its cron schedule."""

    def __init__(
        self,
        session_factory: SessionFactory,
        gateway_factory: Callable[[], PaymentGateway],
        *,
        cron: str | None = None,
        jitter_seconds: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway_factory = gateway_factory
        self.spec = CronSpec.parse(cron or settings.BILLING_RENEWAL_CRON)
        self.jitter_seconds = int(settings.BILLING_RENEWAL_JITTER_SECONDS if jitter_seconds is None else jitter_seconds)
        self.task: asyncio.Task[None] | None = None
        self.running = False

    async def start(self) -> None:
        if self.running:
            logger.warning("renewal worker already running")
            return
        self.running = True
        self.task = asyncio.create_task(self._run())
        logger.info("renewal worker started cron=%r jitter=%ss", settings.BILLING_RENEWAL_CRON, self.jitter_seconds)

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        if self.task:
            self.task.cancel()
            with suppress(asyncio.CancelledError):
                await self.task
            self.task = None
        logger.info("renewal worker stopped")

    async def _run(self) -> None:
        while self.running:
            try:
                # The latest slot may have been missed while the process was down.
                await asyncio.to_thread(
                    run_scheduled_renewals, self.session_factory, self.gateway_factory(), self.spec
                )
            except Exception:
                logger.exception("renewal job crashed")

            now = now_utc()
            wait = (self.spec.next_after(now) - now).total_seconds() + jitter(self.jitter_seconds)
            await asyncio.sleep(max(wait, 1.0))
