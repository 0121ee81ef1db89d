from __future__ import annotations

from datetime import datetime
import logging

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creatorpay.core.errors import BillingError, DuplicateWebhookEvent, InconsistentLedger
from creatorpay.core.security import now_utc
from creatorpay.models.billing import BillingWebhookEvent, LedgerPair, Purchase, Refund
from creatorpay.services import ledger
from creatorpay.services.gateway import (
    CHARGE_COMPLETED,
    CHARGE_FAILED,
    PaymentGateway,
    normalize_payment_status,
    normalize_refund_status,
)
from creatorpay.services.money import Money
from creatorpay.services.notifications import NotificationSink
from creatorpay.services.purchases import settle_refunded_purchase
from creatorpay.services.settlement import (
    REPLAY_COMPLETED,
    REPLAY_FAILED,
    apply_pair_outcome,
    link_payment,
    replay_pending_charge,
)

logger = logging.getLogger(__name__)

PROVIDER = "square"
PAYMENT_EVENTS = {"payment.created", "payment.updated"}
REFUND_EVENTS = {"refund.created", "refund.updated"}


def handle_payment_event(
    db: Session,
    sink: NotificationSink,
    *,
    external_payment_id: str,
    new_status: str,
    reference_id: str | None = None,
    now: datetime | None = None,
    gateway: PaymentGateway | None = None,
) -> str:
    """Apply one processor payment status report.

    Returns ``applied``, ``noop`` (already terminal), ``ignored`` (non-terminal
    status) or ``unknown`` (no local charge matches). ``gateway`` is used to
    refund a payment that lands after its subscription or purchase closed.
    """
    status = normalize_payment_status(new_status)
    pair = ledger.find_pair(db, external_ref=external_payment_id, charge_key=reference_id, lock=True)
    if pair is None:
        logger.info("payment event for unknown payment %s (reference %s)", external_payment_id, reference_id)
        return "unknown"
    link_payment(db, pair, external_payment_id)

    if status not in (CHARGE_COMPLETED, CHARGE_FAILED):
        return "ignored"
    if pair.status != ledger.PENDING:
        if pair.status == status:
            logger.debug("payment %s already %s", external_payment_id, status)
        else:
            logger.warning("payment %s reported %s but is terminal %s; keeping it", external_payment_id, status, pair.status)
        return "noop"
    apply_pair_outcome(db, sink, pair, status, now=now, gateway=gateway)
    logger.info("payment %s reconciled to %s", external_payment_id, status)
    return "applied"


def handle_refund_event(
    db: Session,
    sink: NotificationSink,
    *,
    external_refund_id: str,
    new_status: str,
    external_payment_id: str | None,
    amount_minor: int | None,
) -> str:
    status = normalize_refund_status(new_status)
    refund = db.execute(
        sa.select(Refund).where(Refund.external_refund_id == external_refund_id).with_for_update()
    ).scalars().first()
    purchase = None

    if refund is None:
        # Refund issued outside the app (processor dashboard): record it on first sight.
        if not external_payment_id or not amount_minor or amount_minor <= 0:
            logger.info("refund event %s without payment/amount ignored", external_refund_id)
            return "ignored"
        purchase = db.execute(
            sa.select(Purchase).where(Purchase.external_payment_ref == external_payment_id).with_for_update()
        ).scalars().first()
        pair = ledger.find_pair(db, external_ref=external_payment_id)
        if purchase is None and pair is None:
            logger.info("refund %s references unknown payment %s", external_refund_id, external_payment_id)
            return "unknown"
        if purchase is not None:
            refund = Refund(
                purchase_id=purchase.id,
                external_refund_id=external_refund_id,
                external_payment_ref=external_payment_id,
                amount_minor=int(amount_minor),
                reason="Processor-initiated refund",
                status="PENDING",
            )
            db.add(refund)
            db.flush()
            payer_id, currency = purchase.buyer_id, purchase.currency
        else:
            payer = next((r for r in ledger.pair_rows(db, pair) if r.amount_minor < 0), None)
            payer_id, currency = payer.account_id, pair.currency
        ledger.record_refund(
            db,
            payer_id=payer_id,
            amount=Money(int(amount_minor), currency),
            external_payment_ref=external_payment_id,
            external_refund_ref=external_refund_id,
            status=ledger.PENDING,
            description="Processor-initiated refund",
        )
    elif refund.purchase_id is not None:
        purchase = db.execute(
            sa.select(Purchase).where(Purchase.id == refund.purchase_id).with_for_update()
        ).scalars().first()

    if status not in (CHARGE_COMPLETED, CHARGE_FAILED):
        return "ignored"

    changed = ledger.mark_refund_status(db, external_refund_id, status)
    if refund is not None:
        if refund.status != "PENDING":
            return "noop"
        refund.status = status
        db.flush()
    elif not changed:
        return "noop"

    if status == CHARGE_COMPLETED and purchase is not None:
        settle_refunded_purchase(db, sink, purchase)
    logger.info("refund %s reconciled to %s", external_refund_id, status)
    return "applied"


def _event_object(payload: dict, key: str) -> dict:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    obj = data.get("object") if isinstance(data.get("object"), dict) else {}
    found = obj.get(key)
    if not isinstance(found, dict) or not found.get("id"):
        raise ValueError(f"Evento de webhook invalido: falta data.object.{key}")
    return found


def _amount(obj: dict) -> int | None:
    money = obj.get("amount_money")
    if isinstance(money, dict) and isinstance(money.get("amount"), int):
        return int(money["amount"])
    return None


def _record_event(db: Session, event_id: str, event_type: str, payload: dict) -> BillingWebhookEvent:
    row = BillingWebhookEvent(provider=PROVIDER, event_id=event_id, event_type=event_type, payload=payload, status="received")
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        raise DuplicateWebhookEvent(f"{PROVIDER} event {event_id}") from None
    return row


def ingest_webhook_event(
    db: Session,
    sink: NotificationSink,
    payload: dict,
    *,
    now: datetime | None = None,
    gateway: PaymentGateway | None = None,
) -> dict:
    """Store, dedupe and apply one processor webhook.

    Schema problems raise ``ValueError`` (HTTP 400). Business-level failures
    mark the event ``error`` and still return normally so the processor does
    not retry forever; ledger inconsistencies and unexpected errors propagate.
    """
    if not isinstance(payload, dict):
        raise ValueError("Evento de webhook invalido")
    event_id = str(payload.get("event_id") or payload.get("id") or "").strip()
    event_type = str(payload.get("type") or "").strip()
    if not event_id or not event_type:
        raise ValueError("Evento de webhook invalido")

    if event_type in PAYMENT_EVENTS:
        obj = _event_object(payload, "payment")
    elif event_type in REFUND_EVENTS:
        obj = _event_object(payload, "refund")
    else:
        obj = None

    try:
        event = _record_event(db, event_id, event_type, payload)
    except DuplicateWebhookEvent:
        logger.debug("duplicate webhook event %s (%s)", event_id, event_type)
        row = db.execute(
            sa.select(BillingWebhookEvent.status).where(
                BillingWebhookEvent.provider == PROVIDER, BillingWebhookEvent.event_id == event_id
            )
        ).first()
        return {
            "provider": PROVIDER,
            "event_id": event_id,
            "duplicate": True,
            "processed": bool(row and row[0] in ("processed", "ignored")),
            "status": row[0] if row else "ignored",
        }

    outcome = "ignored"
    error_message = None
    try:
        with db.begin_nested():
            if event_type in PAYMENT_EVENTS:
                outcome = handle_payment_event(
                    db,
                    sink,
                    external_payment_id=str(obj["id"]),
                    new_status=str(obj.get("status") or ""),
                    reference_id=(str(obj["reference_id"]) if obj.get("reference_id") else None),
                    now=now,
                    gateway=gateway,
                )
            elif event_type in REFUND_EVENTS:
                outcome = handle_refund_event(
                    db,
                    sink,
                    external_refund_id=str(obj["id"]),
                    new_status=str(obj.get("status") or ""),
                    external_payment_id=(str(obj["payment_id"]) if obj.get("payment_id") else None),
                    amount_minor=_amount(obj),
                )
    except InconsistentLedger:
        raise
    except BillingError as exc:
        logger.warning("webhook event %s (%s) rejected: %s", event_id, event_type, exc)
        outcome = "error"
        error_message = str(exc)[:1000]

    final_status = "processed" if outcome in ("applied", "noop") else ("error" if outcome == "error" else "ignored")
    event.status = final_status
    event.error_message = error_message
    event.processed_at = now or now_utc()
    db.flush()
    return {
        "provider": PROVIDER,
        "event_id": event_id,
        "duplicate": False,
        "processed": final_status == "processed",
        "status": final_status,
        "outcome": outcome,
    }


def expire_stale_pending_charges(
    db: Session,
    gateway: PaymentGateway,
    sink: NotificationSink,
    *,
    older_than: datetime,
    limit: int = 200,
    now: datetime | None = None,
) -> dict:
    """Resolve PENDING charges that never got a processor payment id.

    Each charge is replayed under its own key so the processor reports what
    actually happened to it. Only a definitive decline expires the charge; a
    pair that already has a processor reference waits for its webhook.
    """
    pairs = db.execute(
        sa.select(LedgerPair)
        .where(
            LedgerPair.status == ledger.PENDING,
            LedgerPair.external_payment_ref.is_(None),
            LedgerPair.created_at <= older_than,
        )
        .order_by(LedgerPair.created_at.asc())
        .limit(limit)
        .with_for_update()
    ).scalars().all()
    counts = {"scanned": len(pairs), "completed": 0, "expired": 0, "unresolved": 0}
    for pair in pairs:
        outcome = replay_pending_charge(db, gateway, sink, pair, now=now)
        if outcome == REPLAY_COMPLETED:
            counts["completed"] += 1
        elif outcome == REPLAY_FAILED:
            counts["expired"] += 1
            logger.warning("stale pending charge %s expired", pair.charge_key)
        else:
            counts["unresolved"] += 1
    return counts
