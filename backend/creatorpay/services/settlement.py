"""Applying processor outcomes to PENDING ledger pairs and their owners.

Shared by the webhook handlers, the stale-charge sweep and ``subscribe``,
which all have to settle a pair the same way whichever of them learns the
outcome first.
"""
from __future__ import annotations

from datetime import datetime
import logging

import sqlalchemy as sa
from sqlalchemy.orm import Session

from creatorpay.core.errors import GatewayDeclined, GatewayError, GatewayTransient, InconsistentLedger
from creatorpay.core.security import now_utc
from creatorpay.models.billing import LedgerPair, Purchase, Subscription, WalletTransaction
from creatorpay.services import ledger, notifications
from creatorpay.services.audit import audit
from creatorpay.services.gateway import (
    CHARGE_COMPLETED,
    CHARGE_FAILED,
    ChargeRequest,
    PaymentGateway,
    RefundRequest,
    derive_idempotency_key,
    with_retries,
)
from creatorpay.services.money import Money
from creatorpay.services.notifications import NotificationSink
from creatorpay.services.subscription_state import (
    ACTIVE,
    PAST_DUE,
    PENDING,
    Activate,
    AdvancePeriod,
    CancelNow,
    MarkPastDue,
    apply_command,
)

logger = logging.getLogger(__name__)

REPLAY_COMPLETED = "completed"
REPLAY_FAILED = "failed"
REPLAY_PENDING = "pending"
REPLAY_UNKNOWN = "unknown"


def _payer_row(db: Session, pair: LedgerPair) -> WalletTransaction | None:
    return next((r for r in ledger.pair_rows(db, pair) if r.amount_minor < 0), None)


def charge_request_for(pair: LedgerPair) -> ChargeRequest | None:
    """Rebuild the charge a pair was recorded for, under its original key."""
    if not pair.customer_ref or not pair.source_ref:
        return None
    return ChargeRequest(
        customer_id=pair.customer_ref,
        source_ref=pair.source_ref,
        amount=Money(int(pair.gross_minor), pair.currency),
        idempotency_key=pair.charge_key,
        note=pair.charge_note or pair.kind,
        app_fee=Money(int(pair.platform_fee_minor), pair.currency),
    )


def link_payment(db: Session, pair: LedgerPair, external_payment_id: str) -> None:
    if pair.external_payment_ref == external_payment_id:
        return
    if pair.external_payment_ref:
        logger.critical("charge %s linked to %s, processor reports %s", pair.charge_key, pair.external_payment_ref, external_payment_id)
        raise InconsistentLedger(f"charge {pair.charge_key} already linked to {pair.external_payment_ref}")
    ledger.attach_external_ref(db, pair, external_payment_id)
    if pair.subscription_id is not None:
        db.execute(
            sa.update(Subscription)
            .where(Subscription.id == pair.subscription_id, Subscription.external_payment_ref.is_(None))
            .values(external_payment_ref=external_payment_id)
        )


def _settle_subscription(db: Session, sink: NotificationSink, pair: LedgerPair, status: str, ts: datetime) -> bool:
    """Returns False when a completed payment bought no period."""
    sub = db.execute(
        sa.select(Subscription).where(Subscription.id == pair.subscription_id).with_for_update()
    ).scalars().first()
    if sub is None:
        return status != CHARGE_COMPLETED
    is_renewal = sub.status in (ACTIVE, PAST_DUE) and pair.period_end is not None and pair.period_end > sub.current_period_end

    if status == CHARGE_COMPLETED:
        if sub.status == PENDING:
            apply_command(sub, Activate(external_payment_ref=pair.external_payment_ref, start=pair.period_start, end=pair.period_end))
            sink.notify(sub.creator_id, notifications.NEW_SUBSCRIBER, {"subscriptionId": str(sub.id), "subscriberId": str(sub.subscriber_id)})
        elif is_renewal:
            apply_command(sub, AdvancePeriod(external_payment_ref=pair.external_payment_ref, start=pair.period_start, end=pair.period_end))
            sink.notify(sub.subscriber_id, notifications.SUBSCRIPTION_RENEWED, {"subscriptionId": str(sub.id), "periodEnd": pair.period_end.isoformat()})
        else:
            return False
    else:
        if sub.status == PENDING:
            # Never activated: there is no paid period to fall back to.
            apply_command(sub, CancelNow(at=ts))
        elif is_renewal:
            apply_command(sub, MarkPastDue(bump_attempt=True))
        else:
            return True
        sink.notify(sub.subscriber_id, notifications.PAYMENT_FAILED, {"subscriptionId": str(sub.id)})
    db.flush()
    audit(db, None, "subscription", sub.id, f"reconciled_{status.lower()}", {"payment": pair.external_payment_ref})
    return True


def _settle_purchase(db: Session, sink: NotificationSink, pair: LedgerPair, status: str) -> bool:
    purchase = db.execute(
        sa.select(Purchase).where(Purchase.id == pair.purchase_id).with_for_update()
    ).scalars().first()
    if purchase is None or purchase.status != "PENDING":
        return status != CHARGE_COMPLETED
    purchase.external_payment_ref = purchase.external_payment_ref or pair.external_payment_ref
    if status == CHARGE_COMPLETED:
        purchase.status = "COMPLETED"
        sink.notify(purchase.creator_id, notifications.CONTENT_PURCHASED, {"purchaseId": str(purchase.id), "postId": str(purchase.post_id)})
    else:
        purchase.status = "FAILED"
        sink.notify(purchase.buyer_id, notifications.PAYMENT_FAILED, {"purchaseId": str(purchase.id)})
    db.flush()
    return True


def _refund_orphan_payment(db: Session, gateway: PaymentGateway, sink: NotificationSink, pair: LedgerPair) -> None:
    payer = _payer_row(db, pair)
    if payer is None or not pair.external_payment_ref:
        return
    request = RefundRequest(
        external_payment_id=pair.external_payment_ref,
        amount=Money(int(pair.gross_minor), pair.currency),
        reason="Payment arrived after the charge was closed",
        idempotency_key=derive_idempotency_key("compensate", pair.id, pair.external_payment_ref, 0),
    )
    try:
        result = with_retries(lambda: gateway.refund(request))
    except GatewayError as exc:
        logger.critical("could not refund orphan payment %s: %s", pair.external_payment_ref, exc)
        return
    if result.status == CHARGE_FAILED:
        logger.critical("refund %s of orphan payment %s failed", result.external_refund_id, pair.external_payment_ref)
        return
    ledger.record_refund(
        db,
        payer_id=payer.account_id,
        amount=request.amount,
        external_payment_ref=pair.external_payment_ref,
        external_refund_ref=result.external_refund_id,
        status=ledger.COMPLETED if result.status == CHARGE_COMPLETED else ledger.PENDING,
        description=request.reason,
    )
    audit(db, None, "ledger_pair", pair.id, "orphan_payment_refunded", {"payment": pair.external_payment_ref, "refund": result.external_refund_id})
    sink.notify(payer.account_id, notifications.PAYMENT_REFUNDED, {"paymentId": pair.external_payment_ref, "refundId": result.external_refund_id})
    logger.warning("orphan payment %s refunded as %s (%s)", pair.external_payment_ref, result.external_refund_id, result.status)


def apply_pair_outcome(
    db: Session,
    sink: NotificationSink,
    pair: LedgerPair,
    status: str,
    *,
    now: datetime | None = None,
    gateway: PaymentGateway | None = None,
) -> bool:
    """Settle a PENDING pair and its owner. No-op once the pair is terminal.

    A payment that completes after its subscription or purchase was closed
    grants nothing. It is logged critical and audited, and when a gateway is
    at hand the payer gets a compensating refund.
    """
    if not ledger.mark_pair_status(db, pair, status):
        return False
    ts = now or now_utc()
    if pair.subscription_id is not None:
        granted = _settle_subscription(db, sink, pair, status, ts)
    elif pair.purchase_id is not None:
        granted = _settle_purchase(db, sink, pair, status)
    else:
        granted = True
        if status == CHARGE_FAILED:
            payer = _payer_row(db, pair)
            if payer is not None:
                sink.notify(payer.account_id, notifications.PAYMENT_FAILED, {"paymentId": pair.external_payment_ref})

    if status == CHARGE_COMPLETED and not granted:
        logger.critical("payment %s for charge %s completed but granted nothing", pair.external_payment_ref, pair.charge_key)
        audit(db, None, "ledger_pair", pair.id, "orphan_payment", {"payment": pair.external_payment_ref, "kind": pair.kind})
        if gateway is not None:
            _refund_orphan_payment(db, gateway, sink, pair)
    return True


def replay_pending_charge(
    db: Session,
    gateway: PaymentGateway,
    sink: NotificationSink,
    pair: LedgerPair,
    *,
    now: datetime | None = None,
) -> str:
    """Re-send a PENDING pair's charge under its own key and apply what the processor says.

    The processor dedupes on the key, so this reads back the original outcome
    instead of charging twice. Returns ``completed``, ``failed``, ``pending``
    (processor still working on it) or ``unknown`` (no answer, or nothing to
    replay). Only a definitive decline fails the pair.
    """
    if pair.status != ledger.PENDING:
        return pair.status.lower()
    request = charge_request_for(pair)
    if request is None:
        logger.warning("pending charge %s has no stored charge to replay", pair.charge_key)
        return REPLAY_UNKNOWN
    try:
        result = with_retries(lambda: gateway.charge(request))
    except GatewayDeclined as exc:
        logger.warning("replayed charge %s declined code=%s", pair.charge_key, exc.code)
        apply_pair_outcome(db, sink, pair, CHARGE_FAILED, now=now, gateway=gateway)
        return REPLAY_FAILED
    except GatewayTransient:
        logger.warning("replayed charge %s still has no answer", pair.charge_key)
        return REPLAY_UNKNOWN

    link_payment(db, pair, result.external_payment_id)
    if result.status not in (CHARGE_COMPLETED, CHARGE_FAILED):
        return REPLAY_PENDING
    apply_pair_outcome(db, sink, pair, result.status, now=now, gateway=gateway)
    logger.info("replayed charge %s -> payment=%s status=%s", pair.charge_key, result.external_payment_id, result.status)
    return result.status.lower()
