from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import hashlib
import logging

import sqlalchemy as sa
from sqlalchemy.orm import Session

from creatorpay.core.config import settings
from creatorpay.core.errors import (
    AlreadyPurchased,
    CreatorNotFound,
    GatewayConfigurationError,
    GatewayDeclined,
    GatewayTransient,
    InconsistentLedger,
    InvalidAmount,
    InvalidTransition,
    PostNotFound,
    PurchaseNotFound,
    SelfPurchase,
)
from creatorpay.core.security import now_utc
from creatorpay.models.account import Account
from creatorpay.models.billing import LedgerPair, Purchase, Refund
from creatorpay.services import ledger, notifications
from creatorpay.services.audit import audit
from creatorpay.services.catalog import get_creator, get_post_offer
from creatorpay.services.gateway import (
    CHARGE_COMPLETED,
    CHARGE_FAILED,
    ChargeRequest,
    PaymentGateway,
    RefundRequest,
    derive_idempotency_key,
    ensure_customer,
    with_retries,
)
from creatorpay.services.money import Money, split
from creatorpay.services.notifications import NotificationSink

logger = logging.getLogger(__name__)

MIN_TIP_MINOR = 100


def _token_tag(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


@dataclass
class PurchaseOutcome:
    purchase: Purchase
    pending: bool


@dataclass
class TipOutcome:
    pair: LedgerPair
    pending: bool


def get_purchase(db: Session, purchase_id, *, lock: bool = False) -> Purchase:
    stmt = sa.select(Purchase).where(Purchase.id == purchase_id)
    if lock:
        stmt = stmt.with_for_update()
    purchase = db.execute(stmt).scalars().first()
    if purchase is None:
        raise PurchaseNotFound(f"purchase {purchase_id} not found")
    return purchase


def purchase_post(
    db: Session,
    gateway: PaymentGateway,
    sink: NotificationSink,
    *,
    buyer_id,
    post_id,
    payment_source_token: str,
    now: datetime | None = None,
) -> PurchaseOutcome:
    offer = get_post_offer(db, post_id)
    if offer is None:
        raise PostNotFound(f"post {post_id} has no offer")
    if str(offer.creator_id) == str(buyer_id):
        raise SelfPurchase(f"account {buyer_id} tried to buy its own post {post_id}")
    creator = get_creator(db, offer.creator_id)
    if creator is None:
        raise CreatorNotFound(f"creator {offer.creator_id} not found")
    buyer = db.get(Account, buyer_id)
    if buyer is None:
        raise PurchaseNotFound(f"buyer {buyer_id} not found")

    customer_id = ensure_customer(db, gateway, buyer)

    db.execute(sa.select(Account.id).where(Account.id == buyer.id).with_for_update())
    previous = list(
        db.execute(
            sa.select(Purchase).where(Purchase.buyer_id == buyer.id, Purchase.post_id == offer.post_id).with_for_update()
        ).scalars()
    )
    if any(p.status == "COMPLETED" for p in previous):
        raise AlreadyPurchased(f"post {offer.post_id} already bought by {buyer.id}")

    pending = next((p for p in previous if p.status == "PENDING"), None)
    pending_pair = None
    if pending is not None:
        pending_pair = db.execute(
            sa.select(LedgerPair).where(LedgerPair.purchase_id == pending.id, LedgerPair.status == ledger.PENDING)
        ).scalars().first()
        if pending_pair is not None and pending_pair.external_payment_ref:
            return PurchaseOutcome(purchase=pending, pending=True)

    price = int(offer.price_minor)
    fee = split(Money(price, settings.BILLING_CURRENCY), settings.PLATFORM_FEE_PERCENT)
    if pending_pair is not None:
        charge_key = pending_pair.charge_key
    else:
        attempt = sum(1 for p in previous if p.status != "PENDING")
        charge_key = derive_idempotency_key("purchase", buyer.id, offer.post_id, f"{attempt}:{_token_tag(payment_source_token)}")

    note = f"Purchase of post {offer.title or offer.post_id}"
    request = ChargeRequest(
        customer_id=customer_id,
        source_ref=payment_source_token,
        amount=fee.gross,
        idempotency_key=charge_key,
        note=note,
        app_fee=fee.fee,
    )

    def _persist(external_ref: str | None) -> tuple[Purchase, LedgerPair]:
        purchase = pending
        if purchase is None:
            purchase = Purchase(
                buyer_id=buyer.id,
                creator_id=creator.id,
                post_id=offer.post_id,
                amount_minor=price,
                currency=fee.currency,
                status="PENDING",
            )
            db.add(purchase)
            db.flush()
        purchase.external_payment_ref = external_ref or purchase.external_payment_ref
        pair = ledger.record_pair(
            db,
            payer_id=buyer.id,
            payee_id=creator.id,
            split=fee,
            kind="CONTENT_PURCHASE",
            charge_key=charge_key,
            status=ledger.PENDING,
            external_ref=external_ref,
            request=request,
            purchase_id=purchase.id,
            description=note,
        )
        return purchase, pair

    try:
        result = with_retries(lambda: gateway.charge(request))
    except GatewayTransient:
        purchase, _ = _persist(None)
        logger.warning("purchase charge outcome unknown key=%s purchase=%s", charge_key, purchase.id)
        raise
    except GatewayDeclined as exc:
        logger.warning("purchase charge declined key=%s code=%s", charge_key, exc.code)
        _fail_pending_purchase(db, pending, pending_pair)
        raise
    except GatewayConfigurationError:
        logger.critical("payment gateway misconfigured while buying post %s", offer.post_id)
        raise

    logger.info("charge key=%s amount=%s -> payment=%s status=%s", charge_key, price, result.external_payment_id, result.status)
    if result.status == CHARGE_FAILED:
        _fail_pending_purchase(db, pending, pending_pair)
        raise GatewayDeclined(f"payment {result.external_payment_id} returned FAILED")

    purchase, pair = _persist(result.external_payment_id)
    if result.status != CHARGE_COMPLETED:
        return PurchaseOutcome(purchase=purchase, pending=True)

    ledger.mark_pair_status(db, pair, ledger.COMPLETED)
    if pair.status != ledger.COMPLETED:
        logger.critical("processor completed charge %s but local pair %s is %s", charge_key, pair.id, pair.status)
        raise InconsistentLedger(f"pair {pair.id} is {pair.status}, processor reports COMPLETED")
    purchase.status = "COMPLETED"
    db.flush()
    audit(db, buyer.id, "purchase", purchase.id, "completed", {"post_id": str(offer.post_id), "amount_minor": price})
    sink.notify(creator.id, notifications.CONTENT_PURCHASED, {"purchaseId": str(purchase.id), "postId": str(offer.post_id)})
    return PurchaseOutcome(purchase=purchase, pending=False)


def _fail_pending_purchase(db: Session, purchase: Purchase | None, pair: LedgerPair | None) -> None:
    if pair is not None:
        ledger.mark_pair_status(db, pair, ledger.FAILED)
    if purchase is not None and purchase.status == "PENDING":
        purchase.status = "FAILED"
        db.flush()


def refunded_total(db: Session, purchase_id) -> int:
    total = db.execute(
        sa.select(sa.func.coalesce(sa.func.sum(Refund.amount_minor), 0)).where(
            Refund.purchase_id == purchase_id, Refund.status != "FAILED"
        )
    ).scalar_one()
    return int(total or 0)


def refund_purchase(
    db: Session,
    gateway: PaymentGateway,
    sink: NotificationSink,
    purchase_id,
    *,
    actor_id,
    actor_is_admin: bool = False,
    amount_minor: int | None = None,
    reason: str | None = None,
) -> Refund:
    """Refund all or part of a completed purchase.

    The buyer is credited by a single REFUND wallet row; the purchase becomes
    REFUNDED once refunds cover the full amount.
    """
    purchase = get_purchase(db, purchase_id, lock=True)
    if not actor_is_admin and str(purchase.creator_id) != str(actor_id):
        raise PurchaseNotFound(f"purchase {purchase_id} not visible to {actor_id}")
    if purchase.status != "COMPLETED" or not purchase.external_payment_ref:
        raise InvalidTransition(f"purchase {purchase.id} is {purchase.status}, cannot refund")

    already = refunded_total(db, purchase.id)
    remaining = int(purchase.amount_minor) - already
    amount = remaining if amount_minor is None else int(amount_minor)
    if amount <= 0 or amount > remaining:
        raise InvalidAmount(f"refund {amount} outside (0, {remaining}] for purchase {purchase.id}")

    refund_count = db.execute(
        sa.select(sa.func.count()).select_from(Refund).where(Refund.purchase_id == purchase.id)
    ).scalar_one()
    key = derive_idempotency_key("refund", purchase.id, purchase.external_payment_ref, refund_count)
    request = RefundRequest(
        external_payment_id=purchase.external_payment_ref,
        amount=Money(amount, purchase.currency),
        reason=reason or "Requested by creator",
        idempotency_key=key,
    )
    try:
        result = with_retries(lambda: gateway.refund(request))
    except GatewayConfigurationError:
        logger.critical("payment gateway misconfigured while refunding purchase %s", purchase.id)
        raise
    logger.info("refund key=%s amount=%s -> refund=%s status=%s", key, amount, result.external_refund_id, result.status)
    if result.status == CHARGE_FAILED:
        raise GatewayDeclined(f"refund {result.external_refund_id} returned FAILED")

    refund = Refund(
        purchase_id=purchase.id,
        external_refund_id=result.external_refund_id,
        external_payment_ref=purchase.external_payment_ref,
        amount_minor=amount,
        reason=reason,
        status=result.status,
    )
    db.add(refund)
    db.flush()
    ledger.record_refund(
        db,
        payer_id=purchase.buyer_id,
        amount=request.amount,
        external_payment_ref=purchase.external_payment_ref,
        external_refund_ref=result.external_refund_id,
        status=ledger.COMPLETED if result.status == CHARGE_COMPLETED else ledger.PENDING,
        description=reason or "Refund",
    )
    if result.status == CHARGE_COMPLETED:
        settle_refunded_purchase(db, sink, purchase)
    audit(db, actor_id, "purchase", purchase.id, "refund_requested", {"refund": result.external_refund_id, "amount_minor": amount})
    return refund


def settle_refunded_purchase(db: Session, sink: NotificationSink, purchase: Purchase) -> bool:
    """Flip a purchase to REFUNDED once completed refunds cover its amount."""
    completed = db.execute(
        sa.select(sa.func.coalesce(sa.func.sum(Refund.amount_minor), 0)).where(
            Refund.purchase_id == purchase.id, Refund.status == "COMPLETED"
        )
    ).scalar_one()
    if purchase.status != "COMPLETED" or int(completed or 0) < int(purchase.amount_minor):
        return False
    purchase.status = "REFUNDED"
    db.flush()
    sink.notify(purchase.buyer_id, notifications.PURCHASE_REFUNDED, {"purchaseId": str(purchase.id)})
    return True


def send_tip(
    db: Session,
    gateway: PaymentGateway,
    sink: NotificationSink,
    *,
    sender_id,
    receiver_id,
    amount_minor: int,
    payment_source_token: str,
    message: str | None = None,
) -> TipOutcome:
    if str(sender_id) == str(receiver_id):
        raise InvalidAmount("self tip", public_message="No puedes enviarte una propina a ti mismo")
    if not isinstance(amount_minor, int) or amount_minor < MIN_TIP_MINOR:
        raise InvalidAmount(f"tip amount {amount_minor}", public_message="La propina minima es de 1.00")
    receiver = get_creator(db, receiver_id)
    if receiver is None:
        raise CreatorNotFound(f"receiver {receiver_id} not found")
    sender = db.get(Account, sender_id)
    if sender is None:
        raise CreatorNotFound(f"sender {sender_id} not found")

    customer_id = ensure_customer(db, gateway, sender)
    fee = split(Money(amount_minor, settings.BILLING_CURRENCY), settings.PLATFORM_FEE_PERCENT)
    charge_key = derive_idempotency_key("tip", sender.id, receiver.id, f"{amount_minor}:{_token_tag(payment_source_token)}")
    existing = ledger.find_pair(db, charge_key=charge_key)
    if existing is not None and existing.status != ledger.PENDING:
        return TipOutcome(pair=existing, pending=False)

    note = (message or f"Tip from {sender.username}")[:500]
    request = ChargeRequest(
        customer_id=customer_id,
        source_ref=payment_source_token,
        amount=fee.gross,
        idempotency_key=charge_key,
        note=note,
        app_fee=fee.fee,
    )

    def _record(external_ref: str | None) -> LedgerPair:
        return ledger.record_pair(
            db,
            payer_id=sender.id,
            payee_id=receiver.id,
            split=fee,
            kind="TIP",
            charge_key=charge_key,
            status=ledger.PENDING,
            external_ref=external_ref,
            request=request,
            description=note,
        )

    try:
        result = with_retries(lambda: gateway.charge(request))
    except GatewayTransient:
        _record(None)
        raise
    except GatewayConfigurationError:
        logger.critical("payment gateway misconfigured while sending tip %s -> %s", sender.id, receiver.id)
        raise
    if result.status == CHARGE_FAILED:
        raise GatewayDeclined(f"payment {result.external_payment_id} returned FAILED")

    pair = _record(result.external_payment_id)
    if result.status != CHARGE_COMPLETED:
        return TipOutcome(pair=pair, pending=True)
    ledger.mark_pair_status(db, pair, ledger.COMPLETED)
    audit(db, sender.id, "tip", pair.id, "completed", {"receiver": str(receiver.id), "amount_minor": amount_minor})
    sink.notify(receiver.id, notifications.TIP_RECEIVED, {"amount": amount_minor, "senderId": str(sender.id)})
    return TipOutcome(pair=pair, pending=False)
