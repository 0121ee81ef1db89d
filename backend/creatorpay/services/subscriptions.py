from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import logging

import sqlalchemy as sa
from sqlalchemy.orm import Session

from creatorpay.core.config import settings
from creatorpay.core.errors import (
    AlreadySubscribed,
    CreatorNotFound,
    GatewayConfigurationError,
    GatewayDeclined,
    GatewayTransient,
    InconsistentLedger,
    InvalidTransition,
    PaymentInProgress,
    SelfSubscription,
    SubscriptionNotFound,
)
from creatorpay.core.security import now_utc
from creatorpay.models.account import Account
from creatorpay.models.billing import LedgerPair, Subscription
from creatorpay.services import ledger, notifications
from creatorpay.services.audit import audit
from creatorpay.services.catalog import get_creator, get_creator_tier_price
from creatorpay.services.gateway import (
    CHARGE_COMPLETED,
    CHARGE_FAILED,
    ChargeRequest,
    ChargeResult,
    PaymentGateway,
    derive_idempotency_key,
    ensure_customer,
    with_retries,
)
from creatorpay.services.money import Money, split
from creatorpay.services.notifications import NotificationSink
from creatorpay.services.settlement import REPLAY_PENDING, REPLAY_UNKNOWN, replay_pending_charge
from creatorpay.services.subscription_state import (
    ACTIVE,
    CANCELED,
    PAST_DUE,
    PENDING,
    RENEWABLE_STATUSES,
    Activate,
    AdvancePeriod,
    CancelNow,
    MarkPastDue,
    ScheduleCancel,
    apply_command,
    has_access,
    period_from,
)

logger = logging.getLogger(__name__)

LIST_FILTERS = {"ACTIVE", "EXPIRED", "PAST_DUE", "PENDING", "CANCELED", "ALL"}


def get_subscription(db: Session, subscription_id, *, lock: bool = False) -> Subscription:
    stmt = sa.select(Subscription).where(Subscription.id == subscription_id)
    if lock:
        stmt = stmt.with_for_update()
    sub = db.execute(stmt).scalars().first()
    if sub is None:
        raise SubscriptionNotFound(f"subscription {subscription_id} not found")
    return sub


def _pair_subscriptions(db: Session, subscriber_id, creator_id) -> list[Subscription]:
    return list(
        db.execute(
            sa.select(Subscription)
            .where(Subscription.subscriber_id == subscriber_id, Subscription.creator_id == creator_id)
            .order_by(Subscription.created_at.asc())
            .with_for_update()
        ).scalars()
    )


def _pending_pair_for(db: Session, sub: Subscription) -> LedgerPair | None:
    return db.execute(
        sa.select(LedgerPair)
        .where(LedgerPair.subscription_id == sub.id, LedgerPair.status == ledger.PENDING)
        .order_by(LedgerPair.created_at.desc())
        .limit(1)
    ).scalars().first()


def _charge(gateway: PaymentGateway, request: ChargeRequest) -> ChargeResult:
    result = with_retries(lambda: gateway.charge(request))
    logger.info(
        "charge key=%s amount=%s -> payment=%s status=%s",
        request.idempotency_key,
        request.amount.minor_units,
        result.external_payment_id,
        result.status,
    )
    return result


@dataclass
class SubscribeOutcome:
    subscription: Subscription
    pending: bool


def subscribe(
    db: Session,
    gateway: PaymentGateway,
    sink: NotificationSink,
    *,
    subscriber_id,
    creator_id,
    payment_source_token: str,
    now: datetime | None = None,
) -> SubscribeOutcome:
    """Charge the first period and create (or complete) the subscription.

    Raises ``GatewayDeclined`` with nothing persisted, and ``GatewayTransient``
    after persisting a PENDING subscription plus PENDING ledger pair keyed by
    the charge key so a retry or webhook can settle it. Callers commit on both.
    """
    ts = now or now_utc()
    if str(subscriber_id) == str(creator_id):
        raise SelfSubscription(f"account {subscriber_id} tried to subscribe to itself")
    creator = get_creator(db, creator_id)
    if creator is None:
        raise CreatorNotFound(f"creator {creator_id} not found")
    price = get_creator_tier_price(db, creator.id)
    if price is None:
        raise CreatorNotFound(f"creator {creator_id} has no subscription tier")
    subscriber = db.get(Account, subscriber_id)
    if subscriber is None:
        raise SubscriptionNotFound(f"subscriber {subscriber_id} not found")

    customer_id = ensure_customer(db, gateway, subscriber)

    # Serializes concurrent subscribe calls from the same subscriber.
    db.execute(sa.select(Account.id).where(Account.id == subscriber.id).with_for_update())
    existing = _pair_subscriptions(db, subscriber.id, creator.id)
    for sub in existing:
        if has_access(sub, ts):
            raise AlreadySubscribed(f"subscription {sub.id} still active")

    pending_sub = next((s for s in existing if s.status == PENDING), None)
    pending_pair = _pending_pair_for(db, pending_sub) if pending_sub is not None else None
    if pending_pair is not None and pending_pair.external_payment_ref:
        logger.info("subscription %s still waiting on payment %s", pending_sub.id, pending_pair.external_payment_ref)
        return SubscribeOutcome(subscription=pending_sub, pending=True)

    # A charge still open on an older row may yet land; settle it before charging again.
    for sub in existing:
        if sub is pending_sub:
            continue
        open_pair = _pending_pair_for(db, sub)
        if open_pair is None:
            continue
        outcome = replay_pending_charge(db, gateway, sink, open_pair, now=ts)
        if outcome in (REPLAY_PENDING, REPLAY_UNKNOWN):
            logger.info("subscription %s has unresolved charge %s (%s)", sub.id, open_pair.charge_key, outcome)
            raise PaymentInProgress(f"charge {open_pair.charge_key} for subscription {sub.id} is {outcome}")
        if has_access(sub, ts):
            logger.info("subscription %s restored by its pending charge %s", sub.id, open_pair.charge_key)
            return SubscribeOutcome(subscription=sub, pending=False)

    # A lapsed ACTIVE or PAST_DUE row for the same creator is superseded by the new one.
    for sub in existing:
        if sub.status in RENEWABLE_STATUSES:
            previous = sub.status
            apply_command(sub, CancelNow(at=ts))
            audit(db, subscriber.id, "subscription", sub.id, "superseded", {"previous_status": previous})

    fee = split(Money(price, settings.BILLING_CURRENCY), settings.PLATFORM_FEE_PERCENT)
    sequence = sum(1 for s in existing if s.status != PENDING)
    token_tag = hashlib.sha256(payment_source_token.encode("utf-8")).hexdigest()[:12]
    if pending_pair is not None:
        charge_key = pending_pair.charge_key
        period_start, period_end = pending_pair.period_start, pending_pair.period_end
    else:
        charge_key = derive_idempotency_key("subscribe", subscriber.id, creator.id, f"{sequence}:{token_tag}")
        period_start, period_end = period_from(ts)

    if pending_sub is not None and pending_sub.payment_method_ref:
        method_ref = pending_sub.payment_method_ref
    else:
        card_key = derive_idempotency_key("card", subscriber.id, creator.id, f"{sequence}:{token_tag}")
        method_ref = with_retries(lambda: gateway.store_payment_method(customer_id, payment_source_token, card_key))

    request = ChargeRequest(
        customer_id=customer_id,
        source_ref=method_ref,
        amount=fee.gross,
        idempotency_key=charge_key,
        note=f"Subscription to {creator.username}",
        app_fee=fee.fee,
    )

    def _persist_pending(external_ref: str | None) -> Subscription:
        sub = pending_sub
        if sub is None:
            sub = Subscription(
                subscriber_id=subscriber.id,
                creator_id=creator.id,
                status=PENDING,
                price_minor=price,
                currency=fee.currency,
                current_period_start=period_start,
                current_period_end=period_end,
                payment_method_ref=method_ref,
            )
            db.add(sub)
            db.flush()
        sub.external_payment_ref = external_ref or sub.external_payment_ref
        ledger.record_pair(
            db,
            payer_id=subscriber.id,
            payee_id=creator.id,
            split=fee,
            kind="SUBSCRIPTION",
            charge_key=charge_key,
            status=ledger.PENDING,
            external_ref=external_ref,
            request=request,
            subscription_id=sub.id,
            period_start=period_start,
            period_end=period_end,
            description=request.note,
        )
        return sub

    try:
        result = _charge(gateway, request)
    except GatewayTransient:
        sub = _persist_pending(None)
        logger.warning("subscribe charge outcome unknown key=%s subscription=%s", charge_key, sub.id)
        raise
    except GatewayDeclined as exc:
        logger.warning("subscribe charge declined key=%s code=%s", charge_key, exc.code)
        if pending_sub is not None:
            _close_pending(db, pending_sub, pending_pair, ts)
        raise
    except GatewayConfigurationError:
        logger.critical("payment gateway misconfigured while subscribing %s -> %s", subscriber.id, creator.id)
        raise

    if result.status == CHARGE_FAILED:
        logger.warning("subscribe charge failed key=%s payment=%s", charge_key, result.external_payment_id)
        if pending_sub is not None:
            _close_pending(db, pending_sub, pending_pair, ts)
        raise GatewayDeclined(f"payment {result.external_payment_id} returned FAILED")

    sub = _persist_pending(result.external_payment_id)
    if result.status != CHARGE_COMPLETED:
        audit(db, subscriber.id, "subscription", sub.id, "pending", {"payment": result.external_payment_id})
        return SubscribeOutcome(subscription=sub, pending=True)

    pair = ledger.find_pair(db, charge_key=charge_key, lock=True)
    _complete_pair(db, pair)
    if sub.status == PENDING:
        apply_command(sub, Activate(external_payment_ref=result.external_payment_id, start=period_start, end=period_end))
    db.flush()
    audit(db, subscriber.id, "subscription", sub.id, "activated", {"payment": result.external_payment_id, "price_minor": price})
    sink.notify(creator.id, notifications.NEW_SUBSCRIBER, {"subscriptionId": str(sub.id), "subscriberId": str(subscriber.id)})
    sink.notify(subscriber.id, notifications.SUBSCRIPTION_STARTED, {"subscriptionId": str(sub.id), "creatorId": str(creator.id)})
    return SubscribeOutcome(subscription=sub, pending=False)


def _complete_pair(db: Session, pair: LedgerPair) -> None:
    ledger.mark_pair_status(db, pair, ledger.COMPLETED)
    if pair.status != ledger.COMPLETED:
        logger.critical("processor completed charge %s but local pair %s is %s", pair.charge_key, pair.id, pair.status)
        raise InconsistentLedger(f"pair {pair.id} is {pair.status}, processor reports COMPLETED")


def _close_pending(db: Session, sub: Subscription, pair: LedgerPair | None, ts: datetime) -> None:
    if pair is not None:
        ledger.mark_pair_status(db, pair, ledger.FAILED)
    if sub.status == PENDING:
        apply_command(sub, CancelNow(at=ts))


def renew(
    db: Session,
    gateway: PaymentGateway,
    sink: NotificationSink,
    subscription_id,
    *,
    now: datetime | None = None,
) -> str:
    """Drive one due subscription through its renewal.

    Returns one of ``renewed``, ``canceled``, ``past_due``, ``pending`` or
    ``skipped`` (not due, e.g. another worker already renewed it).
    """
    ts = now or now_utc()
    sub = get_subscription(db, subscription_id, lock=True)
    if sub.status not in RENEWABLE_STATUSES:
        raise InvalidTransition(f"subscription {sub.id} is {sub.status}, cannot renew")

    if sub.cancel_at_period_end:
        apply_command(sub, CancelNow(at=ts))
        db.flush()
        audit(db, None, "subscription", sub.id, "canceled_at_period_end", {})
        sink.notify(sub.subscriber_id, notifications.SUBSCRIPTION_CANCELED, {"subscriptionId": str(sub.id)})
        logger.info("subscription %s canceled at period end", sub.id)
        return "canceled"

    if sub.current_period_end > ts:
        return "skipped"

    old_end = sub.current_period_end
    charge_key = derive_idempotency_key("renew", sub.id, old_end.isoformat(), sub.renewal_attempt)

    open_pair = ledger.find_pair(db, charge_key=charge_key, lock=True)
    if open_pair is not None and open_pair.status != ledger.PENDING:
        open_pair = None
    if open_pair is not None and open_pair.external_payment_ref:
        return "pending"
    if open_pair is not None:
        # Retrying a charge whose outcome never came back: same key, same period.
        period_start, period_end = open_pair.period_start, open_pair.period_end
    else:
        period_start, period_end = period_from(old_end if sub.status == ACTIVE else max(old_end, ts))

    subscriber = db.get(Account, sub.subscriber_id)
    if not sub.payment_method_ref or subscriber is None or not subscriber.external_customer_id:
        logger.warning("subscription %s has no reusable payment method", sub.id)
        _mark_failed_renewal(db, sink, sub, open_pair, bump_attempt=True)
        return "past_due"

    fee = split(Money(int(sub.price_minor), sub.currency), settings.PLATFORM_FEE_PERCENT)
    request = ChargeRequest(
        customer_id=subscriber.external_customer_id,
        source_ref=sub.payment_method_ref,
        amount=fee.gross,
        idempotency_key=charge_key,
        note=f"Subscription renewal {sub.id}",
        app_fee=fee.fee,
    )

    def _record(status: str, external_ref: str | None) -> LedgerPair:
        return ledger.record_pair(
            db,
            payer_id=sub.subscriber_id,
            payee_id=sub.creator_id,
            split=fee,
            kind="SUBSCRIPTION",
            charge_key=charge_key,
            status=status,
            external_ref=external_ref,
            request=request,
            subscription_id=sub.id,
            period_start=period_start,
            period_end=period_end,
            description=request.note,
        )

    try:
        result = _charge(gateway, request)
    except GatewayDeclined as exc:
        logger.warning("renewal declined subscription=%s code=%s", sub.id, exc.code)
        _mark_failed_renewal(db, sink, sub, open_pair, bump_attempt=True)
        return "past_due"
    except GatewayTransient:
        logger.warning("renewal outcome unknown subscription=%s key=%s", sub.id, charge_key)
        _record(ledger.PENDING, None)
        apply_command(sub, MarkPastDue())
        db.flush()
        return "pending"

    if result.status == CHARGE_FAILED:
        _mark_failed_renewal(db, sink, sub, open_pair, bump_attempt=True)
        return "past_due"

    pair = _record(ledger.PENDING, result.external_payment_id)
    if result.status != CHARGE_COMPLETED:
        apply_command(sub, MarkPastDue())
        db.flush()
        return "pending"

    _complete_pair(db, pair)
    apply_command(sub, AdvancePeriod(external_payment_ref=result.external_payment_id, start=period_start, end=period_end))
    db.flush()
    audit(db, None, "subscription", sub.id, "renewed", {"payment": result.external_payment_id, "period_end": period_end.isoformat()})
    sink.notify(sub.subscriber_id, notifications.SUBSCRIPTION_RENEWED, {"subscriptionId": str(sub.id), "periodEnd": period_end.isoformat()})
    return "renewed"


def _mark_failed_renewal(
    db: Session,
    sink: NotificationSink,
    sub: Subscription,
    open_pair: LedgerPair | None,
    *,
    bump_attempt: bool,
) -> None:
    if open_pair is not None:
        ledger.mark_pair_status(db, open_pair, ledger.FAILED)
    apply_command(sub, MarkPastDue(bump_attempt=bump_attempt))
    db.flush()
    audit(db, None, "subscription", sub.id, "past_due", {"renewal_attempt": sub.renewal_attempt})
    sink.notify(sub.subscriber_id, notifications.PAYMENT_FAILED, {"subscriptionId": str(sub.id)})


def cancel(
    db: Session,
    sink: NotificationSink,
    subscription_id,
    *,
    immediate: bool,
    actor_id,
    actor_is_admin: bool = False,
    now: datetime | None = None,
) -> Subscription:
    ts = now or now_utc()
    sub = get_subscription(db, subscription_id, lock=True)
    if not actor_is_admin and str(sub.subscriber_id) != str(actor_id):
        raise SubscriptionNotFound(f"subscription {subscription_id} not visible to {actor_id}")
    if sub.status == CANCELED:
        return sub

    if immediate:
        apply_command(sub, CancelNow(at=ts))
        action = "canceled"
    else:
        if sub.status == PENDING:
            raise InvalidTransition(
                f"subscription {sub.id} is PENDING",
                public_message="El pago aun esta en proceso; solo puedes cancelar de inmediato",
            )
        apply_command(sub, ScheduleCancel())
        action = "cancel_scheduled"
    db.flush()
    audit(db, actor_id, "subscription", sub.id, action, {"immediate": immediate})
    if immediate:
        sink.notify(sub.subscriber_id, notifications.SUBSCRIPTION_CANCELED, {"subscriptionId": str(sub.id)})
    return sub


def list_subscriptions(
    db: Session,
    subscriber_id,
    *,
    status: str = "ALL",
    page: int = 1,
    limit: int = 20,
    now: datetime | None = None,
) -> tuple[list[Subscription], int]:
    ts = now or now_utc()
    flt = (status or "ALL").strip().upper()
    if flt not in LIST_FILTERS:
        raise ValueError("filtro de estado invalido")
    conditions = [Subscription.subscriber_id == subscriber_id]
    if flt == "ACTIVE":
        conditions += [Subscription.status == ACTIVE, Subscription.current_period_end >= ts]
    elif flt == "EXPIRED":
        conditions.append(
            sa.or_(
                Subscription.status == CANCELED,
                sa.and_(Subscription.status.in_(RENEWABLE_STATUSES), Subscription.current_period_end < ts),
            )
        )
    elif flt != "ALL":
        conditions.append(Subscription.status == flt)
    return _page(db, conditions, page, limit)


def list_subscribers(
    db: Session,
    creator_id,
    *,
    page: int = 1,
    limit: int = 20,
    now: datetime | None = None,
) -> tuple[list[Subscription], int]:
    ts = now or now_utc()
    conditions = [
        Subscription.creator_id == creator_id,
        Subscription.status == ACTIVE,
        Subscription.current_period_end >= ts,
    ]
    return _page(db, conditions, page, limit)


def _page(db: Session, conditions: list, page: int, limit: int) -> tuple[list[Subscription], int]:
    page = max(1, int(page))
    limit = max(1, min(100, int(limit)))
    total = db.execute(sa.select(sa.func.count()).select_from(Subscription).where(*conditions)).scalar_one()
    rows = db.execute(
        sa.select(Subscription)
        .where(*conditions)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return list(rows), int(total)


def due_subscription_ids(db: Session, *, now: datetime, limit: int) -> list:
    """Ids of subscriptions whose period has ended. PAST_DUE ones wait out the retry interval."""
    retry_before = now - timedelta(hours=int(settings.BILLING_RENEWAL_RETRY_HOURS))
    rows = db.execute(
        sa.select(Subscription.id)
        .where(
            Subscription.current_period_end <= now,
            sa.or_(
                Subscription.status == ACTIVE,
                sa.and_(Subscription.status == PAST_DUE, Subscription.updated_at <= retry_before),
            ),
        )
        .order_by(Subscription.current_period_end.asc())
        .limit(limit)
    ).scalars().all()
    return list(rows)
