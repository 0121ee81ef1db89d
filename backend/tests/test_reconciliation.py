from __future__ import annotations

from datetime import timedelta
import logging

import pytest
import sqlalchemy as sa

from creatorpay.core.errors import GatewayDeclined, GatewayTransient, InconsistentLedger, PaymentInProgress
from creatorpay.core.security import now_utc
from creatorpay.models.audit_log import AuditLog
from creatorpay.models.billing import BillingWebhookEvent, LedgerPair, Purchase, Refund, Subscription
from creatorpay.services import ledger, notifications
from creatorpay.services.money import Money
from creatorpay.services.purchases import purchase_post, refund_purchase
from creatorpay.services.reconciliation import expire_stale_pending_charges, ingest_webhook_event
from creatorpay.services.subscription_state import add_months
from creatorpay.services.subscriptions import cancel, renew, subscribe
from tests.testkit import T0, assert_ledger_balanced, days, make_account, make_creator, make_offer, payment_event, refund_event


def _subscribe(db, gateway, sink, fan, creator):
    return subscribe(db, gateway, sink, subscriber_id=fan.id, creator_id=creator.id, payment_source_token="cnon:ok", now=T0)


def _unknown_outcome_subscription(db, gateway, sink):
    fan, creator = make_account(db, "fan"), make_creator(db)
    gateway.outcomes = [GatewayTransient("timeout")] * 3
    with pytest.raises(GatewayTransient):
        _subscribe(db, gateway, sink, fan, creator)
    db.commit()
    pair = db.execute(sa.select(LedgerPair)).scalars().one()
    return fan, creator, pair


def _pending_subscription(db, gateway, sink):
    fan, creator = make_account(db, "fan"), make_creator(db)
    gateway.outcomes = ["PENDING"]
    sub = _subscribe(db, gateway, sink, fan, creator).subscription
    db.commit()
    return fan, creator, sub


def _bought(db, gateway, sink):
    creator, buyer = make_creator(db), make_account(db, "buyer")
    offer = make_offer(db, creator, price_minor=500)
    purchase = purchase_post(db, gateway, sink, buyer_id=buyer.id, post_id=offer.post_id, payment_source_token="cnon:ok").purchase
    db.commit()
    return creator, buyer, purchase


def test_webhook_completes_charge_with_unknown_outcome(db, gateway, sink):
    fan, creator, pair = _unknown_outcome_subscription(db, gateway, sink)

    out = ingest_webhook_event(db, sink, payment_event("evt_1", "pay_77", "COMPLETED", reference_id=pair.charge_key), now=T0)
    db.commit()

    assert out["status"] == "processed" and out["outcome"] == "applied"
    assert pair.status == "COMPLETED"
    assert pair.external_payment_ref == "pay_77"
    sub = db.get(Subscription, pair.subscription_id)
    assert sub.status == "ACTIVE"
    assert sub.external_payment_ref == "pay_77"
    assert ledger.get_balance(db, fan.id) == -1000
    assert ledger.get_balance(db, creator.id) == 800
    assert notifications.NEW_SUBSCRIBER in sink.kinds_for(creator.id)
    assert_ledger_balanced(db)


def test_duplicate_delivery_is_applied_once(db, gateway, sink):
    fan, _, sub = _pending_subscription(db, gateway, sink)
    event = payment_event("evt_dup", "pay_1", "COMPLETED")

    first = ingest_webhook_event(db, sink, event, now=T0)
    second = ingest_webhook_event(db, sink, event, now=T0)
    db.commit()

    assert first["duplicate"] is False and first["processed"] is True
    assert second["duplicate"] is True and second["processed"] is True
    assert sub.status == "ACTIVE"
    assert ledger.get_balance(db, fan.id) == -1000
    assert db.execute(sa.select(sa.func.count()).select_from(BillingWebhookEvent)).scalar_one() == 1
    assert sink.kinds_for(fan.id).count(notifications.PAYMENT_FAILED) == 0
    assert_ledger_balanced(db)


def test_terminal_status_survives_out_of_order_events(db, gateway, sink):
    fan, _, sub = _pending_subscription(db, gateway, sink)

    ingest_webhook_event(db, sink, payment_event("evt_2", "pay_1", "COMPLETED"), now=T0)
    late = ingest_webhook_event(db, sink, payment_event("evt_1", "pay_1", "APPROVED", event_type="payment.created"), now=T0)
    failed = ingest_webhook_event(db, sink, payment_event("evt_3", "pay_1", "FAILED"), now=T0)
    db.commit()

    assert late["outcome"] == "ignored"
    assert failed["outcome"] == "noop"
    assert sub.status == "ACTIVE"
    assert ledger.get_balance(db, fan.id) == -1000
    assert_ledger_balanced(db)


def test_failed_first_charge_cancels_pending_subscription(db, gateway, sink):
    fan, _, sub = _pending_subscription(db, gateway, sink)

    ingest_webhook_event(db, sink, payment_event("evt_f", "pay_1", "CANCELED"), now=T0)
    again = ingest_webhook_event(db, sink, payment_event("evt_c", "pay_1", "COMPLETED"), now=T0)
    db.commit()

    assert sub.status == "CANCELED"
    assert again["outcome"] == "noop"
    assert ledger.get_balance(db, fan.id) == 0
    assert notifications.PAYMENT_FAILED in sink.kinds_for(fan.id)
    assert_ledger_balanced(db)


def test_pending_renewal_settled_by_webhook(db, gateway, sink):
    fan = make_account(db, "fan")
    creator = make_creator(db)
    sub = _subscribe(db, gateway, sink, fan, creator).subscription
    db.commit()
    old_end = sub.current_period_end
    gateway.outcomes = ["PENDING"]

    assert renew(db, gateway, sink, sub.id, now=old_end) == "pending"
    db.commit()
    assert sub.status == "PAST_DUE"

    out = ingest_webhook_event(db, sink, payment_event("evt_r", "pay_2", "COMPLETED"), now=old_end)
    db.commit()

    assert out["outcome"] == "applied"
    assert sub.status == "ACTIVE"
    assert sub.current_period_end == add_months(old_end, 1)
    assert ledger.get_balance(db, fan.id) == -2000
    assert_ledger_balanced(db)


def test_mismatched_payment_id_is_inconsistent(db, gateway, sink):
    _, _, sub = _pending_subscription(db, gateway, sink)
    pair = db.execute(sa.select(LedgerPair)).scalars().one()

    with pytest.raises(InconsistentLedger):
        ingest_webhook_event(db, sink, payment_event("evt_x", "pay_other", "COMPLETED", reference_id=pair.charge_key), now=T0)


def test_unknown_payment_and_unhandled_type_are_ignored(db, sink):
    out = ingest_webhook_event(db, sink, payment_event("evt_u", "pay_nobody", "COMPLETED"), now=T0)
    assert (out["status"], out["outcome"]) == ("ignored", "unknown")

    other = ingest_webhook_event(db, sink, {"event_id": "evt_o", "type": "customer.created", "data": {}}, now=T0)
    assert other["status"] == "ignored"
    assert other["processed"] is False


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "payment.updated"},
        {"event_id": "evt_1"},
        {"event_id": "evt_1", "type": "payment.updated", "data": {"object": {}}},
        {"event_id": "evt_1", "type": "refund.updated", "data": {"object": {"refund": {"status": "COMPLETED"}}}},
    ],
)
def test_malformed_events_are_rejected(db, sink, payload):
    with pytest.raises(ValueError):
        ingest_webhook_event(db, sink, payload, now=T0)


def test_refund_webhook_completes_pending_refund(db, gateway, sink):
    creator, buyer, purchase = _bought(db, gateway, sink)
    gateway.refund_outcomes = ["PENDING"]
    refund = refund_purchase(db, gateway, sink, purchase.id, actor_id=creator.id)
    db.commit()

    out = ingest_webhook_event(
        db, sink, refund_event("evt_rf", refund.external_refund_id, "COMPLETED", payment_id="pay_1", amount=500), now=T0
    )
    db.commit()

    assert out["outcome"] == "applied"
    assert refund.status == "COMPLETED"
    assert purchase.status == "REFUNDED"
    assert ledger.get_balance(db, buyer.id) == 0
    assert_ledger_balanced(db)


def test_refund_issued_outside_the_app_is_recorded(db, gateway, sink):
    creator, buyer, purchase = _bought(db, gateway, sink)

    created = ingest_webhook_event(db, sink, refund_event("evt_a", "rf_dash", "PENDING", payment_id="pay_1", amount=500, event_type="refund.created"), now=T0)
    completed = ingest_webhook_event(db, sink, refund_event("evt_b", "rf_dash", "COMPLETED", payment_id="pay_1", amount=500), now=T0)
    db.commit()

    assert created["outcome"] == "ignored"
    assert completed["outcome"] == "applied"
    refund = db.execute(sa.select(Refund)).scalars().one()
    assert refund.purchase_id == purchase.id and refund.status == "COMPLETED"
    assert db.get(Purchase, purchase.id).status == "REFUNDED"
    assert ledger.get_balance(db, buyer.id) == 0
    assert ledger.get_balance(db, creator.id) == 400
    assert_ledger_balanced(db)


def test_stale_pending_charge_is_replayed_and_completes(db, gateway, sink):
    fan, creator, pair = _unknown_outcome_subscription(db, gateway, sink)
    _, _, waiting = _pending_subscription(db, gateway, sink)

    result = expire_stale_pending_charges(db, gateway, sink, older_than=now_utc() + timedelta(minutes=1), now=T0)
    db.commit()

    assert result == {"scanned": 1, "completed": 1, "expired": 0, "unresolved": 0}
    assert gateway.charge_calls[-1].idempotency_key == pair.charge_key
    assert gateway.charge_calls[-1].source_ref == "card_1"
    assert pair.status == "COMPLETED" and pair.external_payment_ref
    sub = db.get(Subscription, pair.subscription_id)
    assert sub.status == "ACTIVE"
    assert sub.external_payment_ref == pair.external_payment_ref
    assert ledger.get_balance(db, fan.id) == -1000
    assert waiting.status == "PENDING"
    assert notifications.NEW_SUBSCRIBER in sink.kinds_for(creator.id)
    assert_ledger_balanced(db)


def test_stale_pending_charge_expires_only_on_decline(db, gateway, sink):
    fan, _, pair = _unknown_outcome_subscription(db, gateway, sink)
    gateway.outcomes = [GatewayDeclined("card declined", code="CARD_DECLINED")]

    result = expire_stale_pending_charges(db, gateway, sink, older_than=now_utc() + timedelta(minutes=1), now=T0)
    db.commit()

    assert result == {"scanned": 1, "completed": 0, "expired": 1, "unresolved": 0}
    assert pair.status == "FAILED"
    assert db.get(Subscription, pair.subscription_id).status == "CANCELED"
    assert ledger.get_balance(db, fan.id) == 0
    assert notifications.PAYMENT_FAILED in sink.kinds_for(fan.id)


def test_stale_pending_charge_without_answer_stays_pending(db, gateway, sink):
    _, _, pair = _unknown_outcome_subscription(db, gateway, sink)
    gateway.outcomes = [GatewayTransient("timeout")] * 3

    result = expire_stale_pending_charges(db, gateway, sink, older_than=now_utc() + timedelta(minutes=1), now=T0)
    db.commit()

    assert result == {"scanned": 1, "completed": 0, "expired": 0, "unresolved": 1}
    assert pair.status == "PENDING"
    assert db.get(Subscription, pair.subscription_id).status == "PENDING"


def test_resubscribe_during_unknown_renewal_settles_it_instead_of_charging_twice(db, gateway, sink):
    fan, creator = make_account(db, "fan"), make_creator(db)
    sub = _subscribe(db, gateway, sink, fan, creator).subscription
    db.commit()
    old_end = sub.current_period_end
    gateway.outcomes = [GatewayTransient("timeout")] * 3
    assert renew(db, gateway, sink, sub.id, now=old_end) == "pending"
    db.commit()
    renewal = db.execute(sa.select(LedgerPair).where(LedgerPair.status == "PENDING")).scalars().one()
    calls = len(gateway.charge_calls)

    outcome = subscribe(
        db, gateway, sink, subscriber_id=fan.id, creator_id=creator.id,
        payment_source_token="cnon:new-card", now=old_end + days(1),
    )
    db.commit()

    assert outcome.subscription.id == sub.id and outcome.pending is False
    assert sub.status == "ACTIVE"
    assert sub.current_period_end == add_months(old_end, 1)
    assert [c.idempotency_key for c in gateway.charge_calls[calls:]] == [renewal.charge_key]
    assert renewal.status == "COMPLETED"

    late = ingest_webhook_event(
        db, sink, payment_event("evt_late", renewal.external_payment_ref, "COMPLETED", reference_id=renewal.charge_key),
        now=old_end + days(1), gateway=gateway,
    )
    db.commit()

    assert late["outcome"] == "noop"
    assert db.execute(sa.select(sa.func.count()).select_from(Subscription)).scalar_one() == 1
    assert gateway.refund_calls == []
    assert ledger.get_balance(db, fan.id) == -2000
    assert_ledger_balanced(db)


def test_resubscribe_refused_while_earlier_charge_has_no_answer(db, gateway, sink):
    fan, creator = make_account(db, "fan"), make_creator(db)
    sub = _subscribe(db, gateway, sink, fan, creator).subscription
    db.commit()
    old_end = sub.current_period_end
    gateway.outcomes = [GatewayTransient("timeout")] * 6
    renew(db, gateway, sink, sub.id, now=old_end)
    db.commit()

    with pytest.raises(PaymentInProgress):
        subscribe(
            db, gateway, sink, subscriber_id=fan.id, creator_id=creator.id,
            payment_source_token="cnon:new-card", now=old_end + days(1),
        )
    db.rollback()

    assert sub.status == "PAST_DUE"
    assert db.execute(sa.select(sa.func.count()).select_from(Subscription)).scalar_one() == 1
    assert len(gateway.payments) == 1
    assert ledger.get_balance(db, fan.id) == -1000


def test_late_payment_for_canceled_subscription_is_refunded(db, gateway, sink):
    fan, creator, pair = _unknown_outcome_subscription(db, gateway, sink)
    cancel(db, sink, pair.subscription_id, immediate=True, actor_id=fan.id, now=T0 + days(1))
    db.commit()

    out = ingest_webhook_event(
        db, sink, payment_event("evt_late", "pay_77", "COMPLETED", reference_id=pair.charge_key),
        now=T0 + days(1), gateway=gateway,
    )
    db.commit()

    assert out["outcome"] == "applied"
    assert pair.status == "COMPLETED"
    assert db.get(Subscription, pair.subscription_id).status == "CANCELED"
    refund = gateway.refund_calls[0]
    assert (refund.external_payment_id, refund.amount) == ("pay_77", Money(1000, "USD"))
    assert ledger.get_balance(db, fan.id) == 0
    assert notifications.PAYMENT_REFUNDED in sink.kinds_for(fan.id)
    actions = set(db.execute(sa.select(AuditLog.action).where(AuditLog.entity_type == "ledger_pair")).scalars())
    assert actions == {"orphan_payment", "orphan_payment_refunded"}
    assert_ledger_balanced(db)


def test_late_payment_without_gateway_is_flagged(db, gateway, sink, caplog):
    fan, _, pair = _unknown_outcome_subscription(db, gateway, sink)
    cancel(db, sink, pair.subscription_id, immediate=True, actor_id=fan.id, now=T0 + days(1))
    db.commit()

    with caplog.at_level(logging.CRITICAL, logger="creatorpay.services.settlement"):
        ingest_webhook_event(db, sink, payment_event("evt_late", "pay_77", "COMPLETED", reference_id=pair.charge_key), now=T0 + days(1))
    db.commit()

    assert any(r.levelno == logging.CRITICAL and "pay_77" in r.getMessage() for r in caplog.records)
    audit_row = db.execute(sa.select(AuditLog).where(AuditLog.action == "orphan_payment")).scalars().one()
    assert audit_row.entity_id == str(pair.id)
    assert gateway.refund_calls == []
    assert ledger.get_balance(db, fan.id) == -1000


def test_resubscribe_after_canceling_unknown_first_charge_refunds_it(db, gateway, sink):
    fan, creator, pair = _unknown_outcome_subscription(db, gateway, sink)
    old = db.get(Subscription, pair.subscription_id)
    cancel(db, sink, old.id, immediate=True, actor_id=fan.id, now=T0 + days(1))
    db.commit()

    outcome = subscribe(
        db, gateway, sink, subscriber_id=fan.id, creator_id=creator.id,
        payment_source_token="cnon:new-card", now=T0 + days(1),
    )
    db.commit()

    assert pair.status == "COMPLETED"
    assert old.status == "CANCELED"
    assert outcome.subscription.id != old.id and outcome.subscription.status == "ACTIVE"
    assert [r.external_payment_id for r in gateway.refund_calls] == [pair.external_payment_ref]
    assert ledger.get_balance(db, fan.id) == -1000
    assert_ledger_balanced(db)
