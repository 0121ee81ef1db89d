from __future__ import annotations

from uuid import uuid4

import pytest
import sqlalchemy as sa

from creatorpay.core.errors import (
    AlreadyPurchased,
    CreatorNotFound,
    GatewayDeclined,
    GatewayTransient,
    InvalidAmount,
    InvalidTransition,
    PostNotFound,
    PurchaseNotFound,
    SelfPurchase,
)
from creatorpay.models.billing import LedgerPair, Purchase, WalletTransaction
from creatorpay.services import ledger, notifications
from creatorpay.services.purchases import purchase_post, refund_purchase, send_tip
from tests.testkit import assert_ledger_balanced, make_account, make_creator, make_offer


def _buy(db, gateway, sink, buyer, offer, token="cnon:card-ok"):
    return purchase_post(db, gateway, sink, buyer_id=buyer.id, post_id=offer.post_id, payment_source_token=token)


def _bought(db, gateway, sink, price=500):
    creator = make_creator(db)
    buyer = make_account(db, "buyer")
    offer = make_offer(db, creator, price_minor=price)
    outcome = _buy(db, gateway, sink, buyer, offer)
    db.commit()
    return creator, buyer, offer, outcome.purchase


def test_purchase_charges_token_and_records_pair(db, gateway, sink):
    creator, buyer, offer, purchase = _bought(db, gateway, sink)

    assert purchase.status == "COMPLETED"
    assert purchase.external_payment_ref == "pay_1"
    assert gateway.charge_calls[0].source_ref == "cnon:card-ok"
    assert ledger.get_balance(db, buyer.id) == -500
    assert ledger.get_balance(db, creator.id) == 400
    types = {r.type for r in db.execute(sa.select(WalletTransaction)).scalars()}
    assert types == {"CONTENT_PURCHASE_PAYMENT", "CONTENT_PURCHASE_EARNING"}
    assert notifications.CONTENT_PURCHASED in sink.kinds_for(creator.id)
    assert_ledger_balanced(db)


def test_purchase_validations(db, gateway, sink):
    creator, buyer, offer, _ = _bought(db, gateway, sink)

    with pytest.raises(AlreadyPurchased):
        _buy(db, gateway, sink, buyer, offer)
    with pytest.raises(SelfPurchase):
        _buy(db, gateway, sink, creator, offer)
    with pytest.raises(PostNotFound):
        purchase_post(db, gateway, sink, buyer_id=buyer.id, post_id=uuid4(), payment_source_token="t")
    assert len(gateway.payments) == 1


def test_declined_purchase_can_be_retried(db, gateway, sink):
    creator, buyer = make_creator(db), make_account(db, "buyer")
    offer = make_offer(db, creator)
    gateway.outcomes = [GatewayDeclined("declined")]

    with pytest.raises(GatewayDeclined):
        _buy(db, gateway, sink, buyer, offer)
    db.commit()
    assert db.execute(sa.select(Purchase)).scalars().all() == []

    outcome = _buy(db, gateway, sink, buyer, offer, token="cnon:other-card")
    assert outcome.purchase.status == "COMPLETED"
    assert_ledger_balanced(db)


def test_transient_purchase_retry_reuses_key(db, gateway, sink):
    creator, buyer = make_creator(db), make_account(db, "buyer")
    offer = make_offer(db, creator)
    gateway.outcomes = [GatewayTransient("timeout")] * 3

    with pytest.raises(GatewayTransient):
        _buy(db, gateway, sink, buyer, offer)
    db.commit()
    pending = db.execute(sa.select(Purchase)).scalars().one()
    assert pending.status == "PENDING"

    outcome = _buy(db, gateway, sink, buyer, offer)
    db.commit()
    assert outcome.purchase.id == pending.id
    assert outcome.purchase.status == "COMPLETED"
    assert len({c.idempotency_key for c in gateway.charge_calls}) == 1
    assert db.execute(sa.select(sa.func.count()).select_from(LedgerPair)).scalar_one() == 1
    assert_ledger_balanced(db)


def test_full_refund_marks_purchase_refunded(db, gateway, sink):
    creator, buyer, _, purchase = _bought(db, gateway, sink)

    refund = refund_purchase(db, gateway, sink, purchase.id, actor_id=creator.id, reason="duplicate")
    db.commit()

    assert refund.amount_minor == 500
    assert purchase.status == "REFUNDED"
    row = db.execute(sa.select(WalletTransaction).where(WalletTransaction.type == "REFUND")).scalars().one()
    assert row.account_id == buyer.id
    assert row.amount_minor == 500
    assert row.status == "COMPLETED"
    assert row.external_payment_ref == purchase.external_payment_ref
    assert ledger.get_balance(db, buyer.id) == 0
    assert gateway.refund_calls[0].external_payment_id == "pay_1"
    assert notifications.PURCHASE_REFUNDED in sink.kinds_for(buyer.id)
    assert_ledger_balanced(db)


def test_partial_refunds_accumulate(db, gateway, sink):
    creator, buyer, _, purchase = _bought(db, gateway, sink)

    refund_purchase(db, gateway, sink, purchase.id, actor_id=creator.id, amount_minor=200)
    assert purchase.status == "COMPLETED"
    with pytest.raises(InvalidAmount):
        refund_purchase(db, gateway, sink, purchase.id, actor_id=creator.id, amount_minor=301)

    refund_purchase(db, gateway, sink, purchase.id, actor_id=creator.id)
    assert purchase.status == "REFUNDED"
    assert len({c.idempotency_key for c in gateway.refund_calls}) == 2
    assert ledger.get_balance(db, buyer.id) == 0

    with pytest.raises(InvalidTransition):
        refund_purchase(db, gateway, sink, purchase.id, actor_id=creator.id)
    assert_ledger_balanced(db)


def test_pending_refund_keeps_purchase_completed(db, gateway, sink):
    creator, buyer, _, purchase = _bought(db, gateway, sink)
    gateway.refund_outcomes = ["PENDING"]

    refund = refund_purchase(db, gateway, sink, purchase.id, actor_id=creator.id)
    assert refund.status == "PENDING"
    assert purchase.status == "COMPLETED"
    assert ledger.get_balance(db, buyer.id) == -500


def test_only_creator_or_admin_may_refund(db, gateway, sink):
    creator, buyer, _, purchase = _bought(db, gateway, sink)
    admin = make_account(db, "admin", role="admin")

    with pytest.raises(PurchaseNotFound):
        refund_purchase(db, gateway, sink, purchase.id, actor_id=buyer.id)
    refund_purchase(db, gateway, sink, purchase.id, actor_id=admin.id, actor_is_admin=True)
    assert purchase.status == "REFUNDED"


def test_tip_moves_money_with_fee(db, gateway, sink):
    sender, receiver = make_account(db, "fan"), make_creator(db)

    outcome = send_tip(
        db, gateway, sink, sender_id=sender.id, receiver_id=receiver.id, amount_minor=1000, payment_source_token="cnon:tip"
    )
    db.commit()

    assert outcome.pending is False
    assert outcome.pair.status == "COMPLETED"
    assert ledger.get_balance(db, sender.id) == -1000
    assert ledger.get_balance(db, receiver.id) == 800
    assert notifications.TIP_RECEIVED in sink.kinds_for(receiver.id)

    again = send_tip(
        db, gateway, sink, sender_id=sender.id, receiver_id=receiver.id, amount_minor=1000, payment_source_token="cnon:tip"
    )
    assert again.pair.id == outcome.pair.id
    assert len(gateway.payments) == 1
    assert_ledger_balanced(db)


def test_tip_validations(db, gateway, sink):
    sender, receiver = make_account(db, "fan"), make_creator(db)

    with pytest.raises(InvalidAmount):
        send_tip(db, gateway, sink, sender_id=sender.id, receiver_id=receiver.id, amount_minor=99, payment_source_token="t")
    with pytest.raises(InvalidAmount):
        send_tip(db, gateway, sink, sender_id=sender.id, receiver_id=sender.id, amount_minor=500, payment_source_token="t")
    with pytest.raises(CreatorNotFound):
        send_tip(db, gateway, sink, sender_id=sender.id, receiver_id=uuid4(), amount_minor=500, payment_source_token="t")
    assert gateway.charge_calls == []
