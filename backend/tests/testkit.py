from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from jose import jwt
import sqlalchemy as sa

from creatorpay.core.config import settings
from creatorpay.core.security import ALGO
from creatorpay.models.account import Account
from creatorpay.models.billing import CreatorTier, LedgerPair, PostOffer
from creatorpay.services import ledger
from creatorpay.services.gateway import ChargeRequest, ChargeResult, RefundRequest, RefundResult

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def days(n: float) -> timedelta:
    return timedelta(days=n)


class FakeGateway:
    """Processor double with idempotency-key dedup and scripted outcomes.

    ``outcomes`` / ``refund_outcomes`` are consumed one per *new* key; an item
    is a status string or an exception instance to raise. Exceptions are not
    remembered, so a retry with the same key draws the next item.
    """

    provider_code = "fake"

    def __init__(self):
        self.outcomes: list = []
        self.refund_outcomes: list = []
        self.charge_calls: list[ChargeRequest] = []
        self.refund_calls: list[RefundRequest] = []
        self.payments: dict[str, ChargeResult] = {}
        self.refunds: dict[str, RefundResult] = {}
        self.customers: dict[str, str] = {}
        self.cards: dict[str, str] = {}
        self.customer_errors: list = []

    def create_customer(self, account, idempotency_key: str) -> str:
        if self.customer_errors:
            raise self.customer_errors.pop(0)
        return self.customers.setdefault(idempotency_key, f"cust_{len(self.customers) + 1}")

    def store_payment_method(self, customer_id: str, source_token: str, idempotency_key: str) -> str:
        return self.cards.setdefault(idempotency_key, f"card_{len(self.cards) + 1}")

    def charge(self, request: ChargeRequest) -> ChargeResult:
        self.charge_calls.append(request)
        if request.idempotency_key in self.payments:
            return self.payments[request.idempotency_key]
        outcome = self.outcomes.pop(0) if self.outcomes else "COMPLETED"
        if isinstance(outcome, Exception):
            raise outcome
        result = ChargeResult(external_payment_id=f"pay_{len(self.payments) + 1}", status=outcome)
        self.payments[request.idempotency_key] = result
        return result

    def refund(self, request: RefundRequest) -> RefundResult:
        self.refund_calls.append(request)
        if request.idempotency_key in self.refunds:
            return self.refunds[request.idempotency_key]
        outcome = self.refund_outcomes.pop(0) if self.refund_outcomes else "COMPLETED"
        if isinstance(outcome, Exception):
            raise outcome
        result = RefundResult(external_refund_id=f"rf_{len(self.refunds) + 1}", status=outcome)
        self.refunds[request.idempotency_key] = result
        return result


@dataclass
class RecordingSink:
    sent: list[tuple] = field(default_factory=list)

    def notify(self, account_id, kind: str, payload: dict) -> None:
        self.sent.append((account_id, kind, payload))

    def kinds_for(self, account_id) -> list[str]:
        return [kind for acc, kind, _ in self.sent if acc == account_id]


def make_account(db, prefix: str = "user", *, role: str = "user", status: str = "active") -> Account:
    account = Account(
        username=f"{prefix}_{uuid4().hex[:8]}",
        email=f"{prefix}@example.com",
        full_name=f"{prefix.title()} Tester",
        role=role,
        status=status,
    )
    db.add(account)
    db.commit()
    return account


def make_creator(db, prefix: str = "creator", *, price_minor: int = 1000) -> Account:
    creator = make_account(db, prefix, role="creator")
    db.add(CreatorTier(creator_id=creator.id, price_minor=price_minor, currency="USD"))
    db.commit()
    return creator


def make_offer(db, creator: Account, *, price_minor: int = 500, title: str = "Premium post") -> PostOffer:
    offer = PostOffer(post_id=uuid4(), creator_id=creator.id, title=title, price_minor=price_minor)
    db.add(offer)
    db.commit()
    return offer


def token_for(account: Account) -> str:
    return jwt.encode({"sub": str(account.id), "type": "access"}, settings.JWT_SECRET, algorithm=ALGO)


def auth(account: Account) -> dict[str, str]:
    return {"Authorization": f"Bearer {token_for(account)}"}


def payment_event(event_id: str, payment_id: str, status: str, *, reference_id: str | None = None, event_type: str = "payment.updated") -> dict:
    payment = {"id": payment_id, "status": status}
    if reference_id:
        payment["reference_id"] = reference_id
    return {"event_id": event_id, "type": event_type, "data": {"type": "payment", "id": payment_id, "object": {"payment": payment}}}


def refund_event(event_id: str, refund_id: str, status: str, *, payment_id: str, amount: int, event_type: str = "refund.updated") -> dict:
    refund = {"id": refund_id, "status": status, "payment_id": payment_id, "amount_money": {"amount": amount, "currency": "USD"}}
    return {"event_id": event_id, "type": event_type, "data": {"type": "refund", "id": refund_id, "object": {"refund": refund}}}


def assert_ledger_balanced(db) -> None:
    """Every completed charge nets to zero across payer, payee and platform fee."""
    completed = db.execute(sa.select(LedgerPair).where(LedgerPair.status == ledger.COMPLETED)).scalars().all()
    for pair in completed:
        assert pair.external_payment_ref, f"completed pair {pair.charge_key} has no payment id"
        assert ledger.sum_for_external_ref(db, pair.external_payment_ref) == 0, pair.charge_key
