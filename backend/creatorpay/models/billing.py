from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from creatorpay.core.security import now_utc
from creatorpay.db.base import Base
from creatorpay.db.types import UTCDateTime

SUBSCRIPTION_STATUSES = ("PENDING", "ACTIVE", "PAST_DUE", "CANCELED")
PURCHASE_STATUSES = ("PENDING", "COMPLETED", "FAILED", "REFUNDED")
REFUND_STATUSES = ("PENDING", "COMPLETED", "FAILED")
LEDGER_STATUSES = ("PENDING", "COMPLETED", "FAILED")
LEDGER_PAIR_KINDS = ("SUBSCRIPTION", "CONTENT_PURCHASE", "TIP")
WALLET_TRANSACTION_TYPES = (
    "SUBSCRIPTION_PAYMENT",
    "SUBSCRIPTION_EARNING",
    "CONTENT_PURCHASE_PAYMENT",
    "CONTENT_PURCHASE_EARNING",
    "REFUND",
    "WITHDRAWAL",
    "DEPOSIT",
)
WEBHOOK_EVENT_STATUSES = ("received", "processed", "ignored", "error")


def _in(column: str, values: tuple[str, ...]) -> str:
    quoted = ",".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class CreatorTier(Base):
    __tablename__ = "creator_tiers"

    creator_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True)
    price_minor: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="USD")
    updated_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        sa.CheckConstraint("price_minor >= 0", name="ck_creator_tiers_price"),
    )


class PostOffer(Base):
    __tablename__ = "post_offers"

    post_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True)
    creator_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    price_minor: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)

    __table_args__ = (
        sa.CheckConstraint("price_minor >= 0", name="ck_post_offers_price"),
        sa.Index("ix_post_offers_creator", "creator_id"),
    )


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    subscriber_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    creator_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="PENDING")
    price_minor: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="USD")
    current_period_start: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False)
    current_period_end: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False)
    cancel_at_period_end: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    external_payment_ref: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    payment_method_ref: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    renewal_attempt: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    canceled_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)
    updated_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        sa.CheckConstraint(_in("status", SUBSCRIPTION_STATUSES), name="ck_subscriptions_status"),
        sa.CheckConstraint("current_period_end > current_period_start", name="ck_subscriptions_period"),
        sa.CheckConstraint("price_minor >= 0", name="ck_subscriptions_price"),
        sa.Index("ix_subscriptions_pair_status", "subscriber_id", "creator_id", "status"),
        sa.Index("ix_subscriptions_creator_status", "creator_id", "status"),
        sa.Index("ix_subscriptions_due", "status", "current_period_end"),
        sa.Index("ix_subscriptions_external_payment", "external_payment_ref"),
        sa.Index(
            "uq_subscriptions_pair_open",
            "subscriber_id",
            "creator_id",
            unique=True,
            postgresql_where=sa.text("status IN ('PENDING','ACTIVE')"),
            sqlite_where=sa.text("status IN ('PENDING','ACTIVE')"),
        ),
    )


class Purchase(Base):
    __tablename__ = "purchases"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    buyer_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    creator_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    post_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, nullable=False)
    amount_minor: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="USD")
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="PENDING")
    external_payment_ref: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)
    updated_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        sa.CheckConstraint(_in("status", PURCHASE_STATUSES), name="ck_purchases_status"),
        sa.CheckConstraint("amount_minor >= 0", name="ck_purchases_amount"),
        sa.Index("ix_purchases_buyer_post", "buyer_id", "post_id"),
        sa.Index("ix_purchases_external_payment", "external_payment_ref"),
    )


class Refund(Base):
    __tablename__ = "refunds"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    purchase_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("purchases.id", ondelete="CASCADE"), nullable=False)
    external_refund_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    external_payment_ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    amount_minor: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="PENDING")
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)
    updated_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        sa.CheckConstraint(_in("status", REFUND_STATUSES), name="ck_refunds_status"),
        sa.CheckConstraint("amount_minor > 0", name="ck_refunds_amount"),
        sa.UniqueConstraint("external_refund_id", name="uq_refunds_external_refund_id"),
    )


class LedgerPair(Base):
    __tablename__ = "ledger_pairs"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    charge_key: Mapped[str] = mapped_column(sa.Text, nullable=False)
    external_payment_ref: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    kind: Mapped[str] = mapped_column(sa.Text, nullable=False)
    gross_minor: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    platform_fee_minor: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="USD")
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="PENDING")
    subscription_id: Mapped[sa.Uuid | None] = mapped_column(sa.Uuid, sa.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True)
    purchase_id: Mapped[sa.Uuid | None] = mapped_column(sa.Uuid, sa.ForeignKey("purchases.id", ondelete="SET NULL"), nullable=True)
    # What the processor was asked to charge; replaying it under charge_key reads back the outcome.
    customer_ref: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    source_ref: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    charge_note: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    period_start: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    period_end: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)
    updated_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        sa.CheckConstraint(_in("status", LEDGER_STATUSES), name="ck_ledger_pairs_status"),
        sa.CheckConstraint(_in("kind", LEDGER_PAIR_KINDS), name="ck_ledger_pairs_kind"),
        sa.CheckConstraint("platform_fee_minor >= 0 AND platform_fee_minor <= gross_minor", name="ck_ledger_pairs_fee"),
        sa.UniqueConstraint("charge_key", name="uq_ledger_pairs_charge_key"),
        sa.UniqueConstraint("external_payment_ref", name="uq_ledger_pairs_external_payment_ref"),
        sa.Index("ix_ledger_pairs_status_created", "status", "created_at"),
    )


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    pair_id: Mapped[sa.Uuid | None] = mapped_column(sa.Uuid, sa.ForeignKey("ledger_pairs.id", ondelete="RESTRICT"), nullable=True)
    account_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("accounts.id", ondelete="RESTRICT"), nullable=False)
    amount_minor: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="USD")
    type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="PENDING")
    external_payment_ref: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    external_refund_ref: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    description: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)

    __table_args__ = (
        sa.CheckConstraint(_in("status", LEDGER_STATUSES), name="ck_wallet_transactions_status"),
        sa.CheckConstraint(_in("type", WALLET_TRANSACTION_TYPES), name="ck_wallet_transactions_type"),
        sa.UniqueConstraint("external_refund_ref", name="uq_wallet_transactions_refund_ref"),
        sa.Index("ix_wallet_transactions_account_status", "account_id", "status", "created_at"),
        sa.Index("ix_wallet_transactions_external_payment", "external_payment_ref"),
        sa.Index("ix_wallet_transactions_pair", "pair_id"),
    )


class BillingWebhookEvent(Base):
    __tablename__ = "billing_webhook_events"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    provider: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    event_type: Mapped[str] = mapped_column(sa.Text, nullable=False)
    payload: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="received")
    error_message: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    received_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)
    processed_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        sa.CheckConstraint(_in("status", WEBHOOK_EVENT_STATUSES), name="ck_billing_webhook_events_status"),
        sa.UniqueConstraint("provider", "event_id", name="uq_billing_webhook_events_provider_event_id"),
        sa.Index("ix_billing_webhook_events_status_received", "status", "received_at"),
    )
