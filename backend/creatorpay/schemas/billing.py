from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


SubscriptionStatus = Literal["PENDING", "ACTIVE", "PAST_DUE", "CANCELED"]
SubscriptionFilter = Literal["ACTIVE", "EXPIRED", "PAST_DUE", "PENDING", "CANCELED", "ALL"]
PurchaseStatus = Literal["PENDING", "COMPLETED", "FAILED", "REFUNDED"]
LedgerStatus = Literal["PENDING", "COMPLETED", "FAILED"]
WalletTransactionType = Literal[
    "SUBSCRIPTION_PAYMENT",
    "SUBSCRIPTION_EARNING",
    "CONTENT_PURCHASE_PAYMENT",
    "CONTENT_PURCHASE_EARNING",
    "REFUND",
    "WITHDRAWAL",
    "DEPOSIT",
]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class SubscriptionCreateIn(CamelModel):
    creator_id: UUID
    payment_source_token: str = Field(..., min_length=1, max_length=255)


class SubscriptionOut(CamelModel):
    id: UUID
    subscriber_id: UUID
    creator_id: UUID
    status: SubscriptionStatus
    price_minor: int
    currency: str
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    canceled_at: datetime | None = None
    created_at: datetime
    has_access: bool = False


class SubscriptionListOut(CamelModel):
    items: list[SubscriptionOut]
    page: int
    limit: int
    total: int


class WalletBalanceOut(CamelModel):
    balance: int
    total_earnings: int
    total_spent: int
    currency: str


class WalletTransactionOut(CamelModel):
    id: UUID
    amount_minor: int
    currency: str
    type: WalletTransactionType
    status: LedgerStatus
    external_payment_ref: str | None = None
    external_refund_ref: str | None = None
    description: str | None = None
    created_at: datetime


class WalletTransactionListOut(CamelModel):
    items: list[WalletTransactionOut]
    page: int
    limit: int
    total: int


class CustomerOut(CamelModel):
    external_customer_id: str


class PurchaseCreateIn(CamelModel):
    post_id: UUID
    payment_source_token: str = Field(..., min_length=1, max_length=255)


class PurchaseOut(CamelModel):
    id: UUID
    buyer_id: UUID
    creator_id: UUID
    post_id: UUID
    amount_minor: int
    currency: str
    status: PurchaseStatus
    external_payment_ref: str | None = None
    created_at: datetime


class RefundCreateIn(CamelModel):
    amount: int | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=192)


class RefundOut(CamelModel):
    id: UUID
    purchase_id: UUID
    external_refund_id: str
    amount_minor: int
    status: LedgerStatus
    reason: str | None = None
    created_at: datetime


class TipCreateIn(CamelModel):
    receiver_id: UUID
    amount: int = Field(..., ge=100)
    payment_source_token: str = Field(..., min_length=1, max_length=255)
    message: str | None = Field(default=None, max_length=500)


class TipOut(CamelModel):
    pair_id: UUID
    status: LedgerStatus
    external_payment_ref: str | None = None
    amount: int
    platform_fee: int


class WebhookEventOut(CamelModel):
    ok: bool = True
    provider: str
    event_id: str
    duplicate: bool
    processed: bool
    status: Literal["received", "processed", "ignored", "error"]
