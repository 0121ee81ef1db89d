from creatorpay.models.account import Account
from creatorpay.models.audit_log import AuditLog
from creatorpay.models.billing import (
    BillingWebhookEvent,
    CreatorTier,
    LedgerPair,
    PostOffer,
    Purchase,
    Refund,
    Subscription,
    WalletTransaction,
)
from creatorpay.models.notification import Notification, Presence
from creatorpay.models.scheduled_job import ScheduledJobRun
