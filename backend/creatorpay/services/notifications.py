from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from creatorpay.models.notification import Notification
from creatorpay.services.presence import is_online

logger = logging.getLogger(__name__)

SUBSCRIPTION_STARTED = "SUBSCRIPTION_STARTED"
NEW_SUBSCRIBER = "NEW_SUBSCRIBER"
SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
PAYMENT_FAILED = "PAYMENT_FAILED"
CONTENT_PURCHASED = "CONTENT_PURCHASED"
PURCHASE_REFUNDED = "PURCHASE_REFUNDED"
PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
TIP_RECEIVED = "TIP_RECEIVED"


class NotificationSink(Protocol):
    def notify(self, account_id, kind: str, payload: dict) -> None:
        ...


class DatabaseNotificationSink:
    """Stores notifications; the realtime transport picks up ``delivery='realtime'`` rows.

    Fire-and-forget: a failed write is logged and never breaks the billing
    operation that triggered it.
    """

    def __init__(self, db: Session):
        self.db = db

    def notify(self, account_id, kind: str, payload: dict) -> None:
        try:
            with self.db.begin_nested():
                delivery = "realtime" if is_online(self.db, account_id) else "deferred"
                self.db.add(Notification(account_id=account_id, kind=kind, payload=payload or {}, delivery=delivery))
                self.db.flush()
        except SQLAlchemyError:
            logger.exception("notification %s for account %s could not be stored", kind, account_id)
            return
        logger.debug("notification %s queued for %s (%s)", kind, account_id, delivery)
