from datetime import timedelta

from creatorpay.core.config import settings
from creatorpay.core.logging import configure_logging
from creatorpay.core.security import now_utc
from creatorpay.db.session import SessionLocal
from creatorpay.services.gateway import get_payment_gateway
from creatorpay.services.notifications import DatabaseNotificationSink
from creatorpay.services.presence import purge_expired
from creatorpay.services.reconciliation import expire_stale_pending_charges


def main():
    configure_logging()
    db = SessionLocal()
    try:
        now = now_utc()
        result = expire_stale_pending_charges(
            db,
            get_payment_gateway(),
            DatabaseNotificationSink(db),
            older_than=now - timedelta(hours=settings.BILLING_PENDING_CHARGE_TTL_HOURS),
            limit=500,
            now=now,
        )
        purged = purge_expired(db, now=now)
        db.commit()
        print(
            "ok: reconciliacion billing completada "
            f"(scanned={result['scanned']}, completed={result['completed']}, expired={result['expired']}, "
            f"unresolved={result['unresolved']}, presence_purged={purged})"
        )
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
