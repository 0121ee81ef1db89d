from uuid import UUID

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from creatorpay.core.security import decode_token
from creatorpay.db.session import get_db
from creatorpay.models.account import Account
from creatorpay.services.gateway import PaymentGateway, get_payment_gateway
from creatorpay.services.notifications import DatabaseNotificationSink, NotificationSink

bearer = HTTPBearer()


def _get_account_from_access_token(creds: HTTPAuthorizationCredentials, db: Session) -> Account:
    try:
        payload = decode_token(creds.credentials)
    except Exception:
        raise HTTPException(status_code=401, detail="Token invalido")
    if payload.get("type", "access") != "access":
        raise HTTPException(status_code=401, detail="Tipo de token invalido")
    account_id = payload.get("sub")
    try:
        account = db.get(Account, UUID(str(account_id)))
    except ValueError:
        account = None
    if not account:
        raise HTTPException(status_code=401, detail="Usuario no encontrado")
    return account


def get_current_account(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
    db: Session = Depends(get_db),
) -> Account:
    account = _get_account_from_access_token(creds, db)
    if account.status != "active":
        raise HTTPException(status_code=403, detail="Usuario bloqueado")
    return account


def get_gateway() -> PaymentGateway:
    return get_payment_gateway()


def get_notification_sink(db: Session = Depends(get_db)) -> NotificationSink:
    return DatabaseNotificationSink(db)
