from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from creatorpay.api.deps import get_current_account
from creatorpay.core.config import settings
from creatorpay.db.session import get_db
from creatorpay.schemas.billing import (
    WalletBalanceOut,
    WalletTransactionListOut,
    WalletTransactionOut,
    WalletTransactionType,
)
from creatorpay.services.ledger import get_balance, get_earnings, get_spend, list_transactions

router = APIRouter()


@router.get("/balance", response_model=WalletBalanceOut)
def wallet_balance(current=Depends(get_current_account), db: Session = Depends(get_db)):
    return WalletBalanceOut(
        balance=get_balance(db, current.id),
        total_earnings=get_earnings(db, current.id),
        total_spent=get_spend(db, current.id),
        currency=settings.BILLING_CURRENCY,
    )


@router.get("/transactions", response_model=WalletTransactionListOut)
def wallet_transactions(
    type: WalletTransactionType | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current=Depends(get_current_account),
    db: Session = Depends(get_db),
):
    rows, total = list_transactions(db, current.id, tx_type=type, page=page, limit=limit)
    return WalletTransactionListOut(
        items=[WalletTransactionOut.model_validate(r) for r in rows],
        page=page,
        limit=limit,
        total=total,
    )
