from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.orm import Session

from creatorpay.api.deps import get_current_account, get_gateway, get_notification_sink
from creatorpay.api.errors import http_error
from creatorpay.core.errors import BillingError, GatewayDeclined, GatewayTransient
from creatorpay.db.session import get_db
from creatorpay.schemas.billing import PurchaseCreateIn, PurchaseOut, RefundCreateIn, RefundOut
from creatorpay.services.purchases import purchase_post, refund_purchase

router = APIRouter()


@router.post("", response_model=PurchaseOut, status_code=201)
def create_purchase(
    payload: PurchaseCreateIn,
    response: Response,
    current=Depends(get_current_account),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    sink=Depends(get_notification_sink),
):
    try:
        outcome = purchase_post(
            db,
            gateway,
            sink,
            buyer_id=current.id,
            post_id=payload.post_id,
            payment_source_token=payload.payment_source_token,
        )
    except (GatewayDeclined, GatewayTransient) as exc:
        db.commit()
        raise http_error(exc)
    except BillingError as exc:
        db.rollback()
        raise http_error(exc)
    db.commit()
    if outcome.pending:
        response.status_code = 202
    return PurchaseOut.model_validate(outcome.purchase)


@router.post("/{purchase_id}/refund", response_model=RefundOut, status_code=201)
def create_refund(
    purchase_id: str,
    payload: RefundCreateIn,
    current=Depends(get_current_account),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    sink=Depends(get_notification_sink),
):
    try:
        purchase_uuid = UUID(purchase_id)
    except ValueError:
        raise HTTPException(404, "Compra no encontrada")
    try:
        refund = refund_purchase(
            db,
            gateway,
            sink,
            purchase_uuid,
            actor_id=current.id,
            actor_is_admin=current.role == "admin",
            amount_minor=payload.amount,
            reason=payload.reason,
        )
    except BillingError as exc:
        db.rollback()
        raise http_error(exc)
    db.commit()
    return RefundOut.model_validate(refund)
