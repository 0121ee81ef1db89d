import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from creatorpay.api.deps import get_current_account, get_gateway, get_notification_sink
from creatorpay.api.errors import http_error
from creatorpay.core.errors import BillingError, GatewayDeclined, GatewayTransient, InconsistentLedger
from creatorpay.db.session import get_db
from creatorpay.schemas.billing import CustomerOut, TipCreateIn, TipOut, WebhookEventOut
from creatorpay.services.gateway import ensure_customer, verify_webhook_signature
from creatorpay.services.purchases import send_tip
from creatorpay.services.reconciliation import ingest_webhook_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/customer", response_model=CustomerOut)
def create_customer(
    current=Depends(get_current_account),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
):
    try:
        customer_id = ensure_customer(db, gateway, current)
    except BillingError as exc:
        db.rollback()
        raise http_error(exc)
    return CustomerOut(external_customer_id=customer_id)


@router.post("/tips", response_model=TipOut, status_code=201)
def create_tip(
    payload: TipCreateIn,
    response: Response,
    current=Depends(get_current_account),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    sink=Depends(get_notification_sink),
):
    try:
        outcome = send_tip(
            db,
            gateway,
            sink,
            sender_id=current.id,
            receiver_id=payload.receiver_id,
            amount_minor=payload.amount,
            payment_source_token=payload.payment_source_token,
            message=payload.message,
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
    pair = outcome.pair
    return TipOut(
        pair_id=pair.id,
        status=pair.status,
        external_payment_ref=pair.external_payment_ref,
        amount=pair.gross_minor,
        platform_fee=pair.platform_fee_minor,
    )


@router.post("/webhook", response_model=WebhookEventOut)
async def webhook_ingest(
    request: Request,
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    sink=Depends(get_notification_sink),
):
    raw = await request.body()
    if not verify_webhook_signature(request.headers, raw):
        raise HTTPException(401, "Firma de webhook invalida")

    try:
        payload = await request.json()
    except Exception:
        raise HTTPException(400, "Payload JSON invalido")

    if not isinstance(payload, dict):
        raise HTTPException(400, "Payload JSON invalido")

    try:
        out = ingest_webhook_event(db, sink, payload, gateway=gateway)
        db.commit()
        return WebhookEventOut(**{k: v for k, v in out.items() if k != "outcome"})
    except ValueError as exc:
        db.rollback()
        raise HTTPException(400, str(exc))
    except InconsistentLedger as exc:
        db.rollback()
        raise http_error(exc)
