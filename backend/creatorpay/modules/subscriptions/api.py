from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from creatorpay.api.deps import get_current_account, get_gateway, get_notification_sink
from creatorpay.api.errors import http_error
from creatorpay.core.errors import BillingError, GatewayDeclined, GatewayTransient, PaymentInProgress
from creatorpay.db.session import get_db
from creatorpay.models.billing import Subscription
from creatorpay.schemas.billing import (
    SubscriptionCreateIn,
    SubscriptionFilter,
    SubscriptionListOut,
    SubscriptionOut,
)
from creatorpay.services.subscription_state import has_access
from creatorpay.services.subscriptions import (
    cancel,
    list_subscribers,
    list_subscriptions,
    subscribe,
)

router = APIRouter()


def _out(sub: Subscription) -> SubscriptionOut:
    return SubscriptionOut.model_validate(sub).model_copy(update={"has_access": has_access(sub)})


@router.post("", response_model=SubscriptionOut, status_code=201)
def create_subscription(
    payload: SubscriptionCreateIn,
    response: Response,
    current=Depends(get_current_account),
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    sink=Depends(get_notification_sink),
):
    try:
        outcome = subscribe(
            db,
            gateway,
            sink,
            subscriber_id=current.id,
            creator_id=payload.creator_id,
            payment_source_token=payload.payment_source_token,
        )
    except (GatewayDeclined, GatewayTransient, PaymentInProgress) as exc:
        # Keep whatever pending state the attempt recorded.
        db.commit()
        raise http_error(exc)
    except BillingError as exc:
        db.rollback()
        raise http_error(exc)
    db.commit()
    if outcome.pending:
        response.status_code = 202
    return _out(outcome.subscription)


@router.get("", response_model=SubscriptionListOut)
def my_subscriptions(
    status: SubscriptionFilter = Query(default="ALL"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current=Depends(get_current_account),
    db: Session = Depends(get_db),
):
    rows, total = list_subscriptions(db, current.id, status=status, page=page, limit=limit)
    return SubscriptionListOut(items=[_out(s) for s in rows], page=page, limit=limit, total=total)


@router.get("/subscribers", response_model=SubscriptionListOut)
def my_subscribers(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current=Depends(get_current_account),
    db: Session = Depends(get_db),
):
    rows, total = list_subscribers(db, current.id, page=page, limit=limit)
    return SubscriptionListOut(items=[_out(s) for s in rows], page=page, limit=limit, total=total)


@router.delete("/{subscription_id}", response_model=SubscriptionOut)
def cancel_subscription(
    subscription_id: str,
    immediate: bool = Query(default=False),
    current=Depends(get_current_account),
    db: Session = Depends(get_db),
    sink=Depends(get_notification_sink),
):
    try:
        sub_uuid = UUID(subscription_id)
    except ValueError:
        raise HTTPException(404, "Suscripcion no encontrada")
    try:
        sub = cancel(
            db,
            sink,
            sub_uuid,
            immediate=immediate,
            actor_id=current.id,
            actor_is_admin=current.role == "admin",
        )
    except BillingError as exc:
        db.rollback()
        raise http_error(exc)
    db.commit()
    return _out(sub)
