from fastapi import APIRouter
from creatorpay.modules.payments import api as payments
from creatorpay.modules.presence import api as presence
from creatorpay.modules.purchases import api as purchases
from creatorpay.modules.subscriptions import api as subscriptions
from creatorpay.modules.wallet import api as wallet

router = APIRouter()
router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])
router.include_router(wallet.router, prefix="/wallet", tags=["wallet"])
router.include_router(payments.router, prefix="/payments", tags=["payments"])
router.include_router(purchases.router, prefix="/purchases", tags=["purchases"])
router.include_router(presence.router, prefix="/presence", tags=["presence"])
