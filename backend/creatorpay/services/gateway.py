from __future__ import annotations

import base64
from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
import socket
import time
from typing import Callable, Protocol, TypeVar
from urllib import error as urlerror
from urllib import request as urlrequest

from sqlalchemy.orm import Session

from creatorpay.core.config import settings
from creatorpay.core.errors import (
    GatewayConfigurationError,
    GatewayDeclined,
    GatewayError,
    GatewayTransient,
)
from creatorpay.models.account import Account
from creatorpay.services.money import Money

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHARGE_COMPLETED = "COMPLETED"
CHARGE_PENDING = "PENDING"
CHARGE_FAILED = "FAILED"

# Processor-side lengths: idempotency_key <= 45, reference_id <= 40.
_KEY_DIGEST_LEN = 36


@dataclass(frozen=True)
class ChargeRequest:
    customer_id: str
    source_ref: str
    amount: Money
    idempotency_key: str
    note: str
    app_fee: Money | None = None


@dataclass(frozen=True)
class ChargeResult:
    external_payment_id: str
    status: str


@dataclass(frozen=True)
class RefundRequest:
    external_payment_id: str
    amount: Money
    reason: str
    idempotency_key: str


@dataclass(frozen=True)
class RefundResult:
    external_refund_id: str
    status: str


class PaymentGateway(Protocol):
    provider_code: str

    def create_customer(self, account: Account, idempotency_key: str) -> str:
        ...

    def store_payment_method(self, customer_id: str, source_token: str, idempotency_key: str) -> str:
        ...

    def charge(self, request: ChargeRequest) -> ChargeResult:
        ...

    def refund(self, request: RefundRequest) -> RefundResult:
        ...


def derive_idempotency_key(kind: str, subject_id, counterpart_id, period) -> str:
    """Deterministic key for one logical processor operation.

    The same (kind, subject, counterpart, period) always maps to the same key,
    so network retries and racing workers collapse into a single charge.
    """
    raw = "|".join([kind, str(subject_id), str(counterpart_id), str(period)])
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:_KEY_DIGEST_LEN]
    return f"{kind[:3]}_{digest}"


def with_retries(
    fn: Callable[[], T],
    *,
    attempts: int | None = None,
    backoff_seconds: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    max_attempts = max(1, int(attempts if attempts is not None else settings.BILLING_GATEWAY_MAX_ATTEMPTS))
    backoff = float(backoff_seconds if backoff_seconds is not None else settings.BILLING_GATEWAY_BACKOFF_SECONDS)
    for attempt in range(1, max_attempts + 1):
        try:
            return fn()
        except GatewayTransient as exc:
            if attempt >= max_attempts:
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.info("gateway transient failure (attempt %s/%s), retrying in %.2fs: %s", attempt, max_attempts, delay, exc)
            sleep(delay)
    raise AssertionError("unreachable")


def normalize_payment_status(raw: str | None) -> str:
    value = (raw or "").strip().upper()
    if value == "COMPLETED":
        return CHARGE_COMPLETED
    if value in {"FAILED", "CANCELED"}:
        return CHARGE_FAILED
    return CHARGE_PENDING


def normalize_refund_status(raw: str | None) -> str:
    value = (raw or "").strip().upper()
    if value == "COMPLETED":
        return CHARGE_COMPLETED
    if value in {"FAILED", "REJECTED"}:
        return CHARGE_FAILED
    return CHARGE_PENDING


_DECLINE_CATEGORIES = {"PAYMENT_METHOD_ERROR", "REFUND_ERROR"}
_TRANSIENT_CATEGORIES = {"API_ERROR", "RATE_LIMIT_ERROR"}
_DECLINE_CODES = {
    "CARD_DECLINED",
    "CARD_EXPIRED",
    "CVV_FAILURE",
    "ADDRESS_VERIFICATION_FAILURE",
    "INVALID_CARD",
    "INVALID_CARD_DATA",
    "INVALID_EXPIRATION",
    "INSUFFICIENT_FUNDS",
    "GENERIC_DECLINE",
    "CARD_NOT_SUPPORTED",
    "CARD_TOKEN_EXPIRED",
    "CARD_TOKEN_USED",
    "TRANSACTION_LIMIT",
}


def classify_http_error(status_code: int, body: dict | None) -> GatewayError:
    errors = body.get("errors") if isinstance(body, dict) else None
    first = errors[0] if isinstance(errors, list) and errors and isinstance(errors[0], dict) else {}
    category = str(first.get("category") or "").upper()
    code = str(first.get("code") or "").upper() or None
    detail = f"processor http {status_code} {category or '-'} {code or '-'}: {first.get('detail') or ''}".strip()

    if status_code in (401, 403) or category == "AUTHENTICATION_ERROR":
        return GatewayConfigurationError(detail, code=code)
    if status_code == 429 or status_code >= 500 or category in _TRANSIENT_CATEGORIES:
        return GatewayTransient(detail, code=code)
    if status_code == 402 or category in _DECLINE_CATEGORIES or code in _DECLINE_CODES:
        return GatewayDeclined(detail, code=code)
    return GatewayConfigurationError(detail, code=code)


def _money_json(money: Money) -> dict:
    return {"amount": money.minor_units, "currency": money.currency}


def _http_json_post(url: str, payload: dict, *, headers: dict[str, str], timeout: float) -> dict:
    req_headers = {"Content-Type": "application/json", "Accept": "application/json"}
    req_headers.update(headers)
    body = json.dumps(payload).encode("utf-8")
    req = urlrequest.Request(url=url, method="POST", data=body, headers=req_headers)
    try:
        with urlrequest.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8")
    except urlerror.HTTPError as exc:
        raw_err = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
        try:
            parsed = json.loads(raw_err) if raw_err else {}
        except json.JSONDecodeError:
            parsed = {}
        raise classify_http_error(exc.code, parsed) from exc
    except (urlerror.URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
        raise GatewayTransient(f"processor unreachable: {exc}") from exc
    try:
        return json.loads(raw) if raw else {}
    except json.JSONDecodeError as exc:
        raise GatewayTransient("processor returned invalid JSON") from exc


class SquarePaymentGateway:
    provider_code = "square"

    def __init__(
        self,
        *,
        access_token: str | None = None,
        location_id: str | None = None,
        environment: str | None = None,
        timeout_seconds: float | None = None,
    ):
        self.access_token = access_token or settings.SQUARE_ACCESS_TOKEN
        self.location_id = location_id or settings.SQUARE_LOCATION_ID
        env = (environment or settings.SQUARE_ENVIRONMENT or "sandbox").strip().lower()
        self.base_url = settings.SQUARE_BASE_URL_PROD if env == "production" else settings.SQUARE_BASE_URL_SANDBOX
        self.timeout_seconds = float(timeout_seconds or settings.BILLING_GATEWAY_TIMEOUT_SECONDS)

    def _post(self, path: str, payload: dict) -> dict:
        if not self.access_token or not self.location_id:
            raise GatewayConfigurationError("Configura SQUARE_ACCESS_TOKEN y SQUARE_LOCATION_ID")
        return _http_json_post(
            f"{self.base_url}{path}",
            payload,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Square-Version": settings.SQUARE_API_VERSION,
            },
            timeout=self.timeout_seconds,
        )

    def create_customer(self, account: Account, idempotency_key: str) -> str:
        names = (account.full_name or account.username or "").split(" ")
        response = self._post(
            "/v2/customers",
            {
                "idempotency_key": idempotency_key,
                "given_name": names[0] if names else account.username,
                "family_name": " ".join(names[1:]),
                "email_address": account.email,
                "reference_id": str(account.id),
            },
        )
        customer = response.get("customer") if isinstance(response.get("customer"), dict) else {}
        customer_id = str(customer.get("id") or "").strip()
        if not customer_id:
            raise GatewayTransient("processor did not return a customer id")
        return customer_id

    def store_payment_method(self, customer_id: str, source_token: str, idempotency_key: str) -> str:
        response = self._post(
            "/v2/cards",
            {
                "idempotency_key": idempotency_key,
                "source_id": source_token,
                "card": {"customer_id": customer_id},
            },
        )
        card = response.get("card") if isinstance(response.get("card"), dict) else {}
        card_id = str(card.get("id") or "").strip()
        if not card_id:
            raise GatewayTransient("processor did not return a card id")
        return card_id

    def charge(self, request: ChargeRequest) -> ChargeResult:
        payload = {
            "idempotency_key": request.idempotency_key,
            "source_id": request.source_ref,
            "customer_id": request.customer_id,
            "location_id": self.location_id,
            "amount_money": _money_json(request.amount),
            "reference_id": request.idempotency_key,
            "note": request.note[:500],
            "autocomplete": True,
        }
        if request.app_fee is not None and request.app_fee.minor_units:
            payload["app_fee_money"] = _money_json(request.app_fee)
        response = self._post("/v2/payments", payload)
        payment = response.get("payment") if isinstance(response.get("payment"), dict) else {}
        payment_id = str(payment.get("id") or "").strip()
        if not payment_id:
            raise GatewayTransient("processor did not return a payment id")
        return ChargeResult(external_payment_id=payment_id, status=normalize_payment_status(payment.get("status")))

    def refund(self, request: RefundRequest) -> RefundResult:
        response = self._post(
            "/v2/refunds",
            {
                "idempotency_key": request.idempotency_key,
                "payment_id": request.external_payment_id,
                "amount_money": _money_json(request.amount),
                "reason": request.reason[:192],
            },
        )
        refund = response.get("refund") if isinstance(response.get("refund"), dict) else {}
        refund_id = str(refund.get("id") or "").strip()
        if not refund_id:
            raise GatewayTransient("processor did not return a refund id")
        return RefundResult(external_refund_id=refund_id, status=normalize_refund_status(refund.get("status")))


class NoopPaymentGateway:
    provider_code = "none"

    def _fail(self):
        raise GatewayConfigurationError("No hay proveedor de pagos configurado (BILLING_PROVIDER=none)")

    def create_customer(self, account: Account, idempotency_key: str) -> str:
        self._fail()

    def store_payment_method(self, customer_id: str, source_token: str, idempotency_key: str) -> str:
        self._fail()

    def charge(self, request: ChargeRequest) -> ChargeResult:
        self._fail()

    def refund(self, request: RefundRequest) -> RefundResult:
        self._fail()


def get_payment_gateway() -> PaymentGateway:
    code = (settings.BILLING_PROVIDER or "none").strip().lower()
    if code == "square":
        return SquarePaymentGateway()
    return NoopPaymentGateway()


def ensure_customer(db: Session, gateway: PaymentGateway, account: Account) -> str:
    """Return the account's processor customer id, creating it remotely once.

    The id is committed before returning: if the caller's transaction later
    rolls back, the local row still points at the remote customer.
    """
    if account.external_customer_id:
        return account.external_customer_id

    key = derive_idempotency_key("customer", account.id, gateway.provider_code, 0)
    customer_id = with_retries(lambda: gateway.create_customer(account, key))

    locked = db.get(Account, account.id, with_for_update=True)
    if locked is None:
        raise GatewayConfigurationError(f"account {account.id} disappeared while creating customer")
    if locked.external_customer_id:
        # Another request won the race; the idempotency key made both calls return the same customer.
        db.commit()
        return locked.external_customer_id
    locked.external_customer_id = customer_id
    db.commit()
    logger.info("processor customer created account=%s customer=%s", account.id, customer_id)
    return customer_id


def verify_webhook_signature(headers, raw_body: bytes) -> bool:
    """Processor webhook check: base64(HMAC-SHA256(key, notification_url + body))."""
    key = settings.BILLING_WEBHOOK_SIGNATURE_KEY
    if not key:
        logger.critical("webhook rejected: BILLING_WEBHOOK_SIGNATURE_KEY is not configured")
        return False
    signature = headers.get("x-square-hmacsha256-signature")
    if not signature:
        return False
    payload = settings.BILLING_WEBHOOK_NOTIFICATION_URL.encode("utf-8") + raw_body
    expected = base64.b64encode(hmac.new(key.encode("utf-8"), payload, hashlib.sha256).digest()).decode("ascii")
    return hmac.compare_digest(expected, signature.strip())
