"""Wallet ledger: the only writer of ``wallet_transactions`` rows.

A charge is recorded as a ``LedgerPair`` header plus two wallet rows, a payer
debit and a payee credit. The platform fee lives on the header, so for every
pair ``payer.amount + payee.amount + pair.platform_fee_minor == 0``.
Balances are always derived from COMPLETED rows; nothing here caches them.
"""
from __future__ import annotations

from datetime import datetime
import logging

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from creatorpay.core.errors import InconsistentLedger
from creatorpay.models.billing import LedgerPair, WalletTransaction
from creatorpay.services.gateway import ChargeRequest
from creatorpay.services.money import FeeSplit, Money

logger = logging.getLogger(__name__)

PENDING = "PENDING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"
TERMINAL_STATUSES = {COMPLETED, FAILED}

PAIR_TYPES = {
    "SUBSCRIPTION": ("SUBSCRIPTION_PAYMENT", "SUBSCRIPTION_EARNING"),
    "CONTENT_PURCHASE": ("CONTENT_PURCHASE_PAYMENT", "CONTENT_PURCHASE_EARNING"),
    "TIP": ("WITHDRAWAL", "DEPOSIT"),
}
EARNING_TYPES = ("SUBSCRIPTION_EARNING", "CONTENT_PURCHASE_EARNING", "DEPOSIT")
SPEND_TYPES = ("SUBSCRIPTION_PAYMENT", "CONTENT_PURCHASE_PAYMENT", "WITHDRAWAL")


def find_pair(
    db: Session,
    *,
    external_ref: str | None = None,
    charge_key: str | None = None,
    lock: bool = False,
) -> LedgerPair | None:
    if not external_ref and not charge_key:
        return None
    stmt = sa.select(LedgerPair)
    if external_ref and charge_key:
        stmt = stmt.where(sa.or_(LedgerPair.external_payment_ref == external_ref, LedgerPair.charge_key == charge_key))
    elif external_ref:
        stmt = stmt.where(LedgerPair.external_payment_ref == external_ref)
    else:
        stmt = stmt.where(LedgerPair.charge_key == charge_key)
    if lock:
        stmt = stmt.with_for_update()
    return db.execute(stmt.order_by(LedgerPair.created_at.asc()).limit(1)).scalars().first()


def pair_rows(db: Session, pair: LedgerPair) -> list[WalletTransaction]:
    return list(
        db.execute(
            sa.select(WalletTransaction)
            .where(WalletTransaction.pair_id == pair.id)
            .order_by(WalletTransaction.amount_minor.asc())
        ).scalars()
    )


def record_pair(
    db: Session,
    *,
    payer_id,
    payee_id,
    split: FeeSplit,
    kind: str,
    charge_key: str,
    status: str = COMPLETED,
    external_ref: str | None = None,
    request: ChargeRequest | None = None,
    subscription_id=None,
    purchase_id=None,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    description: str | None = None,
) -> LedgerPair:
    """Write the debit/credit pair for one charge, or return the existing one.

    Idempotent on ``charge_key``: a second call with the same key never adds
    rows. Both wallet rows and the header go in one savepoint. ``request`` is
    kept on the header so the charge can be replayed under the same key.
    """
    if kind not in PAIR_TYPES:
        raise ValueError(f"tipo de movimiento invalido: {kind}")
    if status not in (PENDING, COMPLETED, FAILED):
        raise ValueError(f"estado de movimiento invalido: {status}")
    if request is not None and request.amount != split.gross:
        raise ValueError(f"cobro {request.amount} no coincide con el monto {split.gross}")

    existing = find_pair(db, charge_key=charge_key, lock=True)
    if existing is not None:
        logger.debug("ledger pair already recorded charge_key=%s pair=%s", charge_key, existing.id)
        if external_ref and not existing.external_payment_ref:
            attach_external_ref(db, existing, external_ref)
        return existing

    cur = split.currency
    payer_type, payee_type = PAIR_TYPES[kind]
    try:
        with db.begin_nested():
            pair = LedgerPair(
                charge_key=charge_key,
                external_payment_ref=external_ref,
                kind=kind,
                gross_minor=split.processor_amount,
                platform_fee_minor=split.platform_fee,
                currency=cur,
                status=status,
                subscription_id=subscription_id,
                purchase_id=purchase_id,
                customer_ref=request.customer_id if request else None,
                source_ref=request.source_ref if request else None,
                charge_note=request.note if request else None,
                period_start=period_start,
                period_end=period_end,
            )
            db.add(pair)
            db.flush()
            db.add_all(
                [
                    WalletTransaction(
                        pair_id=pair.id,
                        account_id=payer_id,
                        amount_minor=-split.processor_amount,
                        currency=cur,
                        type=payer_type,
                        status=status,
                        external_payment_ref=external_ref,
                        description=description,
                    ),
                    WalletTransaction(
                        pair_id=pair.id,
                        account_id=payee_id,
                        amount_minor=split.creator_net,
                        currency=cur,
                        type=payee_type,
                        status=status,
                        external_payment_ref=external_ref,
                        description=description,
                    ),
                ]
            )
            db.flush()
    except IntegrityError:
        # Lost a race on the unique charge key; the winner's pair is the record.
        existing = find_pair(db, charge_key=charge_key)
        if existing is None:
            raise
        return existing

    assert_balanced(db, pair)
    logger.info(
        "ledger pair recorded pair=%s kind=%s gross=%s fee=%s status=%s ref=%s",
        pair.id,
        kind,
        split.processor_amount,
        split.platform_fee,
        status,
        external_ref,
    )
    return pair


def assert_balanced(db: Session, pair: LedgerPair) -> None:
    rows = pair_rows(db, pair)
    problems: list[str] = []
    if len(rows) != 2:
        problems.append(f"expected 2 rows, found {len(rows)}")
    else:
        debit, credit = rows
        if debit.amount_minor >= 0 or credit.amount_minor < 0:
            problems.append("pair must hold one debit and one credit")
        if debit.amount_minor + credit.amount_minor + pair.platform_fee_minor != 0:
            problems.append(
                f"debit {debit.amount_minor} + credit {credit.amount_minor} + fee {pair.platform_fee_minor} != 0"
            )
        if -debit.amount_minor != pair.gross_minor:
            problems.append("debit does not match gross amount")
        for row in rows:
            if row.status != pair.status:
                problems.append(f"row {row.id} status {row.status} != pair status {pair.status}")
            if row.external_payment_ref != pair.external_payment_ref:
                problems.append(f"row {row.id} external ref differs from pair")
    if problems:
        logger.critical("ledger inconsistency pair=%s: %s", pair.id, "; ".join(problems))
        raise InconsistentLedger(f"pair {pair.id}: {'; '.join(problems)}")


def attach_external_ref(db: Session, pair: LedgerPair, external_ref: str) -> LedgerPair:
    """Backfill the processor payment id on a pair recorded before it was known."""
    if pair.external_payment_ref == external_ref:
        return pair
    if pair.external_payment_ref:
        logger.critical(
            "ledger pair %s already linked to %s, refusing %s", pair.id, pair.external_payment_ref, external_ref
        )
        raise InconsistentLedger(f"pair {pair.id} already has external ref {pair.external_payment_ref}")
    pair.external_payment_ref = external_ref
    db.execute(
        sa.update(WalletTransaction)
        .where(WalletTransaction.pair_id == pair.id)
        .values(external_payment_ref=external_ref)
    )
    db.flush()
    return pair


def mark_pair_status(db: Session, pair: LedgerPair, status: str) -> bool:
    """Move a PENDING pair to a terminal status. Returns False if nothing changed.

    Terminal statuses are sticky: a pair already COMPLETED or FAILED is left
    as it is, whatever the requested status.
    """
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"estado terminal invalido: {status}")
    if pair.status != PENDING:
        if pair.status != status:
            logger.warning("ignoring %s for pair %s already %s", status, pair.id, pair.status)
        return False
    pair.status = status
    db.execute(
        sa.update(WalletTransaction)
        .where(WalletTransaction.pair_id == pair.id, WalletTransaction.status == PENDING)
        .values(status=status)
    )
    db.flush()
    assert_balanced(db, pair)
    return True


def mark_status(db: Session, external_ref: str, status: str) -> bool:
    pair = find_pair(db, external_ref=external_ref, lock=True)
    if pair is None:
        return False
    return mark_pair_status(db, pair, status)


def find_refund_row(db: Session, external_refund_ref: str) -> WalletTransaction | None:
    return db.execute(
        sa.select(WalletTransaction).where(WalletTransaction.external_refund_ref == external_refund_ref)
    ).scalars().first()


def record_refund(
    db: Session,
    *,
    payer_id,
    amount: Money,
    external_payment_ref: str,
    external_refund_ref: str,
    status: str = PENDING,
    description: str | None = None,
) -> WalletTransaction:
    """Single reversing REFUND row crediting the original payer.

    Idempotent on ``external_refund_ref``.
    """
    if amount.minor_units <= 0:
        raise ValueError("el monto del reembolso debe ser positivo")
    existing = find_refund_row(db, external_refund_ref)
    if existing is not None:
        return existing
    row = WalletTransaction(
        pair_id=None,
        account_id=payer_id,
        amount_minor=amount.minor_units,
        currency=amount.currency,
        type="REFUND",
        status=status,
        external_payment_ref=external_payment_ref,
        external_refund_ref=external_refund_ref,
        description=description,
    )
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        existing = find_refund_row(db, external_refund_ref)
        if existing is None:
            raise
        return existing
    logger.info("refund row recorded refund=%s payment=%s amount=%s status=%s", external_refund_ref, external_payment_ref, amount.minor_units, status)
    return row


def mark_refund_status(db: Session, external_refund_ref: str, status: str) -> bool:
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"estado terminal invalido: {status}")
    result = db.execute(
        sa.update(WalletTransaction)
        .where(
            WalletTransaction.external_refund_ref == external_refund_ref,
            WalletTransaction.status == PENDING,
        )
        .values(status=status)
    )
    db.flush()
    return bool(result.rowcount)


def _sum(db: Session, *conditions) -> int:
    total = db.execute(
        sa.select(sa.func.coalesce(sa.func.sum(WalletTransaction.amount_minor), 0)).where(
            WalletTransaction.status == COMPLETED, *conditions
        )
    ).scalar_one()
    return int(total or 0)


def get_balance(db: Session, account_id) -> int:
    return _sum(db, WalletTransaction.account_id == account_id)


def get_earnings(db: Session, account_id, since: datetime | None = None) -> int:
    conditions = [WalletTransaction.account_id == account_id, WalletTransaction.type.in_(EARNING_TYPES)]
    if since is not None:
        conditions.append(WalletTransaction.created_at >= since)
    return _sum(db, *conditions)


def get_spend(db: Session, account_id, since: datetime | None = None) -> int:
    conditions = [WalletTransaction.account_id == account_id, WalletTransaction.type.in_(SPEND_TYPES)]
    if since is not None:
        conditions.append(WalletTransaction.created_at >= since)
    return -_sum(db, *conditions)


def sum_for_external_ref(db: Session, external_ref: str) -> int:
    """Completed charge rows for one processor payment plus the pair's fee."""
    pair = find_pair(db, external_ref=external_ref)
    if pair is None or pair.status != COMPLETED:
        return 0
    return _sum(db, WalletTransaction.pair_id == pair.id) + pair.platform_fee_minor


def list_transactions(
    db: Session,
    account_id,
    *,
    tx_type: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[WalletTransaction], int]:
    page = max(1, int(page))
    limit = max(1, min(100, int(limit)))
    conditions = [WalletTransaction.account_id == account_id]
    if tx_type:
        conditions.append(WalletTransaction.type == tx_type)
    total = db.execute(sa.select(sa.func.count()).select_from(WalletTransaction).where(*conditions)).scalar_one()
    rows = db.execute(
        sa.select(WalletTransaction)
        .where(*conditions)
        .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return list(rows), int(total)
