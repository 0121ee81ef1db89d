from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal


@dataclass(frozen=True)
class Money:
    minor_units: int
    currency: str = "USD"

    def __post_init__(self):
        if not isinstance(self.minor_units, int) or isinstance(self.minor_units, bool):
            raise TypeError("minor_units debe ser entero")

    def __neg__(self) -> Money:
        return Money(-self.minor_units, self.currency)


@dataclass(frozen=True)
class FeeSplit:
    processor_amount: int
    platform_fee: int
    creator_net: int
    currency: str = "USD"

    @property
    def gross(self) -> Money:
        return Money(self.processor_amount, self.currency)

    @property
    def fee(self) -> Money:
        return Money(self.platform_fee, self.currency)

    @property
    def net(self) -> Money:
        return Money(self.creator_net, self.currency)


def _to_decimal(value) -> Decimal:
    if isinstance(value, float):
        # str() keeps the literal the caller wrote (12.5 -> "12.5"), not its binary approximation
        return Decimal(str(value))
    return Decimal(value)


def split(price: Money, fee_percent) -> FeeSplit:
    """Split a price into platform fee and creator net, in the price's currency.

    The fee is rounded half-up to a whole minor unit and the remainder goes to
    the creator, so ``platform_fee + creator_net == price`` always holds.
    """
    if not isinstance(price, Money):
        raise TypeError("price debe ser Money en unidades menores")
    if price.minor_units < 0:
        raise ValueError("price no puede ser negativo")
    pct = _to_decimal(fee_percent)
    if pct < 0 or pct > 100:
        raise ValueError("fee_percent fuera de rango (0-100)")

    amount = price.minor_units
    fee = int((Decimal(amount) * pct / Decimal(100)).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return FeeSplit(processor_amount=amount, platform_fee=fee, creator_net=amount - fee, currency=price.currency)
