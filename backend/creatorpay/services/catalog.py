from __future__ import annotations

from sqlalchemy.orm import Session

from creatorpay.models.account import Account
from creatorpay.models.billing import CreatorTier, PostOffer


def get_creator(db: Session, creator_id) -> Account | None:
    account = db.get(Account, creator_id)
    if account is None or account.status != "active":
        return None
    return account


def get_creator_tier_price(db: Session, creator_id) -> int | None:
    """Subscription price in minor units, or None when the creator has no tier."""
    tier = db.get(CreatorTier, creator_id)
    return int(tier.price_minor) if tier is not None else None


def get_post_offer(db: Session, post_id) -> PostOffer | None:
    return db.get(PostOffer, post_id)
