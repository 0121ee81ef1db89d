from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from creatorpay.core.security import now_utc
from creatorpay.db.base import Base
from creatorpay.db.types import UTCDateTime


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    account_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    kind: Mapped[str] = mapped_column(sa.Text, nullable=False)
    payload: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    delivery: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="deferred")
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)
    read_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        sa.CheckConstraint("delivery IN ('realtime','deferred')", name="ck_notifications_delivery"),
        sa.Index("ix_notifications_account_created", "account_id", "created_at"),
    )


class Presence(Base):
    __tablename__ = "presence"

    account_id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, sa.ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True)
    last_seen_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        sa.Index("ix_presence_expires", "expires_at"),
    )
