from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from creatorpay.core.security import now_utc
from creatorpay.db.base import Base
from creatorpay.db.types import UTCDateTime


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    username: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    full_name: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    role: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="user")
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="active")
    # Processor customer id; written once by ensure_customer and never changed.
    external_customer_id: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)

    __table_args__ = (
        sa.CheckConstraint("status in ('active','blocked')", name="ck_accounts_status"),
        sa.CheckConstraint("role in ('user','creator','admin')", name="ck_accounts_role"),
        sa.UniqueConstraint("external_customer_id", name="uq_accounts_external_customer_id"),
    )
