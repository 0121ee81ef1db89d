from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from creatorpay.core.security import now_utc
from creatorpay.db.base import Base
from creatorpay.db.types import UTCDateTime


class ScheduledJobRun(Base):
    __tablename__ = "scheduled_job_runs"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    slot: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, server_default="running")
    detail: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    started_at: Mapped[sa.DateTime] = mapped_column(UTCDateTime, nullable=False, default=now_utc)
    finished_at: Mapped[sa.DateTime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        sa.CheckConstraint("status IN ('running','succeeded','failed')", name="ck_scheduled_job_runs_status"),
        sa.UniqueConstraint("job_name", "slot", name="uq_scheduled_job_runs_job_slot"),
        sa.Index("ix_scheduled_job_runs_job_started", "job_name", "started_at"),
    )
