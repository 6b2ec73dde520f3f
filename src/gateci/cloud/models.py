from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class Run(Base):
    """One invocation of a pipeline: the expanded plan is identified by its fingerprint."""
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    pipeline: Mapped[str] = mapped_column(sa.Text, nullable=False)
    parameters: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    fingerprint: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    plan_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=now_utc, nullable=False)


class JobOutcome(Base):
    """A reported job result. Replayed in ``seq`` order to rebuild the run state."""
    __tablename__ = "job_outcomes"
    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=new_id)
    run_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    seq: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    job_key: Mapped[str] = mapped_column(sa.Text, nullable=False)  # Stage/Job
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)  # ok|failed
    details: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=now_utc, nullable=False)

    __table_args__ = (sa.UniqueConstraint("run_id", "job_key", name="uq_job_outcomes_run_job"),)
