from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class RunRow(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    resource_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    env_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    remediations_json: Mapped[list] = mapped_column(sa.JSON, nullable=False, default=list)
    config_path: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    error: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[str] = mapped_column(sa.Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(sa.Text, nullable=False)


class StepRecordRow(Base):
    __tablename__ = "step_records"
    run_id: Mapped[str] = mapped_column(sa.Text, sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    step_id: Mapped[str] = mapped_column(sa.Text, primary_key=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    failure_kind: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    started_at: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    finished_at: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    output_ref: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    detail: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    marker: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    needs_confirmation: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)


class LeaseRow(Base):
    __tablename__ = "leases"
    run_id: Mapped[str] = mapped_column(sa.Text, sa.ForeignKey("runs.id", ondelete="CASCADE"), primary_key=True)
    owner: Mapped[str] = mapped_column(sa.Text, nullable=False)
    leased_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
