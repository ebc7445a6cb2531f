"""
Durable run state.

One `runs` row per Run (resource handle, scoped env, applied remediations)
plus one `step_records` row per (run_id, step_id). Every write is a single
transaction, so a concurrent `status` reader never sees half a save.

A `leases` row keeps a single orchestrator process driving a Run at a time.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

from ..errors import RunLocked, UnknownRun
from ..model import ResourceHandle, Run, RunStatus, StepRecord, utc_now_iso
from ..settings import LEASE_SECONDS, STATE_URL
from .db import make_engine, make_sessionmaker
from .models import Base, LeaseRow, RunRow, StepRecordRow

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def lease_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{threading.get_ident()}"


def _owner_alive(owner: str) -> bool:
    """Best effort: only a lease held by a dead pid on this host is known stale."""
    parts = owner.rsplit(":", 2)
    if len(parts) != 3 or parts[0] != socket.gethostname() or not parts[1].isdigit():
        return True
    try:
        os.kill(int(parts[1]), 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _record_row(run_id: str, record: StepRecord) -> StepRecordRow:
    return StepRecordRow(run_id=run_id, **record.to_dict())


def _row_record(row: StepRecordRow) -> StepRecord:
    return StepRecord.from_dict({
        "step_id": row.step_id,
        "status": row.status,
        "attempts": row.attempts,
        "failure_kind": row.failure_kind,
        "failure_reason": row.failure_reason,
        "started_at": row.started_at,
        "finished_at": row.finished_at,
        "output_ref": row.output_ref,
        "detail": row.detail,
        "marker": row.marker,
        "needs_confirmation": row.needs_confirmation,
    })


class StateStore:
    """SQLAlchemy-backed store for Runs, StepRecords and run leases."""

    def __init__(self, url: str = STATE_URL, *, lease_seconds: int = LEASE_SECONDS):
        self.url = url
        self.lease_seconds = lease_seconds
        self.engine = make_engine(url)
        Base.metadata.create_all(self.engine)
        self.Session = make_sessionmaker(self.engine)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def exists(self, run_id: str) -> bool:
        with self.Session() as s:
            return s.get(RunRow, run_id) is not None

    def create(self, run: Run) -> Run:
        with self.Session() as s:
            with s.begin():
                s.add(RunRow(
                    id=run.run_id,
                    status=run.status.value,
                    resource_json=run.handle.to_dict(),
                    env_json=dict(run.env),
                    remediations_json=list(run.remediations),
                    config_path=run.config_path,
                    error=run.error,
                    created_at=run.created_at,
                    updated_at=run.updated_at,
                ))
                for rec in run.records.values():
                    s.add(_record_row(run.run_id, rec))
        logger.debug("created run %s", run.run_id)
        return run

    def load(self, run_id: str) -> Run:
        """Rebuild the full Run (handle, env, every StepRecord)."""
        with self.Session() as s:
            row = s.get(RunRow, run_id)
            if row is None:
                raise UnknownRun(run_id)
            rec_rows = s.scalars(
                sa.select(StepRecordRow).where(StepRecordRow.run_id == run_id)
            ).all()
            return Run(
                run_id=row.id,
                status=RunStatus(row.status),
                handle=ResourceHandle.from_dict(row.resource_json or {}),
                records={r.step_id: _row_record(r) for r in rec_rows},
                env=dict(row.env_json or {}),
                remediations=list(row.remediations_json or []),
                config_path=row.config_path,
                error=row.error,
                created_at=row.created_at,
                updated_at=row.updated_at,
            )

    def save(self, run_id: str, record: StepRecord) -> None:
        """Upsert one StepRecord atomically."""
        with self.Session() as s:
            with s.begin():
                row = s.get(RunRow, run_id)
                if row is None:
                    raise UnknownRun(run_id)
                s.merge(_record_row(run_id, record))
                row.updated_at = utc_now_iso()

    def save_run(self, run: Run) -> None:
        """Persist the run row and every record in one transaction."""
        run.updated_at = utc_now_iso()
        with self.Session() as s:
            with s.begin():
                row = s.get(RunRow, run.run_id)
                if row is None:
                    raise UnknownRun(run.run_id)
                row.status = run.status.value
                row.resource_json = run.handle.to_dict()
                row.env_json = dict(run.env)
                row.remediations_json = list(run.remediations)
                row.config_path = run.config_path
                row.error = run.error
                row.updated_at = run.updated_at
                for rec in run.records.values():
                    s.merge(_record_row(run.run_id, rec))

    def list_runs(self) -> List[Run]:
        with self.Session() as s:
            ids = s.scalars(sa.select(RunRow.id).order_by(RunRow.created_at, RunRow.id)).all()
        return [self.load(run_id) for run_id in ids]

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------

    def acquire_lease(self, run_id: str, owner: Optional[str] = None) -> str:
        """
        Take (or renew) the lease on a Run.

        Raises RunLocked if another live owner holds an unexpired lease.
        """
        owner = owner or lease_owner()
        now = now_utc()
        expires_at = now + timedelta(seconds=self.lease_seconds)
        try:
            with self.Session() as s:
                with s.begin():
                    lease = s.get(LeaseRow, run_id)
                    if lease is None:
                        s.add(LeaseRow(run_id=run_id, owner=owner, leased_at=now, expires_at=expires_at))
                        return owner

                    held = lease.owner != owner and _as_utc(lease.expires_at) > now
                    if held and _owner_alive(lease.owner):
                        raise RunLocked(f"run {run_id} is being driven by {lease.owner}")
                    if held:
                        logger.warning("taking over stale lease on %s from %s", run_id, lease.owner)

                    lease.owner = owner
                    lease.leased_at = now
                    lease.expires_at = expires_at
        except IntegrityError as e:
            # another process inserted the lease between our read and write
            raise RunLocked(f"run {run_id} was leased concurrently") from e
        return owner

    def release_lease(self, run_id: str, owner: str) -> None:
        with self.Session() as s:
            with s.begin():
                lease = s.get(LeaseRow, run_id)
                if lease is not None and lease.owner == owner:
                    s.delete(lease)

    def lease_holder(self, run_id: str) -> Optional[str]:
        with self.Session() as s:
            lease = s.get(LeaseRow, run_id)
            if lease is None or _as_utc(lease.expires_at) <= now_utc():
                return None
            return lease.owner
