"""Durable job table for the background queue."""

import copy
import itertools
import threading
from dataclasses import fields, replace
from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import JSON, Column, Float, Index, Integer, String, Text, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from product_gateway.models.data_models import JobStatus, QueueJob


Base = declarative_base()

_JOB_FIELDS = {f.name for f in fields(QueueJob)}


class JobRepository(Protocol):
    """Storage interface used by ``JobQueue``."""

    def insert(self, job: QueueJob) -> QueueJob:
        ...

    def get(self, job_id: int) -> Optional[QueueJob]:
        ...

    def update(self, job_id: int, values: Dict[str, Any]) -> bool:
        ...

    def update_where(
        self,
        values: Dict[str, Any],
        job_id: Optional[int] = None,
        status: Optional[JobStatus] = None,
        batch_id: Optional[str] = None,
    ) -> int:
        """Update matching rows and return how many changed."""
        ...

    def fetch_due(self, limit: int, now: float) -> List[QueueJob]:
        ...

    def by_batch(self, batch_id: str) -> List[QueueJob]:
        ...

    def count_by_status(self, batch_id: Optional[str] = None) -> Dict[JobStatus, int]:
        ...

    def stale_processing(self, started_before: float) -> List[QueueJob]:
        ...

    def delete_terminal_before(self, cutoff: float) -> int:
        ...

    def all(self) -> List[QueueJob]:
        ...


def _check_fields(values: Dict[str, Any]) -> None:
    unknown = set(values) - _JOB_FIELDS
    if unknown:
        raise ValueError(f"Unknown job fields: {sorted(unknown)}")


def _due_order(job: QueueJob):
    return (-int(job.priority), job.scheduled_at, job.id or 0)


class MemoryJobRepository:
    """In-process job table; rows are copied in and out like a database."""

    def __init__(self):
        self._rows: Dict[int, QueueJob] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def insert(self, job: QueueJob) -> QueueJob:
        with self._lock:
            stored = replace(job, id=next(self._ids), payload=copy.deepcopy(job.payload))
            self._rows[stored.id] = stored
            return replace(stored)

    def get(self, job_id: int) -> Optional[QueueJob]:
        with self._lock:
            row = self._rows.get(job_id)
            return replace(row) if row is not None else None

    def update(self, job_id: int, values: Dict[str, Any]) -> bool:
        return self.update_where(values, job_id=job_id) > 0

    def _matching(
        self,
        job_id: Optional[int],
        status: Optional[JobStatus],
        batch_id: Optional[str],
    ) -> Iterable[QueueJob]:
        for row in self._rows.values():
            if job_id is not None and row.id != job_id:
                continue
            if status is not None and row.status != status:
                continue
            if batch_id is not None and row.batch_id != batch_id:
                continue
            yield row

    def update_where(
        self,
        values: Dict[str, Any],
        job_id: Optional[int] = None,
        status: Optional[JobStatus] = None,
        batch_id: Optional[str] = None,
    ) -> int:
        _check_fields(values)
        with self._lock:
            matched = list(self._matching(job_id, status, batch_id))
            for row in matched:
                for name, value in values.items():
                    setattr(row, name, value)
            return len(matched)

    def fetch_due(self, limit: int, now: float) -> List[QueueJob]:
        with self._lock:
            due = [
                row for row in self._rows.values()
                if row.status == JobStatus.PENDING and row.scheduled_at <= now
            ]
            due.sort(key=_due_order)
            return [replace(row) for row in due[:limit]]

    def by_batch(self, batch_id: str) -> List[QueueJob]:
        with self._lock:
            rows = [row for row in self._rows.values() if row.batch_id == batch_id]
            return [replace(row) for row in sorted(rows, key=lambda r: r.id)]

    def count_by_status(self, batch_id: Optional[str] = None) -> Dict[JobStatus, int]:
        counts = {status: 0 for status in JobStatus}
        with self._lock:
            for row in self._rows.values():
                if batch_id is None or row.batch_id == batch_id:
                    counts[row.status] += 1
        return counts

    def stale_processing(self, started_before: float) -> List[QueueJob]:
        with self._lock:
            return [
                replace(row) for row in self._rows.values()
                if row.status == JobStatus.PROCESSING
                and row.started_at is not None
                and row.started_at < started_before
            ]

    def delete_terminal_before(self, cutoff: float) -> int:
        with self._lock:
            doomed = [
                job_id for job_id, row in self._rows.items()
                if row.status.is_terminal
                and (row.completed_at if row.completed_at is not None else row.created_at) < cutoff
            ]
            for job_id in doomed:
                del self._rows[job_id]
            return len(doomed)

    def all(self) -> List[QueueJob]:
        with self._lock:
            return [replace(row) for row in self._rows.values()]


class JobRow(Base):
    """Queue table."""

    __tablename__ = "gateway_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    provider_hint = Column(String(64), nullable=True)
    batch_id = Column(String(64), nullable=True, index=True)
    priority = Column(Integer, nullable=False, default=50)
    status = Column(String(16), nullable=False, default=JobStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    scheduled_at = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)
    started_at = Column(Float, nullable=True)
    completed_at = Column(Float, nullable=True)
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    job_metadata = Column("metadata", JSON, nullable=True)

    __table_args__ = (
        Index("idx_queue_status_scheduled", "status", "scheduled_at"),
        Index("idx_queue_priority", "priority"),
    )

    def __repr__(self) -> str:
        return f"<JobRow(id={self.id}, action={self.action}, status={self.status})>"


def _row_to_job(row: JobRow) -> QueueJob:
    return QueueJob(
        id=row.id,
        action=row.action,
        payload=dict(row.payload or {}),
        provider_hint=row.provider_hint,
        batch_id=row.batch_id,
        priority=row.priority,
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_retries=row.max_retries,
        scheduled_at=row.scheduled_at,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        result=row.result,
        error_message=row.error_message,
        metadata=dict(row.job_metadata or {}),
    )


def _column_values(values: Dict[str, Any]) -> Dict[str, Any]:
    _check_fields(values)
    converted = {}
    for name, value in values.items():
        if name == "status" and isinstance(value, JobStatus):
            value = value.value
        if name == "priority":
            value = int(value)
        if name == "metadata":
            name = "job_metadata"
        converted[name] = value
    return converted


class SqlJobRepository:
    """Job table stored through SQLAlchemy (PostgreSQL, MySQL, SQLite)."""

    def __init__(self, database_url: str, create_tables: bool = True):
        engine_kwargs: Dict[str, Any] = {"pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            # Queue calls run in worker threads
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        if create_tables:
            Base.metadata.create_all(bind=self.engine)

    def _session(self) -> Session:
        return self.SessionLocal()

    def insert(self, job: QueueJob) -> QueueJob:
        with self._session() as db:
            row = JobRow(**_column_values({k: v for k, v in job.__dict__.items() if k != "id"}))
            db.add(row)
            db.commit()
            db.refresh(row)
            return _row_to_job(row)

    def get(self, job_id: int) -> Optional[QueueJob]:
        with self._session() as db:
            row = db.get(JobRow, job_id)
            return _row_to_job(row) if row is not None else None

    def update(self, job_id: int, values: Dict[str, Any]) -> bool:
        return self.update_where(values, job_id=job_id) > 0

    def update_where(
        self,
        values: Dict[str, Any],
        job_id: Optional[int] = None,
        status: Optional[JobStatus] = None,
        batch_id: Optional[str] = None,
    ) -> int:
        with self._session() as db:
            query = db.query(JobRow)
            if job_id is not None:
                query = query.filter(JobRow.id == job_id)
            if status is not None:
                query = query.filter(JobRow.status == status.value)
            if batch_id is not None:
                query = query.filter(JobRow.batch_id == batch_id)
            try:
                changed = query.update(_column_values(values), synchronize_session=False)
                db.commit()
            except Exception:
                db.rollback()
                raise
            return int(changed)

    def fetch_due(self, limit: int, now: float) -> List[QueueJob]:
        with self._session() as db:
            rows = (
                db.query(JobRow)
                .filter(JobRow.status == JobStatus.PENDING.value)
                .filter(JobRow.scheduled_at <= now)
                .order_by(JobRow.priority.desc(), JobRow.scheduled_at.asc(), JobRow.id.asc())
                .limit(limit)
                .all()
            )
            return [_row_to_job(row) for row in rows]

    def by_batch(self, batch_id: str) -> List[QueueJob]:
        with self._session() as db:
            rows = db.query(JobRow).filter(JobRow.batch_id == batch_id).order_by(JobRow.id).all()
            return [_row_to_job(row) for row in rows]

    def count_by_status(self, batch_id: Optional[str] = None) -> Dict[JobStatus, int]:
        counts = {status: 0 for status in JobStatus}
        with self._session() as db:
            query = db.query(JobRow.status)
            if batch_id is not None:
                query = query.filter(JobRow.batch_id == batch_id)
            for (status,) in query.all():
                counts[JobStatus(status)] += 1
        return counts

    def stale_processing(self, started_before: float) -> List[QueueJob]:
        with self._session() as db:
            rows = (
                db.query(JobRow)
                .filter(JobRow.status == JobStatus.PROCESSING.value)
                .filter(JobRow.started_at < started_before)
                .all()
            )
            return [_row_to_job(row) for row in rows]

    def delete_terminal_before(self, cutoff: float) -> int:
        terminal = [s.value for s in JobStatus if s.is_terminal]
        with self._session() as db:
            try:
                deleted = (
                    db.query(JobRow)
                    .filter(JobRow.status.in_(terminal))
                    .filter(JobRow.completed_at < cutoff)
                    .delete(synchronize_session=False)
                )
                db.commit()
            except Exception:
                db.rollback()
                raise
            return int(deleted)

    def all(self) -> List[QueueJob]:
        with self._session() as db:
            return [_row_to_job(row) for row in db.query(JobRow).all()]
