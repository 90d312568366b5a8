from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from itertools import count
from threading import Lock
from typing import Callable, Literal, Protocol, TypeVar

from .config import Settings
from .errors import NotFoundError
from .jobs import TOPICS, InvoiceEmailJob, ReceiptEmailJob, encode_job, topic_for

logger = logging.getLogger(__name__)

JobStatus = Literal["waiting", "active", "completed", "failed"]

PRODUCER_MAX_RETRIES_PER_REQUEST = 20
MAX_CONNECTION_BACKOFF_SECONDS = 30.0

_T = TypeVar("_T")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 5.0

    def delay_for(self, attempt: int) -> timedelta:
        """Backoff after the given (1-based) failed attempt: base, 2*base, 4*base, ..."""
        return timedelta(seconds=self.base_delay_seconds * (2 ** max(0, attempt - 1)))

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts


@dataclass(frozen=True)
class QueueConnectionOptions:
    url: str = ""
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    database: str = "invoices"
    max_retries_per_request: int | None = PRODUCER_MAX_RETRIES_PER_REQUEST

    def database_url(self) -> str:
        if self.url.strip():
            return self.url.strip()
        from sqlalchemy.engine import URL

        return URL.create(
            "postgresql+psycopg",
            username=self.user or None,
            password=self.password or None,
            host=self.host,
            port=self.port,
            database=self.database,
        ).render_as_string(hide_password=False)


def producer_connection_options(settings: Settings) -> QueueConnectionOptions:
    return QueueConnectionOptions(
        url=settings.queue_url,
        host=settings.queue_host,
        port=settings.queue_port,
        user=settings.queue_user,
        password=settings.queue_password,
        database=settings.queue_database,
        max_retries_per_request=PRODUCER_MAX_RETRIES_PER_REQUEST,
    )


def worker_connection_options(settings: Settings) -> QueueConnectionOptions:
    # Workers never give up reconnecting to the broker.
    return replace(producer_connection_options(settings), max_retries_per_request=None)


@dataclass(frozen=True)
class QueuedJob:
    job_id: str
    topic: str
    payload_json: str
    status: JobStatus
    attempts: int
    max_attempts: int
    available_at: datetime
    lease_expires_at: datetime | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None = None


class QueueBroker(Protocol):
    retry_policy: RetryPolicy

    def reset(self) -> None: ...

    def enqueue(self, topic: str, payload_json: str, *, now: datetime | None = None) -> QueuedJob: ...

    def reserve(self, topic: str, *, now: datetime | None = None) -> QueuedJob | None:
        """Claim the next available job for ``topic``.

        A job whose lease expired on its final attempt is not retried: it is
        moved to ``failed`` and returned with that status, once, so the caller
        can dead-letter it.
        """

    def complete(self, job_id: str, *, now: datetime | None = None) -> QueuedJob: ...

    def fail(
        self,
        job_id: str,
        *,
        error: str,
        retryable: bool = True,
        now: datetime | None = None,
    ) -> QueuedJob: ...

    def get_job(self, job_id: str) -> QueuedJob | None: ...

    def list_jobs(self, topic: str, *, status: JobStatus | None = None, limit: int = 100) -> list[QueuedJob]: ...

    def recent_completed(self, topic: str) -> list[QueuedJob]: ...


def _require_topic(topic: str) -> None:
    if topic not in TOPICS:
        raise ValueError(f"unknown queue topic: {topic}")


def publish_job(
    broker: QueueBroker,
    message: InvoiceEmailJob | ReceiptEmailJob,
    *,
    now: datetime | None = None,
) -> QueuedJob:
    return broker.enqueue(topic_for(message), encode_job(message), now=now)


def _after_failure(
    job: QueuedJob,
    policy: RetryPolicy,
    *,
    error: str,
    retryable: bool,
    now: datetime,
) -> QueuedJob:
    if retryable and policy.should_retry(job.attempts):
        return replace(
            job,
            status="waiting",
            available_at=now + policy.delay_for(job.attempts),
            lease_expires_at=None,
            last_error=error,
            updated_at=now,
        )
    return replace(
        job,
        status="failed",
        lease_expires_at=None,
        last_error=error,
        updated_at=now,
        finished_at=now,
    )


class InMemoryQueueBroker:
    """Single-process broker with the same delivery contract as the durable backend."""

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        completed_history: int = 100,
        lease_seconds: int = 300,
    ) -> None:
        self.retry_policy = retry_policy or RetryPolicy()
        self._completed_history = completed_history
        self._lease = timedelta(seconds=lease_seconds)
        self._lock = Lock()
        self._counter = count(1)
        self._jobs: dict[str, QueuedJob] = {}
        self._order: list[str] = []

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._jobs.clear()
            self._order.clear()

    def enqueue(self, topic: str, payload_json: str, *, now: datetime | None = None) -> QueuedJob:
        _require_topic(topic)
        current = _coerce_utc(now or _now_utc())
        with self._lock:
            job = QueuedJob(
                job_id=f"job_{next(self._counter):06d}",
                topic=topic,
                payload_json=payload_json,
                status="waiting",
                attempts=0,
                max_attempts=self.retry_policy.max_attempts,
                available_at=current,
                lease_expires_at=None,
                last_error=None,
                created_at=current,
                updated_at=current,
            )
            self._jobs[job.job_id] = job
            self._order.append(job.job_id)
            return job

    def reserve(self, topic: str, *, now: datetime | None = None) -> QueuedJob | None:
        _require_topic(topic)
        current = _coerce_utc(now or _now_utc())
        with self._lock:
            candidates = [
                self._jobs[job_id]
                for job_id in self._order
                if self._jobs[job_id].topic == topic and self._is_available(self._jobs[job_id], current)
            ]
            candidates.sort(key=lambda value: value.available_at)
            for job in candidates:
                if job.status == "active" and job.attempts >= job.max_attempts:
                    logger.warning("job %s stalled on its final attempt; marking failed", job.job_id)
                    stalled = replace(
                        job,
                        status="failed",
                        lease_expires_at=None,
                        last_error=job.last_error or "stalled",
                        updated_at=current,
                        finished_at=current,
                    )
                    self._jobs[job.job_id] = stalled
                    return stalled
                claimed = replace(
                    job,
                    status="active",
                    attempts=job.attempts + 1,
                    lease_expires_at=current + self._lease,
                    updated_at=current,
                )
                self._jobs[job.job_id] = claimed
                return claimed
            return None

    def complete(self, job_id: str, *, now: datetime | None = None) -> QueuedJob:
        current = _coerce_utc(now or _now_utc())
        with self._lock:
            job = self._require(job_id)
            done = replace(job, status="completed", lease_expires_at=None, updated_at=current, finished_at=current)
            self._jobs[job_id] = done
            self._prune_completed(job.topic)
            return done

    def fail(
        self,
        job_id: str,
        *,
        error: str,
        retryable: bool = True,
        now: datetime | None = None,
    ) -> QueuedJob:
        current = _coerce_utc(now or _now_utc())
        with self._lock:
            job = self._require(job_id)
            updated = _after_failure(job, self.retry_policy, error=error, retryable=retryable, now=current)
            self._jobs[job_id] = updated
            return updated

    def get_job(self, job_id: str) -> QueuedJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self, topic: str, *, status: JobStatus | None = None, limit: int = 100) -> list[QueuedJob]:
        with self._lock:
            rows = [
                self._jobs[job_id]
                for job_id in self._order
                if self._jobs[job_id].topic == topic and (status is None or self._jobs[job_id].status == status)
            ]
        return rows[:limit]

    def recent_completed(self, topic: str) -> list[QueuedJob]:
        rows = self.list_jobs(topic, status="completed", limit=self._completed_history)
        return sorted(rows, key=lambda value: value.finished_at or value.updated_at, reverse=True)

    def _is_available(self, job: QueuedJob, now: datetime) -> bool:
        if job.status == "waiting":
            return job.available_at <= now
        if job.status == "active":
            return job.lease_expires_at is not None and job.lease_expires_at <= now
        return False

    def _require(self, job_id: str) -> QueuedJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError("job", job_id)
        return job

    def _prune_completed(self, topic: str) -> None:
        completed = [
            job_id
            for job_id in self._order
            if self._jobs[job_id].topic == topic and self._jobs[job_id].status == "completed"
        ]
        overflow = len(completed) - self._completed_history
        if overflow <= 0:
            return
        for job_id in completed[:overflow]:
            del self._jobs[job_id]
            self._order.remove(job_id)


SQLALCHEMY_AVAILABLE = True
try:
    from sqlalchemy import DateTime, Integer, String, Text, create_engine, delete, or_, select
    from sqlalchemy.exc import OperationalError
    from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
except ModuleNotFoundError:
    SQLALCHEMY_AVAILABLE = False


if SQLALCHEMY_AVAILABLE:

    class QueueBase(DeclarativeBase):
        pass


    class _JobRow(QueueBase):
        __tablename__ = "notification_jobs"

        job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
        topic: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
        payload_json: Mapped[str] = mapped_column(Text, nullable=False)
        status: Mapped[str] = mapped_column(String(16), nullable=False, default="waiting", index=True)
        attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
        max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
        available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
        lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
        last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
        created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
        updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
        finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
else:
    QueueBase = None


def _row_to_job(row) -> QueuedJob:
    return QueuedJob(
        job_id=row.job_id,
        topic=row.topic,
        payload_json=row.payload_json,
        status=row.status,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        available_at=_coerce_utc(row.available_at),
        lease_expires_at=_coerce_utc(row.lease_expires_at) if row.lease_expires_at is not None else None,
        last_error=row.last_error,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
        finished_at=_coerce_utc(row.finished_at) if row.finished_at is not None else None,
    )


class SqlAlchemyQueueBroker:
    """Durable broker on a relational table; claims use row locks with SKIP LOCKED where supported."""

    def __init__(
        self,
        connection: QueueConnectionOptions,
        *,
        retry_policy: RetryPolicy | None = None,
        completed_history: int = 100,
        lease_seconds: int = 300,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not SQLALCHEMY_AVAILABLE:
            raise RuntimeError("sqlalchemy is required for QUEUE_BACKEND=postgres")
        database_url = connection.database_url()
        self.retry_policy = retry_policy or RetryPolicy()
        self._connection = connection
        self._completed_history = completed_history
        self._lease = timedelta(seconds=lease_seconds)
        self._sleep = sleep
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            QueueBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def _with_reconnect(self, operation: Callable[[], _T]) -> _T:
        limit = self._connection.max_retries_per_request
        tries = 0
        while True:
            try:
                return operation()
            except OperationalError:
                tries += 1
                if limit is not None and tries > limit:
                    raise
                delay = min(0.05 * (2 ** min(tries, 10)), MAX_CONNECTION_BACKOFF_SECONDS)
                logger.warning("queue connection error (try %s); retrying in %.2fs", tries, delay)
                self._sleep(delay)

    def reset(self) -> None:
        def _op() -> None:
            with self._session() as session:
                with session.begin():
                    session.execute(delete(_JobRow))

        self._with_reconnect(_op)

    def enqueue(self, topic: str, payload_json: str, *, now: datetime | None = None) -> QueuedJob:
        _require_topic(topic)
        current = _coerce_utc(now or _now_utc())
        job_id = f"job_{secrets.token_hex(8)}"

        def _op() -> QueuedJob:
            with self._session() as session:
                with session.begin():
                    row = _JobRow(
                        job_id=job_id,
                        topic=topic,
                        payload_json=payload_json,
                        status="waiting",
                        attempts=0,
                        max_attempts=self.retry_policy.max_attempts,
                        available_at=current,
                        lease_expires_at=None,
                        last_error=None,
                        created_at=current,
                        updated_at=current,
                        finished_at=None,
                    )
                    session.add(row)
                return _row_to_job(row)

        return self._with_reconnect(_op)

    def reserve(self, topic: str, *, now: datetime | None = None) -> QueuedJob | None:
        _require_topic(topic)
        current = _coerce_utc(now or _now_utc())

        def _op() -> QueuedJob | None:
            with self._session() as session:
                with session.begin():
                    row = session.execute(
                        select(_JobRow)
                        .where(_JobRow.topic == topic)
                        .where(
                            or_(
                                (_JobRow.status == "waiting") & (_JobRow.available_at <= current),
                                (_JobRow.status == "active") & (_JobRow.lease_expires_at <= current),
                            )
                        )
                        .order_by(_JobRow.available_at, _JobRow.created_at)
                        .limit(1)
                        .with_for_update(skip_locked=True)
                    ).scalar_one_or_none()
                    if row is None:
                        return None
                    if row.status == "active" and row.attempts >= row.max_attempts:
                        logger.warning("job %s stalled on its final attempt; marking failed", row.job_id)
                        row.status = "failed"
                        row.lease_expires_at = None
                        row.last_error = row.last_error or "stalled"
                        row.finished_at = current
                    else:
                        row.status = "active"
                        row.attempts = row.attempts + 1
                        row.lease_expires_at = current + self._lease
                    row.updated_at = current
                    return _row_to_job(row)

        return self._with_reconnect(_op)

    def complete(self, job_id: str, *, now: datetime | None = None) -> QueuedJob:
        current = _coerce_utc(now or _now_utc())

        def _op() -> QueuedJob:
            with self._session() as session:
                with session.begin():
                    row = self._require(session, job_id)
                    row.status = "completed"
                    row.lease_expires_at = None
                    row.updated_at = current
                    row.finished_at = current
                    job = _row_to_job(row)
                    self._prune_completed(session, row.topic)
                return job

        return self._with_reconnect(_op)

    def fail(
        self,
        job_id: str,
        *,
        error: str,
        retryable: bool = True,
        now: datetime | None = None,
    ) -> QueuedJob:
        current = _coerce_utc(now or _now_utc())

        def _op() -> QueuedJob:
            with self._session() as session:
                with session.begin():
                    row = self._require(session, job_id)
                    updated = _after_failure(
                        _row_to_job(row),
                        self.retry_policy,
                        error=error,
                        retryable=retryable,
                        now=current,
                    )
                    row.status = updated.status
                    row.available_at = updated.available_at
                    row.lease_expires_at = None
                    row.last_error = updated.last_error
                    row.updated_at = updated.updated_at
                    row.finished_at = updated.finished_at
                return updated

        return self._with_reconnect(_op)

    def get_job(self, job_id: str) -> QueuedJob | None:
        def _op() -> QueuedJob | None:
            with self._session() as session:
                row = session.get(_JobRow, job_id)
                return _row_to_job(row) if row is not None else None

        return self._with_reconnect(_op)

    def list_jobs(self, topic: str, *, status: JobStatus | None = None, limit: int = 100) -> list[QueuedJob]:
        def _op() -> list[QueuedJob]:
            with self._session() as session:
                query = select(_JobRow).where(_JobRow.topic == topic)
                if status is not None:
                    query = query.where(_JobRow.status == status)
                rows = session.execute(query.order_by(_JobRow.created_at).limit(limit)).scalars().all()
                return [_row_to_job(row) for row in rows]

        return self._with_reconnect(_op)

    def recent_completed(self, topic: str) -> list[QueuedJob]:
        rows = self.list_jobs(topic, status="completed", limit=self._completed_history)
        return sorted(rows, key=lambda value: value.finished_at or value.updated_at, reverse=True)

    def _require(self, session, job_id: str):
        row = session.get(_JobRow, job_id)
        if row is None:
            raise NotFoundError("job", job_id)
        return row

    def _prune_completed(self, session, topic: str) -> None:
        stale_ids = (
            session.execute(
                select(_JobRow.job_id)
                .where(_JobRow.topic == topic)
                .where(_JobRow.status == "completed")
                .order_by(_JobRow.finished_at.desc(), _JobRow.job_id.desc())
                .offset(self._completed_history)
            )
            .scalars()
            .all()
        )
        if stale_ids:
            session.execute(delete(_JobRow).where(_JobRow.job_id.in_(stale_ids)))


def create_queue_broker(settings: Settings, *, connection: QueueConnectionOptions | None = None) -> QueueBroker:
    policy = RetryPolicy(
        max_attempts=settings.queue_max_attempts,
        base_delay_seconds=settings.queue_backoff_seconds,
    )
    if settings.queue_backend == "postgres":
        return SqlAlchemyQueueBroker(
            connection or producer_connection_options(settings),
            retry_policy=policy,
            completed_history=settings.queue_completed_history,
            lease_seconds=settings.queue_lease_seconds,
        )
    return InMemoryQueueBroker(
        retry_policy=policy,
        completed_history=settings.queue_completed_history,
        lease_seconds=settings.queue_lease_seconds,
    )
