from datetime import datetime, timedelta
import logging
import threading
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from catalog_updater.db_models import Job, utc_now
from catalog_updater.errors import JobNotFoundError
from catalog_updater.schemas import JobSnapshot


logger = logging.getLogger(__name__)

PROGRESS_FIELDS = frozenset({"total", "processed", "progress", "errors", "success", "format"})


def _require_status(job: Job, expected: str, action: str) -> None:
    if job.status != expected:
        raise ValueError(f"cannot {action} job {job.id} in status '{job.status}'")


def _snapshot(job: Job) -> JobSnapshot:
    return JobSnapshot(
        id=job.id,
        kind=job.kind,
        status=job.status,
        total=job.total,
        processed=job.processed,
        progress=job.progress,
        errors=list(job.errors or []),
        success=list(job.success or []),
        options=dict(job.options or {}),
        format=job.format,
        result=dict(job.result) if job.result is not None else None,
        error=job.error,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


class JobTracker:
    def __init__(self, session_factory: sessionmaker[Session], *, retention_seconds: float = 3600) -> None:
        self.session_factory = session_factory
        self.retention = timedelta(seconds=retention_seconds)
        self._lock = threading.Lock()

    def _mutate(self, job_id: int, apply) -> JobSnapshot:
        with self._lock, self.session_factory() as db:
            job = db.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"job {job_id} not found")
            apply(job)
            db.commit()
            return _snapshot(job)

    def create(self, *, total: int = 0, options: dict[str, Any] | None = None, kind: str = "csv-processing") -> int:
        with self._lock, self.session_factory() as db:
            job = Job(
                kind=kind,
                status="pending",
                total=total,
                options=dict(options or {}),
                errors=[],
                success=[],
                created_at=utc_now(),
            )
            db.add(job)
            db.commit()
            job_id = job.id

        logger.info("created job", extra={"job_id": job_id, "kind": kind, "total": total})
        return job_id

    def start(self, job_id: int) -> JobSnapshot:
        def apply(job: Job) -> None:
            _require_status(job, "pending", "start")
            job.status = "processing"
            job.started_at = utc_now()

        return self._mutate(job_id, apply)

    def update_progress(self, job_id: int, **fields: Any) -> JobSnapshot:
        unknown = set(fields) - PROGRESS_FIELDS
        if unknown:
            raise ValueError(f"unknown progress fields: {sorted(unknown)}")

        def apply(job: Job) -> None:
            for name, value in fields.items():
                if name == "processed":
                    # Snapshots may arrive out of order; never move backwards.
                    value = max(job.processed, value)
                elif name in ("errors", "success"):
                    value = list(value)
                setattr(job, name, value)

        return self._mutate(job_id, apply)

    def complete(
        self,
        job_id: int,
        result: dict[str, Any],
        *,
        processed: int | None = None,
        success: list[dict[str, Any]] | None = None,
        errors: list[dict[str, Any]] | None = None,
    ) -> JobSnapshot:
        def apply(job: Job) -> None:
            _require_status(job, "processing", "complete")
            if processed is not None:
                job.processed = max(job.processed, processed)
            if success is not None:
                job.success = list(success)
            if errors is not None:
                job.errors = list(errors)
            job.status = "completed"
            job.completed_at = utc_now()
            job.result = dict(result)
            job.progress = round(job.processed / job.total * 100) if job.total else 100

        return self._mutate(job_id, apply)

    def fail(self, job_id: int, message: str) -> JobSnapshot:
        def apply(job: Job) -> None:
            job.status = "failed"
            job.completed_at = utc_now()
            job.error = message

        return self._mutate(job_id, apply)

    def get(self, job_id: int) -> JobSnapshot | None:
        with self._lock, self.session_factory() as db:
            job = db.get(Job, job_id)
            return _snapshot(job) if job is not None else None

    def sweep(self, now: datetime | None = None) -> int:
        """Delete jobs created before the retention window, whatever their state.

        A job still processing past the window is reaped too; its executor
        keeps running but later progress updates raise ``JobNotFoundError``.
        """
        cutoff = (now or utc_now()) - self.retention
        with self._lock, self.session_factory() as db:
            expired = db.execute(select(Job.id).where(Job.created_at < cutoff)).scalars().all()
            if expired:
                db.execute(delete(Job).where(Job.id.in_(expired)))
                db.commit()

        for job_id in expired:
            logger.info("cleaned up old job", extra={"job_id": job_id})
        return len(expired)
