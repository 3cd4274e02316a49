import logging
import math
from typing import Protocol

from catalog_updater.config import Settings
from catalog_updater.errors import JobNotFoundError, NoEntitiesError
from catalog_updater.executor import BatchExecutor
from catalog_updater.grouping import group_records
from catalog_updater.job_store import JobTracker
from catalog_updater.remote import RemoteUpdateService
from catalog_updater.row_typing import parse_table
from catalog_updater.schemas import SchemaVariant, SubmissionResult, UpdateGroup


logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    def dispatch(self, job_id: int, factory) -> None: ...


class CatalogUpdatePipeline:
    def __init__(
        self,
        settings: Settings,
        tracker: JobTracker,
        remote: RemoteUpdateService,
        dispatcher: Dispatcher | None = None,
        executor: BatchExecutor | None = None,
    ) -> None:
        self.settings = settings
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.executor = executor or BatchExecutor.from_settings(settings, remote, tracker=tracker)

    async def submit(self, raw: bytes, *, dry_run: bool = False) -> SubmissionResult:
        """Validate a table and either process it now or hand it to a background job.

        A dry run only previews the first ``dry_run_preview_rows`` rows of the table.

        Raises:
            FormatError: the header matches neither table layout.
            ValidationError: one or more rows are invalid; nothing is processed.
            NoEntitiesError: the table has no rows to apply.
        """
        table = parse_table(
            raw,
            repair=self.settings.row_repair_enabled,
            max_rows=self.settings.dry_run_preview_rows if dry_run else None,
        )
        groups = group_records(table.records, table.variant)
        total = len(groups)
        logger.info(
            "grouped table",
            extra={"format": table.variant.value, "handles": total, "dry_run": dry_run},
        )

        if total == 0:
            raise NoEntitiesError("No valid product handles found in CSV")

        if not dry_run and total > self.settings.background_threshold and self.dispatcher is not None:
            return self._submit_background(groups, table.variant, dry_run=dry_run)

        summary = await self.executor.run(groups, table.variant, dry_run=dry_run)
        logger.info(
            "processing completed",
            extra={"processed": summary.processed, "errors": len(summary.errors), "dry_run": dry_run},
        )
        return SubmissionResult(background=False, total=total, summary=summary)

    def _submit_background(
        self,
        groups: dict[str, UpdateGroup],
        variant: SchemaVariant,
        *,
        dry_run: bool,
    ) -> SubmissionResult:
        total = len(groups)
        job_id = self.tracker.create(
            total=total,
            options={"dry_run": dry_run, "format": variant.value, "total_products": total},
        )

        async def run_job() -> None:
            await self.run_job(job_id, groups, variant, dry_run=dry_run)

        self.dispatcher.dispatch(job_id, run_job)
        logger.info("large dataset moved to background processing", extra={"job_id": job_id, "handles": total})
        return SubmissionResult(
            background=True,
            total=total,
            job_id=job_id,
            estimated_minutes=math.ceil(total / 10),
        )

    async def run_job(
        self,
        job_id: int,
        groups: dict[str, UpdateGroup],
        variant: SchemaVariant,
        *,
        dry_run: bool,
    ) -> None:
        try:
            self.tracker.start(job_id)
            self.tracker.update_progress(job_id, total=len(groups), format=variant.value)
            summary = await self.executor.run(groups, variant, dry_run=dry_run, job_id=job_id)
            self.tracker.complete(
                job_id,
                {"results": summary.to_dict(), "dry_run": dry_run},
                processed=summary.processed,
                success=[result.to_dict() for result in summary.success],
                errors=[result.to_dict() for result in summary.errors],
            )
            logger.info(
                "background job completed",
                extra={
                    "job_id": job_id,
                    "processed": summary.processed,
                    "errors": len(summary.errors),
                    "timed_out": summary.timed_out,
                },
            )
        except Exception as exc:
            logger.exception("background job failed", extra={"job_id": job_id})
            try:
                self.tracker.fail(job_id, str(exc))
            except JobNotFoundError:
                logger.warning("job reaped before failure could be recorded", extra={"job_id": job_id})

    def job_status(self, job_id: int) -> dict[str, object] | None:
        job = self.tracker.get(job_id)
        if job is None:
            return None
        return job.to_status()
