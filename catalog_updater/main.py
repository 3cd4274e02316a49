import argparse
import asyncio
import logging
from pathlib import Path
import time

from catalog_updater.config import Settings, get_settings
from catalog_updater.database import build_session_factory
from catalog_updater.errors import CatalogUpdateError, ValidationError
from catalog_updater.job_store import JobTracker
from catalog_updater.pipeline import CatalogUpdatePipeline
from catalog_updater.remote import AdminGraphQLClient
from catalog_updater.scheduler import JobScheduler


logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bulk-update catalog records from a CSV file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="process one CSV file")
    run_parser.add_argument("--file", required=True, help="Path to the CSV file")
    run_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="look up every handle and report what would change without mutating anything",
    )

    return parser.parse_args()


def _wait_for_job(pipeline: CatalogUpdatePipeline, job_id: int, settings: Settings) -> dict[str, object]:
    while True:
        status = pipeline.job_status(job_id)
        if status is None:
            return {"status": "failed", "error": f"job {job_id} not found"}
        if status["status"] in ("completed", "failed"):
            return status
        logger.info(
            "job in progress",
            extra={"job_id": job_id, "progress": status["progress"], "processed": status["processed"]},
        )
        time.sleep(settings.job_poll_seconds)


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    tracker = JobTracker(
        build_session_factory(settings.database_url),
        retention_seconds=settings.job_retention_seconds,
    )
    scheduler = JobScheduler(settings, tracker)
    remote = AdminGraphQLClient(
        settings.shop_domain,
        settings.access_token,
        api_version=settings.api_version,
        timeout_seconds=settings.request_timeout_seconds,
    )
    pipeline = CatalogUpdatePipeline(settings, tracker, remote, dispatcher=scheduler)

    raw = Path(args.file).read_bytes()
    scheduler.start()
    try:
        submission = asyncio.run(pipeline.submit(raw, dry_run=args.dry_run))
        if submission.background:
            print(
                "job_id={job_id} total={total} estimated_minutes={minutes}".format(
                    job_id=submission.job_id,
                    total=submission.total,
                    minutes=submission.estimated_minutes,
                )
            )
            status = _wait_for_job(pipeline, submission.job_id, settings)
            print(
                "status={status} total={total} processed={processed} succeeded={succeeded} failed={failed} error={error}".format(
                    status=status["status"],
                    total=status.get("total"),
                    processed=status.get("processed"),
                    succeeded=len(status.get("success", [])),
                    failed=len(status.get("errors", [])),
                    error=status.get("error"),
                )
            )
            if status["status"] == "failed":
                raise SystemExit(1)
            return

        summary = submission.summary
        print(
            "status=completed format={format} total={total} processed={processed} succeeded={succeeded} failed={failed} dry_run={dry_run}".format(
                format=summary.format.value,
                total=summary.total,
                processed=summary.processed,
                succeeded=len(summary.success),
                failed=len(summary.errors),
                dry_run=summary.dry_run,
            )
        )
        for error in summary.errors:
            print(f"error handle={error.handle} kind={error.error_kind.value} message={error.message}")
    except ValidationError as exc:
        print(f"status=failed error=validation rows={len(exc.errors)}")
        for message in exc.errors:
            print(message)
        raise SystemExit(1)
    except CatalogUpdateError as exc:
        print(f"status=failed error={exc}")
        raise SystemExit(1)
    finally:
        scheduler.shutdown(wait=False)


if __name__ == "__main__":
    main()
