import asyncio
from collections.abc import Awaitable, Callable
import json
import logging
import time
from typing import TypeVar

from catalog_updater.batching import BatchPolicy
from catalog_updater.config import Settings
from catalog_updater.errors import JobNotFoundError, NotFoundError, RemoteMutationError
from catalog_updater.job_store import JobTracker
from catalog_updater.remote import RemoteUpdateService
from catalog_updater.retry import RetryExhaustedError, is_rate_limited, run_with_retries
from catalog_updater.row_typing import format_value
from catalog_updater.schemas import (
    EntityPropertiesRecord,
    ErrorKind,
    FieldUpdate,
    OperationResult,
    ProcessingSummary,
    PropertyUpdate,
    RemoteEntity,
    SchemaVariant,
    UpdateGroup,
    UserError,
)


logger = logging.getLogger(__name__)
T = TypeVar("T")

ATTRIBUTE_NAMESPACE = "custom"
ATTRIBUTE_TYPES = {
    "components": "json",
    "shipping_info": "single_line_text_field",
    "unit_packs": "single_line_text_field",
    "coa": "url",
    "sds": "url",
    "storage_conditions": "single_line_text_field",
    "volume": "single_line_text_field",
    "matrix": "single_line_text_field",
    "cas_number": "single_line_text_field",
    "catalog_number": "single_line_text_field",
    "dot_hazardous": "single_line_text_field",
    "expiration_months": "number_integer",
}


def components_json(value: str) -> str:
    if ";" in value:
        parts = [part.strip() for part in value.split(";") if part.strip()]
        return json.dumps(parts, separators=(",", ":"), ensure_ascii=False)
    try:
        json.loads(value)
    except ValueError:
        return json.dumps([value.strip()], separators=(",", ":"), ensure_ascii=False)
    return value


def attribute_field_updates(attributes: dict[str, str]) -> list[FieldUpdate]:
    updates: list[FieldUpdate] = []
    for name, field_type in ATTRIBUTE_TYPES.items():
        value = attributes.get(name)
        if not value:
            continue
        if name == "components":
            value = components_json(value)
        elif field_type == "url" and not value.startswith(("http://", "https://")):
            # COA/SDS cells hold either a link or a plain reference.
            field_type = "single_line_text_field"
        updates.append(FieldUpdate(namespace=ATTRIBUTE_NAMESPACE, key=name, value=value, type=field_type))
    return updates


def merge_tags(existing: tuple[str, ...] | list[str], csv_tags: str, import_tag: str) -> list[str]:
    merged = list(existing)
    for tag in (part.strip() for part in csv_tags.split(",")):
        if tag and tag not in merged:
            merged.append(tag)
    if import_tag not in merged:
        merged.append(import_tag)
    return merged


def build_property_update(entity: RemoteEntity, record: EntityPropertiesRecord, import_tag: str) -> PropertyUpdate:
    status = None
    if record.published is not None:
        status = "ACTIVE" if record.published else "DRAFT"
    return PropertyUpdate(
        id=entity.id,
        title=record.title or None,
        description_html=record.description or None,
        vendor=record.vendor or None,
        product_type=record.product_type or None,
        tags=merge_tags(entity.tags, record.tags, import_tag),
        status=status,
        fields=attribute_field_updates(record.attributes),
    )


def _join_user_errors(errors: list[UserError]) -> str:
    return ", ".join(error.message for error in errors)


class BatchExecutor:
    def __init__(
        self,
        remote: RemoteUpdateService,
        policy: BatchPolicy,
        *,
        tracker: JobTracker | None = None,
        max_attempts: int = 3,
        retry_backoff_seconds: float = 1.0,
        import_tag: str = "product_csv_import",
        time_budget_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.remote = remote
        self.policy = policy
        self.tracker = tracker
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.import_tag = import_tag
        self.time_budget_seconds = time_budget_seconds
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        remote: RemoteUpdateService,
        *,
        tracker: JobTracker | None = None,
    ) -> "BatchExecutor":
        return cls(
            remote,
            BatchPolicy.from_settings(settings),
            tracker=tracker,
            max_attempts=settings.max_attempts,
            retry_backoff_seconds=settings.retry_backoff_seconds,
            import_tag=settings.import_tag,
            time_budget_seconds=settings.job_time_budget_seconds,
        )

    async def run(
        self,
        groups: dict[str, UpdateGroup],
        variant: SchemaVariant,
        *,
        dry_run: bool = False,
        job_id: int | None = None,
    ) -> ProcessingSummary:
        handles = list(groups)
        batches = self.policy.plan(handles)
        batch_size = self.policy.batch_size(len(handles))
        success: list[OperationResult] = []
        errors: list[OperationResult] = []
        processed = 0
        timed_out = False
        started = self._clock()

        logger.info(
            "processing handles",
            extra={
                "job_id": job_id,
                "handles": len(handles),
                "batches": len(batches),
                "batch_size": batch_size,
                "dry_run": dry_run,
            },
        )

        for index, batch in enumerate(batches):
            if self._budget_exceeded(started):
                skipped = [handle for pending in batches[index:] for handle in pending]
                logger.error(
                    "processing time budget exceeded; not scheduling remaining batches",
                    extra={"job_id": job_id, "skipped": len(skipped), "budget_seconds": self.time_budget_seconds},
                )
                errors.extend(
                    OperationResult.error(handle, ErrorKind.TIMED_OUT, "Skipped: processing time budget exceeded")
                    for handle in skipped
                )
                timed_out = True
                self._publish(
                    job_id,
                    processed=processed,
                    progress=round(processed / len(handles) * 100),
                    success=success,
                    errors=errors,
                )
                break

            outcomes = await asyncio.gather(
                *(self._process_handle(handle, groups[handle], variant, dry_run) for handle in batch)
            )
            for outcome in outcomes:
                (success if outcome.ok else errors).append(outcome)
            processed += len(batch)

            progress = round(processed / len(handles) * 100)
            self._publish(job_id, processed=processed, progress=progress, success=success, errors=errors)
            logger.info(
                "batch complete",
                extra={
                    "job_id": job_id,
                    "batch": index + 1,
                    "batches": len(batches),
                    "progress": progress,
                    "processed": processed,
                    "errors": len(errors),
                },
            )

            delay = self.policy.delay_after(index, len(batches), batch_size)
            if delay > 0:
                await self._sleep(delay)

        return ProcessingSummary(
            total=len(handles),
            processed=processed,
            format=variant,
            dry_run=dry_run,
            success=success,
            errors=errors,
            timed_out=timed_out,
        )

    def _budget_exceeded(self, started: float) -> bool:
        if not self.time_budget_seconds or self.time_budget_seconds <= 0:
            return False
        return self._clock() - started > self.time_budget_seconds

    def _publish(
        self,
        job_id: int | None,
        *,
        processed: int,
        progress: int,
        success: list[OperationResult],
        errors: list[OperationResult],
    ) -> None:
        if self.tracker is None or job_id is None:
            return
        try:
            self.tracker.update_progress(
                job_id,
                processed=processed,
                progress=progress,
                success=[result.to_dict() for result in success],
                errors=[result.to_dict() for result in errors],
            )
        except JobNotFoundError:
            logger.warning("job reaped while still processing", extra={"job_id": job_id})

    async def _call(self, fn: Callable[[], Awaitable[T]], *, handle: str, operation: str) -> T:
        def on_failure(attempt: int, exc: Exception) -> None:
            if is_rate_limited(exc):
                logger.info(
                    "rate limited, will retry",
                    extra={"handle": handle, "operation": operation, "attempt": attempt},
                )

        return await run_with_retries(
            fn,
            max_attempts=self.max_attempts,
            backoff_seconds=self.retry_backoff_seconds,
            on_attempt_failure=on_failure,
            should_retry=is_rate_limited,
            sleep=self._sleep,
        )

    async def _process_handle(
        self,
        handle: str,
        group: UpdateGroup,
        variant: SchemaVariant,
        dry_run: bool,
    ) -> OperationResult:
        try:
            entity = await self._call(lambda: self.remote.fetch_by_handle(handle), handle=handle, operation="lookup")
            if entity is None:
                raise NotFoundError(f"Product with handle '{handle}' not found")
            if variant is SchemaVariant.FIELD_UPDATES:
                return await self._apply_field_updates(handle, entity, group, dry_run)
            return await self._apply_properties(handle, entity, group, dry_run)
        except NotFoundError as exc:
            return OperationResult.error(handle, ErrorKind.NOT_FOUND, str(exc))
        except RemoteMutationError as exc:
            return OperationResult.error(handle, ErrorKind.REMOTE_MUTATION, str(exc))
        except RetryExhaustedError as exc:
            return OperationResult.error(
                handle,
                ErrorKind.RATE_LIMITED,
                f"Rate limit persisted after {exc.attempts} attempts: {exc}",
            )
        except Exception as exc:
            logger.warning("unexpected error processing handle", extra={"handle": handle}, exc_info=True)
            return OperationResult.error(handle, ErrorKind.UNEXPECTED, f"Processing error: {exc}")

    async def _apply_field_updates(
        self,
        handle: str,
        entity: RemoteEntity,
        fields: list[FieldUpdate],
        dry_run: bool,
    ) -> OperationResult:
        formatted = [
            FieldUpdate(namespace=item.namespace, key=item.key, value=format_value(item.value, item.type), type=item.type)
            for item in fields
        ]
        if dry_run:
            return OperationResult.would_succeed(handle, entity.title, len(formatted))

        result = await self._call(
            lambda: self.remote.set_fields(entity.id, formatted),
            handle=handle,
            operation="set_fields",
        )
        if result.user_errors:
            raise RemoteMutationError(f"Metafield update errors: {_join_user_errors(result.user_errors)}")

        await self._add_import_tag(handle, entity)
        return OperationResult.success(handle, entity.title, len(formatted))

    async def _add_import_tag(self, handle: str, entity: RemoteEntity) -> None:
        if self.import_tag in entity.tags:
            return
        update = PropertyUpdate(id=entity.id, tags=[*entity.tags, self.import_tag])
        try:
            result = await self._call(
                lambda: self.remote.update_properties(update),
                handle=handle,
                operation="tag",
            )
        except Exception as exc:
            logger.warning("could not add import tag", extra={"handle": handle, "error": str(exc)})
            return
        if result.user_errors:
            logger.warning(
                "could not add import tag",
                extra={"handle": handle, "error": _join_user_errors(result.user_errors)},
            )

    async def _apply_properties(
        self,
        handle: str,
        entity: RemoteEntity,
        record: EntityPropertiesRecord,
        dry_run: bool,
    ) -> OperationResult:
        update = build_property_update(entity, record, self.import_tag)
        if dry_run:
            return OperationResult.would_succeed(handle, entity.title, update.field_count())

        result = await self._call(
            lambda: self.remote.update_properties(update),
            handle=handle,
            operation="update_properties",
        )
        if result.user_errors:
            raise RemoteMutationError(f"Product update errors: {_join_user_errors(result.user_errors)}")

        title = result.entity.title if result.entity is not None else entity.title
        return OperationResult.success(handle, title, update.field_count())
