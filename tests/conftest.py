from collections.abc import Callable

import pytest

from catalog_updater.config import Settings
from catalog_updater.database import build_session_factory
from catalog_updater.job_store import JobTracker
from catalog_updater.schemas import (
    FieldSetResult,
    FieldUpdate,
    PropertyUpdate,
    PropertyUpdateResult,
    RemoteEntity,
    UserError,
)


class FakeRemote:
    """In-memory stand-in for the remote store."""

    def __init__(self) -> None:
        self.entities: dict[str, RemoteEntity] = {}
        self.calls: list[tuple[str, object]] = []
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self.user_errors: dict[tuple[str, str], list[UserError]] = {}
        self.on_lookup: Callable[[str], None] | None = None

    def add(self, handle: str, title: str | None = None, tags: tuple[str, ...] = ()) -> RemoteEntity:
        entity = RemoteEntity(
            id=f"gid://shopify/Product/{len(self.entities) + 1}",
            handle=handle,
            title=title or handle.replace("-", " ").title(),
            tags=tags,
        )
        self.entities[handle] = entity
        return entity

    def fail(self, operation: str, handle: str, *errors: Exception) -> None:
        self.failures.setdefault((operation, handle), []).extend(errors)

    def reject(self, operation: str, handle: str, message: str) -> None:
        self.user_errors[(operation, handle)] = [UserError(message=message)]

    def mutations(self) -> list[tuple[str, object]]:
        return [call for call in self.calls if call[0] != "fetch_by_handle"]

    def _handle_for(self, owner_id: str) -> str:
        for entity in self.entities.values():
            if entity.id == owner_id:
                return entity.handle
        raise KeyError(owner_id)

    def _maybe_fail(self, operation: str, handle: str) -> None:
        pending = self.failures.get((operation, handle))
        if pending:
            raise pending.pop(0)

    async def fetch_by_handle(self, handle: str) -> RemoteEntity | None:
        self.calls.append(("fetch_by_handle", handle))
        if self.on_lookup is not None:
            self.on_lookup(handle)
        self._maybe_fail("fetch_by_handle", handle)
        return self.entities.get(handle)

    async def set_fields(self, owner_id: str, fields: list[FieldUpdate]) -> FieldSetResult:
        handle = self._handle_for(owner_id)
        self.calls.append(("set_fields", (handle, list(fields))))
        self._maybe_fail("set_fields", handle)
        errors = self.user_errors.get(("set_fields", handle), [])
        return FieldSetResult(applied=[] if errors else list(fields), user_errors=errors)

    async def update_properties(self, update: PropertyUpdate) -> PropertyUpdateResult:
        handle = self._handle_for(update.id)
        self.calls.append(("update_properties", (handle, update)))
        self._maybe_fail("update_properties", handle)
        errors = self.user_errors.get(("update_properties", handle), [])
        if errors:
            return PropertyUpdateResult(entity=None, user_errors=errors)
        current = self.entities[handle]
        updated = RemoteEntity(
            id=current.id,
            handle=handle,
            title=update.title or current.title,
            tags=tuple(update.tags) if update.tags is not None else current.tags,
        )
        self.entities[handle] = updated
        return PropertyUpdateResult(entity=updated, user_errors=[])


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        app_name="catalog-updater",
        database_url="sqlite://",
        log_level="INFO",
        shop_domain="test-shop.myshopify.com",
        access_token="shpat_test",
        api_version="2024-01",
        request_timeout_seconds=5,
        max_attempts=3,
        retry_backoff_seconds=0,
        small_dataset_threshold=10,
        medium_dataset_threshold=50,
        large_dataset_threshold=100,
        small_batch_size=3,
        medium_batch_size=2,
        large_batch_size=2,
        huge_batch_size=1,
        inter_batch_delay_seconds=0,
        background_threshold=50,
        job_retention_seconds=3600,
        job_cleanup_interval_seconds=1800,
        job_time_budget_seconds=300,
        job_poll_seconds=0.01,
        import_tag="product_csv_import",
        row_repair_enabled=True,
        dry_run_preview_rows=25,
    )


@pytest.fixture()
def tracker(test_settings: Settings) -> JobTracker:
    session_factory = build_session_factory(test_settings.database_url)
    return JobTracker(session_factory, retention_seconds=test_settings.job_retention_seconds)


@pytest.fixture()
def fake_remote() -> FakeRemote:
    return FakeRemote()
