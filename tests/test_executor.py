import json

import pytest

from catalog_updater.batching import BatchPolicy
from catalog_updater.errors import RateLimitedError, RemoteServiceError
from catalog_updater.executor import BatchExecutor, attribute_field_updates, components_json, merge_tags
from catalog_updater.job_store import JobTracker
from catalog_updater.schemas import EntityPropertiesRecord, ErrorKind, FieldUpdate, SchemaVariant
from tests.conftest import FakeRemote, no_sleep


def _executor(remote: FakeRemote, **kwargs) -> BatchExecutor:
    kwargs.setdefault("sleep", no_sleep)
    kwargs.setdefault("retry_backoff_seconds", 0)
    return BatchExecutor(remote, BatchPolicy(inter_batch_delay_seconds=0), **kwargs)


def _fields(*pairs: tuple[str, str, str]) -> list[FieldUpdate]:
    return [FieldUpdate(namespace="custom", key=key, value=value, type=field_type) for key, value, field_type in pairs]


def test_components_json_variants() -> None:
    assert components_json("a;b;c") == '["a","b","c"]'
    assert components_json(" a ; ;b ") == '["a","b"]'
    assert components_json('["x", "y"]') == '["x", "y"]'
    assert components_json("Benzene") == '["Benzene"]'


def test_reference_links_fall_back_to_text() -> None:
    updates = attribute_field_updates({"coa": "https://example.com/coa.pdf", "sds": "See label"})
    by_key = {update.key: update for update in updates}

    assert by_key["coa"].type == "url"
    assert by_key["sds"].type == "single_line_text_field"


def test_merge_tags_is_idempotent() -> None:
    once = merge_tags(("existing",), "winter, sports", "product_csv_import")
    assert once == ["existing", "winter", "sports", "product_csv_import"]
    assert merge_tags(once, "winter, sports", "product_csv_import") == once


@pytest.mark.asyncio
async def test_missing_handle_is_reported_not_raised(fake_remote: FakeRemote) -> None:
    fake_remote.add("present")
    groups = {
        "present": _fields(("color", "red", "single_line_text_field")),
        "absent": _fields(("color", "blue", "single_line_text_field")),
    }

    summary = await _executor(fake_remote).run(groups, SchemaVariant.FIELD_UPDATES)

    assert summary.processed == 2
    assert [result.handle for result in summary.success] == ["present"]
    assert summary.errors[0].error_kind is ErrorKind.NOT_FOUND
    assert summary.errors[0].message == "Product with handle 'absent' not found"


@pytest.mark.asyncio
async def test_field_values_are_formatted_and_import_tag_added(fake_remote: FakeRemote) -> None:
    fake_remote.add("board")
    groups = {
        "board": _fields(
            ("eco", "1", "boolean"),
            ("specs", '{"a": 1}', "json"),
        )
    }

    summary = await _executor(fake_remote).run(groups, SchemaVariant.FIELD_UPDATES)

    assert summary.success[0].to_dict() == {"handle": "board", "title": "Board", "fields_updated": 2}
    operation, (handle, sent) = fake_remote.mutations()[0]
    assert operation == "set_fields"
    assert [item.value for item in sent] == ["true", '{"a":1}']
    tag_call = fake_remote.mutations()[1]
    assert tag_call[0] == "update_properties"
    assert tag_call[1][1].tags == ["product_csv_import"]


@pytest.mark.asyncio
async def test_import_tag_not_reapplied(fake_remote: FakeRemote) -> None:
    fake_remote.add("board", tags=("product_csv_import",))
    groups = {"board": _fields(("color", "red", "single_line_text_field"))}

    await _executor(fake_remote).run(groups, SchemaVariant.FIELD_UPDATES)

    assert [call[0] for call in fake_remote.mutations()] == ["set_fields"]


@pytest.mark.asyncio
async def test_failed_tag_does_not_fail_the_handle(fake_remote: FakeRemote) -> None:
    fake_remote.add("board")
    fake_remote.reject("update_properties", "board", "tags locked")
    groups = {"board": _fields(("color", "red", "single_line_text_field"))}

    summary = await _executor(fake_remote).run(groups, SchemaVariant.FIELD_UPDATES)

    assert len(summary.success) == 1
    assert summary.errors == []


@pytest.mark.asyncio
async def test_rate_limited_lookup_is_retried(fake_remote: FakeRemote) -> None:
    fake_remote.add("board")
    fake_remote.fail("fetch_by_handle", "board", RateLimitedError("throttled"), RateLimitedError("throttled"))
    groups = {"board": _fields(("color", "red", "single_line_text_field"))}

    summary = await _executor(fake_remote, max_attempts=3).run(groups, SchemaVariant.FIELD_UPDATES)

    assert len(summary.success) == 1
    lookups = [call for call in fake_remote.calls if call[0] == "fetch_by_handle"]
    assert len(lookups) == 3


@pytest.mark.asyncio
async def test_persistent_rate_limit_becomes_rate_limited_error(fake_remote: FakeRemote) -> None:
    fake_remote.add("board")
    fake_remote.fail("set_fields", "board", *(Exception("HTTP 429 Too Many Requests") for _ in range(3)))
    groups = {"board": _fields(("color", "red", "single_line_text_field"))}

    summary = await _executor(fake_remote, max_attempts=3).run(groups, SchemaVariant.FIELD_UPDATES)

    error = summary.errors[0]
    assert error.error_kind is ErrorKind.RATE_LIMITED
    assert error.message.startswith("Rate limit persisted after 3 attempts")


@pytest.mark.asyncio
async def test_non_rate_limit_error_is_not_retried(fake_remote: FakeRemote) -> None:
    fake_remote.add("board")
    fake_remote.fail("fetch_by_handle", "board", RemoteServiceError("HTTP 500: boom"))
    groups = {"board": _fields(("color", "red", "single_line_text_field"))}

    summary = await _executor(fake_remote).run(groups, SchemaVariant.FIELD_UPDATES)

    assert summary.errors[0].error_kind is ErrorKind.UNEXPECTED
    assert summary.errors[0].message == "Processing error: HTTP 500: boom"
    assert len([call for call in fake_remote.calls if call[0] == "fetch_by_handle"]) == 1


@pytest.mark.asyncio
async def test_user_errors_become_remote_mutation_errors(fake_remote: FakeRemote) -> None:
    fake_remote.add("board")
    fake_remote.add("other")
    fake_remote.reject("set_fields", "board", "Value is invalid")
    groups = {
        "board": _fields(("color", "red", "single_line_text_field")),
        "other": _fields(("color", "blue", "single_line_text_field")),
    }

    summary = await _executor(fake_remote).run(groups, SchemaVariant.FIELD_UPDATES)

    assert summary.errors[0].error_kind is ErrorKind.REMOTE_MUTATION
    assert summary.errors[0].message == "Metafield update errors: Value is invalid"
    assert [result.handle for result in summary.success] == ["other"]


@pytest.mark.asyncio
async def test_dry_run_never_mutates(fake_remote: FakeRemote) -> None:
    fake_remote.add("vial")
    groups = {"vial": EntityPropertiesRecord(row_number=1, handle="vial", title="Vial")}

    summary = await _executor(fake_remote).run(groups, SchemaVariant.ENTITY_PROPERTIES, dry_run=True)

    assert fake_remote.mutations() == []
    assert summary.success[0].to_dict() == {
        "handle": "vial",
        "title": "Vial",
        "fields_to_update": 2,
        "dry_run": True,
    }


@pytest.mark.asyncio
async def test_properties_update_sends_status_tags_and_attributes(fake_remote: FakeRemote) -> None:
    fake_remote.add("vial", tags=("existing",))
    record = EntityPropertiesRecord(
        row_number=1,
        handle="vial",
        title="New Vial",
        tags="lab",
        published=False,
        attributes={"components": "a;b;c", "expiration_months": "12"},
    )

    summary = await _executor(fake_remote).run({"vial": record}, SchemaVariant.ENTITY_PROPERTIES)

    _, (_, update) = fake_remote.mutations()[0]
    assert update.status == "DRAFT"
    assert update.tags == ["existing", "lab", "product_csv_import"]
    fields = {item.key: item for item in update.fields}
    assert json.loads(fields["components"].value) == ["a", "b", "c"]
    assert fields["expiration_months"].type == "number_integer"
    assert summary.success[0].title == "New Vial"
    assert summary.success[0].field_count == 4


@pytest.mark.asyncio
async def test_product_user_errors_are_reported(fake_remote: FakeRemote) -> None:
    fake_remote.add("vial")
    fake_remote.reject("update_properties", "vial", "Title can't be blank")
    record = EntityPropertiesRecord(row_number=1, handle="vial", title="x")

    summary = await _executor(fake_remote).run({"vial": record}, SchemaVariant.ENTITY_PROPERTIES)

    assert summary.errors[0].message == "Product update errors: Title can't be blank"


@pytest.mark.asyncio
async def test_time_budget_skips_remaining_batches(fake_remote: FakeRemote) -> None:
    ticks = iter([0.0, 0.0, 10.0])
    handles = [f"h{index}" for index in range(5)]
    for handle in handles:
        fake_remote.add(handle)
    groups = {handle: _fields(("color", "red", "single_line_text_field")) for handle in handles}

    executor = _executor(fake_remote, time_budget_seconds=5, clock=lambda: next(ticks))
    summary = await executor.run(groups, SchemaVariant.FIELD_UPDATES)

    assert summary.timed_out is True
    assert summary.processed == 3
    assert [result.handle for result in summary.success] == ["h0", "h1", "h2"]
    assert [result.handle for result in summary.errors] == ["h3", "h4"]
    assert {result.error_kind for result in summary.errors} == {ErrorKind.TIMED_OUT}


@pytest.mark.asyncio
async def test_progress_is_published_after_each_batch(fake_remote: FakeRemote, tracker: JobTracker) -> None:
    handles = [f"h{index}" for index in range(4)]
    for handle in handles[:3]:
        fake_remote.add(handle)
    groups = {handle: _fields(("color", "red", "single_line_text_field")) for handle in handles}
    job_id = tracker.create(total=4)

    seen: list[int] = []
    fake_remote.on_lookup = lambda handle: seen.append(tracker.get(job_id).processed)

    await _executor(fake_remote, tracker=tracker).run(groups, SchemaVariant.FIELD_UPDATES, job_id=job_id)

    assert seen == [0, 0, 0, 3]
    job = tracker.get(job_id)
    assert job.processed == 4
    assert job.progress == 100
    assert len(job.success) == 3
    assert job.errors == [{"handle": "h3", "kind": "not_found", "error": "Product with handle 'h3' not found"}]


@pytest.mark.asyncio
async def test_reaped_job_does_not_stop_processing(fake_remote: FakeRemote, tracker: JobTracker) -> None:
    fake_remote.add("board")
    groups = {"board": _fields(("color", "red", "single_line_text_field"))}

    summary = await _executor(fake_remote, tracker=tracker).run(groups, SchemaVariant.FIELD_UPDATES, job_id=404)

    assert len(summary.success) == 1


@pytest.mark.asyncio
async def test_timed_out_handles_are_published_to_the_job(fake_remote: FakeRemote, tracker: JobTracker) -> None:
    ticks = iter([0.0, 0.0])
    handles = [f"h{index}" for index in range(5)]
    for handle in handles:
        fake_remote.add(handle)
    groups = {handle: _fields(("color", "red", "single_line_text_field")) for handle in handles}
    job_id = tracker.create(total=5)

    executor = _executor(fake_remote, tracker=tracker, time_budget_seconds=5, clock=lambda: next(ticks, 10.0))
    await executor.run(groups, SchemaVariant.FIELD_UPDATES, job_id=job_id)

    job = tracker.get(job_id)
    assert job.processed == 3
    assert job.progress == 60
    assert [error["handle"] for error in job.errors] == ["h3", "h4"]
    assert job.errors[0]["kind"] == "timed_out"
