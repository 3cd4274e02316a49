from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Union


class SchemaVariant(str, Enum):
    ENTITY_PROPERTIES = "products"
    FIELD_UPDATES = "metafields"
    UNKNOWN = "unknown"


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    REMOTE_MUTATION = "remote_mutation"
    RATE_LIMITED = "rate_limited"
    UNEXPECTED = "unexpected"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class FieldUpdate:
    namespace: str
    key: str
    value: str
    type: str = "single_line_text_field"


@dataclass(frozen=True)
class FieldUpdateRecord:
    row_number: int
    handle: str
    field: FieldUpdate


@dataclass(frozen=True)
class EntityPropertiesRecord:
    row_number: int
    handle: str
    title: str = ""
    description: str = ""
    vendor: str = ""
    product_type: str = ""
    tags: str = ""
    published: bool | None = None
    attributes: dict[str, str] = field(default_factory=dict)


TypedRecord = Union[FieldUpdateRecord, EntityPropertiesRecord]
UpdateGroup = Union[list[FieldUpdate], EntityPropertiesRecord]


@dataclass(frozen=True)
class ParsedTable:
    variant: SchemaVariant
    records: list[TypedRecord]


@dataclass(frozen=True)
class RemoteEntity:
    id: str
    handle: str
    title: str
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class UserError:
    message: str
    field: tuple[str, ...] | None = None
    code: str | None = None


@dataclass(frozen=True)
class FieldSetResult:
    applied: list[FieldUpdate]
    user_errors: list[UserError]


@dataclass(frozen=True)
class PropertyUpdate:
    id: str
    title: str | None = None
    description_html: str | None = None
    vendor: str | None = None
    product_type: str | None = None
    tags: list[str] | None = None
    status: str | None = None
    fields: list[FieldUpdate] = field(default_factory=list)

    def field_count(self) -> int:
        scalars = [self.title, self.description_html, self.vendor, self.product_type, self.tags, self.status]
        count = sum(1 for value in scalars if value is not None)
        # All attribute updates travel as one "metafields" entry.
        return count + (1 if self.fields else 0)


@dataclass(frozen=True)
class PropertyUpdateResult:
    entity: RemoteEntity | None
    user_errors: list[UserError]


@dataclass(frozen=True)
class OperationResult:
    handle: str
    status: str
    title: str | None = None
    field_count: int = 0
    error_kind: ErrorKind | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != "error"

    @classmethod
    def success(cls, handle: str, title: str | None, field_count: int) -> "OperationResult":
        return cls(handle=handle, status="success", title=title, field_count=field_count)

    @classmethod
    def would_succeed(cls, handle: str, title: str | None, field_count: int) -> "OperationResult":
        return cls(handle=handle, status="would_succeed", title=title, field_count=field_count)

    @classmethod
    def error(cls, handle: str, kind: ErrorKind, message: str) -> "OperationResult":
        return cls(handle=handle, status="error", error_kind=kind, message=message)

    def to_dict(self) -> dict[str, object]:
        if self.status == "error":
            return {"handle": self.handle, "kind": self.error_kind.value, "error": self.message}
        if self.status == "would_succeed":
            return {
                "handle": self.handle,
                "title": self.title,
                "fields_to_update": self.field_count,
                "dry_run": True,
            }
        return {"handle": self.handle, "title": self.title, "fields_updated": self.field_count}


@dataclass(frozen=True)
class ProcessingSummary:
    total: int
    processed: int
    format: SchemaVariant
    dry_run: bool
    success: list[OperationResult]
    errors: list[OperationResult]
    timed_out: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "processed": self.processed,
            "format": self.format.value,
            "dry_run": self.dry_run,
            "timed_out": self.timed_out,
            "success": [result.to_dict() for result in self.success],
            "errors": [result.to_dict() for result in self.errors],
        }


@dataclass(frozen=True)
class SubmissionResult:
    background: bool
    total: int
    summary: ProcessingSummary | None = None
    job_id: int | None = None
    estimated_minutes: int | None = None


@dataclass(frozen=True)
class JobSnapshot:
    id: int
    kind: str
    status: str
    total: int
    processed: int
    progress: int
    errors: list[dict[str, object]]
    success: list[dict[str, object]]
    options: dict[str, object]
    format: str | None
    result: dict[str, object] | None
    error: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    @property
    def is_terminal(self) -> bool:
        return self.status in {"completed", "failed"}

    def to_status(self) -> dict[str, object]:
        return {
            "id": self.id,
            "status": self.status,
            "progress": self.progress,
            "total": self.total,
            "processed": self.processed,
            "errors": list(self.errors),
            "success": list(self.success),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
            "format": self.format,
            "result": dict(self.result) if self.result is not None else None,
        }
