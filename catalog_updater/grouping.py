import logging

from catalog_updater.schemas import (
    EntityPropertiesRecord,
    FieldUpdate,
    FieldUpdateRecord,
    SchemaVariant,
    TypedRecord,
    UpdateGroup,
)


logger = logging.getLogger(__name__)


def group_field_updates(records: list[FieldUpdateRecord]) -> dict[str, list[FieldUpdate]]:
    grouped: dict[str, list[FieldUpdate]] = {}
    for record in records:
        grouped.setdefault(record.handle, []).append(record.field)
    return grouped


def group_properties(records: list[EntityPropertiesRecord]) -> dict[str, EntityPropertiesRecord]:
    grouped: dict[str, EntityPropertiesRecord] = {}
    for record in records:
        if record.handle in grouped:
            # Last write wins; the key keeps its first-seen position.
            logger.debug(
                "duplicate handle replaced by later row",
                extra={"handle": record.handle, "row": record.row_number},
            )
        grouped[record.handle] = record
    return grouped


def group_records(records: list[TypedRecord], variant: SchemaVariant) -> dict[str, UpdateGroup]:
    if variant is SchemaVariant.FIELD_UPDATES:
        return group_field_updates(records)
    if variant is SchemaVariant.ENTITY_PROPERTIES:
        return group_properties(records)
    raise ValueError(f"cannot group records for format '{variant.value}'")
