import csv
from datetime import date, datetime
from decimal import Decimal
import io
import json
import logging
import re
from urllib.parse import urlsplit

from catalog_updater.errors import FormatError, ValidationError
from catalog_updater.row_repair import normalize_line_endings, repair_table_text
from catalog_updater.schemas import (
    EntityPropertiesRecord,
    FieldUpdate,
    FieldUpdateRecord,
    ParsedTable,
    SchemaVariant,
    TypedRecord,
)


logger = logging.getLogger(__name__)

RawRow = dict[str, str]
NumberedRow = tuple[int, RawRow]
RowError = tuple[int, str]

HANDLE_PATTERN = re.compile(r"[a-z0-9_.\-()&]+")
IDENTIFIER_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
INTEGER_PATTERN = re.compile(r"-?\d+")
DECIMAL_PATTERN = re.compile(r"-?\d*\.?\d+")
COLOR_PATTERN = re.compile(r"#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})")
POSITIVE_INTEGER_PATTERN = re.compile(r"\d+")

BOOLEAN_VALUES = {"true", "false", "1", "0"}
DEFAULT_FIELD_TYPE = "single_line_text_field"
FIELD_TYPES = (
    "single_line_text_field",
    "multi_line_text_field",
    "number_integer",
    "number_decimal",
    "date",
    "date_time",
    "boolean",
    "color",
    "weight",
    "volume",
    "dimension",
    "rating",
    "json",
    "money",
    "file_reference",
    "page_reference",
    "product_reference",
    "variant_reference",
    "collection_reference",
    "url",
)
FIELD_UPDATE_HEADERS = ("handle", "namespace", "key", "value")

# Ordered: longer mojibake sequences must be replaced before their prefixes.
ENCODING_REPAIRS = (
    ("â€™", "'"),
    ("â€˜", "'"),
    ("â€œ", '"'),
    ("â€\u009d", '"'),
    ("\u00e2\u20ac\u201c", "\u2013"),
    ("\u00e2\u20ac\u201d", "\u2014"),
    ("â€", '"'),
    ("Â", ""),
)
MICRO_SIGN_PATTERN = re.compile(r"(?<=[\d\s])[?\ufffd]g(?![A-Za-z])")

# Normalised header spellings accepted for each product-properties column.
PROPERTY_ALIASES: dict[str, tuple[str, ...]] = {
    "handle": ("handle", "producthandle"),
    "title": ("title", "producttitle"),
    "description": ("bodyhtml", "body", "description", "descriptionhtml"),
    "vendor": ("vendor",),
    "product_type": ("type", "producttype"),
    "tags": ("tags",),
    "published": ("published",),
}


def _long_form(label: str, key: str) -> str:
    return f"{label} (product.metafields.custom.{key})"


ATTRIBUTE_HEADERS: dict[str, tuple[str, ...]] = {
    "components": (_long_form("Components", "components"), "components"),
    "shipping_info": (_long_form("Shipping Info", "shipping_info"), "shippingInfo", "Shipping Info"),
    "unit_packs": (_long_form("Unit/Packs", "unit_packs"), "unitPacks", "Unit/Packs"),
    "coa": (_long_form("COA", "coa"), "coa", "COA"),
    "sds": (_long_form("SDS", "sds"), "sds", "SDS"),
    "storage_conditions": (
        _long_form("Storage Conditions", "storage_conditions"),
        "storageConditions",
        "Storage Conditions",
    ),
    "volume": (_long_form("Volume", "volume"), "volume", "Volume"),
    "matrix": (_long_form("Matrix", "matrix"), "matrix", "Matrix"),
    "cas_number": (_long_form("CAS Number", "cas_number"), "casNumber", "CAS Number", "cas_number"),
    "catalog_number": (
        _long_form("Catalog Number", "catalog_number"),
        "catalogNumber",
        "Catalog Number",
        "catalog_number",
    ),
    "dot_hazardous": (
        _long_form("DOT Hazardous", "dot_hazardous"),
        "dotHazardous",
        "DOT Hazardous",
        "dot_hazardous",
    ),
    "expiration_months": (
        _long_form("expiration months", "expiration_months"),
        "expirationMonths",
        "expiration months",
    ),
}


def normalize_header(header: str) -> str:
    return re.sub(r"[^a-z0-9]", "", header.lower())


def fix_encoding(text: str) -> str:
    """Repair UTF-8 text that was decoded as Windows-1252 somewhere upstream."""
    if not text:
        return text
    for broken, fixed in ENCODING_REPAIRS:
        text = text.replace(broken, fixed)
    return MICRO_SIGN_PATTERN.sub("μg", text)


def _is_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
        return True
    except ValueError:
        pass
    try:
        datetime.fromisoformat(value)
        return True
    except ValueError:
        return False


def _is_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return bool(parts.scheme and parts.netloc)


def _is_json(value: str) -> bool:
    try:
        json.loads(value)
    except ValueError:
        return False
    return True


def validate_value(value: str, field_type: str) -> bool:
    if field_type == "number_integer":
        return INTEGER_PATTERN.fullmatch(value) is not None
    if field_type == "number_decimal":
        return DECIMAL_PATTERN.fullmatch(value) is not None
    if field_type == "boolean":
        return value.lower() in BOOLEAN_VALUES
    if field_type in ("date", "date_time"):
        return _is_date(value)
    if field_type == "color":
        return COLOR_PATTERN.fullmatch(value) is not None
    if field_type == "url":
        return _is_url(value)
    if field_type == "json":
        return _is_json(value)
    return True


def _format_decimal(value: str) -> str:
    return format(Decimal(value).normalize(), "f")


def format_value(value: str, field_type: str) -> str:
    """Coerce a validated value into the wire form the remote store expects."""
    value = fix_encoding(value)
    if field_type == "boolean":
        return "true" if value.lower() in ("true", "1") else "false"
    if field_type == "json":
        return json.dumps(json.loads(value), separators=(",", ":"), ensure_ascii=False)
    if field_type == "number_integer":
        return str(int(value))
    if field_type == "number_decimal":
        return _format_decimal(value)
    if field_type == "url" and not urlsplit(value).scheme:
        return f"https://{value}"
    return value


def decode_table(
    raw: bytes,
    *,
    repair: bool = True,
    max_rows: int | None = None,
) -> tuple[list[str], list[NumberedRow], list[RowError]]:
    """Decode CSV bytes into header names, numbered raw rows and row-shape errors.

    Rows with the wrong number of cells are reported as shape errors and
    left out of the returned rows. ``max_rows`` stops reading after that
    many data rows.
    """
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise FormatError(f"CSV is not valid UTF-8: {exc}") from exc
    text = normalize_line_endings(text)
    if repair:
        text = repair_table_text(text)

    reader = csv.reader(io.StringIO(text), delimiter=",", quotechar='"')
    try:
        headers = [header.strip() for header in next(reader, [])]
        rows: list[NumberedRow] = []
        shape_errors: list[RowError] = []
        row_number = 0
        for cells in reader:
            if not any(cell.strip() for cell in cells):
                continue
            if max_rows is not None and row_number >= max_rows:
                logger.info("row limit reached, ignoring remaining rows", extra={"max_rows": max_rows})
                break
            row_number += 1
            if len(cells) != len(headers):
                shape_errors.append(
                    (row_number, f"Row {row_number}: expected {len(headers)} fields but found {len(cells)}")
                )
                continue
            rows.append((row_number, dict(zip(headers, cells))))
    except csv.Error as exc:
        raise FormatError(f"CSV parsing error: {exc}") from exc

    return headers, rows, shape_errors


def detect_variant(headers: list[str]) -> SchemaVariant:
    lowered = [header.lower() for header in headers]
    if all(any(concept in header for header in lowered) for concept in ("handle", "title")):
        return SchemaVariant.ENTITY_PROPERTIES
    if all(required in headers for required in FIELD_UPDATE_HEADERS):
        return SchemaVariant.FIELD_UPDATES
    return SchemaVariant.UNKNOWN


def _handle_errors(handle: str, row_number: int) -> list[str]:
    if not handle:
        return [f"Row {row_number}: Missing required field 'Handle'"]
    if not HANDLE_PATTERN.fullmatch(handle):
        return [f"Row {row_number}: Invalid handle format. Handle contains unsupported characters."]
    return []


def validate_field_update_row(row: RawRow, row_number: int) -> tuple[FieldUpdateRecord | None, list[str]]:
    errors: list[str] = []
    values = {name: (row.get(name) or "").strip() for name in FIELD_UPDATE_HEADERS}

    for name, value in values.items():
        if not value:
            errors.append(f"Row {row_number}: Missing required field '{name}'")

    handle = values["handle"]
    if handle and not HANDLE_PATTERN.fullmatch(handle):
        errors.append(f"Row {row_number}: Invalid handle format. Handle contains unsupported characters.")

    field_type = (row.get("type") or "").strip() or DEFAULT_FIELD_TYPE
    type_is_known = field_type in FIELD_TYPES
    if not type_is_known:
        errors.append(
            f"Row {row_number}: Invalid metafield type '{field_type}'. Valid types: {', '.join(FIELD_TYPES)}"
        )

    for name in ("namespace", "key"):
        if values[name] and not IDENTIFIER_PATTERN.fullmatch(values[name]):
            errors.append(
                f"Row {row_number}: Invalid {name} format. Use letters, numbers, underscores, and hyphens only."
            )

    value = fix_encoding(values["value"])
    if value and type_is_known and not validate_value(value, field_type):
        errors.append(f"Row {row_number}: Invalid value '{value}' for type '{field_type}'")

    if errors:
        return None, errors

    record = FieldUpdateRecord(
        row_number=row_number,
        handle=handle,
        field=FieldUpdate(namespace=values["namespace"], key=values["key"], value=value, type=field_type),
    )
    return record, []


def _lookup(normalized: dict[str, str], aliases: tuple[str, ...]) -> str:
    for alias in aliases:
        value = normalized.get(normalize_header(alias))
        if value:
            return value
    return ""


def validate_properties_row(row: RawRow, row_number: int) -> tuple[EntityPropertiesRecord | None, list[str]]:
    normalized = {normalize_header(header): value or "" for header, value in row.items() if header}

    handle = _lookup(normalized, PROPERTY_ALIASES["handle"]).strip()
    errors = _handle_errors(handle, row_number)

    published_raw = _lookup(normalized, PROPERTY_ALIASES["published"]).strip()
    if published_raw and published_raw.lower() not in BOOLEAN_VALUES:
        errors.append(f"Row {row_number}: Published field must be true/false or 1/0")

    attributes: dict[str, str] = {}
    for name, aliases in ATTRIBUTE_HEADERS.items():
        value = _lookup(normalized, aliases)
        if value:
            attributes[name] = value.strip() if name == "expiration_months" else fix_encoding(value)

    expiration = attributes.get("expiration_months")
    if expiration and not POSITIVE_INTEGER_PATTERN.fullmatch(expiration):
        errors.append(f"Row {row_number}: Expiration months must be a positive integer")

    if errors:
        return None, errors

    record = EntityPropertiesRecord(
        row_number=row_number,
        handle=handle,
        title=fix_encoding(_lookup(normalized, PROPERTY_ALIASES["title"])),
        description=fix_encoding(_lookup(normalized, PROPERTY_ALIASES["description"])),
        vendor=fix_encoding(_lookup(normalized, PROPERTY_ALIASES["vendor"])),
        product_type=fix_encoding(_lookup(normalized, PROPERTY_ALIASES["product_type"])),
        tags=fix_encoding(_lookup(normalized, PROPERTY_ALIASES["tags"])),
        published=published_raw.lower() in ("true", "1") if published_raw else None,
        attributes=attributes,
    )
    return record, []


def validate_rows(
    rows: list[NumberedRow],
    variant: SchemaVariant,
    shape_errors: list[RowError] | None = None,
) -> list[TypedRecord]:
    if variant is SchemaVariant.UNKNOWN:
        raise FormatError("Unknown CSV format. Expected either product properties or metafields format.")

    validator = validate_properties_row if variant is SchemaVariant.ENTITY_PROPERTIES else validate_field_update_row
    records: list[TypedRecord] = []
    errors: list[RowError] = list(shape_errors or [])

    for row_number, row in rows:
        record, row_errors = validator(row, row_number)
        if row_errors:
            errors.extend((row_number, message) for message in row_errors)
            continue
        records.append(record)

    if errors:
        errors.sort(key=lambda error: error[0])
        raise ValidationError([message for _, message in errors])
    return records


def parse_table(raw: bytes, *, repair: bool = True, max_rows: int | None = None) -> ParsedTable:
    """Decode, detect and validate a whole table.

    Raises:
        FormatError: the header set matches neither layout, or the text is
            not parseable as CSV.
        ValidationError: any row failed; carries every row's messages.
    """
    headers, rows, shape_errors = decode_table(raw, repair=repair, max_rows=max_rows)
    variant = detect_variant(headers)
    if variant is SchemaVariant.UNKNOWN:
        raise FormatError("Unknown CSV format. Expected either product properties or metafields format.")

    records = validate_rows(rows, variant, shape_errors)

    logger.info(
        "parsed table",
        extra={"format": variant.value, "rows": len(rows), "records": len(records)},
    )
    return ParsedTable(variant=variant, records=records)
