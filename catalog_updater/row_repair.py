import logging
import re


logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"^\d+$")
_NAME_PART = re.compile(r"^[A-Za-z0-9-]+$")


def normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def join_multiline_rows(text: str) -> str:
    """Fold lines that belong to an unterminated quoted field into one line.

    A line that leaves an odd number of quotes open is joined to the lines
    that follow it, separated by a space, until the quotes balance again.
    """
    fixed: list[str] = []
    pending: list[str] = []
    quote_count = 0

    for line in text.split("\n"):
        quote_count += line.count('"')
        if pending or quote_count % 2 == 1:
            pending.append(line)
            if quote_count % 2 == 0:
                fixed.append(" ".join(pending))
                pending = []
                quote_count = 0
            continue
        fixed.append(line)
        quote_count = 0

    if pending:
        fixed.append(" ".join(pending))
    return "\n".join(fixed)


def split_fields(line: str) -> list[str]:
    """Split on commas outside quotes, keeping the quote characters."""
    fields: list[str] = []
    current: list[str] = []
    in_quotes = False
    for char in line:
        if char == '"':
            in_quotes = not in_quotes
            current.append(char)
        elif char == "," and not in_quotes:
            fields.append("".join(current))
            current = []
        else:
            current.append(char)
    fields.append("".join(current))
    return fields


def _component_column(header_line: str) -> int | None:
    headers = [header.strip().replace('"', "") for header in header_line.split(",")]
    for index, header in enumerate(headers):
        if "component" in header.lower():
            return index
    return None


def _merge_count(following: list[str]) -> int:
    merged = 0
    for raw in following:
        value = raw.strip()
        if _DIGITS.match(value):
            merged += 1
            continue
        if _NAME_PART.match(value) and len(value) > 1:
            merged += 1
        break
    return merged


def reconstruct_components(text: str) -> str:
    """Re-merge component cells split apart by unquoted commas.

    Chemical names such as ``1,1,2,2-Tetrachloroethane`` arrive unquoted and
    spill across columns, leaving a one- or two-digit stub in the component
    column. Following cells are merged while they are digit-only, then at
    most one trailing name-like cell closes the run.

    A legitimate short numeric component followed by a name-like cell is
    indistinguishable from a split name and is merged as well.
    """
    lines = text.split("\n")
    if not lines:
        return text

    column = _component_column(lines[0])
    if column is None:
        return text

    repaired = [lines[0]]
    for row_number, line in enumerate(lines[1:], start=1):
        if not line.strip():
            repaired.append(line)
            continue

        fields = split_fields(line)
        if len(fields) <= column:
            repaired.append(line)
            continue

        stub = fields[column].strip()
        if not (_DIGITS.match(stub) and len(stub) < 3):
            repaired.append(line)
            continue

        following = fields[column + 1 :]
        merge = _merge_count(following)
        if merge == 0:
            repaired.append(line)
            continue

        component = ",".join([stub, *(value.strip() for value in following[:merge])])
        logger.warning(
            "reconstructed truncated component value",
            extra={"row": row_number, "component": component},
        )
        repaired.append(",".join([*fields[:column], f'"{component}"', *fields[column + 1 + merge :]]))

    return "\n".join(repaired)


def repair_table_text(text: str) -> str:
    return reconstruct_components(join_multiline_rows(text))
