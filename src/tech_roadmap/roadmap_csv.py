"""CSV import and export of roadmap items."""

import csv
import io
import re

from tech_roadmap.exceptions import CsvParseError
from tech_roadmap.models import RoadmapItem
from tech_roadmap.normalize import normalize_field

CSV_HEADERS = [
    "id",
    "title",
    "url",
    "impactedStakeholders",
    "submitterName",
    "submitterDepartment",
    "submitterPriority",
    "shortDescription",
    "longDescription",
    "criticality",
    "disposition",
    "executiveSponsor",
    "startDate",
    "endDate",
    "requestedDeliveryDate",
    "tShirtSize",
    "pillar",
    "region",
    "expenseType",
    "pointOfContact",
    "lead",
]

_NEEDS_QUOTING = re.compile(r'[",\r\n]')


def parse_roadmap_csv(text: str) -> list[RoadmapItem]:
    """Parse CSV text (first row is the header) into roadmap items.

    Raises:
        CsvParseError: If any row cannot be parsed; no partial result is returned
    """
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff"), newline=""), strict=True)
    header: list[str] | None = None
    items: list[RoadmapItem] = []
    try:
        for row in reader:
            if not any(cell.strip() for cell in row):
                continue
            if header is None:
                header = [cell.strip() for cell in row]
                continue
            if len(row) > len(header):
                raise CsvParseError(
                    f"Row {reader.line_num} has {len(row)} values but the header has {len(header)} columns."
                )
            record = dict(zip(header, row))
            record.setdefault("id", "")
            if not record["id"].strip():
                record["id"] = str(len(items))
            normalized = {
                column: normalize_field(column, value)
                for column, value in record.items()
            }
            items.append(RoadmapItem.from_dict(normalized))
    except csv.Error as e:
        raise CsvParseError(f"Malformed CSV near line {reader.line_num}: {e}") from e
    return items


def _escape(value: str) -> str:
    safe = value or ""
    if _NEEDS_QUOTING.search(safe):
        return '"' + safe.replace('"', '""') + '"'
    return safe


def build_csv_from_items(items: list[RoadmapItem]) -> str:
    """Serialize items to CSV with the fixed export header."""
    lines = [",".join(CSV_HEADERS)]
    for item in items:
        data = item.to_dict()
        lines.append(",".join(_escape(data[column]) for column in CSV_HEADERS))
    return "\n".join(lines)
