"""Typed Azure DevOps field values and mapping of work items to roadmap items.

Work item payloads carry arbitrary JSON per field. Values are classified
once into a small set of variants so the mapping code performs explicit
lookups and every variant has exactly one text rendering.
"""

import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Union

from tech_roadmap.azure_client import AzureConnection
from tech_roadmap.models import AzureDevopsConfig, RoadmapItem
from tech_roadmap.normalize import normalize_date, normalize_field

START_DATE_FIELD = "Microsoft.VSTS.Scheduling.StartDate"
FINISH_DATE_FIELD = "Microsoft.VSTS.Scheduling.FinishDate"
TARGET_DATE_FIELD = "Microsoft.VSTS.Scheduling.TargetDate"
CREATED_DATE_FIELD = "System.CreatedDate"
TAGS_FIELD = "System.Tags"

DEFAULT_FIELD_MAP = {
    "title": "System.Title",
    "startDate": START_DATE_FIELD,
    "endDate": FINISH_DATE_FIELD,
    "pillar": "Custom.Pillar",
    "region": "Custom.Region",
    "criticality": "Custom.Criticality",
    "tShirtSize": "Custom.TShirtSize",
    "tags": TAGS_FIELD,
}

BASE_FIELDS = [
    "System.Id",
    "System.Title",
    CREATED_DATE_FIELD,
    TARGET_DATE_FIELD,
    START_DATE_FIELD,
    FINISH_DATE_FIELD,
]

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}(T[\d:.]+(Z|[+-]\d{2}:?\d{2})?)?$")


@dataclass(frozen=True)
class MissingValue:
    def as_text(self) -> str:
        return ""


@dataclass(frozen=True)
class TextValue:
    value: str

    def as_text(self) -> str:
        return self.value


@dataclass(frozen=True)
class DateValue:
    value: date

    def as_text(self) -> str:
        return self.value.isoformat()


@dataclass(frozen=True)
class IdentityValue:
    """An identity reference such as ``System.AssignedTo``."""

    display_name: str
    unique_name: str = ""

    def as_text(self) -> str:
        return self.display_name or self.unique_name


@dataclass(frozen=True)
class NumberValue:
    value: float

    def as_text(self) -> str:
        if float(self.value).is_integer():
            return str(int(self.value))
        return str(self.value)


FieldValue = Union[MissingValue, TextValue, DateValue, IdentityValue, NumberValue]


def parse_field_value(raw: Any) -> FieldValue:
    """Classify a raw JSON field value."""
    if raw is None:
        return MissingValue()
    if isinstance(raw, bool):
        return TextValue("true" if raw else "false")
    if isinstance(raw, (int, float)):
        return NumberValue(raw)
    if isinstance(raw, dict):
        if "displayName" in raw or "uniqueName" in raw:
            return IdentityValue(
                display_name=str(raw.get("displayName") or ""),
                unique_name=str(raw.get("uniqueName") or ""),
            )
        name = raw.get("name") or raw.get("value")
        return TextValue(str(name)) if name is not None else MissingValue()
    if isinstance(raw, list):
        parts = [parse_field_value(entry).as_text() for entry in raw]
        return TextValue("; ".join(part for part in parts if part))
    text = str(raw).strip()
    if not text:
        return MissingValue()
    if _ISO_DATE_RE.match(text):
        try:
            return DateValue(date.fromisoformat(text[:10]))
        except ValueError:
            pass
    return TextValue(text)


class WorkItemFields:
    """Read-only view over a work item's ``fields`` payload."""

    def __init__(self, raw: dict[str, Any] | None) -> None:
        self._raw = raw if isinstance(raw, dict) else {}

    def has(self, reference: str) -> bool:
        return reference in self._raw

    def get(self, reference: str | None) -> FieldValue:
        if not reference:
            return MissingValue()
        return parse_field_value(self._raw.get(reference))

    def text(self, reference: str | None) -> str:
        return self.get(reference).as_text()


def build_field_map(config: AzureDevopsConfig) -> dict[str, str]:
    return {**DEFAULT_FIELD_MAP, **config.field_map}


def collect_fields(config: AzureDevopsConfig) -> list[str]:
    """Remote fields to request for a config, without duplicates."""
    fields = list(BASE_FIELDS)
    for reference in build_field_map(config).values():
        if reference and reference not in fields:
            fields.append(reference)
    return fields


def _extract_prefixed_tags(raw_tags: str, prefix: str) -> str:
    wanted = prefix.strip().lower()
    values = []
    for tag in raw_tags.split(";"):
        trimmed = tag.strip()
        if not wanted:
            values.append(trimmed)
        elif trimmed.lower().startswith(wanted):
            values.append(trimmed[len(wanted):].strip())
    return ", ".join(value for value in values if value)


def map_work_item(
    connection: AzureConnection,
    config: AzureDevopsConfig,
    work_item: dict[str, Any],
) -> RoadmapItem | None:
    """Map a work item payload to a roadmap item.

    Returns None when ``missing_date_strategy`` is ``skip`` and the item
    lacks a start or end date.
    """
    field_map = build_field_map(config)
    fields = WorkItemFields(work_item.get("fields"))
    item_id = str(work_item.get("id", ""))
    strategy = config.missing_date_strategy

    def date_of(*references: str | None) -> str:
        for reference in references:
            value = normalize_date(fields.text(reference))
            if value:
                return value
        return ""

    start = date_of(field_map.get("startDate"), START_DATE_FIELD)
    end = date_of(field_map.get("endDate"), FINISH_DATE_FIELD)
    if strategy == "fallback":
        start = start or date_of(CREATED_DATE_FIELD)
        end = end or date_of(TARGET_DATE_FIELD) or start
    elif strategy == "skip" and (not start or not end):
        return None
    if not end:
        end = start

    values: dict[str, str] = {}
    for name, reference in field_map.items():
        values[name] = fields.text(reference)

    for name, prefix in (
        ("impactedStakeholders", config.stakeholder_tag_prefix),
        ("region", config.region_tag_prefix),
    ):
        if field_map.get(name) == TAGS_FIELD and values.get(name):
            values[name] = _extract_prefixed_tags(values[name], prefix)

    values.update(
        id=item_id,
        title=values.get("title") or f"Work Item {item_id}",
        url=values.get("url") or connection.work_item_url(item_id),
        startDate=start,
        endDate=end,
    )
    return RoadmapItem.from_dict({name: normalize_field(name, value) for name, value in values.items()})
