"""Data models for Tech Roadmap."""

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any

from tech_roadmap.normalize import normalize_t_shirt_size

DATASOURCE_TYPES = ("csv", "azure-devops")

QUERY_MODES = ("simple", "advanced")
QUERY_TEMPLATES = ("epics-features-active", "stories-active", "recently-changed")
QUERY_TYPES = ("wiql", "saved")
MISSING_DATE_STRATEGIES = ("fallback", "skip", "unplanned")

DEFAULT_REFRESH_MINUTES = 15
DEFAULT_MAX_ITEMS = 500


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


@dataclass
class RoadmapItem:
    """A single work item on the roadmap, in the canonical schema."""

    id: str = ""
    title: str = ""
    url: str = ""
    impacted_stakeholders: str = ""
    submitter_name: str = ""
    submitter_department: str = ""
    submitter_priority: str = ""
    short_description: str = ""
    long_description: str = ""
    criticality: str = ""
    disposition: str = ""
    executive_sponsor: str = ""
    start_date: str = ""
    end_date: str = ""
    requested_delivery_date: str = ""
    t_shirt_size: str = ""  # "XS" | "S" | "M" | "L" | ""
    pillar: str = ""
    region: str = ""  # "; "-joined region names
    expense_type: str = ""
    point_of_contact: str = ""
    lead: str = ""
    tags: str = ""

    def to_dict(self) -> dict[str, str]:
        return {_camel(f.name): getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RoadmapItem":
        """Build an item from a camelCase dict, coercing missing values to ``""``."""
        values = {}
        for f in fields(cls):
            raw = data.get(_camel(f.name))
            values[f.name] = "" if raw is None else str(raw)
        values["t_shirt_size"] = normalize_t_shirt_size(values["t_shirt_size"])
        return cls(**values)


# Canonical field names (camelCase) in the order used by CSV export.
ROADMAP_ITEM_FIELDS = [_camel(f.name) for f in fields(RoadmapItem)]


def _clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _choice(value: Any, options: tuple[str, ...]) -> str:
    return value if value in options else options[0]


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


@dataclass
class AzureDevopsConfig:
    """Azure DevOps datasource settings for one roadmap."""

    organization_url: str = ""
    project: str = ""
    team: str | None = None
    query_mode: str = "simple"  # "simple" | "advanced"
    query_template: str = "epics-features-active"
    area_path: str = ""
    work_item_types: list[str] = field(default_factory=list)
    include_closed: bool = False
    stakeholder_tag_prefix: str = "Stakeholder:"
    region_tag_prefix: str = "Region:"
    query_type: str = "wiql"  # "wiql" | "saved"
    query_text: str = ""
    refresh_minutes: int | None = None
    max_items: int | None = None
    missing_date_strategy: str = "fallback"  # "fallback" | "skip" | "unplanned"
    field_map: dict[str, str] = field(default_factory=dict)

    @classmethod
    def sanitize(cls, raw: dict[str, Any] | None) -> "AzureDevopsConfig":
        """Coerce untrusted JSON (camelCase keys) into a config.

        Unknown enum values fall back to their defaults and values of the
        wrong type are dropped, so the result is always safe to store.
        """
        raw = raw if isinstance(raw, dict) else {}
        work_item_types = raw.get("workItemTypes")
        field_map = raw.get("fieldMap")
        team = raw.get("team")
        return cls(
            organization_url=_clean_str(raw.get("organizationUrl")),
            project=_clean_str(raw.get("project")),
            team=team.strip() or None if isinstance(team, str) else None,
            query_mode=_choice(raw.get("queryMode"), QUERY_MODES),
            query_template=_choice(raw.get("queryTemplate"), QUERY_TEMPLATES),
            area_path=_clean_str(raw.get("areaPath")),
            work_item_types=[
                value.strip()
                for value in (work_item_types if isinstance(work_item_types, list) else [])
                if isinstance(value, str) and value.strip()
            ],
            include_closed=raw.get("includeClosed") is True,
            stakeholder_tag_prefix=_clean_str(raw.get("stakeholderTagPrefix")) or "Stakeholder:",
            region_tag_prefix=_clean_str(raw.get("regionTagPrefix")) or "Region:",
            query_type=_choice(raw.get("queryType"), QUERY_TYPES),
            query_text=_clean_str(raw.get("queryText")),
            refresh_minutes=_optional_int(raw.get("refreshMinutes")),
            max_items=_optional_int(raw.get("maxItems")),
            missing_date_strategy=_choice(raw.get("missingDateStrategy"), MISSING_DATE_STRATEGIES),
            field_map={
                key: value.strip()
                for key, value in (field_map if isinstance(field_map, dict) else {}).items()
                if key in ROADMAP_ITEM_FIELDS and isinstance(value, str) and value.strip()
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {_camel(f.name): getattr(self, f.name) for f in fields(self)}

    def validate(self) -> list[str]:
        """Validate configuration values. Returns list of error messages."""
        from tech_roadmap.azure_client import normalize_organization_url

        errors: list[str] = []
        if not self.organization_url:
            errors.append("Organization URL is required")
        elif normalize_organization_url(self.organization_url) is None:
            errors.append("Organization URL must be an http(s) URL such as https://dev.azure.com/org")
        if not self.project:
            errors.append("Project is required")
        if self.query_mode == "advanced" and not self.query_text:
            if self.query_type == "saved":
                errors.append("Saved query id is required in advanced mode")
            else:
                errors.append("WIQL query is required in advanced mode")
        return errors

    @property
    def effective_refresh_minutes(self) -> int:
        minutes = self.refresh_minutes if self.refresh_minutes is not None else DEFAULT_REFRESH_MINUTES
        return min(60, max(5, minutes))

    @property
    def effective_max_items(self) -> int:
        limit = self.max_items if self.max_items is not None else DEFAULT_MAX_ITEMS
        return min(2000, max(1, limit))


@dataclass
class DatasourceRecord:
    """Stored datasource state for one roadmap."""

    roadmap_id: str
    type: str = "csv"
    config: dict[str, Any] = field(default_factory=dict)
    encrypted_secret: str | None = None
    last_snapshot: list[RoadmapItem] | None = None
    last_snapshot_at: datetime | None = None
    last_sync_at: datetime | None = None
    last_sync_duration_ms: int | None = None
    last_sync_item_count: int | None = None
    last_sync_error: str | None = None

    @property
    def has_snapshot(self) -> bool:
        return self.last_snapshot is not None and self.last_snapshot_at is not None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class DatasourceSummary:
    """What callers may see of a datasource record. Never carries the secret."""

    type: str
    config: AzureDevopsConfig | None
    has_secret: bool
    last_sync_at: datetime | None = None
    last_sync_duration_ms: int | None = None
    last_sync_item_count: int | None = None
    last_sync_error: str | None = None
    last_snapshot_at: datetime | None = None

    @classmethod
    def from_record(cls, record: DatasourceRecord) -> "DatasourceSummary":
        return cls(
            type=record.type,
            config=AzureDevopsConfig.sanitize(record.config) if record.type == "azure-devops" else None,
            has_secret=bool(record.encrypted_secret),
            last_sync_at=record.last_sync_at,
            last_sync_duration_ms=record.last_sync_duration_ms,
            last_sync_item_count=record.last_sync_item_count,
            last_sync_error=record.last_sync_error,
            last_snapshot_at=record.last_snapshot_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "config": self.config.to_dict() if self.config else None,
            "hasSecret": self.has_secret,
            "lastSyncAt": _iso(self.last_sync_at),
            "lastSyncDurationMs": self.last_sync_duration_ms,
            "lastSyncItemCount": self.last_sync_item_count,
            "lastSyncError": self.last_sync_error,
            "lastSnapshotAt": _iso(self.last_snapshot_at),
        }


@dataclass
class FetchResult:
    """Items returned to a caller, with cache status flags."""

    items: list[RoadmapItem]
    stale: bool = False
    truncated: bool = False
    warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "stale": self.stale,
            "truncated": self.truncated,
            "warning": self.warning,
        }


@dataclass
class Project:
    id: str
    name: str
    state: str = ""
    url: str = ""


@dataclass
class Comment:
    id: int
    text: str
    author: str = ""
    created_date: str | None = None
    revised_date: str | None = None


@dataclass
class RelatedItem:
    id: int
    title: str
    state: str
    url: str
    created_date: str | None = None
    changed_date: str | None = None
    resolved_date: str | None = None
    closed_date: str | None = None
    target_date: str | None = None


@dataclass
class WorkItemLookup:
    """Coordinates parsed from a work item URL, plus details when fetched."""

    organization_url: str
    project: str
    id: str
    work_item_type: str | None = None
    area_path: str | None = None
    item: RoadmapItem | None = None


@dataclass
class ValidationReport:
    """Result of a dry-run config validation. Warnings never block a fetch."""

    warnings: list[str] = field(default_factory=list)
    missing_fields: list[str] = field(default_factory=list)
    missing_field_keys: list[str] = field(default_factory=list)


@dataclass
class DebugPayload:
    """Raw Azure DevOps responses for diagnosing field mapping."""

    config: AzureDevopsConfig
    wiql: str
    fields: list[str]
    sample_ids: list[int]
    total_work_items: int
    wiql_response: Any
    batch_response: Any | None


def camel_case_dict(obj: Any) -> dict[str, Any]:
    """Serialize a dataclass to a JSON-ready dict with camelCase keys."""
    result: dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if hasattr(value, "to_dict"):
            value = value.to_dict()
        result[_camel(f.name)] = value
    return result
