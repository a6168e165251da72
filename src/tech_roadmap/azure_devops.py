"""Azure DevOps datasource: queries, item fetching and drill-down lookups."""

import logging
import re
from dataclasses import dataclass
from urllib.parse import unquote, urlparse

from tech_roadmap.azure_client import (
    DEFAULT_TIMEOUT,
    AzureConnection,
    AzureDevopsClient,
    normalize_organization_url,
)
from tech_roadmap.azure_fields import (
    WorkItemFields,
    build_field_map,
    collect_fields,
    map_work_item,
)
from tech_roadmap.exceptions import (
    DatasourceError,
    InvalidConfigError,
    InvalidQueryError,
    InvalidUrlError,
    UnreachableError,
)
from tech_roadmap.models import (
    ROADMAP_ITEM_FIELDS,
    AzureDevopsConfig,
    Comment,
    DebugPayload,
    Project,
    RelatedItem,
    RoadmapItem,
    ValidationReport,
    WorkItemLookup,
)

logger = logging.getLogger(__name__)

BATCH_SIZE = 200
VALIDATION_SAMPLE_SIZE = 10
RELATED_LINK_TYPE = "System.LinkTypes.Related"

TEMPLATE_WORK_ITEM_TYPES = {
    "epics-features-active": ["Epic", "Feature"],
    "stories-active": ["User Story", "Product Backlog Item"],
    "recently-changed": ["Epic", "Feature", "User Story", "Product Backlog Item"],
}

RELATED_FIELDS = [
    "System.Title",
    "System.State",
    "System.CreatedDate",
    "System.ChangedDate",
    "Microsoft.VSTS.Common.ResolvedDate",
    "Microsoft.VSTS.Common.ClosedDate",
    "Microsoft.VSTS.Scheduling.TargetDate",
]

# Canonical fields that are filled in even without a mapping.
_DERIVED_FIELDS = {"id", "title", "url", "startDate", "endDate"}

_RELATION_ID_RE = re.compile(r"workItems/(\d+)", re.IGNORECASE)


@dataclass
class AzureFetchResult:
    items: list[RoadmapItem]
    truncated: bool = False
    warning: str | None = None


def _quote_wiql(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_simple_wiql(config: AzureDevopsConfig) -> str:
    """Build the WIQL for simple query mode from the template and filters."""
    types = config.work_item_types or TEMPLATE_WORK_ITEM_TYPES[config.query_template]
    where = [f"[System.WorkItemType] IN ({', '.join(_quote_wiql(t) for t in types)})"]
    if not config.include_closed:
        where.append("[System.State] <> 'Closed'")
    if config.query_template == "recently-changed":
        where.append("[System.ChangedDate] >= @today - 90")
    if config.area_path:
        where.append(f"[System.AreaPath] UNDER {_quote_wiql(config.area_path)}")
    return (
        "SELECT [System.Id] FROM WorkItems WHERE "
        + " AND ".join(where)
        + " ORDER BY [System.ChangedDate] DESC"
    )


def parse_work_item_url(url: str) -> tuple[str, str, str]:
    """Split a work item URL into (organization URL, project, id).

    Accepts ``https://dev.azure.com/{org}/{project}/_workitems/edit/{id}``
    and ``https://{org}.visualstudio.com/{project}/_workitems/edit/{id}``.

    Raises:
        InvalidUrlError: If the URL does not have that shape
    """
    parsed = urlparse((url or "").strip())
    host = (parsed.hostname or "").lower()
    parts = [part for part in parsed.path.split("/") if part]
    org = project = item_id = ""
    if parsed.scheme in ("http", "https"):
        if host.endswith("visualstudio.com") and len(parts) >= 2:
            org, project, item_id = host.split(".")[0], parts[0], parts[-1]
        elif host == "dev.azure.com" and len(parts) >= 3:
            org, project, item_id = parts[0], parts[1], parts[-1]
    if not org or not project or not item_id.isdigit():
        raise InvalidUrlError("Unable to parse work item URL.")
    return f"https://dev.azure.com/{org}", unquote(project), item_id


class AzureDevopsSource:
    """Adapter from Azure DevOps work items to canonical roadmap items."""

    def __init__(self, client: AzureDevopsClient | None = None, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.client = client or AzureDevopsClient()
        self.timeout = timeout

    def connect(self, config: AzureDevopsConfig, pat: str) -> AzureConnection:
        """Build the connection context for a config.

        Raises:
            InvalidConfigError: If the config is incomplete
        """
        errors = config.validate()
        if errors:
            raise InvalidConfigError(f"Azure DevOps configuration is incomplete: {'; '.join(errors)}")
        return AzureConnection(
            organization_url=normalize_organization_url(config.organization_url),
            project=config.project,
            pat=pat,
            timeout=self.timeout,
        )

    def build_wiql(self, connection: AzureConnection, config: AzureDevopsConfig) -> str:
        if config.query_mode != "advanced":
            return build_simple_wiql(config)
        if config.query_type != "saved":
            return config.query_text
        saved = self.client.get_saved_query(connection, config.query_text)
        wiql = (saved.get("wiql") or "").strip()
        if not wiql:
            raise InvalidQueryError(f"Saved query {config.query_text} has no WIQL.")
        return wiql

    def _query_ids(self, connection: AzureConnection, wiql: str) -> tuple[list[int], dict]:
        response = self.client.run_wiql(connection, wiql)
        ids = [
            entry["id"]
            for entry in response.get("workItems") or []
            if isinstance(entry, dict) and isinstance(entry.get("id"), int)
        ]
        return ids, response

    def list_projects(self, organization_url: str, pat: str) -> list[Project]:
        """List the projects visible to the PAT.

        Raises:
            AuthenticationError: If the PAT is missing or rejected
            UnreachableError: If the organization URL is invalid or unreachable
        """
        normalized = normalize_organization_url(organization_url)
        if not normalized:
            raise UnreachableError("Organization URL is required.")
        data = self.client.list_projects(normalized, pat, self.timeout)
        projects = []
        for entry in data.get("value") or []:
            name = entry.get("name")
            if name:
                projects.append(
                    Project(
                        id=str(entry.get("id", "")),
                        name=name,
                        state=entry.get("state", ""),
                        url=entry.get("url", ""),
                    )
                )
        logger.info("Found %d projects in %s", len(projects), normalized)
        return projects

    def fetch_items(self, config: AzureDevopsConfig, pat: str) -> AzureFetchResult:
        """Run the configured query and map the results to roadmap items.

        Raises:
            InvalidConfigError: If the config is incomplete
            DatasourceError: If any Azure DevOps call fails
        """
        connection = self.connect(config, pat)
        wiql = self.build_wiql(connection, config)
        ids, _ = self._query_ids(connection, wiql)

        max_items = config.effective_max_items
        truncated = len(ids) > max_items
        ids = ids[:max_items]
        logger.info(
            "WIQL returned %d work items for %s/%s%s",
            len(ids),
            connection.organization_url,
            connection.project,
            " (truncated)" if truncated else "",
        )

        fields = collect_fields(config)
        items: list[RoadmapItem] = []
        skipped = 0
        for start in range(0, len(ids), BATCH_SIZE):
            batch = self.client.get_work_items_batch(connection, ids[start:start + BATCH_SIZE], fields)
            for work_item in batch.get("value") or []:
                mapped = map_work_item(connection, config, work_item)
                if mapped is None:
                    skipped += 1
                else:
                    items.append(mapped)

        notes = []
        if truncated:
            notes.append(f"Showing the first {max_items} work items.")
        if skipped:
            notes.append(f"{skipped} work items skipped because they have no start or end date.")
        if config.missing_date_strategy == "unplanned":
            unplanned = sum(1 for item in items if not item.start_date)
            if unplanned:
                notes.append(f"{unplanned} work items have no planned dates.")
        return AzureFetchResult(items=items, truncated=truncated, warning=" ".join(notes) or None)

    def resolve_work_item(
        self,
        url: str,
        pat: str | None,
        config: AzureDevopsConfig | None = None,
    ) -> WorkItemLookup:
        """Look up the work item behind a URL.

        Without a PAT only the parsed coordinates are returned.

        Raises:
            InvalidUrlError: If the URL is not a work item URL
            DatasourceError: If the lookup fails
        """
        organization_url, project, item_id = parse_work_item_url(url)
        lookup = WorkItemLookup(organization_url=organization_url, project=project, id=item_id)
        if not pat:
            return lookup

        if config is None:
            config = AzureDevopsConfig(organization_url=organization_url, project=project)
        connection = AzureConnection(organization_url, project, pat, self.timeout)
        fields = collect_fields(config) + ["System.WorkItemType", "System.AreaPath"]
        data = self.client.get_work_item(connection, item_id, fields=fields)
        work_item_fields = WorkItemFields(data.get("fields"))
        lookup.work_item_type = work_item_fields.text("System.WorkItemType") or None
        lookup.area_path = work_item_fields.text("System.AreaPath") or None
        lookup.item = map_work_item(connection, config, {"id": data.get("id", item_id), "fields": data.get("fields")})
        return lookup

    def fetch_comments(self, connection: AzureConnection, work_item_id: str) -> list[Comment]:
        data = self.client.get_comments(connection, work_item_id)
        comments = []
        for entry in data.get("comments") or []:
            author = entry.get("createdBy") or {}
            comments.append(
                Comment(
                    id=entry.get("id", 0),
                    text=entry.get("text") or "",
                    author=author.get("displayName") or author.get("uniqueName") or "",
                    created_date=entry.get("createdDate"),
                    revised_date=entry.get("revisedDate"),
                )
            )
        return comments

    def fetch_related_items(self, connection: AzureConnection, work_item_id: str) -> list[RelatedItem]:
        data = self.client.get_work_item(connection, work_item_id, expand_relations=True)
        related_ids = []
        for relation in data.get("relations") or []:
            if relation.get("rel") != RELATED_LINK_TYPE:
                continue
            match = _RELATION_ID_RE.search(relation.get("url") or "")
            if match:
                related_ids.append(int(match.group(1)))
        if not related_ids:
            return []

        batch = self.client.get_work_items_batch(connection, related_ids, RELATED_FIELDS)
        related = []
        for entry in batch.get("value") or []:
            if not isinstance(entry, dict) or not isinstance(entry.get("id"), int):
                continue
            fields = entry.get("fields") or {}

            def text(reference: str) -> str | None:
                value = fields.get(reference)
                return value if isinstance(value, str) else None

            related.append(
                RelatedItem(
                    id=entry["id"],
                    title=text("System.Title") or f"Work Item {entry['id']}",
                    state=text("System.State") or "Unknown",
                    url=connection.work_item_url(entry["id"]),
                    created_date=text("System.CreatedDate"),
                    changed_date=text("System.ChangedDate"),
                    resolved_date=text("Microsoft.VSTS.Common.ResolvedDate"),
                    closed_date=text("Microsoft.VSTS.Common.ClosedDate"),
                    target_date=text("Microsoft.VSTS.Scheduling.TargetDate"),
                )
            )
        return related

    def validate_config(self, config: AzureDevopsConfig, pat: str) -> ValidationReport:
        """Dry-run a config: run the query, then check the field map on a small sample.

        Raises:
            InvalidConfigError: If the config is incomplete
            DatasourceError: If the organization, project or query is not usable
        """
        connection = self.connect(config, pat)
        wiql = self.build_wiql(connection, config)
        ids, _ = self._query_ids(connection, wiql)
        sample_ids = ids[:VALIDATION_SAMPLE_SIZE]

        report = ValidationReport()
        field_map = build_field_map(config)
        mapped_fields = list(dict.fromkeys(ref for ref in field_map.values() if ref))

        try:
            catalogue = self.client.list_fields(connection)
        except DatasourceError as e:
            logger.warning("Field catalogue lookup failed, falling back to sample checks: %s", e)
        else:
            known = {entry.get("referenceName") for entry in catalogue.get("value") or []}
            report.missing_fields = [ref for ref in mapped_fields if ref not in known]
            if report.missing_fields:
                report.warnings.append(f"Unknown fields: {', '.join(report.missing_fields)}")

        unmapped = [
            name for name in ROADMAP_ITEM_FIELDS
            if name not in field_map and name not in _DERIVED_FIELDS
        ]
        if unmapped:
            report.warnings.append(f"Unmapped fields: {', '.join(unmapped)}")

        if not sample_ids:
            report.warnings.append("No work items returned. Field mapping could not be verified.")
        else:
            fields = [ref for ref in collect_fields(config) if ref not in report.missing_fields]
            batch = self.client.get_work_items_batch(connection, sample_ids, fields)
            samples = [WorkItemFields(entry.get("fields")) for entry in batch.get("value") or []]
            absent = [
                ref for ref in mapped_fields
                if ref not in report.missing_fields and not any(s.has(ref) for s in samples)
            ]
            if absent:
                report.warnings.append(f"Missing mapped fields: {', '.join(absent)}")
            report.missing_fields = report.missing_fields + absent

        report.missing_field_keys = [
            name for name, ref in field_map.items() if ref in report.missing_fields
        ]
        return report

    def fetch_debug_payload(self, config: AzureDevopsConfig, pat: str, sample_size: int) -> DebugPayload:
        """Return the raw WIQL and batch responses for up to ``sample_size`` items."""
        connection = self.connect(config, pat)
        wiql = self.build_wiql(connection, config)
        ids, wiql_response = self._query_ids(connection, wiql)
        sample_ids = ids[:max(1, min(200, sample_size))]
        fields = collect_fields(config)
        batch_response = None
        if sample_ids:
            batch_response = self.client.get_work_items_batch(connection, sample_ids, fields)
        return DebugPayload(
            config=config,
            wiql=wiql,
            fields=fields,
            sample_ids=sample_ids,
            total_work_items=len(ids),
            wiql_response=wiql_response,
            batch_response=batch_response,
        )
