"""Azure DevOps REST client with retry logic."""

from dataclasses import dataclass
from urllib.parse import quote, urlparse

import requests
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tech_roadmap.exceptions import (
    AuthenticationError,
    DatasourceError,
    InvalidQueryError,
    RateLimitError,
    UnreachableError,
)

DEFAULT_TIMEOUT = 15.0

WIQL_API_VERSION = "7.1-preview.2"
BATCH_API_VERSION = "7.1-preview.1"
WORK_ITEM_API_VERSION = "7.1-preview.3"
COMMENTS_API_VERSION = "7.1-preview.3"
PROJECTS_API_VERSION = "7.1-preview.4"
FIELDS_API_VERSION = "7.1-preview.2"


def normalize_organization_url(value: str) -> str | None:
    """Return the canonical ``https://dev.azure.com/{org}`` form of an org URL.

    Legacy ``{org}.visualstudio.com`` hosts are rewritten; other hosts
    (Azure DevOps Server) are kept as given. Returns None if unparseable.
    """
    trimmed = (value or "").strip()
    if not trimmed:
        return None
    parsed = urlparse(trimmed)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    host = parsed.hostname.lower()
    if host.endswith("visualstudio.com"):
        return f"https://dev.azure.com/{host.split('.')[0]}"
    if host == "dev.azure.com":
        segments = [part for part in parsed.path.split("/") if part]
        if not segments:
            return None
        return f"https://dev.azure.com/{segments[0]}"
    return trimmed.rstrip("/")


@dataclass(frozen=True)
class AzureConnection:
    """Everything needed for one outbound call: where, which project, and as whom."""

    organization_url: str
    project: str
    pat: str
    timeout: float = DEFAULT_TIMEOUT

    @property
    def project_url(self) -> str:
        return f"{self.organization_url}/{quote(self.project, safe='')}"

    def work_item_url(self, work_item_id: int | str) -> str:
        return f"{self.project_url}/_workitems/edit/{work_item_id}"


class AzureDevopsClient:
    """Thin client for the Azure DevOps work item tracking REST API.

    Holds no credentials; each call receives an :class:`AzureConnection`.
    Pass a custom ``session`` in tests to intercept HTTP calls.
    """

    def __init__(self, session: requests.Session | None = None) -> None:
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @retry(
        retry=retry_if_exception_type(RateLimitError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        reraise=True,
    )
    def _request(
        self,
        method: str,
        url: str,
        pat: str,
        timeout: float,
        api_version: str,
        *,
        params: dict | None = None,
        json: dict | None = None,
        action: str = "Azure DevOps request",
    ):
        """Send a request and return the decoded JSON body.

        Raises:
            AuthenticationError: On a missing PAT or HTTP 401/403
            RateLimitError: On HTTP 429 (retried with backoff first)
            InvalidQueryError: On HTTP 400
            UnreachableError: On connection failures and timeouts
            DatasourceError: On any other non-2xx response
        """
        if not pat:
            raise AuthenticationError("Azure DevOps PAT is missing.")
        query = {"api-version": api_version}
        if params:
            query.update(params)
        try:
            response = self.session.request(
                method,
                url,
                params=query,
                json=json,
                auth=("", pat),
                headers={"Accept": "application/json"},
                timeout=timeout,
            )
        except requests.Timeout as e:
            raise UnreachableError(f"{action} timed out after {timeout:g}s.") from e
        except requests.RequestException as e:
            raise UnreachableError(
                f"Cannot connect to Azure DevOps at {url.split('/_apis')[0]}. "
                "Check the organization URL and your network connection."
            ) from e

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(
                f"{action} was rejected ({status}). Check the personal access token."
            )
        if status == 429:
            raise RateLimitError("Rate limited by Azure DevOps. Please wait a moment and try again.")
        if status == 400:
            raise InvalidQueryError(f"{action} failed (400). {response.text}".strip())
        if status >= 400:
            raise DatasourceError(f"{action} failed ({status}). {response.text}".strip())
        try:
            return response.json()
        except ValueError as e:
            raise DatasourceError(f"{action} returned a non-JSON response.") from e

    def list_projects(self, organization_url: str, pat: str, timeout: float = DEFAULT_TIMEOUT) -> dict:
        return self._request(
            "GET",
            f"{organization_url}/_apis/projects",
            pat,
            timeout,
            PROJECTS_API_VERSION,
            action="Project lookup",
        )

    def list_fields(self, connection: AzureConnection) -> dict:
        return self._request(
            "GET",
            f"{connection.organization_url}/_apis/wit/fields",
            connection.pat,
            connection.timeout,
            FIELDS_API_VERSION,
            action="Field lookup",
        )

    def get_saved_query(self, connection: AzureConnection, query_id: str) -> dict:
        return self._request(
            "GET",
            f"{connection.project_url}/_apis/wit/queries/{quote(query_id, safe='')}",
            connection.pat,
            connection.timeout,
            WIQL_API_VERSION,
            params={"$expand": "wiql"},
            action="Saved query lookup",
        )

    def run_wiql(self, connection: AzureConnection, wiql: str) -> dict:
        return self._request(
            "POST",
            f"{connection.project_url}/_apis/wit/wiql",
            connection.pat,
            connection.timeout,
            WIQL_API_VERSION,
            json={"query": wiql},
            action="Azure DevOps WIQL query",
        )

    def get_work_items_batch(self, connection: AzureConnection, ids: list[int], fields: list[str]) -> dict:
        return self._request(
            "POST",
            f"{connection.project_url}/_apis/wit/workitemsbatch",
            connection.pat,
            connection.timeout,
            BATCH_API_VERSION,
            json={"ids": ids, "fields": fields},
            action="Azure DevOps work item batch",
        )

    def get_work_item(
        self,
        connection: AzureConnection,
        work_item_id: int | str,
        fields: list[str] | None = None,
        expand_relations: bool = False,
    ) -> dict:
        params: dict[str, str] = {}
        if expand_relations:
            params["$expand"] = "relations"
        elif fields:
            params["fields"] = ",".join(fields)
        return self._request(
            "GET",
            f"{connection.project_url}/_apis/wit/workitems/{quote(str(work_item_id), safe='')}",
            connection.pat,
            connection.timeout,
            WORK_ITEM_API_VERSION,
            params=params,
            action="Azure DevOps work item request",
        )

    def get_comments(self, connection: AzureConnection, work_item_id: int | str) -> dict:
        return self._request(
            "GET",
            f"{connection.project_url}/_apis/wit/workItems/{quote(str(work_item_id), safe='')}/comments",
            connection.pat,
            connection.timeout,
            COMMENTS_API_VERSION,
            action="Azure DevOps comments request",
        )
