"""Per-roadmap datasource orchestration and snapshot cache.

A roadmap reads its items either from uploaded CSV text or from an Azure
DevOps query. Azure results are cached as a snapshot on the datasource
record; the snapshot is served while it is younger than the configured
refresh interval, and again (flagged stale) when a live refresh fails.
"""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any

from tech_roadmap.azure_devops import AzureDevopsSource
from tech_roadmap.config import Config
from tech_roadmap.exceptions import ConfigurationError, DatasourceError, InvalidConfigError
from tech_roadmap.models import (
    DATASOURCE_TYPES,
    AzureDevopsConfig,
    Comment,
    DatasourceRecord,
    DatasourceSummary,
    DebugPayload,
    FetchResult,
    Project,
    RelatedItem,
    ValidationReport,
    WorkItemLookup,
)
from tech_roadmap.roadmap_csv import parse_roadmap_csv
from tech_roadmap.secret_store import decrypt_secret, encrypt_secret
from tech_roadmap.store import RecordStore

logger = logging.getLogger(__name__)

STATE_NO_CONFIG = "no-config"
STATE_CSV = "csv"
STATE_AZURE_CONFIGURED = "azure-configured"
STATE_SYNCING = "syncing"
STATE_SYNCED = "synced"
STATE_SYNC_FAILED = "sync-failed"

REFRESH_IN_PROGRESS_WARNING = "A refresh is already in progress. Showing the last synced items."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DatasourceService:
    """Fetches, caches and configures roadmap datasources.

    At most one live Azure DevOps fetch runs per roadmap. It runs on a
    background worker, so it finishes and warms the cache even when the
    request that started it goes away.
    """

    def __init__(
        self,
        store: RecordStore,
        source: AzureDevopsSource | None = None,
        config: Config | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.config = config or Config()
        self.source = source or AzureDevopsSource(timeout=self.config.http_timeout_seconds)
        self._now = now
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="roadmap-sync",
        )
        self._lock = threading.Lock()
        self._in_flight: dict[str, Future] = {}
        self._roadmap_locks: dict[str, threading.Lock] = {}

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _roadmap_lock(self, roadmap_id: str) -> threading.Lock:
        with self._lock:
            return self._roadmap_locks.setdefault(roadmap_id, threading.Lock())

    # Records

    def get_record(self, roadmap_id: str) -> DatasourceRecord:
        """Return the datasource record, creating a CSV one if none exists."""
        record = self.store.get(roadmap_id)
        if record is None:
            self.store.upsert(roadmap_id, {})
            record = self.store.get(roadmap_id)
        return record

    def get_summary(self, roadmap_id: str) -> DatasourceSummary:
        return DatasourceSummary.from_record(self.get_record(roadmap_id))

    def state(self, roadmap_id: str) -> str:
        record = self.store.get(roadmap_id)
        if record is None:
            return STATE_NO_CONFIG
        if record.type != "azure-devops":
            return STATE_CSV
        with self._lock:
            if roadmap_id in self._in_flight:
                return STATE_SYNCING
        if record.last_sync_error:
            return STATE_SYNC_FAILED
        if record.has_snapshot:
            return STATE_SYNCED
        return STATE_AZURE_CONFIGURED

    def update_config(
        self,
        roadmap_id: str,
        type: str,
        config: dict[str, Any] | None,
        secret: str | None = None,
        clear_secret: bool = False,
    ) -> DatasourceSummary:
        """Store a new datasource type and config. Never contacts the remote.

        Raises:
            InvalidConfigError: If the type is unknown or the config is incomplete
            ConfigurationError: If a secret is given but no master secret is set
        """
        if type not in DATASOURCE_TYPES:
            raise InvalidConfigError(f"Unsupported datasource type: {type}")

        if type == "csv":
            values: dict[str, Any] = {
                "type": "csv",
                "config": {},
                "encrypted_secret": None,
                "last_sync_error": None,
            }
        else:
            azure = AzureDevopsConfig.sanitize(config)
            errors = azure.validate()
            if errors:
                raise InvalidConfigError(f"Invalid Azure DevOps configuration: {'; '.join(errors)}")
            values = {"type": type, "config": azure.to_dict(), "last_sync_error": None}
            if clear_secret:
                values["encrypted_secret"] = None
            elif secret and secret.strip():
                values["encrypted_secret"] = encrypt_secret(secret.strip(), self.config)

        with self._roadmap_lock(roadmap_id):
            self.get_record(roadmap_id)
            self.store.upsert(roadmap_id, values)
        logger.info("Updated datasource for roadmap %s (type=%s)", roadmap_id, type)
        return self.get_summary(roadmap_id)

    def set_csv_text(self, roadmap_id: str, text: str) -> int:
        """Store uploaded CSV text after checking it parses. Returns the item count.

        Raises:
            CsvParseError: If the text is not valid roadmap CSV
        """
        items = parse_roadmap_csv(text)
        self.store.set_csv_text(roadmap_id, text)
        logger.info("Stored CSV with %d items for roadmap %s", len(items), roadmap_id)
        return len(items)

    def delete_roadmap(self, roadmap_id: str) -> None:
        with self._roadmap_lock(roadmap_id):
            self.store.delete_by_roadmap(roadmap_id)

    # Items

    def fetch_items(self, roadmap_id: str, force_refresh: bool = False) -> FetchResult:
        """Return the roadmap's items, from cache when fresh.

        Raises:
            CsvParseError: If stored CSV text is malformed
            ConfigurationError: If the Azure DevOps config or secret is unusable
            SecretError: If the stored secret cannot be decrypted
            DatasourceError: If a live fetch fails and there is no snapshot to serve
        """
        record = self.get_record(roadmap_id)
        if record.type != "azure-devops":
            return self._fetch_csv(roadmap_id)

        config = AzureDevopsConfig.sanitize(record.config)
        if not force_refresh and self._is_fresh(record, config):
            logger.debug("Serving cached snapshot for roadmap %s", roadmap_id)
            return FetchResult(items=record.last_snapshot or [], stale=False)

        with self._lock:
            future = self._in_flight.get(roadmap_id)
            joined = future is not None
            if future is None:
                future = self._executor.submit(self._run_sync, roadmap_id)
                self._in_flight[roadmap_id] = future

        if joined and not force_refresh and record.has_snapshot and self._within_stale_ceiling(record):
            logger.info("Refresh in progress for roadmap %s, serving snapshot", roadmap_id)
            return FetchResult(
                items=record.last_snapshot or [],
                stale=True,
                warning=REFRESH_IN_PROGRESS_WARNING,
            )
        return future.result()

    def _run_sync(self, roadmap_id: str) -> FetchResult:
        try:
            return self._sync(roadmap_id)
        finally:
            # Cleared before the future resolves
            with self._lock:
                self._in_flight.pop(roadmap_id, None)

    def _fetch_csv(self, roadmap_id: str) -> FetchResult:
        text = self.store.get_csv_text(roadmap_id) or ""
        return FetchResult(items=parse_roadmap_csv(text) if text else [], stale=False)

    def _is_fresh(self, record: DatasourceRecord, config: AzureDevopsConfig) -> bool:
        if not record.has_snapshot:
            return False
        age = self._now() - record.last_snapshot_at
        return age < timedelta(minutes=config.effective_refresh_minutes)

    def _within_stale_ceiling(self, record: DatasourceRecord) -> bool:
        if self.config.max_stale_minutes is None:
            return True
        age = self._now() - record.last_snapshot_at
        return age <= timedelta(minutes=self.config.max_stale_minutes)

    def _sync(self, roadmap_id: str) -> FetchResult:
        """Run one live fetch and record the outcome. Runs on the worker pool."""
        with self._roadmap_lock(roadmap_id):
            record = self.get_record(roadmap_id)
            if record.type != "azure-devops":
                return self._fetch_csv(roadmap_id)
            config = AzureDevopsConfig.sanitize(record.config)
            if not record.encrypted_secret:
                raise ConfigurationError("Azure DevOps PAT is not configured.")
            pat = decrypt_secret(record.encrypted_secret, self.config)

            logger.info("Syncing roadmap %s from %s/%s", roadmap_id, config.organization_url, config.project)
            started = time.monotonic()
            synced_at = self._now()
            try:
                result = self.source.fetch_items(config, pat)
            except DatasourceError as e:
                duration_ms = int((time.monotonic() - started) * 1000)
                self.store.upsert(
                    roadmap_id,
                    {
                        "last_sync_at": synced_at,
                        "last_sync_duration_ms": duration_ms,
                        "last_sync_error": e.message,
                    },
                )
                if record.has_snapshot and self._within_stale_ceiling(record):
                    logger.warning(
                        "Sync failed for roadmap %s, serving snapshot from %s: %s",
                        roadmap_id,
                        record.last_snapshot_at.isoformat(),
                        e.message,
                    )
                    return FetchResult(
                        items=record.last_snapshot or [],
                        stale=True,
                        warning=(
                            f"Using cached data from {record.last_snapshot_at.isoformat()}. "
                            f"Refresh failed: {e.message}"
                        ),
                    )
                logger.error("Sync failed for roadmap %s: %s", roadmap_id, e.message)
                raise

            duration_ms = int((time.monotonic() - started) * 1000)
            self.store.upsert(
                roadmap_id,
                {
                    "last_snapshot": result.items,
                    "last_snapshot_at": synced_at,
                    "last_sync_at": synced_at,
                    "last_sync_duration_ms": duration_ms,
                    "last_sync_item_count": len(result.items),
                    "last_sync_error": None,
                },
            )
            logger.info(
                "Synced %d items for roadmap %s in %d ms",
                len(result.items),
                roadmap_id,
                duration_ms,
            )
            return FetchResult(
                items=result.items,
                stale=False,
                truncated=result.truncated,
                warning=result.warning,
            )

    # Azure DevOps drill-downs

    def _stored_pat(self, record: DatasourceRecord) -> str:
        if not record.encrypted_secret:
            return ""
        return decrypt_secret(record.encrypted_secret, self.config)

    def _azure_context(self, roadmap_id: str) -> tuple[AzureDevopsConfig, str]:
        record = self.get_record(roadmap_id)
        if record.type != "azure-devops":
            raise InvalidConfigError("Datasource is not Azure DevOps.")
        return AzureDevopsConfig.sanitize(record.config), self._stored_pat(record)

    def list_projects(self, roadmap_id: str, organization_url: str, pat: str | None = None) -> list[Project]:
        if not pat:
            pat = self._stored_pat(self.get_record(roadmap_id))
        return self.source.list_projects(organization_url, pat)

    def validate_config(
        self,
        roadmap_id: str,
        type: str,
        config: dict[str, Any] | None,
        pat: str | None = None,
    ) -> ValidationReport:
        """Dry-run a proposed config without storing anything."""
        if type not in DATASOURCE_TYPES:
            raise InvalidConfigError(f"Unsupported datasource type: {type}")
        if type == "csv":
            return ValidationReport()
        if not pat:
            pat = self._stored_pat(self.get_record(roadmap_id))
        return self.source.validate_config(AzureDevopsConfig.sanitize(config), pat)

    def resolve_work_item(self, roadmap_id: str, url: str, pat: str | None = None) -> WorkItemLookup:
        record = self.get_record(roadmap_id)
        if not pat:
            pat = self._stored_pat(record)
        config = None
        if record.type == "azure-devops":
            config = AzureDevopsConfig.sanitize(record.config)
        return self.source.resolve_work_item(url, pat, config)

    def fetch_comments(self, roadmap_id: str, work_item_id: str) -> list[Comment]:
        config, pat = self._azure_context(roadmap_id)
        return self.source.fetch_comments(self.source.connect(config, pat), work_item_id)

    def fetch_related_items(self, roadmap_id: str, work_item_id: str) -> list[RelatedItem]:
        config, pat = self._azure_context(roadmap_id)
        return self.source.fetch_related_items(self.source.connect(config, pat), work_item_id)

    def fetch_debug_payload(self, roadmap_id: str, sample_size: int) -> DebugPayload:
        config, pat = self._azure_context(roadmap_id)
        return self.source.fetch_debug_payload(config, pat, sample_size)
