"""Tests for the datasource orchestrator and snapshot cache."""

import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from tech_roadmap.azure_devops import AzureFetchResult
from tech_roadmap.config import Config
from tech_roadmap.datasource import (
    REFRESH_IN_PROGRESS_WARNING,
    STATE_AZURE_CONFIGURED,
    STATE_CSV,
    STATE_NO_CONFIG,
    STATE_SYNC_FAILED,
    STATE_SYNCED,
    STATE_SYNCING,
    DatasourceService,
)
from tech_roadmap.exceptions import (
    AuthenticationFailure,
    ConfigurationError,
    CsvParseError,
    InvalidConfigError,
    UnreachableError,
)
from tech_roadmap.models import RoadmapItem, ValidationReport
from tech_roadmap.secret_store import decrypt_secret
from tech_roadmap.store import InMemoryRecordStore

AZURE_CONFIG = {
    "organizationUrl": "https://dev.azure.com/contoso",
    "project": "Roadmap",
    "refreshMinutes": 15,
}


def _items(*ids):
    return [RoadmapItem(id=str(i), title=f"Item {i}") for i in ids]


@pytest.fixture
def source():
    source = MagicMock()
    source.fetch_items.return_value = AzureFetchResult(items=_items(1, 2))
    return source


@pytest.fixture
def service(source, clock):
    service = DatasourceService(InMemoryRecordStore(), source=source, config=Config(), now=clock)
    yield service
    service.close()


def _configure_azure(service, roadmap_id="r1", secret="my-pat"):
    service.update_config(roadmap_id, "azure-devops", AZURE_CONFIG, secret=secret)


class TestRecords:
    """Tests for record creation, summaries and config updates."""

    def test_get_record_creates_csv_default(self, service):
        assert service.state("r1") == STATE_NO_CONFIG
        record = service.get_record("r1")
        assert record.type == "csv"
        assert service.state("r1") == STATE_CSV

    def test_update_config_stores_encrypted_secret(self, service, source):
        summary = service.update_config("r1", "azure-devops", AZURE_CONFIG, secret=" my-pat ")
        record = service.get_record("r1")
        assert summary.has_secret
        assert record.encrypted_secret != "my-pat"
        assert decrypt_secret(record.encrypted_secret) == "my-pat"
        assert summary.config.project == "Roadmap"
        assert service.state("r1") == STATE_AZURE_CONFIGURED
        source.fetch_items.assert_not_called()

    def test_update_without_secret_keeps_existing(self, service):
        _configure_azure(service)
        before = service.get_record("r1").encrypted_secret
        service.update_config("r1", "azure-devops", {**AZURE_CONFIG, "project": "Other"}, secret="  ")
        record = service.get_record("r1")
        assert record.encrypted_secret == before
        assert record.config["project"] == "Other"

    def test_clear_secret(self, service):
        _configure_azure(service)
        summary = service.update_config("r1", "azure-devops", AZURE_CONFIG, clear_secret=True)
        assert not summary.has_secret

    def test_switch_to_csv_clears_config_and_secret(self, service):
        _configure_azure(service)
        summary = service.update_config("r1", "csv", {"project": "ignored"})
        record = service.get_record("r1")
        assert summary.config is None
        assert record.config == {}
        assert record.encrypted_secret is None

    def test_unknown_type(self, service):
        with pytest.raises(InvalidConfigError):
            service.update_config("r1", "jira", {})

    def test_invalid_azure_config(self, service):
        with pytest.raises(InvalidConfigError):
            service.update_config("r1", "azure-devops", {"organizationUrl": "not a url"})
        assert service.state("r1") == STATE_NO_CONFIG

    def test_update_clears_last_error(self, service, source):
        _configure_azure(service)
        source.fetch_items.side_effect = UnreachableError("down")
        with pytest.raises(UnreachableError):
            service.fetch_items("r1")
        assert service.state("r1") == STATE_SYNC_FAILED
        service.update_config("r1", "azure-devops", AZURE_CONFIG)
        assert service.get_record("r1").last_sync_error is None

    def test_summary_never_contains_secret(self, service):
        _configure_azure(service)
        payload = service.get_summary("r1").to_dict()
        assert payload["hasSecret"] is True
        assert "my-pat" not in repr(payload)
        assert service.get_record("r1").encrypted_secret not in repr(payload)

    def test_missing_master_secret(self, service, monkeypatch):
        monkeypatch.delenv("ROADMAP_SECRET_KEY")
        with pytest.raises(ConfigurationError):
            service.update_config("r1", "azure-devops", AZURE_CONFIG, secret="my-pat")

    def test_delete_roadmap(self, service):
        _configure_azure(service)
        service.set_csv_text("r1", "title\nOne\n")
        service.delete_roadmap("r1")
        assert service.state("r1") == STATE_NO_CONFIG
        assert service.store.get_csv_text("r1") is None

    def test_delete_roadmap_keeps_roadmap_lock(self, service):
        lock = service._roadmap_lock("r1")
        service.delete_roadmap("r1")
        assert service._roadmap_lock("r1") is lock


class TestCsvDatasource:
    """Tests for CSV-backed roadmaps."""

    def test_reads_uploaded_csv_without_remote_calls(self, service, source):
        assert service.set_csv_text("r1", "title,pillar\nOne,data\nTwo,data\n") == 2

        result = service.fetch_items("r1", force_refresh=True)

        assert [item.title for item in result.items] == ["One", "Two"]
        assert result.stale is False
        source.fetch_items.assert_not_called()

    def test_no_csv_uploaded(self, service):
        assert service.fetch_items("r1").items == []

    def test_invalid_csv_not_stored(self, service):
        with pytest.raises(CsvParseError):
            service.set_csv_text("r1", 'title\n"broken\n')
        assert service.store.get_csv_text("r1") is None


class TestAzureFetch:
    """Tests for Azure DevOps fetches and the snapshot cache."""

    def test_live_fetch_records_sync(self, service, source, clock):
        _configure_azure(service)

        result = service.fetch_items("r1")

        assert [item.id for item in result.items] == ["1", "2"]
        assert result.stale is False
        config, pat = source.fetch_items.call_args.args
        assert config.project == "Roadmap"
        assert pat == "my-pat"
        record = service.get_record("r1")
        assert record.last_snapshot_at == clock.current
        assert record.last_sync_at == clock.current
        assert record.last_sync_item_count == 2
        assert record.last_sync_duration_ms is not None
        assert record.last_sync_error is None
        assert service.state("r1") == STATE_SYNCED

    def test_fresh_snapshot_makes_no_remote_calls(self, service, source, clock):
        _configure_azure(service)
        service.fetch_items("r1")
        clock.advance(timedelta(minutes=14))

        result = service.fetch_items("r1")

        assert source.fetch_items.call_count == 1
        assert result.stale is False
        assert [item.id for item in result.items] == ["1", "2"]

    def test_expired_snapshot_refetches(self, service, source, clock):
        _configure_azure(service)
        service.fetch_items("r1")
        clock.advance(timedelta(minutes=15))
        source.fetch_items.return_value = AzureFetchResult(items=_items(3))

        result = service.fetch_items("r1")

        assert source.fetch_items.call_count == 2
        assert [item.id for item in result.items] == ["3"]

    def test_refresh_interval_is_clamped(self, service, source, clock):
        service.update_config("r1", "azure-devops", {**AZURE_CONFIG, "refreshMinutes": 1}, secret="pat")
        service.fetch_items("r1")
        clock.advance(timedelta(minutes=4))

        service.fetch_items("r1")

        assert source.fetch_items.call_count == 1

    def test_force_refresh_bypasses_cache(self, service, source):
        _configure_azure(service)
        service.fetch_items("r1")
        service.fetch_items("r1", force_refresh=True)
        assert source.fetch_items.call_count == 2

    def test_passes_truncation_and_warning(self, service, source):
        _configure_azure(service)
        source.fetch_items.return_value = AzureFetchResult(
            items=_items(1), truncated=True, warning="Showing the first 1 work items."
        )
        result = service.fetch_items("r1")
        assert result.truncated is True
        assert result.warning == "Showing the first 1 work items."

    def test_failure_serves_stale_snapshot(self, service, source, clock):
        _configure_azure(service)
        service.fetch_items("r1")
        first_snapshot_at = clock.current
        clock.advance(timedelta(minutes=30))
        source.fetch_items.side_effect = UnreachableError("Azure DevOps request timed out after 15s.")

        result = service.fetch_items("r1")

        assert result.stale is True
        assert [item.id for item in result.items] == ["1", "2"]
        assert "timed out" in result.warning
        record = service.get_record("r1")
        assert record.last_snapshot_at == first_snapshot_at
        assert record.last_sync_at == clock.current
        assert record.last_sync_error == "Azure DevOps request timed out after 15s."
        assert service.state("r1") == STATE_SYNC_FAILED

    def test_failure_without_snapshot_propagates(self, service, source):
        _configure_azure(service)
        source.fetch_items.side_effect = UnreachableError("down")

        with pytest.raises(UnreachableError):
            service.fetch_items("r1")

        record = service.get_record("r1")
        assert record.last_sync_error == "down"
        assert record.last_snapshot is None

    def test_stale_ceiling(self, source, clock):
        service = DatasourceService(
            InMemoryRecordStore(), source=source, config=Config(max_stale_minutes=60), now=clock
        )
        try:
            _configure_azure(service)
            service.fetch_items("r1")
            clock.advance(timedelta(minutes=61))
            source.fetch_items.side_effect = UnreachableError("down")
            with pytest.raises(UnreachableError):
                service.fetch_items("r1")
        finally:
            service.close()

    def test_missing_secret_is_not_served_stale(self, service, source):
        service.update_config("r1", "azure-devops", AZURE_CONFIG)
        with pytest.raises(ConfigurationError):
            service.fetch_items("r1")
        source.fetch_items.assert_not_called()

    def test_corrupt_secret_propagates(self, service, source, clock):
        _configure_azure(service)
        service.fetch_items("r1")
        clock.advance(timedelta(hours=1))
        service.store.upsert("r1", {"encrypted_secret": "AAAAAAAAAAAAAAAA.AAAAAAAAAAAAAAAAAAAAAA==.AAAA"})

        with pytest.raises(AuthenticationFailure):
            service.fetch_items("r1")
        assert source.fetch_items.call_count == 1


class TestConcurrentFetches:
    """Tests for the single in-flight fetch per roadmap."""

    def _blocking_source(self, source):
        started = threading.Event()
        release = threading.Event()

        def fetch(config, pat):
            started.set()
            release.wait(timeout=5)
            return AzureFetchResult(items=_items(9))

        source.fetch_items.side_effect = fetch
        return started, release

    def test_concurrent_forced_fetches_share_one_remote_fetch(self, service, source):
        _configure_azure(service)
        started, release = self._blocking_source(source)
        results = []

        def worker():
            results.append(service.fetch_items("r1", force_refresh=True))

        threads = [threading.Thread(target=worker) for _ in range(5)]
        threads[0].start()
        assert started.wait(timeout=5)
        for thread in threads[1:]:
            thread.start()
        time.sleep(0.2)
        assert service.state("r1") == STATE_SYNCING
        release.set()
        for thread in threads:
            thread.join(timeout=5)

        assert source.fetch_items.call_count == 1
        assert len(results) == 5
        assert all([item.id for item in result.items] == ["9"] for result in results)

    def test_non_forced_caller_gets_snapshot_during_refresh(self, service, source, clock):
        _configure_azure(service)
        service.fetch_items("r1")
        clock.advance(timedelta(minutes=20))
        started, release = self._blocking_source(source)

        refresher = threading.Thread(target=service.fetch_items, args=("r1",), kwargs={"force_refresh": True})
        refresher.start()
        assert started.wait(timeout=5)

        result = service.fetch_items("r1")

        assert result.stale is True
        assert result.warning == REFRESH_IN_PROGRESS_WARNING
        assert [item.id for item in result.items] == ["1", "2"]
        release.set()
        refresher.join(timeout=5)
        assert source.fetch_items.call_count == 2

    def test_snapshot_past_stale_ceiling_waits_for_refresh(self, source, clock):
        service = DatasourceService(
            InMemoryRecordStore(), source=source, config=Config(max_stale_minutes=60), now=clock
        )
        try:
            _configure_azure(service)
            service.fetch_items("r1")
            clock.advance(timedelta(days=30))
            started, release = self._blocking_source(source)
            results = []

            refresher = threading.Thread(target=service.fetch_items, args=("r1",), kwargs={"force_refresh": True})
            refresher.start()
            assert started.wait(timeout=5)
            reader = threading.Thread(target=lambda: results.append(service.fetch_items("r1")))
            reader.start()
            reader.join(timeout=0.2)

            assert reader.is_alive()
            release.set()
            reader.join(timeout=5)
            refresher.join(timeout=5)
            assert [item.id for item in results[0].items] == ["9"]
            assert results[0].stale is False
            assert source.fetch_items.call_count == 2
        finally:
            service.close()

    def test_abandoned_fetch_still_warms_cache(self, service, source):
        _configure_azure(service)
        started, release = self._blocking_source(source)

        caller = threading.Thread(target=service.fetch_items, args=("r1",))
        caller.start()
        assert started.wait(timeout=5)
        release.set()
        caller.join(timeout=5)
        service.close()

        record = service.get_record("r1")
        assert [item.id for item in record.last_snapshot] == ["9"]

    def test_config_update_waits_for_in_flight_fetch(self, service, source):
        _configure_azure(service)
        started, release = self._blocking_source(source)
        updated = threading.Event()

        fetcher = threading.Thread(target=service.fetch_items, args=("r1",))
        fetcher.start()
        assert started.wait(timeout=5)

        def update():
            service.update_config("r1", "azure-devops", {**AZURE_CONFIG, "project": "Next"})
            updated.set()

        updater = threading.Thread(target=update)
        updater.start()
        time.sleep(0.2)
        assert not updated.is_set()
        release.set()
        fetcher.join(timeout=5)
        updater.join(timeout=5)
        assert updated.is_set()
        assert service.get_record("r1").config["project"] == "Next"

    def test_different_roadmaps_do_not_block(self, service, source):
        _configure_azure(service, "r1")
        _configure_azure(service, "r2")
        started, release = self._blocking_source(source)

        blocked = threading.Thread(target=service.fetch_items, args=("r1",))
        blocked.start()
        assert started.wait(timeout=5)

        service.update_config("r2", "csv", {})
        assert service.fetch_items("r2").items == []
        release.set()
        blocked.join(timeout=5)


class TestDrillDowns:
    """Tests for roadmap-scoped Azure DevOps lookups."""

    def test_comments_use_stored_config_and_secret(self, service, source):
        _configure_azure(service)
        source.fetch_comments.return_value = []

        service.fetch_comments("r1", "42")

        config, pat = source.connect.call_args.args
        assert config.project == "Roadmap"
        assert pat == "my-pat"
        assert source.fetch_comments.call_args.args[1] == "42"

    def test_related_requires_azure(self, service):
        with pytest.raises(InvalidConfigError):
            service.fetch_related_items("r1", "42")

    def test_list_projects_prefers_given_pat(self, service, source):
        _configure_azure(service)
        service.list_projects("r1", "https://dev.azure.com/contoso", pat="other")
        source.list_projects.assert_called_once_with("https://dev.azure.com/contoso", "other")

    def test_list_projects_falls_back_to_stored_pat(self, service, source):
        _configure_azure(service)
        service.list_projects("r1", "https://dev.azure.com/contoso")
        source.list_projects.assert_called_once_with("https://dev.azure.com/contoso", "my-pat")

    def test_validate_does_not_store(self, service, source):
        source.validate_config.return_value = ValidationReport(warnings=["Unmapped fields: lead"])

        report = service.validate_config("r1", "azure-devops", AZURE_CONFIG, pat="pat")

        assert report.warnings == ["Unmapped fields: lead"]
        assert service.get_record("r1").type == "csv"

    def test_validate_csv_is_empty_report(self, service, source):
        assert service.validate_config("r1", "csv", {}) == ValidationReport()
        source.validate_config.assert_not_called()

    def test_resolve_work_item_without_stored_secret(self, service, source):
        service.resolve_work_item("r1", "https://dev.azure.com/contoso/Roadmap/_workitems/edit/1")
        url, pat, config = source.resolve_work_item.call_args.args
        assert pat == ""
        assert config is None

    def test_debug_payload(self, service, source):
        _configure_azure(service)
        service.fetch_debug_payload("r1", 25)
        config, pat, sample = source.fetch_debug_payload.call_args.args
        assert sample == 25
        assert pat == "my-pat"
