"""Tests for datasource record stores."""

from datetime import datetime, timezone

import pytest

from tech_roadmap.models import RoadmapItem
from tech_roadmap.store import InMemoryRecordStore, SqlRecordStore


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryRecordStore()
    return SqlRecordStore(f"sqlite:///{tmp_path / 'roadmap.db'}")


class TestRecordStore:
    """Behaviour shared by all record stores."""

    def test_missing_record(self, store):
        assert store.get("r1") is None

    def test_upsert_creates_csv_record(self, store):
        store.upsert("r1", {})
        record = store.get("r1")
        assert record.roadmap_id == "r1"
        assert record.type == "csv"
        assert record.config == {}
        assert record.last_snapshot is None

    def test_upsert_updates_only_given_fields(self, store):
        store.upsert("r1", {"type": "azure-devops", "config": {"project": "Roadmap"}, "encrypted_secret": "x.y.z"})
        store.upsert("r1", {"last_sync_error": "boom"})
        record = store.get("r1")
        assert record.type == "azure-devops"
        assert record.config == {"project": "Roadmap"}
        assert record.encrypted_secret == "x.y.z"
        assert record.last_sync_error == "boom"

    def test_snapshot_round_trip(self, store):
        synced_at = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        items = [RoadmapItem(id="1", title="One", region="US"), RoadmapItem(id="2", title="Two")]
        store.upsert(
            "r1",
            {
                "last_snapshot": items,
                "last_snapshot_at": synced_at,
                "last_sync_at": synced_at,
                "last_sync_item_count": 2,
                "last_sync_duration_ms": 120,
            },
        )
        record = store.get("r1")
        assert record.last_snapshot == items
        assert record.last_snapshot_at == synced_at
        assert record.last_sync_item_count == 2
        assert record.has_snapshot

    def test_empty_snapshot_is_a_snapshot(self, store):
        store.upsert("r1", {"last_snapshot": [], "last_snapshot_at": datetime.now(timezone.utc)})
        record = store.get("r1")
        assert record.last_snapshot == []
        assert record.has_snapshot

    def test_clear_secret(self, store):
        store.upsert("r1", {"encrypted_secret": "x.y.z"})
        store.upsert("r1", {"encrypted_secret": None})
        assert store.get("r1").encrypted_secret is None

    def test_unknown_field_rejected(self, store):
        with pytest.raises(ValueError):
            store.upsert("r1", {"colour": "blue"})

    def test_csv_text(self, store):
        assert store.get_csv_text("r1") is None
        store.set_csv_text("r1", "title\nOne\n")
        store.set_csv_text("r1", "title\nTwo\n")
        assert store.get_csv_text("r1") == "title\nTwo\n"

    def test_delete_by_roadmap(self, store):
        store.upsert("r1", {})
        store.upsert("r2", {})
        store.set_csv_text("r1", "title\n")
        store.delete_by_roadmap("r1")
        assert store.get("r1") is None
        assert store.get_csv_text("r1") is None
        assert store.get("r2") is not None


class TestInMemoryRecordStore:
    """Tests specific to the in-memory store."""

    def test_returns_copies(self):
        store = InMemoryRecordStore()
        store.upsert("r1", {"config": {"project": "A"}})
        store.get("r1").config["project"] = "B"
        assert store.get("r1").config == {"project": "A"}


class TestSqlRecordStore:
    """Tests specific to the SQL store."""

    def test_persists_across_instances(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'roadmap.db'}"
        SqlRecordStore(url).upsert("r1", {"type": "azure-devops"})
        assert SqlRecordStore(url).get("r1").type == "azure-devops"
