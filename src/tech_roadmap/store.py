"""Persistence of datasource records and uploaded CSV text.

The orchestrator talks to a :class:`RecordStore`; two implementations are
provided, an in-memory one for tests and demos and a SQLAlchemy one for
real deployments.
"""

import json
import logging
import threading
from dataclasses import fields, replace
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import DateTime, Integer, String, Text, create_engine, delete
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from tech_roadmap.exceptions import ConfigurationError
from tech_roadmap.models import DatasourceRecord, RoadmapItem

logger = logging.getLogger(__name__)

RECORD_FIELDS = {f.name for f in fields(DatasourceRecord)} - {"roadmap_id"}


class RecordStore(Protocol):
    def get(self, roadmap_id: str) -> DatasourceRecord | None: ...

    def upsert(self, roadmap_id: str, values: dict[str, Any]) -> None: ...

    def delete_by_roadmap(self, roadmap_id: str) -> None: ...

    def get_csv_text(self, roadmap_id: str) -> str | None: ...

    def set_csv_text(self, roadmap_id: str, text: str) -> None: ...


def _check_fields(values: dict[str, Any]) -> None:
    unknown = set(values) - RECORD_FIELDS
    if unknown:
        raise ValueError(f"Unknown datasource record fields: {', '.join(sorted(unknown))}")


class InMemoryRecordStore:
    """Dict-backed store. Records are copied in and out."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, DatasourceRecord] = {}
        self._csv: dict[str, str] = {}

    def get(self, roadmap_id: str) -> DatasourceRecord | None:
        with self._lock:
            record = self._records.get(roadmap_id)
            if record is None:
                return None
            snapshot = list(record.last_snapshot) if record.last_snapshot is not None else None
            return replace(record, config=dict(record.config), last_snapshot=snapshot)

    def upsert(self, roadmap_id: str, values: dict[str, Any]) -> None:
        _check_fields(values)
        with self._lock:
            current = self._records.get(roadmap_id) or DatasourceRecord(roadmap_id=roadmap_id)
            self._records[roadmap_id] = replace(current, **values)

    def delete_by_roadmap(self, roadmap_id: str) -> None:
        with self._lock:
            self._records.pop(roadmap_id, None)
            self._csv.pop(roadmap_id, None)

    def get_csv_text(self, roadmap_id: str) -> str | None:
        with self._lock:
            return self._csv.get(roadmap_id)

    def set_csv_text(self, roadmap_id: str, text: str) -> None:
        with self._lock:
            self._csv[roadmap_id] = text


class Base(DeclarativeBase):
    pass


class RoadmapDatasourceRow(Base):
    __tablename__ = "roadmap_datasources"

    roadmap_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(32), default="csv")
    config_json: Mapped[str] = mapped_column(Text, default="{}")
    encrypted_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_snapshot_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_snapshot_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_sync_item_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class RoadmapCsvRow(Base):
    __tablename__ = "roadmap_csv"

    roadmap_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    csv_text: Mapped[str] = mapped_column(Text, default="")


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite returns naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlRecordStore:
    """SQLAlchemy-backed store for any database URL."""

    def __init__(self, database_url: str, create_tables: bool = True) -> None:
        self.engine = create_engine(database_url)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(self.engine)

    def _to_record(self, row: RoadmapDatasourceRow) -> DatasourceRecord:
        try:
            config = json.loads(row.config_json or "{}")
            snapshot = json.loads(row.last_snapshot_json) if row.last_snapshot_json else None
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Stored datasource for roadmap {row.roadmap_id} is malformed.") from e
        return DatasourceRecord(
            roadmap_id=row.roadmap_id,
            type=row.type,
            config=config if isinstance(config, dict) else {},
            encrypted_secret=row.encrypted_secret,
            last_snapshot=(
                [RoadmapItem.from_dict(entry) for entry in snapshot]
                if isinstance(snapshot, list)
                else None
            ),
            last_snapshot_at=_as_utc(row.last_snapshot_at),
            last_sync_at=_as_utc(row.last_sync_at),
            last_sync_duration_ms=row.last_sync_duration_ms,
            last_sync_item_count=row.last_sync_item_count,
            last_sync_error=row.last_sync_error,
        )

    def get(self, roadmap_id: str) -> DatasourceRecord | None:
        with self._sessions() as session:
            row = session.get(RoadmapDatasourceRow, roadmap_id)
            return self._to_record(row) if row else None

    def upsert(self, roadmap_id: str, values: dict[str, Any]) -> None:
        _check_fields(values)
        with self._sessions.begin() as session:
            row = session.get(RoadmapDatasourceRow, roadmap_id)
            if row is None:
                row = RoadmapDatasourceRow(roadmap_id=roadmap_id, type="csv", config_json="{}")
                session.add(row)
            for name, value in values.items():
                if name == "config":
                    row.config_json = json.dumps(value or {})
                elif name == "last_snapshot":
                    row.last_snapshot_json = (
                        None if value is None else json.dumps([item.to_dict() for item in value])
                    )
                else:
                    setattr(row, name, value)

    def delete_by_roadmap(self, roadmap_id: str) -> None:
        with self._sessions.begin() as session:
            session.execute(delete(RoadmapDatasourceRow).where(RoadmapDatasourceRow.roadmap_id == roadmap_id))
            session.execute(delete(RoadmapCsvRow).where(RoadmapCsvRow.roadmap_id == roadmap_id))
        logger.info("Deleted datasource state for roadmap %s", roadmap_id)

    def get_csv_text(self, roadmap_id: str) -> str | None:
        with self._sessions() as session:
            row = session.get(RoadmapCsvRow, roadmap_id)
            return row.csv_text if row else None

    def set_csv_text(self, roadmap_id: str, text: str) -> None:
        with self._sessions.begin() as session:
            row = session.get(RoadmapCsvRow, roadmap_id)
            if row is None:
                session.add(RoadmapCsvRow(roadmap_id=roadmap_id, csv_text=text))
            else:
                row.csv_text = text

