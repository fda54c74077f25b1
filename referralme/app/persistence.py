"""
SQLAlchemy-backed durability for the event store.

The store's whole state is saved as one JSON document per snapshot name,
tagged with the change-log sequence it was taken at. Gateway webhook
deliveries live in their own table so redelivered events stay deduplicated
across restarts.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from referralme.app.models import WebhookDeliveryRecord, utc_now

DEFAULT_SNAPSHOT = "event_store"

metadata = MetaData()

store_snapshots = Table(
    "store_snapshots",
    metadata,
    Column("name", String(50), primary_key=True),
    Column("sequence", Integer, nullable=False),
    Column("payload_json", Text, nullable=False),
    Column("saved_at_utc", DateTime(timezone=True), nullable=False),
)

gateway_webhook_deliveries = Table(
    "gateway_webhook_deliveries",
    metadata,
    Column("key", String(255), primary_key=True),
    Column("id", String(255), nullable=False),
    Column("channel", String(50), nullable=False),
    Column("event_id", String(255), nullable=False),
    Column("status", String(50), nullable=False),
    Column("attempts", Integer, nullable=False),
    Column("last_error", Text, nullable=True),
    Column("created_at_utc", DateTime(timezone=True), nullable=False),
    Column("updated_at_utc", DateTime(timezone=True), nullable=False),
)


def resolve_database_url(value: str) -> str:
    """Accept a SQLAlchemy URL or a bare file path; SQLite parent directories are created."""
    url = value.strip()
    if "://" not in url:
        url = f"sqlite:///{Path(url).as_posix()}"
    if url.startswith("sqlite:///"):
        location = url[len("sqlite:///") :].split("?", 1)[0]
        if location and location != ":memory:":
            Path(location).parent.mkdir(parents=True, exist_ok=True)
    return url


def _utc(value: datetime) -> datetime:
    # SQLite returns naive datetimes.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _upsert(conn: Connection, table: Table, key_column: str, key: str, values: dict[str, Any]) -> None:
    column = table.c[key_column]
    if conn.execute(select(column).where(column == key)).first():
        conn.execute(table.update().where(column == key).values(**values))
    else:
        conn.execute(table.insert().values({key_column: key, **values}))


class SnapshotPersistence:
    def __init__(self, database_url: str) -> None:
        self.database_url = resolve_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(self.database_url, future=True, pool_pre_ping=True)
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def save_snapshot(self, payload: dict, name: str = DEFAULT_SNAPSHOT) -> None:
        values = {
            "sequence": int(payload.get("sequence", 0)),
            "payload_json": json.dumps(payload),
            "saved_at_utc": utc_now(),
        }
        with self._lock, self.engine.begin() as conn:
            _upsert(conn, store_snapshots, "name", name, values)

    def load_snapshot(self, name: str = DEFAULT_SNAPSHOT) -> Optional[dict]:
        with self._lock, self.engine.connect() as conn:
            payload = conn.execute(
                select(store_snapshots.c.payload_json).where(store_snapshots.c.name == name)
            ).scalar_one_or_none()
        return json.loads(payload) if payload else None

    def snapshot_sequence(self, name: str = DEFAULT_SNAPSHOT) -> Optional[int]:
        with self._lock, self.engine.connect() as conn:
            return conn.execute(
                select(store_snapshots.c.sequence).where(store_snapshots.c.name == name)
            ).scalar_one_or_none()

    def upsert_webhook_delivery(self, record: WebhookDeliveryRecord) -> None:
        values = record.model_dump(mode="python", exclude={"key"})
        values["status"] = record.status.value
        with self._lock, self.engine.begin() as conn:
            _upsert(conn, gateway_webhook_deliveries, "key", record.key, values)

    def list_webhook_deliveries(self) -> list[WebhookDeliveryRecord]:
        with self._lock, self.engine.connect() as conn:
            rows = conn.execute(select(gateway_webhook_deliveries)).mappings().all()
        return [
            WebhookDeliveryRecord.model_validate(
                {
                    **row,
                    "created_at_utc": _utc(row["created_at_utc"]),
                    "updated_at_utc": _utc(row["updated_at_utc"]),
                }
            )
            for row in rows
        ]
