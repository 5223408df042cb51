"""
Durable sample store backed by SQLite.

Producers append sensor records as they are captured; the drain loop reads
them back oldest-first in bounded batches and deletes them only once the
remote API has acknowledged the batch. A small key/value table next to the
samples holds device settings (device id, enrollment, upload watermark) so
that deleting an uploaded batch and advancing the watermark commit together.
"""
import asyncio
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite
import structlog

from chronicle_uplink.errors import DuplicateRecordError, StoreError
from chronicle_uplink.models import SensorRecord, SensorType

logger = structlog.get_logger(__name__)

LAST_UPLOAD_DATE_KEY = "lastUploadDate"

# Ids bound per DELETE statement, below SQLite's oldest host-parameter limit
DELETE_CHUNK_SIZE = 500

_RECORD_COLUMNS = (
    "id, sensor_type, start_timestamp, end_timestamp, "
    "write_timestamp, timezone, data"
)


def _row_to_record(row: tuple) -> SensorRecord:
    return SensorRecord(
        id=row[0],
        sensor_type=row[1],
        start_timestamp=row[2],
        end_timestamp=row[3],
        write_timestamp=row[4],
        timezone=row[5],
        data=row[6],
    )


def _record_params(record: SensorRecord) -> tuple:
    return (
        record.id,
        record.sensor_type,
        record.start_timestamp,
        record.end_timestamp,
        record.write_timestamp,
        record.timezone,
        record.data,
    )


class SampleStore:
    """
    Append-only queue of SensorRecord rows with delete-after-ack.

    Every statement runs under one asyncio.Lock so fetch and delete are
    serialized against concurrent appends. Each lock hold covers a single
    transaction, so producers wait at most one statement.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self):
        """Open the database and create tables if needed."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._db = await aiosqlite.connect(self.db_path)

            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA synchronous=FULL")

            # seq keeps insertion order independent of the opaque record id
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS sensor_data (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    sensor_type TEXT NOT NULL,
                    start_timestamp TEXT,
                    end_timestamp TEXT,
                    write_timestamp TEXT NOT NULL,
                    timezone TEXT,
                    data TEXT NOT NULL
                )
            """)
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS device_settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
            await self._db.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Unable to open sample store at {self.db_path}: {e}") from e

        count = await self.count()
        logger.info("Sample store initialized", records=count, db_path=self.db_path)

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("Sample store is not initialized")
        return self._db

    async def append(self, record: SensorRecord) -> None:
        """Insert one record. A duplicate id is a caller error."""
        await self.append_many([record])

    async def append_many(self, records: Iterable[SensorRecord]) -> int:
        """Insert records in a single transaction; all or nothing."""
        params = [_record_params(r) for r in records]
        if not params:
            return 0

        db = self._conn()
        async with self._lock:
            try:
                await db.executemany(
                    f"INSERT INTO sensor_data ({_RECORD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    params,
                )
                await db.commit()
            except sqlite3.IntegrityError as e:
                await db.rollback()
                if "UNIQUE" in str(e):
                    raise DuplicateRecordError(await self._find_duplicate(params)) from e
                raise StoreError(f"Invalid sensor record: {e}") from e
            except sqlite3.Error as e:
                await db.rollback()
                raise StoreError(f"Failed to append records: {e}") from e
        return len(params)

    async def _find_duplicate(self, params: List[tuple]) -> str:
        """Name the offending id, either repeated in the batch or already stored."""
        seen = set()
        for p in params:
            if p[0] in seen:
                return p[0]
            seen.add(p[0])
        ids = [p[0] for p in params]
        placeholders = ",".join("?" * len(ids))
        cursor = await self._conn().execute(
            f"SELECT id FROM sensor_data WHERE id IN ({placeholders}) LIMIT 1", ids
        )
        row = await cursor.fetchone()
        return row[0] if row else "<unknown>"

    async def fetch_batch(self, limit: int) -> List[SensorRecord]:
        """
        Get up to `limit` records, oldest first.
        Does NOT remove them - call delete/acknowledge after a successful upload.
        An empty list means the store is drained.
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")

        db = self._conn()
        async with self._lock:
            try:
                cursor = await db.execute(
                    f"SELECT {_RECORD_COLUMNS} FROM sensor_data ORDER BY seq ASC LIMIT ?",
                    (limit,),
                )
                rows = await cursor.fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to fetch batch: {e}") from e

        return [_row_to_record(row) for row in rows]

    async def delete(self, records: Iterable[SensorRecord]) -> int:
        """Remove exactly the given records. Returns the number of rows removed."""
        return await self._delete(records, watermark=None)

    async def acknowledge(self, records: Iterable[SensorRecord], uploaded_at: str) -> int:
        """
        Remove an uploaded batch and record the upload watermark in one transaction.
        Either both take effect or neither does.
        """
        return await self._delete(records, watermark=uploaded_at)

    async def _delete(self, records: Iterable[SensorRecord], watermark: Optional[str]) -> int:
        ids = [r.id for r in records if r.id is not None]
        if not ids and watermark is None:
            return 0

        db = self._conn()
        async with self._lock:
            try:
                removed = 0
                for start in range(0, len(ids), DELETE_CHUNK_SIZE):
                    chunk = ids[start:start + DELETE_CHUNK_SIZE]
                    placeholders = ",".join("?" * len(chunk))
                    cursor = await db.execute(
                        f"DELETE FROM sensor_data WHERE id IN ({placeholders})",
                        chunk,
                    )
                    removed += cursor.rowcount
                if watermark is not None:
                    await self._write_setting(db, LAST_UPLOAD_DATE_KEY, watermark)
                await db.commit()
            except sqlite3.Error as e:
                await db.rollback()
                raise StoreError(f"Failed to delete {len(ids)} records: {e}") from e

        return removed

    async def count(self) -> int:
        db = self._conn()
        async with self._lock:
            try:
                cursor = await db.execute("SELECT COUNT(*) FROM sensor_data")
                return (await cursor.fetchone())[0]
            except sqlite3.Error as e:
                raise StoreError(f"Failed to count records: {e}") from e

    async def _get_db_size_bytes(self) -> int:
        """Get current database size in bytes using PRAGMA."""
        cursor = await self._conn().execute("PRAGMA page_count")
        page_count = (await cursor.fetchone())[0]
        cursor = await self._conn().execute("PRAGMA page_size")
        page_size = (await cursor.fetchone())[0]
        return page_count * page_size

    async def get_stats(self) -> Dict[str, Any]:
        """Get queue depth per sensor type and database size."""
        db = self._conn()
        async with self._lock:
            try:
                cursor = await db.execute(
                    "SELECT sensor_type, COUNT(*) FROM sensor_data GROUP BY sensor_type"
                )
                rows = await cursor.fetchall()
                db_bytes = await self._get_db_size_bytes()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to read store stats: {e}") from e

        by_type = {t.value: 0 for t in SensorType}
        by_type.update({row[0]: row[1] for row in rows})
        return {
            "total": sum(by_type.values()),
            "by_sensor_type": by_type,
            "db_bytes": db_bytes,
            "db_mb": round(db_bytes / 1024 / 1024, 1),
        }

    # ============ Device settings ============

    async def get_setting(self, key: str) -> Optional[str]:
        db = self._conn()
        async with self._lock:
            try:
                cursor = await db.execute(
                    "SELECT value FROM device_settings WHERE key = ?", (key,)
                )
                row = await cursor.fetchone()
            except sqlite3.Error as e:
                raise StoreError(f"Failed to read setting {key}: {e}") from e
        return row[0] if row else None

    async def set_setting(self, key: str, value: str) -> None:
        db = self._conn()
        async with self._lock:
            try:
                await self._write_setting(db, key, value)
                await db.commit()
            except sqlite3.Error as e:
                await db.rollback()
                raise StoreError(f"Failed to write setting {key}: {e}") from e

    @staticmethod
    async def _write_setting(db: aiosqlite.Connection, key: str, value: str) -> None:
        await db.execute(
            "INSERT INTO device_settings (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )

    async def close(self):
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
