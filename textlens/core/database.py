"""Database component for scan history storage and live snapshots."""

import asyncio
import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

HISTORY_LIMIT: int = 50


@dataclass
class FileMeta:
    """Metadata of the originating upload."""
    name: str
    size: int
    type: str


@dataclass
class ScanRecord:
    """Record representing a persisted scan."""
    id: Optional[str]
    timestamp: Optional[datetime]
    text: str
    image_url: str
    token_count: int
    keywords: list[str] = field(default_factory=list)
    file_meta: Optional[FileMeta] = None

    @property
    def thumbnail_url(self) -> str:
        """The full image doubles as its own thumbnail."""
        return self.image_url


class SnapshotFeed:
    """Channel delivering full history snapshots to a single consumer.

    Only the newest undelivered snapshot is kept: every snapshot is a full
    replacement, so older pending ones are dropped on publish.
    """

    def __init__(self, limit: int, on_close: Callable[['SnapshotFeed'], None]) -> None:
        self.limit = limit
        self._on_close = on_close
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, snapshot: list[ScanRecord]) -> None:
        """Queue a snapshot, replacing any undelivered one."""
        if self._closed:
            return
        self._drain()
        self._queue.put_nowait(list(snapshot))

    def close(self) -> None:
        """Stop delivery and wake up a waiting consumer."""
        if self._closed:
            return
        self._closed = True
        self._on_close(self)
        self._drain()
        self._queue.put_nowait(None)

    def _drain(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()

    def __aiter__(self) -> 'SnapshotFeed':
        return self

    async def __anext__(self) -> list[ScanRecord]:
        snapshot = await self._queue.get()
        if snapshot is None:
            raise StopAsyncIteration
        return snapshot


class ScanDatabase:
    """Record store for scans backed by SQLite, with live snapshot feeds."""

    def __init__(self, db_path: Path, sync_interval: float = 0.0) -> None:
        """Initialize database.

        Args:
            db_path: Path to SQLite database file.
            sync_interval: Seconds between checks for writes made by other
                connections. 0 disables the check.
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path))
        self._conn.row_factory = sqlite3.Row
        self._sync_interval = sync_interval
        self._feeds: list[SnapshotFeed] = []
        self._watch_task: Optional[asyncio.Task] = None
        self._stopped_watchers: list[asyncio.Task] = []
        self._init_schema()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        cursor = self._conn.cursor()

        # seq preserves arrival order for records sharing a timestamp
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS scans (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                timestamp TEXT NOT NULL,
                text TEXT NOT NULL,
                image_url TEXT NOT NULL,
                token_count INTEGER NOT NULL DEFAULT 0,
                keywords TEXT NOT NULL DEFAULT '[]',
                file_name TEXT,
                file_size INTEGER,
                file_type TEXT
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_timestamp ON scans(timestamp)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_file ON scans(file_name, file_size)")

        self._conn.commit()

    async def insert(self, record: ScanRecord) -> str:
        """Insert a scan record.

        The store assigns the id and timestamp; any values set on the
        record are ignored.

        Args:
            record: ScanRecord to insert.

        Returns:
            ID of inserted record.
        """
        record_id = uuid.uuid4().hex
        timestamp = self._next_timestamp()
        meta = record.file_meta

        cursor = self._conn.cursor()
        cursor.execute("""
            INSERT INTO scans (
                id, timestamp, text, image_url, token_count, keywords,
                file_name, file_size, file_type
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record_id,
            timestamp.isoformat(timespec='microseconds'),
            record.text,
            record.image_url,
            record.token_count,
            json.dumps(record.keywords),
            meta.name if meta else None,
            meta.size if meta else None,
            meta.type if meta else None
        ))
        self._conn.commit()

        logger.debug(f"Inserted scan {record_id}")
        self._publish()
        return record_id

    async def delete(self, record_id: str) -> bool:
        """Delete a scan record.

        Args:
            record_id: ID of record to delete.

        Returns:
            True if a record was removed.
        """
        cursor = self._conn.cursor()
        cursor.execute("DELETE FROM scans WHERE id = ?", (record_id,))
        self._conn.commit()

        removed = cursor.rowcount > 0
        if removed:
            logger.debug(f"Deleted scan {record_id}")
            self._publish()
        return removed

    def get_by_id(self, record_id: str) -> Optional[ScanRecord]:
        """Get a scan record by ID.

        Args:
            record_id: ID of record to retrieve.

        Returns:
            ScanRecord or None if not found.
        """
        cursor = self._conn.cursor()
        cursor.execute("SELECT * FROM scans WHERE id = ?", (record_id,))
        row = cursor.fetchone()

        if row is None:
            return None

        return self._row_to_record(row)

    def recent(self, limit: int = HISTORY_LIMIT) -> list[ScanRecord]:
        """Get the most recent scans, newest first.

        Args:
            limit: Maximum number of results.

        Returns:
            List of ScanRecord objects.
        """
        cursor = self._conn.cursor()
        cursor.execute("""
            SELECT * FROM scans
            ORDER BY timestamp DESC, seq DESC
            LIMIT ?
        """, (limit,))

        return [self._row_to_record(row) for row in cursor.fetchall()]

    def count(self) -> int:
        """Total number of stored scans."""
        cursor = self._conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM scans")
        return cursor.fetchone()[0]

    def subscribe(self, limit: int = HISTORY_LIMIT) -> SnapshotFeed:
        """Open a live feed of the most recent scans.

        The current snapshot is delivered immediately, then a fresh one
        after every change.

        Args:
            limit: Number of records per snapshot.

        Returns:
            SnapshotFeed to iterate with ``async for``.
        """
        feed = SnapshotFeed(limit, self._unsubscribe)
        self._feeds.append(feed)
        feed.publish(self.recent(limit))

        if self._sync_interval > 0 and self._watch_task is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("No running event loop; external change sync disabled")
            else:
                self._watch_task = loop.create_task(self._watch_external_changes())

        return feed

    def _unsubscribe(self, feed: SnapshotFeed) -> None:
        if feed in self._feeds:
            self._feeds.remove(feed)
        if not self._feeds and self._watch_task is not None:
            self._watch_task.cancel()
            self._stopped_watchers.append(self._watch_task)
            self._watch_task = None

    def _publish(self) -> None:
        """Push a fresh snapshot to every open feed."""
        for feed in list(self._feeds):
            try:
                feed.publish(self.recent(feed.limit))
            except sqlite3.Error as e:
                logger.error(f"History sync error: {e}")

    async def _watch_external_changes(self) -> None:
        """Publish snapshots when another connection commits."""
        version = self._data_version()
        while self._feeds:
            await asyncio.sleep(self._sync_interval)
            try:
                current = self._data_version()
            except sqlite3.Error as e:
                logger.error(f"History sync error: {e}")
                continue
            if current != version:
                version = current
                logger.debug("External history change detected")
                self._publish()

    def _data_version(self) -> int:
        return self._conn.execute("PRAGMA data_version").fetchone()[0]

    def _next_timestamp(self) -> datetime:
        """Current UTC time, never earlier than the newest stored timestamp."""
        now = datetime.now(timezone.utc)
        row = self._conn.execute("SELECT MAX(timestamp) FROM scans").fetchone()
        if row[0]:
            latest = datetime.fromisoformat(row[0])
            if latest > now:
                return latest
        return now

    def _row_to_record(self, row: sqlite3.Row) -> ScanRecord:
        """Convert database row to ScanRecord.

        Args:
            row: SQLite Row object.

        Returns:
            ScanRecord instance.
        """
        file_meta = None
        if row['file_name'] is not None:
            file_meta = FileMeta(
                name=row['file_name'],
                size=row['file_size'],
                type=row['file_type'] or ''
            )

        return ScanRecord(
            id=row['id'],
            timestamp=datetime.fromisoformat(row['timestamp']),
            text=row['text'],
            image_url=row['image_url'],
            token_count=row['token_count'],
            keywords=json.loads(row['keywords'] or '[]'),
            file_meta=file_meta
        )

    def close(self) -> None:
        """Close open feeds and the database connection."""
        for feed in list(self._feeds):
            feed.close()
        self._conn.close()

    async def aclose(self) -> None:
        """Close open feeds, wait for the change watcher to exit, then close."""
        for feed in list(self._feeds):
            feed.close()

        watchers, self._stopped_watchers = self._stopped_watchers, []
        if watchers:
            await asyncio.gather(*watchers, return_exceptions=True)

        self._conn.close()
