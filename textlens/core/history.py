"""History Store component: live-synced cache of recent scans."""

import asyncio
import logging
import re
import time
from typing import Callable, Optional, Protocol

from .database import HISTORY_LIMIT, FileMeta, ScanRecord, SnapshotFeed
from .errors import ErrorKind, ScanError
from .storage import BlobStore
from .validator import ValidatedImage

logger = logging.getLogger(__name__)

MAX_KEYWORDS: int = 20
MIN_KEYWORD_LENGTH: int = 4

_NON_ALNUM = re.compile(r'[^a-z0-9]')
_UNSAFE_PATH_CHARS = re.compile(r'[^A-Za-z0-9._-]')


class RecordStore(Protocol):
    async def insert(self, record: ScanRecord) -> str: ...

    async def delete(self, record_id: str) -> bool: ...

    def subscribe(self, limit: int = HISTORY_LIMIT) -> SnapshotFeed: ...


def generate_keywords(text: str) -> list[str]:
    """Derive search keywords from extracted text.

    Lower-cases, splits on whitespace, strips non-alphanumerics and keeps
    the first 20 tokens longer than 3 characters, in order.

    Args:
        text: Extracted text.

    Returns:
        List of keywords (may contain repeats).
    """
    if not text:
        return []

    keywords = []
    for word in text.split():
        token = _NON_ALNUM.sub('', word.lower())
        if len(token) >= MIN_KEYWORD_LENGTH:
            keywords.append(token)
            if len(keywords) == MAX_KEYWORDS:
                break
    return keywords


def blob_path_for(name: str, now: Optional[float] = None) -> str:
    """Time-prefixed storage path for an uploaded image."""
    millis = int((time.time() if now is None else now) * 1000)
    safe_name = _UNSAFE_PATH_CHARS.sub('_', name) or 'image'
    return f"scans/{millis}_{safe_name}"


class HistoryStore:
    """Cache the latest history snapshot and expose insert, delete and search.

    The cache is only ever replaced wholesale by snapshots from the record
    store; it is never edited in place.
    """

    def __init__(
        self,
        records: RecordStore,
        blobs: BlobStore,
        limit: int = HISTORY_LIMIT
    ) -> None:
        self._records = records
        self._blobs = blobs
        self._limit = limit
        self._snapshot: list[ScanRecord] = []
        self._feed: Optional[SnapshotFeed] = None
        self._consumer: Optional[asyncio.Task] = None
        self._listeners: list[Callable[[list[ScanRecord]], None]] = []
        self._synced = asyncio.Event()

    @property
    def snapshot(self) -> list[ScanRecord]:
        return list(self._snapshot)

    def add_listener(self, listener: Callable[[list[ScanRecord]], None]) -> None:
        """Register a callback run after every snapshot replacement."""
        self._listeners.append(listener)

    async def start(self) -> None:
        """Subscribe to the record store, replacing any prior subscription."""
        await self.stop()

        self._feed = self._records.subscribe(self._limit)
        self._consumer = asyncio.create_task(self._consume(self._feed))
        logger.debug("History subscription started")

    async def wait_synced(self) -> None:
        """Wait until the first snapshot has been applied."""
        await self._synced.wait()

    async def stop(self) -> None:
        """Tear down the active subscription, if any."""
        if self._feed is not None:
            self._feed.close()
            self._feed = None

        if self._consumer is not None:
            consumer, self._consumer = self._consumer, None
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass

    async def _consume(self, feed: SnapshotFeed) -> None:
        try:
            async for snapshot in feed:
                self.apply_snapshot(snapshot)
        except Exception as e:
            logger.error(f"History sync error: {e}")

    def apply_snapshot(self, records: list[ScanRecord]) -> None:
        """Replace the cached snapshot and notify listeners."""
        self._snapshot = list(records)
        self._synced.set()
        for listener in self._listeners:
            try:
                listener(self.snapshot)
            except Exception as e:
                logger.error(f"History listener failed: {e}")

    async def save_scan(self, text: str, image: ValidatedImage, token_count: int) -> str:
        """Persist a successful scan.

        Uploads the source image, then writes a new record.

        Args:
            text: Extracted text.
            image: Image the text was extracted from.
            token_count: Token estimate computed at ingestion.

        Returns:
            ID of the new record.

        Raises:
            ScanError: PERSISTENCE_ERROR if the upload or write fails.
        """
        try:
            image_url = await self._blobs.upload(
                blob_path_for(image.name),
                image.data,
                image.media_type
            )

            record = ScanRecord(
                id=None,
                timestamp=None,
                text=text,
                image_url=image_url,
                token_count=token_count,
                keywords=generate_keywords(text),
                file_meta=FileMeta(name=image.name, size=image.size, type=image.media_type)
            )
            record_id = await self._records.insert(record)
        except Exception as e:
            logger.error(f"Save to history failed: {e}")
            raise ScanError(ErrorKind.PERSISTENCE_ERROR, str(e)) from e

        logger.info(f"Saved scan {record_id} to history")
        return record_id

    async def delete(self, record_id: str, confirmed: bool) -> bool:
        """Delete a record once the user has confirmed.

        The stored image is left in place.

        Args:
            record_id: ID of the record to delete.
            confirmed: Whether the user confirmed the deletion.

        Returns:
            True if a record was removed.

        Raises:
            ScanError: PERSISTENCE_ERROR if the store rejects the delete.
        """
        if not confirmed:
            return False

        try:
            deleted = await self._records.delete(record_id)
        except Exception as e:
            logger.error(f"Delete failed: {e}")
            raise ScanError(ErrorKind.PERSISTENCE_ERROR, str(e)) from e

        if not deleted:
            logger.info(f"Scan {record_id} was not in history")
        return deleted

    def filter(self, query: str) -> list[ScanRecord]:
        """Search the cached snapshot.

        Matches a case-insensitive substring of the text, or the query
        contained in any keyword. An empty query matches everything.

        Args:
            query: Search string.

        Returns:
            Matching records in snapshot order.
        """
        q = query.lower()
        if not q:
            return self.snapshot

        return [
            record for record in self._snapshot
            if q in record.text.lower() or any(q in k for k in record.keywords)
        ]

    def get(self, record_id: str) -> Optional[ScanRecord]:
        """Look up a record in the cached snapshot."""
        for record in self._snapshot:
            if record.id == record_id:
                return record
        return None
