"""Deduplicator component for repeat-scan detection."""

from typing import Iterable, Optional

from .database import ScanRecord


class DuplicateDetector:
    """Detect repeat scans by filename and size.

    This is a cheap identity heuristic, not a content hash: two different
    images sharing a name and byte size are reported as duplicates.
    """

    def find_duplicate(
        self,
        name: str,
        size: int,
        snapshot: Iterable[ScanRecord]
    ) -> Optional[ScanRecord]:
        """Find the first cached record with the same fingerprint.

        Args:
            name: Filename of the new image.
            size: Byte size of the new image.
            snapshot: Cached history records, in display order.

        Returns:
            Matching ScanRecord or None.
        """
        for record in snapshot:
            meta = record.file_meta
            if meta is None:
                continue
            if meta.name == name and meta.size == size:
                return record
        return None

    def is_duplicate(self, name: str, size: int, snapshot: Iterable[ScanRecord]) -> bool:
        """Check whether a fingerprint matches any cached record."""
        return self.find_duplicate(name, size, snapshot) is not None
