"""
Layout of the persisted state inside the configured data directory.

The canonical database lives at ``database.mmdb``. Two scratch files,
``database.mmdb.temp`` and ``database.mmdb.temp2``, are used while a download
is unwrapped and validated. ``etag`` holds the entity tag of the installed
database and the modification time of ``stamp`` records the last time the
remote source was checked.
"""

import os
import time
import logging
from pathlib import Path
from typing import Final

logger = logging.getLogger(__name__)

DATABASE_FILENAME: Final[str] = "database.mmdb"
ETAG_FILENAME: Final[str] = "etag"
STAMP_FILENAME: Final[str] = "stamp"


class DataDirectory:
    """Paths and sidecar markers of the database artifact."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.database_path = self.root / DATABASE_FILENAME
        self.temp_path = self.root / f"{DATABASE_FILENAME}.temp"
        self.temp2_path = self.root / f"{DATABASE_FILENAME}.temp2"
        self.etag_path = self.root / ETAG_FILENAME
        self.stamp_path = self.root / STAMP_FILENAME

    def has_database(self) -> bool:
        """Check if a canonical database file exists."""
        return self.database_path.is_file()

    def database_age(self) -> float | None:
        """Seconds since the canonical database was written, or None."""
        try:
            return max(0.0, time.time() - self.database_path.stat().st_mtime)
        except FileNotFoundError:
            return None

    def read_etag(self) -> str | None:
        """
        Read the stored validator token.

        The token is only meaningful while the database it was recorded for is
        on disk, so None is returned when either file is missing.
        """
        if not self.has_database():
            return None

        try:
            etag = self.etag_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Could not read %s: %s", self.etag_path, e)
            return None

        return etag or None

    def write_etag(self, etag: str | None) -> None:
        """Store the validator token, or remove it if the source sent none."""
        if etag is None:
            self.etag_path.unlink(missing_ok=True)
            return
        self.etag_path.write_text(etag, encoding="utf-8")

    def touch_stamp(self) -> None:
        """Record that the remote source has just been checked."""
        self.stamp_path.touch()
        os.utime(self.stamp_path, None)

    def last_checked_age(self) -> float | None:
        """Seconds since the remote source was last checked, or None."""
        try:
            return max(0.0, time.time() - self.stamp_path.stat().st_mtime)
        except FileNotFoundError:
            return None

    def remove_scratch_files(self) -> None:
        """Delete leftover scratch files from an interrupted refresh."""
        for path in (self.temp_path, self.temp2_path):
            try:
                path.unlink()
                logger.debug("Removed leftover %s", path)
            except FileNotFoundError:
                pass
