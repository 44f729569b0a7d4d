"""
Opened database handles and the registry that holds the live one.

Lookups pin the live handle for the duration of a request. A refresh swaps a
new handle into the registry; the previous one stays open until the last
request that pinned it finishes and is then closed.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import maxminddb
import maxminddb.errors

from geoip_api.errors import AddressNotFound, DatabaseNotLoaded
from geoip_api.schemas import DatabaseMetadata

logger = logging.getLogger(__name__)

OPEN_ERRORS = (maxminddb.errors.InvalidDatabaseError, ValueError, OSError)


def format_build_date(build_epoch: int) -> str:
    """Format a build epoch as YYYY-MM-DD (UTC)."""
    return datetime.fromtimestamp(build_epoch, tz=timezone.utc).strftime("%Y-%m-%d")


def read_metadata(reader: maxminddb.Reader) -> DatabaseMetadata:
    """Convert the metadata section of an open reader."""
    metadata = reader.metadata()
    return DatabaseMetadata(
        binary_format_major_version=metadata.binary_format_major_version,
        binary_format_minor_version=metadata.binary_format_minor_version,
        build_epoch=metadata.build_epoch,
        database_type=metadata.database_type,
        description=dict(metadata.description or {}),
        ip_version=metadata.ip_version,
        languages=list(metadata.languages or []),
        node_count=metadata.node_count,
        record_size=metadata.record_size,
    )


class DatabaseHandle:
    """An open, queryable database shared by concurrent lookups."""

    def __init__(self, reader: maxminddb.Reader, path: Path) -> None:
        self.path = path
        self._reader = reader
        self._metadata = read_metadata(reader)
        self._lock = threading.Lock()
        self._readers = 0
        self._retired = False
        self._closed = False

    def metadata(self) -> DatabaseMetadata:
        """Return the metadata of this database."""
        return self._metadata

    def lookup(self, ip_address: str) -> dict[str, Any]:
        """
        Look up the record for an IP address.

        Args:
            ip_address: IPv4 or IPv6 address in text form

        Returns:
            The record stored for the network containing the address

        Raises:
            AddressNotFound: If the address is malformed, of a version the
                database does not hold, or not in the database
        """
        try:
            record = self._reader.get(ip_address)
        except ValueError as e:
            raise AddressNotFound(str(e)) from e

        if record is None:
            raise AddressNotFound(f"{ip_address} not found in the database")
        return record

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self) -> bool:
        """Pin the handle for a reader. Returns False if it is already closed."""
        with self._lock:
            if self._closed:
                return False
            self._readers += 1
            return True

    def release(self) -> None:
        """Unpin the handle, closing it if it was retired and this was the last reader."""
        with self._lock:
            self._readers -= 1
            if not (self._retired and self._readers == 0):
                return
        self.close()

    def retire(self) -> None:
        """Mark the handle as replaced; it closes once no reader holds it."""
        with self._lock:
            self._retired = True
            if self._readers > 0:
                return
        self.close()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._reader.close()
        logger.debug("Closed database handle for %s", self.path)


def open_database(path: str | Path) -> DatabaseHandle:
    """
    Open a database file and log what was loaded.

    Raises:
        maxminddb.errors.InvalidDatabaseError: If the file is not a valid database
        OSError: If the file cannot be read
    """
    reader = maxminddb.open_database(str(path))
    try:
        handle = DatabaseHandle(reader, Path(path))
    except Exception:
        reader.close()
        raise

    metadata = handle.metadata()
    logger.info(
        "Loaded a %s database dated %s",
        metadata.database_type,
        format_build_date(metadata.build_epoch),
    )
    return handle


def probe_database(path: str | Path) -> DatabaseMetadata:
    """
    Check that a file opens as a database and return its metadata.

    Raises:
        maxminddb.errors.InvalidDatabaseError: If the file is not a valid database
        OSError: If the file cannot be read
    """
    with maxminddb.open_database(str(path)) as reader:
        metadata = read_metadata(reader)
    logger.debug("Probed %s: %r", path, metadata)
    return metadata


class DatabaseRegistry:
    """Holds the single live database handle."""

    def __init__(self, handle: DatabaseHandle | None = None) -> None:
        self._handle = handle
        self._swap_lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._handle is not None

    @contextmanager
    def current(self) -> Iterator[DatabaseHandle]:
        """
        Pin the live handle for the duration of the with block.

        Raises:
            DatabaseNotLoaded: If no database has been installed yet
        """
        handle = self._pin()
        try:
            yield handle
        finally:
            handle.release()

    def _pin(self) -> DatabaseHandle:
        while True:
            handle = self._handle
            if handle is None:
                raise DatabaseNotLoaded("No database has been loaded")
            if not handle.acquire():
                continue
            # A swap may have completed between reading the slot and pinning.
            if handle is self._handle:
                return handle
            handle.release()

    def replace(self, handle: DatabaseHandle) -> DatabaseHandle | None:
        """
        Make handle the live database.

        Returns:
            The previously live handle, which is closed once idle
        """
        with self._swap_lock:
            previous = self._handle
            self._handle = handle

        if previous is not None and previous is not handle:
            previous.retire()
        return previous

    def close(self) -> None:
        """Retire the live handle and empty the registry."""
        with self._swap_lock:
            previous = self._handle
            self._handle = None

        if previous is not None:
            previous.retire()
