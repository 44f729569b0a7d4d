"""
Validation and atomic installation of candidate database files.

A candidate is only ever moved onto the canonical path after it has been
opened successfully, and the move is a rename within the data directory, so
the canonical file is always either the previous database or the new one.
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from geoip_api.data_dir import DataDirectory
from geoip_api.database import OPEN_ERRORS, probe_database
from geoip_api.errors import InstallError
from geoip_api.schemas import DatabaseMetadata

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Installed:
    """The candidate is now the canonical database."""

    metadata: DatabaseMetadata


@dataclass(frozen=True)
class Rejected:
    """The candidate could not be opened and was discarded."""

    reason: str


InstallResult = Installed | Rejected


class Installer:
    """Writes, validates and renames candidates into the data directory."""

    def __init__(
        self,
        data_dir: DataDirectory,
        opener: Callable[[Path], DatabaseMetadata] = probe_database,
    ) -> None:
        self.data_dir = data_dir
        self.opener = opener

    def install(
        self, payload: bytes, validator_token: str | None = None
    ) -> InstallResult:
        """
        Install an in-memory payload.

        Args:
            payload: The raw database bytes, already unwrapped
            validator_token: Entity tag to record alongside the database

        Returns:
            Installed with the new metadata, or Rejected with the reason

        Raises:
            InstallError: If the candidate could not be written
        """
        candidate = self.data_dir.temp_path
        try:
            with open(candidate, "wb") as file:
                file.write(payload)
                file.flush()
                os.fsync(file.fileno())
        except OSError as e:
            candidate.unlink(missing_ok=True)
            raise InstallError(f"Error writing {candidate}: {e}") from e

        return self.install_file(candidate, validator_token)

    def install_file(
        self, candidate: Path, validator_token: str | None = None
    ) -> InstallResult:
        """
        Validate a candidate file in the data directory and rename it into place.

        The etag sidecar is written only after the rename, so it never refers
        to a database that is not on disk. A failed sidecar write is logged
        and does not undo the install.

        Args:
            candidate: Unwrapped database file in the same directory as the
                canonical path
            validator_token: Entity tag to record alongside the database

        Returns:
            Installed with the new metadata, or Rejected with the reason

        Raises:
            InstallError: If the rename fails
        """
        try:
            metadata = self.opener(candidate)
        except OPEN_ERRORS as e:
            candidate.unlink(missing_ok=True)
            logger.warning("Error opening newly downloaded database: %s", e)
            return Rejected(f"Error opening newly downloaded database: {e}")

        try:
            os.replace(candidate, self.data_dir.database_path)
        except OSError as e:
            candidate.unlink(missing_ok=True)
            raise InstallError(
                f"Error moving {candidate} to {self.data_dir.database_path}: {e}"
            ) from e

        try:
            self.data_dir.write_etag(validator_token)
        except OSError as e:
            # The database is already in place; a stale etag only costs a re-download.
            logger.warning("Error writing %s: %s", self.data_dir.etag_path, e)

        logger.debug("Installed %s", self.data_dir.database_path)
        return Installed(metadata)
