"""
Conditional download of the database from the remote source.
"""

import os
import ssl
import shutil
import logging
import http.client
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from geoip_api.config import RemoteSource, VERSION
from geoip_api.errors import ConfigurationError, FetchError
from geoip_api.utils import format_age

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT: Final[float] = 60.0
CHUNK_SIZE: Final[int] = 1024 * 1024
USER_AGENT: Final[str] = f"geoip-api/{VERSION}"


@dataclass(frozen=True)
class Unchanged:
    """The installed database is kept, either because it is current or as a fallback."""

    stale: bool = False


@dataclass(frozen=True)
class NewPayload:
    """A new body was downloaded to path."""

    path: Path
    validator_token: str | None


FetchResult = Unchanged | NewPayload


def build_ssl_context(source: RemoteSource) -> ssl.SSLContext:
    """
    Build the TLS context for talking to the remote source.

    Args:
        source: The remote source descriptor

    Returns:
        A default context with the optional CA bundle added as a trust root,
        or with verification disabled if the source asks for it

    Raises:
        ConfigurationError: If the CA bundle cannot be loaded
    """
    context = ssl.create_default_context()

    if source.ca_bundle is not None:
        try:
            context.load_verify_locations(cafile=str(source.ca_bundle))
        except (ssl.SSLError, OSError) as e:
            raise ConfigurationError(
                f"CA_BUNDLE: could not load {source.ca_bundle}: {e}"
            ) from e

    if source.accept_invalid_certs:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    return context


class Fetcher:
    """Performs conditional GET requests against a remote source."""

    def __init__(self, source: RemoteSource, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.source = source
        self.timeout = timeout
        self._opener = urllib.request.build_opener(
            urllib.request.HTTPSHandler(context=build_ssl_context(source))
        )

    def fetch(
        self,
        validator_token: str | None,
        force: bool,
        destination: Path,
        has_fallback: bool = False,
        fallback_age: float | None = None,
    ) -> FetchResult:
        """
        Download the database if it changed since validator_token was issued.

        Args:
            validator_token: The stored entity tag, if any
            force: Ignore validator_token and always download
            destination: File the response body is written to
            has_fallback: Whether a usable database already exists on disk
            fallback_age: Age of that database in seconds, for logging

        Returns:
            Unchanged if the source answered 304, or if the request failed
            while a fallback exists; NewPayload if a body was downloaded

        Raises:
            FetchError: If the request failed and there is no fallback
        """
        try:
            return self._fetch(validator_token, force, destination)
        except FetchError as e:
            if not has_fallback:
                raise
            logger.warning("%s", e)
            if fallback_age is not None:
                logger.info(
                    "There is a database saved from %s so ignoring the error.",
                    format_age(fallback_age),
                )
            return Unchanged(stale=True)

    def _fetch(
        self, validator_token: str | None, force: bool, destination: Path
    ) -> FetchResult:
        request = urllib.request.Request(
            self.source.url, headers={"User-Agent": USER_AGENT}
        )
        if validator_token and not force:
            request.add_header("If-None-Match", validator_token)

        logger.debug("Requesting %s", self.source.url)

        try:
            with self._opener.open(request, timeout=self.timeout) as response:
                if response.status != 200:
                    raise FetchError(
                        f"Got unexpected response code: {response.status}",
                        status=response.status,
                    )

                etag = response.headers.get("ETag")
                with open(destination, "wb") as file:
                    shutil.copyfileobj(response, file, CHUNK_SIZE)
                    file.flush()
                    os.fsync(file.fileno())
        except urllib.error.HTTPError as e:
            e.close()
            if e.code == 304:
                logger.info("The database file is up to date.")
                return Unchanged()
            raise FetchError(
                f"Got unexpected response code: {e.code}", status=e.code
            ) from e
        except (
            urllib.error.URLError,
            http.client.HTTPException,
            ConnectionError,
            TimeoutError,
        ) as e:
            destination.unlink(missing_ok=True)
            raise FetchError(f"Error downloading {self.source.url}: {e}") from e
        except OSError as e:
            destination.unlink(missing_ok=True)
            raise FetchError(f"Error saving download to {destination}: {e}") from e

        logger.debug("Downloaded %s (ETag: %s)", self.source.url, etag)
        return NewPayload(path=destination, validator_token=etag)
