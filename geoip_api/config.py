"""
Runtime configuration read from environment variables.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

from geoip_api.errors import ConfigurationError
from geoip_api.utils import env_flag, env_str

VERSION: Final[str] = "1.1.0"

DEFAULT_HOST: Final[str] = "0.0.0.0"
DEFAULT_PORT: Final[int] = 3000
DEFAULT_LOG_LEVEL: Final[str] = "INFO"
LOG_LEVELS: Final[tuple[str, ...]] = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@dataclass(frozen=True)
class RemoteSource:
    """Where the database is downloaded from and how the TLS peer is trusted."""

    url: str
    ca_bundle: Path | None = None
    accept_invalid_certs: bool = False


@dataclass(frozen=True)
class Settings:
    """Process wide settings."""

    data_dir: Path
    source: RemoteSource | None = None
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    cors_allowed_origins: list[str] | None = field(default=None)
    log_level: str = DEFAULT_LOG_LEVEL
    access_log: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from the current environment.

        Raises:
            ConfigurationError: If DATA_DIR is missing or not a directory, or
                if PORT or CA_BUNDLE are invalid
        """
        data_dir = env_str("DATA_DIR")
        if data_dir is None:
            raise ConfigurationError("DATA_DIR: environment variable not found")

        data_path = Path(data_dir)
        if not data_path.exists():
            raise ConfigurationError(f"{data_dir}: no such directory")
        if not data_path.is_dir():
            raise ConfigurationError(f"{data_dir} is not a directory")

        source = None
        url = env_str("MAXMIND_DB_URL")
        if url:
            ca_bundle = env_str("CA_BUNDLE")
            if ca_bundle and not os.path.isfile(ca_bundle):
                raise ConfigurationError(f"CA_BUNDLE: {ca_bundle} is not a file")
            source = RemoteSource(
                url=url,
                ca_bundle=Path(ca_bundle) if ca_bundle else None,
                accept_invalid_certs=env_flag("DANGER_ACCEPT_INVALID_CERTS"),
            )

        port_value = env_str("PORT") or str(DEFAULT_PORT)
        try:
            port = int(port_value)
        except ValueError as e:
            raise ConfigurationError(f"PORT: invalid port {port_value!r}") from e
        if not 0 < port < 65536:
            raise ConfigurationError(f"PORT: {port} is out of range")

        log_level = (env_str("LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper()
        if log_level not in LOG_LEVELS:
            raise ConfigurationError(f"LOG_LEVEL: unknown level {log_level!r}")

        origins = env_str("CORS_ALLOWED_ORIGINS")
        cors_allowed_origins = None
        if origins is not None:
            cors_allowed_origins = [
                origin.strip() for origin in origins.split(",") if origin.strip()
            ]

        return cls(
            data_dir=data_path,
            source=source,
            host=env_str("HOST") or DEFAULT_HOST,
            port=port,
            cors_allowed_origins=cors_allowed_origins,
            log_level=log_level,
            access_log=env_flag("ACCESS_LOG", default=True),
        )
