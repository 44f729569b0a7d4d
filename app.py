import sys
import logging

import uvicorn
from geoip_api.api import create_app
from geoip_api.config import Settings, VERSION
from geoip_api.data_dir import DataDirectory
from geoip_api.database import DatabaseRegistry
from geoip_api.errors import ConfigurationError, FatalStartupError
from geoip_api.refresher import DatabaseRefresher
from geoip_api.utils import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main() -> None:
    """Download the database, then serve lookups until interrupted."""
    logger.info("version %s", VERSION)

    registry = DatabaseRegistry()
    try:
        settings = Settings.from_env()
        logging.getLogger().setLevel(settings.log_level)
        refresher = DatabaseRefresher(
            DataDirectory(settings.data_dir), registry, source=settings.source
        )
    except ConfigurationError as e:
        logger.error("%s", e)
        sys.exit(1)

    # Send the process a SIGHUP to download a new database
    refresher.install_signal_handler()

    try:
        refresher.start()
    except FatalStartupError as e:
        logger.error("%s", e)
        sys.exit(1)

    refresher.start_timer()

    logger.info(
        "Starting geoip-api server at http://%s:%d", settings.host, settings.port
    )

    uvicorn.run(
        create_app(registry, refresher, settings.cors_allowed_origins),
        host=settings.host,
        port=settings.port,
        server_header=False,
        access_log=settings.access_log,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
