"""
Coordination of database refreshes.

Three producers request refreshes: process startup, SIGHUP and a 24 hour
timer. Each request runs one cycle of fetch, unwrap, install and swap. Only
one cycle may be pending or running at a time; a request that arrives while
the refresher is busy is dropped, not queued.
"""

import queue
import signal
import logging
import threading
from enum import Enum
from typing import Final

from geoip_api.archive import extract_file
from geoip_api.config import RemoteSource
from geoip_api.data_dir import DataDirectory
from geoip_api.database import (
    OPEN_ERRORS,
    DatabaseRegistry,
    format_build_date,
    open_database,
)
from geoip_api.errors import FatalStartupError, GeoIPError, InvalidPayload
from geoip_api.fetcher import Fetcher, Unchanged
from geoip_api.installer import Installer, Rejected
from geoip_api.utils import format_age

logger = logging.getLogger(__name__)

CHECK_INTERVAL: Final[int] = 24 * 60 * 60
CYCLE_ERRORS = (GeoIPError, *OPEN_ERRORS)


class RefreshTrigger(Enum):
    """What asked for a refresh cycle."""

    STARTUP = "startup"
    TIMER = "timer"
    RELOAD = "reload"

    @property
    def respects_guard(self) -> bool:
        """Whether a recent check lets this cycle skip the network entirely."""
        return self is RefreshTrigger.STARTUP

    @property
    def force(self) -> bool:
        """Whether the stored ETag is ignored and the body always downloaded."""
        return self is RefreshTrigger.RELOAD


class RefreshOutcome(Enum):
    """Result of one refresh cycle."""

    INSTALLED = "installed"
    UNCHANGED = "unchanged"
    STALE = "stale"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    RELOADED = "reloaded"
    BUSY = "busy"
    FAILED = "failed"


class DatabaseRefresher:
    """Runs refresh cycles one at a time and keeps the registry up to date."""

    def __init__(
        self,
        data_dir: DataDirectory,
        registry: DatabaseRegistry,
        source: RemoteSource | None = None,
        fetcher: Fetcher | None = None,
        installer: Installer | None = None,
        interval: float = CHECK_INTERVAL,
    ) -> None:
        self.data_dir = data_dir
        self.registry = registry
        self.source = source
        self.fetcher = fetcher or (Fetcher(source) if source else None)
        self.installer = installer or Installer(data_dir)
        self.interval = interval
        self.last_outcome: RefreshOutcome | None = None

        self._state_lock = threading.Lock()
        self._busy = False
        self._idle = threading.Event()
        self._idle.set()
        # The busy flag admits at most one trigger; None stops the worker.
        self._queue: queue.Queue[RefreshTrigger | None] = queue.Queue()
        self._stop_event = threading.Event()
        self._reload_event = threading.Event()
        self._worker_thread: threading.Thread | None = None
        self._timer_thread: threading.Thread | None = None
        self._reload_thread: threading.Thread | None = None

    def start(self) -> RefreshOutcome:
        """
        Run the startup cycle synchronously and load the database.

        Returns:
            The outcome of the startup cycle

        Raises:
            FatalStartupError: If no usable database exists afterwards
        """
        self.data_dir.remove_scratch_files()

        if not self._claim():
            raise FatalStartupError("A database refresh is already running")
        try:
            outcome = self._run_cycle(RefreshTrigger.STARTUP)
        except Exception as e:
            if not self.data_dir.has_database():
                if isinstance(e, CYCLE_ERRORS):
                    raise FatalStartupError(f"Error downloading database: {e}") from e
                raise
            logger.error("Error downloading database: %s", e)
            outcome = RefreshOutcome.FAILED
        finally:
            self._release()

        self.last_outcome = outcome

        if not self.registry.loaded:
            try:
                self.registry.replace(open_database(self.data_dir.database_path))
            except OPEN_ERRORS as e:
                raise FatalStartupError(f"Error opening database: {e}") from e

        self._start_worker()
        return outcome

    def refresh(self, trigger: RefreshTrigger) -> RefreshOutcome:
        """
        Run one cycle in the calling thread, unless one is already running.

        Failures are logged and reported as RefreshOutcome.FAILED.
        """
        if not self._claim():
            logger.info(
                "A database refresh is already running, ignoring %s trigger.",
                trigger.value,
            )
            return RefreshOutcome.BUSY
        try:
            return self._execute(trigger)
        finally:
            self._release()

    def submit(self, trigger: RefreshTrigger) -> bool:
        """
        Hand a cycle to the worker thread without waiting for it.

        Returns:
            True if the cycle was accepted, False if one is already pending
            or running
        """
        if self._stop_event.is_set():
            return False
        if not self._claim():
            logger.info(
                "A database refresh is already running, ignoring %s trigger.",
                trigger.value,
            )
            return False

        self._start_worker()
        self._queue.put_nowait(trigger)
        return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no cycle is pending or running."""
        return self._idle.wait(timeout)

    @property
    def busy(self) -> bool:
        return not self._idle.is_set()

    def start_timer(self) -> None:
        """Check for updates every interval seconds, if a source is configured."""
        if self.fetcher is None:
            logger.debug("No remote source configured, periodic checks disabled")
            return

        if self._timer_thread is None or not self._timer_thread.is_alive():
            self._timer_thread = threading.Thread(
                target=self._timer_worker, daemon=True, name="database-timer"
            )
            self._timer_thread.start()
            logger.info(
                "Checking for database updates every %g hours", self.interval / 3600
            )

    def install_signal_handler(self) -> bool:
        """
        Refresh on SIGHUP. Must be called from the main thread.

        Returns:
            False if the platform has no SIGHUP
        """
        if not hasattr(signal, "SIGHUP"):
            logger.info("SIGHUP is not available, reloading by signal is disabled")
            return False

        if self._reload_thread is None or not self._reload_thread.is_alive():
            self._reload_thread = threading.Thread(
                target=self._reload_worker, daemon=True, name="database-reload"
            )
            self._reload_thread.start()

        signal.signal(signal.SIGHUP, self._handle_sighup)
        logger.debug("Send the process a SIGHUP to download a new database")
        return True

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background threads and retire the live database."""
        self._stop_event.set()
        self._reload_event.set()

        if self._worker_thread is not None and self._worker_thread.is_alive():
            self._queue.put(None)

        for thread in (self._worker_thread, self._timer_thread, self._reload_thread):
            if thread is not None and thread.is_alive():
                thread.join(timeout=timeout)

        self.registry.close()
        logger.info("Stopped database refresher")

    def _claim(self) -> bool:
        with self._state_lock:
            if self._busy:
                return False
            self._busy = True
            self._idle.clear()
            return True

    def _release(self) -> None:
        with self._state_lock:
            self._busy = False
            self._idle.set()

    def _start_worker(self) -> None:
        if self._worker_thread is None or not self._worker_thread.is_alive():
            self._worker_thread = threading.Thread(
                target=self._worker, daemon=True, name="database-refresher"
            )
            self._worker_thread.start()

    def _worker(self) -> None:
        """Consume submitted triggers one at a time."""
        while True:
            trigger = self._queue.get()
            if trigger is None:
                break
            try:
                self._execute(trigger)
            except Exception as e:
                logger.error("Error in database refresh worker: %s", e)
                self.last_outcome = RefreshOutcome.FAILED
            finally:
                self._release()

    def _timer_worker(self) -> None:
        while not self._stop_event.wait(timeout=self.interval):
            self.submit(RefreshTrigger.TIMER)

    def _reload_worker(self) -> None:
        while True:
            self._reload_event.wait()
            if self._stop_event.is_set():
                break
            self._reload_event.clear()
            logger.info("Received SIGHUP, refreshing the database")
            self.submit(RefreshTrigger.RELOAD)

    def _handle_sighup(self, signum, frame) -> None:
        # Runs in the main thread between bytecodes; no locks may be taken here.
        self._reload_event.set()

    def _execute(self, trigger: RefreshTrigger) -> RefreshOutcome:
        try:
            outcome = self._run_cycle(trigger)
        except CYCLE_ERRORS as e:
            logger.error("Error downloading new database: %s", e)
            outcome = RefreshOutcome.FAILED
        except Exception:
            logger.exception("Unexpected error in %s refresh cycle", trigger.value)
            outcome = RefreshOutcome.FAILED

        self.last_outcome = outcome
        logger.debug("Refresh cycle (%s) finished: %s", trigger.value, outcome.value)
        return outcome

    def _run_cycle(self, trigger: RefreshTrigger) -> RefreshOutcome:
        """
        One fetch, unwrap, install and swap cycle.

        Raises:
            GeoIPError: If the cycle failed and there is no database on disk
                to fall back on
        """
        has_database = self.data_dir.has_database()

        if self.fetcher is None:
            if not has_database:
                raise FatalStartupError(
                    "Please configure MAXMIND_DB_URL or place a database file at "
                    f"{self.data_dir.database_path}"
                )
            if trigger is RefreshTrigger.RELOAD:
                self._swap_in_database()
                return RefreshOutcome.RELOADED
            return RefreshOutcome.UNCHANGED

        if trigger.respects_guard and has_database:
            age = self.data_dir.last_checked_age()
            if age is not None and age < self.interval:
                logger.info(
                    "Last checked for a database update %s, skipping check.",
                    format_age(age),
                )
                return RefreshOutcome.SKIPPED

        try:
            result = self.fetcher.fetch(
                self.data_dir.read_etag(),
                trigger.force,
                self.data_dir.temp_path,
                has_fallback=has_database,
                fallback_age=self.data_dir.database_age(),
            )
            if isinstance(result, Unchanged):
                if result.stale:
                    return RefreshOutcome.STALE
                self.data_dir.touch_stamp()
                return RefreshOutcome.UNCHANGED

            try:
                payload_path = extract_file(result.path, self.data_dir.temp2_path)
                installed = self.installer.install_file(
                    payload_path, result.validator_token
                )
                if isinstance(installed, Rejected):
                    raise InvalidPayload(installed.reason)
            except InvalidPayload as e:
                if not has_database:
                    raise
                logger.warning("%s", e)
                return RefreshOutcome.REJECTED

            self.data_dir.touch_stamp()
            logger.info(
                "Downloaded a database (%s dated %s)",
                installed.metadata.database_type,
                format_build_date(installed.metadata.build_epoch),
            )
            self._swap_in_database()
            return RefreshOutcome.INSTALLED
        finally:
            self.data_dir.remove_scratch_files()

    def _swap_in_database(self) -> None:
        handle = open_database(self.data_dir.database_path)
        self.registry.replace(handle)
