import threading
from pathlib import Path

import pytest

from geoip_api.database import (
    DatabaseRegistry,
    format_build_date,
    open_database,
    probe_database,
)
from geoip_api.errors import AddressNotFound, DatabaseNotLoaded

from tests.conftest import AUSTRALIA, SWEDEN, build_database


@pytest.fixture
def old_path(tmp_path: Path) -> Path:
    return build_database(tmp_path / "old.mmdb", database_type="Old-City")


@pytest.fixture
def new_path(tmp_path: Path) -> Path:
    return build_database(
        tmp_path / "new.mmdb",
        database_type="New-City",
        networks={"81.2.69.0/24": AUSTRALIA},
    )


def test_lookup_returns_record(old_path: Path) -> None:
    handle = open_database(old_path)

    assert handle.lookup("81.2.69.142") == SWEDEN
    assert handle.lookup("1.1.1.1")["country"]["iso_code"] == "AU"


@pytest.mark.parametrize("address", ["10.0.0.1", "2001:db8::1", "not-an-address"])
def test_lookup_misses_raise_address_not_found(old_path: Path, address: str) -> None:
    """Unknown networks, IPv6 in an IPv4 tree and garbage are all misses."""
    handle = open_database(old_path)

    with pytest.raises(AddressNotFound):
        handle.lookup(address)


def test_metadata_matches_probe(old_path: Path) -> None:
    handle = open_database(old_path)

    metadata = handle.metadata()

    assert metadata == probe_database(old_path)
    assert metadata.database_type == "Old-City"
    assert metadata.ip_version == 4
    assert metadata.languages == ["en"]


def test_format_build_date() -> None:
    assert format_build_date(1741651200) == "2025-03-11"


def test_empty_registry_raises_database_not_loaded() -> None:
    registry = DatabaseRegistry()

    assert not registry.loaded
    with pytest.raises(DatabaseNotLoaded):
        with registry.current():
            pass


def test_replace_closes_idle_previous_handle(old_path: Path, new_path: Path) -> None:
    old = open_database(old_path)
    new = open_database(new_path)
    registry = DatabaseRegistry(old)

    previous = registry.replace(new)

    assert previous is old
    assert old.closed
    with registry.current() as handle:
        assert handle is new
        assert handle.lookup("81.2.69.142") == AUSTRALIA


def test_pinned_handle_survives_replace(old_path: Path, new_path: Path) -> None:
    """A request that started on the old database finishes on it."""
    old = open_database(old_path)
    new = open_database(new_path)
    registry = DatabaseRegistry(old)

    with registry.current() as handle:
        registry.replace(new)
        assert handle is old
        assert not old.closed
        assert handle.lookup("81.2.69.142") == SWEDEN

    assert old.closed
    assert not new.closed


def test_close_retires_live_handle(old_path: Path) -> None:
    handle = open_database(old_path)
    registry = DatabaseRegistry(handle)

    registry.close()

    assert handle.closed
    assert not registry.loaded


def test_concurrent_reads_see_old_or_new(old_path: Path, new_path: Path) -> None:
    """Readers racing a swap observe exactly one of the two databases."""
    old = open_database(old_path)
    new = open_database(new_path)
    registry = DatabaseRegistry(old)
    stop = threading.Event()
    seen: set[str] = set()
    errors: list[BaseException] = []

    def reader() -> None:
        try:
            while not stop.is_set():
                with registry.current() as handle:
                    assert not handle.closed
                    country = handle.lookup("81.2.69.142")["country"]["iso_code"]
                    assert (handle is old and country == "SE") or (
                        handle is new and country == "AU"
                    )
                    seen.add(handle.metadata().database_type)
        except BaseException as e:
            errors.append(e)

    threads = [threading.Thread(target=reader) for _ in range(8)]
    for thread in threads:
        thread.start()

    registry.replace(new)
    with registry.current() as handle:
        assert handle is new

    stop.set()
    for thread in threads:
        thread.join(timeout=10)

    assert not errors
    assert seen <= {"Old-City", "New-City"}
    assert old.closed
    assert not new.closed
