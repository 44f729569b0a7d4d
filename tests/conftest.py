import io
import socket
import tarfile
import threading
import zipfile
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Iterator

import pytest
from mmdb_writer import MMDBWriter
from netaddr import IPSet

from geoip_api.data_dir import DataDirectory

SWEDEN: dict[str, Any] = {
    "continent": {"code": "EU", "names": {"en": "Europe"}},
    "country": {"iso_code": "SE", "names": {"en": "Sweden"}},
    "city": {"names": {"en": "Stockholm"}},
}

AUSTRALIA: dict[str, Any] = {
    "continent": {"code": "OC", "names": {"en": "Oceania"}},
    "country": {"iso_code": "AU", "names": {"en": "Australia"}},
    "city": {"names": {"en": "Brisbane"}},
}

DEFAULT_NETWORKS: dict[str, dict[str, Any]] = {
    "81.2.69.0/24": SWEDEN,
    "1.1.1.0/24": AUSTRALIA,
}


def build_database(
    path: Path,
    database_type: str = "GeoLite2-City",
    networks: dict[str, dict[str, Any]] | None = None,
) -> Path:
    """Write a small IPv4 MaxMind database to path."""
    writer = MMDBWriter(
        ip_version=4,
        database_type=database_type,
        languages=["en"],
        description={"en": f"{database_type} test database"},
    )
    for network, record in (networks or DEFAULT_NETWORKS).items():
        writer.insert_network(IPSet([network]), record)
    writer.to_db_file(str(path))
    return path


def make_tar(entries: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name, content in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def make_zip(entries: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def make_encrypted_zip(entries: dict[str, bytes]) -> bytes:
    """A zip whose members are flagged as password protected."""
    data = bytearray(make_zip(entries))
    offset = data.find(b"PK\x01\x02")
    while offset != -1:
        data[offset + 8] |= 0x01
        offset = data.find(b"PK\x01\x02", offset + 4)
    return bytes(data)


@pytest.fixture
def database_bytes(tmp_path: Path) -> bytes:
    """Bytes of a valid database."""
    return build_database(tmp_path / "fixture.mmdb").read_bytes()


@pytest.fixture
def data_dir(tmp_path: Path) -> DataDirectory:
    root = tmp_path / "data"
    root.mkdir()
    return DataDirectory(root)


@dataclass
class FakeResponse:
    status: int = 200
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)


class FakeRemote:
    """Programmable stand-in for the remote database source."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.response = FakeResponse(status=404)
        self.requests: list[Any] = []
        self.request_received = threading.Event()
        self.gate: threading.Event | None = None

    def respond(self, status: int = 200, body: bytes = b"", **headers: str) -> None:
        self.response = FakeResponse(status=status, body=body, headers=headers)


class _RemoteHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:
        remote: FakeRemote = self.server.remote  # type: ignore[attr-defined]
        remote.requests.append(self.headers)
        remote.request_received.set()
        if remote.gate is not None:
            remote.gate.wait(timeout=10)

        response = remote.response
        body = b"" if response.status == 304 else response.body
        self.send_response(response.status)
        for name, value in response.headers.items():
            self.send_header(name.replace("_", "-"), value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        pass


@pytest.fixture
def remote() -> Iterator[FakeRemote]:
    """A local HTTP server answering with FakeRemote.response."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), _RemoteHandler)
    host, port = server.server_address[:2]
    fake = FakeRemote(f"http://{host}:{port}/GeoLite2-City.mmdb")
    server.remote = fake  # type: ignore[attr-defined]

    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield fake
    finally:
        if fake.gate is not None:
            fake.gate.set()
        server.shutdown()
        server.server_close()


@pytest.fixture
def unreachable_url() -> str:
    """A URL on a local port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    return f"http://127.0.0.1:{port}/GeoLite2-City.mmdb"
