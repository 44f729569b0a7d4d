"""
Container unwrapping for downloaded database files.

Database distributions arrive as a bare ``.mmdb`` file or wrapped in any
combination of tar, gzip, bzip2, xz and zip. The format of each layer is
detected from its leading bytes, never from a file name or content type,
and layers are peeled off one at a time until the remaining bytes are not a
known container. Those bytes are the payload; whether they are a valid
database is decided later by opening them.
"""

import io
import os
import bz2
import gzip
import lzma
import zlib
import shutil
import logging
import tarfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Final

from geoip_api.errors import CorruptContainer, NoPayloadFound

logger = logging.getLogger(__name__)

DATABASE_SUFFIX: Final[str] = ".mmdb"
METADATA_PREFIX: Final[str] = "__MACOSX/"
SNIFF_SIZE: Final[int] = 512
CHUNK_SIZE: Final[int] = 1024 * 1024
MAX_LAYERS: Final[int] = 16


@dataclass(frozen=True)
class ContainerFormat:
    """A container layer that can be recognised and peeled off."""

    name: str
    sniff: Callable[[bytes], bool]
    unwrap: Callable[[BinaryIO, BinaryIO, str], None]


def _is_metadata_entry(name: str) -> bool:
    return name.startswith(METADATA_PREFIX)


def _copy_decompressed(
    decompressor: BinaryIO,
    target: BinaryIO,
    name: str,
    errors: tuple[type[BaseException], ...],
) -> None:
    """Copy a decompressing stream into target, mapping read errors."""
    while True:
        try:
            chunk = decompressor.read(CHUNK_SIZE)
        except errors as e:
            raise CorruptContainer(f"Invalid {name} stream: {e}") from e
        if not chunk:
            return
        target.write(chunk)


def _unwrap_tar(source: BinaryIO, target: BinaryIO, suffix: str) -> None:
    try:
        with tarfile.open(fileobj=source, mode="r:") as archive:
            for member in archive:
                if _is_metadata_entry(member.name) or not member.isfile():
                    continue
                if not member.name.endswith(suffix):
                    continue

                extracted = archive.extractfile(member)
                if extracted is None:
                    continue
                logger.debug("Extracting %s from tar archive", member.name)
                shutil.copyfileobj(extracted, target, CHUNK_SIZE)
                return
    except (tarfile.TarError, EOFError) as e:
        raise CorruptContainer(f"Invalid tar archive: {e}") from e

    raise NoPayloadFound(f"{suffix} file not found in tar archive")


def _unwrap_gzip(source: BinaryIO, target: BinaryIO, suffix: str) -> None:
    with gzip.GzipFile(fileobj=source, mode="rb") as decompressor:
        _copy_decompressed(
            decompressor, target, "gzip", (gzip.BadGzipFile, EOFError, zlib.error)
        )


def _unwrap_bzip2(source: BinaryIO, target: BinaryIO, suffix: str) -> None:
    with bz2.BZ2File(source, mode="rb") as decompressor:
        _copy_decompressed(decompressor, target, "bzip2", (OSError, EOFError))


def _unwrap_xz(source: BinaryIO, target: BinaryIO, suffix: str) -> None:
    with lzma.LZMAFile(source, mode="rb") as decompressor:
        _copy_decompressed(decompressor, target, "xz", (lzma.LZMAError, EOFError))


def _unwrap_zip(source: BinaryIO, target: BinaryIO, suffix: str) -> None:
    # Encrypted members raise RuntimeError.
    zip_errors = (
        zipfile.BadZipFile,
        zlib.error,
        EOFError,
        NotImplementedError,
        RuntimeError,
    )
    try:
        with zipfile.ZipFile(source) as archive:
            for info in archive.infolist():
                if _is_metadata_entry(info.filename) or info.is_dir():
                    continue
                if not info.filename.endswith(suffix):
                    continue

                logger.debug("Extracting %s from zip archive", info.filename)
                with archive.open(info) as member:
                    _copy_decompressed(member, target, "zip member", zip_errors)
                return
    except zip_errors as e:
        raise CorruptContainer(f"Invalid zip archive: {e}") from e

    raise NoPayloadFound(f"{suffix} file not found in zip archive")


FORMATS: Final[tuple[ContainerFormat, ...]] = (
    ContainerFormat("tar", lambda head: head[257:262] == b"ustar", _unwrap_tar),
    ContainerFormat("gzip", lambda head: head.startswith(b"\x1f\x8b"), _unwrap_gzip),
    ContainerFormat(
        "bzip2",
        lambda head: head.startswith(b"BZh") and head[3:4].isdigit(),
        _unwrap_bzip2,
    ),
    ContainerFormat(
        "xz", lambda head: head.startswith(b"\xfd7zXZ\x00"), _unwrap_xz
    ),
    ContainerFormat(
        "zip",
        lambda head: head.startswith((b"PK\x03\x04", b"PK\x05\x06")),
        _unwrap_zip,
    ),
)


def detect_format(stream: BinaryIO) -> ContainerFormat | None:
    """
    Identify the container format of a stream from its leading bytes.

    The stream position is restored before returning.

    Args:
        stream: A seekable binary stream

    Returns:
        The matching container format, or None if the bytes are not a known
        container
    """
    position = stream.tell()
    head = stream.read(SNIFF_SIZE)
    stream.seek(position)

    for container in FORMATS:
        if container.sniff(head):
            return container
    return None


def extract(data: bytes, suffix: str = DATABASE_SUFFIX) -> bytes:
    """
    Peel all container layers off an in-memory body.

    Args:
        data: The downloaded body
        suffix: File name suffix selecting the payload inside tar and zip archives

    Returns:
        The innermost payload

    Raises:
        NoPayloadFound: If an archive holds no member ending in suffix
        CorruptContainer: If a layer cannot be parsed
    """
    current = io.BytesIO(data)

    for _ in range(MAX_LAYERS + 1):
        container = detect_format(current)
        if container is None:
            return current.getvalue()

        unwrapped = io.BytesIO()
        container.unwrap(current, unwrapped, suffix)
        logger.debug("Unwrapped %s layer", container.name)
        unwrapped.seek(0)
        current = unwrapped

    raise CorruptContainer(f"More than {MAX_LAYERS} nested container layers")


def extract_file(
    source: str | Path, scratch: str | Path, suffix: str = DATABASE_SUFFIX
) -> Path:
    """
    Peel all container layers off a downloaded file on disk.

    Layers are written alternately to source and scratch so the body never
    has to fit in memory. Each consumed layer is deleted.

    Args:
        source: The downloaded file
        scratch: A second file in the same directory used as the write target
        suffix: File name suffix selecting the payload inside tar and zip archives

    Returns:
        The path holding the innermost payload (either source or scratch)

    Raises:
        NoPayloadFound: If an archive holds no member ending in suffix
        CorruptContainer: If a layer cannot be parsed
    """
    read_path, write_path = Path(source), Path(scratch)

    for _ in range(MAX_LAYERS + 1):
        with open(read_path, "rb") as reader:
            container = detect_format(reader)
            if container is None:
                return read_path

            try:
                with open(write_path, "wb") as writer:
                    container.unwrap(reader, writer, suffix)
                    writer.flush()
                    os.fsync(writer.fileno())
            except Exception:
                write_path.unlink(missing_ok=True)
                raise

        logger.debug("Unwrapped %s layer", container.name)
        read_path.unlink()
        read_path, write_path = write_path, read_path

    raise CorruptContainer(f"More than {MAX_LAYERS} nested container layers")
