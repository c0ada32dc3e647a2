"""
Reading and extracting package archives.

Supports zip-based formats (wheels, eggs, jars), tarballs (sdists, hex
packages) and gems, including archives nested inside them such as a gem's
data.tar.gz or a hex package's contents.tar.gz.
"""

import io
import logging
import lzma
import os
import shutil
import tarfile
import tempfile
import zipfile
import zlib
from pathlib import Path
from typing import IO, Generator, Iterator, List, Optional, Tuple

from leakshield.core.errors import ToolError


logger = logging.getLogger(__name__)

ZIP_SUFFIXES = (".whl", ".zip", ".egg", ".jar", ".nupkg")
TAR_SUFFIXES = (
    ".tar",
    ".tar.gz",
    ".tgz",
    ".tar.bz2",
    ".tbz2",
    ".tar.xz",
    ".txz",
    ".gem",
)

# How deep archives inside archives are opened
MAX_NESTING = 3

# A NUL byte in the first block marks a file as binary
BINARY_SNIFF_BYTES = 8192

READ_CHUNK_SIZE = 64 * 1024

# Refuse to write more than this many bytes when extracting one artifact
MAX_EXTRACTED_BYTES = 2 * 1024 * 1024 * 1024

_ARCHIVE_ERRORS = (
    tarfile.TarError,
    zipfile.BadZipFile,
    zipfile.LargeZipFile,
    EOFError,
    zlib.error,
    lzma.LZMAError,
    OSError,
)


def archive_kind(name: str) -> Optional[str]:
    """Return "zip", "tar" or None depending on the file name."""
    lowered = name.lower()
    if lowered.endswith(ZIP_SUFFIXES):
        return "zip"
    if lowered.endswith(TAR_SUFFIXES):
        return "tar"
    return None


def is_binary(head: bytes) -> bool:
    return b"\x00" in head[:BINARY_SNIFF_BYTES]


def iter_archive_lines(
    archive_path: Path,
) -> Generator[Tuple[str, int, str], None, None]:
    """
    Stream (member path, line number, line) for every text line in the archive.

    Nothing is written to disk. Binary members are skipped and nested
    archives are opened up to MAX_NESTING levels. A file that is not a
    recognised archive is read as a single text file.

    Raises:
        ToolError: the archive is corrupt or cannot be read
    """
    try:
        with archive_path.open("rb") as f:
            yield from _iter_lines_in(f, archive_path.name, archive_path.name, depth=0)
    except _ARCHIVE_ERRORS as e:
        raise ToolError(f"Cannot read archive {archive_path.name}: {e}") from e


def _iter_lines_in(
    stream: IO[bytes], name: str, display_path: str, depth: int
) -> Iterator[Tuple[str, int, str]]:
    kind = archive_kind(name) if depth <= MAX_NESTING else None
    if kind is None:
        for line_number, line in enumerate(_iter_text_lines(stream), start=1):
            yield display_path, line_number, line
        return

    members = _iter_members(stream, kind, nested=depth > 0)
    if depth == 0:
        yield from _iter_member_lines(members, display_path, depth)
        return

    # A broken nested archive only hides its own members
    try:
        yield from _iter_member_lines(members, display_path, depth)
    except _ARCHIVE_ERRORS as e:
        logger.debug("Skipping unreadable nested archive %s: %s", display_path, e)


def _iter_member_lines(
    members: Iterator[Tuple[str, IO[bytes]]], display_path: str, depth: int
) -> Iterator[Tuple[str, int, str]]:
    for member_name, member_stream in members:
        member_path = member_name if depth == 0 else f"{display_path}/{member_name}"
        yield from _iter_lines_in(member_stream, member_name, member_path, depth + 1)


def _iter_members(
    stream: IO[bytes], kind: str, nested: bool
) -> Iterator[Tuple[str, IO[bytes]]]:
    if kind == "zip":
        # Members of a tar stream cannot seek, which zipfile needs
        if nested:
            stream = io.BytesIO(stream.read())
        with zipfile.ZipFile(stream) as zf:
            for info in zf.infolist():
                if info.is_dir():
                    continue
                with zf.open(info) as member:
                    yield info.filename, member
    else:
        # Stream mode reads members sequentially without seeking
        with tarfile.open(fileobj=stream, mode="r|*") as tf:
            for member in tf:
                if not member.isfile():
                    continue
                extracted = tf.extractfile(member)
                if extracted is not None:
                    yield member.name, extracted


def _iter_text_lines(stream: IO[bytes]) -> Iterator[str]:
    """Yield decoded lines of stream, or nothing if it looks binary."""
    pending = b""
    first = True
    while True:
        chunk = stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        if first:
            if is_binary(chunk):
                return
            first = False
        pending += chunk
        lines = pending.split(b"\n")
        pending = lines.pop()
        for line in lines:
            yield line.decode("utf-8", errors="replace")
    if pending:
        yield pending.decode("utf-8", errors="replace")


def extract(archive_path: Path, dest_dir: Path) -> None:
    """
    Extract archive_path into dest_dir, expanding nested archives in place.

    A nested archive such as data.tar.gz is replaced by a directory of the
    same name holding its contents. Links, devices and members escaping
    dest_dir are skipped. A file that is not a recognised archive is copied
    as is.

    Raises:
        ToolError: the archive is corrupt or too large
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    budget = [MAX_EXTRACTED_BYTES]
    _extract(archive_path, dest_dir, depth=0, budget=budget)


def _extract(archive_path: Path, dest_dir: Path, depth: int, budget: List[int]) -> None:
    kind = archive_kind(archive_path.name)
    if kind is None:
        logger.debug("Not an archive, copying as is: %s", archive_path.name)
        shutil.copy2(archive_path, dest_dir / archive_path.name)
        return

    try:
        if kind == "zip":
            _extract_zip(archive_path, dest_dir, budget)
        else:
            _extract_tar(archive_path, dest_dir, budget)
    except _ARCHIVE_ERRORS as e:
        raise ToolError(f"Cannot extract {archive_path.name}: {e}") from e

    if depth >= MAX_NESTING:
        return
    nested_archives = [
        path
        for path in sorted(dest_dir.rglob("*"))
        if path.is_file() and archive_kind(path.name) is not None
    ]
    for nested in nested_archives:
        target = Path(
            tempfile.mkdtemp(prefix=f".{nested.name}.", dir=nested.parent)
        )
        try:
            _extract(nested, target, depth + 1, budget)
        except ToolError as e:
            # The outer archive is still useful without this member
            logger.warning("Skipping nested archive %s: %s", nested.name, e)
            shutil.rmtree(target, ignore_errors=True)
            continue
        nested.unlink()
        target.rename(nested)


def _safe_target(dest_dir: Path, member_name: str) -> Optional[Path]:
    root = os.path.abspath(dest_dir)
    target = os.path.abspath(os.path.join(root, member_name))
    if os.path.commonpath([root, target]) != root or target == root:
        logger.debug("Skipping member outside of extraction root: %s", member_name)
        return None
    return Path(target)


def _copy_member(source: IO[bytes], target: Path, budget: List[int]) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("wb") as out:
        while True:
            chunk = source.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            budget[0] -= len(chunk)
            if budget[0] < 0:
                raise ToolError("Extraction size limit exceeded")
            out.write(chunk)


def _extract_zip(archive_path: Path, dest_dir: Path, budget: List[int]) -> None:
    with zipfile.ZipFile(archive_path) as zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            target = _safe_target(dest_dir, info.filename)
            if target is None:
                continue
            with zf.open(info) as member:
                _copy_member(member, target, budget)


def _extract_tar(archive_path: Path, dest_dir: Path, budget: List[int]) -> None:
    with tarfile.open(archive_path, mode="r:*") as tf:
        for member in tf:
            if not member.isfile():
                continue
            target = _safe_target(dest_dir, member.name)
            if target is None:
                continue
            extracted = tf.extractfile(member)
            if extracted is None:
                continue
            with extracted:
                _copy_member(extracted, target, budget)
