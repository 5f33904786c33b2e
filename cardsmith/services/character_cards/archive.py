"""
Archive Helpers
==============

Shared ZIP handling for the CHARX and Voxta package formats:

- preflight checks against the central directory before any member is
  decompressed (entry count, per-entry and total uncompressed size,
  path safety)
- bounded member reads
- a scoped temporary file for path-based zipfile access
- a deterministic writer (fixed timestamps, stable member order)
"""

import logging
import os
import posixpath
import re
import tempfile
import zipfile
import zlib
from contextlib import contextmanager
from dataclasses import dataclass, field
from io import BytesIO
from typing import Dict, Iterator, List, Optional, Set, Tuple

from cardsmith.config.models import ZipSecurityConfig

from .errors import ArchiveLimitError, CardParseError

logger = logging.getLogger(__name__)

ZIP_MAGIC = b"PK\x03\x04"
ZIP_EOCD = b"PK\x05\x06"

# Fixed member timestamp so unchanged exports are byte-identical
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)

_SAFE_EXT = re.compile(r"^[a-z0-9]+$")
_DRIVE_LETTER = re.compile(r"^[A-Za-z]:")


def is_zip(data: bytes) -> bool:
    """ZIP local-file-header signature at the start of the buffer."""
    return data[:4] == ZIP_MAGIC


def find_zip_start(data: bytes) -> int:
    """
    Offset of the first local file header, or -1.

    Self-extracting archives carry a stub before the ZIP data; zipfile
    copes with the prefix as long as the end-of-central-directory record
    is present.
    """
    if is_zip(data):
        return 0
    offset = data.find(ZIP_MAGIC)
    if offset > 0 and ZIP_EOCD in data[-65557:]:
        return offset
    return -1


def sanitize_archive_ext(ext: Optional[str], default: str = "bin") -> str:
    """
    Reduce an extension to something safe to use in a member name.

    Anything with path separators or characters outside [a-z0-9] becomes
    the default.
    """
    if not ext:
        return default
    if "/" in ext or "\\" in ext:
        return default
    cleaned = ext.strip().lower().lstrip(".")
    if "." in cleaned:
        cleaned = cleaned.rsplit(".", 1)[-1]
    if not _SAFE_EXT.match(cleaned):
        return default
    return cleaned


def is_path_safe(name: str) -> bool:
    """Reject absolute paths, drive letters, parent segments and NUL bytes."""
    if not name or "\x00" in name:
        return False
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or _DRIVE_LETTER.match(normalized):
        return False
    return ".." not in normalized.split("/")


@dataclass
class PreflightReport:
    """Central-directory summary of an archive."""
    entry_count: int = 0
    total_uncompressed: int = 0
    skipped: Set[str] = field(default_factory=set)
    warnings: List[str] = field(default_factory=list)


def preflight(zf: zipfile.ZipFile, limits: ZipSecurityConfig) -> PreflightReport:
    """
    Check an opened archive's metadata against the configured ceilings.

    Only the central directory is consulted; nothing is decompressed.

    Raises:
        ArchiveLimitError: A hard limit was exceeded
    """
    report = PreflightReport()
    infos = zf.infolist()
    report.entry_count = len(infos)

    if report.entry_count > limits.max_files:
        raise ArchiveLimitError(
            f"Archive has {report.entry_count} entries (limit {limits.max_files})"
        )

    for info in infos:
        if info.is_dir():
            continue

        if not is_path_safe(info.filename):
            if limits.unsafe_path_handling == "reject":
                raise ArchiveLimitError(f"Unsafe path in archive: {info.filename}")
            report.warnings.append(f"Unsafe path in archive: {info.filename}")
            if limits.unsafe_path_handling == "skip":
                report.skipped.add(info.filename)
                continue

        if info.file_size > limits.max_file_size:
            raise ArchiveLimitError(
                f"Entry {info.filename} is {info.file_size} bytes uncompressed "
                f"(limit {limits.max_file_size})"
            )
        if info.file_size > limits.max_file_size * limits.warn_threshold:
            report.warnings.append(f"Large archive entry: {info.filename} ({info.file_size} bytes)")

        report.total_uncompressed += info.file_size

    if report.total_uncompressed > limits.max_total_size:
        raise ArchiveLimitError(
            f"Archive expands to {report.total_uncompressed} bytes "
            f"(limit {limits.max_total_size})"
        )
    if report.total_uncompressed > limits.max_total_size * limits.warn_threshold:
        report.warnings.append(
            f"Archive is close to the size limit ({report.total_uncompressed} bytes)"
        )

    logger.debug(
        f"Preflight ok: {report.entry_count} entries, "
        f"{report.total_uncompressed} bytes uncompressed, {len(report.skipped)} skipped"
    )
    return report


@contextmanager
def temporary_archive_file(data: bytes, suffix: str = ".zip") -> Iterator[str]:
    """
    Write bytes to a temporary file and remove it on every exit path.

    Yields:
        Filesystem path of the temporary file
    """
    fd, path = tempfile.mkstemp(prefix="cardsmith-", suffix=suffix)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        yield path
    finally:
        try:
            os.unlink(path)
            logger.debug(f"Removed temporary archive: {path}")
        except FileNotFoundError:
            pass


class ArchiveReader:
    """Bounded, preflighted read access to one ZIP archive."""

    def __init__(self, zf: zipfile.ZipFile, limits: ZipSecurityConfig, report: PreflightReport):
        self.zf = zf
        self.limits = limits
        self.report = report
        self._bytes_read = 0
        self._infos: Dict[str, zipfile.ZipInfo] = {
            info.filename: info
            for info in zf.infolist()
            if not info.is_dir() and info.filename not in report.skipped
        }

    @property
    def warnings(self) -> List[str]:
        return self.report.warnings

    def names(self) -> List[str]:
        """Member names in archive order (directories and skipped entries excluded)."""
        return list(self._infos)

    def has(self, name: str) -> bool:
        return name in self._infos

    def find(self, name: str) -> Optional[str]:
        """Exact member name, falling back to a case-insensitive match."""
        if name in self._infos:
            return name
        lowered = name.lower()
        for candidate in self._infos:
            if candidate.lower() == lowered:
                return candidate
        return None

    def read(self, name: str) -> bytes:
        """
        Read one member, never more than its declared size.

        Raises:
            CardParseError: Member missing or corrupt
            ArchiveLimitError: Member larger than declared or limits exceeded
        """
        info = self._infos.get(name)
        if info is None:
            raise CardParseError(f"Archive member not found: {name}")

        cap = min(info.file_size, self.limits.max_file_size)
        try:
            with self.zf.open(info) as member:
                data = member.read(cap + 1)
        except (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError) as e:
            raise CardParseError(f"Corrupt archive member {name}", e)

        if len(data) > cap:
            raise ArchiveLimitError(f"Archive member {name} exceeds its declared size")

        self._bytes_read += len(data)
        if self._bytes_read > self.limits.max_total_size:
            raise ArchiveLimitError("Archive exceeded the total size limit while reading")
        return data

    def read_text(self, name: str) -> str:
        return self.read(name).decode("utf-8-sig")


@contextmanager
def open_archive(data: bytes, limits: ZipSecurityConfig) -> Iterator[ArchiveReader]:
    """
    Open archive bytes for reading after a successful preflight.

    The bytes are spooled to a scoped temporary file so zipfile can work
    from a path; the file is deleted however the block exits.

    Raises:
        CardParseError: Not a readable ZIP
        ArchiveLimitError: Preflight rejected the archive
    """
    with temporary_archive_file(data) as path:
        try:
            zf = zipfile.ZipFile(path, "r")
        except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
            raise CardParseError("Invalid ZIP archive", e)

        with zf:
            report = preflight(zf, limits)
            yield ArchiveReader(zf, limits, report)


def unique_member_path(path: str, taken: Set[str]) -> str:
    """
    Claim a member name, appending ``_<n>`` to the stem when it is taken.

    The returned name is added to ``taken``.
    """
    stem, ext = posixpath.splitext(path)
    candidate = path
    count = 0
    while candidate in taken:
        count += 1
        candidate = f"{stem}_{count}{ext}"
    taken.add(candidate)
    return candidate


def write_zip(entries: List[Tuple[str, bytes]], compression_level: int = 6) -> bytes:
    """
    Build a ZIP archive deterministically.

    Members are written in the given order with a fixed timestamp and
    fixed permissions; duplicate names keep the first occurrence.
    """
    buffer = BytesIO()
    seen = set()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, payload in entries:
            name = posixpath.normpath(name).lstrip("/")
            if name in seen:
                logger.warning(f"Duplicate archive member skipped: {name}")
                continue
            seen.add(name)

            info = zipfile.ZipInfo(name, date_time=ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            zf.writestr(info, payload, compresslevel=compression_level)
    return buffer.getvalue()
