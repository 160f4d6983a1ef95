"""
Artifact handling for exports: filename resolution, the in-memory handle and
the sinks that persist bytes on the host.
"""

import asyncio
import io
import os
import re
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Protocol
from urllib.parse import unquote

from dashboard_core.config import settings
from dashboard_core.infrastructure.observability.logging import get_logger
from dashboard_core.models.domain.attendance_domain import ExportFormat

logger = get_logger(__name__)

FILENAME_PREFIX = "attendance"

# filename*=UTF-8''name.csv takes precedence over filename="name.csv"
_EXTENDED_FILENAME_RE = re.compile(r"filename\*\s*=\s*([^']*)'[^']*'([^;]+)", re.IGNORECASE)
_FILENAME_RE = re.compile(r'filename\s*=\s*(?:"([^"]*)"|([^;]+))', re.IGNORECASE)
_UNSAFE_CHARS_RE = re.compile(r'[\x00-\x1f<>:"|?*]')


def generated_filename(scope_id: str, export_format: ExportFormat, now: datetime | None = None) -> str:
    """``attendance_<scope>_<epoch-ms>.<ext>``"""
    moment = now or datetime.now(UTC)
    timestamp = int(moment.timestamp() * 1000)
    safe_scope = _UNSAFE_CHARS_RE.sub("_", scope_id.replace("/", "_").replace("\\", "_"))
    return f"{FILENAME_PREFIX}_{safe_scope}_{timestamp}.{export_format.value}"


def filename_from_disposition(content_disposition: str | None) -> str | None:
    """
    Suggested filename from a Content-Disposition header.

    Returns None when the header is missing or the name is unusable.
    """
    if not content_disposition:
        return None

    name = None
    match = _EXTENDED_FILENAME_RE.search(content_disposition)
    if match:
        encoding = match.group(1).strip() or "utf-8"
        try:
            name = unquote(match.group(2).strip(), encoding=encoding, errors="strict")
        except (LookupError, UnicodeDecodeError):
            name = None

    if name is None:
        match = _FILENAME_RE.search(content_disposition)
        if match:
            name = match.group(1) if match.group(1) is not None else match.group(2)

    return _sanitize(name)


def resolve_filename(
    content_disposition: str | None,
    scope_id: str,
    export_format: ExportFormat,
    now: datetime | None = None,
) -> str:
    """Server-suggested name, or a generated one. Never empty."""
    return filename_from_disposition(content_disposition) or generated_filename(
        scope_id, export_format, now
    )


def _sanitize(name: str | None) -> str | None:
    if name is None:
        return None
    # Keep only the last path component, whichever separator was used
    name = PurePosixPath(name.strip().replace("\\", "/")).name
    name = _UNSAFE_CHARS_RE.sub("_", name).strip(" .")
    if not name:
        return None
    return name


class InMemoryArtifact:
    """
    The in-flight artifact bytes. Released explicitly once handed off.

    Use as a context manager so release happens on every path.
    """

    def __init__(self, content: bytes, content_type: str | None = None):
        self._buffer: io.BytesIO | None = io.BytesIO(content)
        self.content_type = content_type
        self.size = len(content)

    @property
    def released(self) -> bool:
        return self._buffer is None

    def getvalue(self) -> bytes:
        if self._buffer is None:
            raise ValueError("Artifact already released")
        return self._buffer.getvalue()

    def release(self) -> None:
        if self._buffer is not None:
            self._buffer.close()
            self._buffer = None

    def __enter__(self) -> "InMemoryArtifact":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class ArtifactSink(Protocol):
    async def save(self, filename: str, content: bytes, content_type: str | None = None) -> str:
        """Persist the bytes and return where they ended up."""
        ...


class LocalDirectorySink:
    """
    Save artifacts into a local directory.

    Bytes go to a hidden ``.part`` file first and are renamed into place, so
    a failed write never leaves a truncated file under the final name.
    Existing files are not overwritten; a numeric suffix is added instead.
    """

    def __init__(self, directory: str | Path | None = None):
        self.directory = Path(directory or settings.EXPORT_DIR)

    async def save(self, filename: str, content: bytes, content_type: str | None = None) -> str:
        path = await asyncio.to_thread(self._write, filename, content)
        logger.debug("Artifact saved", path=str(path), size=len(content), content_type=content_type)
        return str(path)

    def _write(self, filename: str, content: bytes) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self._available_path(filename)
        partial = target.with_name(f".{target.name}.part")
        try:
            with open(partial, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(partial, target)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        return target

    def _available_path(self, filename: str) -> Path:
        target = self.directory / filename
        if not target.exists():
            return target
        stem, suffix = target.stem, target.suffix
        counter = 1
        while True:
            candidate = self.directory / f"{stem} ({counter}){suffix}"
            if not candidate.exists():
                return candidate
            counter += 1
