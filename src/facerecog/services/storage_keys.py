"""Storage key derivation, parsing, and validation for uploaded photos.

Keys look like ``uploads/YYYY/MM/DD/{file_id}_{safe_filename}`` (dated by UTC
upload day) or ``temp/{file_id}_{safe_filename}`` for in-flight files.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import quote

UPLOADS_PREFIX = "uploads"
TEMP_PREFIX = "temp"
MAX_FILENAME_LENGTH = 100
MAX_STORAGE_KEY_LENGTH = 1024

_MIME_EXTENSIONS: dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}
_DEFAULT_EXTENSION = ".jpg"

_EXTENSION_RE = re.compile(r"\.[^/.]+$")
_UNSAFE_RUN_RE = re.compile(r"[^a-z0-9._-]+")
_FORBIDDEN_KEY_CHARS_RE = re.compile(r'[<>:"|?*\x00-\x1f\x7f]')


@dataclass(frozen=True)
class StorageKeyParts:
    prefix: str
    year: str | None = None
    month: str | None = None
    day: str | None = None
    file_id: str | None = None
    filename: str | None = None


@dataclass(frozen=True)
class UploadRecord:
    """Immutable description of one stored upload."""

    file_id: str
    original_name: str
    safe_filename: str
    storage_key: str
    content_type: str
    size: int
    uploaded_at: str


def generate_file_id() -> str:
    return str(uuid.uuid4())


def extension_for_mime_type(mime_type: str) -> str:
    return _MIME_EXTENSIONS.get(mime_type, _DEFAULT_EXTENSION)


def generate_safe_filename(original_name: str, mime_type: str) -> str:
    """Lowercase, drop the extension, collapse unsafe runs to ``_``, append the canonical extension."""
    stem = _EXTENSION_RE.sub("", original_name.lower())
    stem = _UNSAFE_RUN_RE.sub("_", stem).strip("._") or "image"
    return f"{stem}{extension_for_mime_type(mime_type)}"


def truncate_filename(filename: str, max_length: int = MAX_FILENAME_LENGTH) -> str:
    """Shorten the stem so the whole name fits; the extension always survives."""
    if len(filename) <= max_length:
        return filename

    dot = filename.rfind(".")
    if dot == -1:
        return filename[:max_length]

    extension = filename[dot:]
    available = max_length - len(extension)
    if available <= 0:
        return extension
    return filename[:dot][:available] + extension


def _format_iso(moment: datetime) -> str:
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def generate_storage_key(
    file_id: str,
    original_name: str,
    mime_type: str,
    now: datetime | None = None,
) -> str:
    moment = (now or datetime.now(UTC)).astimezone(UTC)
    filename = truncate_filename(generate_safe_filename(original_name, mime_type))
    return f"{UPLOADS_PREFIX}/{moment.year}/{moment.month:02d}/{moment.day:02d}/{file_id}_{filename}"


def generate_temp_storage_key(file_id: str, original_name: str, mime_type: str) -> str:
    filename = truncate_filename(generate_safe_filename(original_name, mime_type))
    return f"{TEMP_PREFIX}/{file_id}_{filename}"


def _split_file_part(file_part: str) -> tuple[str, str] | None:
    underscore = file_part.find("_")
    if underscore <= 0:
        return None
    return file_part[:underscore], file_part[underscore + 1 :]


def parse_storage_key(storage_key: str) -> StorageKeyParts:
    """Recover the components of a key built by this module.

    Unrecognized layouts yield only the first path segment as ``prefix``.
    """
    parts = storage_key.split("/")

    if len(parts) == 5 and parts[0] == UPLOADS_PREFIX:
        split = _split_file_part(parts[4])
        if split is not None:
            return StorageKeyParts(
                prefix=parts[0],
                year=parts[1],
                month=parts[2],
                day=parts[3],
                file_id=split[0],
                filename=split[1],
            )
    elif len(parts) == 2 and parts[0] == TEMP_PREFIX:
        split = _split_file_part(parts[1])
        if split is not None:
            return StorageKeyParts(prefix=parts[0], file_id=split[0], filename=split[1])

    return StorageKeyParts(prefix=parts[0])


def is_valid_storage_key(storage_key: str) -> bool:
    if not storage_key or len(storage_key) > MAX_STORAGE_KEY_LENGTH:
        return False
    if _FORBIDDEN_KEY_CHARS_RE.search(storage_key):
        return False
    return storage_key.startswith((f"{UPLOADS_PREFIX}/", f"{TEMP_PREFIX}/"))


def create_upload_record(
    original_name: str,
    content_type: str,
    size: int,
    file_id: str | None = None,
    now: datetime | None = None,
) -> UploadRecord:
    moment = now or datetime.now(UTC)
    fid = file_id or generate_file_id()
    return UploadRecord(
        file_id=fid,
        original_name=original_name,
        safe_filename=generate_safe_filename(original_name, content_type),
        storage_key=generate_storage_key(fid, original_name, content_type, now=moment),
        content_type=content_type,
        size=size,
        uploaded_at=_format_iso(moment),
    )


def generate_file_url(storage_key: str, base_url: str) -> str:
    """Public URL for a stored object; the whole key is percent-encoded as one segment."""
    return f"{base_url.rstrip('/')}/{quote(storage_key, safe='')}"
