"""Attachment policy: which files may be sent, and with which MIME type.

Limits mirror what the media ingest endpoint enforces:
- images: jpg, jpeg, png, gif, webp up to 10MB
- videos: mp4, avi, mov, mkv, webm up to 100MB
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath

from .models import AttachmentKind

MB = 1024 * 1024


@dataclass(frozen=True)
class KindPolicy:
    kind: AttachmentKind
    extensions: frozenset[str]
    max_mb: int

    @property
    def max_bytes(self) -> int:
        return self.max_mb * MB


IMAGE_POLICY = KindPolicy(
    kind=AttachmentKind.IMAGE,
    extensions=frozenset({"jpg", "jpeg", "png", "gif", "webp"}),
    max_mb=10,
)

VIDEO_POLICY = KindPolicy(
    kind=AttachmentKind.VIDEO,
    extensions=frozenset({"mp4", "avi", "mov", "mkv", "webm"}),
    max_mb=100,
)

POLICIES: tuple[KindPolicy, ...] = (IMAGE_POLICY, VIDEO_POLICY)

# Device pickers often report a wrong or generic type; the extension wins.
EXTENSION_MIME_TYPES: dict[str, str] = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "mp4": "video/mp4",
    "avi": "video/x-msvideo",
    "mov": "video/quicktime",
    "mkv": "video/x-matroska",
    "webm": "video/webm",
}

DEFAULT_MIME_TYPE = "image/jpeg"


@dataclass(frozen=True)
class FileCheck:
    """Outcome of validate_file(). ``error`` is set when ``valid`` is False."""

    valid: bool
    kind: AttachmentKind | None = None
    error: str | None = None


def file_extension(name: str) -> str:
    return PurePosixPath(name).suffix.lstrip(".").lower()


def policy_for(name: str) -> KindPolicy | None:
    extension = file_extension(name)
    for policy in POLICIES:
        if extension in policy.extensions:
            return policy
    return None


def validate_file(name: str, size_bytes: int) -> FileCheck:
    """Check a candidate file against the extension and size limits."""
    if not name:
        return FileCheck(valid=False, error="No file provided")

    if not file_extension(name):
        return FileCheck(valid=False, error="File has no valid extension")

    policy = policy_for(name)
    if policy is None:
        allowed = ", ".join(
            sorted(IMAGE_POLICY.extensions) + sorted(VIDEO_POLICY.extensions)
        )
        return FileCheck(valid=False, error=f"Extension not allowed. Valid: {allowed}")

    if size_bytes > policy.max_bytes:
        return FileCheck(
            valid=False,
            kind=policy.kind,
            error=(
                f"File too large. Maximum: {policy.max_mb}MB, "
                f"your file: {size_bytes / MB:.2f}MB"
            ),
        )

    return FileCheck(valid=True, kind=policy.kind)


def resolve_mime_type(name: str, reported: str | None = None) -> str:
    """Pick the MIME type to upload with.

    Order: extension table, then a device-reported image/* or video/* type,
    then image/jpeg.
    """
    mapped = EXTENSION_MIME_TYPES.get(file_extension(name))
    if mapped:
        return mapped
    if reported and reported.startswith(("image/", "video/")):
        return reported
    return DEFAULT_MIME_TYPE
