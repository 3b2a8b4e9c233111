"""Attachment upload pipeline (multipart POST to the media ingest endpoint).

Two failure modes, handled differently:
- validation failures are filtered out up front and reported per file; the
  rest of the batch still uploads
- an upload failure aborts the remaining uploads; what already finished is
  returned together with the error

Security: NEVER log file names or local paths. Only hashes and sizes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import unquote, urlparse

import requests
from pydantic import ValidationError

from storechat.observability.correlation import CORRELATION_ID_HEADER, get_chat_session_id
from storechat.observability.logging import get_logger
from storechat.observability.redaction import hash_identifier, safe_log_context

from .attachments import FileCheck, resolve_mime_type, validate_file
from .models import LOCAL_PREVIEW_STORAGE_ID, Attachment

logger = get_logger(__name__)

# Timeout for one upload request (seconds)
UPLOAD_TIMEOUT = 30

# Multipart field names expected by the ingest endpoint
FILE_FIELD = "file"
NAME_FIELD = "name"


class UploadError(Exception):
    """Raised when a file could not be uploaded."""

    pass


@dataclass(frozen=True)
class CandidateFile:
    """A file picked on the device, not uploaded yet.

    Attributes:
        name: Original file name, used for the extension checks.
        size_bytes: Size reported by the picker.
        uri: Local path or file:// URI.
        mime_type: Type reported by the picker (may be wrong).
    """

    name: str
    size_bytes: int
    uri: str
    mime_type: str | None = None

    @property
    def local_path(self) -> Path:
        if self.uri.startswith("file://"):
            return Path(unquote(urlparse(self.uri).path))
        return Path(self.uri)

    def check(self) -> FileCheck:
        return validate_file(self.name, self.size_bytes)

    def normalized(self) -> "CandidateFile":
        """Copy with the MIME type derived from the extension."""
        return replace(self, mime_type=resolve_mime_type(self.name, self.mime_type))

    def preview(self) -> Attachment:
        """Local stand-in shown on the provisional message until upload ends.

        Raises:
            ValueError: If the file does not pass validation.
        """
        result = self.check()
        if not result.valid or result.kind is None:
            raise ValueError(result.error or "invalid file")
        return Attachment(
            kind=result.kind,
            source_url=self.uri,
            original_name=self.name,
            size_bytes=self.size_bytes,
            storage_id=LOCAL_PREVIEW_STORAGE_ID,
        )


@dataclass
class UploadBatchResult:
    """Result of upload_all().

    Attributes:
        attachments: Uploaded attachments, in input order.
        rejected: Validation failures, "<name>: <reason>".
        errors: Upload failures (at most one, since the batch aborts).
        skipped: Valid files never attempted because the batch aborted.
    """

    attachments: list[Attachment] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    skipped: int = 0

    @property
    def ok(self) -> bool:
        """True when every valid file uploaded."""
        return not self.errors and self.skipped == 0

    @property
    def messages(self) -> list[str]:
        return self.rejected + self.errors


def partition_valid(files: Iterable[CandidateFile]) -> tuple[list[CandidateFile], list[str]]:
    """Split files into (valid, rejection messages)."""
    valid: list[CandidateFile] = []
    rejected: list[str] = []
    for candidate in files:
        result = candidate.check()
        if result.valid:
            valid.append(candidate)
        else:
            rejected.append(f"{candidate.name}: {result.error}")
    return valid, rejected


class UploadPipeline:
    """Uploads attachments one by one to the media ingest endpoint.

    Args:
        upload_url: Multipart POST endpoint.
        timeout: Per-request timeout in seconds.
        http: requests.Session to reuse (a new one is created if omitted).
    """

    def __init__(
        self,
        upload_url: str,
        *,
        timeout: float = UPLOAD_TIMEOUT,
        http: requests.Session | None = None,
    ) -> None:
        self._url = upload_url
        self._timeout = timeout
        self._http = http or requests.Session()
        self._cancelled = False

    def validate(self, candidate: CandidateFile) -> FileCheck:
        return candidate.check()

    def cancel(self) -> None:
        """Stop the running batch before its next file.

        An upload already on the wire finishes; its result is discarded.
        """
        self._cancelled = True

    def _post(self, candidate: CandidateFile) -> dict[str, Any]:
        """Execute the multipart POST. Raises on transport or HTTP error."""
        headers = {}
        session_id = get_chat_session_id()
        if session_id:
            headers[CORRELATION_ID_HEADER] = session_id

        with candidate.local_path.open("rb") as fh:
            response = self._http.post(
                self._url,
                files={FILE_FIELD: (candidate.name, fh, candidate.mime_type)},
                data={NAME_FIELD: candidate.name},
                headers=headers,
                timeout=self._timeout,
            )
        response.raise_for_status()
        return response.json()

    async def upload_one(self, candidate: CandidateFile) -> Attachment:
        """Validate, normalize and upload a single file.

        Raises:
            UploadError: On validation failure, network/HTTP error, or a
                response the ingest endpoint marked as failed.
        """
        result = candidate.check()
        if not result.valid:
            raise UploadError(result.error or "invalid file")

        normalized = candidate.normalized()
        log_ctx = safe_log_context(
            name_hash=hash_identifier(candidate.name),
            size_bytes=candidate.size_bytes,
            mime_type=normalized.mime_type,
        )
        logger.info("uploading attachment", extra={"extra_fields": log_ctx})

        try:
            payload = await asyncio.to_thread(self._post, normalized)
        except (requests.RequestException, OSError, ValueError) as e:
            logger.error(
                "attachment upload failed",
                extra={"extra_fields": {**log_ctx, "error_type": type(e).__name__}},
            )
            raise UploadError(f"{candidate.name}: upload failed ({type(e).__name__})") from e

        if not isinstance(payload, dict):
            payload = {}
        if not payload.get("success") or not payload.get("attachment"):
            reason = payload.get("message") or "unknown error"
            logger.error(
                "attachment rejected by ingest endpoint",
                extra={"extra_fields": log_ctx},
            )
            raise UploadError(f"{candidate.name}: {reason}")

        try:
            attachment = Attachment.model_validate(payload["attachment"])
        except ValidationError as e:
            raise UploadError(f"{candidate.name}: malformed upload response") from e

        if not attachment.is_uploaded:
            raise UploadError(f"{candidate.name}: upload response has no storage id")

        logger.info("attachment uploaded", extra={"extra_fields": log_ctx})
        return attachment

    async def upload_all(self, files: Iterable[CandidateFile]) -> UploadBatchResult:
        """Upload a batch sequentially, preserving order.

        Invalid files are reported in ``rejected`` and skipped. The first
        upload failure stops the batch; remaining files count as ``skipped``.
        """
        self._cancelled = False
        valid, rejected = partition_valid(files)
        result = UploadBatchResult(rejected=rejected)

        for index, candidate in enumerate(valid):
            if self._cancelled:
                result.errors.append("upload cancelled")
                result.skipped = len(valid) - index
                break
            try:
                result.attachments.append(await self.upload_one(candidate))
            except UploadError as e:
                result.errors.append(str(e))
                result.skipped = len(valid) - index - 1
                break

        if self._cancelled and not result.errors:
            result.errors.append("upload cancelled")
        return result
