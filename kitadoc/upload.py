"""KitaDoc Audio Pipeline - Upload validation.

Validates a multipart audio upload before any state is created:
1. Body size (Content-Length pre-check, a byte count on the incoming body,
   then a bounded read of the file part)
2. Presence of the "audio" file part
3. Side-channel fields: teacher_id and an RFC3339 timestamp
4. Declared content type against the allow-list

Every rejection raises an UploadError subclass; callers map these to a
client error response. teacher_id is returned unparsed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import Request
from starlette.types import Message, Receive

from kitadoc.config import UPLOAD_READ_CHUNK_BYTES, UploadLimits

logger = logging.getLogger(__name__)

# Multipart field names
AUDIO_FIELD = "audio"
TEACHER_ID_FIELD = "teacher_id"
TIMESTAMP_FIELD = "timestamp"

_RFC3339_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})$"
)


class UploadErrorCode(StrEnum):
    """Error codes for rejected uploads."""

    UPLOAD_TOO_LARGE = "UPLOAD_TOO_LARGE"
    MISSING_FILE = "MISSING_FILE"
    MALFORMED_REQUEST = "MALFORMED_REQUEST"
    DISALLOWED_TYPE = "DISALLOWED_TYPE"


class UploadError(Exception):
    """Base exception for rejected uploads."""

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"{error_code}: {message}")


class UploadTooLargeError(UploadError):
    """Body exceeds the size limit or could not be parsed."""

    def __init__(self, max_size_mb: int, reason: str):
        super().__init__(
            UploadErrorCode.UPLOAD_TOO_LARGE,
            f"Failed to parse multipart form or file size exceeded limit "
            f"({max_size_mb} MB): {reason}",
        )


class MissingFileError(UploadError):
    """The audio file part is absent."""

    def __init__(self):
        super().__init__(
            UploadErrorCode.MISSING_FILE,
            f"Error retrieving audio file: no file part named '{AUDIO_FIELD}'",
        )


class MalformedRequestError(UploadError):
    """A side-channel field is missing or invalid."""

    def __init__(self, message: str):
        super().__init__(UploadErrorCode.MALFORMED_REQUEST, message)


class DisallowedTypeError(UploadError):
    """The declared content type is not allow-listed."""

    def __init__(self, content_type: str | None, allowed: tuple[str, ...]):
        self.content_type = content_type
        super().__init__(
            UploadErrorCode.DISALLOWED_TYPE,
            f"Disallowed file type: {content_type or 'unknown'}. "
            f"Allowed types are: {', '.join(allowed)}",
        )


@dataclass(frozen=True)
class AcceptedUpload:
    """A validated upload, fully buffered."""

    audio: bytes
    teacher_id: str
    observed_at: datetime
    filename: str
    content_type: str


# --- Individual checks ---


def check_content_length(header_value: str | None, limits: UploadLimits) -> None:
    """Reject a request whose announced body size is over the limit.

    A missing or unparsable header is left to limit_body.

    Raises:
        UploadTooLargeError: If Content-Length exceeds limits.max_bytes.
    """
    if not header_value:
        return
    try:
        length = int(header_value)
    except ValueError:
        return
    if length > limits.max_bytes:
        raise UploadTooLargeError(
            limits.max_size_mb, f"request body of {length} bytes exceeds {limits.max_bytes} bytes"
        )


def limit_body(receive: Receive, limits: UploadLimits) -> Receive:
    """Wrap an ASGI receive callable so the body stops at limits.max_bytes.

    Covers requests without a usable Content-Length (chunked transfer),
    which would otherwise be parsed and spooled in full.

    Raises:
        UploadTooLargeError: From the wrapped callable, on the message that
            pushes the body past the limit.
    """
    received = 0

    async def limited_receive() -> Message:
        nonlocal received
        message = await receive()
        if message["type"] == "http.request":
            received += len(message.get("body", b""))
            if received > limits.max_bytes:
                raise UploadTooLargeError(
                    limits.max_size_mb, f"request body exceeds {limits.max_bytes} bytes"
                )
        return message

    return limited_receive


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC3339 timestamp with an explicit offset.

    Raises:
        MalformedRequestError: If value is not RFC3339.
    """
    normalized = value.strip().upper()
    if not _RFC3339_RE.match(normalized):
        raise MalformedRequestError(
            "Invalid timestamp format. Use RFC3339 (e.g., 2024-01-02T15:04:05+01:00)"
        )
    try:
        return datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise MalformedRequestError(
            "Invalid timestamp format. Use RFC3339 (e.g., 2024-01-02T15:04:05+01:00)"
        ) from exc


def _media_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def is_allowed_content_type(content_type: str | None, limits: UploadLimits) -> bool:
    """Check a declared content type against the allow-list (parameters ignored)."""
    media_type = _media_type(content_type)
    return any(media_type == _media_type(allowed) for allowed in limits.allowed_content_types)


def validate_form(form: FormData, limits: UploadLimits) -> tuple[UploadFile, str, datetime]:
    """Validate the fields of a parsed multipart form.

    Returns:
        Tuple of (audio file part, raw teacher_id, parsed timestamp).

    Raises:
        MissingFileError, MalformedRequestError, DisallowedTypeError
    """
    audio = form.get(AUDIO_FIELD)
    if not isinstance(audio, UploadFile):
        raise MissingFileError()

    teacher_id = form.get(TEACHER_ID_FIELD)
    if not isinstance(teacher_id, str) or not teacher_id.strip():
        raise MalformedRequestError("teacher_id is required")

    timestamp = form.get(TIMESTAMP_FIELD)
    if not isinstance(timestamp, str) or not timestamp.strip():
        raise MalformedRequestError("timestamp is required")
    observed_at = parse_timestamp(timestamp)

    if not is_allowed_content_type(audio.content_type, limits):
        raise DisallowedTypeError(audio.content_type, limits.allowed_content_types)

    return audio, teacher_id.strip(), observed_at


async def read_limited(upload: UploadFile, limits: UploadLimits) -> bytes:
    """Read an uploaded file part into memory, stopping past the limit.

    Raises:
        UploadTooLargeError: As soon as more than limits.max_bytes were read.
    """
    buffer = bytearray()
    while True:
        chunk = await upload.read(UPLOAD_READ_CHUNK_BYTES)
        if not chunk:
            break
        buffer.extend(chunk)
        if len(buffer) > limits.max_bytes:
            raise UploadTooLargeError(
                limits.max_size_mb, f"file exceeds {limits.max_bytes} bytes"
            )
    return bytes(buffer)


# --- Entry point ---


async def validate_upload(request: Request, limits: UploadLimits) -> AcceptedUpload:
    """Validate and buffer an audio upload request.

    Args:
        request: Incoming multipart request.
        limits: Size and content-type limits.

    Returns:
        AcceptedUpload with the buffered audio and side-channel fields.

    Raises:
        UploadError: On any rejection; no side effects beyond consuming the body.
    """
    check_content_length(request.headers.get("content-length"), limits)
    request = Request(request.scope, limit_body(request.receive, limits))

    try:
        form = await request.form(max_files=1)
    except (MultiPartException, StarletteHTTPException) as exc:
        reason = getattr(exc, "message", None) or getattr(exc, "detail", None) or str(exc)
        raise UploadTooLargeError(limits.max_size_mb, reason) from exc

    try:
        audio, teacher_id, observed_at = validate_form(form, limits)
        logger.info(
            "Received file: %s, teacher_id: %s, timestamp: %s",
            audio.filename,
            teacher_id,
            observed_at.isoformat(),
        )
        content = await read_limited(audio, limits)
        logger.info("Successfully read %d bytes from file", len(content))
        return AcceptedUpload(
            audio=content,
            teacher_id=teacher_id,
            observed_at=observed_at,
            filename=audio.filename or "unknown",
            content_type=_media_type(audio.content_type),
        )
    finally:
        await form.close()
