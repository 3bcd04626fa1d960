from __future__ import annotations

from typing import Optional


class LectureError(Exception):
    """Base class for failures that are reported to API callers."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, details: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def payload(self) -> dict:
        body: dict[str, object] = {"success": False, "error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class MalformedArchive(LectureError):
    status_code = 422
    code = "malformed_archive"


class UnsupportedFileType(LectureError):
    status_code = 415
    code = "unsupported_file_type"


class UploadTooLarge(LectureError):
    status_code = 413
    code = "upload_too_large"


class ChapterNotFound(LectureError):
    status_code = 404
    code = "chapter_not_found"


class ChapterContentMissing(LectureError):
    status_code = 404
    code = "chapter_content_missing"


class NotFound(LectureError):
    status_code = 404
    code = "not_found"


class ValidationFailed(LectureError):
    status_code = 400
    code = "validation_failed"


class Conflict(LectureError):
    status_code = 409
    code = "conflict"


class Unauthorized(LectureError):
    status_code = 401
    code = "unauthorized"


class Forbidden(LectureError):
    status_code = 403
    code = "forbidden"
