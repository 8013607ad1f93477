"""
errors.py
=========
Error kinds raised by the recognition services and stores.

Local recognition errors are never fatal: the coordinator folds them into
its state and offers the fallback. Fallback errors are reported to the
caller without touching presence marks already applied.
"""


class AttendanceError(Exception):
    kind = "attendance_error"
    message = "Attendance processing failed"

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__(f"{self.message}: {detail}" if detail else self.message)


# ── Local OCR path ────────────────────────────────────────────────────────────

class RecognitionError(AttendanceError):
    kind = "recognition_error"
    message = "Text recognition failed"


class ImageUnavailable(RecognitionError):
    kind = "image_unavailable"
    message = "No image selected"


class ImageEncodingFailed(RecognitionError):
    kind = "image_encoding_failed"
    message = "Image could not be decoded"


class NoTextFound(RecognitionError):
    kind = "no_text_found"
    message = "No text found in image"


class RequestFailed(RecognitionError):
    kind = "request_failed"
    message = "OCR engine request failed"


# ── Fallback vision service ──────────────────────────────────────────────────

class FallbackError(AttendanceError):
    kind = "fallback_error"
    message = "AI name recognition failed"


class CredentialMissing(FallbackError):
    kind = "credential_missing"
    message = "Gemini API key is not configured"


class FallbackImageEncodingFailed(FallbackError):
    kind = "image_encoding_failed"
    message = "Image could not be prepared for upload"


class NetworkError(FallbackError):
    kind = "network_error"
    message = "Network request to Gemini failed"


class InvalidResponse(FallbackError):
    kind = "invalid_response"
    message = "Gemini returned an unexpected response"


class NoNamesFound(FallbackError):
    kind = "no_names_found"
    message = "Gemini found no names"


# ── Stores ────────────────────────────────────────────────────────────────────

class StoreAccessError(AttendanceError):
    kind = "store_access_error"
    message = "Could not access store"
