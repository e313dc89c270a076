"""
Error taxonomy and classification.

Turns raw SDK, HTTP and network failures into BubbleError subclasses that
carry a display message and a retry decision.
"""

from typing import Optional

import httpx


class BubbleError(Exception):
    """Base error. str() is the message shown to the user."""
    retryable = False

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class TransientServiceError(BubbleError):
    """HTTP 429/5xx or a network-level fault. Retried by the orchestrator."""
    retryable = True


class QuotaExhaustedError(TransientServiceError):
    """Provider quota hit (429) or the local daily soft limit reached."""


class AuthenticationError(BubbleError):
    """Missing or rejected credential. Never retried."""


class ValidationError(BubbleError):
    """Structured response was empty, malformed or failed validation."""


class RequestTimeoutError(BubbleError):
    """Local deadline passed before the operation completed."""


class InvalidRequestError(BubbleError):
    """Any other client-side failure (400, 404, ...)."""


NETWORK_FAULT_MARKERS = (
    "xhr error",
    "fetch failed",
    "networkerror",
    "network",
    "connection reset",
    "connection refused",
    "temporarily unavailable",
    "timed out",
)

QUOTA_MARKERS = ("429", "quota", "resource_exhausted", "too many requests")

MISSING_KEY_MESSAGE = "API Key Missing. Please go to Settings and enter your Gemini API Key."


def extract_status(error: BaseException) -> Optional[int]:
    """Best-effort HTTP status of an error raised by an SDK.

    google-genai APIError exposes ``code``, httpx exposes ``response.status_code``,
    postgrest/supabase errors sometimes carry ``status``.
    """
    if isinstance(error, BubbleError):
        return error.status
    for attr in ("code", "status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    status_code = getattr(response, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    return None


def is_network_fault(error: BaseException) -> bool:
    """True for transport-level failures (no HTTP response at all)."""
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    text = str(error).lower()
    return any(marker in text for marker in NETWORK_FAULT_MARKERS)


def map_error_message(error: BaseException) -> str:
    """Map an error to the message displayed to the user."""
    if isinstance(error, BubbleError) and error.message:
        return error.message

    msg = str(error)
    status = extract_status(error) or 0

    if "Validation Failed" in msg:
        return "Generated content was malformed. Please try again."
    if "API Key Missing" in msg:
        return msg
    if "400" in msg or status == 400:
        return "Invalid Request (400). The image format might be unsupported or the prompt is too large."
    if "401" in msg or status == 401:
        return "Unauthorized (401). Your API Key is invalid. Please update it in Settings."
    if "403" in msg or status == 403:
        return "Permission Denied (403). Your API Key might be expired, or your billing project is inactive."
    if "404" in msg or status == 404:
        return "Model Not Found (404). The requested model may not be available in your region yet."
    if "429" in msg or status == 429:
        return "Rate Limit Exceeded (429). You are sending requests too fast. Please wait a moment."
    if "503" in msg or status == 503:
        return "Service Overloaded (503). Google's servers are busy."
    if "500" in msg or status >= 500:
        return f"Google Server Error ({status or 500}). The AI service is currently down. Try again later."
    if is_network_fault(error):
        return "Network Error. Please check your internet connection."

    return f"AI Error: {msg[:100]}..."


def classify_error(error: BaseException) -> BubbleError:
    """Classify a raw Gemini/network error into the taxonomy.

    Already-classified errors are returned unchanged.
    """
    if isinstance(error, BubbleError):
        return error

    status = extract_status(error)
    message = map_error_message(error)
    text = str(error).lower()

    if status == 429 or (status is None and any(m in text for m in QUOTA_MARKERS)):
        return QuotaExhaustedError(message, status=429)
    if status is not None and status >= 500:
        return TransientServiceError(message, status=status)
    if status in (401, 403):
        return AuthenticationError(message, status=status)
    if status is not None and 400 <= status < 500:
        return InvalidRequestError(message, status=status)
    if is_network_fault(error):
        return TransientServiceError(message)
    if "validation failed" in text:
        return ValidationError(message)
    return InvalidRequestError(message, status=status)


# Postgrest codes that will not resolve by waiting: JWT rejected, unique violation.
NON_RETRYABLE_DB_CODES = ("PGRST301", "23505")


def classify_backend_error(error: BaseException) -> BubbleError:
    """Classifier for Supabase calls: everything is transient except auth and conflicts."""
    if isinstance(error, BubbleError):
        return error

    status = extract_status(error)
    code = getattr(error, "code", None)
    message = getattr(error, "message", None) or str(error)

    if status in (401, 403) or code == "PGRST301":
        return AuthenticationError(message, status=status)
    if code in NON_RETRYABLE_DB_CODES:
        return InvalidRequestError(message, status=status)
    return TransientServiceError(message, status=status)
