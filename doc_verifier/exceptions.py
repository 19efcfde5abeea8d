"""
Custom exception hierarchy for document verification.

Each exception type maps to a specific failure category of the pipeline,
so the job queue can tell a retriable failure from a terminal one.
"""

from __future__ import annotations


class VerificationError(Exception):
    """Base exception for all verification failures."""

    retriable = False

    def __init__(self, code: str, message: str, details: dict | None = None):
        self.code = code
        self.details = details or {}
        super().__init__(message)


class ExtractionError(VerificationError):
    """The extraction collaborator could not produce a result."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("EXTRACTION_FAILED", message, details)


class TransientExtractionError(VerificationError):
    """Network or upstream hiccup; the job queue may try again."""

    retriable = True

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("EXTRACTION_TRANSIENT", message, details)


class MalformedResponseError(VerificationError):
    """The collaborator answered, but not with usable JSON."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("MALFORMED_RESPONSE", message, details)


class DocumentDownloadError(VerificationError):
    """The document could not be fetched (4xx, oversize, bad URL)."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("DOWNLOAD_FAILED", message, details)


class RequestNotFoundError(VerificationError):
    """No verification request exists for the given reference."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("REQUEST_NOT_FOUND", message, details)


class InvalidStateTransition(VerificationError):
    """The request is not in a state that allows the requested action."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("INVALID_STATE", message, details)


class ConfigurationError(VerificationError):
    """An environment setting is missing or malformed."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("CONFIGURATION_INVALID", message, details)


class InvalidSubmissionError(VerificationError):
    """A submission was refused up front (unknown document type, bad format, batch too big)."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("INVALID_SUBMISSION", message, details)


class StorageError(VerificationError):
    """A row the store just wrote could not be read back."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__("STORAGE_ERROR", message, details)
