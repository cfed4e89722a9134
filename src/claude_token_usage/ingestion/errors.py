"""Custom exceptions for usage log ingestion failures."""


class IngestionError(Exception):
    """Base exception for ingestion errors."""


class InvalidPathError(IngestionError):
    """Raised when a candidate data path fails validation."""


class MalformedRecordError(IngestionError):
    """Raised when one JSONL line cannot be turned into a usage record."""


class FileTooLargeError(IngestionError):
    """Raised when a usage file exceeds the whole-file size ceiling."""
