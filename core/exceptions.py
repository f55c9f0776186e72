"""
Custom exceptions for bank statement import and categorization.
"""
from typing import Any, Dict, Optional


class BankImportException(Exception):
    """Base exception for all bank import errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize exception.

        Args:
            message: Error message
            details: Additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(BankImportException):
    """Raised when input, such as a resume state, is inconsistent."""
    pass


class LLMError(BankImportException):
    """Raised when an LLM gateway call fails."""
    pass


class ExtractionError(BankImportException):
    """Raised when a batch cannot be turned into transactions."""
    pass


class EmptyExtractionError(ExtractionError):
    """Raised when the extraction service returns no transactions for a batch."""
    pass


class ClassifierError(BankImportException):
    """Raised when a classifier batch yields no usable results."""
    pass


class ParsingError(BankImportException):
    """Raised when statement file parsing fails."""
    pass


class ExportError(BankImportException):
    """Raised when Excel export fails."""
    pass


class ConfigurationError(BankImportException):
    """Raised when configuration is invalid."""
    pass


class DataNotFoundError(BankImportException):
    """Raised when required data is not found."""
    pass


class NoTransactionsError(BankImportException):
    """Raised when an entire statement yields no transactions."""
    pass


class PersistenceError(BankImportException):
    """Raised when committing results to the database fails."""
    pass


class ImportPaused(Exception):
    """
    Raised when a run observes its cancellation token between batch groups.

    Not an error: the caller receives a complete ResumeState and is expected
    to resume or discard it.
    """

    def __init__(self, resume_state: Any):
        super().__init__(
            f"Import paused before batch {getattr(resume_state, 'next_index', '?')}"
        )
        self.resume_state = resume_state
