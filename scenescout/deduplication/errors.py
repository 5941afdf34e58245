"""Exception hierarchy for the event deduplication core."""

from typing import Any, Dict, Optional


class DeduplicationError(Exception):
    """Base exception for all deduplication errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.error_code = error_code
        self.context = context or {}


class ConfigurationError(DeduplicationError, ValueError):
    """Invalid configuration, raised at construction time."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, error_code="invalid_configuration", context=context)
        self.config_key = config_key


class MergeExecutionError(DeduplicationError):
    """A merge could not be applied."""

    def __init__(
        self,
        message: str,
        decision_id: Optional[str] = None,
        error_code: Optional[str] = "merge_failed",
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, error_code=error_code, context=context)
        self.decision_id = decision_id


class HistoryStoreError(DeduplicationError):
    """Failure reading from or writing to a merge history store."""

    def __init__(
        self,
        message: str,
        store: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, error_code="history_store", context=context)
        self.store = store
