"""Custom exceptions for the classification spine."""

from typing import Any, Dict, Optional


class SpineError(Exception):
    """Base exception for all docspine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class GatekeeperError(SpineError):
    """Raised when the LLM gatekeeper capability fails."""
    pass


class GatekeeperTimeoutError(GatekeeperError):
    """Raised when the gatekeeper call exceeds its timeout."""
    pass


class MalformedGatekeeperOutputError(GatekeeperError):
    """Raised when the gatekeeper returns output that does not match the schema."""
    pass


class ConfigurationInvariantError(SpineError):
    """Raised when an anchor or structural table violates a tier invariant."""
    pass


class RecordStoreError(SpineError):
    """Raised when reading or writing the document record store fails."""
    pass
