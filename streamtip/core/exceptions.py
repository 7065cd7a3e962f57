"""
Custom exception classes for the settlement core.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class StreamTipException(Exception):
    """Base exception class for the settlement core."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(StreamTipException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class ValidationError(StreamTipException):
    """Raised when caller input is malformed or missing required fields."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class DuplicateTipError(StreamTipException):
    """Raised when a transaction hash was already recorded for its source chain."""

    def __init__(self, transaction_hash: str, chain_id: int, settlement_id: str):
        self.transaction_hash = transaction_hash
        self.chain_id = chain_id
        self.settlement_id = settlement_id
        super().__init__(
            f"Tip already recorded: {transaction_hash} on chain {chain_id}",
            "DUPLICATE_TIP",
            {
                "transaction_hash": transaction_hash,
                "chain_id": chain_id,
                "settlement_id": settlement_id,
            }
        )


class NotFoundError(StreamTipException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class SettlementNotFoundError(NotFoundError):
    """Raised when a settlement (batch) id is unknown."""

    def __init__(self, settlement_id: str):
        self.settlement_id = settlement_id
        super().__init__(
            f"Settlement not found: {settlement_id}",
            {"settlement_id": settlement_id}
        )


class IllegalTransitionError(StreamTipException):
    """Raised when a settlement status move is not permitted from its current state."""

    def __init__(self, settlement_id: str, current: str, requested: str, reason: Optional[str] = None):
        self.settlement_id = settlement_id
        self.current = current
        self.requested = requested
        message = f"Illegal transition for {settlement_id}: {current} -> {requested}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message,
            "ILLEGAL_TRANSITION",
            {"settlement_id": settlement_id, "current": current, "requested": requested}
        )


class ConcurrentRunError(StreamTipException):
    """Raised when a batch is already being processed."""

    def __init__(self, settlement_id: str):
        self.settlement_id = settlement_id
        super().__init__(
            f"Settlement already in flight: {settlement_id}",
            "CONCURRENT_RUN",
            {"settlement_id": settlement_id}
        )


class ExternalServiceError(StreamTipException):
    """Raised when an external provider (conversion, bridge) fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "EXTERNAL_SERVICE_ERROR", details)


class ConversionError(ExternalServiceError):
    """Raised when the currency-conversion provider rejects or fails a swap."""


class BridgeError(ExternalServiceError):
    """Raised when a bridge transfer fails or is reverted."""

    def __init__(
        self,
        message: str,
        transaction_hash: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.transaction_hash = transaction_hash
        details = dict(details or {})
        if transaction_hash:
            details["transaction_hash"] = transaction_hash
        super().__init__(message, details)
