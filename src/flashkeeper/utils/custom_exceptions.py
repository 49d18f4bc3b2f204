#!/usr/bin/env python3
# MIT License
# Copyright (c) 2026 John Hauger Mitander

"""
flashkeeper - Exception hierarchy
=================================
Every error raised by the settlement pipeline derives from
``FlashKeeperError``. Errors that may succeed on a later attempt also carry
the ``TransientError`` mixin so the retry scheduler can tell them apart from
permanent rejections.
License: MIT
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class FlashKeeperError(Exception):
    """Base class for all flashkeeper errors."""

    default_message = "flashkeeper error"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message or self.default_message
        self.details: Dict[str, Any] = dict(details or {})
        self.cause = cause
        super().__init__(self.message)
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "details": self.details,
            "cause": repr(self.cause) if self.cause is not None else None,
        }


class TransientError:
    """Marker mixin for failures that are eligible for retry."""


def is_transient(exc: BaseException) -> bool:
    """True when ``exc`` (or the error it wraps) is a retryable failure."""
    if isinstance(exc, TransientError):
        return True
    cause = getattr(exc, "cause", None)
    return isinstance(cause, TransientError)


# ---------------------------------------------------------------------------
# Ambient errors
# ---------------------------------------------------------------------------
class ConfigurationError(FlashKeeperError):
    """Malformed or missing configuration. Never retried."""

    default_message = "Configuration error"

    def __init__(
        self,
        message: Optional[str] = None,
        key: Optional[str] = None,
        value: Any = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        merged = dict(details or {})
        if key is not None:
            merged["key"] = key
        if value is not None:
            merged["value"] = value
        super().__init__(message, merged, cause)


class ValidationError(FlashKeeperError):
    default_message = "Validation failed"

    def __init__(
        self,
        message: Optional[str] = None,
        field: Optional[str] = None,
        value: Any = None,
        expected_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        merged = dict(details or {})
        if field is not None:
            merged["field"] = field
        if value is not None:
            merged["value"] = value
        if expected_type is not None:
            merged["expected_type"] = expected_type
        super().__init__(message, merged, cause)


class InitializationError(FlashKeeperError):
    default_message = "Component initialization failed"

    def __init__(
        self,
        message: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        merged = dict(details or {})
        if component is not None:
            merged["component"] = component
        super().__init__(message, merged, cause)


class SignerError(FlashKeeperError):
    """The signer key is missing or unusable. Aborts the process."""

    default_message = "Signer unavailable"


class ConnectionError(FlashKeeperError, TransientError):
    default_message = "Connection failed"

    def __init__(
        self,
        message: Optional[str] = None,
        endpoint: Optional[str] = None,
        chain_id: Optional[int] = None,
        retry_count: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        merged = dict(details or {})
        if endpoint is not None:
            merged["endpoint"] = endpoint
        if chain_id is not None:
            merged["chain_id"] = chain_id
        if retry_count is not None:
            merged["retry_count"] = retry_count
        super().__init__(message, merged, cause)


class APICallError(FlashKeeperError):
    default_message = "API call failed"

    def __init__(
        self,
        message: Optional[str] = None,
        api_name: Optional[str] = None,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        merged = dict(details or {})
        if api_name is not None:
            merged["api_name"] = api_name
        if endpoint is not None:
            merged["endpoint"] = endpoint
        if status_code is not None:
            merged["status_code"] = status_code
        if response_body is not None:
            merged["response_body"] = response_body[:500]
        super().__init__(message, merged, cause)

    @property
    def status_code(self) -> Optional[int]:
        return self.details.get("status_code")


class TransactionError(FlashKeeperError):
    default_message = "Transaction failed"

    def __init__(
        self,
        message: Optional[str] = None,
        tx_hash: Optional[str] = None,
        reason: Optional[str] = None,
        gas_used: Optional[int] = None,
        gas_price: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        merged = dict(details or {})
        if tx_hash is not None:
            merged["tx_hash"] = tx_hash
        if reason is not None:
            merged["reason"] = reason
        if gas_used is not None:
            merged["gas_used"] = gas_used
        if gas_price is not None:
            merged["gas_price"] = gas_price
        super().__init__(message, merged, cause)

    @property
    def tx_hash(self) -> Optional[str]:
        return self.details.get("tx_hash")

    @property
    def reason(self) -> Optional[str]:
        return self.details.get("reason")


class InsufficientFundsError(TransactionError):
    default_message = "Insufficient funds"

    def __init__(
        self,
        message: Optional[str] = None,
        required_amount: Any = None,
        available_amount: Any = None,
        token: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        merged = dict(details or {})
        if required_amount is not None:
            merged["required_amount"] = required_amount
        if available_amount is not None:
            merged["available_amount"] = available_amount
        if token is not None:
            merged["token"] = token
        super().__init__(message, details=merged, cause=cause)


# ---------------------------------------------------------------------------
# Settlement taxonomy
# ---------------------------------------------------------------------------
class ChainReadError(FlashKeeperError, TransientError):
    """RPC timeout or malformed response while reading chain state."""

    default_message = "Chain read failed"

    def __init__(
        self,
        message: Optional[str] = None,
        call: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        merged = dict(details or {})
        if call is not None:
            merged["call"] = call
        super().__init__(message, merged, cause)


class QuoteUnavailable(APICallError):
    """The aggregator has no usable route. Permanent for this cycle."""

    default_message = "No swap route available"


class QuoteServiceError(APICallError, TransientError):
    """Network failure or 5xx from the aggregator. Retried with backoff."""

    default_message = "Quote service error"


class PlanRejected(FlashKeeperError):
    """A plan failed a profitability or guard-rail check."""

    default_message = "Plan rejected"

    def __init__(
        self,
        message: Optional[str] = None,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        merged = dict(details or {})
        self.reason = reason or message or self.default_message
        merged.setdefault("reason", self.reason)
        super().__init__(message or self.reason, merged, cause)


class QuoteExpired(PlanRejected):
    default_message = "quote expired"


class SubmissionReverted(TransactionError):
    """The settlement transaction reverted. Permanent for this attempt."""

    default_message = "Transaction reverted"


class SubmissionTimedOut(TransactionError):
    """No receipt within the wait window. Must be reconciled before retrying."""

    default_message = "Transaction not confirmed in time"


class SubmissionTransientError(TransactionError, TransientError):
    """Broadcast failed before the transaction reached the mempool."""

    default_message = "Transaction submission failed"
