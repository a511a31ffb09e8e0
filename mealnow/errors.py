"""Domain errors raised by the entitlement engine.

HTTP mapping lives in ``mealnow.api.main``.
"""
from __future__ import annotations

from enum import Enum


class VerificationStatus(str, Enum):
    INVALID_CERTIFICATE = "INVALID_CERTIFICATE"
    INVALID_CHAIN_LENGTH = "INVALID_CHAIN_LENGTH"
    INVALID_CHAIN = "INVALID_CHAIN"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_APP_IDENTIFIER = "INVALID_APP_IDENTIFIER"
    INVALID_ENVIRONMENT = "INVALID_ENVIRONMENT"
    VERIFICATION_FAILURE = "VERIFICATION_FAILURE"


class VerificationError(Exception):
    """A signed payload failed signature, chain or identity checks."""

    def __init__(self, status: VerificationStatus, message: str = ""):
        self.status = status
        self.message = message or status.value
        super().__init__(f"{status.value}: {self.message}")


class QuotaExceededError(Exception):
    """A paying subscriber hit the daily usage cap."""

    code = "QUOTA_EXCEEDED"

    def __init__(self, used: int, limit: int):
        self.used = used
        self.limit = limit
        super().__init__(f"Daily quota exceeded ({used}/{limit})")


class NoEntitlementError(Exception):
    """No trial allowance left and no active premium subscription."""

    code = "SUBSCRIPTION_REQUIRED"


class ReceiptVerificationError(Exception):
    """Client-submitted receipt rejected by Apple or by the verifier."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class AppStoreUnavailableError(Exception):
    """Apple's verifyReceipt endpoint could not be reached."""
