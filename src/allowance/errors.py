"""
Allowance error types.

Specific exceptions for different failure modes, enabling callers
to tell bad input apart from conditions worth retrying.

Budget denial is not an exception: ``BudgetTracker.can_spend``
returns ``False`` and callers branch on it.
"""

from __future__ import annotations

from typing import Any, Optional


class AllowanceError(Exception):
    """Base error for all Allowance operations."""
    pass


# Construction errors
class ValidationError(AllowanceError, ValueError):
    """Malformed rule, policy, address, selector or amount."""
    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class NotFoundError(AllowanceError, KeyError):
    """Referenced policy or agent tracker does not exist."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


# Protocol errors
class ProtocolError(AllowanceError):
    """Malformed challenge or header, unsupported scheme, failed settlement."""
    def __init__(
        self,
        message: str,
        requirement: Any = None,
        check: Optional[str] = None,
    ):
        self.requirement = requirement
        self.check = check
        super().__init__(message)


class SignatureError(AllowanceError):
    """EIP-712 signature creation or recovery failed."""
    pass


# Network errors
class TransientNetworkError(AllowanceError):
    """Error that may succeed if retried."""
    def __init__(self, message: str, retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(message)


# Rate limiting
class RateLimitExceededError(AllowanceError):
    """Call would exceed a rate-limit rule's window."""
    pass


class DeadlineExceededError(AllowanceError):
    """Caller-supplied handshake deadline elapsed."""
    pass
