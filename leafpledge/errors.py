"""
leafpledge.errors — Exception Hierarchy
========================================

Everything the pipeline raises derives from :class:`LeafpledgeError`.

Validation problems (bad expressions, bad funding percentages) are raised
synchronously and never retried.  Storage failures propagate untouched to
the entry points.  Fulfillment failures carry enough detail (HTTP status,
request id, attempt count) for callers to log and alert on.

"Not in scope", "not a completion", "duplicate delivery" and "reopen
blocked" are normal outcomes and are *not* modelled as exceptions.
"""

from __future__ import annotations

__all__ = [
    "EvaluationError",
    "ExpressionError",
    "FulfillmentError",
    "FundingConfigError",
    "InvalidExpression",
    "LeafpledgeError",
    "PermanentFulfillmentError",
    "PersistenceError",
    "TransientFulfillmentError",
    "ValidationError",
]


class LeafpledgeError(Exception):
    """Base class for all Leafpledge errors."""

    def to_dict(self) -> dict:
        """Structured form for logs and outcome records."""
        return {"error": type(self).__name__, "message": str(self)}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
class ValidationError(LeafpledgeError):
    """Caller-supplied data is malformed."""


class ExpressionError(ValidationError):
    """A scoring expression could not be used."""

    def __init__(self, message: str, expression: str | None = None) -> None:
        super().__init__(message)
        self.expression = expression

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["expression"] = self.expression
        return data


class InvalidExpression(ExpressionError):
    """The expression falls outside the allowed grammar."""


class EvaluationError(ExpressionError):
    """The expression parsed but did not produce a finite number."""


class FundingConfigError(ValidationError):
    """Funding percentages or project entries are invalid."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = list(errors)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------
class PersistenceError(LeafpledgeError):
    """A key-value store read or write failed."""

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["key"] = self.key
        return data


# ---------------------------------------------------------------------------
# Fulfillment API
# ---------------------------------------------------------------------------
class FulfillmentError(LeafpledgeError):
    """The fulfillment API call did not succeed."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        request_id: str | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.request_id = request_id
        self.attempts = attempts

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(
            status_code=self.status_code,
            request_id=self.request_id,
            attempts=self.attempts,
            retryable=self.retryable,
        )
        return data


class TransientFulfillmentError(FulfillmentError):
    """Network failure, timeout or 5xx — retried until the attempt limit."""

    retryable = True


class PermanentFulfillmentError(FulfillmentError):
    """4xx — the request itself is wrong; never retried."""
