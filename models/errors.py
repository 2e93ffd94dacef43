"""Domain exception hierarchy. Raised by aggregates, handled by their callers."""
from __future__ import annotations


class DomainError(Exception):
    """Base exception for business-rule violations."""


class InvalidDomainOperationError(DomainError):
    """An operation is not allowed in the aggregate's current state."""
