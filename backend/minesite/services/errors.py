"""Recoverable failures raised by the reporting services."""

from __future__ import annotations

# purpose: shared error taxonomy translated by routes into specific rejections
# status: production


class ReportingError(RuntimeError):
    """Base error for shift, reconciliation, and factor flows."""


class ImmutableShiftError(ReportingError):
    """Raised when a mutation targets a validated shift."""


class LockedReconciliationError(ReportingError):
    """Raised when a mutation targets a locked reconciliation."""


class MissingTargetError(ReportingError):
    """Raised when production or development reconciled tonnes are absent."""


class NoDataError(ReportingError):
    """Raised when no relevant activity rows exist for the request."""


class InvalidBoundsError(ReportingError):
    """Raised when merged factor bounds are inconsistent."""


class NotFoundError(ReportingError):
    """Raised when a shift, activity, or reconciliation cannot be located."""


class UnsupportedMetricError(ReportingError):
    """Raised when a metric key has no actual-total definition."""
