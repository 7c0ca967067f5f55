"""Error taxonomy for billing operations."""

from __future__ import annotations


class BillingError(Exception):
    """Base class for failures surfaced to the cashier."""


class ValidationError(BillingError):
    """Rejected locally before any store call was made."""


class ActionFailed(BillingError):
    """An explicit action failed against a store; local state is unchanged."""


class StoreError(Exception):
    """A document store call failed."""


class DuplicateKeyError(StoreError):
    """A unique field (table number, bill number) already exists."""

    def __init__(self, field: str, value: object) -> None:
        super().__init__(f"duplicate {field}: {value!r}")
        self.field = field
        self.value = value


class NotFoundError(StoreError):
    """No document with the given id."""


class ActiveBillError(StoreError):
    """The store refused to delete a table that still references a bill."""


class InvalidCartError(ValueError):
    """Cart data that cannot be aggregated (negative price or quantity)."""
