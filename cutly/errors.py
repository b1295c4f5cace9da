from __future__ import annotations


class CutlyError(Exception):
    """Base class for every error the services raise on purpose."""

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(CutlyError):
    """Malformed or missing input. Raised before any write."""


class NotFoundError(ValidationError):
    """A referenced product or batch does not exist for the tenant."""


class UniquenessError(CutlyError):
    """Duplicate SKU for a tenant."""


class NegativeStockError(CutlyError):
    """An adjustment would bring qty_on_hand below zero."""


class StoreError(CutlyError):
    """Data-layer failure; the message is the driver's, verbatim."""


class IntegrityViolation(StoreError):
    """A store-level constraint (UNIQUE, CHECK, FOREIGN KEY) rejected a write."""
