"""
Error taxonomy shared by the allocation, expiry, velocity and threshold code.

  - InputValidationError: malformed or out-of-range input. Never retried.
  - NotFoundError / StateConflictError: entity missing or not in an
    eligible state. Surfaced to the caller, not retried.
  - TransientStoreError: store, cache or bus unavailable. Safe to retry.

Insufficient velocity data is not an error; see inventory.velocity.NoVelocityData.
"""

import uuid
from contextlib import contextmanager

from sqlalchemy.exc import InterfaceError, OperationalError


class LotWatchError(Exception):
    """Base class for domain errors."""


class InputValidationError(LotWatchError, ValueError):
    """Request failed validation."""


class NotFoundError(LotWatchError, LookupError):
    """Entity does not exist for this tenant."""


class StateConflictError(LotWatchError):
    """Entity exists but is not in a state that allows the operation."""


class TransientStoreError(LotWatchError):
    """Backing store unavailable; the operation can be retried."""


def parse_uuid(value, field: str) -> uuid.UUID:
    """Coerce an identifier to UUID or raise InputValidationError."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError) as exc:
        raise InputValidationError(f"{field} is not a valid identifier: {value!r}") from exc


@contextmanager
def translate_store_errors(operation: str):
    """Re-raise connectivity failures from the relational store as TransientStoreError."""
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        raise TransientStoreError(f"{operation}: store unavailable") from exc
