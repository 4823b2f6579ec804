from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum

from sqlalchemy.exc import DBAPIError, IntegrityError


class Outcome(str, Enum):
    SUCCESS = 'SUCCESS'
    PARTIAL = 'PARTIAL'
    DEFERRED = 'DEFERRED'
    FAILED = 'FAILED'


class ConfigurationError(ValueError):
    """Item or organization configuration cannot support the requested operation."""


class ValidationError(ValueError):
    """Caller supplied input that is rejected before any write."""


class NotFoundError(ValueError):
    pass


class TransientStoreError(RuntimeError):
    """The data store failed or timed out; the operation is safe to retry with the same inputs."""


@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    # IntegrityError is the "already done" signal and is handled by callers.
    try:
        yield
    except IntegrityError:
        raise
    except DBAPIError as exc:
        raise TransientStoreError(f'{operation} failed against the data store: {exc.orig or exc}') from exc
