"""Error taxonomy of the page store.

``QueryError`` is a caller bug and is never worth retrying. ``StoreUnavailable``
is transient and retried by the caller with its own backoff; the store itself
does not retry. ``ConflictError`` aborts a migration step. Partial bulk
failures are reported per item and only become ``PartialBatchFailure`` when a
caller asks for it.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Sequence, TYPE_CHECKING

from bson.errors import InvalidDocument
from pymongo.errors import (
    CollectionInvalid,
    ConnectionFailure,
    ExecutionTimeout,
    InvalidName,
    InvalidOperation,
    OperationFailure,
    WriteConcernError,
    WTimeoutError,
)

if TYPE_CHECKING:
    from pageindex.storage.document_store import BulkItemResult


class StoreError(Exception):
    retryable = False


class QueryError(StoreError):
    """Malformed request: unknown field, bad filter, invalid document."""


class StoreUnavailable(StoreError):
    """Transport failure or timeout talking to the engine."""

    retryable = True


class ConflictError(StoreError):
    """A physical generation with this name already exists."""


class PartialBatchFailure(StoreError):
    def __init__(self, failures: Sequence["BulkItemResult"], total: int):
        self.failures = list(failures)
        self.total = total
        positions = ", ".join(str(item.index) for item in self.failures)
        super().__init__(f"{len(self.failures)} of {total} bulk items failed (items {positions})")


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """Re-raise driver errors as store errors, keeping the original as cause."""
    try:
        yield
    except StoreError:
        raise
    except (ConnectionFailure, ExecutionTimeout, WTimeoutError, WriteConcernError) as exc:
        raise StoreUnavailable(f"{operation}: {exc}") from exc
    except CollectionInvalid as exc:
        raise ConflictError(f"{operation}: {exc}") from exc
    except (OperationFailure, InvalidOperation, InvalidName, InvalidDocument) as exc:
        raise QueryError(f"{operation}: {exc}") from exc
