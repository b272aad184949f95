import pytest
from pymongo.errors import (
    AutoReconnect,
    CollectionInvalid,
    DuplicateKeyError,
    ExecutionTimeout,
    OperationFailure,
)

from pageindex.storage.errors import (
    ConflictError,
    PartialBatchFailure,
    QueryError,
    StoreError,
    StoreUnavailable,
    translate_errors,
)
from pageindex.storage.document_store import BulkItemResult


@pytest.mark.parametrize(
    "raised, expected",
    [
        (AutoReconnect("reset"), StoreUnavailable),
        (ExecutionTimeout("too slow"), StoreUnavailable),
        (CollectionInvalid("exists"), ConflictError),
        (OperationFailure("bad query", code=2), QueryError),
        (DuplicateKeyError("dup", code=11000), QueryError),
    ],
)
def test_driver_errors_are_translated(raised, expected):
    with pytest.raises(expected) as excinfo:
        with translate_errors("find"):
            raise raised

    assert excinfo.value.__cause__ is raised
    assert str(excinfo.value).startswith("find: ")


def test_store_errors_pass_through_unchanged():
    original = QueryError("unknown field")

    with pytest.raises(QueryError) as excinfo:
        with translate_errors("count"):
            raise original

    assert excinfo.value is original


def test_other_exceptions_are_not_swallowed():
    with pytest.raises(KeyError):
        with translate_errors("get"):
            raise KeyError("x")


def test_only_unavailability_is_retryable():
    assert StoreUnavailable("down").retryable
    assert not QueryError("bad").retryable
    assert not ConflictError("exists").retryable


def test_partial_batch_failure_lists_positions():
    failures = [BulkItemResult(2, "p3", False, "invalid"), BulkItemResult(4, None, False, "invalid")]

    error = PartialBatchFailure(failures, 5)

    assert isinstance(error, StoreError)
    assert error.total == 5
    assert "2 of 5" in str(error)
    assert "items 2, 4" in str(error)
