"""Tests for docstore.result module."""

import pytest
from sqlalchemy import exc as sa_exc

from docstore.errors import ConflictError, UnavailableError
from docstore.result import Err, Ok, try_result


class TestOk:
    def test_unwrap_and_map(self):
        result = Ok(2)
        assert result.is_ok()
        assert result.unwrap() == 2
        assert result.map(lambda v: v * 3) == Ok(6)
        assert result.flat_map(lambda v: Ok(v + 1)) == Ok(3)
        assert result.unwrap_or(0) == 2


class TestErr:
    def test_unwrap_raises_error(self):
        result = Err(ConflictError("stale"))
        assert result.is_err()
        with pytest.raises(ConflictError):
            result.unwrap()

    def test_map_is_skipped(self):
        error = ConflictError("stale")
        assert Err(error).map(lambda v: v * 3) == Err(error)
        assert Err(error).unwrap_or(7) == 7

    def test_retryable_follows_error(self):
        assert Err(UnavailableError("down")).retryable
        assert not Err(ConflictError("stale")).retryable

    def test_to_dict(self):
        assert Err(ConflictError("stale")).to_dict()["error"]["category"] == "CONFLICT"


class TestTryResult:
    def test_success(self):
        assert try_result(lambda: "value") == Ok("value")

    def test_store_error_becomes_err(self):
        def fail():
            raise ConflictError("stale")

        match try_result(fail):
            case Err(ConflictError()):
                pass
            case _:
                pytest.fail("expected Err(ConflictError)")

    def test_database_error_is_classified(self):
        def fail():
            raise sa_exc.OperationalError("SELECT 1", {}, Exception("gone"))

        result = try_result(fail)
        assert isinstance(result, Err)
        assert isinstance(result.error, UnavailableError)

    def test_programming_errors_propagate(self):
        def fail():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            try_result(fail)
