"""Tests for error types and codes."""

import pytest

from codeweave.core.errors import (
    CapabilityTimeout,
    CapabilityUnavailable,
    CodeWeaveError,
    ConfigError,
    ErrorCode,
    InternalError,
    InvalidCapabilityOutput,
    LockContention,
    ParseFailure,
    QueryTimeout,
    StorageUnavailable,
    TransactionFailure,
)


class TestErrorCode:
    """Error code value tests."""

    @pytest.mark.parametrize(
        ("code", "expected_range"),
        [
            (ErrorCode.CONFIG_PARSE_ERROR, 2000),
            (ErrorCode.PARSE_FAILURE, 3000),
            (ErrorCode.STORAGE_UNAVAILABLE, 3000),
            (ErrorCode.LOCK_CONTENTION, 4000),
            (ErrorCode.INVALID_CAPABILITY_OUTPUT, 5000),
            (ErrorCode.QUERY_TIMEOUT, 6000),
            (ErrorCode.INTERNAL_ERROR, 9000),
        ],
    )
    def test_given_error_code_when_checked_then_in_correct_range(
        self, code: ErrorCode, expected_range: int
    ) -> None:
        """Error codes fall within their designated numeric range."""
        assert expected_range <= code.value < expected_range + 1000


class TestCodeWeaveError:
    """Base error behaviour."""

    def test_given_error_when_to_dict_then_serializes_all_fields(self) -> None:
        err = CodeWeaveError(
            code=ErrorCode.INTERNAL_ERROR,
            message="boom",
            retryable=True,
            details={"k": "v"},
        )

        assert err.to_dict() == {
            "code": 9001,
            "error": "INTERNAL_ERROR",
            "message": "boom",
            "retryable": True,
            "details": {"k": "v"},
        }

    def test_given_error_when_str_then_human_readable(self) -> None:
        err = ConfigError.invalid_value("watch.debounce_ms", -1, "must be >= 0")

        assert str(err) == (
            "[2002] CONFIG_INVALID_VALUE: Invalid value for 'watch.debounce_ms': must be >= 0"
        )

    def test_errors_are_raisable(self) -> None:
        with pytest.raises(CodeWeaveError):
            raise ParseFailure.for_file("a.py", "bad")


class TestFactories:
    """Factory classmethods set codes, retryability and details."""

    @pytest.mark.parametrize(
        ("error", "code", "retryable"),
        [
            (ParseFailure.for_file("a.py", "x"), ErrorCode.PARSE_FAILURE, False),
            (TransactionFailure.for_file("a.py", "x"), ErrorCode.TRANSACTION_FAILURE, True),
            (StorageUnavailable.at("/db", "x"), ErrorCode.STORAGE_UNAVAILABLE, False),
            (LockContention.held_by("/lock", 42, 1.0), ErrorCode.LOCK_CONTENTION, True),
            (CapabilityUnavailable.backend("rerank", "x"), ErrorCode.CAPABILITY_UNAVAILABLE, False),
            (
                InvalidCapabilityOutput.malformed("embedding", "x"),
                ErrorCode.INVALID_CAPABILITY_OUTPUT,
                False,
            ),
            (CapabilityTimeout.after("rerank", 1.5), ErrorCode.CAPABILITY_TIMEOUT, True),
            (QueryTimeout.after(2.0), ErrorCode.QUERY_TIMEOUT, True),
        ],
    )
    def test_given_factory_when_called_then_correct_code(
        self, error: CodeWeaveError, code: ErrorCode, retryable: bool
    ) -> None:
        assert error.code == code
        assert error.retryable is retryable

    def test_given_parse_error_when_created_then_path_in_details(self) -> None:
        err = ConfigError.parse_error("/repo/.codeweave/config.yaml", "bad indent")

        assert err.details["path"] == "/repo/.codeweave/config.yaml"
        assert "bad indent" in err.message

    def test_lock_contention_names_the_holder(self) -> None:
        err = LockContention.held_by("/repo/.codeweave/index.lock", 1234, 2.5)

        assert err.details["pid"] == 1234
        assert "1234" in err.message

    def test_given_unexpected_error_when_created_then_includes_extras(self) -> None:
        err = InternalError.unexpected("bad state", stage="rerank")

        assert err.details == {"stage": "rerank"}
        assert err.error_name == "INTERNAL_ERROR"
