"""Core module exports."""

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
from codeweave.core.logging import (
    configure_logging,
    get_logger,
    get_request_id,
    pass_scope,
    query_scope,
)

__all__ = [
    # Errors
    "CodeWeaveError",
    "ErrorCode",
    "ConfigError",
    "ParseFailure",
    "TransactionFailure",
    "StorageUnavailable",
    "LockContention",
    "CapabilityUnavailable",
    "InvalidCapabilityOutput",
    "CapabilityTimeout",
    "QueryTimeout",
    "InternalError",
    # Logging
    "configure_logging",
    "get_logger",
    "get_request_id",
    "pass_scope",
    "query_scope",
]
