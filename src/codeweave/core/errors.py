"""CodeWeave error types with typed error codes.

Error code ranges:
- 2xxx: Config
- 3xxx: Index (parse, transaction, storage)
- 4xxx: Lock
- 5xxx: Capability (embedding, rerank)
- 6xxx: Query
- 9xxx: Internal

Unresolved references and stale cache entries are steady-state conditions,
not errors: they surface as counts and cache misses respectively.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Config (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002

    # Index (3xxx)
    PARSE_FAILURE = 3001
    TRANSACTION_FAILURE = 3002
    STORAGE_UNAVAILABLE = 3003

    # Lock (4xxx)
    LOCK_CONTENTION = 4001

    # Capability (5xxx)
    CAPABILITY_UNAVAILABLE = 5001
    INVALID_CAPABILITY_OUTPUT = 5002
    CAPABILITY_TIMEOUT = 5003

    # Query (6xxx)
    QUERY_TIMEOUT = 6001

    # Internal (9xxx)
    INTERNAL_ERROR = 9001


@dataclass(frozen=True, slots=True)
class CodeWeaveError(Exception):
    """Base error with structured context for tool-layer responses."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'LOCK_CONTENTION')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigError(CodeWeaveError):
    """Configuration-related errors."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )


class ParseFailure(CodeWeaveError):
    """A file could not be parsed. File-local, recorded as a warning."""

    @classmethod
    def for_file(cls, path: str, reason: str) -> "ParseFailure":
        return cls(
            code=ErrorCode.PARSE_FAILURE,
            message=f"Failed to parse {path}: {reason}",
            details={"path": path, "reason": reason},
        )


class TransactionFailure(CodeWeaveError):
    """A per-file storage transaction failed to commit."""

    @classmethod
    def for_file(cls, path: str, reason: str) -> "TransactionFailure":
        return cls(
            code=ErrorCode.TRANSACTION_FAILURE,
            message=f"Transaction for {path} failed: {reason}",
            retryable=True,
            details={"path": path, "reason": reason},
        )


class StorageUnavailable(CodeWeaveError):
    """The graph store cannot be reached. Fatal to the caller."""

    @classmethod
    def at(cls, path: str, reason: str) -> "StorageUnavailable":
        return cls(
            code=ErrorCode.STORAGE_UNAVAILABLE,
            message=f"Graph store at {path} is unavailable: {reason}",
            details={"path": path, "reason": reason},
        )


class LockContention(CodeWeaveError):
    """The workspace lock is held by a live process."""

    @classmethod
    def held_by(cls, path: str, pid: int | None, waited_sec: float) -> "LockContention":
        return cls(
            code=ErrorCode.LOCK_CONTENTION,
            message=f"Workspace lock {path} held by pid {pid} (waited {waited_sec:.1f}s)",
            retryable=True,
            details={"path": path, "pid": pid, "waited_sec": waited_sec},
        )


class CapabilityUnavailable(CodeWeaveError):
    """An embedding or rerank backend is missing or misconfigured."""

    @classmethod
    def backend(cls, capability: str, reason: str) -> "CapabilityUnavailable":
        return cls(
            code=ErrorCode.CAPABILITY_UNAVAILABLE,
            message=f"{capability} capability unavailable: {reason}",
            details={"capability": capability, "reason": reason},
        )


class InvalidCapabilityOutput(CodeWeaveError):
    """A capability returned output of the wrong shape or with non-finite values."""

    @classmethod
    def malformed(cls, capability: str, reason: str) -> "InvalidCapabilityOutput":
        return cls(
            code=ErrorCode.INVALID_CAPABILITY_OUTPUT,
            message=f"Invalid {capability} output: {reason}",
            details={"capability": capability, "reason": reason},
        )


class CapabilityTimeout(CodeWeaveError):
    """A capability call exceeded its per-call deadline."""

    @classmethod
    def after(cls, capability: str, timeout_sec: float) -> "CapabilityTimeout":
        return cls(
            code=ErrorCode.CAPABILITY_TIMEOUT,
            message=f"{capability} call timed out after {timeout_sec:.2f}s",
            retryable=True,
            details={"capability": capability, "timeout_sec": timeout_sec},
        )


class QueryTimeout(CodeWeaveError):
    """The overall query deadline elapsed."""

    @classmethod
    def after(cls, timeout_sec: float) -> "QueryTimeout":
        return cls(
            code=ErrorCode.QUERY_TIMEOUT,
            message=f"Query exceeded {timeout_sec:.2f}s deadline",
            retryable=True,
            details={"timeout_sec": timeout_sec},
        )


class InternalError(CodeWeaveError):
    """Internal/unexpected errors."""

    @classmethod
    def unexpected(cls, reason: str, **details: Any) -> "InternalError":
        return cls(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal error: {reason}",
            details=details,
        )
