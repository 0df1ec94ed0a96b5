"""Config module exports."""

from codeweave.config.loader import get_data_dir, load_config
from codeweave.config.models import (
    CodeWeaveConfig,
    DatabaseConfig,
    EmbeddingConfig,
    IndexConfig,
    LockConfig,
    LoggingConfig,
    QueryConfig,
    RerankConfig,
    WatchConfig,
)

__all__ = [
    "load_config",
    "get_data_dir",
    "CodeWeaveConfig",
    "DatabaseConfig",
    "EmbeddingConfig",
    "IndexConfig",
    "LockConfig",
    "LoggingConfig",
    "QueryConfig",
    "RerankConfig",
    "WatchConfig",
]
