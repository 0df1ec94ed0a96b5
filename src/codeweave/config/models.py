"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (CODEWEAVE__SECTION__KEY)
3. Repo YAML (.codeweave/config.yaml)
4. Global YAML (~/.config/codeweave/config.yaml)
5. Built-in defaults (this file)

Examples:
    CODEWEAVE__LOGGING__LEVEL=DEBUG
    CODEWEAVE__WATCH__DEBOUNCE_MS=250
    CODEWEAVE__QUERY__CACHE_CAPACITY=1024
    CODEWEAVE__RERANK__PROVIDER=none
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
CapabilityProvider = Literal["fastembed", "none"]


class LogOutputConfig(BaseModel):
    """Single logging output configuration."""

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        CODEWEAVE__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="INFO",
        description="Root log level. DEBUG logs per-stage query timings.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class IndexConfig(BaseModel):
    """Index configuration.

    Env vars:
        CODEWEAVE__INDEX__MAX_FILE_SIZE_MB: Skip files larger than this
        CODEWEAVE__INDEX__INDEX_PATH: Override index storage location
        CODEWEAVE__INDEX__EMBED_ON_INDEX: Compute symbol vectors after each pass
    """

    languages: list[Literal["python", "javascript", "typescript"]] = Field(
        default_factory=lambda: ["python", "javascript", "typescript"],
        description="Languages to extract. Files of other languages are not tracked.",
    )
    max_file_size_mb: int = Field(
        default=10,
        description="Skip files larger than this (MB).",
    )
    excluded_extensions: list[str] = Field(
        default_factory=lambda: [".min.js", ".map", ".d.ts"],
        description="File suffixes to exclude from indexing.",
    )
    index_path: str | None = Field(
        default=None,
        description="Override index storage location. Default: .codeweave/ in repo.",
    )
    embed_on_index: bool = Field(
        default=True,
        description="Embed changed symbols after each pass when an embedder is configured.",
    )
    max_parse_error_ratio: float = Field(
        default=0.10,
        description="Error-node ratio at or above which a parse is rejected.",
    )


class DatabaseConfig(BaseModel):
    """Database connection configuration.

    Env vars:
        CODEWEAVE__DATABASE__BUSY_TIMEOUT_MS: SQLite busy timeout
        CODEWEAVE__DATABASE__MAX_RETRIES: Max retry attempts for locked DB
    """

    busy_timeout_ms: int = Field(
        default=30000,
        description="SQLite busy timeout (ms). How long to wait for locks.",
    )
    max_retries: int = Field(
        default=3,
        description="Max retry attempts for locked database errors.",
    )
    retry_base_delay_sec: float = Field(
        default=0.1,
        description="Base delay between retries (exponential backoff).",
    )


class LockConfig(BaseModel):
    """Workspace lock configuration.

    Env vars:
        CODEWEAVE__LOCK__ACQUIRE_TIMEOUT_SEC: Wait this long for a live holder, 0 fails fast
    """

    acquire_timeout_sec: float = Field(
        default=30.0,
        description="How long to wait for a live lock holder before raising LockContention.",
    )
    poll_interval_sec: float = Field(default=0.1)
    unknown_owner_stale_sec: float = Field(
        default=7200.0,
        description="Age after which a lock file with no readable pid is treated as stale.",
    )


class WatchConfig(BaseModel):
    """Freshness/watch configuration.

    Env vars:
        CODEWEAVE__WATCH__DEBOUNCE_MS: Quiet period before a batch flush
        CODEWEAVE__WATCH__BATCH_WINDOW_MS: Max age of a pending batch
        CODEWEAVE__WATCH__STORM_THRESHOLD: Distinct files above which a batch is a storm
        CODEWEAVE__WATCH__CASCADE_REINDEX: Chunk storms instead of deferring them
    """

    debounce_ms: int = Field(default=100, ge=0)
    batch_window_ms: int = Field(default=1000, ge=1)
    storm_threshold: int = Field(default=200, ge=1)
    cascade_reindex: bool = True
    cascade_delay_ms: int = Field(default=250, ge=0)
    cascade_batch_size: int = Field(default=50, ge=1)
    heartbeat_interval_sec: float = Field(default=5.0, gt=0)
    catchup_retry_base_sec: float = Field(
        default=1.0,
        gt=0,
        description="First retry delay for an owed catch-up; doubles per failure.",
    )
    catchup_retry_max_sec: float = Field(default=300.0, gt=0)
    staleness_floor_ms: int = Field(
        default=60000,
        description="Lower bound of the heartbeat staleness window.",
    )
    force_polling: bool = Field(
        default=False,
        description="Use stat polling instead of native notifications (network filesystems).",
    )

    @property
    def staleness_window_ms(self) -> int:
        return max(self.staleness_floor_ms, self.batch_window_ms * 4)

    @model_validator(mode="after")
    def _check_window(self) -> "WatchConfig":
        if self.batch_window_ms < self.debounce_ms:
            raise ValueError("batch_window_ms must be >= debounce_ms")
        return self


class QueryConfig(BaseModel):
    """Query pipeline configuration.

    Env vars:
        CODEWEAVE__QUERY__CACHE_CAPACITY: Max cached query results
        CODEWEAVE__QUERY__RERANK_TOP_N: Candidates sent to the reranker
        CODEWEAVE__QUERY__TIMEOUT_SEC: Overall query deadline
    """

    cache_capacity: int = Field(default=256, ge=1)
    default_budget: int = Field(default=10, ge=1)
    candidate_pool: int = Field(
        default=50,
        description="Candidates produced by retrieval before reranking.",
    )
    rerank_top_n: int = Field(default=20, ge=0)
    rerank_group_size: int = Field(default=5, ge=1)
    rerank_max_concurrency: int = Field(default=4, ge=1)
    rerank_timeout_sec: float = Field(default=5.0, gt=0)
    embed_timeout_sec: float = Field(
        default=5.0,
        gt=0,
        description="Deadline for embedding the intent before falling back to lexical retrieval.",
    )
    timeout_sec: float = Field(default=30.0, gt=0)
    per_file_cap: int = Field(
        default=2,
        ge=1,
        description="Max results from one file after diversification.",
    )
    min_vector_coverage: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Share of symbols that must carry vectors before semantic retrieval is used.",
    )
    snippet_max_lines: int = Field(default=40, ge=1)


class EmbeddingConfig(BaseModel):
    """Embedding capability selection.

    Env vars:
        CODEWEAVE__EMBEDDING__PROVIDER: fastembed or none
    """

    provider: CapabilityProvider = "fastembed"
    model_name: str = "BAAI/bge-small-en-v1.5"
    dim: int = 384
    batch_size: int = 64


class RerankConfig(BaseModel):
    """Rerank capability selection.

    Env vars:
        CODEWEAVE__RERANK__PROVIDER: fastembed or none
    """

    provider: CapabilityProvider = "fastembed"
    model_name: str = "Xenova/ms-marco-MiniLM-L-6-v2"


class CodeWeaveConfig(BaseModel):
    """Root configuration for CodeWeave.

    All settings can be configured via:
    1. Environment variables: CODEWEAVE__SECTION__KEY
    2. YAML config files (repo or global)
    3. Direct kwargs to load_config()
    """

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    query: QueryConfig = Field(default_factory=QueryConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    rerank: RerankConfig = Field(default_factory=RerankConfig)
