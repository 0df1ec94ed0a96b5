"""Configuration loading with pydantic-settings.

Supports loading configuration from multiple sources with precedence:
1. Direct kwargs (highest priority)
2. Environment variables (CODEWEAVE__SECTION__KEY)
3. Repo config (.codeweave/config.yaml)
4. Global config (~/.config/codeweave/config.yaml)
5. Built-in defaults (lowest priority)
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

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
from codeweave.core.errors import ConfigError

GLOBAL_CONFIG_PATH = Path("~/.config/codeweave/config.yaml").expanduser()
DATA_DIR_NAME = ".codeweave"


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open() as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError.parse_error(str(path), str(e)) from e
    if not isinstance(data, dict):
        raise ConfigError.parse_error(str(path), "top level must be a mapping")
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class _YamlSource(PydanticBaseSettingsSource):
    """Settings source that reads from pre-loaded YAML config."""

    def __init__(self, settings_cls: type[BaseSettings], yaml_config: dict[str, Any]) -> None:
        super().__init__(settings_cls)
        self._yaml_config = yaml_config

    def get_field_value(
        self,
        field: Any,  # noqa: ARG002
        field_name: str,
    ) -> tuple[Any, str, bool]:
        val = self._yaml_config.get(field_name)
        return val, field_name, val is not None

    def __call__(self) -> dict[str, Any]:
        return self._yaml_config


def _make_settings_class(yaml_config: dict[str, Any]) -> type[BaseSettings]:
    """Create a Settings class with instance-based YAML source (thread-safe)."""

    class CodeWeaveSettings(BaseSettings):
        """Root config. Env vars: CODEWEAVE__LOGGING__LEVEL, CODEWEAVE__WATCH__DEBOUNCE_MS, etc."""

        model_config = SettingsConfigDict(
            env_prefix="CODEWEAVE__",
            env_nested_delimiter="__",
            case_sensitive=False,
        )

        logging: LoggingConfig = LoggingConfig()
        index: IndexConfig = IndexConfig()
        database: DatabaseConfig = DatabaseConfig()
        lock: LockConfig = LockConfig()
        watch: WatchConfig = WatchConfig()
        query: QueryConfig = QueryConfig()
        embedding: EmbeddingConfig = EmbeddingConfig()
        rerank: RerankConfig = RerankConfig()

        @classmethod
        def settings_customise_sources(
            cls,
            settings_cls: type[BaseSettings],
            init_settings: PydanticBaseSettingsSource,
            env_settings: PydanticBaseSettingsSource,
            dotenv_settings: PydanticBaseSettingsSource,  # noqa: ARG003
            file_secret_settings: PydanticBaseSettingsSource,  # noqa: ARG003
        ) -> tuple[PydanticBaseSettingsSource, ...]:
            # Precedence (first wins): init kwargs > env vars > yaml files
            return (init_settings, env_settings, _YamlSource(settings_cls, yaml_config))

    return CodeWeaveSettings


def load_config(repo_root: Path | None = None, **kwargs: Any) -> CodeWeaveConfig:
    """Load config: defaults < global yaml < repo yaml < env vars < kwargs.

    Args:
        repo_root: Workspace root to load config from.
                   Defaults to current working directory.
        **kwargs: Override values (highest precedence), keyed by section.

    Returns:
        Fully resolved configuration object.

    Raises:
        ConfigError: On invalid YAML syntax or validation errors.
    """
    repo_root = repo_root or Path.cwd()
    yaml_config = _deep_merge(
        _load_yaml(GLOBAL_CONFIG_PATH),
        _load_yaml(repo_root / DATA_DIR_NAME / "config.yaml"),
    )

    settings_cls = _make_settings_class(yaml_config)
    try:
        settings = settings_cls(**kwargs)
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(loc) for loc in err["loc"])
        raise ConfigError.invalid_value(field, err.get("input"), err["msg"]) from e
    return CodeWeaveConfig.model_validate(settings.model_dump())


def get_data_dir(repo_root: Path, config: CodeWeaveConfig) -> Path:
    """Directory holding the index database, lock file and pass journals."""
    if config.index.index_path:
        return Path(config.index.index_path).expanduser()
    return repo_root / DATA_DIR_NAME
