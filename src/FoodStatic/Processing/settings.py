# === NAVMAP v1 ===
# {
#   "module": "FoodStatic.Processing.settings",
#   "purpose": "Pydantic v2 settings for the processing pipeline and static server.",
#   "sections": [
#     {
#       "id": "loglevel",
#       "name": "LogLevel",
#       "anchor": "class-loglevel",
#       "kind": "class"
#     },
#     {
#       "id": "logformat",
#       "name": "LogFormat",
#       "anchor": "class-logformat",
#       "kind": "class"
#     },
#     {
#       "id": "runnerpolicy",
#       "name": "RunnerPolicy",
#       "anchor": "class-runnerpolicy",
#       "kind": "class"
#     },
#     {
#       "id": "pipelinecfg",
#       "name": "PipelineCfg",
#       "anchor": "class-pipelinecfg",
#       "kind": "class"
#     },
#     {
#       "id": "servercfg",
#       "name": "ServerCfg",
#       "anchor": "class-servercfg",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Pydantic v2 settings for the processing pipeline and static server.

Values resolve with the precedence CLI overrides > ``FOODSTATIC_*``
environment variables > defaults. The CLI builds settings through
:meth:`PipelineCfg.from_overrides` so that ``None`` overrides fall through to
the environment.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from FoodStatic.concurrency import default_workers

from .errors import ConfigurationError

__all__ = [
    "LogFormat",
    "LogLevel",
    "PipelineCfg",
    "RunnerPolicy",
    "ServerCfg",
]


class LogLevel(str, Enum):
    """Supported logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class LogFormat(str, Enum):
    """Supported log output formats."""

    CONSOLE = "console"
    JSON = "json"


class RunnerPolicy(str, Enum):
    """Execution policy for the transform worker pool."""

    IO = "io"
    CPU = "cpu"


def _expand_path(value: Any) -> Any:
    if isinstance(value, str):
        return Path(value).expanduser()
    if isinstance(value, Path):
        return value.expanduser()
    return value


class PipelineCfg(BaseSettings):
    """Configuration for one ingest → transform → index → emit run."""

    model_config = SettingsConfigDict(
        env_prefix="FOODSTATIC_",
        case_sensitive=False,
        extra="ignore",
    )

    input_path: Path = Field(
        Path("food_facts_raw_data/products.csv.gz"),
        description="Gzip-compressed tab-separated export with a header row",
    )
    output_root: Path = Field(Path("static"), description="Root of the generated tree")
    batch_size: int = Field(1000, description="Rows per transform batch", ge=1)
    page_size: int = Field(500, description="Codes per index page", ge=1)
    shard_count: int = Field(256, description="Shard directories per index dimension", ge=1)
    workers: int = Field(
        default_factory=default_workers,
        description="Transform worker pool size (default: available parallelism)",
        ge=1,
    )
    policy: RunnerPolicy = Field(RunnerPolicy.IO, description="Worker pool policy (io/cpu)")
    max_in_flight: int = Field(
        0,
        description="Maximum batches submitted but not completed (0 = 2 x workers)",
        ge=0,
    )
    lock_stripes: int = Field(64, description="Lock stripes in the index aggregator", ge=1)
    catalog_queue_size: int = Field(
        10_000, description="Bound of the catalog writer queue", ge=1
    )
    page_number_width: int = Field(4, description="Zero padding of page file numbers", ge=1)
    durable_writes: bool = Field(False, description="fsync every output file before rename")
    progress: bool = Field(True, description="Render a tqdm progress bar")
    log_level: LogLevel = Field(LogLevel.INFO, description="Root logging level")
    log_format: LogFormat = Field(LogFormat.CONSOLE, description="Pretty console or structured JSON")

    @field_validator("input_path", "output_root", mode="before")
    @classmethod
    def expand_paths(cls, v: Any) -> Any:
        """Expand user home markers."""
        return _expand_path(v)

    @property
    def products_dir(self) -> Path:
        return self.output_root / "products"

    @property
    def indexes_dir(self) -> Path:
        return self.output_root / "indexes"

    @property
    def catalog_path(self) -> Path:
        return self.indexes_dir / "catalog.jsonl.gz"

    @property
    def effective_max_in_flight(self) -> int:
        """Return the in-flight batch bound, defaulting to twice the pool size."""

        if self.max_in_flight > 0:
            return self.max_in_flight
        return max(2, 2 * self.workers)

    @classmethod
    def from_overrides(cls, **overrides: Any) -> "PipelineCfg":
        """Build settings from the environment with non-``None`` overrides applied."""

        filtered = {key: value for key, value in overrides.items() if value is not None}
        try:
            return cls(**filtered)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc


class ServerCfg(BaseSettings):
    """Configuration for the static file server."""

    model_config = SettingsConfigDict(
        env_prefix="FOODSTATIC_SERVER_",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = Field("0.0.0.0", description="Bind address")
    port: int = Field(8080, description="Bind port", ge=0, le=65535)
    root: Path = Field(Path("static"), description="Generated tree to serve")
    log_level: LogLevel = Field(LogLevel.INFO, description="Root logging level")
    log_format: LogFormat = Field(LogFormat.CONSOLE, description="Pretty console or structured JSON")

    @field_validator("root", mode="before")
    @classmethod
    def expand_root(cls, v: Any) -> Any:
        """Expand user home markers."""
        return _expand_path(v)

    @classmethod
    def from_overrides(cls, **overrides: Any) -> "ServerCfg":
        """Build settings from the environment with non-``None`` overrides applied."""

        filtered = {key: value for key, value in overrides.items() if value is not None}
        try:
            return cls(**filtered)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc
