"""Configuration schema dataclasses for binsql."""
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class BackendConfig:
    """Analysis backend configuration."""

    type: str = "snapshot"


@dataclass
class EngineConfig:
    """Planner and cost-model limits."""

    per_row_udf_limit: int = 100_000
    decompile_udf_limit: int = 64
    udf_warn_rows: int = 1_000
    decompile_cache_size: int = 256


@dataclass
class ServerConfig:
    """HTTP and legacy TCP listener settings."""

    bind: str = "127.0.0.1"
    http_port: int | None = None
    tcp_port: int | None = None
    token: str | None = None
    max_frame_bytes: int = 16 * 1024 * 1024
    read_timeout_s: float = 300.0
    log_level: str = "warning"


@dataclass
class OutputConfig:
    """CLI output settings."""

    format: str = "table"


@dataclass
class LoggingConfig:
    level: str = "WARNING"


@dataclass
class BinsqlConfig:
    """Top-level configuration for binsql."""

    backend: BackendConfig = field(default_factory=BackendConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def create_default(cls) -> BinsqlConfig:
        """Create a configuration with all default values."""
        return cls(
            backend=BackendConfig(),
            engine=EngineConfig(),
            server=ServerConfig(),
            output=OutputConfig(),
            logging=LoggingConfig(),
        )
