"""Configuration for the member synchronization engine."""

import os
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
from pathlib import Path


@dataclass
class SyncConfig:
    """Configuration settings for reconciliation runs."""

    # Storage settings
    data_dir: str = "data"
    tracking_db_name: str = "tracking.duckdb"
    runs_db_name: str = "runs.duckdb"

    # Remote call settings
    max_retries: int = 3
    request_timeout_seconds: float = 30.0
    record_delay_seconds: float = 2.0  # courtesy pause between records

    # Orphan sweep guard: skip the sweep when the snapshot shrinks below this
    # fraction of the tracked records (0 disables the ratio check)
    min_snapshot_ratio: float = 0.0

    # Logging settings
    log_level: str = "INFO"
    log_dir: str = "logs"

    @property
    def tracking_db_path(self) -> Path:
        return Path(self.data_dir) / self.tracking_db_name

    @property
    def runs_db_path(self) -> Path:
        return Path(self.data_dir) / self.runs_db_name

    def validate(self) -> None:
        """Validate configuration parameters."""
        errors = []

        if self.max_retries < 0:
            errors.append(f"Max retries must be non-negative, got {self.max_retries}")

        if self.request_timeout_seconds <= 0:
            errors.append(f"Request timeout must be positive, got {self.request_timeout_seconds}")

        if self.record_delay_seconds < 0:
            errors.append(f"Record delay must be non-negative, got {self.record_delay_seconds}")

        if not (0.0 <= self.min_snapshot_ratio <= 1.0):
            errors.append(f"Minimum snapshot ratio must be between 0 and 1, got {self.min_snapshot_ratio}")

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            errors.append(f"Log level must be one of {valid_log_levels}, got {self.log_level}")

        if not self.data_dir:
            errors.append("Data directory must not be empty")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "data_dir": self.data_dir,
            "tracking_db_name": self.tracking_db_name,
            "runs_db_name": self.runs_db_name,
            "max_retries": self.max_retries,
            "request_timeout_seconds": self.request_timeout_seconds,
            "record_delay_seconds": self.record_delay_seconds,
            "min_snapshot_ratio": self.min_snapshot_ratio,
            "log_level": self.log_level,
            "log_dir": self.log_dir,
        }

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Create configuration from environment variables with validation."""
        try:
            config = cls(
                data_dir=os.getenv("MEMBER_SYNC_DATA_DIR", "data"),
                tracking_db_name=os.getenv("MEMBER_SYNC_TRACKING_DB", "tracking.duckdb"),
                runs_db_name=os.getenv("MEMBER_SYNC_RUNS_DB", "runs.duckdb"),

                max_retries=int(os.getenv("MEMBER_SYNC_MAX_RETRIES", "3")),
                request_timeout_seconds=float(os.getenv("MEMBER_SYNC_REQUEST_TIMEOUT", "30")),
                record_delay_seconds=float(os.getenv("MEMBER_SYNC_RECORD_DELAY", "2.0")),
                min_snapshot_ratio=float(os.getenv("MEMBER_SYNC_MIN_SNAPSHOT_RATIO", "0.0")),

                log_level=os.getenv("MEMBER_SYNC_LOG_LEVEL", "INFO"),
                log_dir=os.getenv("MEMBER_SYNC_LOG_DIR", "logs"),
            )

            config.validate()
            return config

        except ValueError as e:
            if "could not convert" in str(e) or "invalid literal" in str(e):
                raise ValueError(f"Invalid environment variable format: {e}")
            raise

    @classmethod
    def from_file(cls, config_path: str) -> "SyncConfig":
        """Load configuration from a .env file."""
        from dotenv import load_dotenv

        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        load_dotenv(config_file)

        return cls.from_env()


@dataclass
class RemoteSystemConfig:
    """Connection and endpoint settings for one downstream system."""

    name: str
    base_url: str = ""
    api_key: str = ""
    api_key_header: str = "X-API-Key"
    entity_path: str = "/api/members"
    search_param: str = "email"
    id_field: str = "id"
    health_path: Optional[str] = None
    table_name: Optional[str] = None
    extra_headers: Dict[str, str] = field(default_factory=dict)

    @property
    def env_prefix(self) -> str:
        return self.name.upper().replace("-", "_")

    @property
    def tracking_table(self) -> str:
        return self.table_name or f"{self.name.lower().replace('-', '_')}_members"

    def check_credentials(self) -> List[str]:
        """Return the environment variables that still need to be set."""
        missing = []
        if not self.api_key:
            missing.append(f"{self.env_prefix}_API_KEY")
        if not self.base_url:
            missing.append(f"{self.env_prefix}_BASE_URL")
        return missing

    @classmethod
    def from_env(cls, name: str) -> "RemoteSystemConfig":
        """
        Read the settings of a downstream system from ``{NAME}_*`` variables.

        Args:
            name: System name, e.g. "freescout" reads FREESCOUT_BASE_URL etc.
        """
        prefix = name.upper().replace("-", "_")
        return cls(
            name=name,
            base_url=os.getenv(f"{prefix}_BASE_URL", ""),
            api_key=os.getenv(f"{prefix}_API_KEY", ""),
            api_key_header=os.getenv(f"{prefix}_API_KEY_HEADER", "X-API-Key"),
            entity_path=os.getenv(f"{prefix}_ENTITY_PATH", "/api/members"),
            search_param=os.getenv(f"{prefix}_SEARCH_PARAM", "email"),
            id_field=os.getenv(f"{prefix}_ID_FIELD", "id"),
            health_path=os.getenv(f"{prefix}_HEALTH_PATH") or None,
            table_name=os.getenv(f"{prefix}_TABLE") or None,
        )
