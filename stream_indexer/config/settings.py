"""
Settings and configuration management for the payment stream indexer.
Loads configuration from YAML files and environment variables.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional, List
from dataclasses import dataclass

from stream_indexer.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class ChainConfig:
    """Chain RPC and contract settings."""
    rpc_url: Optional[str] = None
    contract_address: Optional[str] = None
    abi_path: Optional[str] = None
    request_timeout_seconds: float = 30.0
    read_attempts: int = 3
    poll_interval_seconds: float = 2.0
    log_range_blocks: int = 100


@dataclass
class BackfillConfig:
    """Historical backfill scanner settings."""
    lookback_blocks: int = 100000
    reconnect_lookback_blocks: int = 2000
    chunk_size: int = 100
    chunk_delay_seconds: float = 0.05
    progress_log_every: int = 50


@dataclass
class SupervisorConfig:
    """Connection supervisor settings."""
    reconnect_delay_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_reconnect_delay_seconds: float = 60.0


@dataclass
class ReconcileConfig:
    """Drift reconciler settings."""
    interval_minutes: float = 10.0
    enumerate_stream_count: bool = True
    retry_gaps: bool = True


@dataclass
class IdentityConfig:
    """Identity store settings."""
    source: str = "database"
    directory_url: Optional[str] = None
    timeout_seconds: float = 10.0


@dataclass
class LabelConfig:
    """Stream labelling settings."""
    default_label: str = "employee"
    tax_address: Optional[str] = None


@dataclass
class DatabaseConfig:
    """Database configuration settings."""
    pool_size: int = 10
    max_overflow: int = 20
    pool_recycle_hours: int = 1
    connection_timeout_seconds: int = 30


@dataclass
class StatusApiConfig:
    """Read-only status API settings."""
    host: str = "0.0.0.0"
    port: int = 8000


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"


class Settings:
    """Main settings class that loads and manages all configuration."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize settings.

        Args:
            config_path: Path to YAML configuration file. If None, uses default path.
        """
        self.config_path = config_path or self._get_default_config_path()
        self.config_data: Dict[str, Any] = {}
        self.load_config()

        self.chain = self._load_chain_config()
        self.backfill = self._load_backfill_config()
        self.supervisor = self._load_supervisor_config()
        self.reconcile = self._load_reconcile_config()
        self.identity = self._load_identity_config()
        self.label = self._load_label_config()
        self.database = self._load_database_config()
        self.status_api = self._load_status_api_config()
        self.logging = self._load_logging_config()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path."""
        env_path = os.getenv("INDEXER_CONFIG")
        if env_path:
            return env_path

        possible_paths = [
            "/etc/stream-indexer/indexer_config.yaml",
            "config/indexer_config.yaml",
            os.path.join(os.path.dirname(__file__), "..", "..", "config", "indexer_config.yaml")
        ]

        for path in possible_paths:
            if os.path.exists(path):
                return path

        return possible_paths[1]

    def load_config(self):
        """Load configuration from YAML file."""
        if not os.path.exists(self.config_path):
            logger.warning(f"Configuration file not found at {self.config_path}, using defaults")
            self.config_data = {}
            return

        try:
            with open(self.config_path, 'r') as file:
                self.config_data = yaml.safe_load(file) or {}
            logger.debug(f"Loaded configuration from {self.config_path}")
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load configuration from {self.config_path}: {e}") from e

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Args:
            key: Configuration key (supports dot notation like 'backfill.chunk_size')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        env_key = key.upper().replace('.', '_')
        env_value = os.getenv(env_key)
        if env_value is not None:
            if isinstance(default, bool):
                return env_value.lower() in ('true', '1', 'yes', 'on')
            elif isinstance(default, int):
                try:
                    return int(env_value)
                except ValueError:
                    pass
            elif isinstance(default, float):
                try:
                    return float(env_value)
                except ValueError:
                    pass
            return env_value

        keys = key.split('.')
        value = self.config_data

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def _load_chain_config(self) -> ChainConfig:
        return ChainConfig(
            rpc_url=os.getenv('RPC_URL') or self.get('chain.rpc_url'),
            contract_address=os.getenv('CONTRACT_ADDRESS') or self.get('chain.contract_address'),
            abi_path=self.get('chain.abi_path'),
            request_timeout_seconds=self.get('chain.request_timeout_seconds', 30.0),
            read_attempts=self.get('chain.read_attempts', 3),
            poll_interval_seconds=self.get('chain.poll_interval_seconds', 2.0),
            log_range_blocks=self.get('chain.log_range_blocks', 100)
        )

    def _load_backfill_config(self) -> BackfillConfig:
        return BackfillConfig(
            lookback_blocks=self.get('backfill.lookback_blocks', 100000),
            reconnect_lookback_blocks=self.get('backfill.reconnect_lookback_blocks', 2000),
            chunk_size=self.get('backfill.chunk_size', 100),
            chunk_delay_seconds=self.get('backfill.chunk_delay_seconds', 0.05),
            progress_log_every=self.get('backfill.progress_log_every', 50)
        )

    def _load_supervisor_config(self) -> SupervisorConfig:
        return SupervisorConfig(
            reconnect_delay_seconds=self.get('supervisor.reconnect_delay_seconds', 5.0),
            backoff_multiplier=self.get('supervisor.backoff_multiplier', 2.0),
            max_reconnect_delay_seconds=self.get('supervisor.max_reconnect_delay_seconds', 60.0)
        )

    def _load_reconcile_config(self) -> ReconcileConfig:
        return ReconcileConfig(
            interval_minutes=self.get('reconcile.interval_minutes', 10.0),
            enumerate_stream_count=self.get('reconcile.enumerate_stream_count', True),
            retry_gaps=self.get('reconcile.retry_gaps', True)
        )

    def _load_identity_config(self) -> IdentityConfig:
        return IdentityConfig(
            source=self.get('identity.source', "database"),
            directory_url=self.get('identity.directory_url'),
            timeout_seconds=self.get('identity.timeout_seconds', 10.0)
        )

    def _load_label_config(self) -> LabelConfig:
        tax_address = os.getenv('TAX_ADDRESS') or self.get('label.tax_address')
        return LabelConfig(
            default_label=self.get('label.default_label', "employee"),
            tax_address=tax_address.lower() if tax_address else None
        )

    def _load_database_config(self) -> DatabaseConfig:
        return DatabaseConfig(
            pool_size=self.get('database.pool_size', 10),
            max_overflow=self.get('database.max_overflow', 20),
            pool_recycle_hours=self.get('database.pool_recycle_hours', 1),
            connection_timeout_seconds=self.get('database.connection_timeout_seconds', 30)
        )

    def _load_status_api_config(self) -> StatusApiConfig:
        return StatusApiConfig(
            host=self.get('status_api.host', "0.0.0.0"),
            port=self.get('status_api.port', 8000)
        )

    def _load_logging_config(self) -> LoggingConfig:
        return LoggingConfig(level=str(self.get('logging.level', "INFO")).upper())

    # Environment-specific getters

    def get_database_url(self) -> str:
        """Get database URL from DATABASE_URL or the POSTGRES_* environment variables."""
        url = os.getenv('DATABASE_URL') or self.get('database.url')
        if url:
            return url

        user = os.getenv('POSTGRES_USER', 'indexer')
        password = os.getenv('POSTGRES_PASSWORD', 'indexer_password')
        host = os.getenv('POSTGRES_HOST', 'localhost')
        port = os.getenv('POSTGRES_PORT', '5432')
        database = os.getenv('POSTGRES_DB', 'stream-indexer')

        return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{database}"

    def validate(self) -> None:
        """Raise ConfigurationError if a required option is missing.

        The indexer must not start against an empty RPC endpoint or contract.
        """
        missing: List[str] = []
        if not self.chain.rpc_url:
            missing.append("RPC_URL (chain.rpc_url)")
        if not self.chain.contract_address:
            missing.append("CONTRACT_ADDRESS (chain.contract_address)")
        if self.identity.source == "directory" and not self.identity.directory_url:
            missing.append("IDENTITY_DIRECTORY_URL (identity.directory_url)")
        if self.identity.source not in ("database", "directory"):
            raise ConfigurationError(f"Unknown identity source: {self.identity.source}")
        if self.backfill.chunk_size <= 0:
            raise ConfigurationError("backfill.chunk_size must be positive")
        if self.chain.log_range_blocks <= 0:
            raise ConfigurationError("chain.log_range_blocks must be positive")
        if self.backfill.progress_log_every <= 0:
            raise ConfigurationError("backfill.progress_log_every must be positive")

        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings for one CLI invocation."""
    settings = Settings(config_path)
    logger.debug(f"Settings loaded from {settings.config_path}")
    return settings
