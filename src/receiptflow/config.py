"""
Configuration management for Receiptflow.

Loads environment variables (and a ``.env`` file when present) and exposes
them through a single ``ReceiptflowConfig`` instance.
"""

import os
import logging
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class ReceiptflowConfig:
    """Configuration for the receipt dashboard backend."""

    def __init__(self):
        # Application Settings
        self.ENVIRONMENT: str = os.getenv("ENVIRONMENT", "local")
        self.DEBUG: bool = os.getenv("DEBUG", "false").lower() == "true"
        self.HOST: str = os.getenv("HOST", "0.0.0.0")
        self.PORT: int = int(os.getenv("PORT", "8000"))

        # Logging Configuration
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
        self.LOG_FORMAT: str = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        # Document Store
        self.DOCUMENT_STORE: str = os.getenv("DOCUMENT_STORE", "memory").lower()
        self.DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")
        self.DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "10"))
        self.STORE_MAX_BATCH_OPERATIONS: int = int(os.getenv("STORE_MAX_BATCH_OPERATIONS", "500"))

        # Batched writes and deletes
        self.WRITE_BATCH_SIZE: int = int(os.getenv("WRITE_BATCH_SIZE", "450"))
        self.DELETE_BATCH_SIZE: int = int(os.getenv("DELETE_BATCH_SIZE", "499"))
        self.WRITE_PAUSE_SECONDS: float = float(os.getenv("WRITE_PAUSE_SECONDS", "0.1"))
        self.DELETE_PARALLELISM: int = int(os.getenv("DELETE_PARALLELISM", "10"))
        self.PROGRESS_INTERVAL_SECONDS: float = float(os.getenv("PROGRESS_INTERVAL_SECONDS", "0.1"))

        # Anonymous sessions
        self.LOCAL_CACHE_DIR: str = os.getenv("LOCAL_CACHE_DIR", ".receiptflow_cache")
        self.CLEAR_ANONYMOUS_ON_START: bool = os.getenv("CLEAR_ANONYMOUS_ON_START", "false").lower() == "true"

        # Validate configuration
        self._validate_config()

    def _validate_config(self) -> None:
        """Validate configuration values."""
        # Skip validation in test environment
        if self.ENVIRONMENT == "test":
            return

        if self.DOCUMENT_STORE not in ("memory", "postgres"):
            raise ValueError("DOCUMENT_STORE must be 'memory' or 'postgres'")

        if self.DOCUMENT_STORE == "postgres":
            if not self.DATABASE_URL:
                raise ValueError("DATABASE_URL is required when DOCUMENT_STORE=postgres")
            if not self.DATABASE_URL.startswith(("postgresql://", "postgres://")):
                raise ValueError("DATABASE_URL must be a PostgreSQL connection string")

        if self.STORE_MAX_BATCH_OPERATIONS <= 0:
            raise ValueError("STORE_MAX_BATCH_OPERATIONS must be positive")

        # Batches must leave headroom under the store's per-commit ceiling
        if not 0 < self.WRITE_BATCH_SIZE <= self.STORE_MAX_BATCH_OPERATIONS:
            raise ValueError("WRITE_BATCH_SIZE must be between 1 and STORE_MAX_BATCH_OPERATIONS")

        if not 0 < self.DELETE_BATCH_SIZE <= self.STORE_MAX_BATCH_OPERATIONS:
            raise ValueError("DELETE_BATCH_SIZE must be between 1 and STORE_MAX_BATCH_OPERATIONS")

        if self.WRITE_PAUSE_SECONDS < 0:
            raise ValueError("WRITE_PAUSE_SECONDS cannot be negative")

        if self.DELETE_PARALLELISM <= 0:
            raise ValueError("DELETE_PARALLELISM must be positive")

        if self.PROGRESS_INTERVAL_SECONDS < 0:
            raise ValueError("PROGRESS_INTERVAL_SECONDS cannot be negative")

    def store_options(self) -> dict:
        """Keyword arguments for ShardedReceiptStore and MigrationEngine."""
        return {
            "batch_size": self.WRITE_BATCH_SIZE,
            "delete_batch_size": self.DELETE_BATCH_SIZE,
            "pause_seconds": self.WRITE_PAUSE_SECONDS,
            "parallel_chunk_size": self.DELETE_PARALLELISM,
        }

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT in ["local", "development"]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT == "production"


# Global configuration instance, created on first use
_config: Optional[ReceiptflowConfig] = None


def get_config() -> ReceiptflowConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = ReceiptflowConfig()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() re-reads the environment."""
    global _config
    _config = None


def setup_logging(config: Optional[ReceiptflowConfig] = None) -> logging.Logger:
    """Set up logging configuration for the application."""
    config = config or get_config()
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format=config.LOG_FORMAT
    )

    logger = logging.getLogger("receiptflow")
    if config.DEBUG:
        logger.setLevel(logging.DEBUG)

    return logger
