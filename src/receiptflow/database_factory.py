"""
Document store factory.

Chooses between the in-memory store and the PostgreSQL-backed store from
the DOCUMENT_STORE setting.
"""

import logging
from typing import Optional

from .config import ReceiptflowConfig, get_config
from .document_store import DocumentStore, InMemoryDocumentStore, PostgresDocumentStore

logger = logging.getLogger(__name__)


class DatabaseFactory:
    """Factory class to create the configured document store."""

    @staticmethod
    def create_store(config: Optional[ReceiptflowConfig] = None) -> DocumentStore:
        """Create a document store instance based on DOCUMENT_STORE."""
        config = config or get_config()

        if config.DOCUMENT_STORE == "postgres":
            return PostgresDocumentStore(
                database_url=config.DATABASE_URL,
                pool_size=config.DB_POOL_SIZE,
                max_batch_operations=config.STORE_MAX_BATCH_OPERATIONS,
            )
        return InMemoryDocumentStore(max_batch_operations=config.STORE_MAX_BATCH_OPERATIONS)

    @staticmethod
    async def create_store_async(config: Optional[ReceiptflowConfig] = None) -> DocumentStore:
        """Create and initialize the configured document store."""
        store = DatabaseFactory.create_store(config)
        await store.initialize()
        logger.info(f"Document store initialized: {DatabaseFactory.get_store_type(config)}")
        return store

    @staticmethod
    def get_store_type(config: Optional[ReceiptflowConfig] = None) -> str:
        """Get the current document store type being used."""
        config = config or get_config()
        return "PostgreSQL" if config.DOCUMENT_STORE == "postgres" else "in-memory"
