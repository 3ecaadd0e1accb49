"""Job store backends"""

import logging

from storage.base import Store
from storage.memory import MemoryStore

logger = logging.getLogger(__name__)


def build_store(config) -> Store:
    """Create the store selected by STORE_BACKEND"""
    if config.store_backend == 'postgres':
        from database import Database
        from storage.postgres import PostgresStore
        logger.info("🗄️ Using PostgreSQL job store")
        return PostgresStore(Database(config.database_url))
    if config.store_backend != 'memory':
        raise ValueError(f"Unknown STORE_BACKEND: {config.store_backend!r}")
    logger.info("🧠 Using in-memory job store")
    return MemoryStore()
