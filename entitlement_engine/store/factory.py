"""Pick the engine store for the configured environment."""
import logging
from typing import Optional

from entitlement_engine.core.config import Settings, settings as default_settings
from entitlement_engine.core.database import create_all_tables, create_engine_for, get_database_url
from entitlement_engine.store.base import EngineStore
from entitlement_engine.store.memory import MemoryStore
from entitlement_engine.store.sql import SqlStore

logger = logging.getLogger("entitlements.store")


def build_store(settings_obj: Optional[Settings] = None) -> EngineStore:
    """SqlStore when a database URL is configured, MemoryStore otherwise."""
    url = get_database_url(settings_obj or default_settings)
    if not url:
        logger.info("[store] no DATABASE_URL, using in-memory store")
        return MemoryStore()

    engine = create_engine_for(url)
    create_all_tables(engine)
    logger.info("[store] using SQL store", extra={"dialect": engine.dialect.name})
    return SqlStore(engine)
