"""Database initialization and persistence layer."""

from listing_hub.db.engine import (
    create_db_engine,
    create_session_factory,
    get_database_url,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
    reset_engine,
)
from listing_hub.db.models import (
    Base,
    PerformerAliasDB,
    PerformerDB,
    PriceHistoryDB,
    ProductDB,
    ProductImageDB,
    ProductPerformerDB,
    ProductRawLinkDB,
    ProductSaleDB,
    ProductSourceDB,
    ProductTagDB,
    ProductVideoDB,
    RawRecordDB,
    ReferenceIndexDB,
    TagDB,
)
from listing_hub.db.repositories import (
    ProductRepository,
    ProductSourceRepository,
    dialect_insert,
)

__all__ = [
    # Engine
    "create_db_engine",
    "create_session_factory",
    "get_database_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_db",
    "reset_engine",
    # Models
    "Base",
    "RawRecordDB",
    "ProductRawLinkDB",
    "ProductDB",
    "ProductSourceDB",
    "PerformerDB",
    "PerformerAliasDB",
    "TagDB",
    "ProductPerformerDB",
    "ProductTagDB",
    "ProductImageDB",
    "ProductVideoDB",
    "ProductSaleDB",
    "PriceHistoryDB",
    "ReferenceIndexDB",
    # Repositories
    "ProductRepository",
    "ProductSourceRepository",
    "dialect_insert",
]
