"""Storage layer for the invoice bundle pipeline.

Provides database access via SQLAlchemy (PostgreSQL in production) and the
BatchStore implementations used by the batch controller.
"""

from .database import (
    Base,
    close_db,
    create_engine,
    create_session_factory,
    get_session,
    init_db,
)
from .orm_models import DocumentBatchORM
from .repositories import (
    BatchRepository,
    BatchStore,
    InMemoryBatchStore,
    SqlBatchStore,
)

__all__ = [
    # Database
    "Base",
    "create_engine",
    "create_session_factory",
    "get_session",
    "init_db",
    "close_db",
    # ORM Models
    "DocumentBatchORM",
    # Repositories
    "BatchRepository",
    "BatchStore",
    "InMemoryBatchStore",
    "SqlBatchStore",
]
