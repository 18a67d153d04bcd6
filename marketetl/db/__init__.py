"""Database layer for marketetl with async SQLAlchemy."""

from marketetl.db.connection import get_engine, get_session, init_db
from marketetl.db.models import (
    Base,
    PipelineRunLogModel,
    RawStockDataModel,
    TransformedStockDataModel,
)

__all__ = [
    "Base",
    "RawStockDataModel",
    "TransformedStockDataModel",
    "PipelineRunLogModel",
    "get_engine",
    "get_session",
    "init_db",
]
