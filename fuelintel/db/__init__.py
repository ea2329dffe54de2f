"""Price store with async SQLAlchemy."""

from fuelintel.db.connection import close_db, get_session, init_db
from fuelintel.db.models import Base, PriceChangeModel, StationModel

__all__ = [
    "Base",
    "StationModel",
    "PriceChangeModel",
    "get_session",
    "init_db",
    "close_db",
]
