"""SQL implementation of the price repository used by the pipeline."""

from __future__ import annotations

import logging
from datetime import timezone

from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fuelintel.core.errors import PersistenceError
from fuelintel.db.models import PriceChangeModel, StationModel
from fuelintel.pipeline.types import LastKnownPrice, PriceChange, PriceKey, StationRecord

logger = logging.getLogger(__name__)


class SqlPriceRepository:
    """Reads the last-known prices and writes stations and price history.

    Each write method runs in its own transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize repository.

        Args:
            session_factory: Factory producing AsyncSession instances
        """
        self.session_factory = session_factory

    async def get_all_last_prices(self) -> dict[PriceKey, LastKnownPrice]:
        """Latest price row per (station, fuel type).

        Returns:
            Map of PriceKey -> LastKnownPrice

        Raises:
            PersistenceError: If the query fails
        """
        latest = (
            select(
                PriceChangeModel.station_numero,
                PriceChangeModel.fuel_type,
                func.max(PriceChangeModel.changed_at).label("max_changed_at"),
            )
            .group_by(PriceChangeModel.station_numero, PriceChangeModel.fuel_type)
            .subquery()
        )
        stmt = select(PriceChangeModel).join(
            latest,
            and_(
                PriceChangeModel.station_numero == latest.c.station_numero,
                PriceChangeModel.fuel_type == latest.c.fuel_type,
                PriceChangeModel.changed_at == latest.c.max_changed_at,
            ),
        )

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load last prices: {e}") from e

        prices: dict[PriceKey, LastKnownPrice] = {}
        for row in rows:
            changed_at = row.changed_at
            if changed_at.tzinfo is None:
                changed_at = changed_at.replace(tzinfo=timezone.utc)
            last = LastKnownPrice(
                station_id=row.station_numero,
                fuel_type=row.fuel_type,
                price=float(row.price),
                changed_at=changed_at,
            )
            prices[last.key] = last

        logger.debug(f"Loaded {len(prices)} last-known prices")
        return prices

    async def upsert_stations(self, stations: list[StationRecord]) -> int:
        """Insert or update stations by primary key.

        Returns:
            Number of stations written

        Raises:
            PersistenceError: If the transaction fails (nothing is written)
        """
        if not stations:
            return 0

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for station in stations:
                        await session.merge(
                            StationModel(
                                numero=station.station_id,
                                nombre=station.name,
                                direccion=station.address or None,
                                lat=station.latitude,
                                lng=station.longitude,
                                entidad_id=station.region_id,
                                municipio_id=station.subregion_id,
                                brand=station.brand,
                                is_active=station.is_active,
                            )
                        )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to upsert {len(stations)} stations: {e}") from e

        return len(stations)

    async def insert_price_changes(self, changes: list[PriceChange]) -> int:
        """Append price changes to the history.

        Returns:
            Number of rows inserted

        Raises:
            PersistenceError: If the transaction fails (nothing is written)
        """
        if not changes:
            return 0

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add_all(
                        [
                            PriceChangeModel(
                                station_numero=change.station_id,
                                fuel_type=change.fuel_type,
                                subproducto=change.raw_label,
                                price=change.price,
                                changed_at=change.changed_at,
                            )
                            for change in changes
                        ]
                    )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to insert {len(changes)} price changes: {e}") from e

        return len(changes)
