"""Database helpers for idempotent upsert logic."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Protocol

import asyncpg
from asyncpg import Connection

from etl.importer.errors import PersistenceError, RecordValidationError
from etl.importer.mapper import DEFAULT_IMAGE_SIZE, to_aggregate
from etl.models import (
    AddressRow,
    CompanyRow,
    FeaturesRow,
    ImageRow,
    ListingAggregate,
    PriceRow,
    PropertyRow,
    ValuationRow,
)

LOGGER = logging.getLogger(__name__)


class ListingRepository(Protocol):
    """Destination store for listing aggregates, keyed by natural ids."""

    def transaction(self) -> Any:
        """Async context manager grouping the writes of one listing."""
        ...

    async def upsert_property(self, row: PropertyRow) -> None:
        ...

    async def upsert_address(self, row: AddressRow) -> None:
        ...

    async def upsert_features(self, row: FeaturesRow) -> None:
        ...

    async def replace_images(self, property_id: str, images: List[ImageRow]) -> None:
        """Drop every stored image of the listing and insert `images` in order."""
        ...

    async def upsert_price(self, row: PriceRow) -> None:
        ...

    async def upsert_valuation(self, row: ValuationRow) -> None:
        ...

    async def upsert_company(self, row: CompanyRow) -> None:
        ...

    async def link_company(self, property_id: str, company_id: str) -> None:
        ...


class PostgresListingRepository:
    """asyncpg implementation of ListingRepository bound to one connection."""

    def __init__(self, conn: Connection) -> None:
        self.conn = conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        try:
            async with self.conn.transaction():
                yield
        except (asyncpg.DataError, asyncpg.IntegrityConstraintViolationError) as exc:
            # bad values in one listing; the transaction is rolled back and the batch goes on
            raise RecordValidationError(f"{type(exc).__name__}: {exc}") from exc
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise PersistenceError(f"{type(exc).__name__}: {exc}") from exc

    async def upsert_property(self, row: PropertyRow) -> None:
        await self.conn.execute(
            """
            INSERT INTO properties (
                id, property_type, property_link, description, scraped_at,
                created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, NOW(), NOW())
            ON CONFLICT (id) DO UPDATE
            SET
                property_type = EXCLUDED.property_type,
                property_link = EXCLUDED.property_link,
                description = EXCLUDED.description,
                scraped_at = EXCLUDED.scraped_at,
                updated_at = NOW();
            """,
            row.id,
            row.property_type,
            row.property_link,
            row.description,
            row.scraped_at,
        )

    async def upsert_address(self, row: AddressRow) -> None:
        await self.conn.execute(
            """
            INSERT INTO property_addresses (
                property_id, short_address, full_address, suburb, state, postcode, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, NOW())
            ON CONFLICT (property_id) DO UPDATE
            SET
                short_address = EXCLUDED.short_address,
                full_address = EXCLUDED.full_address,
                suburb = EXCLUDED.suburb,
                state = EXCLUDED.state,
                postcode = EXCLUDED.postcode,
                updated_at = NOW();
            """,
            row.property_id,
            row.short_address,
            row.full_address,
            row.suburb,
            row.state,
            row.postcode,
        )

    async def upsert_features(self, row: FeaturesRow) -> None:
        await self.conn.execute(
            """
            INSERT INTO property_features (
                property_id, bedrooms, bathrooms, parking_spaces,
                land_size, land_unit, building_size, building_unit, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, NOW())
            ON CONFLICT (property_id) DO UPDATE
            SET
                bedrooms = EXCLUDED.bedrooms,
                bathrooms = EXCLUDED.bathrooms,
                parking_spaces = EXCLUDED.parking_spaces,
                land_size = EXCLUDED.land_size,
                land_unit = EXCLUDED.land_unit,
                building_size = EXCLUDED.building_size,
                building_unit = EXCLUDED.building_unit,
                updated_at = NOW();
            """,
            row.property_id,
            row.bedrooms,
            row.bathrooms,
            row.parking_spaces,
            row.land_size,
            row.land_unit,
            row.building_size,
            row.building_unit,
        )

    async def replace_images(self, property_id: str, images: List[ImageRow]) -> None:
        await self.conn.execute(
            "DELETE FROM property_images WHERE property_id = $1;",
            property_id,
        )
        if not images:
            return
        await self.conn.executemany(
            """
            INSERT INTO property_images (property_id, url, image_order)
            VALUES ($1, $2, $3);
            """,
            [(image.property_id, image.url, image.order) for image in images],
        )

    async def upsert_price(self, row: PriceRow) -> None:
        await self.conn.execute(
            """
            INSERT INTO property_prices (
                property_id, display_price, price_from, price_to,
                search_range, price_information, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, NOW())
            ON CONFLICT (property_id) DO UPDATE
            SET
                display_price = EXCLUDED.display_price,
                price_from = EXCLUDED.price_from,
                price_to = EXCLUDED.price_to,
                search_range = EXCLUDED.search_range,
                price_information = EXCLUDED.price_information,
                updated_at = NOW();
            """,
            row.property_id,
            row.display_price,
            row.price_from,
            row.price_to,
            row.search_range,
            row.price_information,
        )

    async def upsert_valuation(self, row: ValuationRow) -> None:
        await self.conn.execute(
            """
            INSERT INTO property_valuations (
                property_id, source, status, confidence,
                estimated_value, estimated_value_display, price_per_meter, price_range,
                rental_value, rental_value_display, rental_period, rental_confidence,
                updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, NOW())
            ON CONFLICT (property_id) DO UPDATE
            SET
                source = EXCLUDED.source,
                status = EXCLUDED.status,
                confidence = EXCLUDED.confidence,
                estimated_value = EXCLUDED.estimated_value,
                estimated_value_display = EXCLUDED.estimated_value_display,
                price_per_meter = EXCLUDED.price_per_meter,
                price_range = EXCLUDED.price_range,
                rental_value = EXCLUDED.rental_value,
                rental_value_display = EXCLUDED.rental_value_display,
                rental_period = EXCLUDED.rental_period,
                rental_confidence = EXCLUDED.rental_confidence,
                updated_at = NOW();
            """,
            row.property_id,
            row.source,
            row.status,
            row.confidence,
            row.estimated_value,
            row.estimated_value_display,
            row.price_per_meter,
            row.price_range,
            row.rental_value,
            row.rental_value_display,
            row.rental_period,
            row.rental_confidence,
        )

    async def upsert_company(self, row: CompanyRow) -> None:
        await self.conn.execute(
            """
            INSERT INTO listing_companies (
                id, name, phone_number, address, avg_rating, total_reviews, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, NOW())
            ON CONFLICT (id) DO UPDATE
            SET
                name = EXCLUDED.name,
                phone_number = EXCLUDED.phone_number,
                address = EXCLUDED.address,
                avg_rating = EXCLUDED.avg_rating,
                total_reviews = EXCLUDED.total_reviews,
                updated_at = NOW();
            """,
            row.id,
            row.name,
            row.phone_number,
            row.address,
            row.avg_rating,
            row.total_reviews,
        )

    async def link_company(self, property_id: str, company_id: str) -> None:
        await self.conn.execute(
            """
            INSERT INTO property_companies (property_id, company_id)
            VALUES ($1, $2)
            ON CONFLICT (property_id) DO UPDATE
            SET company_id = EXCLUDED.company_id;
            """,
            property_id,
            company_id,
        )


class RecordMerger:
    """Maps one raw listing onto the destination tables with upsert-by-key writes.

    Re-merging the same record leaves the store unchanged apart from
    ``updated_at`` timestamps: per-listing rows are overwritten in place, the
    image list is replaced wholesale and companies are keyed by their own id.
    Sections missing from the source (no price, no valuation, no company) are
    left untouched rather than deleted.
    """

    def __init__(self, repository: ListingRepository, image_size: str = DEFAULT_IMAGE_SIZE) -> None:
        self.repository = repository
        self.image_size = image_size

    async def merge(self, raw: Dict[str, Any]) -> ListingAggregate:
        aggregate = to_aggregate(raw, self.image_size)
        await self.write(aggregate)
        return aggregate

    async def write(self, aggregate: ListingAggregate) -> None:
        repo = self.repository
        property_id = aggregate.record.id
        async with repo.transaction():
            await repo.upsert_property(aggregate.record)
            await repo.upsert_address(aggregate.address)
            await repo.upsert_features(aggregate.features)
            await repo.replace_images(property_id, aggregate.images)
            if aggregate.price is not None:
                await repo.upsert_price(aggregate.price)
            if aggregate.valuation is not None:
                await repo.upsert_valuation(aggregate.valuation)
            if aggregate.company is not None:
                await repo.upsert_company(aggregate.company)
                await repo.link_company(property_id, aggregate.company.id)

        LOGGER.debug(
            "Merged listing %s (images=%d, company=%s)",
            property_id,
            len(aggregate.images),
            aggregate.company.id if aggregate.company else None,
        )
