"""Database connection helpers and schema for the listing store."""
from __future__ import annotations

import logging
import os
from typing import Optional

import asyncpg
from asyncpg import Connection

LOGGER = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS properties (
    id VARCHAR PRIMARY KEY,
    property_type VARCHAR NOT NULL,
    property_link VARCHAR NOT NULL DEFAULT '',
    description TEXT,
    scraped_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS property_addresses (
    property_id VARCHAR PRIMARY KEY REFERENCES properties(id) ON DELETE CASCADE,
    short_address VARCHAR,
    full_address VARCHAR,
    suburb VARCHAR,
    state VARCHAR,
    postcode VARCHAR,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS property_features (
    property_id VARCHAR PRIMARY KEY REFERENCES properties(id) ON DELETE CASCADE,
    bedrooms INTEGER,
    bathrooms INTEGER,
    parking_spaces INTEGER,
    land_size NUMERIC,
    land_unit VARCHAR,
    building_size NUMERIC,
    building_unit VARCHAR,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS property_images (
    id SERIAL PRIMARY KEY,
    property_id VARCHAR NOT NULL REFERENCES properties(id) ON DELETE CASCADE,
    url VARCHAR NOT NULL,
    image_order INTEGER NOT NULL,
    CONSTRAINT uq_property_image_order UNIQUE (property_id, image_order)
);

CREATE TABLE IF NOT EXISTS property_prices (
    property_id VARCHAR PRIMARY KEY REFERENCES properties(id) ON DELETE CASCADE,
    display_price VARCHAR,
    price_from NUMERIC,
    price_to NUMERIC,
    search_range VARCHAR,
    price_information VARCHAR,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS property_valuations (
    property_id VARCHAR PRIMARY KEY REFERENCES properties(id) ON DELETE CASCADE,
    source VARCHAR NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'found',
    confidence VARCHAR,
    estimated_value NUMERIC,
    estimated_value_display VARCHAR,
    price_per_meter NUMERIC,
    price_range VARCHAR,
    rental_value NUMERIC,
    rental_value_display VARCHAR,
    rental_period VARCHAR,
    rental_confidence VARCHAR,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS listing_companies (
    id VARCHAR PRIMARY KEY,
    name VARCHAR NOT NULL,
    phone_number VARCHAR,
    address VARCHAR,
    avg_rating NUMERIC,
    total_reviews INTEGER,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS property_companies (
    property_id VARCHAR PRIMARY KEY REFERENCES properties(id) ON DELETE CASCADE,
    company_id VARCHAR NOT NULL REFERENCES listing_companies(id)
);

CREATE TABLE IF NOT EXISTS import_progress (
    id SERIAL PRIMARY KEY,
    batch_size INTEGER NOT NULL CHECK (batch_size > 0),
    current_offset INTEGER NOT NULL DEFAULT 0,
    total_items INTEGER NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'in_progress',
    started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    error TEXT,
    CONSTRAINT ck_import_offset_range CHECK (current_offset >= 0 AND current_offset <= total_items)
);

CREATE INDEX IF NOT EXISTS idx_import_progress_status_updated
    ON import_progress(status, updated_at);
"""


def get_dsn(dsn: Optional[str] = None) -> str:
    """Return the DSN passed in or from PG_DSN / DATABASE_URL."""
    value = dsn or os.getenv("PG_DSN") or os.getenv("DATABASE_URL")
    if not value:
        raise RuntimeError("PG_DSN is not set")
    return value


async def get_connection(dsn: Optional[str] = None) -> Connection:
    return await asyncpg.connect(get_dsn(dsn))


async def ensure_schema(conn: Connection) -> None:
    """Create tables if they do not exist."""
    await conn.execute(SCHEMA_SQL)
    LOGGER.info("Ensured listing and import_progress tables exist")
