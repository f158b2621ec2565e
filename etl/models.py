"""Pydantic models shared across ETL components."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _SourceModel(BaseModel):
    """Base for the raw listing schema: camelCase aliases, unknown keys ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)


# --- Source dataset (search.json) ------------------------------------------


class DisplayAddress(_SourceModel):
    short_address: Optional[str] = Field(default=None, alias="shortAddress")
    full_address: Optional[str] = Field(default=None, alias="fullAddress")


class SourceAddress(_SourceModel):
    display: Optional[DisplayAddress] = Field(default_factory=DisplayAddress)
    suburb: Optional[str] = None
    state: Optional[str] = None
    postcode: Optional[str] = None


class FeatureValue(_SourceModel):
    value: Any = None


class GeneralFeatures(_SourceModel):
    bedrooms: Optional[FeatureValue] = None
    bathrooms: Optional[FeatureValue] = None
    parking_spaces: Optional[FeatureValue] = Field(default=None, alias="parkingSpaces")


class SizeUnit(_SourceModel):
    display_value: Optional[str] = Field(default=None, alias="displayValue")


class SizeValue(_SourceModel):
    display_value: Any = Field(default=None, alias="displayValue")
    size_unit: Optional[SizeUnit] = Field(default=None, alias="sizeUnit")


class PropertySizes(_SourceModel):
    land: Optional[SizeValue] = None
    building: Optional[SizeValue] = None


class RentalEstimate(_SourceModel):
    confidence: Optional[str] = None
    value: Optional[str] = None
    period: Optional[str] = None
    message: Optional[str] = None


class ValuationData(_SourceModel):
    """Valuation block, either scraped by the enrichment lanes or pre-existing."""

    source: Optional[str] = "property.com.au"
    status: Optional[str] = "found"
    confidence: Optional[str] = None
    estimated_value: Optional[str] = Field(default=None, alias="estimatedValue")
    price_per_meter: Optional[str] = Field(default=None, alias="pricePerMeter")
    price_range: Optional[str] = Field(default=None, alias="priceRange")
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    rental: Optional[RentalEstimate] = Field(default_factory=RentalEstimate)

    @classmethod
    def not_found(cls) -> ValuationData:
        """Placeholder stored when the valuation site has no match."""
        return cls(status="not_found")

    def to_source_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class RatingsReviews(_SourceModel):
    avg_rating: Any = Field(default=None, alias="avgRating")
    total_reviews: Any = Field(default=None, alias="totalReviews")


class ListingCompany(_SourceModel):
    id: Optional[str] = None
    name: Optional[str] = None
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber")
    address: Optional[str] = None
    ratings_reviews: Optional[RatingsReviews] = Field(default=None, alias="ratingsReviews")


class SourcePrice(_SourceModel):
    display: Optional[str] = None
    search_range: Any = Field(default=None, alias="searchRange")
    information: Optional[str] = None


class PriceDetails(_SourceModel):
    from_: Any = Field(default=None, alias="from")
    to: Any = None


class SourceListing(_SourceModel):
    """One raw listing object from the source dataset."""

    id: str
    property_type: str = Field(alias="propertyType")
    property_link: Optional[str] = Field(default=None, alias="propertyLink")
    description: Optional[str] = None
    scraped_at: Optional[str] = None
    address: Optional[SourceAddress] = Field(default_factory=SourceAddress)
    general_features: Optional[GeneralFeatures] = Field(default=None, alias="generalFeatures")
    property_sizes: Optional[PropertySizes] = Field(default=None, alias="propertySizes")
    images: Optional[List[Optional[str]]] = Field(default_factory=list)
    valuation_data: Optional[ValuationData] = Field(default=None, alias="valuationData")
    listing_company: Optional[ListingCompany] = Field(default=None, alias="listingCompany")
    price: Optional[SourcePrice] = None
    price_details: Optional[PriceDetails] = Field(default=None, alias="priceDetails")


# --- Destination rows --------------------------------------------------------


class PropertyRow(BaseModel):
    id: str
    property_type: str
    property_link: str = ""
    description: Optional[str] = None
    scraped_at: Optional[datetime] = None


class AddressRow(BaseModel):
    property_id: str
    short_address: Optional[str] = None
    full_address: Optional[str] = None
    suburb: Optional[str] = None
    state: Optional[str] = None
    postcode: Optional[str] = None


class FeaturesRow(BaseModel):
    property_id: str
    bedrooms: Optional[int] = None
    bathrooms: Optional[int] = None
    parking_spaces: Optional[int] = None
    land_size: Optional[float] = None
    land_unit: Optional[str] = None
    building_size: Optional[float] = None
    building_unit: Optional[str] = None


class ImageRow(BaseModel):
    property_id: str
    url: str
    order: int


class PriceRow(BaseModel):
    property_id: str
    display_price: Optional[str] = None
    price_from: Optional[float] = None
    price_to: Optional[float] = None
    search_range: Optional[str] = None
    price_information: Optional[str] = None


class ValuationRow(BaseModel):
    property_id: str
    source: str
    status: str = "found"
    confidence: Optional[str] = None
    estimated_value: Optional[float] = None
    estimated_value_display: Optional[str] = None
    price_per_meter: Optional[float] = None
    price_range: Optional[str] = None
    rental_value: Optional[float] = None
    rental_value_display: Optional[str] = None
    rental_period: Optional[str] = None
    rental_confidence: Optional[str] = None


class CompanyRow(BaseModel):
    id: str
    name: str
    phone_number: Optional[str] = None
    address: Optional[str] = None
    avg_rating: Optional[float] = None
    total_reviews: Optional[int] = None


class ListingAggregate(BaseModel):
    """All destination rows derived from a single source listing."""

    record: PropertyRow
    address: AddressRow
    features: FeaturesRow
    images: List[ImageRow] = Field(default_factory=list)
    price: Optional[PriceRow] = None
    valuation: Optional[ValuationRow] = None
    company: Optional[CompanyRow] = None


# --- Import jobs ---------------------------------------------------------------


class ImportStatus(str, Enum):
    """Import job status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ImportStatus.COMPLETED, ImportStatus.FAILED)


class ImportJob(BaseModel):
    id: int
    batch_size: int
    current_offset: int = 0
    total_items: int
    status: ImportStatus = ImportStatus.IN_PROGRESS
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    error: Optional[List[Dict[str, Any]]] = None

    @property
    def batch_end(self) -> int:
        return min(self.current_offset + self.batch_size, self.total_items)
