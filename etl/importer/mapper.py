"""Helpers that convert raw listing objects into destination rows."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from etl.importer.errors import RecordValidationError
from etl.models import (
    AddressRow,
    CompanyRow,
    DisplayAddress,
    FeaturesRow,
    ImageRow,
    ListingAggregate,
    PriceRow,
    PropertyRow,
    SourceAddress,
    SourceListing,
    ValuationRow,
)

DEFAULT_IMAGE_SIZE = "800x600"
SIZE_PLACEHOLDER = "{size}"

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
# "m²", "m2" and "metres" are units, not a million
_MULTIPLIER_RE = re.compile(r"\s*(thousand|million|billion|mil|k|m|b)(?![\w²³])")
_MULTIPLIERS = {
    "k": 1_000,
    "thousand": 1_000,
    "m": 1_000_000,
    "mil": 1_000_000,
    "million": 1_000_000,
    "b": 1_000_000_000,
    "billion": 1_000_000_000,
}
_CURRENCY_CHARS = re.compile(r"[,$€£]")
_DIGIT_GROUP_GAP = re.compile(r"(?<=\d)\s(?=\d{3}(?!\d))")


def parse_number(value: Any, multipliers: bool = True) -> Optional[float]:
    """Parse a formatted numeric field ("$1,250,000", "$1.2 million", "650m²").

    With `multipliers` off a trailing k/m/b word is ignored; sizes use that,
    since their unit lives in a separate field. Returns None instead of
    raising when no number can be read.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        return None

    text = _DIGIT_GROUP_GAP.sub("", _CURRENCY_CHARS.sub("", value)).strip().lower()
    match = _NUMBER_RE.search(text)
    if match is None:
        return None
    number = float(match.group(0))

    if multipliers:
        suffix = _MULTIPLIER_RE.match(text, match.end())
        if suffix is not None:
            number *= _MULTIPLIERS[suffix.group(1)]
    return number


def parse_int(value: Any) -> Optional[int]:
    number = parse_number(value)
    return int(number) if number is not None else None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def image_url(template: str, image_size: str = DEFAULT_IMAGE_SIZE) -> str:
    return template.replace(SIZE_PLACEHOLDER, image_size)


def parse_listing(raw: Dict[str, Any]) -> SourceListing:
    """Validate a raw listing, raising RecordValidationError on missing keys."""
    if not isinstance(raw, dict):
        raise RecordValidationError(f"listing must be an object, got {type(raw).__name__}")

    external_id = _text(raw.get("id"))
    if external_id is None:
        raise RecordValidationError("listing id is missing in payload")
    if _text(raw.get("propertyType")) is None:
        raise RecordValidationError("propertyType is missing in payload", external_id)

    try:
        return SourceListing.model_validate(raw)
    except ValidationError as exc:
        raise RecordValidationError(
            f"listing {external_id} failed schema validation: {exc.error_count()} error(s)",
            external_id,
        ) from exc


def _to_features(listing: SourceListing) -> FeaturesRow:
    general = listing.general_features
    sizes = listing.property_sizes
    land = sizes.land if sizes else None
    building = sizes.building if sizes else None
    return FeaturesRow(
        property_id=listing.id,
        bedrooms=parse_int(general.bedrooms.value) if general and general.bedrooms else None,
        bathrooms=parse_int(general.bathrooms.value) if general and general.bathrooms else None,
        parking_spaces=(
            parse_int(general.parking_spaces.value) if general and general.parking_spaces else None
        ),
        land_size=parse_number(land.display_value, multipliers=False) if land else None,
        land_unit=land.size_unit.display_value if land and land.size_unit else None,
        building_size=parse_number(building.display_value, multipliers=False) if building else None,
        building_unit=building.size_unit.display_value if building and building.size_unit else None,
    )


def _to_images(listing: SourceListing, image_size: str) -> List[ImageRow]:
    return [
        ImageRow(property_id=listing.id, url=image_url(template, image_size), order=index)
        for index, template in enumerate(t for t in listing.images or [] if t)
    ]


def _to_price(listing: SourceListing) -> Optional[PriceRow]:
    if listing.price is None and listing.price_details is None:
        return None
    price = listing.price
    details = listing.price_details
    return PriceRow(
        property_id=listing.id,
        display_price=_text(price.display) if price else None,
        price_from=parse_number(details.from_) if details else None,
        price_to=parse_number(details.to) if details else None,
        search_range=_text(price.search_range) if price else None,
        price_information=_text(price.information) if price else None,
    )


def _to_valuation(listing: SourceListing) -> Optional[ValuationRow]:
    data = listing.valuation_data
    if data is None:
        return None
    rental = data.rental
    return ValuationRow(
        property_id=listing.id,
        source=data.source or "property.com.au",
        status=data.status or "found",
        confidence=_text(data.confidence),
        estimated_value=parse_number(data.estimated_value),
        estimated_value_display=_text(data.estimated_value),
        price_per_meter=parse_number(data.price_per_meter),
        price_range=_text(data.price_range),
        rental_value=parse_number(rental.value) if rental else None,
        rental_value_display=_text(rental.value) if rental else None,
        rental_period=_text(rental.period) if rental else None,
        rental_confidence=_text(rental.confidence) if rental else None,
    )


def _to_company(listing: SourceListing) -> Optional[CompanyRow]:
    company = listing.listing_company
    if company is None or _text(company.id) is None:
        return None
    reviews = company.ratings_reviews
    return CompanyRow(
        id=_text(company.id),
        name=_text(company.name) or "",
        phone_number=_text(company.phone_number),
        address=_text(company.address),
        avg_rating=parse_number(reviews.avg_rating) if reviews else None,
        total_reviews=parse_int(reviews.total_reviews) if reviews else None,
    )


def to_aggregate(raw: Dict[str, Any], image_size: str = DEFAULT_IMAGE_SIZE) -> ListingAggregate:
    """Map one raw listing onto its destination entity set."""
    listing = parse_listing(raw)
    address = listing.address or SourceAddress()
    display = address.display or DisplayAddress()
    return ListingAggregate(
        record=PropertyRow(
            id=listing.id,
            property_type=listing.property_type,
            property_link=listing.property_link or "",
            description=listing.description,
            scraped_at=_parse_timestamp(listing.scraped_at),
        ),
        address=AddressRow(
            property_id=listing.id,
            short_address=_text(display.short_address),
            full_address=_text(display.full_address),
            suburb=_text(address.suburb),
            state=_text(address.state),
            postcode=_text(address.postcode),
        ),
        features=_to_features(listing),
        images=_to_images(listing, image_size),
        price=_to_price(listing),
        valuation=_to_valuation(listing),
        company=_to_company(listing),
    )
