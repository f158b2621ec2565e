import pytest

from conftest import make_listing
from etl.importer.errors import RecordValidationError
from etl.importer.mapper import parse_int, parse_number, to_aggregate


@pytest.mark.parametrize(
    "raw, expected",
    [
        (650, 650.0),
        (4.5, 4.5),
        ("650", 650.0),
        ("$1,250,000", 1250000.0),
        ("$1.2m", 1200000.0),
        ("$850k", 850000.0),
        ("$1,200,000 - $1,300,000", 1200000.0),
        ("650m²", 650.0),
        ("500 metres", 500.0),
        ("  42 ", 42.0),
        ("$1.2 million", 1200000.0),
        ("$850 thousand", 850000.0),
        ("$2.5 mil", 2500000.0),
        ("$1.1b", 1100000000.0),
        ("$1.2m - $1.3m", 1200000.0),
        ("1 250 000", 1250000.0),
        ("$12k/m²", 12000.0),
        ("650m2", 650.0),
        ("850 kilometres", 850.0),
    ],
)
def test_parse_number_reads_formatted_values(raw, expected):
    assert parse_number(raw) == pytest.approx(expected)


@pytest.mark.parametrize("raw", [None, "", "Contact agent", True, {"value": 1}, []])
def test_parse_number_returns_none_for_unreadable_values(raw):
    assert parse_number(raw) is None


@pytest.mark.parametrize("raw", ["650 m", "650m", "1.2 m", "650 m²"])
def test_parse_number_without_multipliers_keeps_the_value(raw):
    expected = 1.2 if raw.startswith("1.2") else 650.0
    assert parse_number(raw, multipliers=False) == pytest.approx(expected)


def test_parse_int_truncates():
    assert parse_int("3.0") == 3
    assert parse_int(None) is None


def test_to_aggregate_maps_every_section(listing):
    aggregate = to_aggregate(listing)

    assert aggregate.record.id == "1001"
    assert aggregate.record.property_type == "House"
    assert aggregate.record.scraped_at.year == 2024
    assert aggregate.address.full_address == "1001 Smith St, Richmond VIC 3121"
    assert aggregate.address.postcode == "3121"
    assert aggregate.features.bedrooms == 3
    assert aggregate.features.parking_spaces == 1
    assert aggregate.features.land_size == 650.0
    assert aggregate.features.land_unit == "m²"
    assert aggregate.price.price_from == 1200000.0
    assert aggregate.price.display_price == "$1,200,000 - $1,300,000"
    assert aggregate.company.id == "AG-1"
    assert aggregate.company.avg_rating == 4.8
    assert aggregate.company.total_reviews == 120
    assert aggregate.valuation is None


def test_image_size_placeholder_is_substituted_in_order(listing):
    aggregate = to_aggregate(listing, image_size="1024x768")

    assert [image.url for image in aggregate.images] == [
        "https://img.example.com/1024x768/a.jpg",
        "https://img.example.com/1024x768/b.jpg",
    ]
    assert [image.order for image in aggregate.images] == [0, 1]


def test_default_image_size():
    aggregate = to_aggregate(make_listing(images=["https://img.example.com/{size}/x.jpg"]))
    assert aggregate.images[0].url == "https://img.example.com/800x600/x.jpg"


def test_missing_optional_sections_are_tolerated():
    raw = {"id": 77, "propertyType": "Unit", "address": None, "images": None}

    aggregate = to_aggregate(raw)

    assert aggregate.record.id == "77"
    assert aggregate.record.property_link == ""
    assert aggregate.address.full_address is None
    assert aggregate.images == []
    assert aggregate.price is None
    assert aggregate.company is None
    assert aggregate.features.bedrooms is None


def test_malformed_scraped_at_does_not_reject_the_listing():
    aggregate = to_aggregate(make_listing(scraped_at="last tuesday"))
    assert aggregate.record.scraped_at is None


def test_valuation_block_is_mapped():
    raw = make_listing(
        valuationData={
            "source": "property.com.au",
            "confidence": "High",
            "estimatedValue": "$1.25m",
            "pricePerMeter": "$1,923/m²",
            "priceRange": "$1.1m - $1.4m",
            "rental": {"value": "$750", "period": "per week", "confidence": "Medium"},
        }
    )

    valuation = to_aggregate(raw).valuation

    assert valuation.estimated_value == 1250000.0
    assert valuation.estimated_value_display == "$1.25m"
    assert valuation.price_per_meter == 1923.0
    assert valuation.rental_value == 750.0
    assert valuation.rental_period == "per week"
    assert valuation.status == "found"


def test_company_without_id_is_ignored():
    aggregate = to_aggregate(make_listing(listingCompany={"name": "No Id Realty"}))
    assert aggregate.company is None


@pytest.mark.parametrize(
    "raw, message",
    [
        ({"propertyType": "House"}, "listing id is missing"),
        ({"id": "  ", "propertyType": "House"}, "listing id is missing"),
        ({"id": "5"}, "propertyType is missing"),
        ("not-a-listing", "listing must be an object"),
    ],
)
def test_missing_mandatory_fields_raise(raw, message):
    with pytest.raises(RecordValidationError, match=message):
        to_aggregate(raw)


def test_validation_error_carries_external_id():
    with pytest.raises(RecordValidationError) as excinfo:
        to_aggregate({"id": "A-9"})
    assert excinfo.value.external_id == "A-9"


def test_sizes_in_metres_are_not_read_as_millions():
    raw = make_listing(
        propertySizes={
            "land": {"displayValue": "650 m", "sizeUnit": {"displayValue": "m²"}},
            "building": {"displayValue": "180m", "sizeUnit": {"displayValue": "m²"}},
        },
        priceDetails={"from": "$1.2 million", "to": "$1.3 million"},
    )

    aggregate = to_aggregate(raw)

    assert aggregate.features.land_size == 650.0
    assert aggregate.features.building_size == 180.0
    assert aggregate.price.price_from == 1200000.0
    assert aggregate.price.price_to == 1300000.0
