"""Shared utilities for extractors."""

from .normalizers import (
    clean_text,
    parse_price,
    parse_integer,
    parse_decimal,
    normalize_property_type,
    extract_postal_code,
    extract_municipality,
    parse_time_on_market,
    detect_amenities,
    url_hash_id,
)
from .extractors import (
    first_of,
    first_text,
    first_attr,
    all_attrs,
    absolute_url,
    extract_listing_id,
)

__all__ = [
    'clean_text',
    'parse_price',
    'parse_integer',
    'parse_decimal',
    'normalize_property_type',
    'extract_postal_code',
    'extract_municipality',
    'parse_time_on_market',
    'detect_amenities',
    'url_hash_id',
    'first_of',
    'first_text',
    'first_attr',
    'all_attrs',
    'absolute_url',
    'extract_listing_id',
]
