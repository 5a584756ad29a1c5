"""
Data normalization utilities for scrapers.

These functions standardize scraped text into consistent values. They
never raise on malformed input: anything unparseable comes back as None.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple, Dict


# Ordered so that compound types match before their substrings
# (semi_detached before detached, multi_family before family)
PROPERTY_TYPE_KEYS = [
    'semi_detached',
    'detached',
    'townhouse',
    'condo',
    'duplex',
    'triplex',
    'multi_family',
    'land',
    'farm',
    'other',
]

PROPERTY_TYPE_SYNONYMS = {
    'semi-detached': 'semi_detached',
    'single_family': 'detached',
    'bungalow': 'detached',
    'house': 'detached',
    'row_/_townhouse': 'townhouse',
    'townhome': 'townhouse',
    'condominium': 'condo',
    'apartment': 'condo',
    'quadruplex': 'multi_family',
    'quintuplex': 'multi_family',
    'multiplex': 'multi_family',
    'lot': 'land',
    'vacant_land': 'land',
    'hobby_farm': 'farm',
}

# Any whitespace used as a thousands separator (regular, no-break, narrow no-break)
_GROUP_SPACE = ' \u00a0\u202f\u2009'
_NUMBER_TOKEN = re.compile(rf"\d[\d,.{_GROUP_SPACE}]*")
_INTEGER_TOKEN = re.compile(rf"\d{{1,3}}(?:[,{_GROUP_SPACE}]\d{{3}})+(?!\d)|\d+")
_DECIMAL_TOKEN = re.compile(r"-?\d+(?:[.,]\d+)?")

POSTAL_CODE_PATTERN = re.compile(r"\b[A-Z]\d[A-Z]\s?\d[A-Z]\d\b", re.IGNORECASE)
MUNICIPALITY_PATTERN = re.compile(r",?\s*([A-Za-z\-À-ſ]+(?:\s[A-Za-z\-À-ſ]+)?)\s*,?\s*(?:QC|Quebec|Québec)\b")
TIME_ON_MARKET_PATTERN = re.compile(r"Time on REALTOR\.ca[:\s]+(\d+)\s+(hour|day|week|month)s?", re.IGNORECASE)


def clean_text(text: Optional[str]) -> str:
    """Collapse runs of whitespace and strip."""
    if not text:
        return ''
    return ' '.join(text.split())


def parse_price(text: Optional[str]) -> Optional[int]:
    """
    Parse a price, tolerating currency symbols and locale grouping.

    Examples:
        $1,200,000 -> 1200000
        1 200 000 $ -> 1200000
        549 900,00 $ -> 549900
        Price on request -> None
    """
    if not text:
        return None

    match = _NUMBER_TOKEN.search(text)
    if not match:
        return None

    token = match.group(0).strip(_GROUP_SPACE + ',.')
    # Drop a trailing decimal part (".0", ",00"); 3-digit tails are groups
    token = re.sub(r"[.,]\d{1,2}$", '', token)
    digits = re.sub(r"\D", '', token)
    if not digits:
        return None
    return int(digits)


def parse_integer(text: Optional[str]) -> Optional[int]:
    """
    Parse the first integer in text, honouring thousands separators.

    Examples:
        Built in 1985 -> 1985
        2,500 sqft -> 2500
        3 + 1 -> 3
    """
    if not text:
        return None
    match = _INTEGER_TOKEN.search(text)
    if not match:
        return None
    return int(re.sub(r"\D", '', match.group(0)))


def parse_decimal(text: Optional[str]) -> Optional[float]:
    """Parse the first decimal number in text (comma or dot decimal mark)."""
    if not text:
        return None
    match = _DECIMAL_TOKEN.search(text)
    if not match:
        return None
    try:
        return float(match.group(0).replace(',', '.'))
    except ValueError:
        return None


def normalize_property_type(text: Optional[str]) -> Optional[str]:
    """
    Normalize free-text property type to a known key.

    Examples:
        Semi-detached -> semi_detached
        Condo/Apartment -> condo
        Single Family -> detached
    """
    if not text:
        return None

    lower = text.lower().strip()
    compact = re.sub(r"\s+", '_', lower)
    for key in PROPERTY_TYPE_KEYS:
        if key in compact or key in compact.replace('-', '_'):
            return key
    for synonym, key in PROPERTY_TYPE_SYNONYMS.items():
        if synonym in compact or synonym in lower:
            return key
    return None


def extract_postal_code(text: Optional[str]) -> Optional[str]:
    """Extract a Canadian postal code (e.g. H2X 1Y4)."""
    if not text:
        return None
    match = POSTAL_CODE_PATTERN.search(text)
    return match.group(0).upper() if match else None


def extract_municipality(text: Optional[str]) -> Optional[str]:
    """Extract the municipality that precedes 'QC' / 'Quebec' in an address."""
    if not text:
        return None
    match = MUNICIPALITY_PATTERN.search(text)
    return match.group(1).strip() if match else None


def parse_time_on_market(text: Optional[str], now: Optional[datetime] = None) -> Tuple[Optional[int], Optional[datetime]]:
    """
    Convert "Time on REALTOR.ca: N unit" into days on market and list date.

    Months are approximated as 30 days; hours round down to whole days.

    Returns:
        Tuple of (days_on_market, original_list_date), both None if absent
    """
    if not text:
        return None, None
    match = TIME_ON_MARKET_PATTERN.search(text)
    if not match:
        return None, None

    value = int(match.group(1))
    unit = match.group(2).lower()
    days = {
        'hour': value // 24,
        'day': value,
        'week': value * 7,
        'month': value * 30,
    }[unit]

    now = now or datetime.now(timezone.utc)
    return days, now - timedelta(days=days)


def detect_amenities(body_text: Optional[str]) -> Dict[str, Optional[bool]]:
    """
    Best-effort amenity flags from free page text.

    A keyword that is absent gives False for garage/basement/pool/fireplace;
    air conditioning is only ever reported as True or unknown.
    """
    if not body_text:
        return {'has_garage': None, 'has_basement': None, 'has_pool': None,
                'has_ac': None, 'has_fireplace': None}

    lower = body_text.lower()
    return {
        'has_garage': 'garage' in lower,
        'has_basement': 'basement' in lower,
        'has_pool': 'pool' in lower,
        'has_ac': True if ('air conditioning' in lower or 'central air' in lower) else None,
        'has_fireplace': 'fireplace' in lower,
    }


def url_hash_id(url: str) -> str:
    """
    Deterministic identifier of last resort derived from a URL.

    Uses the classic 31-multiplier string hash folded to a signed 32-bit
    integer, so the same URL always yields the same id across runs.
    """
    value = 0
    for char in url:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return f"URL{abs(value)}"
