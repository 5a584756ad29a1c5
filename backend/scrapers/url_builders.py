"""
Search URL builders.

Turn a saved search's criteria (or its verbatim custom URL) into a
crawlable search URL for each source family. Builders are deterministic:
the same criteria always produce the same URL.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode
import logging
import re

from .base import UrlBuildError

logger = logging.getLogger(__name__)


REALTOR_BASE = 'https://www.realtor.ca/qc/greater-montreal/real-estate'
REALTOR_PAGE_PARAM = 'CurrentPage'

CENTRIS_BASE = 'https://www.centris.ca/en'
CENTRIS_PAGE_PARAM = 'pageNumber'
CENTRIS_DEFAULT_REGION = 'montreal-region'

REALTOR_PROPERTY_TYPES = {
    'detached': '1',
    'semi_detached': '2',
    'townhouse': '3',
    'condo': '9',
    'duplex': '4',
    'triplex': '5',
    'multi_family': '6',
    'land': '0',
    'farm': '8',
    'other': '1',
}

CENTRIS_CATEGORIES = {
    'detached': 'houses',
    'semi_detached': 'houses',
    'townhouse': 'houses',
    'condo': 'condos',
    'duplex': 'duplexes',
    'triplex': 'triplexes',
    'multi_family': 'multiplexes',
    'land': 'lots',
    'farm': 'farms',
}

# Reverse lookup used when reading criteria back out of a Centris URL
CENTRIS_CATEGORY_TYPES = {
    'houses': ['detached', 'semi_detached', 'townhouse'],
    'condos': ['condo'],
    'duplexes': ['duplex'],
    'triplexes': ['triplex'],
    'multiplexes': ['multi_family'],
    'lots': ['land'],
    'farms': ['farm'],
}

# (substring, region slug); checked in order
CENTRIS_REGIONS = [
    ('montreal', 'montreal-region'),
    ('montréal', 'montreal-region'),
    ('quebec', 'quebec-city-area'),
    ('québec', 'quebec-city-area'),
    ('laval', 'laval'),
    ('longueuil', 'longueuil'),
]


def _snake_case(key: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', key).lower()


@dataclass
class SearchCriteria:
    """Structured filters of a saved search."""
    regions: List[str] = field(default_factory=list)
    municipalities: List[str] = field(default_factory=list)
    price_min: Optional[int] = None
    price_max: Optional[int] = None
    bedrooms_min: Optional[int] = None
    bedrooms_max: Optional[int] = None
    bathrooms_min: Optional[int] = None
    property_types: List[str] = field(default_factory=list)
    year_built_min: Optional[int] = None
    year_built_max: Optional[int] = None
    lot_size_min_sqft: Optional[int] = None
    living_area_min_sqft: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SearchCriteria':
        """
        Build criteria from stored JSON, accepting camelCase or snake_case keys.

        Unknown keys are ignored.
        """
        if not data:
            return cls()
        known = set(cls.__dataclass_fields__)
        aliases = {'beds_min': 'bedrooms_min', 'baths_min': 'bathrooms_min', 'property_type': 'property_types'}
        kwargs = {}
        for key, value in data.items():
            name = _snake_case(key)
            name = aliases.get(name, name)
            if name in known and value is not None:
                kwargs[name] = value
        if isinstance(kwargs.get('property_types'), str):
            kwargs['property_types'] = [kwargs['property_types']]
        return cls(**kwargs)


def with_page(url: str, param: str, page: int) -> str:
    """
    Set the pagination parameter on a URL, replacing any existing value.

    Args:
        url: Search URL (may already carry a page parameter)
        param: Name of the page parameter for this site
        page: 1-based page number

    Returns:
        URL with exactly one page parameter
    """
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != param]
    query.append((param, str(page)))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


# ============================================================
# REALTOR.CA
# ============================================================

def build_realtor_search_url(criteria: SearchCriteria) -> str:
    """Build a Realtor.ca list-view search URL from criteria."""
    params = [('TransactionTypeId', '2')]

    if criteria.price_min:
        params.append(('PriceMin', str(criteria.price_min)))
    if criteria.price_max:
        params.append(('PriceMax', str(criteria.price_max)))

    if criteria.bedrooms_max:
        params.append(('BedRange', f"{criteria.bedrooms_min or 0}-{criteria.bedrooms_max}"))
    elif criteria.bedrooms_min:
        params.append(('BedRange', f"{criteria.bedrooms_min}-0"))

    if criteria.bathrooms_min:
        params.append(('BathRange', f"{criteria.bathrooms_min}-0"))

    type_ids = []
    for property_type in criteria.property_types:
        type_id = REALTOR_PROPERTY_TYPES.get(property_type)
        if type_id is not None and type_id not in type_ids:
            type_ids.append(type_id)
    if type_ids:
        params.append(('PropertyTypeGroupID', ','.join(type_ids)))

    if criteria.year_built_min:
        params.append(('BuildingAgeMin', str(criteria.year_built_min)))
    if criteria.year_built_max:
        params.append(('BuildingAgeMax', str(criteria.year_built_max)))

    params.append(('Sort', '1-D'))
    params.append(('RecordsPerPage', '50'))

    return f"{REALTOR_BASE}?{urlencode(params)}"


def _on_domain(url: str, domain: str) -> bool:
    """True when the URL's host is the domain itself or one of its subdomains."""
    host = (urlsplit(url).hostname or '').lower()
    return host == domain or host.endswith(f".{domain}")


def validate_realtor_url(custom_url: str) -> str:
    """Accept a custom Realtor.ca URL verbatim, rejecting other domains."""
    custom_url = (custom_url or '').strip()
    if urlsplit(custom_url).scheme != 'https' or not _on_domain(custom_url, 'realtor.ca'):
        raise UrlBuildError('Custom URL must be from realtor.ca')
    return custom_url


# ============================================================
# CENTRIS.CA
# ============================================================

def centris_region_slug(place: Optional[str]) -> str:
    """Map a municipality or region name onto a Centris region slug."""
    if not place:
        return CENTRIS_DEFAULT_REGION
    lower = place.lower()
    for needle, slug in CENTRIS_REGIONS:
        if needle in lower:
            return slug
    return CENTRIS_DEFAULT_REGION


def build_centris_search_url(criteria: SearchCriteria) -> str:
    """Build a Centris.ca thumbnail-view search URL from criteria."""
    category = 'properties'
    if criteria.property_types:
        category = CENTRIS_CATEGORIES.get(criteria.property_types[0], 'properties')

    place = (criteria.municipalities or criteria.regions or [None])[0]
    region = centris_region_slug(place)

    params = [('view', 'Thumbnail')]
    if criteria.price_min:
        params.append(('priceMin', str(criteria.price_min)))
    if criteria.price_max:
        params.append(('priceMax', str(criteria.price_max)))
    if criteria.bedrooms_min:
        params.append(('rooms', f"{criteria.bedrooms_min}+"))
    if criteria.bathrooms_min:
        params.append(('bathrooms', f"{criteria.bathrooms_min}+"))
    if criteria.year_built_min:
        params.append(('yearBuiltMin', str(criteria.year_built_min)))
    if criteria.year_built_max:
        params.append(('yearBuiltMax', str(criteria.year_built_max)))
    if criteria.lot_size_min_sqft:
        params.append(('lotSizeMin', str(criteria.lot_size_min_sqft)))
    if criteria.living_area_min_sqft:
        params.append(('livingAreaMin', str(criteria.living_area_min_sqft)))
    params.append(('sort', '-datePost'))

    return f"{CENTRIS_BASE}/{category}~for-sale~{region}?{urlencode(params)}"


def validate_centris_url(custom_url: str) -> str:
    """Accept a custom Centris.ca URL, forcing thumbnail view."""
    custom_url = (custom_url or '').strip()
    if not _on_domain(custom_url, 'centris.ca'):
        raise UrlBuildError('Invalid Centris URL')
    if 'view=' not in custom_url:
        separator = '&' if '?' in custom_url else '?'
        custom_url = f"{custom_url}{separator}view=Thumbnail"
    return custom_url


def parse_centris_url(url: str) -> Dict[str, Any]:
    """
    Recover criteria from a Centris search URL for display/editing.

    Returns:
        Dict of snake_case criteria keys (empty if the URL is unreadable)
    """
    criteria: Dict[str, Any] = {}
    try:
        parts = urlsplit(url)
    except ValueError:
        return criteria

    params = dict(parse_qsl(parts.query))
    for key, name in (('priceMin', 'price_min'), ('priceMax', 'price_max'),
                      ('yearBuiltMin', 'year_built_min'), ('yearBuiltMax', 'year_built_max'),
                      ('lotSizeMin', 'lot_size_min_sqft'), ('livingAreaMin', 'living_area_min_sqft')):
        if params.get(key, '').isdigit():
            criteria[name] = int(params[key])

    for key, name in (('rooms', 'bedrooms_min'), ('bathrooms', 'bathrooms_min')):
        match = re.match(r'^(\d+)', params.get(key, ''))
        if match:
            criteria[name] = int(match.group(1))

    path_match = re.search(r'/([a-z-]+)~for-sale(?:~([a-z-]+))?', parts.path)
    if path_match:
        types = CENTRIS_CATEGORY_TYPES.get(path_match.group(1))
        if types:
            criteria['property_types'] = list(types)
        if path_match.group(2):
            criteria['regions'] = [path_match.group(2)]

    return criteria


# ============================================================
# DISPATCH
# ============================================================

SEARCH_URL_BUILDERS = {
    'realtor': build_realtor_search_url,
    'centris': build_centris_search_url,
}

CUSTOM_URL_VALIDATORS = {
    'realtor': validate_realtor_url,
    'centris': validate_centris_url,
}


def build_search_url(source: str, criteria: Optional[Dict[str, Any]] = None, custom_url: Optional[str] = None) -> str:
    """
    Build the crawlable search URL for a saved search.

    A custom URL, when present, overrides the criteria.

    Raises:
        UrlBuildError: Unknown source family or custom URL on the wrong domain
    """
    if source not in SEARCH_URL_BUILDERS:
        raise UrlBuildError(f"Unknown source: {source}")
    if custom_url:
        return CUSTOM_URL_VALIDATORS[source](custom_url)
    return SEARCH_URL_BUILDERS[source](SearchCriteria.from_dict(criteria))
