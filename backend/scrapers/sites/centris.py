"""
Centris.ca extractor.

Centris uses schema.org microdata, so most fields come from `itemprop`
attributes rather than visible text.

Site structure:
- Search page (thumbnail view): `.property-thumbnail-item` cards with
  `meta[itemprop=sku]` (Centris number) and `meta[itemprop=price]`
- Detail page: `[itemprop=price]`, `.address`, `[itemprop=description]`,
  a characteristics table and a photo viewer
"""

from typing import List, Optional
from bs4 import BeautifulSoup, Tag

from ..base import BaseExtractor, SearchResult, ListingDetail
from ..config import get_site_config
from ..utils.extractors import (
    first_text,
    first_attr,
    all_attrs,
    absolute_url,
    extract_listing_id,
)
from ..utils.normalizers import (
    clean_text,
    parse_price,
    parse_integer,
    normalize_property_type,
    extract_postal_code,
    extract_municipality,
    detect_amenities,
)


MAX_ADDRESS_LENGTH = 500
MAX_PHOTOS = 50

SEARCH_SELECTORS = {
    'card': '.property-thumbnail-item',
    'centris_number': ['[itemprop="sku"]'],
    'price': ['[itemprop="price"]'],
    'price_display': ['.price span', '.price'],
    'detail_link': ['.property-thumbnail-summary-link', '.a-more-detail'],
    'address': ['.address'],
    'category': ['[itemprop="category"]', '.category'],
    'bedrooms': ['.cac'],
    'bathrooms': ['.sdb'],
    'photo_count': ['.photo-btn'],
    'photo': ['[itemprop="image"]'],
}

DETAIL_SELECTORS = {
    'price': ['[itemprop="price"]'],
    'price_display': ['.price span', '.price'],
    'address': ['[itemprop="address"]', '.address', 'h2[itemprop="address"]'],
    'centris_number': ['[itemprop="sku"]', '#ListingDisplayId'],
    'description': ['[itemprop="description"]', '.property-description'],
    'category': ['[itemprop="category"]', '[data-id="PageTitle"]'],
    'bedrooms': ['.cac', '.teaser .cac'],
    'bathrooms': ['.sdb', '.teaser .sdb'],
    'photos': ['#divMainPhoto img', '.photo-viewer img', '[itemprop="image"]'],
    'broker_name': ['.broker-info__broker-title', '[itemprop="name"].broker'],
    'broker_agency': ['.broker-info__agency-name', '.broker-info-office-info'],
}

# Rows of the "carac" characteristics table: label -> detail field
CHARACTERISTICS = {
    'year built': 'year_built',
    'lot area': 'lot_size_sqft',
    'net area': 'living_area_sqft',
    'living area': 'living_area_sqft',
    'building style': 'property_type',
}


def _meta_or_text(node: Tag, selectors: List[str]) -> Optional[str]:
    """Prefer a `content` attribute (schema.org meta tag) over visible text."""
    return first_attr(node, selectors, 'content') or first_text(node, selectors)


class CentrisExtractor(BaseExtractor):
    """
    Extractor for Centris.ca search and detail pages.

    Per-card failures are isolated: a malformed card is logged and skipped
    and never aborts extraction of the rest of the page.
    """

    def __init__(self):
        super().__init__(get_site_config('centris'))

    def extract_card(self, card: Tag) -> Optional[SearchResult]:
        """
        Extract a single thumbnail card.

        Returns:
            SearchResult, or None if the card has no link or no price
        """
        href = first_attr(card, SEARCH_SELECTORS['detail_link'], 'href')
        if not href:
            self.logger.warning("Card skipped: no detail link found")
            return None
        detail_url = absolute_url(href, self.config.base_url)

        price = parse_price(first_attr(card, SEARCH_SELECTORS['price'], 'content'))
        if not price:
            price = parse_price(first_text(card, SEARCH_SELECTORS['price_display']))
        if not price:
            self.logger.warning("Card skipped: no price found")
            return None

        # Centris number from the sku meta tag, then the common fallback chain
        natural_id = first_attr(card, SEARCH_SELECTORS['centris_number'], 'content')
        if not natural_id:
            natural_id = extract_listing_id(card, detail_url, href=href)

        address = first_text(card, SEARCH_SELECTORS['address']) or 'Unknown'

        return SearchResult(
            natural_id=natural_id.strip()[:50],
            detail_url=detail_url,
            address=address[:MAX_ADDRESS_LENGTH],
            price=price,
            category=first_text(card, SEARCH_SELECTORS['category']),
            bedrooms=parse_integer(first_text(card, SEARCH_SELECTORS['bedrooms'])),
            bathrooms=parse_integer(first_text(card, SEARCH_SELECTORS['bathrooms'])),
            photo_count=parse_integer(first_text(card, SEARCH_SELECTORS['photo_count'])),
            photo_url=first_attr(card, SEARCH_SELECTORS['photo'], 'content') or first_attr(card, SEARCH_SELECTORS['photo'], 'src'),
        )

    def extract_search_results(self, soup: BeautifulSoup) -> List[SearchResult]:
        cards = soup.select(SEARCH_SELECTORS['card'])
        self.logger.debug(f"Found {len(cards)} listing cards")
        if not cards:
            self.log_empty_page(soup)
            return []

        results = []
        failures = 0
        for idx, card in enumerate(cards, 1):
            try:
                result = self.extract_card(card)
            except (AttributeError, TypeError, ValueError) as e:
                self.logger.warning(f"Card {idx}: parse error: {e}")
                result = None
            if result is None:
                failures += 1
                continue
            results.append(result)

        self.logger.info(f"Parse complete: {len(results)} success, {failures} failed")
        return results

    def _characteristics(self, soup: BeautifulSoup) -> dict:
        """Read label/value pairs from the characteristics blocks."""
        values = {}
        for row in soup.select('.carac-container'):
            label = clean_text(first_text(row, ['.carac-title']) or '').lower()
            value = first_text(row, ['.carac-value'])
            field = next((f for key, f in CHARACTERISTICS.items() if key in label), None)
            if field and value and field not in values:
                values[field] = value
        return values

    def extract_detail(self, soup: BeautifulSoup) -> ListingDetail:
        detail = ListingDetail()

        detail.price = parse_price(_meta_or_text(soup, DETAIL_SELECTORS['price']))
        if not detail.price:
            detail.price = parse_price(first_text(soup, DETAIL_SELECTORS['price_display']))

        address = first_text(soup, DETAIL_SELECTORS['address'])
        if address:
            detail.address = address[:MAX_ADDRESS_LENGTH]
            detail.postal_code = extract_postal_code(address)
            detail.municipality = extract_municipality(address)

        detail.natural_id = _meta_or_text(soup, DETAIL_SELECTORS['centris_number'])
        detail.description_text = first_text(soup, DETAIL_SELECTORS['description'])
        detail.bedrooms = parse_integer(first_text(soup, DETAIL_SELECTORS['bedrooms']))
        detail.bathrooms = parse_integer(first_text(soup, DETAIL_SELECTORS['bathrooms']))
        detail.photo_urls = (
            all_attrs(soup, DETAIL_SELECTORS['photos'], 'src', limit=MAX_PHOTOS)
            or all_attrs(soup, DETAIL_SELECTORS['photos'], 'content', limit=MAX_PHOTOS)
        )
        detail.broker_name = first_text(soup, DETAIL_SELECTORS['broker_name'])
        detail.broker_agency = first_text(soup, DETAIL_SELECTORS['broker_agency'])

        characteristics = self._characteristics(soup)
        detail.year_built = parse_integer(characteristics.get('year_built'))
        detail.lot_size_sqft = parse_integer(characteristics.get('lot_size_sqft'))
        detail.living_area_sqft = parse_integer(characteristics.get('living_area_sqft'))
        detail.property_type = (
            normalize_property_type(first_text(soup, DETAIL_SELECTORS['category']))
            or normalize_property_type(characteristics.get('property_type'))
        )

        body = soup.body or soup
        for key, value in detect_amenities(clean_text(body.get_text(' '))).items():
            setattr(detail, key, value)

        return detail
