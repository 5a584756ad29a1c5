"""
Realtor.ca extractor.

Realtor.ca markup changes often and is partly obfuscated, so every field
is located through an ordered list of candidate selectors, most specific
first.

Site structure:
- Search page (list view): `div.listingCard` cards with price, address,
  and a link to the listing page
- Detail page: price/address header, property summary, description,
  photo carousel and the listing agent block
"""

import re
from typing import List, Optional
from bs4 import BeautifulSoup, Tag

from ..base import BaseExtractor, SearchResult, ListingDetail
from ..config import get_site_config
from ..utils.extractors import (
    first_text,
    first_attr,
    first_of,
    all_attrs,
    absolute_url,
    extract_listing_id,
)
from ..utils.normalizers import (
    clean_text,
    parse_price,
    parse_integer,
    parse_decimal,
    normalize_property_type,
    extract_postal_code,
    extract_municipality,
    parse_time_on_market,
    detect_amenities,
)


MAX_ADDRESS_LENGTH = 500
MAX_PHOTOS = 50

SEARCH_SELECTORS = {
    'card': [
        'div.listingCard',
        'li.cardCon',
        '[data-testid*="listing-card"]',
        '[data-testid*="listing"]',
        '[data-listing-id]',
        'article[class*="listing"]',
        'article[class*="card"]',
        '[class*="ListingCard"]',
        '[class*="PropertyCard"]',
        'article',
        '[role="article"]',
    ],
    'price': [
        '[data-testid*="price"]',
        '[data-price]',
        '[class*="Price"]',
        '[class*="price"]',
        '[itemprop="price"]',
    ],
    'address': [
        '[data-testid*="address"]',
        '[data-testid*="location"]',
        '[itemprop="address"]',
        '[class*="Address"]',
        '[class*="address"]',
        '[class*="Location"]',
        '[class*="location"]',
    ],
    'beds': [
        '[data-testid*="bed"]',
        '[class*="Bed"]',
        '[class*="bed"]',
    ],
    'baths': [
        '[data-testid*="bath"]',
        '[class*="Bath"]',
        '[class*="bath"]',
    ],
    'detail_link': [
        'a[href*="/real-estate/"]',
        'a[href*="/property/"]',
        'a[href*="/listing/"]',
        'a[data-testid*="listing-link"]',
        'a[class*="listing"]',
    ],
    'mls_number': [
        '[data-mls-number]',
        '[data-listing-id]',
        '[data-testid*="mls"]',
        '[class*="MLS"]',
        '[class*="mls"]',
    ],
    'photo': [
        'img[data-testid*="photo"]',
        'img[data-testid*="image"]',
        'img[class*="Photo"]',
        'img[class*="Image"]',
        'img[class*="photo"]',
        'img[class*="image"]',
    ],
}

DETAIL_SELECTORS = {
    'price': [
        '[data-testid="price"]',
        '[data-testid*="price"]',
        '[itemprop="price"]',
        '[class*="Price"]',
        '[class*="price-amount"]',
        '[class*="price"]',
    ],
    'address': [
        '[data-testid="address"]',
        '[data-testid*="address"]',
        '[itemprop="address"]',
        'address',
        '[class*="Address"]',
        '[class*="property-address"]',
        '[class*="address"]',
    ],
    'mls_number': [
        '[data-mls-number]',
        '[data-testid*="mls"]',
        '[class*="MLS"]',
        '[class*="mls-number"]',
        '[class*="mls"]',
    ],
    'year_built': [
        '[data-testid*="year"]',
        '[class*="YearBuilt"]',
        '[class*="year-built"]',
        '[class*="year"]',
    ],
    'lot_size': [
        '[data-testid*="lot"]',
        '[class*="LotSize"]',
        '[class*="lot-size"]',
        '[class*="lot"]',
    ],
    'living_area': [
        '[data-testid*="living"]',
        '[data-testid*="sqft"]',
        '[class*="LivingArea"]',
        '[class*="living-area"]',
        '[class*="square-feet"]',
    ],
    'bedrooms': [
        '[data-testid*="bed"]',
        '[class*="Bedroom"]',
        '[class*="bedroom"]',
        '[class*="bed"]',
    ],
    'bathrooms': [
        '[data-testid*="bath"]',
        '[class*="Bathroom"]',
        '[class*="bathroom"]',
        '[class*="bath"]',
    ],
    'stories': [
        '[data-testid*="stor"]',
        '[class*="Stories"]',
        '[class*="stories"]',
        '[class*="storey"]',
    ],
    'property_type': [
        '[data-testid*="type"]',
        '[class*="PropertyType"]',
        '[class*="property-type"]',
        '[class*="type"]',
    ],
    'description': [
        '[data-testid="description"]',
        '[data-testid*="description"]',
        '[itemprop="description"]',
        '[class*="Description"]',
        '[class*="description"]',
        '.description',
    ],
    'photos': [
        '[data-testid*="gallery"] img',
        '[data-testid*="photo"] img',
        '[class*="Gallery"] img',
        '[class*="Carousel"] img',
        '[class*="photo-gallery"] img',
        '[class*="carousel"] img',
        'img[src*="photo"]',
        'img[src*="image"]',
    ],
    'broker_name': [
        '[data-testid*="agent"]',
        '[data-testid*="broker"]',
        '[class*="AgentName"]',
        '[class*="agent-name"]',
        '[class*="realtor-name"]',
    ],
    'broker_agency': [
        '[data-testid*="agency"]',
        '[data-testid*="brokerage"]',
        '[class*="Agency"]',
        '[class*="agency-name"]',
        '[class*="brokerage"]',
    ],
}

# Hrefs that look like a listing page when no dedicated link selector matched
LISTING_HREF_HINTS = ('/real-estate/', '/property', '/listing', 'MLS', '/map#')
LONG_NUMBER = re.compile(r"\d{6,}")


def looks_like_listing_href(href: Optional[str]) -> bool:
    """Check whether an href plausibly points at a listing detail page."""
    if not href:
        return False
    return any(hint in href for hint in LISTING_HREF_HINTS) or bool(LONG_NUMBER.search(href))


def find_detail_href(card: Tag) -> Optional[str]:
    """
    Find the detail link of a search card.

    1. Dedicated detail-link selectors
    2. Any anchor in the card whose href looks like a listing
    3. The card's own href (clickable cards)
    """
    def specific_link(node: Tag) -> Optional[str]:
        return first_attr(node, SEARCH_SELECTORS['detail_link'], 'href')

    def any_listing_link(node: Tag) -> Optional[str]:
        for anchor in node.select('a[href]'):
            if looks_like_listing_href(anchor.get('href')):
                return anchor.get('href')
        return None

    def own_href(node: Tag) -> Optional[str]:
        return node.get('href')

    return first_of(card, [specific_link, any_listing_link, own_href])


class RealtorExtractor(BaseExtractor):
    """
    Extractor for Realtor.ca search and detail pages.

    Per-card failures are isolated: a malformed card is logged and skipped
    and never aborts extraction of the rest of the page.
    """

    def __init__(self):
        super().__init__(get_site_config('realtor'))

    def find_cards(self, soup: BeautifulSoup) -> List[Tag]:
        """Return the cards matched by the most specific card selector that finds any."""
        for selector in SEARCH_SELECTORS['card']:
            cards = soup.select(selector)
            if cards:
                self.logger.debug(f"Found {len(cards)} listing cards using selector: {selector}")
                return cards
        return []

    def extract_card(self, card: Tag) -> Optional[SearchResult]:
        """
        Extract a single search card.

        Returns:
            SearchResult, or None if the card has no link or no price
        """
        href = find_detail_href(card)
        if not href:
            self.logger.warning("Card skipped: no detail link found after trying all strategies")
            return None
        detail_url = absolute_url(href, self.config.base_url)

        price_text = first_text(card, SEARCH_SELECTORS['price'])
        price = parse_price(price_text)
        if not price:
            self.logger.warning(f"Card skipped: no price found (text: {price_text!r})")
            return None

        address = first_text(card, SEARCH_SELECTORS['address']) or 'Unknown'

        return SearchResult(
            natural_id=extract_listing_id(card, detail_url, SEARCH_SELECTORS['mls_number'], href=href),
            detail_url=detail_url,
            address=address[:MAX_ADDRESS_LENGTH],
            price=price,
            bedrooms=parse_integer(first_text(card, SEARCH_SELECTORS['beds'])),
            bathrooms=parse_integer(first_text(card, SEARCH_SELECTORS['baths'])),
            photo_url=first_attr(card, SEARCH_SELECTORS['photo'], 'src'),
        )

    def extract_search_results(self, soup: BeautifulSoup) -> List[SearchResult]:
        cards = self.find_cards(soup)
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
            if len(results) == 1:
                self.logger.debug(f"First listing parsed: MLS {result.natural_id}, ${result.price:,}, {result.address}")

        self.logger.info(f"Parse complete: {len(results)} success, {failures} failed")
        return results

    def extract_detail(self, soup: BeautifulSoup) -> ListingDetail:
        detail = ListingDetail()

        detail.price = parse_price(first_text(soup, DETAIL_SELECTORS['price']))
        address = first_text(soup, DETAIL_SELECTORS['address'])
        if address:
            detail.address = address[:MAX_ADDRESS_LENGTH]
            detail.postal_code = extract_postal_code(address)
            detail.municipality = extract_municipality(address)

        mls_text = first_text(soup, DETAIL_SELECTORS['mls_number'])
        mls_match = LONG_NUMBER.search(mls_text or '')
        detail.natural_id = mls_match.group(0) if mls_match else None

        detail.year_built = parse_integer(first_text(soup, DETAIL_SELECTORS['year_built']))
        detail.lot_size_sqft = parse_integer(first_text(soup, DETAIL_SELECTORS['lot_size']))
        detail.living_area_sqft = parse_integer(first_text(soup, DETAIL_SELECTORS['living_area']))
        detail.bedrooms = parse_integer(first_text(soup, DETAIL_SELECTORS['bedrooms']))
        detail.bathrooms = parse_integer(first_text(soup, DETAIL_SELECTORS['bathrooms']))
        detail.stories = parse_decimal(first_text(soup, DETAIL_SELECTORS['stories']))
        detail.property_type = normalize_property_type(first_text(soup, DETAIL_SELECTORS['property_type']))
        detail.description_text = first_text(soup, DETAIL_SELECTORS['description'])
        detail.photo_urls = all_attrs(soup, DETAIL_SELECTORS['photos'], 'src', limit=MAX_PHOTOS)
        detail.broker_name = first_text(soup, DETAIL_SELECTORS['broker_name'])
        detail.broker_agency = first_text(soup, DETAIL_SELECTORS['broker_agency'])

        body = soup.body or soup
        body_text = clean_text(body.get_text(' '))
        for key, value in detect_amenities(body_text).items():
            setattr(detail, key, value)

        detail.days_on_market, detail.original_list_date = parse_time_on_market(body_text)

        return detail
