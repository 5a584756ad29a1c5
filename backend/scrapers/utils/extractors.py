"""
Data extraction utilities for scrapers.

Ordered locator chains over BeautifulSoup nodes. Each logical field is
found by trying a list of candidate selectors (or strategy functions) in
order and keeping the first non-empty result.
"""

import re
from typing import Optional, List, Sequence, Callable, TypeVar
from bs4 import Tag

from .normalizers import clean_text, url_hash_id

T = TypeVar('T')

Strategy = Callable[[Tag], Optional[T]]

MLS_IN_TEXT = re.compile(r"MLS[#\s:®]*(\d{6,})", re.IGNORECASE)
LONG_NUMBER = re.compile(r"\b(\d{6,})\b")
ANY_LONG_NUMBER = re.compile(r"\d{6,}")

MAX_ID_LENGTH = 50
ID_ATTRIBUTES = ('data-mls-number', 'data-listing-id', 'content')


def first_of(node: Tag, strategies: Sequence[Strategy]) -> Optional[T]:
    """
    Run strategies in order and return the first non-empty result.

    A strategy that raises is treated as "not found" so one bad locator
    cannot break the chain.
    """
    for strategy in strategies:
        try:
            value = strategy(node)
        except (AttributeError, ValueError, TypeError):
            continue
        if value:
            return value
    return None


def first_text(node: Tag, selectors: Sequence[str]) -> Optional[str]:
    """
    Return the first non-empty text found by an ordered list of selectors.

    Args:
        node: Element to search within
        selectors: CSS selectors, most specific first

    Returns:
        Whitespace-collapsed text or None
    """
    for selector in selectors:
        for element in node.select(selector):
            text = clean_text(element.get_text(' '))
            if text:
                return text
    return None


def first_attr(node: Tag, selectors: Sequence[str], attr: str) -> Optional[str]:
    """Return the first non-empty attribute value found by ordered selectors."""
    for selector in selectors:
        for element in node.select(selector):
            value = element.get(attr)
            if isinstance(value, list):
                value = ' '.join(value)
            if value and value.strip():
                return value.strip()
    return None


def all_attrs(node: Tag, selectors: Sequence[str], attr: str, limit: int = 50) -> List[str]:
    """Collect unique attribute values from the first selector that matches anything."""
    for selector in selectors:
        values = []
        for element in node.select(selector):
            value = element.get(attr)
            if value and value not in values:
                values.append(value)
            if len(values) >= limit:
                break
        if values:
            return values
    return []


def absolute_url(href: str, base_url: str) -> str:
    """Prefix relative links with the site's base URL."""
    if href.startswith('http'):
        return href
    if not href.startswith('/'):
        href = '/' + href
    return base_url.rstrip('/') + href


def extract_listing_id(
    card: Tag,
    detail_url: str,
    id_selectors: Sequence[str] = (),
    href: Optional[str] = None
) -> str:
    """
    Derive a listing identifier through a cascade of fallbacks.

    1. Dedicated locator text containing a 6+ digit number
    2. A 6+ digit number in the detail link
    3. "MLS# 12345678" anywhere in the card text
    4. Any standalone 6+ digit number in the card text
    5. Digits in the last segment of the detail URL
    6. A stable hash of the detail URL

    Never returns an empty string.
    """
    href = href or detail_url
    card_text = card.get_text(' ')

    def from_locator(node: Tag) -> Optional[str]:
        # The card element itself may carry the id (e.g. div[data-listing-id])
        for attr in ID_ATTRIBUTES[:2]:
            match = ANY_LONG_NUMBER.search(node.get(attr) or '')
            if match:
                return match.group(0)
        for selector in id_selectors:
            for element in node.select(selector):
                candidates = [element.get_text(' ')] + [element.get(attr) or '' for attr in ID_ATTRIBUTES]
                for candidate in candidates:
                    match = ANY_LONG_NUMBER.search(candidate)
                    if match:
                        return match.group(0)
        return None

    def from_href(node: Tag) -> Optional[str]:
        match = ANY_LONG_NUMBER.search(href)
        return match.group(0) if match else None

    def from_mls_label(node: Tag) -> Optional[str]:
        match = MLS_IN_TEXT.search(card_text)
        return match.group(1) if match else None

    def from_any_number(node: Tag) -> Optional[str]:
        match = LONG_NUMBER.search(card_text)
        return match.group(1) if match else None

    def from_last_segment(node: Tag) -> Optional[str]:
        last = detail_url.rstrip('/').split('/')[-1]
        return re.sub(r"\D", '', last) or None

    listing_id = first_of(card, [from_locator, from_href, from_mls_label, from_any_number, from_last_segment])

    if not listing_id or len(listing_id) < 6:
        listing_id = url_hash_id(detail_url)

    return listing_id.strip()[:MAX_ID_LENGTH]
