"""
Site configurations for the listing source families.

Each site has a SiteConfig that defines:
- Base and home URLs
- The pagination parameter
- Selectors awaited before a page is read
- Text markers that identify anti-bot block pages
"""

from .base import SiteConfig


# ============================================================
# BLOCK PAGE MARKERS
# Text that only appears when the site served a bot-protection page
# ============================================================
COMMON_BLOCK_MARKERS = ['Incapsula', 'Access Denied']


# ============================================================
# SITE CONFIGURATIONS
# ============================================================

SITES = {
    'realtor': SiteConfig(
        key='realtor',
        name='Realtor.ca',
        base_url='https://www.realtor.ca',
        home_url='https://www.realtor.ca/',
        page_param='CurrentPage',
        card_wait_selector='div.listingCard, li.cardCon, [data-testid*="listing"]',
        block_markers=COMMON_BLOCK_MARKERS + ['Request unsuccessful. Incapsula incident'],
    ),

    'centris': SiteConfig(
        key='centris',
        name='Centris.ca',
        base_url='https://www.centris.ca',
        home_url='https://www.centris.ca/en',
        page_param='pageNumber',
        card_wait_selector='.property-thumbnail-item',
        detail_wait_selector='[itemprop="price"]',
        block_markers=COMMON_BLOCK_MARKERS,
    ),
}


def get_site_config(site_key: str) -> SiteConfig:
    """
    Get configuration for a site.

    Args:
        site_key: Site identifier (e.g., 'realtor')

    Returns:
        SiteConfig for the site

    Raises:
        ValueError: If site_key is not found
    """
    if site_key not in SITES:
        raise ValueError(f"Unknown site: {site_key}. Available: {list(SITES.keys())}")
    return SITES[site_key]
