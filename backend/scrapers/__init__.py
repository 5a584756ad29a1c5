"""
Listing scraper system.

This module provides the crawl-and-reconcile engine:
- Site extractors for Realtor.ca and Centris.ca
- Search URL builders
- The evasion toolkit (scrapers.stealth)
- Reconciliation against the listing store
- The run controller
"""

from .base import BaseExtractor, SiteConfig, SearchResult, ListingDetail, ScrapeError
from .config import SITES, get_site_config
from .manager import RunController, EXTRACTOR_REGISTRY
from .reconciler import Reconciler, ReconcileResult

__all__ = [
    'BaseExtractor',
    'SiteConfig',
    'SearchResult',
    'ListingDetail',
    'ScrapeError',
    'SITES',
    'get_site_config',
    'RunController',
    'EXTRACTOR_REGISTRY',
    'Reconciler',
    'ReconcileResult',
]
