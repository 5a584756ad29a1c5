"""Browser crawler for bot-protected listing sites."""

from .stealth import StealthCrawler, FetchedPage

__all__ = ['StealthCrawler', 'FetchedPage']
