"""
Liveness ping for external uptime monitoring (Healthchecks.io style).

A successful run POSTs to the configured URL, a failed run POSTs to
``<url>/fail``. Without a configured URL this is a no-op.
"""

from typing import Optional
import logging

import httpx

from api.config import settings

logger = logging.getLogger(__name__)

PING_TIMEOUT_SECONDS = 10.0


def build_ping_url(base_url: str, status: str) -> str:
    """Return the ping URL for a run outcome ('success' or 'fail')."""
    base_url = base_url.rstrip('/')
    return f"{base_url}/fail" if status == 'fail' else base_url


async def ping_healthcheck(status: str, ping_url: Optional[str] = None) -> bool:
    """
    Notify the liveness endpoint of a run outcome.

    Args:
        status: 'success' or 'fail'
        ping_url: Override for settings.healthchecks_ping_url

    Returns:
        True if the ping was delivered, False otherwise (never raises)
    """
    base_url = ping_url if ping_url is not None else settings.healthchecks_ping_url
    if not base_url:
        return False

    url = build_ping_url(base_url, status)
    try:
        async with httpx.AsyncClient(timeout=PING_TIMEOUT_SECONDS) as client:
            response = await client.post(url)
            response.raise_for_status()
        logger.debug(f"Healthcheck ping sent ({status})")
        return True
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.warning(f"Healthcheck ping failed ({status}): {e}")
        return False
