"""
Proxy configuration and monthly bandwidth budget.

Bandwidth is estimated per page type rather than measured. The running
total lives in a singleton proxy_usage row and resets automatically when
the calendar month changes.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional
import logging

from sqlalchemy.orm import Session

from api.database import ProxyUsage, utc_now, as_utc

logger = logging.getLogger(__name__)


USAGE_ROW_ID = 'current'

# Estimated transfer per page load, in KB
PAGE_SIZE_ESTIMATES_KB = {
    'search': 500,
    'detail': 1000,
    'warmup': 800,
}


@dataclass
class ProxyConfig:
    enabled: bool = False
    service: str = 'none'
    host: str = ''
    port: int = 0
    username: str = ''
    password: str = ''
    country: str = 'CA'

    @classmethod
    def from_settings(cls) -> 'ProxyConfig':
        from api.config import settings
        return cls(
            enabled=settings.proxy_enabled,
            service=settings.proxy_service,
            host=settings.proxy_host,
            port=settings.proxy_port,
            username=settings.proxy_username,
            password=settings.proxy_password,
            country=settings.proxy_country,
        )


@dataclass
class BudgetConfig:
    enabled: bool = True
    monthly_limit_gb: float = 5.0
    alert_percent: float = 80.0
    stop_percent: float = 95.0

    @classmethod
    def from_settings(cls) -> 'BudgetConfig':
        from api.config import settings
        return cls(
            enabled=settings.proxy_budget_enabled,
            monthly_limit_gb=settings.proxy_budget_monthly_gb,
            alert_percent=settings.proxy_budget_alert_percent,
            stop_percent=settings.proxy_budget_stop_percent,
        )


class ProxyBudget:
    """Tracks estimated proxy bandwidth against a monthly ceiling."""

    def __init__(
        self,
        db: Session,
        config: Optional[BudgetConfig] = None,
        proxy_config: Optional[ProxyConfig] = None,
        clock: Callable = utc_now
    ):
        self.db = db
        self.config = config or BudgetConfig.from_settings()
        self.proxy_config = proxy_config or ProxyConfig.from_settings()
        self.clock = clock

    def _get_usage(self) -> ProxyUsage:
        usage = self.db.get(ProxyUsage, USAGE_ROW_ID)
        if usage is None:
            usage = ProxyUsage(id=USAGE_ROW_ID, monthly_usage_gb=0.0, last_reset_date=self.clock())
            self.db.add(usage)
            self.db.commit()
        return usage

    def _reset_if_new_month(self) -> ProxyUsage:
        usage = self._get_usage()
        now = self.clock()
        last_reset = as_utc(usage.last_reset_date)
        if now.month != last_reset.month or now.year != last_reset.year:
            logger.info(
                f"New month detected, resetting bandwidth counter "
                f"(was {usage.monthly_usage_gb:.2f}GB)"
            )
            usage.monthly_usage_gb = 0.0
            usage.last_reset_date = now
            self.db.commit()
        return usage

    def usage_percent(self) -> float:
        usage = self._reset_if_new_month()
        return (usage.monthly_usage_gb / self.config.monthly_limit_gb) * 100

    def is_over_budget(self) -> bool:
        if not self.config.enabled:
            return False
        return self.usage_percent() >= self.config.stop_percent

    def should_alert(self) -> bool:
        if not self.config.enabled:
            return False
        percent = self.usage_percent()
        return self.config.alert_percent <= percent < self.config.stop_percent

    def track(self, page_type: str = 'search', estimated_kb: Optional[float] = None):
        """
        Add the estimated transfer of one page load to the monthly total.

        Args:
            page_type: 'search', 'detail' or 'warmup'
            estimated_kb: Explicit estimate overriding the page-type default
        """
        if not self.config.enabled:
            return

        if estimated_kb is None:
            estimated_kb = PAGE_SIZE_ESTIMATES_KB.get(page_type, PAGE_SIZE_ESTIMATES_KB['search'])

        usage = self._reset_if_new_month()
        usage.monthly_usage_gb = (usage.monthly_usage_gb or 0.0) + estimated_kb / 1024 / 1024
        self.db.commit()

        if self.should_alert():
            logger.warning(
                f"Bandwidth usage at {self.usage_percent():.1f}% "
                f"({usage.monthly_usage_gb:.2f}GB / {self.config.monthly_limit_gb}GB)"
            )
        elif self.is_over_budget():
            logger.error(
                f"BUDGET EXCEEDED: {usage.monthly_usage_gb:.2f}GB / {self.config.monthly_limit_gb}GB - "
                f"proxy disabled until next month"
            )

    def get_proxy_configuration(self) -> Optional[Dict[str, str]]:
        """
        Playwright proxy settings, or None when the crawl should go unproxied.

        None is returned when the proxy is disabled, no service is
        configured, or the monthly budget has hit its hard stop.
        """
        proxy = self.proxy_config
        if not proxy.enabled or proxy.service == 'none':
            return None

        if self.is_over_budget():
            logger.warning("Monthly bandwidth budget exceeded, proxy disabled")
            return None

        return {
            'server': f"http://{proxy.host}:{proxy.port}",
            'username': proxy.username,
            'password': proxy.password,
        }

    def get_status(self) -> Dict:
        usage = self._reset_if_new_month()
        last_reset = as_utc(usage.last_reset_date)
        return {
            'budget_enabled': self.config.enabled,
            'proxy_enabled': self.proxy_config.enabled and self.proxy_config.service != 'none',
            'usage_gb': round(usage.monthly_usage_gb or 0.0, 4),
            'limit_gb': self.config.monthly_limit_gb,
            'usage_percent': round(self.usage_percent(), 2),
            'should_alert': self.should_alert(),
            'over_budget': self.is_over_budget(),
            'last_reset_date': last_reset.isoformat() if last_reset else None,
        }
