"""
Per-service circuit breaker.

State is persisted in the circuit_breaker_state table so it survives
process restarts:

- closed: requests allowed
- open: requests rejected until the cooldown window has elapsed
- half_open: probe requests allowed; enough successes close the breaker,
  any failure opens it again
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Optional
import logging

from sqlalchemy.orm import Session

from api.database import CircuitBreakerState, utc_now, as_utc

logger = logging.getLogger(__name__)


@dataclass
class BreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 3
    half_open_after: timedelta = timedelta(minutes=30)
    reset_after: timedelta = timedelta(minutes=60)

    @classmethod
    def from_settings(cls) -> 'BreakerConfig':
        from api.config import settings
        return cls(
            failure_threshold=settings.circuit_failure_threshold,
            success_threshold=settings.circuit_success_threshold,
            half_open_after=timedelta(minutes=settings.circuit_half_open_after_minutes),
            reset_after=timedelta(minutes=settings.circuit_reset_after_minutes),
        )


@dataclass
class BreakerDecision:
    """Result of a can_execute check."""
    allowed: bool
    state: str
    reason: Optional[str] = None


class CircuitBreaker:
    """
    Persisted three-state breaker keyed by service ('realtor', 'centris').

    A rejected can_execute check is not a failure; callers report the
    outcome of real attempts through record_success / record_failure.
    """

    def __init__(
        self,
        db: Session,
        config: Optional[BreakerConfig] = None,
        clock: Callable = utc_now
    ):
        self.db = db
        self.config = config or BreakerConfig.from_settings()
        self.clock = clock

    def _get_state(self, service: str) -> CircuitBreakerState:
        record = self.db.get(CircuitBreakerState, service)
        if record is None:
            record = CircuitBreakerState(
                service=service,
                state='closed',
                failure_count=0,
                success_count=0,
                last_checked_at=self.clock(),
            )
            self.db.add(record)
            self.db.commit()
        return record

    def can_execute(self, service: str) -> BreakerDecision:
        record = self._get_state(service)

        if record.state == 'closed':
            return BreakerDecision(allowed=True, state='closed')

        if record.state == 'open':
            opened_at = as_utc(record.opened_at)
            if opened_at is not None and self.clock() - opened_at >= self.config.half_open_after:
                record.state = 'half_open'
                record.success_count = 0
                record.last_checked_at = self.clock()
                self.db.commit()
                logger.info(f"Circuit breaker for {service}: open → half_open (testing recovery)")
                return BreakerDecision(allowed=True, state='half_open')
            return BreakerDecision(
                allowed=False,
                state='open',
                reason=f"Circuit breaker open for {service} (too many failures)",
            )

        # half_open: let the probe through
        return BreakerDecision(allowed=True, state='half_open')

    def record_success(self, service: str):
        record = self._get_state(service)
        now = self.clock()

        if record.state == 'closed':
            last_checked = as_utc(record.last_checked_at)
            if last_checked is not None and now - last_checked >= self.config.reset_after:
                # Quiet period over, start counting afresh
                record.success_count = 1
                record.failure_count = 0
                record.last_checked_at = now
                self.db.commit()
                return

        record.success_count = (record.success_count or 0) + 1
        record.failure_count = 0
        record.last_checked_at = now

        if record.state == 'half_open' and record.success_count >= self.config.success_threshold:
            record.state = 'closed'
            record.opened_at = None
            logger.info(f"Circuit breaker for {service}: half_open → closed (recovered)")

        self.db.commit()

    def record_failure(self, service: str, reason: Optional[str] = None):
        record = self._get_state(service)
        now = self.clock()

        record.failure_count = (record.failure_count or 0) + 1
        record.success_count = 0
        record.last_failure_reason = reason
        record.last_checked_at = now

        if record.state == 'half_open':
            record.state = 'open'
            record.opened_at = now
            logger.warning(f"Circuit breaker for {service}: half_open → open (probe failed: {reason})")
        elif record.state == 'closed' and record.failure_count >= self.config.failure_threshold:
            record.state = 'open'
            record.opened_at = now
            logger.warning(
                f"Circuit breaker for {service}: closed → open "
                f"({record.failure_count} consecutive failures, last: {reason})"
            )

        self.db.commit()

    def reset(self, service: str):
        """Force the breaker closed and clear its counters."""
        record = self._get_state(service)
        record.state = 'closed'
        record.failure_count = 0
        record.success_count = 0
        record.opened_at = None
        record.last_failure_reason = None
        record.last_checked_at = self.clock()
        self.db.commit()
        logger.info(f"Circuit breaker for {service} manually reset")

    def get_status(self, service: str) -> Dict:
        record = self._get_state(service)
        opened_at = as_utc(record.opened_at)
        last_checked = as_utc(record.last_checked_at)
        return {
            'service': record.service,
            'state': record.state,
            'failure_count': record.failure_count,
            'success_count': record.success_count,
            'opened_at': opened_at.isoformat() if opened_at else None,
            'last_failure_reason': record.last_failure_reason,
            'last_checked_at': last_checked.isoformat() if last_checked else None,
        }
