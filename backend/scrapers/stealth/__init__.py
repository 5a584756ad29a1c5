"""
Evasion toolkit.

Independent policies composed by the run controller around every
navigation: fingerprint rotation, proxy budget, circuit breaker, retry,
human behaviour, pacing and session persistence.
"""

from .circuit_breaker import CircuitBreaker, BreakerConfig, BreakerDecision
from .fingerprint import Fingerprint, FingerprintRotator, FINGERPRINTS, context_options
from .human import HumanBehavior, HumanBehaviorOptions
from .injection import STEALTH_SCRIPT, fingerprint_script, get_stealth_headers
from .proxy import ProxyBudget, ProxyConfig, BudgetConfig
from .retry import RetryConfig, with_retry, retry_navigation, calculate_backoff, is_retryable_error, is_block_error
from .session import SessionStore
from .timing import TimingController, TimingConfig

__all__ = [
    'CircuitBreaker',
    'BreakerConfig',
    'BreakerDecision',
    'Fingerprint',
    'FingerprintRotator',
    'FINGERPRINTS',
    'context_options',
    'HumanBehavior',
    'HumanBehaviorOptions',
    'STEALTH_SCRIPT',
    'fingerprint_script',
    'get_stealth_headers',
    'ProxyBudget',
    'ProxyConfig',
    'BudgetConfig',
    'RetryConfig',
    'with_retry',
    'retry_navigation',
    'calculate_backoff',
    'is_retryable_error',
    'is_block_error',
    'SessionStore',
    'TimingController',
    'TimingConfig',
]
