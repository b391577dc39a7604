"""
Market data providers and the provider error taxonomy.

Vendor clients live in their own modules (``alpaca``, ``finnhub``) and are
imported explicitly by the services that wire them.
"""

from .base import BarProvider, HttpBarProvider, ProviderConfig
from .exceptions import (
    DeadlineExceededError,
    ExhaustionError,
    InputError,
    ProviderError,
    TransientProviderError,
    is_retryable,
)

__all__ = [
    "BarProvider",
    "HttpBarProvider",
    "ProviderConfig",
    "InputError",
    "ProviderError",
    "TransientProviderError",
    "ExhaustionError",
    "DeadlineExceededError",
    "is_retryable",
]
