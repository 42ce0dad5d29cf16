"""
Bank Provider Implementations

Abstract base class and concrete implementations for the supported aggregators.
"""

from functools import lru_cache
from typing import Dict

from backend.app.models import BankProviderType
from .base import BaseBankProvider
from .gocardless import GoCardlessProvider
from .plaid import PlaidProvider

PROVIDER_CLASSES = {
    BankProviderType.GOCARDLESS: GoCardlessProvider,
    BankProviderType.PLAID: PlaidProvider,
}


def build_provider(provider_type: BankProviderType, settings, **kwargs) -> BaseBankProvider:
    """
    Create a provider instance from settings.

    Raises:
        ValueError: If the provider type is unsupported
    """
    try:
        provider_class = PROVIDER_CLASSES[BankProviderType(provider_type)]
    except (KeyError, ValueError):
        raise ValueError(f"Unsupported provider: {provider_type}")
    return provider_class(settings, **kwargs)


@lru_cache()
def get_providers() -> Dict[BankProviderType, BaseBankProvider]:
    """Process-wide provider instances, so each token cache is shared."""
    from backend.config import get_settings

    settings = get_settings()
    return {provider_type: build_provider(provider_type, settings) for provider_type in PROVIDER_CLASSES}


__all__ = ['BaseBankProvider', 'GoCardlessProvider', 'PlaidProvider', 'build_provider', 'get_providers']
