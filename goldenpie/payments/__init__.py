"""
Payments
========

Provider selection from settings, plus the provider classes.

Usage:
    from goldenpie.payments import resolve_provider

    provider = resolve_provider(config.payments)
    if provider:
        result = await provider.send("player@example.com", 1, "Kill reward")
"""

import logging
from typing import Optional

from goldenpie.config import PaymentConfig

from .base import PaymentProvider, PaymentResult, MockProvider
from .zbd import ZBDProvider
from .lnbits import LNbitsProvider

logger = logging.getLogger(__name__)


def resolve_provider(settings: Optional[PaymentConfig]) -> Optional[PaymentProvider]:
    """
    Build the provider selected in ``settings``.

    Returns None when no provider is selected or the selected one lacks the
    credentials it needs; callers treat that as "payments disabled".
    """
    if settings is None or not settings.provider:
        return None

    name = settings.provider.lower()
    if name == "zbd":
        provider: PaymentProvider = ZBDProvider(api_key=settings.zbd_api_key, timeout=settings.timeout)
    elif name == "lnbits":
        provider = LNbitsProvider(
            url=settings.lnbits_url,
            api_key=settings.lnbits_api_key,
            timeout=settings.timeout,
        )
    elif name == "mock":
        provider = MockProvider()
    else:
        logger.warning(f"Unknown payment provider: {settings.provider}")
        return None

    if not provider.is_configured():
        logger.debug(f"Payment provider {name} selected but not configured")
        return None
    return provider


__all__ = [
    'PaymentProvider',
    'PaymentResult',
    'MockProvider',
    'ZBDProvider',
    'LNbitsProvider',
    'resolve_provider',
]
