"""
Payment Providers - The Money Layer
===================================

Pluggable backends that push sats to a Lightning address.

Available providers:
    1. ZBDProvider: ZBD ln-address send-payment API
    2. LNbitsProvider: LNURL-pay resolution + LNbits wallet payment
    3. MockProvider: For testing without moving money

Each provider implements:
    - send(address, amount_sats, memo) -> PaymentResult
    - is_configured() -> bool

Providers never raise for payment failures. Network errors, HTTP errors
and bad responses all come back as ``PaymentResult(success=False, error=...)``
so the dispatcher can record them as data.
"""

from __future__ import annotations

import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)


@dataclass
class PaymentResult:
    """Outcome of a single send."""
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    amount: int = 0
    recipient: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failed(cls, error: str, **kwargs: Any) -> "PaymentResult":
        return cls(success=False, error=error, **kwargs)


class PaymentProvider(ABC):
    """Abstract base class for payment providers."""

    name = "base"

    @abstractmethod
    async def send(self, address: str, amount_sats: int, memo: str = "") -> PaymentResult:
        """Pay ``amount_sats`` to a Lightning address."""
        pass

    def is_configured(self) -> bool:
        """Check if this provider has the credentials it needs."""
        return True


class MockProvider(PaymentProvider):
    """
    Mock provider for testing.

    Records every send. Succeeds unless ``fail_with`` is set.
    """

    name = "mock"

    def __init__(self, fail_with: Optional[str] = None):
        self.fail_with = fail_with
        self.sent: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)
        self.log = logging.getLogger("MockProvider")

    async def send(self, address: str, amount_sats: int, memo: str = "") -> PaymentResult:
        self.sent.append({"address": address, "amount": amount_sats, "memo": memo})

        if self.fail_with:
            self.log.info(f"Mock payment to {address} failing: {self.fail_with}")
            return PaymentResult.failed(self.fail_with, amount=amount_sats, recipient=address)

        tx_id = f"mock-{next(self._ids)}"
        self.log.info(f"Mock payment: {amount_sats} sats to {address} ({tx_id})")
        return PaymentResult(
            success=True,
            transaction_id=tx_id,
            amount=amount_sats,
            recipient=address,
        )
