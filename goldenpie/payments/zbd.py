"""ZBD Lightning address payments."""

from __future__ import annotations

import logging
import time
from typing import Optional

import httpx

from .base import PaymentProvider, PaymentResult


ZBD_SEND_URL = "https://api.zebedee.io/v0/ln-address/send-payment"


class ZBDProvider(PaymentProvider):
    """
    ZBD backend.

    Requirements:
        - ZBD developer account
        - Project API key (sent as the ``apikey`` header)

    ZBD takes amounts in millisats, as a string.
    """

    name = "zbd"

    def __init__(
        self,
        api_key: str = "",
        timeout: float = 15.0,
        url: str = ZBD_SEND_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.url = url
        self._transport = transport
        self.log = logging.getLogger("ZBDProvider")

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def send(self, address: str, amount_sats: int, memo: str = "") -> PaymentResult:
        if not self.api_key:
            return PaymentResult.failed("ZBD API key not configured", amount=amount_sats, recipient=address)

        payload = {
            "lnAddress": address,
            "amount": str(amount_sats * 1000),
            "comment": memo,
            "internalId": f"goldenpie-{int(time.time() * 1000)}",
        }

        self.log.info(f"Sending {amount_sats} sats to {address} via ZBD...")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    headers={"Content-Type": "application/json", "apikey": self.api_key},
                    json=payload,
                )
            result = response.json()
        except httpx.HTTPError as e:
            self.log.error(f"ZBD payment error: {e}")
            return PaymentResult.failed(str(e) or type(e).__name__, amount=amount_sats, recipient=address)
        except ValueError:
            self.log.error(f"ZBD returned non-JSON response ({response.status_code})")
            return PaymentResult.failed(
                f"Unexpected response from ZBD ({response.status_code})",
                amount=amount_sats,
                recipient=address,
            )

        if not isinstance(result, dict):
            result = {"message": f"Unexpected response from ZBD ({response.status_code})"}

        if response.is_success and result.get("success"):
            tx_id = (result.get("data") or {}).get("id")
            self.log.info(f"Payment successful: {amount_sats} sats sent to {address}")
            return PaymentResult(
                success=True,
                transaction_id=tx_id,
                amount=amount_sats,
                recipient=address,
            )

        self.log.error(f"ZBD payment failed: {result}")
        return PaymentResult.failed(
            result.get("message") or "Payment failed",
            amount=amount_sats,
            recipient=address,
            details=result,
        )
