"""LNbits payments to a Lightning address via LNURL-pay."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from .base import PaymentProvider, PaymentResult


class LNbitsProvider(PaymentProvider):
    """
    LNbits backend.

    Three steps per payment:
        1. Resolve ``user@domain`` via ``https://domain/.well-known/lnurlp/user``
        2. Ask the LNURL callback for an invoice (amount in millisats)
        3. Pay the invoice from the LNbits wallet (admin key required)
    """

    name = "lnbits"

    def __init__(
        self,
        url: str = "",
        api_key: str = "",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self.log = logging.getLogger("LNbitsProvider")

    def is_configured(self) -> bool:
        return bool(self.url and self.api_key)

    @staticmethod
    def split_address(address: str) -> Tuple[str, str]:
        username, _, domain = address.partition("@")
        if not username or not domain:
            raise ValueError("Invalid Lightning address format")
        return username, domain

    async def send(self, address: str, amount_sats: int, memo: str = "") -> PaymentResult:
        if not self.is_configured():
            return PaymentResult.failed("LNbits settings not configured", amount=amount_sats, recipient=address)

        try:
            username, domain = self.split_address(address)
        except ValueError as e:
            return PaymentResult.failed(str(e), amount=amount_sats, recipient=address)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                invoice, error = await self._fetch_invoice(client, username, domain, amount_sats, memo)
                if error:
                    self.log.error(error)
                    return PaymentResult.failed(error, amount=amount_sats, recipient=address)

                self.log.info(f"Sending {amount_sats} sats to {address} via LNbits...")
                response = await client.post(
                    f"{self.url}/api/v1/payments",
                    headers={"Content-Type": "application/json", "X-Api-Key": self.api_key},
                    json={"out": True, "bolt11": invoice},
                )
                result = self._json(response)
        except httpx.HTTPError as e:
            self.log.error(f"LNbits payment error: {e}")
            return PaymentResult.failed(str(e) or type(e).__name__, amount=amount_sats, recipient=address)

        if response.is_success and result.get("payment_hash"):
            self.log.info(f"Payment successful: {amount_sats} sats sent to {address}")
            return PaymentResult(
                success=True,
                transaction_id=result["payment_hash"],
                amount=amount_sats,
                recipient=address,
            )

        message = self.describe_failure(response.status_code, result)
        self.log.error(f"LNbits payment failed ({response.status_code}): {message}")
        return PaymentResult.failed(message, amount=amount_sats, recipient=address, details=result)

    async def _fetch_invoice(
        self,
        client: httpx.AsyncClient,
        username: str,
        domain: str,
        amount_sats: int,
        memo: str,
    ) -> Tuple[Optional[str], Optional[str]]:
        """Returns ``(bolt11, None)`` or ``(None, error message)``."""
        response = await client.get(f"https://{domain}/.well-known/lnurlp/{username}")
        if not response.is_success:
            return None, "Failed to resolve Lightning address"

        lnurl_data = self._json(response)
        callback = lnurl_data.get("callback")
        if not callback:
            return None, "Invalid LNURL-pay response"

        response = await client.get(callback, params={"amount": amount_sats * 1000, "comment": memo})
        if not response.is_success:
            return None, "Failed to get payment request"

        invoice = self._json(response).get("pr")
        if not invoice:
            return None, "No payment request in response"
        return invoice, None

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def describe_failure(status_code: int, result: Dict[str, Any]) -> str:
        """Turn an LNbits error into something a player can act on."""
        detail = result.get("detail") or result.get("message") or result.get("error") or "Payment failed"
        detail = str(detail)

        if status_code in (401, 403):
            message = (
                f"Authentication failed: {detail}. Make sure you are using the Admin key "
                f"(not Invoice/Read key) from your LNbits wallet."
            )
        elif status_code == 400:
            message = f"Invalid request: {detail}"
        elif status_code >= 500:
            message = f"LNbits server error ({status_code}): {detail}"
        else:
            message = detail

        if "Only internal invoices" in detail:
            message += (
                "\nSuggestion: use an Admin key instead of an Invoice/Read key, "
                "or enable external payments in your LNbits settings."
            )
        return message
