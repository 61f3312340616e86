"""
HTTP client for the mobile-money (MoMo) payment provider.

The client talks to the provider, validates and normalizes phone numbers, and
classifies every provider answer into a GatewayResult. It never decides what
happens to a payment; that is the ledger's and the coordinator's job.
"""
import logging
import re
import secrets
import time
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx
from pydantic import BaseModel

from ..config import GatewayConfig
from ..errors import ValidationError

logger = logging.getLogger(__name__)

PHONE_NUMBER_RE = re.compile(r"^(\+?[1-9]\d{1,14}|0\d{9})$")
PHONE_NOISE_RE = re.compile(r"[\s\-\(\)]")

FAILED_TO_PROCESS = "failed to process"

# Provider status vocabulary -> our sub-status
PROVIDER_STATUSES = {
    "pending": "pending",
    "completed": "completed",
    "successful": "completed",
    "success": "completed",
    "failed": "failed",
    "declined": "failed",
    "rejected": "failed",
}


class GatewayResult(BaseModel):
    """
    Normalized provider answer.

    Attributes:
        accepted (bool): The provider took the request (sub_status is not failed)
        provider_ref (str): Our transaction reference at the provider
        sub_status (str): pending, completed or failed
        provider_transaction_id (str): Provider-side transaction ID, once known
        message (str): Provider or client message
        amount (Decimal): Amount reported by the provider, if any
        unavailable (bool): True when the provider could not be reached
    """
    accepted: bool
    provider_ref: Optional[str] = None
    sub_status: str
    provider_transaction_id: Optional[str] = None
    message: str = ""
    amount: Optional[Decimal] = None
    unavailable: bool = False

    @classmethod
    def unreachable(cls, provider_ref: Optional[str]) -> "GatewayResult":
        return cls(
            accepted=False,
            provider_ref=provider_ref,
            sub_status="failed",
            message=FAILED_TO_PROCESS,
            unavailable=True,
        )


class MoMoClient:
    """Mobile-money provider client built from an explicit GatewayConfig."""

    def __init__(self, config: GatewayConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport

    def new_reference(self) -> str:
        """Generate a transaction reference, e.g. ``MOMO_1700000000000_9F3A01BC``."""
        return f"MOMO_{int(time.time() * 1000)}_{secrets.token_hex(4).upper()}"

    def validate_phone_number(self, phone_number: str) -> bool:
        clean_number = PHONE_NOISE_RE.sub("", phone_number or "")
        return bool(PHONE_NUMBER_RE.match(clean_number))

    def format_phone_number(self, phone_number: str) -> str:
        """
        Normalize a phone number to international form.

        Local numbers (leading 0) and bare digits get the configured country
        code; numbers already starting with + are kept.

        Raises:
            ValidationError: If the number is malformed
        """
        if not self.validate_phone_number(phone_number):
            raise ValidationError(f"Invalid phone number: {phone_number!r}")

        clean_number = PHONE_NOISE_RE.sub("", phone_number)
        if clean_number.startswith("0"):
            return f"+{self.config.country_code}{clean_number[1:]}"
        if not clean_number.startswith("+"):
            return f"+{self.config.country_code}{clean_number}"
        return clean_number

    def _headers(self) -> dict:
        return {
            "X-Api-Key": self.config.api_key,
            "X-Api-Secret": self.config.api_secret,
            "X-Merchant-Id": self.config.merchant_id,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport)

    async def initiate(
        self,
        amount: Decimal,
        phone_number: str,
        customer_name: str,
        order_ref: str,
        provider_ref: Optional[str] = None,
    ) -> GatewayResult:
        """
        Ask the provider to collect a payment from a phone number.

        Args:
            amount: Amount to collect
            phone_number: Payer's phone number, local or international form
            customer_name: Payer name shown by the provider
            order_ref: Our order number, shown to the payer
            provider_ref: Transaction reference to use (generated if omitted)

        Returns:
            GatewayResult; timeouts and network errors yield an unavailable,
            failed result instead of raising

        Raises:
            ValidationError: If the phone number is malformed (no call is made)
        """
        phone = self.format_phone_number(phone_number)
        ref = provider_ref or self.new_reference()
        payload = {
            "reference": ref,
            "amount": str(amount),
            "currency": self.config.currency,
            "phone_number": phone,
            "customer_name": customer_name,
            "description": f"Payment for order {order_ref}",
            "callback_url": self.config.callback_url or None,
        }

        logger.info(f"Initiating MoMo payment {ref} for {phone} - amount {amount}")
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.config.base_url}/payments",
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            logger.error(f"MoMo initiate {ref} failed: {e!r}")
            return GatewayResult.unreachable(ref)

        return self._classify(ref, response)

    async def check_status(self, provider_ref: str) -> GatewayResult:
        """
        Query the provider for the current state of a transaction.

        Safe to call repeatedly; it performs no writes.
        """
        logger.info(f"Checking MoMo payment status for {provider_ref}")
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.config.base_url}/payments/{provider_ref}",
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            logger.error(f"MoMo status check {provider_ref} failed: {e!r}")
            return GatewayResult.unreachable(provider_ref)

        return self._classify(provider_ref, response)

    def _classify(self, provider_ref: str, response: httpx.Response) -> GatewayResult:
        if response.status_code >= 500:
            logger.error(f"MoMo provider error for {provider_ref}: HTTP {response.status_code}")
            return GatewayResult.unreachable(provider_ref)

        try:
            data = response.json()
        except ValueError:
            data = None

        if not isinstance(data, dict):
            if response.status_code >= 400:
                data = {"status": "declined", "message": response.text}
            else:
                logger.error(f"MoMo provider returned an unreadable body for {provider_ref}")
                return GatewayResult.unreachable(provider_ref)

        message = data.get("message") or ""
        if response.status_code >= 400:
            sub_status = "failed"
            message = message or f"Payment declined (HTTP {response.status_code})"
        else:
            raw_status = str(data.get("status", "")).lower()
            sub_status = PROVIDER_STATUSES.get(raw_status)
            if sub_status is None:
                logger.warning(f"MoMo provider returned unknown status {raw_status!r} for {provider_ref}")
                sub_status = "failed"
                message = message or f"Unrecognized provider status {raw_status!r}"

        amount = None
        if data.get("amount") is not None:
            try:
                amount = Decimal(str(data["amount"]))
            except InvalidOperation:
                logger.warning(f"MoMo provider returned a malformed amount for {provider_ref}")

        result = GatewayResult(
            accepted=sub_status != "failed",
            provider_ref=provider_ref,
            sub_status=sub_status,
            provider_transaction_id=data.get("transaction_id"),
            message=message,
            amount=amount,
        )
        logger.info(f"MoMo {provider_ref}: {result.sub_status} ({result.message})")
        return result
