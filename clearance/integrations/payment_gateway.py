"""
Payment Interface.

Executes the money transfer for one affiliate. The reference passed in is
the idempotency key ("{criteria_id}:{affiliate_id}"), so a retried payout
for the same period is never paid twice by a conforming gateway.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from clearance.config import settings
from clearance.core.exceptions import ExternalFailureError
from clearance.integrations._http import request_json

logger = logging.getLogger(__name__)


@dataclass
class PaymentOutcome:
    success: bool
    reference: Optional[str] = None
    detail: Optional[str] = None


class PaymentGateway(ABC):

    @abstractmethod
    async def settle_payment(self, affiliate_id: int, amount: Decimal, reference: str) -> PaymentOutcome:
        """Transfer amount to the affiliate. Declines return success=False."""
        pass


class HttpPaymentGateway(PaymentGateway):

    def __init__(self, base_url: str, api_key: str = ""):
        if not base_url:
            raise ValueError("PAYMENT_GATEWAY_URL is required in http mode")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    async def settle_payment(self, affiliate_id: int, amount: Decimal, reference: str) -> PaymentOutcome:
        try:
            data = await request_json(
                "payment_gateway",
                "POST",
                f"{self.base_url}/payouts",
                api_key=self.api_key,
                headers={"Idempotency-Key": reference},
                body={
                    "affiliate_id": affiliate_id,
                    "amount": str(amount),
                    "reference": reference,
                },
            )
        except ExternalFailureError as e:
            return PaymentOutcome(success=False, reference=reference, detail=e.message)

        status = str(data.get("status", "")).upper()
        if status in ("PAID", "SUCCESS", "SUCCEEDED", "COMPLETED"):
            return PaymentOutcome(
                success=True,
                reference=data.get("payment_reference") or data.get("id") or reference,
            )
        return PaymentOutcome(
            success=False,
            reference=reference,
            detail=data.get("message") or f"payout status {status or 'UNKNOWN'}",
        )


class SandboxPaymentGateway(PaymentGateway):
    """
    In-memory gateway.

    - failing_ids: affiliates whose payout is declined
    - delays: seconds to sleep before answering, per affiliate, to simulate
      a slow or hanging provider
    - calls: every (affiliate_id, amount, reference) received, in order
    """

    def __init__(self):
        self.failing_ids: Set[int] = set()
        self.delays: Dict[int, float] = {}
        self.calls: List[Tuple[int, Decimal, str]] = []
        self._paid: Dict[str, str] = {}

    def calls_for(self, affiliate_id: int) -> int:
        return sum(1 for call in self.calls if call[0] == affiliate_id)

    async def settle_payment(self, affiliate_id: int, amount: Decimal, reference: str) -> PaymentOutcome:
        self.calls.append((affiliate_id, amount, reference))

        delay = self.delays.get(affiliate_id)
        if delay:
            await asyncio.sleep(delay)

        if affiliate_id in self.failing_ids:
            return PaymentOutcome(success=False, reference=reference, detail="payout declined by sandbox")

        # Same reference, same payout
        if reference not in self._paid:
            self._paid[reference] = f"SBX-{len(self._paid) + 1:06d}"
        return PaymentOutcome(success=True, reference=self._paid[reference])


_gateway_instance: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    """Get the payment gateway singleton for the configured mode."""
    global _gateway_instance

    if _gateway_instance is None:
        if settings.PAYMENT_GATEWAY_MODE == "sandbox":
            _gateway_instance = SandboxPaymentGateway()
            logger.info("Payment gateway initialized in sandbox mode")
        else:
            _gateway_instance = HttpPaymentGateway(
                settings.PAYMENT_GATEWAY_URL,
                settings.PAYMENT_GATEWAY_API_KEY,
            )
            logger.info(f"Payment gateway initialized: {settings.PAYMENT_GATEWAY_URL}")

    return _gateway_instance
