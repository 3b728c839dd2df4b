"""
Earnings Ledger Provider.

Supplies unpaid affiliate earnings aggregated per affiliate as of a date.
The ledger is the source of truth for amounts; this service never stores
them, it only recomputes snapshots from what the ledger returns.

Adapters:
- HttpEarningsLedger: the booking platform's ledger API
- SandboxEarningsLedger: in-memory ledger for development and tests
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from clearance.config import settings
from clearance.core.exceptions import ExternalFailureError
from clearance.integrations._http import request_json

logger = logging.getLogger(__name__)


@dataclass
class EarningsQuery:
    as_of: date
    booking_category: int
    affiliate_ids: Optional[List[int]] = None


@dataclass
class UnpaidEarningsRow:
    """Unpaid earnings of one affiliate up to and including as_of."""
    affiliate_id: int
    display_name: Optional[str] = None
    contract_type: Optional[str] = None
    unpaid_count: int = 0
    unpaid_amount: Decimal = Decimal("0")
    is_fake: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["unpaid_amount"] = str(self.unpaid_amount)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "UnpaidEarningsRow":
        return cls(
            affiliate_id=int(data["affiliate_id"]),
            display_name=data.get("display_name"),
            contract_type=data.get("contract_type"),
            unpaid_count=int(data.get("unpaid_count") or 0),
            unpaid_amount=Decimal(str(data.get("unpaid_amount") or "0")),
            is_fake=bool(data.get("is_fake", False)),
        )


class EarningsLedger(ABC):

    @abstractmethod
    async def list_unpaid_earnings(self, query: EarningsQuery) -> List[UnpaidEarningsRow]:
        """Return one row per affiliate with unpaid earnings as of query.as_of."""
        pass


class HttpEarningsLedger(EarningsLedger):

    def __init__(self, base_url: str, api_key: str = ""):
        if not base_url:
            raise ValueError("EARNINGS_LEDGER_URL is required in http mode")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    async def list_unpaid_earnings(self, query: EarningsQuery) -> List[UnpaidEarningsRow]:
        params = {
            "as_of": query.as_of.isoformat(),
            "booking_category": query.booking_category,
        }
        if query.affiliate_ids:
            params["affiliate_ids"] = ",".join(str(i) for i in query.affiliate_ids)

        data = await request_json(
            "earnings_ledger",
            "GET",
            f"{self.base_url}/affiliates/unpaid-earnings",
            api_key=self.api_key,
            params=params,
        )

        try:
            rows = [UnpaidEarningsRow.from_dict(item) for item in data.get("items", [])]
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            raise ExternalFailureError(
                f"Malformed earnings ledger response: {e}",
                details={"provider": "earnings_ledger"}
            ) from e

        logger.debug(f"Ledger returned {len(rows)} affiliates as of {query.as_of}")
        return rows


@dataclass
class _SandboxEarning:
    affiliate_id: int
    booking_date: date
    amount: Decimal
    booking_category: int


@dataclass
class _SandboxAffiliate:
    affiliate_id: int
    display_name: Optional[str] = None
    contract_type: Optional[str] = None
    is_fake: bool = False


class SandboxEarningsLedger(EarningsLedger):
    """
    In-memory ledger.

    Earnings are aggregated on read, so as_of and booking_category behave
    like the real ledger.
    """

    def __init__(self):
        self._affiliates: Dict[int, _SandboxAffiliate] = {}
        self._earnings: List[_SandboxEarning] = []
        self.fail_with: Optional[str] = None
        self.calls: int = 0

    def add_affiliate(
        self,
        affiliate_id: int,
        display_name: Optional[str] = None,
        contract_type: Optional[str] = None,
        is_fake: bool = False,
    ) -> None:
        self._affiliates[affiliate_id] = _SandboxAffiliate(
            affiliate_id=affiliate_id,
            display_name=display_name or f"Affiliate {affiliate_id}",
            contract_type=contract_type,
            is_fake=is_fake,
        )

    def add_earning(
        self,
        affiliate_id: int,
        booking_date: date,
        amount,
        booking_category: int = 1,
    ) -> None:
        if affiliate_id not in self._affiliates:
            self.add_affiliate(affiliate_id)
        self._earnings.append(
            _SandboxEarning(
                affiliate_id=affiliate_id,
                booking_date=booking_date,
                amount=Decimal(str(amount)),
                booking_category=int(booking_category),
            )
        )

    async def list_unpaid_earnings(self, query: EarningsQuery) -> List[UnpaidEarningsRow]:
        self.calls += 1
        if self.fail_with:
            raise ExternalFailureError(self.fail_with, details={"provider": "earnings_ledger"})

        wanted = set(query.affiliate_ids) if query.affiliate_ids else None
        totals: Dict[int, UnpaidEarningsRow] = {}
        for earning in self._earnings:
            if earning.booking_date > query.as_of:
                continue
            if earning.booking_category != query.booking_category:
                continue
            if wanted is not None and earning.affiliate_id not in wanted:
                continue

            row = totals.get(earning.affiliate_id)
            if row is None:
                profile = self._affiliates[earning.affiliate_id]
                row = UnpaidEarningsRow(
                    affiliate_id=profile.affiliate_id,
                    display_name=profile.display_name,
                    contract_type=profile.contract_type,
                    is_fake=profile.is_fake,
                )
                totals[earning.affiliate_id] = row
            row.unpaid_count += 1
            row.unpaid_amount += earning.amount

        return list(totals.values())


_ledger_instance: Optional[EarningsLedger] = None


def get_earnings_ledger() -> EarningsLedger:
    """Get the earnings ledger singleton for the configured mode."""
    global _ledger_instance

    if _ledger_instance is None:
        if settings.EARNINGS_LEDGER_MODE == "sandbox":
            _ledger_instance = SandboxEarningsLedger()
            logger.info("Earnings ledger initialized in sandbox mode")
        else:
            _ledger_instance = HttpEarningsLedger(
                settings.EARNINGS_LEDGER_URL,
                settings.EARNINGS_LEDGER_API_KEY,
            )
            logger.info(f"Earnings ledger initialized: {settings.EARNINGS_LEDGER_URL}")

    return _ledger_instance
