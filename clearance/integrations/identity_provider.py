"""
Identity / ID expiry provider.

Answers when each affiliate's identity document expires. Affiliates the
provider knows nothing about come back as None, which the eligibility
engine treats as expired.
"""
import logging
from abc import ABC, abstractmethod
from datetime import date
from typing import Dict, Iterable, Optional

from clearance.config import settings
from clearance.core.exceptions import ExternalFailureError
from clearance.integrations._http import request_json

logger = logging.getLogger(__name__)


class IdentityProvider(ABC):

    @abstractmethod
    async def get_id_expiration_dates(self, affiliate_ids: Iterable[int]) -> Dict[int, Optional[date]]:
        """Map every requested id to its document expiry date, or None."""
        pass


class HttpIdentityProvider(IdentityProvider):

    def __init__(self, base_url: str, api_key: str = ""):
        if not base_url:
            raise ValueError("IDENTITY_PROVIDER_URL is required in http mode")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    async def get_id_expiration_dates(self, affiliate_ids: Iterable[int]) -> Dict[int, Optional[date]]:
        ids = list(affiliate_ids)
        if not ids:
            return {}

        data = await request_json(
            "identity_provider",
            "POST",
            f"{self.base_url}/affiliates/id-expirations",
            api_key=self.api_key,
            body={"affiliate_ids": ids},
        )

        result: Dict[int, Optional[date]] = {affiliate_id: None for affiliate_id in ids}
        try:
            for item in data.get("items", []):
                value = item.get("expiration_date")
                result[int(item["affiliate_id"])] = date.fromisoformat(value) if value else None
        except (KeyError, TypeError, ValueError) as e:
            raise ExternalFailureError(
                f"Malformed identity provider response: {e}",
                details={"provider": "identity_provider"}
            ) from e
        return result


class SandboxIdentityProvider(IdentityProvider):

    def __init__(self, expirations: Optional[Dict[int, Optional[date]]] = None):
        self._expirations: Dict[int, Optional[date]] = dict(expirations or {})

    def set_expiration(self, affiliate_id: int, expiration_date: Optional[date]) -> None:
        self._expirations[affiliate_id] = expiration_date

    async def get_id_expiration_dates(self, affiliate_ids: Iterable[int]) -> Dict[int, Optional[date]]:
        return {affiliate_id: self._expirations.get(affiliate_id) for affiliate_id in affiliate_ids}


_identity_instance: Optional[IdentityProvider] = None


def get_identity_provider() -> IdentityProvider:
    """Get the identity provider singleton for the configured mode."""
    global _identity_instance

    if _identity_instance is None:
        if settings.IDENTITY_PROVIDER_MODE == "sandbox":
            _identity_instance = SandboxIdentityProvider()
            logger.info("Identity provider initialized in sandbox mode")
        else:
            _identity_instance = HttpIdentityProvider(
                settings.IDENTITY_PROVIDER_URL,
                settings.IDENTITY_PROVIDER_API_KEY,
            )
            logger.info(f"Identity provider initialized: {settings.IDENTITY_PROVIDER_URL}")

    return _identity_instance
