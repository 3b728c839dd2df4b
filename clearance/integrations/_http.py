"""Shared httpx request helper for collaborator adapters."""
import logging
from typing import Any, Dict, Optional

import httpx

from clearance.config import settings
from clearance.core.exceptions import ExternalFailureError

logger = logging.getLogger(__name__)


async def request_json(
    provider: str,
    method: str,
    url: str,
    api_key: str = "",
    params: Optional[Dict[str, Any]] = None,
    body: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Call a collaborator and return its JSON body.

    Transport errors and 4xx/5xx responses raise ExternalFailureError with
    the provider name and status in the details.
    """
    request_headers = {"Content-Type": "application/json"}
    if api_key:
        request_headers["X-API-Key"] = api_key
    if headers:
        request_headers.update(headers)

    try:
        async with httpx.AsyncClient(timeout=timeout or settings.EXTERNAL_HTTP_TIMEOUT_SECONDS) as client:
            response = await client.request(
                method=method,
                url=url,
                headers=request_headers,
                params=params,
                json=body,
            )
    except httpx.TimeoutException as e:
        logger.warning(f"{provider} request timed out: {method} {url}")
        raise ExternalFailureError(
            f"{provider} request timed out",
            details={"provider": provider, "reason": "timeout"}
        ) from e
    except httpx.HTTPError as e:
        logger.warning(f"{provider} request failed: {method} {url}: {e}")
        raise ExternalFailureError(
            f"{provider} unreachable: {e}",
            details={"provider": provider}
        ) from e

    if response.status_code >= 400:
        logger.error(f"{provider} API error: {response.status_code} - {response.text}")
        raise ExternalFailureError(
            f"{provider} returned HTTP {response.status_code}",
            details={"provider": provider, "status_code": response.status_code, "response": response.text[:500]}
        )

    try:
        return response.json()
    except ValueError as e:
        raise ExternalFailureError(
            f"{provider} returned a non-JSON body",
            details={"provider": provider}
        ) from e
