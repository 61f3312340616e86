"""
HTTP client for communicating with the Catalog service.

This module provides functions to look up the fixed-price services that order
line items reference.
"""
import httpx
from typing import Optional

from ..config import CATALOG_SERVICE_URL, HTTP_TIMEOUT


async def lookup_service(service_id: str, token: Optional[str] = None) -> Optional[dict]:
    """
    Find a catalog service by ID.

    Args:
        service_id: The service to look up
        token: Optional JWT token to authorize the inter-service request

    Returns:
        Service data ({id, name, price}) if found, None otherwise

    Raises:
        httpx.HTTPError: If there's a network error or the service is unavailable
    """
    try:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
            response = await client.get(f"{CATALOG_SERVICE_URL}/services/{service_id}", headers=headers)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()
    except httpx.HTTPError:
        raise
