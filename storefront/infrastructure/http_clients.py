import httpx
import logging
from typing import List, Optional
import asyncio

from storefront.domain.models import CartItem
from storefront.domain.exceptions import CartServiceError
from storefront.application.interfaces import CartService, NotificationsService

logger = logging.getLogger(__name__)


class HTTPCartClient(CartService):
    def __init__(self, base_url: str, api_token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._base_url = base_url
        self._api_token = api_token
        self._transport = transport

    async def get_user_cart(self, user_id: str) -> List[CartItem]:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.get(
                    f"{self._base_url}/api/cart/{user_id}",
                    headers={"X-API-Key": self._api_token},
                    timeout=10.0
                )

                if response.status_code == 200:
                    data = response.json()
                    return [CartItem(**item) for item in data.get("items", [])]
                elif response.status_code == 404:
                    return []
                else:
                    raise CartServiceError(f"Cart service error: {response.status_code}")

        except httpx.RequestError as e:
            logger.error(f"Cart service connection error: {e}")
            raise CartServiceError(f"Cart service unavailable: {str(e)}")

    async def clear_user_cart(self, user_id: str) -> None:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.delete(
                    f"{self._base_url}/api/cart/{user_id}",
                    headers={"X-API-Key": self._api_token},
                    timeout=10.0
                )

                if response.status_code not in (200, 204, 404):
                    raise CartServiceError(f"Cart service error: {response.status_code}")

        except httpx.RequestError as e:
            logger.error(f"Cart service connection error: {e}")
            raise CartServiceError(f"Cart service unavailable: {str(e)}")


class HTTPNotificationsClient(NotificationsService):
    def __init__(self, base_url: str, api_token: str, max_retries: int = 10, retry_delay: float = 1.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._base_url = base_url
        self._api_token = api_token
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._transport = transport

    async def send(self, message: str, reference_id: str, idempotency_key: str, user_id: str) -> bool:
        """Send a notification, retrying on errors"""
        for attempt in range(self._max_retries):
            try:
                async with httpx.AsyncClient(transport=self._transport) as client:
                    response = await client.post(
                        f"{self._base_url}/api/notifications",
                        json={
                            "message": message,
                            "reference_id": reference_id,
                            "idempotency_key": idempotency_key,
                            "user_id": user_id
                        },
                        headers={"X-API-Key": self._api_token},
                        timeout=10.0
                    )

                    if response.status_code in (200, 201):
                        logger.info(f"Notification sent (attempt {attempt + 1})")
                        return True
                    else:
                        logger.warning(f"Notification service returned {response.status_code}")

            except httpx.HTTPError as e:
                logger.warning(f"Notification send failed (attempt {attempt + 1}/{self._max_retries}): {e}")

            # No wait after the last attempt
            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_delay)

        logger.error(f"Notification not sent after {self._max_retries} attempts")
        return False
