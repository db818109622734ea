"""
Whop Checkout Provider - Whop REST API implementation.

Implements the CheckoutProvider protocol over httpx.
"""

from decimal import Decimal
from typing import Any
from uuid import UUID

import httpx
from structlog import get_logger

from bookshelf.exceptions import CheckoutProviderError
from bookshelf.models.api import SUBSCRIPTION_METADATA_TYPE
from bookshelf.services.checkout_provider import CheckoutRef, CompanyInfo

logger = get_logger(__name__)


class WhopProvider:
    """
    Whop checkout provider.

    Implements CheckoutProvider protocol.
    """

    def __init__(
        self,
        api_key: str,
        subscription_plan_id: str,
        base_url: str = "https://api.whop.com/api/v1",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize Whop provider.

        Args:
            api_key: Whop API key (bearer token)
            subscription_plan_id: Plan id of the merchant subscription
            base_url: Whop REST API base URL
            timeout: Request timeout in seconds
            http_client: Optional preconfigured client (tests inject a mock transport)
        """
        self.api_key = api_key
        self.subscription_plan_id = subscription_plan_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def create_one_time_checkout(
        self,
        company_id: str,
        price: Decimal,
        currency: str,
        book_id: UUID,
        user_id: str,
    ) -> CheckoutRef:
        """Create a one-time checkout configuration for a book purchase."""
        payload = {
            "plan": {
                "company_id": company_id,
                "initial_price": float(price),
                "currency": currency.lower(),
                "plan_type": "one_time",
            },
            "metadata": {
                "bookId": str(book_id),
                "userId": user_id,
            },
        }

        data = await self._request("POST", "/checkout_configurations", "create_checkout", payload)
        ref = _checkout_ref(data)

        logger.info(
            "one_time_checkout_created",
            company_id=company_id,
            book_id=str(book_id),
            user_id=user_id,
            checkout_id=ref.checkout_id,
        )
        return ref

    async def create_subscription_checkout(self, company_id: str, user_id: str) -> CheckoutRef:
        """Create a checkout configuration for the merchant subscription plan."""
        if not self.subscription_plan_id:
            raise CheckoutProviderError("Subscription plan id is not configured")

        payload = {
            "plan_id": self.subscription_plan_id,
            "metadata": {
                "companyId": company_id,
                "userId": user_id,
                "type": SUBSCRIPTION_METADATA_TYPE,
                "isFirstPayment": "true",
            },
        }

        data = await self._request(
            "POST", "/checkout_configurations", "create_subscription_checkout", payload
        )
        ref = _checkout_ref(data)

        logger.info(
            "subscription_checkout_created",
            company_id=company_id,
            user_id=user_id,
            checkout_id=ref.checkout_id,
            plan_id=ref.plan_id,
        )
        return ref

    async def retrieve_company_info(self, company_id: str) -> CompanyInfo:
        """Retrieve company name for a new merchant record."""
        data = await self._request("GET", f"/companies/{company_id}", "retrieve_company")
        name = data.get("title") or data.get("name")
        return CompanyInfo(company_id=company_id, name=str(name) if name else None)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self.http_client.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                "whop_request_failed",
                operation=operation,
                status=e.response.status_code,
                text=e.response.text[:500],
            )
            raise CheckoutProviderError(
                f"{operation} failed with status {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("whop_request_error", operation=operation, error=str(e))
            raise CheckoutProviderError(f"{operation} failed: {e}") from e

        if not isinstance(data, dict):
            raise CheckoutProviderError(f"{operation} returned an unexpected payload")
        return data


def _checkout_ref(data: dict[str, Any]) -> CheckoutRef:
    checkout_id = data.get("id")
    if not checkout_id:
        raise CheckoutProviderError("Checkout configuration response has no id")

    plan = data.get("plan")
    plan_id = plan.get("id") if isinstance(plan, dict) else data.get("plan_id")
    return CheckoutRef(
        checkout_id=str(checkout_id),
        plan_id=str(plan_id) if plan_id else None,
        purchase_url=data.get("purchase_url"),
    )
