"""
Checkout Provider Protocol - Provider-agnostic checkout interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol
from uuid import UUID


@dataclass(frozen=True)
class CheckoutRef:
    """
    Provider-agnostic checkout configuration reference.

    The client-side checkout is opened with checkout_id (and plan_id).
    """

    checkout_id: str
    plan_id: str | None
    purchase_url: str | None


@dataclass(frozen=True)
class CompanyInfo:
    """Company details held by the provider."""

    company_id: str
    name: str | None


class CheckoutProvider(Protocol):
    """
    Checkout provider protocol.

    The entitlement engine only creates checkout configurations and reads
    company details; payment outcomes arrive through webhooks.
    """

    async def create_one_time_checkout(
        self,
        company_id: str,
        price: Decimal,
        currency: str,
        book_id: UUID,
        user_id: str,
    ) -> CheckoutRef:
        """
        Create a one-time purchase checkout for a paywalled book.

        The checkout carries metadata {bookId, userId}, echoed back on
        payment.succeeded.

        Raises:
            CheckoutProviderError: If checkout creation fails
        """
        ...

    async def create_subscription_checkout(self, company_id: str, user_id: str) -> CheckoutRef:
        """
        Create a checkout for the merchant subscription plan.

        The checkout carries metadata {companyId, userId, type: "subscription"}.

        Raises:
            CheckoutProviderError: If checkout creation fails
        """
        ...

    async def retrieve_company_info(self, company_id: str) -> CompanyInfo:
        """
        Look up company details.

        Raises:
            CheckoutProviderError: If the lookup fails
        """
        ...
