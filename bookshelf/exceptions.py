"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID

from bookshelf.models.domain import CreateBookDecision


class EntitlementError(Exception):
    """Base exception for all entitlement engine errors."""

    pass


class BookNotFoundError(EntitlementError):
    """Raised when a book doesn't exist."""

    def __init__(self, book_id: UUID) -> None:
        self.book_id = book_id
        super().__init__(f"Book not found: {book_id}")


class BookOwnershipError(EntitlementError):
    """Raised when a company acts on a book it does not own."""

    def __init__(self, book_id: UUID, company_id: str) -> None:
        self.book_id = book_id
        self.company_id = company_id
        super().__init__(f"Book {book_id} does not belong to company {company_id}")


class BookLimitReachedError(EntitlementError):
    """Raised when a company is not entitled to create another book."""

    def __init__(self, decision: CreateBookDecision) -> None:
        self.decision = decision
        self.reason = decision.reason or "Subscription required to add more books"
        self.requires_subscription = decision.requires_subscription
        super().__init__(self.reason)


class InvalidPaywallError(EntitlementError):
    """Raised when a paywall configuration violates the price/currency invariant."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid paywall configuration: {message}")


class MalformedEventError(EntitlementError):
    """
    Raised when a webhook event lacks a required correlation field.

    Permanent: redelivering the same event can never succeed.
    """

    def __init__(self, event_type: str, missing_fields: list[str]) -> None:
        self.event_type = event_type
        self.missing_fields = missing_fields
        super().__init__(
            f"Malformed {event_type} event: missing {', '.join(missing_fields)}"
        )


class WriteVerificationError(EntitlementError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class CheckoutProviderError(EntitlementError):
    """Raised when a payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class AuthenticationError(EntitlementError):
    """Raised when authentication fails (invalid API key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
