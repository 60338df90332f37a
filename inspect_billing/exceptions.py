"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class BillingError(Exception):
    """Base exception for all billing errors."""

    pass


# ============================================================================
# Validation
# ============================================================================


class ValidationError(BillingError):
    """Raised when input is malformed. Nothing is written."""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class LedgerValidationError(ValidationError):
    """Raised when a ledger entry is rejected before it is appended."""

    pass


class PricingValidationError(ValidationError):
    """Raised when pricing input names an unknown currency, module or period."""

    pass


# ============================================================================
# Not Found
# ============================================================================


class NotFoundError(BillingError):
    """Raised when a referenced resource does not exist."""

    def __init__(self, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class OrganizationNotFoundError(NotFoundError):
    """Raised when an organization doesn't exist."""

    def __init__(self, organization_id: UUID) -> None:
        self.organization_id = organization_id
        super().__init__("Organization", str(organization_id))


class SessionNotFoundError(NotFoundError):
    """Raised when a checkout session was never created locally."""

    def __init__(self, provider_session_id: str) -> None:
        self.provider_session_id = provider_session_id
        super().__init__("Checkout session", provider_session_id)


class SubscriptionNotFoundError(NotFoundError):
    """Raised when an organization or provider reference has no subscription."""

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__("Subscription", reference)


# ============================================================================
# Business Rules
# ============================================================================


class InsufficientCreditsError(BillingError):
    """Raised when an organization lacks credits for a usage-consuming action."""

    def __init__(self, available: int, required: int) -> None:
        self.available = available
        self.required = required
        super().__init__(f"Insufficient credits. Available: {available}, Required: {required}")


class SubscriptionStateError(BillingError):
    """Raised when a subscription transition is not allowed from its current status."""

    def __init__(self, organization_id: UUID, status: str, action: str) -> None:
        self.organization_id = organization_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} subscription for {organization_id} in status {status}")


# ============================================================================
# Payment Provider
# ============================================================================


class PaymentProviderError(BillingError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class ProviderUnavailableError(BillingError):
    """Raised when a session could not be fetched from the provider. Retryable."""

    def __init__(self, provider_session_id: str, reason: str) -> None:
        self.provider_session_id = provider_session_id
        self.reason = reason
        super().__init__(f"Payment provider unavailable for session {provider_session_id}: {reason}")


class WebhookVerificationError(BillingError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


# ============================================================================
# Persistence
# ============================================================================


class WriteVerificationError(BillingError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(BillingError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class IdempotencyConflictError(BillingError):
    """Raised when a concurrent writer committed the same idempotency key first."""

    def __init__(self, existing_id: UUID) -> None:
        self.existing_id = existing_id
        super().__init__(f"Idempotency conflict: existing ID {existing_id}")
