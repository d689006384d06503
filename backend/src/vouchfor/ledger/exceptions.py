"""Ledger error taxonomy.

Every error carries the HTTP status it maps to on synchronous endpoints and
whether the outbox worker should retry the operation that raised it.
"""


class LedgerError(Exception):
    """Base class for referral ledger errors."""

    status_code = 500
    retryable = True

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(LedgerError):
    """Input could not be understood."""

    status_code = 400
    retryable = False


class InvalidEventError(ValidationError):
    """Provider event is missing required fields or malformed."""


class MissingVendorIdError(InvalidEventError):
    """Payment event carries no vendor_id in its metadata."""

    def __init__(self, transaction_id: str | None):
        self.transaction_id = transaction_id
        super().__init__(f"No vendor_id in metadata for transaction {transaction_id}")


class InvalidSignatureError(ValidationError):
    """Webhook signature did not verify."""


class NotFoundError(LedgerError):
    """A referenced record does not exist or is not usable."""

    status_code = 404
    retryable = False


class VendorNotFoundError(NotFoundError):
    def __init__(self, vendor_id: str):
        self.vendor_id = vendor_id
        super().__init__(f"Program not found: {vendor_id}")


class VendorInactiveError(NotFoundError):
    def __init__(self, vendor_id: str):
        self.vendor_id = vendor_id
        super().__init__(f"Program is not active: {vendor_id}")


class MissingDestinationError(NotFoundError):
    def __init__(self, vendor_id: str):
        self.vendor_id = vendor_id
        super().__init__(f"Program has no destination URL: {vendor_id}")


class ConversionNotFoundError(NotFoundError):
    def __init__(self, conversion_id: str):
        self.conversion_id = conversion_id
        super().__init__(f"Conversion not found: {conversion_id}")


class ClickNotFoundError(NotFoundError):
    def __init__(self, affiliate_id: str):
        self.affiliate_id = affiliate_id
        super().__init__(f"No click found for referral: {affiliate_id}")


class NotAttributedError(LedgerError):
    """Commission requested for a conversion that is not confirmed and attributed."""

    status_code = 409
    retryable = False

    def __init__(self, conversion_id: str, status: str | None = None):
        self.conversion_id = conversion_id
        self.status = status
        super().__init__(f"Conversion not attributed: {conversion_id} (status={status})")


class InvalidTransitionError(LedgerError):
    """Status change not allowed by the ledger state machine."""

    status_code = 409
    retryable = False

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Illegal {entity} transition: {current} -> {target}")


class RefundDeferredError(LedgerError):
    """Refund arrived while the conversion was still awaiting attribution."""

    status_code = 409
    retryable = True

    def __init__(self, conversion_id: str):
        self.conversion_id = conversion_id
        super().__init__(f"Conversion {conversion_id} still pending, refund deferred")
