"""
Exception hierarchy for the payment platform.

Every service-specific failure derives from PaymentPlatformError so callers
can catch the whole family at a handler boundary while still matching the
precise kind where it matters (verification vs. gateway vs. store).
"""


class PaymentPlatformError(Exception):
    """
    Base exception for all payment platform errors.

    Example:
        >>> try:
        ...     process_event(event)
        ... except PaymentPlatformError as e:
        ...     logger.error(f"Platform error: {e}")
    """

    pass


class WebhookVerificationError(PaymentPlatformError):
    """
    Raised when an inbound webhook cannot be authenticated or parsed.

    Covers malformed signature headers, signature mismatches, timestamps
    outside the tolerance window and bodies that are not a valid event
    envelope. The inbound route maps this to a 400 response.
    """

    pass


class GatewayError(PaymentPlatformError):
    """
    Raised when a read call to the payment gateway fails.

    Enrichment callers catch this locally and leave the field absent.
    """

    pass


class DocumentStoreError(PaymentPlatformError):
    """
    Raised when the document store rejects a query or mutation.

    Attributes:
        status_code: HTTP status returned by the store, when there was one
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CollaboratorError(PaymentPlatformError):
    """
    Raised when an outbound side-effect collaborator call fails.

    Example:
        >>> raise CollaboratorError("packing slip generation returned 502")
    """

    pass
