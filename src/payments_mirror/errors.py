"""Error taxonomy for the payments mirror."""

from typing import Optional, Dict, Any


class PaymentsMirrorError(Exception):
    """Base class for all errors raised by payments_mirror."""

    code: Optional[str] = None

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Return a serialisable description of the error for operators."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "code": self.code,
        }


class LocalValidationError(PaymentsMirrorError):
    """Raised by checks that run before any provider call."""


class InvalidModeError(LocalValidationError):
    """Mode name is not one of the recognised modes."""

    def __init__(self, name: Any):
        super().__init__(f"Mode must be 'test' or 'live', got {name!r}")
        self.name = name


class InvalidAmountError(LocalValidationError):
    """Amount is not an integer number of minor units."""

    def __init__(self, amount: Any):
        super().__init__(
            f"Amount must be an integer number of minor units, got {amount!r}"
        )
        self.amount = amount


class InvalidCurrencyError(LocalValidationError):
    """Currency is not a three-letter ISO code."""

    def __init__(self, currency: Any):
        super().__init__(f"Currency must be a three-letter ISO code, got {currency!r}")
        self.currency = currency


class InvalidRefundReasonError(LocalValidationError):
    """Refund reason is not one the provider accepts."""

    def __init__(self, reason: Any, allowed):
        super().__init__(
            f"Refund reason must be one of {sorted(allowed)}, got {reason!r}"
        )
        self.reason = reason


class AmountTooSmallError(LocalValidationError):
    """Amount is below the provider's minimum chargeable amount."""

    def __init__(self, amount: int, minimum: int, currency: str):
        super().__init__(
            f"Amount {amount} is below the minimum of {minimum} minor units for {currency}"
        )
        self.amount = amount
        self.minimum = minimum
        self.currency = currency


class RefundExceedsBalanceError(LocalValidationError):
    """Requested refund is not within the remaining refundable balance."""

    def __init__(self, requested: Optional[int], remaining: int):
        if requested is None:
            message = "Payment has no refundable balance left"
        else:
            message = (
                f"Refund of {requested} minor units is not within the "
                f"remaining refundable balance of {remaining}"
            )
        super().__init__(message)
        self.requested = requested
        self.remaining = remaining


class ProviderRequestError(PaymentsMirrorError):
    """Transport or validation failure reported by the payment provider."""

    def __init__(self, code: Optional[str], message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["http_status"] = self.http_status
        return data


class RefundRejectedError(PaymentsMirrorError):
    """Payment cannot be refunded, either by local state or provider decision."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class SignatureInvalidError(PaymentsMirrorError):
    """Notification failed signature verification and must not be trusted."""


class InvalidEventPayloadError(PaymentsMirrorError):
    """Verified notification body could not be decoded."""


class NotFoundError(PaymentsMirrorError):
    """Referenced id is unknown to the local store."""

    def __init__(self, kind: str, identifier: Any):
        super().__init__(f"{kind} {identifier!r} not found")
        self.kind = kind
        self.identifier = identifier


class CredentialsMissingError(PaymentsMirrorError):
    """Selected mode has no secret key configured."""

    def __init__(self, mode: str):
        super().__init__(f"No secret key configured for {mode} mode")
        self.mode = mode


class DuplicateRecordError(PaymentsMirrorError):
    """A record with the same external id already exists."""


class RateLimitedError(PaymentsMirrorError):
    """Client exceeded the operator API rate limit."""

    def __init__(self, limit: str):
        super().__init__(f"Rate limit exceeded: {limit}")
        self.limit = limit
