"""
Error taxonomy for guarded requests.

Every error carries a stable ``code`` so callers can branch on the kind of
failure without matching message text.
"""

from typing import Any, Dict, Optional


class Guard402Error(Exception):
    """Base class for all guard402 errors."""
    code = "GUARD402_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Structured payload suitable for JSON responses and logs."""
        return {"code": self.code, "message": self.message}


class PolicyDenied(Guard402Error):
    """A request was blocked by a budget policy.

    Raised before the network call in direct mode (``phase="precheck"``) or
    after a payment quote was received but before paying (``phase="quote"``).
    This is an expected outcome, not a crash.
    """
    code = "POLICY_DENIED"

    def __init__(
        self,
        service_id: str,
        usd_amount: float,
        reason: str,
        phase: str = "precheck",
        scope: Optional[str] = None,
        event: Any = None,
    ):
        super().__init__(f"Request to {service_id} blocked: {reason}")
        self.service_id = service_id
        self.usd_amount = usd_amount
        self.reason = reason
        self.phase = phase
        self.scope = scope
        self.event = event

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update({
            "service_id": self.service_id,
            "usd_amount": self.usd_amount,
            "reason": self.reason,
            "phase": self.phase,
            "scope": self.scope,
        })
        return payload


class PaymentFailed(Guard402Error):
    """The payment executor failed to settle or to complete the retried request."""
    code = "PAYMENT_FAILED"

    def __init__(self, message: str, service_id: Optional[str] = None, usd_amount: Optional[float] = None):
        super().__init__(message)
        self.service_id = service_id
        self.usd_amount = usd_amount

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update({"service_id": self.service_id, "usd_amount": self.usd_amount})
        return payload


class InvalidQuote(Guard402Error):
    """A 402 response body could not be read as a payment quote."""
    code = "INVALID_QUOTE"

    def __init__(self, message: str, service_id: Optional[str] = None):
        super().__init__(message)
        self.service_id = service_id

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["service_id"] = self.service_id
        return payload


class TransportError(Guard402Error):
    """The underlying HTTP call failed for reasons unrelated to policy."""
    code = "TRANSPORT_ERROR"

    def __init__(self, message: str, service_id: Optional[str] = None):
        super().__init__(message)
        self.service_id = service_id

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["service_id"] = self.service_id
        return payload


class RegistryError(Guard402Error):
    """A subscription registry call failed."""
    code = "REGISTRY_ERROR"


class StorageError(Guard402Error):
    """A storage-backed ledger could not read or write records."""
    code = "STORAGE_ERROR"
