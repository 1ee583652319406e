"""
SDK for guard402.

Provides guarded HTTP clients, payment hooks and subscription helpers.
"""

from .guarded_client import AsyncGuardedClient, GuardedClient, RequestState, service_id_from_url
from .payments import PaymentRequest, PaymentResult, pay_with_test_header, pick_first_option

__all__ = [
    "AsyncGuardedClient",
    "GuardedClient",
    "PaymentRequest",
    "PaymentResult",
    "RequestState",
    "pay_with_test_header",
    "pick_first_option",
    "service_id_from_url",
]
