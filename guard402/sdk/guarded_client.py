"""
Guarded HTTP clients.

Wrap an ``httpx`` client so every request is checked against budget policies
and recorded in the usage ledger. Two modes are supported:

* Direct-budgeted: the cost is estimated up front, checked and recorded
  before the request is sent.
* Challenge/pay/retry: the request is sent as-is; a 402 response is parsed
  as a payment quote, previewed against the policies, paid by the injected
  executor, and recorded only once the executor succeeds.
"""

import logging
from datetime import datetime
from enum import Enum, auto
from typing import Any, Callable, Optional, Tuple

import httpx

from ..core.errors import Guard402Error, InvalidQuote, PaymentFailed, PolicyDenied, TransportError
from ..core.policies import BudgetGuard, EnforcementResult, PolicyConfig
from ..core.quote import PAYMENT_REQUIRED, PaymentOption, PaymentQuote, parse_quote
from ..storage.ledger import InMemoryUsageLedger, UsageLedger
from ..storage.models import PaymentMeta, UsageEvent, UsageRecord
from .payments import PaymentRequest, PaymentResult

logger = logging.getLogger(__name__)

UsdEstimator = Callable[[httpx.Request], float]
OptionSelector = Callable[[PaymentQuote], PaymentOption]
QuoteEstimator = Callable[[PaymentQuote, PaymentOption], float]


class RequestState(Enum):
    """Lifecycle of a guarded request."""
    INIT = auto()
    SENT = auto()
    QUOTED = auto()
    PREVIEWED = auto()
    PAID = auto()
    RETRIED = auto()
    DONE = auto()
    BLOCKED = auto()
    ERROR = auto()


def service_id_from_url(url: Any) -> str:
    """Derive the service id (``host`` or ``host:port``) from a request URL.

    Relative or unparseable URLs are used verbatim.
    """
    try:
        parsed = httpx.URL(str(url))
    except httpx.InvalidURL:
        return str(url)
    if not parsed.host:
        return str(url)
    if parsed.port is not None:
        return f"{parsed.host}:{parsed.port}"
    return parsed.host


class _GuardedBase:
    """Policy and ledger handling shared by the sync and async clients."""

    def __init__(
        self,
        ledger: Optional[UsageLedger] = None,
        policies: Optional[PolicyConfig] = None,
        agent_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        facilitator_id: Optional[str] = None,
        estimate_usd: Optional[UsdEstimator] = None,
        select_payment_option: Optional[OptionSelector] = None,
        estimate_usd_from_quote: Optional[QuoteEstimator] = None,
        pay_with_x402: Optional[Callable[[PaymentRequest], Any]] = None,
    ):
        hooks = (select_payment_option, estimate_usd_from_quote, pay_with_x402)
        if any(hook is not None for hook in hooks) and not all(hook is not None for hook in hooks):
            raise ValueError(
                "select_payment_option, estimate_usd_from_quote and pay_with_x402 "
                "must be configured together"
            )

        self.ledger = ledger if ledger is not None else InMemoryUsageLedger()
        self.guard = BudgetGuard(self.ledger, policies)
        self.agent_id = agent_id
        self.subscription_id = subscription_id
        self.facilitator_id = facilitator_id
        self.estimate_usd = estimate_usd
        self.select_payment_option = select_payment_option
        self.estimate_usd_from_quote = estimate_usd_from_quote
        self.pay_with_x402 = pay_with_x402

    @property
    def payment_enabled(self) -> bool:
        return self.pay_with_x402 is not None

    def preview_spend(self, url: Any, usd_amount: float) -> EnforcementResult:
        """Ask whether spending ``usd_amount`` on ``url`` would be allowed right now."""
        return self.guard.preview(self._event(service_id_from_url(url), usd_amount))

    def _event(self, service_id: str, usd_amount: float, payment: Optional[PaymentMeta] = None) -> UsageEvent:
        return UsageEvent(
            service_id=service_id,
            usd_amount=usd_amount,
            timestamp=datetime.now(),
            agent_id=self.agent_id,
            subscription_id=self.subscription_id,
            payment=payment,
        )

    def _transition(self, service_id: str, state: RequestState) -> None:
        logger.debug("[%s] -> %s", service_id, state.name)

    def _precheck(self, request: httpx.Request, service_id: str) -> UsageRecord:
        usd_amount = float(self.estimate_usd(request)) if self.estimate_usd else 0.0
        event = self._event(service_id, usd_amount)
        result, record = self.guard.check_and_record(event)
        if not result.allowed:
            self._transition(service_id, RequestState.BLOCKED)
            raise PolicyDenied(
                service_id, usd_amount, result.reason, phase="precheck", scope=result.scope, event=event
            )
        return record

    def _quote(self, response: httpx.Response, service_id: str) -> Tuple[PaymentQuote, PaymentOption, float]:
        try:
            body = response.json()
        except ValueError as e:
            raise InvalidQuote(f"402 from {service_id} did not carry a JSON quote", service_id) from e
        try:
            quote = parse_quote(body)
        except InvalidQuote as e:
            e.service_id = service_id
            raise
        self._transition(service_id, RequestState.QUOTED)

        option = self.select_payment_option(quote)
        if option not in quote.options:
            raise ValueError("select_payment_option must return one of the quote's options")
        usd_amount = float(self.estimate_usd_from_quote(quote, option))
        event = self._event(service_id, usd_amount)
        result = self.guard.preview(event)
        self._transition(service_id, RequestState.PREVIEWED)
        if not result.allowed:
            self._transition(service_id, RequestState.BLOCKED)
            logger.info("Quote of $%.4f for %s denied: %s", usd_amount, service_id, result.reason)
            raise PolicyDenied(
                service_id, usd_amount, result.reason, phase="quote", scope=result.scope, event=event
            )
        return quote, option, usd_amount

    def _payment_error(self, error: Exception, service_id: str, usd_amount: float) -> PaymentFailed:
        self._transition(service_id, RequestState.ERROR)
        return PaymentFailed(f"Payment to {service_id} failed: {error}", service_id, usd_amount)

    def _settle(
        self,
        result: PaymentResult,
        option: PaymentOption,
        service_id: str,
        usd_amount: float,
    ) -> httpx.Response:
        self._transition(service_id, RequestState.PAID)
        if result.response.status_code == PAYMENT_REQUIRED:
            self._transition(service_id, RequestState.ERROR)
            raise PaymentFailed(
                f"Retried request to {service_id} still answered 402", service_id, usd_amount
            )
        self._transition(service_id, RequestState.RETRIED)

        settlement = result.settlement
        payment = PaymentMeta(
            facilitator_id=self.facilitator_id,
            network=(settlement.network if settlement and settlement.network else option.network),
            asset=option.asset,
            transaction=settlement.transaction if settlement else None,
            payer=settlement.payer if settlement else None,
        )
        self.guard.record(self._event(service_id, usd_amount, payment))
        self._transition(service_id, RequestState.DONE)
        return result.response

    def _transport_error(self, error: httpx.TransportError, service_id: str) -> TransportError:
        self._transition(service_id, RequestState.ERROR)
        return TransportError(f"Request to {service_id} failed: {error}", service_id)


class GuardedClient(_GuardedBase):
    """Synchronous guarded client over ``httpx.Client``.

    Example:
        client = GuardedClient(
            policies=PolicyConfig(services={"api.example.com": BudgetPolicy(daily_usd_cap=1.0)}),
            estimate_usd=lambda request: 0.01,
        )
        response = client.get("https://api.example.com/data")
    """

    def __init__(self, http_client: Optional[httpx.Client] = None, **options: Any):
        super().__init__(**options)
        self._owns_client = http_client is None
        self.http_client = http_client if http_client is not None else httpx.Client()

    def request(self, method: str, url: Any, **kwargs: Any) -> httpx.Response:
        """Send a guarded request.

        Args:
            method: HTTP method
            url: Target URL (relative URLs resolve against the client's base_url)
            **kwargs: Passed to ``httpx.Client.build_request``

        Returns:
            The response, unchanged

        Raises:
            PolicyDenied: If a budget policy blocks the request
            InvalidQuote: If a 402 response is not a usable quote
            PaymentFailed: If the payment executor fails
            TransportError: If the network call fails
        """
        request = self.http_client.build_request(method, url, **kwargs)
        service_id = service_id_from_url(request.url)
        self._transition(service_id, RequestState.INIT)

        if not self.payment_enabled:
            self._precheck(request, service_id)
            response = self._send(request, service_id)
            self._transition(service_id, RequestState.DONE)
            return response

        response = self._send(request, service_id)
        if response.status_code != PAYMENT_REQUIRED:
            self._transition(service_id, RequestState.DONE)
            return response

        quote, option, usd_amount = self._quote(response, service_id)
        try:
            result = self.pay_with_x402(PaymentRequest(quote, option, request, self.http_client))
        except Guard402Error:
            self._transition(service_id, RequestState.ERROR)
            raise
        except Exception as e:
            raise self._payment_error(e, service_id, usd_amount) from e
        return self._settle(result, option, service_id, usd_amount)

    def get(self, url: Any, **kwargs: Any) -> httpx.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: Any, **kwargs: Any) -> httpx.Response:
        return self.request("POST", url, **kwargs)

    def close(self) -> None:
        if self._owns_client:
            self.http_client.close()

    def __enter__(self) -> "GuardedClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _send(self, request: httpx.Request, service_id: str) -> httpx.Response:
        self._transition(service_id, RequestState.SENT)
        try:
            return self.http_client.send(request)
        except httpx.TransportError as e:
            raise self._transport_error(e, service_id) from e


class AsyncGuardedClient(_GuardedBase):
    """Asynchronous guarded client over ``httpx.AsyncClient``.

    The payment executor must be a coroutine function; estimators stay
    synchronous.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, **options: Any):
        super().__init__(**options)
        self._owns_client = http_client is None
        self.http_client = http_client if http_client is not None else httpx.AsyncClient()

    async def request(self, method: str, url: Any, **kwargs: Any) -> httpx.Response:
        """Send a guarded request. See :meth:`GuardedClient.request`."""
        request = self.http_client.build_request(method, url, **kwargs)
        service_id = service_id_from_url(request.url)
        self._transition(service_id, RequestState.INIT)

        if not self.payment_enabled:
            self._precheck(request, service_id)
            response = await self._send(request, service_id)
            self._transition(service_id, RequestState.DONE)
            return response

        response = await self._send(request, service_id)
        if response.status_code != PAYMENT_REQUIRED:
            self._transition(service_id, RequestState.DONE)
            return response

        quote, option, usd_amount = self._quote(response, service_id)
        try:
            result = await self.pay_with_x402(PaymentRequest(quote, option, request, self.http_client))
        except Guard402Error:
            self._transition(service_id, RequestState.ERROR)
            raise
        except Exception as e:
            raise self._payment_error(e, service_id, usd_amount) from e
        return self._settle(result, option, service_id, usd_amount)

    async def get(self, url: Any, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: Any, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()

    async def __aenter__(self) -> "AsyncGuardedClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _send(self, request: httpx.Request, service_id: str) -> httpx.Response:
        self._transition(service_id, RequestState.SENT)
        try:
            return await self.http_client.send(request)
        except httpx.TransportError as e:
            raise self._transport_error(e, service_id) from e
