"""
Payment hooks for the challenge/pay/retry flow.

A payment executor settles a quote and retries the original request with
proof of payment. Executors must raise on any failure instead of returning a
partial result.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

import httpx

from ..core.quote import PaymentOption, PaymentQuote, SettlementMeta

logger = logging.getLogger(__name__)

TEST_PAYMENT_HEADER = "x-test-payment"


@dataclass(frozen=True)
class PaymentRequest:
    """Everything an executor needs to pay and retry."""
    quote: PaymentQuote
    option: PaymentOption
    original_request: httpx.Request
    http_client: Union[httpx.Client, httpx.AsyncClient]


@dataclass(frozen=True)
class PaymentResult:
    """Retried response plus whatever the executor learned about settlement."""
    response: httpx.Response
    settlement: Optional[SettlementMeta] = None


def pick_first_option(quote: PaymentQuote) -> PaymentOption:
    """Select the first payment option offered."""
    return quote.options[0]


def build_paid_request(original: httpx.Request, headers: dict) -> httpx.Request:
    """Copy ``original`` with extra headers attached."""
    merged = httpx.Headers(original.headers)
    merged.update(headers)
    return httpx.Request(
        original.method,
        original.url,
        headers=merged,
        content=original.content,
        extensions=original.extensions,
    )


def _demo_settlement(option: PaymentOption) -> SettlementMeta:
    return SettlementMeta(
        success=True,
        transaction="0x-demo-tx",
        network=option.network,
        payer="0x-demo-payer",
    )


def pay_with_test_header(payment: PaymentRequest) -> PaymentResult:
    """Local executor for test servers that accept an ``x-test-payment`` header.

    No funds move. The original request is retried once with the header set
    and a demo settlement is reported.
    """
    paid = build_paid_request(payment.original_request, {TEST_PAYMENT_HEADER: "paid"})
    logger.debug("Retrying %s %s with test payment header", paid.method, paid.url)
    response = payment.http_client.send(paid)
    return PaymentResult(response=response, settlement=_demo_settlement(payment.option))


async def async_pay_with_test_header(payment: PaymentRequest) -> PaymentResult:
    """Async twin of :func:`pay_with_test_header`."""
    paid = build_paid_request(payment.original_request, {TEST_PAYMENT_HEADER: "paid"})
    logger.debug("Retrying %s %s with test payment header", paid.method, paid.url)
    response = await payment.http_client.send(paid)
    return PaymentResult(response=response, settlement=_demo_settlement(payment.option))
