"""
Payment quotes carried by HTTP 402 responses.

Parses the x402 JSON body into typed quote objects.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import InvalidQuote

PAYMENT_REQUIRED = 402


@dataclass(frozen=True)
class PaymentOption:
    """One acceptable way to pay for a resource.

    Only the amount, asset and network are needed to price and settle an
    option locally; servers may leave the rest out.
    """
    network: str
    amount_required: str  # smallest unit of the asset, e.g. "1000000"
    asset: str
    scheme: Optional[str] = None
    pay_to: Optional[str] = None
    resource: Optional[str] = None


@dataclass(frozen=True)
class PaymentQuote:
    """Structured body of a payment-required response."""
    protocol_version: int
    options: List[PaymentOption] = field(default_factory=list)
    error: Optional[str] = None


@dataclass(frozen=True)
class SettlementMeta:
    """What the payment executor reports about a completed settlement."""
    success: bool
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[str] = None


def _pick(data: Mapping[str, Any], keys: Tuple[str, ...], path: str, required: bool = True) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    if required:
        raise InvalidQuote(f"Missing required '{keys[0]}' in {path}")
    return None


def _parse_option(data: Any, path: str) -> PaymentOption:
    if not isinstance(data, dict):
        raise InvalidQuote(f"{path} must be an object")

    amount = _pick(data, ("maxAmountRequired", "amountRequired"), path)
    if isinstance(amount, int) and not isinstance(amount, bool):
        amount = str(amount)
    if not isinstance(amount, str) or not amount.isdigit():
        raise InvalidQuote(f"'maxAmountRequired' in {path} must be a non-negative integer string")

    return PaymentOption(
        network=str(_pick(data, ("network",), path)),
        amount_required=amount,
        asset=str(_pick(data, ("asset", "assetIdentifier"), path)),
        scheme=_pick(data, ("scheme",), path, required=False),
        pay_to=_pick(data, ("payTo", "payToAddress"), path, required=False),
        resource=_pick(data, ("resource",), path, required=False),
    )


def parse_quote(body: Any) -> PaymentQuote:
    """Parse and validate a decoded 402 response body.

    Both the x402 wire names (``x402Version``, ``accepts``, ``payTo``, ...)
    and the long-form names (``protocolVersion``, ``options``,
    ``payToAddress``, ...) are accepted.

    Args:
        body: Decoded JSON body

    Returns:
        Validated PaymentQuote with at least one option

    Raises:
        InvalidQuote: If the body is not a usable quote
    """
    if not isinstance(body, dict):
        raise InvalidQuote("Payment quote must be a JSON object")

    version = _pick(body, ("x402Version", "protocolVersion"), "quote", required=False)
    try:
        version = int(version) if version is not None else 1
    except (TypeError, ValueError):
        raise InvalidQuote(f"Invalid protocol version in quote: {version!r}")

    raw_options = _pick(body, ("accepts", "options"), "quote", required=False) or []
    if not isinstance(raw_options, list):
        raise InvalidQuote("'accepts' in quote must be a list")

    options = [_parse_option(item, f"accepts[{i}]") for i, item in enumerate(raw_options)]
    if not options:
        raise InvalidQuote(f"Payment quote offers no payment options: {body.get('error') or 'empty accepts'}")

    return PaymentQuote(protocol_version=version, options=options, error=body.get("error"))


def _option_to_dict(option: PaymentOption) -> Dict[str, Any]:
    wire = {
        "scheme": option.scheme,
        "network": option.network,
        "maxAmountRequired": option.amount_required,
        "payTo": option.pay_to,
        "asset": option.asset,
        "resource": option.resource,
    }
    return {key: value for key, value in wire.items() if value is not None}


def quote_to_dict(quote: PaymentQuote) -> Dict[str, Any]:
    """Serialise a quote back to its x402 wire shape."""
    body: Dict[str, Any] = {
        "x402Version": quote.protocol_version,
        "accepts": [
            _option_to_dict(option)
            for option in quote.options
        ],
    }
    if quote.error is not None:
        body["error"] = quote.error
    return body
