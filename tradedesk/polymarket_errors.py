"""
Classification of Polymarket client errors.

py_clob_client surfaces most failures as PolyApiException or plain
Exception with a free-text message, and several different causes share
similar wording. This table is the only place those messages are
interpreted; everything downstream works with ErrorKind.

Rules are checked in order, first match wins.
"""

from typing import Tuple

from .errors import ErrorKind

CLASSIFICATION_TABLE: Tuple[Tuple[Tuple[str, ...], ErrorKind, str], ...] = (
    (
        ("market not found", "orderbook does not exist", "no orderbook exists"),
        ErrorKind.MARKET_NOT_TRADEABLE,
        "Market not tradeable on CLOB. It may be closed or not active. Try a different market.",
    ),
    (
        ("fully filled or killed", "couldn't be fully filled", "could not be fully filled", "no match"),
        ErrorKind.ORDER_NOT_FILLED,
        "Not enough liquidity to fill the whole order immediately.",
    ),
    (
        ("not enough balance", "insufficient balance", "balance is not enough"),
        ErrorKind.INSUFFICIENT_BALANCE,
        "Not enough USDC.e (or shares) for this order.",
    ),
    (
        ("allowance",),
        ErrorKind.ORDER_FAILED,
        "Exchange allowance is missing or too low.",
    ),
    (
        ("insufficient funds",),
        ErrorKind.INSUFFICIENT_GAS,
        "Insufficient POL for gas fees.",
    ),
    (
        ("invalid api key", "unauthorized", "status_code=401"),
        ErrorKind.CREDENTIAL_DERIVATION_FAILED,
        "CLOB rejected the API credentials.",
    ),
)


def error_message(error: Exception) -> str:
    """Best text for an exception raised by the CLOB client."""
    message = getattr(error, "error_msg", None)
    if message:
        return str(message)
    return str(error) or type(error).__name__


def classify_clob_error(error: Exception) -> Tuple[ErrorKind, str]:
    """
    Map a client exception to an error kind and a user-facing detail.

    Unrecognised messages become ORDER_FAILED with the raw message.
    """
    raw = error_message(error)
    lowered = raw.lower()
    for markers, kind, explanation in CLASSIFICATION_TABLE:
        if any(marker in lowered for marker in markers):
            return kind, f"{explanation} ({raw})"
    return ErrorKind.ORDER_FAILED, raw
