"""Error taxonomy shared by every venue and the swap router."""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Why an order or swap did not complete."""

    # Key material
    DECRYPTION_FAILURE = "decryption_failure"
    CREDENTIAL_DERIVATION_FAILED = "credential_derivation_failed"

    # Venue state
    MARKET_DATA_UNAVAILABLE = "market_data_unavailable"
    UNKNOWN_INSTRUMENT = "unknown_instrument"
    MARKET_NOT_TRADEABLE = "market_not_tradeable"
    MARKET_NOT_FOUND = "market_not_found"

    # Trade did not execute
    ORDER_NOT_FILLED = "order_not_filled"
    ORDER_FAILED = "order_failed"
    INVALID_ORDER = "invalid_order"

    # Funds / chain
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INSUFFICIENT_GAS = "insufficient_gas"
    FEE_ORACLE_UNAVAILABLE = "fee_oracle_unavailable"
    APPROVAL_FAILED = "approval_failed"

    # Swaps
    NO_ROUTE_FOUND = "no_route_found"
    SWAP_FAILED = "swap_failed"

    TIMEOUT = "timeout"


class ExecutionError(Exception):
    """Base class for failures that map onto an outcome's error kind."""

    kind: ErrorKind = ErrorKind.ORDER_FAILED

    def __init__(self, detail: str, kind: Optional[ErrorKind] = None):
        super().__init__(detail)
        self.detail = detail
        if kind is not None:
            self.kind = kind


class DecryptionFailure(ExecutionError):
    """Encrypted key blob is malformed, tampered with, or the passphrase is wrong."""
    kind = ErrorKind.DECRYPTION_FAILURE


class CredentialDerivationFailed(ExecutionError):
    """The venue refused or could not issue API credentials. Safe to retry."""
    kind = ErrorKind.CREDENTIAL_DERIVATION_FAILED


class MarketDataUnavailable(ExecutionError):
    kind = ErrorKind.MARKET_DATA_UNAVAILABLE


class UnknownInstrument(ExecutionError):
    kind = ErrorKind.UNKNOWN_INSTRUMENT


class MarketNotTradeable(ExecutionError):
    kind = ErrorKind.MARKET_NOT_TRADEABLE


class MarketNotFound(ExecutionError):
    kind = ErrorKind.MARKET_NOT_FOUND


class OrderNotFilled(ExecutionError):
    kind = ErrorKind.ORDER_NOT_FILLED


class OrderFailed(ExecutionError):
    kind = ErrorKind.ORDER_FAILED


class InvalidOrder(ExecutionError):
    kind = ErrorKind.INVALID_ORDER


class InsufficientBalance(ExecutionError):
    kind = ErrorKind.INSUFFICIENT_BALANCE


class InsufficientGas(ExecutionError):
    kind = ErrorKind.INSUFFICIENT_GAS


class GasOracleError(ExecutionError):
    """Fee data could not be read. There is no safe default fee."""
    kind = ErrorKind.FEE_ORACLE_UNAVAILABLE


class ApprovalFailed(ExecutionError):
    kind = ErrorKind.APPROVAL_FAILED


class NoRouteFound(ExecutionError):
    kind = ErrorKind.NO_ROUTE_FOUND


class SwapFailed(ExecutionError):
    kind = ErrorKind.SWAP_FAILED


class AggregatorUnavailable(Exception):
    """A swap backend could not produce a plan; the router moves to the next one."""

    def __init__(self, backend: str, reason: str):
        super().__init__(f"{backend}: {reason}")
        self.backend = backend
        self.reason = reason
