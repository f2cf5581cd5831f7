"""Data model shared by the venue executors and the swap router."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Tuple, Type, TypeVar, Union

from .errors import ErrorKind, ExecutionError

logger = logging.getLogger(__name__)


class Venue(str, Enum):
    """Trading venues the engine can place orders on."""
    HYPERLIQUID = "hyperliquid"
    POLYMARKET = "polymarket"


class Side(str, Enum):
    """Order direction."""
    BUY = "BUY"
    SELL = "SELL"


class Outcome(int, Enum):
    """Prediction-market outcome, by position in the market's token list."""
    YES = 0
    NO = 1


@dataclass(frozen=True)
class OrderIntent:
    """What the caller wants to trade. Immutable once constructed."""

    venue: Venue
    instrument: str  # coin name (Hyperliquid) or token id / condition id (Polymarket)
    side: Side
    quantity: Decimal  # base size (Hyperliquid), USDC notional for BUY / shares for SELL (Polymarket)

    @property
    def is_buy(self) -> bool:
        return self.side is Side.BUY


@dataclass(frozen=True)
class AssetMeta:
    """Per-instrument precision rules, fetched fresh for each order."""

    name: str
    index: int
    sz_decimals: int
    max_price_decimals: int

    @property
    def size_step(self) -> Decimal:
        return Decimal(1).scaleb(-self.sz_decimals)


@dataclass
class OrderOutcome:
    """
    Uniform result of an order placement.

    Exactly one of the success fields (filled_quantity / avg_price / order_id)
    or the error fields (error_kind / error_detail) is populated.
    """

    success: bool
    filled_quantity: Optional[Decimal] = None
    avg_price: Optional[Decimal] = None
    order_id: Optional[str] = None
    approval_tx_hash: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None

    def __post_init__(self):
        has_error = self.error_kind is not None or self.error_detail is not None
        if self.success and has_error:
            raise ValueError("successful outcome cannot carry an error")
        if not self.success and (self.error_kind is None or not self.error_detail):
            raise ValueError("failed outcome requires error_kind and error_detail")
        if not self.success and (self.filled_quantity is not None or self.avg_price is not None):
            raise ValueError("failed outcome cannot report a fill")

    @classmethod
    def failed(cls, kind: ErrorKind, detail: str) -> "OrderOutcome":
        return cls(success=False, error_kind=kind, error_detail=detail)

    @classmethod
    def from_error(cls, error: ExecutionError) -> "OrderOutcome":
        return cls.failed(error.kind, error.detail)

    def __str__(self) -> str:
        if self.success:
            if self.filled_quantity is not None:
                return f"Order FILLED: {self.filled_quantity} @ {self.avg_price}"
            return f"Order ACCEPTED: {self.order_id}"
        return f"Order FAILED [{self.error_kind.value}]: {self.error_detail}"


@dataclass
class SwapPlan:
    """
    A ready-to-send swap produced by one aggregator backend.

    Consumed immediately by the router; never compared across backends.
    """

    backend: str
    amount_in: int  # token base units
    token_in: str
    token_out: str
    router: str  # contract that pulls token_in, i.e. the allowance spender
    calldata: str
    estimated_amount_out: int
    gas_estimate: int
    value: int = 0


@dataclass
class SwapOutcome:
    """Result of a stablecoin rebalancing swap."""

    success: bool
    amount_in: Optional[Decimal] = None
    amount_out: Optional[Decimal] = None  # aggregator estimate, not the realized delta
    tx_hash: Optional[str] = None
    backend: Optional[str] = None
    approval_tx_hash: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None

    def __post_init__(self):
        has_error = self.error_kind is not None or self.error_detail is not None
        if self.success and has_error:
            raise ValueError("successful outcome cannot carry an error")
        if not self.success and (self.error_kind is None or not self.error_detail):
            raise ValueError("failed outcome requires error_kind and error_detail")

    @classmethod
    def failed(cls, kind: ErrorKind, detail: str) -> "SwapOutcome":
        return cls(success=False, error_kind=kind, error_detail=detail)

    @classmethod
    def from_error(cls, error: ExecutionError) -> "SwapOutcome":
        return cls.failed(error.kind, error.detail)

    def __str__(self) -> str:
        if self.success:
            return f"Swap {self.amount_in} -> ~{self.amount_out} via {self.backend}: {self.tx_hash}"
        return f"Swap FAILED [{self.error_kind.value}]: {self.error_detail}"


def _json_list(value: Any, default: List[str]) -> List[str]:
    """Gamma returns list fields as JSON-encoded strings."""
    if value is None or value == "":
        return list(default)
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(v) for v in json.loads(value)]


@dataclass
class MarketInfo:
    """A Polymarket market as listed by the Gamma API."""

    market_id: str
    condition_id: str
    question: str
    slug: str
    token_ids: Tuple[str, ...]
    outcomes: List[str] = field(default_factory=lambda: ["Yes", "No"])
    outcome_prices: List[str] = field(default_factory=lambda: ["0.5", "0.5"])
    volume: str = "0"
    liquidity: str = "0"
    active: bool = True
    closed: bool = False
    enable_order_book: bool = True
    neg_risk: bool = False

    @classmethod
    def from_gamma(cls, raw: Dict[str, Any]) -> "MarketInfo":
        return cls(
            market_id=str(raw.get("id", "")),
            condition_id=raw.get("conditionId", ""),
            question=raw.get("question", ""),
            slug=raw.get("slug", ""),
            token_ids=tuple(_json_list(raw.get("clobTokenIds"), [])),
            outcomes=_json_list(raw.get("outcomes"), ["Yes", "No"]),
            outcome_prices=_json_list(raw.get("outcomePrices"), ["0.5", "0.5"]),
            volume=str(raw.get("volume") or "0"),
            liquidity=str(raw.get("liquidity") or "0"),
            active=bool(raw.get("active", False)),
            closed=bool(raw.get("closed", False)),
            enable_order_book=bool(raw.get("enableOrderBook", False)),
            neg_risk=bool(raw.get("negRisk", False)),
        )

    @property
    def is_tradeable(self) -> bool:
        return self.enable_order_book and not self.closed and len(self.token_ids) >= 2

    def token_for(self, outcome: Outcome) -> str:
        """Token id for an outcome. Selection is purely positional."""
        return self.token_ids[outcome.value]


@dataclass
class Position:
    """Open perpetual position on Hyperliquid."""

    coin: str
    size: Decimal
    entry_price: Decimal
    unrealized_pnl: Decimal
    leverage: str


@dataclass
class OpenOrder:
    """Resting Polymarket order."""

    order_id: str
    market: str
    side: str
    price: str
    size: str
    outcome: str


T = TypeVar("T", OrderOutcome, SwapOutcome)


async def with_deadline(
    operation: Awaitable[T],
    seconds: float,
    outcome_type: Type[T] = OrderOutcome,
) -> T:
    """
    Run an executor or router operation under an overall deadline.

    On timeout the operation is reported as failed. Transactions already
    broadcast are not retracted; re-invoking the operation is safe because
    approvals and balance checks are idempotent.
    """
    try:
        return await asyncio.wait_for(operation, timeout=seconds)
    except asyncio.TimeoutError:
        logger.warning(f"Operation exceeded {seconds}s deadline")
        return outcome_type.failed(
            ErrorKind.TIMEOUT,
            f"Operation did not finish within {seconds}s. "
            "A transaction may already be on-chain; check balances before retrying.",
        )


Number = Union[int, float, str, Decimal]


def to_decimal(value: Number) -> Decimal:
    """Convert user or venue numbers to Decimal without float artefacts."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
