"""Hyperliquid Executor - Market-order emulation on a limit-order-only venue."""

import asyncio
import logging
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Tuple, TypeVar

from eth_account.signers.local import LocalAccount
from hyperliquid.exchange import Exchange
from hyperliquid.info import Info

from .config import HL_MAINNET_API_URL
from .errors import (
    ExecutionError,
    ErrorKind,
    InvalidOrder,
    MarketDataUnavailable,
    OrderFailed,
    OrderNotFilled,
    UnknownInstrument,
)
from .key_manager import KeyVault, SigningIdentity
from .models import AssetMeta, Number, OrderOutcome, Position, to_decimal

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Perp prices may carry at most (6 - szDecimals) decimals and 5 significant figures
MAX_PERP_PRICE_DECIMALS = 6
MAX_SIGNIFICANT_FIGURES = 5

DEFAULT_SLIPPAGE = Decimal("0.005")  # 0.5%

IOC_ORDER_TYPE = {"limit": {"tif": "Ioc"}}

# IOC orders that find no liquidity come back as an error status
_NO_MATCH_MARKERS = ("could not immediately match",)


def round_size_down(size: Decimal, sz_decimals: int) -> Decimal:
    """Round toward zero so the order never exceeds the requested size."""
    return size.quantize(Decimal(1).scaleb(-sz_decimals), rounding=ROUND_DOWN)


def price_tick(price: Decimal, max_price_decimals: int) -> Decimal:
    """
    Smallest valid price increment at this price level.

    Bounded by the decimal limit and by 5 significant figures; integer
    prices are always valid, so the tick never exceeds 1.
    """
    decimals_tick = Decimal(1).scaleb(-max_price_decimals)
    sig_fig_tick = Decimal(1).scaleb(price.adjusted() - (MAX_SIGNIFICANT_FIGURES - 1))
    return max(decimals_tick, min(sig_fig_tick, Decimal(1)))


def round_to_tick(price: Decimal, tick: Decimal) -> Decimal:
    """Nearest multiple of tick (half rounds up)."""
    steps = (price / tick).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return (steps * tick).quantize(tick)


class HyperliquidExecutor:
    """
    Places market orders on Hyperliquid for custodial users.

    Hyperliquid has no market order with bounded slippage, so a market
    order is emulated as an immediate-or-cancel limit order priced off the
    top of book:

        BUY  limit = best_ask x (1 + slippage)
        SELL limit = best_bid x (1 - slippage)

    rounded to the nearest valid tick. Size is rounded down to the
    instrument's size precision.

    The SDK reports transport success even when nothing traded, so the
    outcome is always read from the per-order status.
    """

    def __init__(
        self,
        vault: KeyVault,
        base_url: str = HL_MAINNET_API_URL,
        slippage: Decimal = DEFAULT_SLIPPAGE,
        info: Info = None,
        exchange_factory: Callable[[LocalAccount], Exchange] = None,
    ):
        """
        Args:
            vault: Key vault for unlocking signing identities
            base_url: Hyperliquid API URL (mainnet or testnet)
            slippage: Fractional price tolerance for market orders
            info: Pre-built Info client (tests); built lazily otherwise
            exchange_factory: Builds an Exchange client for a signer
        """
        self.vault = vault
        self.base_url = base_url
        self.slippage = slippage
        self._info = info
        self._exchange_factory = exchange_factory or (
            lambda account: Exchange(account, base_url=self.base_url)
        )

    async def _run(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    async def _get_info(self) -> Info:
        # Info() fetches exchange metadata in its constructor
        if self._info is None:
            self._info = await self._run(lambda: Info(self.base_url, skip_ws=True))
        return self._info

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def asset_meta(self, instrument: str) -> AssetMeta:
        """
        Fresh precision rules for one instrument. Not cached.

        Raises:
            UnknownInstrument: If the venue does not list the instrument
        """
        info = await self._get_info()
        meta = await self._run(info.meta)
        for index, asset in enumerate(meta.get("universe", [])):
            if asset.get("name") == instrument:
                sz_decimals = int(asset["szDecimals"])
                return AssetMeta(
                    name=instrument,
                    index=index,
                    sz_decimals=sz_decimals,
                    max_price_decimals=max(MAX_PERP_PRICE_DECIMALS - sz_decimals, 0),
                )
        raise UnknownInstrument(f"Unknown asset: {instrument}")

    async def top_of_book(self, instrument: str) -> Tuple[Decimal, Decimal]:
        """
        Best bid and best ask.

        Raises:
            MarketDataUnavailable: If either side of the book is empty
        """
        info = await self._get_info()
        book = await self._run(lambda: info.l2_snapshot(instrument))
        levels = (book or {}).get("levels") or []
        bids = levels[0] if len(levels) > 0 else []
        asks = levels[1] if len(levels) > 1 else []
        if not bids or not asks:
            raise MarketDataUnavailable(f"Could not fetch order book for {instrument}")
        return Decimal(bids[0]["px"]), Decimal(asks[0]["px"])

    async def available_instruments(self) -> List[str]:
        info = await self._get_info()
        meta = await self._run(info.meta)
        return [asset["name"] for asset in meta.get("universe", [])]

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def limit_price(
        self,
        best_bid: Decimal,
        best_ask: Decimal,
        is_buy: bool,
        meta: AssetMeta,
    ) -> Decimal:
        """Slippage-adjusted reference price, rounded to the nearest tick."""
        if is_buy:
            reference = best_ask * (Decimal(1) + self.slippage)
        else:
            reference = best_bid * (Decimal(1) - self.slippage)
        return round_to_tick(reference, price_tick(reference, meta.max_price_decimals))

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def place_market_order(
        self,
        identity: SigningIdentity,
        instrument: str,
        is_buy: bool,
        quantity: Number,
    ) -> OrderOutcome:
        """
        Emulate a market order with an IOC limit order.

        Args:
            identity: Encrypted key of the trading user
            instrument: Coin name, e.g. "ETH"
            is_buy: Direction
            quantity: Size in the base asset

        Returns:
            OrderOutcome; never raises for venue or validation failures
        """
        try:
            size = to_decimal(quantity)
            if size <= 0:
                raise InvalidOrder(f"Order size must be positive, got {quantity}")

            account = self.vault.account(identity)

            meta = await self.asset_meta(instrument)
            best_bid, best_ask = await self.top_of_book(meta.name)
            price = self.limit_price(best_bid, best_ask, is_buy, meta)

            rounded_size = round_size_down(size, meta.sz_decimals)
            if rounded_size <= 0:
                raise InvalidOrder(
                    f"Size {size} {instrument} is below the minimum increment "
                    f"({meta.size_step})"
                )

            side = "BUY" if is_buy else "SELL"
            logger.info(
                f"Hyperliquid {side} {rounded_size} {instrument} @ {price} IOC "
                f"(bid={best_bid} ask={best_ask}) for {account.address[:10]}..."
            )

            exchange = await self._run(lambda: self._exchange_factory(account))
            response = await self._run(
                lambda: exchange.order(
                    meta.name,
                    is_buy,
                    float(rounded_size),
                    float(price),
                    IOC_ORDER_TYPE,
                    reduce_only=False,
                )
            )
            return self._interpret_response(response, instrument)

        except ExecutionError as e:
            logger.warning(f"Hyperliquid order for {instrument} failed: {e.detail}")
            return OrderOutcome.from_error(e)
        except Exception as e:
            logger.error(f"Hyperliquid order error for {instrument}: {e}")
            return OrderOutcome.failed(ErrorKind.ORDER_FAILED, str(e) or type(e).__name__)

    def _interpret_response(self, response: Dict[str, Any], instrument: str) -> OrderOutcome:
        if not isinstance(response, dict) or response.get("status") != "ok":
            detail = response.get("response") if isinstance(response, dict) else response
            raise OrderFailed(f"Exchange rejected {instrument} order: {detail}")

        body = response.get("response") or {}
        if body.get("type") != "order":
            raise OrderFailed(f"Unexpected exchange response for {instrument}: {body}")

        statuses = (body.get("data") or {}).get("statuses") or []
        status = statuses[0] if statuses else {}

        if "filled" in status:
            filled = status["filled"]
            outcome = OrderOutcome(
                success=True,
                filled_quantity=Decimal(str(filled["totalSz"])),
                avg_price=Decimal(str(filled["avgPx"])),
                order_id=str(filled["oid"]) if filled.get("oid") is not None else None,
            )
            logger.info(f"✅ Hyperliquid fill: {outcome}")
            return outcome

        if "resting" in status:
            raise OrderNotFilled(
                f"{instrument} order resting (not filled immediately); it was cancelled"
            )

        if "error" in status:
            message = str(status["error"])
            if any(marker in message.lower() for marker in _NO_MATCH_MARKERS):
                raise OrderNotFilled(f"{instrument} order not filled: {message}")
            raise OrderFailed(message)

        raise OrderNotFilled(f"{instrument} order not filled")

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_balance(self, address: str) -> Dict[str, Decimal]:
        """Account value and withdrawable margin."""
        info = await self._get_info()
        state = await self._run(lambda: info.user_state(address))
        return {
            "account_value": Decimal(str(state["marginSummary"]["accountValue"])),
            "withdrawable": Decimal(str(state["withdrawable"])),
        }

    async def get_positions(self, address: str) -> List[Position]:
        """Open positions; flat entries are skipped."""
        info = await self._get_info()
        state = await self._run(lambda: info.user_state(address))
        positions = []
        for entry in state.get("assetPositions", []):
            p = entry["position"]
            size = Decimal(str(p["szi"]))
            if size == 0:
                continue
            leverage = p.get("leverage") or {}
            positions.append(Position(
                coin=p["coin"],
                size=size,
                entry_price=Decimal(str(p.get("entryPx") or "0")),
                unrealized_pnl=Decimal(str(p.get("unrealizedPnl") or "0")),
                leverage=str(leverage.get("value", "")),
            ))
        return positions
