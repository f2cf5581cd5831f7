"""Tests for the Hyperliquid Executor module."""

import pytest
from decimal import Decimal
from unittest.mock import MagicMock

from tradedesk.errors import ErrorKind
from tradedesk.hyperliquid_executor import (
    IOC_ORDER_TYPE,
    HyperliquidExecutor,
    price_tick,
    round_size_down,
    round_to_tick,
)
from tradedesk.key_manager import SigningIdentity
from tradedesk.models import AssetMeta


def filled_response(total_sz="1.2345", avg_px="100.25", oid=77):
    return {
        "status": "ok",
        "response": {
            "type": "order",
            "data": {"statuses": [{"filled": {"totalSz": total_sz, "avgPx": avg_px, "oid": oid}}]},
        },
    }


def status_response(status):
    return {"status": "ok", "response": {"type": "order", "data": {"statuses": [status]}}}


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_info():
    """Mock Hyperliquid Info client."""
    info = MagicMock()
    info.meta.return_value = {
        "universe": [
            {"name": "BTC", "szDecimals": 5},
            {"name": "ETH", "szDecimals": 4},
        ]
    }
    info.l2_snapshot.return_value = {
        "coin": "ETH",
        "levels": [
            [{"px": "100.0", "sz": "5", "n": 2}],
            [{"px": "100.2", "sz": "3", "n": 1}],
        ],
    }
    return info


@pytest.fixture
def mock_exchange():
    """Mock Hyperliquid Exchange client."""
    exchange = MagicMock()
    exchange.order.return_value = filled_response()
    return exchange


@pytest.fixture
def executor(vault, mock_info, mock_exchange):
    return HyperliquidExecutor(
        vault,
        slippage=Decimal("0.005"),
        info=mock_info,
        exchange_factory=lambda account: mock_exchange,
    )


# ============================================================================
# Unit Tests - Rounding helpers
# ============================================================================

class TestRounding:
    """Size and price precision."""

    def test_size_rounds_down(self):
        assert round_size_down(Decimal("0.12349"), 3) == Decimal("0.123")
        assert round_size_down(Decimal("1.23456"), 4) == Decimal("1.2345")

    def test_size_below_step_rounds_to_zero(self):
        assert round_size_down(Decimal("0.00009"), 4) == 0

    def test_price_tick_limited_by_decimals(self):
        # szDecimals 4 -> at most 2 price decimals
        assert price_tick(Decimal("100.701"), 2) == Decimal("0.01")
        assert price_tick(Decimal("1.23456"), 2) == Decimal("0.01")

    def test_price_tick_limited_by_significant_figures(self):
        assert price_tick(Decimal("65432.1"), 1) == Decimal("1")
        assert price_tick(Decimal("1234.5678"), 2) == Decimal("0.1")

    def test_round_to_nearest_tick(self):
        assert round_to_tick(Decimal("100.701"), Decimal("0.01")) == Decimal("100.70")
        assert round_to_tick(Decimal("100.706"), Decimal("0.01")) == Decimal("100.71")
        assert round_to_tick(Decimal("99.499"), Decimal("0.01")) == Decimal("99.50")


class TestLimitPrice:
    """Slippage-adjusted reference prices."""

    def test_buy_prices_off_ask(self, executor):
        meta = AssetMeta("ETH", 1, 4, 2)
        price = executor.limit_price(Decimal("100.0"), Decimal("100.2"), True, meta)
        assert price == Decimal("100.70")

    def test_sell_prices_off_bid(self, executor):
        meta = AssetMeta("ETH", 1, 4, 2)
        price = executor.limit_price(Decimal("100.0"), Decimal("100.2"), False, meta)
        assert price == Decimal("99.50")


# ============================================================================
# Unit Tests - Market data
# ============================================================================

class TestMarketData:

    @pytest.mark.asyncio
    async def test_asset_meta(self, executor):
        meta = await executor.asset_meta("ETH")

        assert meta.index == 1
        assert meta.sz_decimals == 4
        assert meta.max_price_decimals == 2

    @pytest.mark.asyncio
    async def test_available_instruments(self, executor):
        assert await executor.available_instruments() == ["BTC", "ETH"]

    @pytest.mark.asyncio
    async def test_top_of_book(self, executor):
        bid, ask = await executor.top_of_book("ETH")
        assert (bid, ask) == (Decimal("100.0"), Decimal("100.2"))


# ============================================================================
# Unit Tests - place_market_order
# ============================================================================

class TestPlaceMarketOrder:
    """IOC market-order emulation."""

    @pytest.mark.asyncio
    async def test_buy_submits_ioc_at_rounded_price_and_size(self, executor, identity, mock_exchange):
        outcome = await executor.place_market_order(identity, "ETH", True, Decimal("1.23456"))

        mock_exchange.order.assert_called_once_with(
            "ETH", True, 1.2345, 100.70, IOC_ORDER_TYPE, reduce_only=False
        )
        assert outcome.success is True
        assert outcome.filled_quantity == Decimal("1.2345")
        assert outcome.avg_price == Decimal("100.25")
        assert outcome.order_id == "77"
        assert outcome.error_kind is None

    @pytest.mark.asyncio
    async def test_sell_prices_below_bid(self, executor, identity, mock_exchange):
        await executor.place_market_order(identity, "ETH", False, "0.5")

        args = mock_exchange.order.call_args.args
        assert args[1] is False
        assert args[3] == 99.50

    @pytest.mark.asyncio
    async def test_unknown_instrument_fails_before_book(self, executor, identity, mock_info, mock_exchange):
        outcome = await executor.place_market_order(identity, "NOPE", True, 1)

        assert outcome.success is False
        assert outcome.error_kind is ErrorKind.UNKNOWN_INSTRUMENT
        mock_info.l2_snapshot.assert_not_called()
        mock_exchange.order.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_book_side(self, executor, identity, mock_info, mock_exchange):
        mock_info.l2_snapshot.return_value = {"levels": [[{"px": "100.0", "sz": "1", "n": 1}], []]}

        outcome = await executor.place_market_order(identity, "ETH", True, 1)

        assert outcome.error_kind is ErrorKind.MARKET_DATA_UNAVAILABLE
        mock_exchange.order.assert_not_called()

    @pytest.mark.asyncio
    async def test_resting_status_is_not_filled(self, executor, identity, mock_exchange):
        mock_exchange.order.return_value = status_response({"resting": {"oid": 5}})

        outcome = await executor.place_market_order(identity, "ETH", True, 1)

        assert outcome.success is False
        assert outcome.error_kind is ErrorKind.ORDER_NOT_FILLED
        assert outcome.filled_quantity is None

    @pytest.mark.asyncio
    async def test_no_match_error_is_not_filled(self, executor, identity, mock_exchange):
        mock_exchange.order.return_value = status_response(
            {"error": "Order could not immediately match against any resting orders."}
        )

        outcome = await executor.place_market_order(identity, "ETH", True, 1)
        assert outcome.error_kind is ErrorKind.ORDER_NOT_FILLED

    @pytest.mark.asyncio
    async def test_other_status_error_is_order_failed(self, executor, identity, mock_exchange):
        mock_exchange.order.return_value = status_response({"error": "Insufficient margin to place order."})

        outcome = await executor.place_market_order(identity, "ETH", True, 1)

        assert outcome.error_kind is ErrorKind.ORDER_FAILED
        assert "Insufficient margin" in outcome.error_detail

    @pytest.mark.asyncio
    async def test_transport_error_status(self, executor, identity, mock_exchange):
        mock_exchange.order.return_value = {"status": "err", "response": "User or API Wallet does not exist."}

        outcome = await executor.place_market_order(identity, "ETH", True, 1)
        assert outcome.error_kind is ErrorKind.ORDER_FAILED

    @pytest.mark.asyncio
    async def test_sdk_exception_is_order_failed(self, executor, identity, mock_exchange):
        mock_exchange.order.side_effect = RuntimeError("connection reset")

        outcome = await executor.place_market_order(identity, "ETH", True, 1)

        assert outcome.error_kind is ErrorKind.ORDER_FAILED
        assert outcome.error_detail == "connection reset"

    @pytest.mark.asyncio
    async def test_size_below_increment_is_invalid(self, executor, identity, mock_exchange):
        outcome = await executor.place_market_order(identity, "ETH", True, "0.00001")

        assert outcome.error_kind is ErrorKind.INVALID_ORDER
        mock_exchange.order.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_positive_size_is_invalid(self, executor, identity, mock_info):
        outcome = await executor.place_market_order(identity, "ETH", True, 0)

        assert outcome.error_kind is ErrorKind.INVALID_ORDER
        mock_info.meta.assert_not_called()

    @pytest.mark.asyncio
    async def test_bad_key_is_decryption_failure(self, executor, mock_exchange):
        outcome = await executor.place_market_order(SigningIdentity("aa:bb:cc"), "ETH", True, 1)

        assert outcome.error_kind is ErrorKind.DECRYPTION_FAILURE
        mock_exchange.order.assert_not_called()


# ============================================================================
# Unit Tests - Account
# ============================================================================

class TestAccount:

    @pytest.mark.asyncio
    async def test_balance_and_positions(self, executor, mock_info):
        mock_info.user_state.return_value = {
            "marginSummary": {"accountValue": "1523.40"},
            "withdrawable": "900.1",
            "assetPositions": [
                {"position": {"coin": "ETH", "szi": "0.5", "entryPx": "3000", "unrealizedPnl": "12.5",
                              "leverage": {"type": "cross", "value": 5}}},
                {"position": {"coin": "BTC", "szi": "0.0", "entryPx": None, "unrealizedPnl": "0"}},
            ],
        }

        balance = await executor.get_balance("0xabc")
        positions = await executor.get_positions("0xabc")

        assert balance == {"account_value": Decimal("1523.40"), "withdrawable": Decimal("900.1")}
        assert len(positions) == 1
        assert positions[0].coin == "ETH"
        assert positions[0].size == Decimal("0.5")
        assert positions[0].leverage == "5"
