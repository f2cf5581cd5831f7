"""Tests for the Swap Router module."""

import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from tradedesk.chain import USDC_BRIDGED, USDC_NATIVE, TransactionReverted
from tradedesk.errors import AggregatorUnavailable, ErrorKind, GasOracleError, InsufficientGas
from tradedesk.gas_oracle import FeeParams
from tradedesk.models import SwapPlan
from tradedesk.router import RouterConfig, SwapRouter

from conftest import FakeSession

FEES = FeeParams(max_fee_per_gas=300 * 10 ** 9, max_priority_fee_per_gas=35 * 10 ** 9)
ONEINCH_ROUTER = "0x111111125421cA6dc452d289314280a0f8842A65"
KYBER_ROUTER = "0x6131B5fae19EA4f9D964eAc0408E4408b66337b5"


def make_plan(backend="1inch", router=ONEINCH_ROUTER, gas=200_000, amount_in=25_000_000):
    return SwapPlan(
        backend=backend,
        amount_in=amount_in,
        token_in=USDC_NATIVE,
        token_out=USDC_BRIDGED,
        router=router,
        calldata="0xdeadbeef",
        estimated_amount_out=24_990_000,
        gas_estimate=gas,
    )


def make_backend(name, plan=None, error=None):
    backend = MagicMock()
    backend.name = name
    if error is not None:
        backend.plan = AsyncMock(side_effect=error)
    else:
        backend.plan = AsyncMock(return_value=plan)
    return backend


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def calls():
    return []


@pytest.fixture
def mock_chain(calls):
    """Mock Polygon client: 100 USDC, no allowance."""
    chain = AsyncMock()
    chain.token_decimals = AsyncMock(return_value=6)
    chain.token_balance = AsyncMock(return_value=100_000_000)
    chain.allowance = AsyncMock(return_value=0)
    chain.estimate_gas = AsyncMock(return_value=150_000)

    async def approve(account, token, spender, fees, on_submitted=None, **kwargs):
        calls.append(("approve", spender))
        if on_submitted:
            await on_submitted("0xapprove000000000000")
        return "0xapprove000000000000"

    async def send_transaction(account, to, data, value, gas, fees, on_submitted=None):
        calls.append(("swap", to, gas))
        if on_submitted:
            await on_submitted("0xswap0000000000000000")
        return "0xswap0000000000000000"

    chain.approve = AsyncMock(side_effect=approve)
    chain.send_transaction = AsyncMock(side_effect=send_transaction)
    return chain


@pytest.fixture
def mock_gas_oracle():
    oracle = AsyncMock()
    oracle.quote_fee_params = AsyncMock(return_value=FEES)
    return oracle


@pytest.fixture
def oneinch():
    return make_backend("1inch", plan=make_plan())


@pytest.fixture
def kyber():
    return make_backend("kyberswap", plan=make_plan("kyberswap", KYBER_ROUTER, gas=180_000))


def make_router(vault, chain, oracle, backends):
    return SwapRouter(vault, chain, oracle, backends, RouterConfig(), session=FakeSession())


@pytest.fixture
def router(vault, mock_chain, mock_gas_oracle, oneinch, kyber):
    return make_router(vault, mock_chain, mock_gas_oracle, [oneinch, kyber])


# ============================================================================
# Unit Tests - Balance pre-checks
# ============================================================================

class TestBalanceChecks:
    """Local failures that never reach an aggregator."""

    @pytest.mark.asyncio
    async def test_zero_balance(self, router, identity, mock_chain, oneinch):
        mock_chain.token_balance.return_value = 0

        outcome = await router.swap(identity, 10)

        assert outcome.success is False
        assert outcome.error_kind is ErrorKind.INSUFFICIENT_BALANCE
        oneinch.plan.assert_not_called()

    @pytest.mark.asyncio
    async def test_amount_above_balance(self, router, identity, mock_chain, oneinch, kyber):
        mock_chain.token_balance.return_value = 5_000_000

        outcome = await router.swap(identity, Decimal("25"))

        assert outcome.error_kind is ErrorKind.INSUFFICIENT_BALANCE
        assert "Have 5 USDC" in outcome.error_detail
        oneinch.plan.assert_not_called()
        kyber.plan.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, router, identity, mock_chain):
        outcome = await router.swap(identity, 0)

        assert outcome.error_kind is ErrorKind.INVALID_ORDER
        mock_chain.token_balance.assert_not_called()

    @pytest.mark.asyncio
    async def test_amount_below_smallest_unit(self, router, identity, mock_chain, oneinch, kyber):
        outcome = await router.swap(identity, "0.0000001")

        assert outcome.success is False
        assert outcome.error_kind is ErrorKind.INVALID_ORDER
        assert "smallest unit" in outcome.error_detail
        mock_chain.token_balance.assert_not_called()
        oneinch.plan.assert_not_called()
        kyber.plan.assert_not_called()

    @pytest.mark.asyncio
    async def test_reported_amount_matches_units_sent(self, router, identity, oneinch):
        outcome = await router.swap(identity, "25.1234567")

        assert outcome.success is True
        assert outcome.amount_in == Decimal("25.123456")
        request = oneinch.plan.call_args[0][1]
        assert request.amount_in == 25_123_456


# ============================================================================
# Unit Tests - HTTP session
# ============================================================================

class TestSession:

    @pytest.mark.asyncio
    async def test_owned_session_uses_configured_timeout(self, vault, mock_chain, mock_gas_oracle, oneinch):
        router = SwapRouter(vault, mock_chain, mock_gas_oracle, [oneinch], http_timeout=7.5)

        session = router._get_session()
        try:
            assert session.timeout.total == 7.5
        finally:
            await router.close()

    @pytest.mark.asyncio
    async def test_injected_session_kept(self, vault, mock_chain, mock_gas_oracle, oneinch):
        session = FakeSession()
        router = SwapRouter(vault, mock_chain, mock_gas_oracle, [oneinch], session=session)

        assert router._get_session() is session


# ============================================================================
# Unit Tests - Backend fallback
# ============================================================================

class TestFallback:

    @pytest.mark.asyncio
    async def test_primary_backend_used_when_available(self, router, identity, oneinch, kyber):
        outcome = await router.swap(identity, 25)

        assert outcome.success is True
        assert outcome.backend == "1inch"
        kyber.plan.assert_not_called()

        request = oneinch.plan.call_args.args[1]
        assert request.amount_in == 25_000_000
        assert request.token_in == USDC_NATIVE
        assert request.token_out == USDC_BRIDGED

    @pytest.mark.asyncio
    async def test_falls_back_once_on_primary_failure(self, vault, mock_chain, mock_gas_oracle, kyber, identity):
        failing = make_backend("1inch", error=AggregatorUnavailable("1inch", "HTTP 500"))
        router = make_router(vault, mock_chain, mock_gas_oracle, [failing, kyber])

        outcome = await router.swap(identity, 25)

        assert outcome.success is True
        assert outcome.backend == "kyberswap"
        assert kyber.plan.await_count == 1

    @pytest.mark.asyncio
    async def test_all_backends_failing_is_no_route(self, vault, mock_chain, mock_gas_oracle, identity):
        backends = [
            make_backend("1inch", error=AggregatorUnavailable("1inch", "HTTP 500")),
            make_backend("kyberswap", error=AggregatorUnavailable("kyberswap", "no viable route")),
        ]
        router = make_router(vault, mock_chain, mock_gas_oracle, backends)

        outcome = await router.swap(identity, 25)

        assert outcome.error_kind is ErrorKind.NO_ROUTE_FOUND
        assert "no viable route" in outcome.error_detail
        mock_chain.approve.assert_not_called()
        mock_chain.send_transaction.assert_not_called()

    def test_router_requires_backends(self, vault, mock_chain, mock_gas_oracle):
        with pytest.raises(ValueError):
            SwapRouter(vault, mock_chain, mock_gas_oracle, [])


# ============================================================================
# Unit Tests - Allowance and execution
# ============================================================================

class TestExecution:

    @pytest.mark.asyncio
    async def test_allowance_checked_against_selected_router(self, vault, mock_chain, mock_gas_oracle, kyber, identity, calls):
        failing = make_backend("1inch", error=AggregatorUnavailable("1inch", "HTTP 500"))
        router = make_router(vault, mock_chain, mock_gas_oracle, [failing, kyber])

        await router.swap(identity, 25)

        owner = mock_chain.allowance.call_args.args[1]
        mock_chain.allowance.assert_awaited_once_with(USDC_NATIVE, owner, KYBER_ROUTER)
        assert calls[0] == ("approve", KYBER_ROUTER)
        assert calls[1][1] == KYBER_ROUTER

    @pytest.mark.asyncio
    async def test_approval_precedes_swap(self, router, identity, calls):
        outcome = await router.swap(identity, 25)

        assert [c[0] for c in calls] == ["approve", "swap"]
        assert outcome.approval_tx_hash == "0xapprove000000000000"
        assert outcome.tx_hash == "0xswap0000000000000000"

    @pytest.mark.asyncio
    async def test_sufficient_allowance_skips_approval(self, router, identity, mock_chain, calls):
        mock_chain.allowance.return_value = 25_000_000

        outcome = await router.swap(identity, 25)

        assert outcome.success is True
        assert outcome.approval_tx_hash is None
        assert [c[0] for c in calls] == ["swap"]

    @pytest.mark.asyncio
    async def test_gas_limit_inflated(self, router, identity, calls):
        await router.swap(identity, 25)

        _, _, gas = calls[-1]
        assert gas == 260_000

    @pytest.mark.asyncio
    async def test_missing_gas_estimate_is_estimated(self, vault, mock_chain, mock_gas_oracle, identity, calls):
        backend = make_backend("1inch", plan=make_plan(gas=0))
        router = make_router(vault, mock_chain, mock_gas_oracle, [backend])

        await router.swap(identity, 25)

        mock_chain.estimate_gas.assert_awaited_once()
        assert calls[-1][2] == 195_000

    @pytest.mark.asyncio
    async def test_outcome_reports_estimated_output(self, router, identity):
        outcome = await router.swap(identity, "25")

        assert outcome.amount_in == Decimal("25")
        assert outcome.amount_out == Decimal("24.99")

    @pytest.mark.asyncio
    async def test_reverted_swap(self, router, identity, mock_chain):
        mock_chain.send_transaction.side_effect = TransactionReverted("0xbad")

        outcome = await router.swap(identity, 25)

        assert outcome.error_kind is ErrorKind.SWAP_FAILED
        assert outcome.approval_tx_hash == "0xapprove000000000000"

    @pytest.mark.asyncio
    async def test_reverted_approval_stops_swap(self, router, identity, mock_chain):
        mock_chain.approve.side_effect = TransactionReverted("0xbad")

        outcome = await router.swap(identity, 25)

        assert outcome.error_kind is ErrorKind.APPROVAL_FAILED
        mock_chain.send_transaction.assert_not_called()

    @pytest.mark.asyncio
    async def test_out_of_gas_funds(self, router, identity, mock_chain):
        mock_chain.send_transaction.side_effect = InsufficientGas("Insufficient POL for gas fees")

        outcome = await router.swap(identity, 25)
        assert outcome.error_kind is ErrorKind.INSUFFICIENT_GAS

    @pytest.mark.asyncio
    async def test_fee_oracle_failure(self, router, identity, mock_gas_oracle, mock_chain):
        mock_gas_oracle.quote_fee_params.side_effect = GasOracleError("rpc down")

        outcome = await router.swap(identity, 25)

        assert outcome.error_kind is ErrorKind.FEE_ORACLE_UNAVAILABLE
        mock_chain.approve.assert_not_called()


# ============================================================================
# Unit Tests - Progress notifications
# ============================================================================

class TestProgress:

    @pytest.mark.asyncio
    async def test_milestones_in_order(self, router, identity):
        messages = []

        await router.swap(identity, 25, on_progress=messages.append)

        assert messages == [
            "Finding best swap route...",
            "Approving USDC spend (1/2)...",
            "Approval tx: 0xapprove0... waiting for confirmation",
            "Approval confirmed ✓",
            "Executing swap (2/2)...",
            "Swap tx: 0xswap0000... waiting for confirmation",
        ]

    @pytest.mark.asyncio
    async def test_fallback_is_announced(self, vault, mock_chain, mock_gas_oracle, kyber, identity):
        failing = make_backend("1inch", error=AggregatorUnavailable("1inch", "HTTP 500"))
        router = make_router(vault, mock_chain, mock_gas_oracle, [failing, kyber])
        messages = []

        await router.swap(identity, 25, on_progress=messages.append)

        assert "Using kyberswap aggregator..." in messages

    @pytest.mark.asyncio
    async def test_async_callback_supported(self, router, identity):
        callback = AsyncMock()

        outcome = await router.swap(identity, 25, on_progress=callback)

        assert outcome.success is True
        assert callback.await_count == 6

    @pytest.mark.asyncio
    async def test_result_independent_of_callback(self, vault, mock_gas_oracle, identity, calls, mock_chain):
        with_cb = make_router(vault, mock_chain, mock_gas_oracle, [make_backend("1inch", plan=make_plan())])
        without_cb = make_router(vault, mock_chain, mock_gas_oracle, [make_backend("1inch", plan=make_plan())])

        first = await with_cb.swap(identity, 25, on_progress=lambda m: None)
        second = await without_cb.swap(identity, 25)

        assert first == second
