"""Swap Router - Rebalance native USDC into USDC.e through aggregator backends."""

import inspect
import logging
import math
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Any, Callable, List, Optional, Sequence

import aiohttp
from eth_account.signers.local import LocalAccount

from .aggregators import SwapBackend, SwapRequest
from .chain import USDC_BRIDGED, USDC_NATIVE, ChainClient, TransactionReverted
from .errors import (
    AggregatorUnavailable,
    ApprovalFailed,
    ErrorKind,
    ExecutionError,
    InsufficientBalance,
    InvalidOrder,
    NoRouteFound,
    SwapFailed,
)
from .gas_oracle import GasOracle
from .key_manager import KeyVault, SigningIdentity
from .models import Number, SwapOutcome, SwapPlan, to_decimal

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], Any]


@dataclass
class RouterConfig:
    """Configuration for the swap router."""

    token_in: str = USDC_NATIVE
    token_out: str = USDC_BRIDGED
    token_symbol: str = "USDC"

    slippage_bps: int = 100  # 1%

    # Aggregator gas estimates are padded to absorb on-chain variance
    gas_limit_multiplier: Decimal = Decimal("1.3")


async def _notify(on_progress: Optional[ProgressCallback], message: str) -> None:
    """Emit a progress milestone. Accepts plain or async callbacks."""
    if on_progress is None:
        return
    result = on_progress(message)
    if inspect.isawaitable(result):
        await result


class SwapRouter:
    """
    Swaps one stablecoin variant into the other on Polygon.

    Backends are tried in order until one produces a transaction payload.
    The allowance check, approval and swap then run against that payload's
    router address only.

    Flow:
        Balance check -> Plan (backend 1, 2, ...) -> Allowance -> Approve? -> Swap
    """

    def __init__(
        self,
        vault: KeyVault,
        chain: ChainClient,
        gas_oracle: GasOracle,
        backends: Sequence[SwapBackend],
        config: RouterConfig = None,
        session: aiohttp.ClientSession = None,
        http_timeout: float = 15.0,
    ):
        """
        Args:
            vault: Key vault for unlocking signing identities
            chain: Polygon client
            gas_oracle: Fee parameters for approval and swap transactions
            backends: Aggregators in preference order
            config: Router configuration
            session: Optional aiohttp session (created if not provided)
            http_timeout: Total per-request timeout for a session created here
        """
        if not backends:
            raise ValueError("SwapRouter needs at least one backend")
        self.vault = vault
        self.chain = chain
        self.gas_oracle = gas_oracle
        self.backends: List[SwapBackend] = list(backends)
        self.config = config or RouterConfig()
        self._session = session
        self._owns_session = session is None
        self.http_timeout = http_timeout

    def _new_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.http_timeout))

    async def __aenter__(self):
        if self._session is None:
            self._session = self._new_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = self._new_session()
            self._owns_session = True
        return self._session

    async def swap(
        self,
        identity: SigningIdentity,
        amount: Number,
        on_progress: ProgressCallback = None,
    ) -> SwapOutcome:
        """
        Convert `amount` of token_in into token_out.

        Args:
            identity: Encrypted key of the user
            amount: Amount in whole tokens, e.g. 25 for 25 USDC
            on_progress: Optional milestone callback (route search, approval, swap)

        Returns:
            SwapOutcome with the estimated output and settlement tx hash
        """
        approval_tx: Optional[str] = None
        symbol = self.config.token_symbol
        try:
            requested = to_decimal(amount)
            if requested <= 0:
                raise InvalidOrder(f"Swap amount must be positive, got {amount}")

            account = self.vault.account(identity)

            decimals = await self.chain.token_decimals(self.config.token_in)
            amount_units = int(requested.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))
            if amount_units == 0:
                raise InvalidOrder(
                    f"Swap amount {requested} {symbol} is below the token's smallest unit"
                )

            balance = await self.chain.token_balance(self.config.token_in, account.address)
            if balance == 0:
                raise InsufficientBalance(f"No native {symbol} balance to swap")

            if amount_units > balance:
                have = Decimal(balance).scaleb(-decimals).normalize()
                raise InsufficientBalance(
                    f"Insufficient balance. Have {have:f} {symbol}, requested {requested} {symbol}"
                )

            await _notify(on_progress, "Finding best swap route...")
            logger.info(f"Routing swap of {requested} {symbol} for {account.address[:10]}...")

            plan = await self.find_plan(
                SwapRequest(
                    token_in=self.config.token_in,
                    token_out=self.config.token_out,
                    amount_in=amount_units,
                    sender=account.address,
                    slippage_bps=self.config.slippage_bps,
                ),
                on_progress,
            )

            approval_tx = await self._ensure_allowance(account, plan, on_progress)
            tx_hash = await self._execute(account, plan, on_progress)

            outcome = SwapOutcome(
                success=True,
                amount_in=Decimal(amount_units).scaleb(-decimals),
                amount_out=Decimal(plan.estimated_amount_out).scaleb(-decimals),
                tx_hash=tx_hash,
                backend=plan.backend,
                approval_tx_hash=approval_tx,
            )
            logger.info(f"✅ {outcome}")
            return outcome

        except ExecutionError as e:
            logger.warning(f"Swap failed [{e.kind.value}]: {e.detail}")
            return SwapOutcome(
                success=False,
                approval_tx_hash=approval_tx,
                error_kind=e.kind,
                error_detail=e.detail,
            )
        except Exception as e:
            logger.error(f"Swap error: {e}")
            return SwapOutcome(
                success=False,
                approval_tx_hash=approval_tx,
                error_kind=ErrorKind.SWAP_FAILED,
                error_detail=str(e) or type(e).__name__,
            )

    async def find_plan(
        self,
        request: SwapRequest,
        on_progress: ProgressCallback = None,
    ) -> SwapPlan:
        """
        Ask each backend in turn for a transaction payload.

        Raises:
            NoRouteFound: If every backend failed
        """
        failures = []
        session = self._get_session()

        for position, backend in enumerate(self.backends):
            if position > 0:
                logger.warning(f"Falling back to {backend.name}...")
                await _notify(on_progress, f"Using {backend.name} aggregator...")
            try:
                return await backend.plan(session, request)
            except AggregatorUnavailable as e:
                logger.warning(f"Aggregator {e.backend} unavailable: {e.reason}")
                failures.append(str(e))

        raise NoRouteFound(f"No swap route found on any aggregator ({'; '.join(failures)})")

    async def _ensure_allowance(
        self,
        account: LocalAccount,
        plan: SwapPlan,
        on_progress: ProgressCallback = None,
    ) -> Optional[str]:
        """Approve this plan's router if its current allowance is short."""
        current = await self.chain.allowance(plan.token_in, account.address, plan.router)
        if current >= plan.amount_in:
            return None

        fees = await self.gas_oracle.quote_fee_params()
        await _notify(on_progress, f"Approving {self.config.token_symbol} spend (1/2)...")
        logger.info(f"Approving {self.config.token_symbol} for {plan.backend} router {plan.router}")

        try:
            tx_hash = await self.chain.approve(
                account,
                plan.token_in,
                plan.router,
                fees,
                on_submitted=lambda h: _notify(
                    on_progress, f"Approval tx: {h[:10]}... waiting for confirmation"
                ),
            )
        except TransactionReverted as e:
            raise ApprovalFailed(f"Approval transaction {e.tx_hash} reverted") from e
        except ExecutionError:
            raise
        except Exception as e:
            raise ApprovalFailed(f"Approval failed: {e}") from e

        await _notify(on_progress, "Approval confirmed ✓")
        return tx_hash

    async def _execute(
        self,
        account: LocalAccount,
        plan: SwapPlan,
        on_progress: ProgressCallback = None,
    ) -> str:
        gas_estimate = plan.gas_estimate
        if gas_estimate <= 0:
            gas_estimate = await self.chain.estimate_gas({
                "from": account.address,
                "to": plan.router,
                "data": plan.calldata,
                "value": plan.value,
            })
        gas_limit = math.ceil(Decimal(gas_estimate) * self.config.gas_limit_multiplier)

        # Fresh fees: an approval may have taken several blocks
        fees = await self.gas_oracle.quote_fee_params()

        await _notify(on_progress, "Executing swap (2/2)...")
        logger.info(f"Executing {plan.backend} swap: gas_limit={gas_limit}")

        try:
            return await self.chain.send_transaction(
                account,
                to=plan.router,
                data=plan.calldata,
                value=plan.value,
                gas=gas_limit,
                fees=fees,
                on_submitted=lambda h: _notify(
                    on_progress, f"Swap tx: {h[:10]}... waiting for confirmation"
                ),
            )
        except TransactionReverted as e:
            raise SwapFailed(
                f"Swap transaction {e.tx_hash} reverted; input tokens were not spent"
            ) from e
        except ExecutionError:
            raise
        except Exception as e:
            raise SwapFailed(f"Swap transaction failed: {e}") from e
