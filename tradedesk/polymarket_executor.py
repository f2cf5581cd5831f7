"""Polymarket Executor - Fill-or-kill market orders on the Polymarket CLOB."""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

import aiohttp
from eth_account.signers.local import LocalAccount
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    AssetType,
    BalanceAllowanceParams,
    MarketOrderArgs,
    OrderType,
)

from .chain import (
    CTF_EXCHANGE,
    MAX_UINT256,
    NEG_RISK_CTF_EXCHANGE,
    USDC_BRIDGED,
    ChainClient,
    TransactionReverted,
)
from .credentials import EOA_SIGNATURE_TYPE, CredentialCache, VenueCredential
from .errors import (
    ApprovalFailed,
    ErrorKind,
    ExecutionError,
    InvalidOrder,
    MarketDataUnavailable,
    MarketNotFound,
    OrderFailed,
)
from .gas_oracle import GasOracle
from .key_manager import KeyVault, SigningIdentity, private_key_hex
from .models import MarketInfo, Number, OpenOrder, OrderOutcome, Outcome, Side, to_decimal
from .polymarket_errors import classify_clob_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

USDC_DECIMALS = 6

# Gamma's exact-id filter returns fuzzy matches, so resolution scans this page
RESOLVE_PAGE_SIZE = 200

TRENDING_BATCH_SIZE = 50
TRENDING_MAX_PAGES = 10

ClobClientFactory = Callable[[LocalAccount, VenueCredential], ClobClient]


class PolymarketExecutor:
    """
    Places market orders on Polymarket for custodial users.

    Order flow for a BUY:
        1. Resolve the market (exact condition id match, order book enabled)
        2. Pick the outcome token by position (0 = Yes, 1 = No)
        3. Ensure USDC.e allowance for the exchange contract that will settle
           the trade; approve max and wait for confirmation if needed
        4. Get (or derive once) CLOB API credentials
        5. Post a fill-or-kill market order

    Step 3 always completes before step 5; an order is never posted while
    its approval is unconfirmed.
    """

    def __init__(
        self,
        vault: KeyVault,
        credentials: CredentialCache,
        gas_oracle: GasOracle,
        chain: ChainClient,
        clob_url: str = "https://clob.polymarket.com",
        gamma_url: str = "https://gamma-api.polymarket.com",
        chain_id: int = 137,
        session: aiohttp.ClientSession = None,
        clob_client_factory: ClobClientFactory = None,
        http_timeout: float = 15.0,
    ):
        """
        Args:
            vault: Key vault for unlocking signing identities
            credentials: Shared CLOB credential cache
            gas_oracle: Fee parameters for approval transactions
            chain: Polygon client for allowance reads and approvals
            clob_url: CLOB API base URL
            gamma_url: Gamma market-listing API base URL
            chain_id: Polygon chain id
            session: Optional aiohttp session (created if not provided)
            clob_client_factory: Builds an authenticated CLOB client (tests)
            http_timeout: Total per-request timeout for a session created here
        """
        self.vault = vault
        self.credentials = credentials
        self.gas_oracle = gas_oracle
        self.chain = chain
        self.clob_url = clob_url
        self.gamma_url = gamma_url.rstrip("/")
        self.chain_id = chain_id
        self._session = session
        self._owns_session = session is None
        self._client_factory = clob_client_factory or self._build_clob_client
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

    async def _run(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    def _build_clob_client(self, account: LocalAccount, credential: VenueCredential) -> ClobClient:
        return ClobClient(
            self.clob_url,
            chain_id=self.chain_id,
            key=private_key_hex(account),
            creds=credential.to_api_creds(),
            signature_type=EOA_SIGNATURE_TYPE,
        )

    async def _client_for(self, account: LocalAccount) -> ClobClient:
        credential = await self.credentials.get_for_account(account)
        return await self._run(lambda: self._client_factory(account, credential))

    # ------------------------------------------------------------------
    # Market discovery (Gamma API)
    # ------------------------------------------------------------------

    async def _fetch_markets(self, params: Dict[str, str]) -> List[Dict[str, Any]]:
        url = f"{self.gamma_url}/markets"
        try:
            async with self._get_session().get(url, params=params) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Gamma markets request failed ({response.status}): {error_text}")
                    raise MarketDataUnavailable(
                        f"Failed to fetch markets (HTTP {response.status})"
                    )
                return await response.json()
        except aiohttp.ClientError as e:
            logger.error(f"Gamma markets request error: {e}")
            raise MarketDataUnavailable(f"Failed to fetch markets: {e}") from e

    async def resolve_market(self, condition_id: str) -> Optional[MarketInfo]:
        """
        Find an active, order-book-enabled market by exact condition id.

        Returns:
            MarketInfo, or None when no exact tradeable match exists

        Raises:
            MarketDataUnavailable: If the listing endpoint fails
        """
        markets = await self._fetch_markets({
            "closed": "false",
            "active": "true",
            "order": "volume",
            "ascending": "false",
            "limit": str(RESOLVE_PAGE_SIZE),
        })

        raw = next((m for m in markets if m.get("conditionId") == condition_id), None)
        if raw is None:
            logger.info(f"Market {condition_id} not found in active markets")
            return None

        market = MarketInfo.from_gamma(raw)
        if not market.enable_order_book:
            logger.info(f"Market {condition_id} does not have order book enabled")
            return None
        if not market.is_tradeable:
            logger.info(f"Market {condition_id} has no valid tokens")
            return None

        return market

    async def trending_markets(self, limit: int = 10) -> List[MarketInfo]:
        """Highest-volume tradeable markets, paging until `limit` are found."""
        tradeable: List[MarketInfo] = []
        offset = 0

        for _ in range(TRENDING_MAX_PAGES):
            batch = await self._fetch_markets({
                "closed": "false",
                "active": "true",
                "order": "volume",
                "ascending": "false",
                "limit": str(TRENDING_BATCH_SIZE),
                "offset": str(offset),
            })
            if not batch:
                break

            for raw in batch:
                market = MarketInfo.from_gamma(raw)
                if market.is_tradeable:
                    tradeable.append(market)
                    if len(tradeable) >= limit:
                        return tradeable

            offset += TRENDING_BATCH_SIZE

        logger.info(f"Found {len(tradeable)} tradeable markets with order books")
        return tradeable

    async def search_markets(self, query: str, limit: int = 5) -> List[MarketInfo]:
        """Free-text market search."""
        markets = await self._fetch_markets({
            "closed": "false",
            "active": "true",
            "limit": str(limit),
            "_q": query,
        })
        return [MarketInfo.from_gamma(m) for m in markets]

    # ------------------------------------------------------------------
    # Allowance
    # ------------------------------------------------------------------

    @staticmethod
    def spender_for(market: MarketInfo) -> str:
        """Exchange contract that pulls USDC.e when this market's orders settle."""
        return NEG_RISK_CTF_EXCHANGE if market.neg_risk else CTF_EXCHANGE

    async def ensure_approval(self, account: LocalAccount, spender: str) -> Optional[str]:
        """
        Make sure `spender` may pull USDC.e from the account.

        Allowance is read fresh every time. If it is below the max, a max
        approval is sent and awaited.

        Returns:
            Approval tx hash if one was needed, else None

        Raises:
            ApprovalFailed, InsufficientGas, GasOracleError
        """
        current = await self.chain.allowance(USDC_BRIDGED, account.address, spender)
        if current >= MAX_UINT256:
            logger.debug("USDC.e already approved for Polymarket exchange")
            return None

        logger.info(f"Approving USDC.e for Polymarket exchange {spender[:10]}...")
        fees = await self.gas_oracle.quote_fee_params()

        try:
            tx_hash = await self.chain.approve(account, USDC_BRIDGED, spender, fees)
        except TransactionReverted as e:
            raise ApprovalFailed(f"Approval transaction {e.tx_hash} reverted") from e
        except ExecutionError:
            raise
        except Exception as e:
            raise ApprovalFailed(f"Approval failed: {e}") from e

        logger.info(f"USDC.e approved in tx: {tx_hash}")
        return tx_hash

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def _resolve_ref(self, market: Union[MarketInfo, str]) -> MarketInfo:
        if isinstance(market, MarketInfo):
            if not market.is_tradeable:
                raise MarketNotFound(f"Market {market.condition_id} is not tradeable on the CLOB")
            return market
        resolved = await self.resolve_market(market)
        if resolved is None:
            raise MarketNotFound(
                f"Market {market} not found among active order-book markets"
            )
        return resolved

    async def place_market_order(
        self,
        identity: SigningIdentity,
        market: Union[MarketInfo, str],
        outcome: Outcome,
        amount: Number,
        side: Side = Side.BUY,
    ) -> OrderOutcome:
        """
        Post a fill-or-kill market order for one outcome of a market.

        Args:
            identity: Encrypted key of the trading user
            market: Resolved market or its condition id
            outcome: Outcome.YES or Outcome.NO
            amount: USDC to spend for BUY, shares to sell for SELL
            side: Order direction

        Returns:
            OrderOutcome; never raises for venue or chain failures
        """
        approval_tx: Optional[str] = None
        try:
            size = to_decimal(amount)
            if size <= 0:
                raise InvalidOrder(f"Order amount must be positive, got {amount}")

            account = self.vault.account(identity)
            resolved = await self._resolve_ref(market)
            token_id = resolved.token_for(outcome)

            logger.info(
                f"Placing Polymarket order: {side.value} {size} {outcome.name} "
                f"on {resolved.condition_id[:12]}... for {account.address[:10]}..."
            )

            if side is Side.BUY:
                approval_tx = await self.ensure_approval(account, self.spender_for(resolved))

            client = await self._client_for(account)
            order_args = MarketOrderArgs(
                token_id=token_id,
                amount=float(size),
                side=side.value,
                order_type=OrderType.FOK,
            )
            try:
                signed = await self._run(lambda: client.create_market_order(order_args))
                response = await self._run(lambda: client.post_order(signed, OrderType.FOK))
            except Exception as e:
                kind, detail = classify_clob_error(e)
                logger.warning(f"Polymarket order error [{kind.value}]: {detail}")
                return OrderOutcome(
                    success=False,
                    approval_tx_hash=approval_tx,
                    error_kind=kind,
                    error_detail=detail,
                )

            if response and response.get("success"):
                order_id = response.get("orderID") or response.get("orderId")
                logger.info(f"✅ Polymarket order placed: {order_id}")
                return OrderOutcome(success=True, order_id=order_id, approval_tx_hash=approval_tx)

            reason = (response or {}).get("errorMsg") or "Order not filled"
            raise OrderFailed(reason)

        except ExecutionError as e:
            logger.warning(f"Polymarket order failed: {e.detail}")
            return OrderOutcome(
                success=False,
                approval_tx_hash=approval_tx,
                error_kind=e.kind,
                error_detail=e.detail,
            )
        except Exception as e:
            logger.error(f"Polymarket order error: {e}")
            return OrderOutcome(
                success=False,
                approval_tx_hash=approval_tx,
                error_kind=ErrorKind.ORDER_FAILED,
                error_detail=str(e) or type(e).__name__,
            )

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def collateral_balance(self, identity: SigningIdentity) -> Dict[str, Decimal]:
        """USDC.e balance and allowance as seen by the CLOB."""
        client = await self._client_for(self.vault.account(identity))
        result = await self._run(
            lambda: client.get_balance_allowance(
                BalanceAllowanceParams(asset_type=AssetType.COLLATERAL)
            )
        )
        return {
            "balance": Decimal(str(result.get("balance") or "0")).scaleb(-USDC_DECIMALS),
            "allowance": Decimal(str(result.get("allowance") or "0")).scaleb(-USDC_DECIMALS),
        }

    async def open_orders(self, identity: SigningIdentity) -> List[OpenOrder]:
        client = await self._client_for(self.vault.account(identity))
        orders = await self._run(client.get_orders)
        return [
            OpenOrder(
                order_id=o.get("id", ""),
                market=o.get("market", ""),
                side=o.get("side", ""),
                price=str(o.get("price", "")),
                size=str(o.get("original_size", "")),
                outcome=o.get("outcome", ""),
            )
            for o in orders
        ]

    async def cancel_order(self, identity: SigningIdentity, order_id: str) -> OrderOutcome:
        try:
            client = await self._client_for(self.vault.account(identity))
            response = await self._run(lambda: client.cancel(order_id))
        except ExecutionError as e:
            return OrderOutcome.from_error(e)
        except Exception as e:
            kind, detail = classify_clob_error(e)
            return OrderOutcome.failed(kind, detail)

        if order_id in (response or {}).get("canceled", []):
            return OrderOutcome(success=True, order_id=order_id)

        reason = ((response or {}).get("not_canceled") or {}).get(order_id, "Order was not cancelled")
        return OrderOutcome.failed(ErrorKind.ORDER_FAILED, str(reason))
