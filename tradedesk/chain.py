"""Chain Client - Polygon JSON-RPC access for balances, allowances and transactions."""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, TypeVar

from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from .errors import InsufficientGas
from .gas_oracle import FeeParams

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Token addresses on Polygon
USDC_NATIVE = "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359"  # Native USDC (Circle)
USDC_BRIDGED = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"  # USDC.e, Polymarket collateral

# Polymarket exchange contracts on Polygon
CTF_EXCHANGE = "0x4bFb41d5B3570DeFd03C39a9A4D8dE6Bd8B8982E"
NEG_RISK_CTF_EXCHANGE = "0xC5d563A36AE78145C45a50134d48A1215220f80a"

MAX_UINT256 = 2 ** 256 - 1

ERC20_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


class TransactionReverted(Exception):
    """A mined transaction has status 0."""

    def __init__(self, tx_hash: str):
        super().__init__(f"Transaction {tx_hash} reverted")
        self.tx_hash = tx_hash


def _short(address: str) -> str:
    return f"{address[:10]}..."


class ChainClient:
    """
    Async facade over a synchronous web3 provider.

    Every RPC call runs in the default executor so that waiting for one
    user's receipt never blocks another user's operation.
    """

    def __init__(
        self,
        rpc_url: str,
        chain_id: int = 137,
        receipt_timeout: int = 120,
        w3: Web3 = None,
    ):
        """
        Args:
            rpc_url: Polygon JSON-RPC endpoint
            chain_id: EIP-155 chain id
            receipt_timeout: Seconds to wait for a transaction to be mined
            w3: Pre-built Web3 instance (tests)
        """
        if w3 is None:
            w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        self.w3 = w3
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout

    async def _run(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    def _token(self, token: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)

    # ------------------------------------------------------------------
    # Fee data (GasOracle provider)
    # ------------------------------------------------------------------

    async def get_base_fee(self) -> Optional[int]:
        block = await self._run(lambda: self.w3.eth.get_block("latest"))
        return block.get("baseFeePerGas")

    async def get_max_priority_fee(self) -> Optional[int]:
        return await self._run(lambda: self.w3.eth.max_priority_fee)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def native_balance(self, address: str) -> int:
        return await self._run(
            lambda: self.w3.eth.get_balance(Web3.to_checksum_address(address))
        )

    async def token_balance(self, token: str, owner: str) -> int:
        contract = self._token(token)
        return await self._run(
            lambda: contract.functions.balanceOf(Web3.to_checksum_address(owner)).call()
        )

    async def token_decimals(self, token: str) -> int:
        contract = self._token(token)
        return await self._run(lambda: contract.functions.decimals().call())

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        """Current on-chain allowance. Always read fresh; it can change out-of-band."""
        contract = self._token(token)
        return await self._run(
            lambda: contract.functions.allowance(
                Web3.to_checksum_address(owner),
                Web3.to_checksum_address(spender),
            ).call()
        )

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        # Aggregators may return lower-case addresses; web3 only accepts checksummed ones
        call = dict(tx)
        for field in ("from", "to"):
            if call.get(field):
                call[field] = Web3.to_checksum_address(call[field])
        return await self._run(lambda: self.w3.eth.estimate_gas(call))

    async def wallet_balances(self, address: str) -> Dict[str, Decimal]:
        """POL, native USDC and USDC.e balances in whole-token units."""
        pol = await self.native_balance(address)
        result = {"native": Decimal(pol).scaleb(-18)}
        for label, token in (("usdc_native", USDC_NATIVE), ("usdc_bridged", USDC_BRIDGED)):
            raw = await self.token_balance(token, address)
            decimals = await self.token_decimals(token)
            result[label] = Decimal(raw).scaleb(-decimals)
        return result

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def approve(
        self,
        account: LocalAccount,
        token: str,
        spender: str,
        fees: FeeParams,
        amount: int = MAX_UINT256,
        on_submitted: Callable[[str], Any] = None,
    ) -> str:
        """
        Approve a spender and wait for the approval to be mined.

        Returns:
            Transaction hash of the confirmed approval
        """
        contract = self._token(token)
        nonce = await self._next_nonce(account.address)
        tx = await self._run(
            lambda: contract.functions.approve(
                Web3.to_checksum_address(spender), amount
            ).build_transaction({
                "from": account.address,
                "nonce": nonce,
                "chainId": self.chain_id,
                **fees.as_tx_fields(),
            })
        )
        logger.info(f"Approving {_short(token)} for spender {_short(spender)}")
        return await self._sign_send_wait(account, tx, on_submitted)

    async def send_transaction(
        self,
        account: LocalAccount,
        to: str,
        data: str,
        value: int,
        gas: int,
        fees: FeeParams,
        on_submitted: Callable[[str], Any] = None,
    ) -> str:
        """Send a raw call and wait for it to be mined. Returns the tx hash."""
        nonce = await self._next_nonce(account.address)
        tx = {
            "from": account.address,
            "to": Web3.to_checksum_address(to),
            "data": data,
            "value": int(value),
            "gas": int(gas),
            "nonce": nonce,
            "chainId": self.chain_id,
            **fees.as_tx_fields(),
        }
        return await self._sign_send_wait(account, tx, on_submitted)

    async def _next_nonce(self, address: str) -> int:
        return await self._run(
            lambda: self.w3.eth.get_transaction_count(address, "pending")
        )

    async def _sign_send_wait(
        self,
        account: LocalAccount,
        tx: Dict[str, Any],
        on_submitted: Callable[[str], Any] = None,
    ) -> str:
        signed = account.sign_transaction(tx)
        try:
            raw_hash = await self._run(
                lambda: self.w3.eth.send_raw_transaction(signed.raw_transaction)
            )
        except Exception as e:
            if "insufficient funds" in str(e).lower():
                raise InsufficientGas(
                    f"Insufficient POL for gas fees in {account.address}"
                ) from e
            raise

        tx_hash = Web3.to_hex(raw_hash)
        logger.info(f"Transaction submitted: {tx_hash}")
        if on_submitted is not None:
            result = on_submitted(tx_hash)
            if asyncio.iscoroutine(result):
                await result

        receipt = await self._run(
            lambda: self.w3.eth.wait_for_transaction_receipt(
                raw_hash, timeout=self.receipt_timeout
            )
        )
        if receipt["status"] != 1:
            logger.error(f"Transaction reverted: {tx_hash}")
            raise TransactionReverted(tx_hash)

        logger.info(f"Transaction confirmed: {tx_hash}")
        return tx_hash
