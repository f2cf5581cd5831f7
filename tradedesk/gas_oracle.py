"""Gas Oracle - EIP-1559 fee parameters for Polygon transactions."""

from dataclasses import dataclass
from typing import Dict, Optional, Protocol
import logging

from .errors import GasOracleError

logger = logging.getLogger(__name__)

GWEI = 10 ** 9


@dataclass(frozen=True)
class FeeParams:
    """Fee-market parameters for one transaction (wei per gas unit)."""

    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    def as_tx_fields(self) -> Dict[str, int]:
        """Fields to merge into a web3 transaction dict."""
        return {
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
        }


@dataclass
class FeeConfig:
    """Configuration for fee calculation."""

    # Polygon requires a 25 gwei minimum tip; 35 leaves headroom
    min_priority_fee_gwei: int = 35

    # Max fee tolerates this many base-fee doublings' worth of headroom
    base_fee_multiplier: int = 2

    @property
    def min_priority_fee(self) -> int:
        return self.min_priority_fee_gwei * GWEI


class FeeDataProvider(Protocol):
    """Chain-state reads the oracle depends on."""
    async def get_base_fee(self) -> Optional[int]: ...
    async def get_max_priority_fee(self) -> Optional[int]: ...


class GasOracle:
    """
    Computes maxFeePerGas / maxPriorityFeePerGas from live chain data.

    maxPriorityFee = max(suggested tip, configured floor)
    maxFee         = 2 x baseFee + maxPriorityFee

    No caching and no retries: a failed read fails the calling operation,
    since there is no safe default fee.
    """

    def __init__(self, provider: FeeDataProvider, config: FeeConfig = None):
        """
        Args:
            provider: Chain client exposing base fee and suggested tip
            config: Fee configuration
        """
        self.provider = provider
        self.config = config or FeeConfig()

    async def quote_fee_params(self) -> FeeParams:
        """
        Get fee parameters for a transaction submitted now.

        Raises:
            GasOracleError: If the chain provider cannot be read
        """
        try:
            base_fee = await self.provider.get_base_fee()
            suggested_tip = await self.provider.get_max_priority_fee()
        except Exception as e:
            logger.error(f"Fee data read failed: {e}")
            raise GasOracleError(f"Could not read network fee data: {e}") from e

        if base_fee is None:
            raise GasOracleError("Latest block has no base fee; chain is not fee-market enabled")

        return self.compute(base_fee, suggested_tip)

    def compute(self, base_fee: int, suggested_tip: Optional[int]) -> FeeParams:
        """Pure fee computation over oracle inputs."""
        floor = self.config.min_priority_fee
        priority_fee = suggested_tip if suggested_tip and suggested_tip > floor else floor
        max_fee = base_fee * self.config.base_fee_multiplier + priority_fee

        logger.debug(
            f"Fee params: base={base_fee / GWEI:.2f} gwei tip={priority_fee / GWEI:.2f} gwei "
            f"max={max_fee / GWEI:.2f} gwei"
        )

        return FeeParams(max_fee_per_gas=max_fee, max_priority_fee_per_gas=priority_fee)
