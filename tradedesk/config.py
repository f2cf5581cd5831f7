"""Configuration for the execution engine."""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()


HL_MAINNET_API_URL = "https://api.hyperliquid.xyz"
HL_TESTNET_API_URL = "https://api.hyperliquid-testnet.xyz"


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").strip().lower() == "true"


@dataclass
class EngineConfig:
    """Deployment configuration shared by the vault, executors and swap router."""

    # Passphrase for private keys at rest (never stored in the blob)
    encryption_key: str = field(default_factory=lambda: os.getenv("ENCRYPTION_KEY", ""))

    # Hyperliquid network selector
    is_testnet: bool = field(default_factory=lambda: _env_flag("HL_TESTNET"))

    # Polymarket endpoints (mainnet only - no testnet available)
    pm_clob_url: str = field(
        default_factory=lambda: os.getenv("PM_CLOB_URL", "https://clob.polymarket.com")
    )
    pm_gamma_url: str = field(
        default_factory=lambda: os.getenv("PM_GAMMA_URL", "https://gamma-api.polymarket.com")
    )

    # Polygon
    polygon_rpc_url: str = field(
        default_factory=lambda: os.getenv("POLYGON_RPC_URL", "https://polygon-rpc.com")
    )
    polygon_chain_id: int = 137

    # Swap aggregators (1inch key is optional, KyberSwap works without one)
    oneinch_api_key: str = field(default_factory=lambda: os.getenv("ONEINCH_API_KEY", ""))
    oneinch_api_url: str = "https://api.1inch.dev/swap/v6.0"
    kyberswap_api_url: str = "https://aggregator-api.kyberswap.com/polygon/api/v1"

    # Fee market: Polygon under-prices inclusion, keep a floor on the tip
    min_priority_fee_gwei: int = field(
        default_factory=lambda: int(os.getenv("MIN_PRIORITY_FEE_GWEI", "35"))
    )

    # Execution tuning
    market_slippage: Decimal = Decimal("0.005")  # 0.5%
    swap_slippage_bps: int = 100  # 1%
    gas_limit_multiplier: Decimal = Decimal("1.3")
    receipt_timeout_seconds: int = field(
        default_factory=lambda: int(os.getenv("RECEIPT_TIMEOUT_SECONDS", "120"))
    )
    http_timeout_seconds: float = 15.0

    @property
    def hl_api_url(self) -> str:
        """Hyperliquid REST endpoint for the selected network."""
        return HL_TESTNET_API_URL if self.is_testnet else HL_MAINNET_API_URL

    def validate(self) -> None:
        """
        Check required settings.

        Raises:
            ValueError: If the encryption key is missing or too short
        """
        if not self.encryption_key or len(self.encryption_key) < 32:
            raise ValueError(
                "ENCRYPTION_KEY must be at least 32 characters. "
                "Set it in your .env file or environment."
            )
        if self.min_priority_fee_gwei < 0:
            raise ValueError("MIN_PRIORITY_FEE_GWEI cannot be negative")
