"""Tradedesk - Custodial order execution on Hyperliquid and Polymarket."""

from .config import EngineConfig
from .errors import ErrorKind, ExecutionError
from .key_manager import KeyVault, SigningIdentity, create_identity, generate_wallet
from .gas_oracle import GasOracle, FeeConfig, FeeParams
from .chain import ChainClient
from .credentials import CredentialCache, ClobCredentialDeriver, VenueCredential
from .hyperliquid_executor import HyperliquidExecutor
from .polymarket_executor import PolymarketExecutor
from .aggregators import OneInchBackend, KyberSwapBackend
from .router import SwapRouter, RouterConfig
from .models import (
    MarketInfo,
    OrderIntent,
    OrderOutcome,
    Outcome,
    Side,
    SwapOutcome,
    SwapPlan,
    Venue,
    with_deadline,
)

__all__ = [
    "EngineConfig",
    "ErrorKind",
    "ExecutionError",
    "KeyVault",
    "SigningIdentity",
    "create_identity",
    "generate_wallet",
    "GasOracle",
    "FeeConfig",
    "FeeParams",
    "ChainClient",
    "CredentialCache",
    "ClobCredentialDeriver",
    "VenueCredential",
    "HyperliquidExecutor",
    "PolymarketExecutor",
    "OneInchBackend",
    "KyberSwapBackend",
    "SwapRouter",
    "RouterConfig",
    "MarketInfo",
    "OrderIntent",
    "OrderOutcome",
    "Outcome",
    "Side",
    "SwapOutcome",
    "SwapPlan",
    "Venue",
    "with_deadline",
]
