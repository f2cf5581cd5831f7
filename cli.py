#!/usr/bin/env python3
"""
Tradedesk - Command Line Interface

Operator commands for custodial wallets and manual order placement:
- Wallet: Generate an encrypted signing key
- Hyperliquid: Market orders, balances and positions
- Polymarket: Market lookup, trending markets, orders and collateral
- Swap: Convert native USDC to USDC.e for Polymarket collateral

The encrypted key is taken from --key or the ENCRYPTED_KEY environment variable.

Usage:
    python cli.py wallet new                      # New encrypted key
    python cli.py hl order ETH buy 0.01           # Hyperliquid market buy
    python cli.py hl balance 0xabc...             # Account value and positions
    python cli.py pm market <condition_id>        # Resolve a market
    python cli.py pm trending --limit 5           # Top markets by volume
    python cli.py pm order <condition_id> yes 10  # Spend 10 USDC on YES
    python cli.py pm balance                      # CLOB collateral
    python cli.py swap 25                         # 25 USDC -> USDC.e
"""

import asyncio
import argparse
import logging
import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

from tradedesk.aggregators import KyberSwapBackend, OneInchBackend
from tradedesk.chain import ChainClient
from tradedesk.config import EngineConfig
from tradedesk.credentials import ClobCredentialDeriver, CredentialCache
from tradedesk.gas_oracle import FeeConfig, GasOracle
from tradedesk.hyperliquid_executor import HyperliquidExecutor
from tradedesk.key_manager import KeyVault, SigningIdentity, create_identity
from tradedesk.models import OrderOutcome, Outcome, Side, SwapOutcome, with_deadline
from tradedesk.polymarket_executor import PolymarketExecutor
from tradedesk.router import RouterConfig, SwapRouter

LOG_LEVEL = os.getenv("LOG_LEVEL", "WARNING").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.WARNING),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class Colors:
    """ANSI color codes for terminal output."""
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'


def color(text: str, c: str) -> str:
    """Apply color to text."""
    return f"{c}{text}{Colors.ENDC}"


def banner(title: str) -> None:
    print(color("\n===========================================", Colors.CYAN))
    print(color(f"  {title}", Colors.BOLD))
    print(color("===========================================\n", Colors.CYAN))


def print_outcome(outcome) -> None:
    """Render an OrderOutcome or SwapOutcome."""
    if outcome.success:
        print(color(f"\n[OK] {outcome}", Colors.GREEN))
    else:
        print(color(f"\n[FAILED] {outcome.error_kind.value}", Colors.RED + Colors.BOLD))
        print(f"   {outcome.error_detail}")
    if outcome.approval_tx_hash:
        print(f"   Approval tx: {outcome.approval_tx_hash}")
    print()


def load_config() -> EngineConfig:
    config = EngineConfig()
    config.validate()
    return config


def load_identity(args) -> SigningIdentity:
    blob = args.key or os.getenv("ENCRYPTED_KEY", "")
    if not blob:
        raise SystemExit("Encrypted key required: pass --key or set ENCRYPTED_KEY")
    return SigningIdentity(encrypted_key=blob)


def build_chain(config: EngineConfig) -> ChainClient:
    return ChainClient(
        config.polygon_rpc_url,
        chain_id=config.polygon_chain_id,
        receipt_timeout=config.receipt_timeout_seconds,
    )


def build_gas_oracle(config: EngineConfig, chain: ChainClient) -> GasOracle:
    return GasOracle(chain, FeeConfig(min_priority_fee_gwei=config.min_priority_fee_gwei))


def build_polymarket(config: EngineConfig, vault: KeyVault) -> PolymarketExecutor:
    chain = build_chain(config)
    credentials = CredentialCache(
        ClobCredentialDeriver(config.pm_clob_url, config.polygon_chain_id), vault
    )
    return PolymarketExecutor(
        vault,
        credentials,
        build_gas_oracle(config, chain),
        chain,
        clob_url=config.pm_clob_url,
        gamma_url=config.pm_gamma_url,
        chain_id=config.polygon_chain_id,
        http_timeout=config.http_timeout_seconds,
    )


# =============================================================================
# Wallet
# =============================================================================

async def cmd_wallet(args):
    """Generate a new encrypted signing key."""
    config = load_config()
    vault = KeyVault(config.encryption_key)
    identity = create_identity(vault)

    banner("NEW WALLET")
    print(f"  Address:       {color(identity.address, Colors.GREEN)}")
    print(f"  Encrypted key: {identity.encrypted_key}")
    print(color("\n  Fund this address with POL for gas before trading on Polymarket.\n", Colors.YELLOW))


# =============================================================================
# Hyperliquid
# =============================================================================

async def cmd_hl(args):
    """Hyperliquid commands."""
    config = load_config()
    vault = KeyVault(config.encryption_key)
    executor = HyperliquidExecutor(vault, base_url=config.hl_api_url, slippage=config.market_slippage)

    if args.action == "order":
        identity = load_identity(args)
        is_buy = args.side == "buy"
        print(color(f"\n[*] Hyperliquid {args.side.upper()} {args.size} {args.coin}", Colors.CYAN))
        outcome = await with_deadline(
            executor.place_market_order(identity, args.coin.upper(), is_buy, Decimal(args.size)),
            args.timeout,
            OrderOutcome,
        )
        print_outcome(outcome)

    elif args.action == "balance":
        network = "TESTNET" if config.is_testnet else "MAINNET"
        banner(f"HYPERLIQUID ACCOUNT ({network})")
        balance = await executor.get_balance(args.address)
        account_value = f"${balance['account_value']:,.2f}"
        print(f"  Account Value:   {color(account_value, Colors.GREEN)}")
        print(f"  Withdrawable:    ${balance['withdrawable']:,.2f}")

        positions = await executor.get_positions(args.address)
        print(f"\n  Open Positions:  {color(str(len(positions)), Colors.YELLOW)}")
        if positions:
            print()
            print("  Coin      Size            Entry           uPnL          Lev")
            print("  " + "-" * 64)
            for p in positions:
                pnl_color = Colors.GREEN if p.unrealized_pnl >= 0 else Colors.RED
                pnl = color(f"{p.unrealized_pnl:+.2f}", pnl_color)
                print(f"  {p.coin:<9} {p.size:<15} {p.entry_price:<15} {pnl:<22} {p.leverage}x")
        print()


# =============================================================================
# Polymarket
# =============================================================================

async def cmd_pm(args):
    """Polymarket commands."""
    config = load_config()
    vault = KeyVault(config.encryption_key)

    async with build_polymarket(config, vault) as executor:
        if args.action == "market":
            market = await executor.resolve_market(args.condition_id)
            if market is None:
                print(color(f"\n[?] Market {args.condition_id} not found or not tradeable\n", Colors.YELLOW))
                return
            banner("POLYMARKET MARKET")
            print(f"  Question:  {market.question}")
            print(f"  Slug:      {market.slug}")
            for name, price, token in zip(market.outcomes, market.outcome_prices, market.token_ids):
                print(f"  {name:<9}  {price:<8} token {token[:16]}...")
            print(f"  Volume:    ${Decimal(market.volume):,.0f}")
            print(f"  Neg risk:  {market.neg_risk}")
            print()

        elif args.action == "trending":
            banner("TRENDING MARKETS")
            markets = await executor.trending_markets(limit=args.limit)
            if not markets:
                print("  No tradeable markets found")
            for i, m in enumerate(markets, 1):
                question = m.question if len(m.question) <= 60 else m.question[:57] + "..."
                print(f"  {i:>2}. {question}")
                print(f"      {m.condition_id}  vol ${Decimal(m.volume):,.0f}")
            print()

        elif args.action == "order":
            identity = load_identity(args)
            outcome_side = Outcome.YES if args.outcome == "yes" else Outcome.NO
            side = Side.SELL if args.sell else Side.BUY
            print(color(
                f"\n[*] Polymarket {side.value} {args.amount} {outcome_side.name} on {args.condition_id[:16]}...",
                Colors.CYAN,
            ))
            outcome = await with_deadline(
                executor.place_market_order(
                    identity, args.condition_id, outcome_side, Decimal(args.amount), side=side
                ),
                args.timeout,
                OrderOutcome,
            )
            print_outcome(outcome)

        elif args.action == "balance":
            identity = load_identity(args)
            banner("POLYMARKET COLLATERAL")
            balance = await executor.collateral_balance(identity)
            collateral = f"${balance['balance']:,.2f}"
            print(f"  USDC.e Balance:  {color(collateral, Colors.GREEN)}")
            print(f"  Allowance:       ${balance['allowance']:,.2f}")
            account = vault.account(identity)
            wallet = await executor.chain.wallet_balances(account.address)
            print(f"\n  Wallet {account.address}")
            print(f"  POL:             {wallet['native']:.4f}")
            print(f"  USDC (native):   {wallet['usdc_native']:.2f}")
            print(f"  USDC.e:          {wallet['usdc_bridged']:.2f}")
            print()


# =============================================================================
# Swap
# =============================================================================

async def cmd_swap(args):
    """Swap native USDC into USDC.e."""
    config = load_config()
    vault = KeyVault(config.encryption_key)
    identity = load_identity(args)
    chain = build_chain(config)

    backends = [
        OneInchBackend(config.oneinch_api_url, config.polygon_chain_id, config.oneinch_api_key),
        KyberSwapBackend(config.kyberswap_api_url),
    ]
    router_config = RouterConfig(
        slippage_bps=config.swap_slippage_bps,
        gas_limit_multiplier=config.gas_limit_multiplier,
    )

    def on_progress(message: str) -> None:
        print(color(f"  ... {message}", Colors.BLUE))

    print(color(f"\n[*] Swapping {args.amount} USDC -> USDC.e", Colors.CYAN))
    router = SwapRouter(
        vault,
        chain,
        build_gas_oracle(config, chain),
        backends,
        router_config,
        http_timeout=config.http_timeout_seconds,
    )
    async with router:
        outcome = await with_deadline(
            router.swap(identity, Decimal(args.amount), on_progress=on_progress),
            args.timeout,
            SwapOutcome,
        )
    print_outcome(outcome)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Tradedesk CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    def add_key_arg(p):
        p.add_argument("--key", help="Encrypted key blob (default: $ENCRYPTED_KEY)")

    def add_timeout_arg(p):
        p.add_argument("--timeout", type=float, default=180.0, help="Overall deadline in seconds")

    # Wallet command
    wallet_parser = subparsers.add_parser("wallet", help="Wallet management")
    wallet_parser.add_argument("action", choices=["new"])

    # Hyperliquid commands
    hl_parser = subparsers.add_parser("hl", help="Hyperliquid perpetuals")
    hl_sub = hl_parser.add_subparsers(dest="action", required=True)

    hl_order = hl_sub.add_parser("order", help="Place a market order (IOC)")
    hl_order.add_argument("coin", help="Coin name, e.g. ETH")
    hl_order.add_argument("side", choices=["buy", "sell"])
    hl_order.add_argument("size", help="Size in the base asset")
    add_key_arg(hl_order)
    add_timeout_arg(hl_order)

    hl_balance = hl_sub.add_parser("balance", help="Account value and positions")
    hl_balance.add_argument("address", help="Wallet address")

    # Polymarket commands
    pm_parser = subparsers.add_parser("pm", help="Polymarket prediction markets")
    pm_sub = pm_parser.add_subparsers(dest="action", required=True)

    pm_market = pm_sub.add_parser("market", help="Resolve a market by condition id")
    pm_market.add_argument("condition_id")

    pm_trending = pm_sub.add_parser("trending", help="Top tradeable markets by volume")
    pm_trending.add_argument("--limit", type=int, default=10)

    pm_order = pm_sub.add_parser("order", help="Place a fill-or-kill market order")
    pm_order.add_argument("condition_id")
    pm_order.add_argument("outcome", choices=["yes", "no"])
    pm_order.add_argument("amount", help="USDC to spend (buy) or shares to sell")
    pm_order.add_argument("--sell", action="store_true", help="Sell shares instead of buying")
    add_key_arg(pm_order)
    add_timeout_arg(pm_order)

    pm_balance = pm_sub.add_parser("balance", help="CLOB collateral and wallet balances")
    add_key_arg(pm_balance)

    # Swap command
    swap_parser = subparsers.add_parser("swap", help="Swap native USDC to USDC.e")
    swap_parser.add_argument("amount", help="USDC amount to swap")
    add_key_arg(swap_parser)
    add_timeout_arg(swap_parser)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    # Route to command handler
    handlers = {
        "wallet": cmd_wallet,
        "hl": cmd_hl,
        "pm": cmd_pm,
        "swap": cmd_swap,
    }

    handler = handlers.get(args.command)
    if handler:
        asyncio.run(handler(args))


if __name__ == "__main__":
    main()
