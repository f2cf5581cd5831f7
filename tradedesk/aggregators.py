"""Swap Aggregator Backends - 1inch and KyberSwap quote/build clients."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Protocol

import aiohttp

from .errors import AggregatorUnavailable
from .models import SwapPlan

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SwapRequest:
    """What to swap, in token base units."""

    token_in: str
    token_out: str
    amount_in: int
    sender: str
    slippage_bps: int = 100  # 1%


class SwapBackend(Protocol):
    """
    One liquidity aggregator.

    plan() returns a ready-to-send transaction payload or raises
    AggregatorUnavailable so the router can try the next backend.
    """

    name: str

    async def plan(self, session: aiohttp.ClientSession, request: SwapRequest) -> SwapPlan: ...


class OneInchBackend:
    """
    1inch Swap API v6: a single call returns quote and transaction.

    API Docs: https://portal.1inch.dev/documentation/apis/swap
    """

    name = "1inch"

    def __init__(
        self,
        api_url: str = "https://api.1inch.dev/swap/v6.0",
        chain_id: int = 137,
        api_key: str = "",
    ):
        self.api_url = api_url.rstrip("/")
        self.chain_id = chain_id
        self._api_key = api_key

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "application/json",
        }

    async def plan(self, session: aiohttp.ClientSession, request: SwapRequest) -> SwapPlan:
        url = f"{self.api_url}/{self.chain_id}/swap"
        params = {
            "src": request.token_in,
            "dst": request.token_out,
            "amount": str(request.amount_in),
            "from": request.sender,
            "slippage": str(request.slippage_bps / 100),  # percent
            "disableEstimate": "true",
        }

        try:
            async with session.get(url, params=params, headers=self._get_headers()) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"1inch API error ({response.status}): {error_text}")
                    raise AggregatorUnavailable(self.name, f"HTTP {response.status}")
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AggregatorUnavailable(self.name, f"request failed: {e}") from e

        try:
            tx = data["tx"]
            plan = SwapPlan(
                backend=self.name,
                amount_in=request.amount_in,
                token_in=request.token_in,
                token_out=request.token_out,
                router=tx["to"],
                calldata=tx["data"],
                value=int(tx.get("value") or 0),
                estimated_amount_out=int(data["dstAmount"]),
                gas_estimate=int(tx.get("gas") or 0),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise AggregatorUnavailable(self.name, f"malformed swap response: {e}") from e

        logger.info(f"1inch quote received: out={plan.estimated_amount_out} gas={plan.gas_estimate}")
        return plan


class KyberSwapBackend:
    """
    KyberSwap Aggregator API: route quote, then route build.

    API Docs: https://docs.kyberswap.com/kyberswap-solutions/kyberswap-aggregator
    """

    name = "kyberswap"

    def __init__(
        self,
        api_url: str = "https://aggregator-api.kyberswap.com/polygon/api/v1",
        client_id: str = "tradedesk",
    ):
        self.api_url = api_url.rstrip("/")
        self.client_id = client_id

    async def plan(self, session: aiohttp.ClientSession, request: SwapRequest) -> SwapPlan:
        route_summary = await self._get_route(session, request)
        build = await self._build_route(session, request, route_summary)

        try:
            plan = SwapPlan(
                backend=self.name,
                amount_in=request.amount_in,
                token_in=request.token_in,
                token_out=request.token_out,
                router=build["routerAddress"],
                calldata=build["data"],
                value=int(build.get("transactionValue") or 0),
                estimated_amount_out=int(route_summary["amountOut"]),
                gas_estimate=int(build.get("gas") or route_summary.get("gas") or 0),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise AggregatorUnavailable(self.name, f"malformed build response: {e}") from e

        logger.info(f"Kyberswap quote received: out={plan.estimated_amount_out} router={plan.router}")
        return plan

    async def _get_route(
        self,
        session: aiohttp.ClientSession,
        request: SwapRequest,
    ) -> Dict[str, Any]:
        params = {
            "tokenIn": request.token_in,
            "tokenOut": request.token_out,
            "amountIn": str(request.amount_in),
            "saveGas": "false",
            "gasInclude": "true",
        }

        try:
            async with session.get(
                f"{self.api_url}/routes",
                params=params,
                headers={"x-client-id": self.client_id},
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Kyberswap route error ({response.status}): {error_text}")
                    raise AggregatorUnavailable(self.name, f"route HTTP {response.status}")
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AggregatorUnavailable(self.name, f"route request failed: {e}") from e

        route_summary = (data.get("data") or {}).get("routeSummary")
        if not route_summary:
            raise AggregatorUnavailable(self.name, "no viable route")
        return route_summary

    async def _build_route(
        self,
        session: aiohttp.ClientSession,
        request: SwapRequest,
        route_summary: Dict[str, Any],
    ) -> Dict[str, Any]:
        payload = {
            "routeSummary": route_summary,
            "sender": request.sender,
            "recipient": request.sender,
            "slippageTolerance": request.slippage_bps,
        }

        try:
            async with session.post(
                f"{self.api_url}/route/build",
                json=payload,
                headers={"x-client-id": self.client_id},
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Kyberswap build error ({response.status}): {error_text}")
                    raise AggregatorUnavailable(self.name, f"build HTTP {response.status}")
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AggregatorUnavailable(self.name, f"build request failed: {e}") from e

        build = data.get("data")
        if not build:
            raise AggregatorUnavailable(self.name, "build returned no transaction")
        return build
