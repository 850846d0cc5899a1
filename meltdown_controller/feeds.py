"""
Meltdown Controller - External Feeds.

============================================================
PURPOSE
============================================================
HTTP collaborators with bounded latency:

- CoinGeckoPriceFeed:    live USD price of the tracked asset
- SolanaRpcHealthCheck:  getLatestBlockhash liveness probe

The price feed raises on failure so that the market shock
detector can report the failure as an evaluation error.
The RPC probe never raises; it answers healthy or not.

============================================================
"""

import logging
from typing import Dict, Optional

import httpx

from .interfaces import PriceFeed, RpcHealthCheck


logger = logging.getLogger(__name__)


class CoinGeckoPriceFeed(PriceFeed):
    """
    Live prices from the CoinGecko simple price endpoint.

    Response shape: {"bitcoin": {"usd": 90000.00}}
    """

    def __init__(
        self,
        url: str = "https://api.coingecko.com/api/v3/simple/price",
        ids: Optional[Dict[str, str]] = None,
        vs_currency: str = "usd",
        timeout_seconds: float = 10.0,
    ):
        """
        Initialize price feed.

        Args:
            url: Simple price endpoint
            ids: Symbol to CoinGecko id mapping
            vs_currency: Quote currency
            timeout_seconds: Request timeout
        """
        self._url = url
        self._ids = dict(ids or {"BTC": "bitcoin"})
        self._vs_currency = vs_currency
        self._timeout = timeout_seconds

    async def current_price(self, symbol: str) -> float:
        coin_id = self._ids.get(symbol)
        if coin_id is None:
            raise ValueError(f"No CoinGecko id configured for {symbol}")

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.get(
                self._url,
                params={"ids": coin_id, "vs_currencies": self._vs_currency},
            )
            response.raise_for_status()
            data = response.json()

        price = data.get(coin_id, {}).get(self._vs_currency)
        if price is None:
            logger.error(f"Unexpected CoinGecko response: {data}")
            raise ValueError(f"CoinGecko returned no {self._vs_currency} price for {coin_id}")

        return float(price)


class SolanaRpcHealthCheck(RpcHealthCheck):
    """
    Probes a Solana JSON-RPC endpoint with getLatestBlockhash.
    """

    def __init__(
        self,
        url: str = "https://api.mainnet-beta.solana.com",
        timeout_seconds: float = 5.0,
        commitment: str = "confirmed",
    ):
        self._url = url
        self._timeout = timeout_seconds
        self._commitment = commitment

    async def is_healthy(self) -> bool:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "getLatestBlockhash",
            "params": [{"commitment": self._commitment}],
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, json=payload)
                response.raise_for_status()
                data = response.json()

        except httpx.TimeoutException:
            logger.error(f"RPC health check timed out: {self._url}")
            return False
        except httpx.HTTPError as e:
            logger.error(f"RPC health check failed: {e}")
            return False
        except ValueError as e:
            logger.error(f"RPC health check returned invalid JSON: {e}")
            return False

        if "error" in data:
            logger.error(f"RPC health check error: {data['error']}")
            return False

        result = data.get("result") or {}
        value = result.get("value") or {}
        blockhash = value.get("blockhash")
        return bool(blockhash)
