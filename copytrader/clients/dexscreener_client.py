"""
DexScreener market-data client (last-resort price tier)
"""

from typing import Any, Dict, List, Optional

import aiohttp

from copytrader.core.config import OracleConfig
from copytrader.core.logger import get_logger


logger = get_logger(__name__)


def best_pair(pairs: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Pair with the most USD liquidity"""
    if not pairs:
        return None
    return max(pairs, key=lambda p: float((p.get("liquidity") or {}).get("usd") or 0))


class DexScreenerClient:
    """PriceSource reading priceNative (SOL) from the deepest pair"""

    def __init__(self, config: OracleConfig, timeout_s: float = 5.0):
        self.config = config
        self.timeout_s = timeout_s
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
                headers={"User-Agent": "Mozilla/5.0"}
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def get_price(self, token_id: str) -> Optional[float]:
        """
        SOL per token, None if the token is not listed yet

        Raises:
            aiohttp.ClientResponseError: On non-404 HTTP failures
        """
        session = await self._get_session()
        async with session.get(f"{self.config.dexscreener_url}/{token_id}") as response:
            if response.status == 404:
                return None
            response.raise_for_status()
            data = await response.json()

        pair = best_pair(data.get("pairs") or [])
        if pair is None:
            logger.debug("dexscreener_no_pairs", token_id=token_id)
            return None

        try:
            price = float(pair.get("priceNative") or 0)
        except (TypeError, ValueError):
            return None
        return price if price > 0 else None
