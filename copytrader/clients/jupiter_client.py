"""
Jupiter aggregator client
Quote-derived prices for graduated tokens and live swaps through the swap API
"""

import asyncio
from typing import Any, Dict, Optional

import aiohttp

from copytrader.clients.rpc_client import ConfirmationStatus, SolanaRpcClient, token_balance_change
from copytrader.clients.signer import TransactionSigner
from copytrader.core.bonding_curve import LAMPORTS_PER_SOL, TOKEN_DECIMALS
from copytrader.core.config import OracleConfig
from copytrader.core.logger import get_logger
from copytrader.core.venues import ERROR_FAILED_ON_CHAIN, ERROR_NO_ROUTE, ERROR_REJECTED, ERROR_TIMEOUT, TradeResult, Venue


logger = get_logger(__name__)


SOL_MINT = "So11111111111111111111111111111111111111112"
PRICE_QUOTE_SLIPPAGE_BPS = 50

_NO_ROUTE_MARKERS = ("route not found", "could_not_find_any_route", "no route", "token_not_tradable")


class JupiterError(Exception):
    """Non-2xx answer from the Jupiter API"""

    def __init__(self, status: int, body: str):
        super().__init__(f"Jupiter HTTP {status}: {body[:200]}")
        self.status = status
        self.body = body

    @property
    def is_no_route(self) -> bool:
        text = self.body.lower()
        return any(marker in text for marker in _NO_ROUTE_MARKERS)


class JupiterClient:
    """
    Price source and trade executor for graduated tokens

    Prices come from a sell quote for exactly one whole token, so the answer is
    SOL per token. Token decimals are looked up once per mint; a failed lookup
    falls back to 6 for that call only and is retried next time.
    """

    venue = Venue.AGGREGATOR

    def __init__(
        self,
        config: OracleConfig,
        rpc: SolanaRpcClient,
        signer: Optional[TransactionSigner] = None,
        slippage_bps: int = 500,
        timeout_s: float = 10.0,
        submit_timeout_s: float = 30.0
    ):
        self.config = config
        self.rpc = rpc
        self.signer = signer
        self.slippage_bps = slippage_bps
        self.timeout_s = timeout_s
        self.submit_timeout_s = submit_timeout_s
        self._decimals: Dict[str, int] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s))
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def get_decimals(self, token_id: str) -> int:
        if token_id in self._decimals:
            return self._decimals[token_id]

        try:
            supply = await self.rpc.get_token_supply(token_id)
            decimals = int(supply.get("decimals", TOKEN_DECIMALS))
        except Exception as e:
            logger.warning("token_decimals_fallback", token_id=token_id, error=str(e))
            return TOKEN_DECIMALS

        self._decimals[token_id] = decimals
        return decimals

    async def _quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Dict[str, Any]:
        session = await self._get_session()
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "swapMode": "ExactIn",
            "slippageBps": str(slippage_bps)
        }
        async with session.get(self.config.jupiter_quote_url, params=params) as response:
            if response.status != 200:
                raise JupiterError(response.status, await response.text())
            data = await response.json()

        if not data.get("outAmount"):
            raise JupiterError(200, "Quote has no outAmount")
        return data

    async def get_price(self, token_id: str) -> Optional[float]:
        """SOL per whole token, or None when Jupiter has no route"""
        decimals = await self.get_decimals(token_id)
        try:
            quote = await self._quote(token_id, SOL_MINT, 10 ** decimals, PRICE_QUOTE_SLIPPAGE_BPS)
        except JupiterError as e:
            if e.is_no_route:
                logger.debug("jupiter_no_route", token_id=token_id)
                return None
            raise

        return int(quote["outAmount"]) / LAMPORTS_PER_SOL

    async def _swap(self, quote: Dict[str, Any], priority_fee: float) -> str:
        if self.signer is None:
            raise RuntimeError("Jupiter swaps need a wallet")

        session = await self._get_session()
        payload = {
            "quoteResponse": quote,
            "userPublicKey": self.signer.pubkey,
            "wrapAndUnwrapSol": True,
            "prioritizationFeeLamports": int(priority_fee * LAMPORTS_PER_SOL)
        }
        async with session.post(self.config.jupiter_swap_url, json=payload) as response:
            if response.status != 200:
                raise JupiterError(response.status, await response.text())
            data = await response.json()

        swap_tx = data.get("swapTransaction")
        if not swap_tx:
            raise JupiterError(200, "Swap API returned no transaction")

        return await self.rpc.send_transaction(self.signer.sign_base64(swap_tx))

    async def _submit(self, input_mint: str, output_mint: str, amount: int, priority_fee: float, action: str, token_id: str):
        """
        Quote, swap and send within ``submit_timeout_s``, then poll for confirmation

        Returns:
            (quote, signature, ConfirmationStatus), or a failed TradeResult
        """
        async def quote_and_send():
            quote = await self._quote(input_mint, output_mint, amount, self.slippage_bps)
            return quote, await self._swap(quote, priority_fee)

        try:
            quote, signature = await asyncio.wait_for(quote_and_send(), timeout=self.submit_timeout_s)
        except JupiterError as e:
            return TradeResult.failed(self.venue, str(e), ERROR_NO_ROUTE if e.is_no_route else ERROR_REJECTED)
        except asyncio.TimeoutError:
            logger.error("jupiter_submit_timeout", action=action, token_id=token_id, timeout_s=self.submit_timeout_s)
            return TradeResult.failed(self.venue, f"{action} submission timed out after {self.submit_timeout_s}s", ERROR_TIMEOUT)

        confirmation = await self.rpc.wait_for_confirmation(signature)
        if confirmation is ConfirmationStatus.FAILED:
            result = TradeResult.failed(self.venue, f"{action} transaction failed on-chain", ERROR_FAILED_ON_CHAIN)
            result.signature = signature
            return result
        return quote, signature, confirmation

    async def buy(self, token_id: str, quote_amount: float, slippage_pct: float, priority_fee: float) -> TradeResult:
        decimals = await self.get_decimals(token_id)
        submitted = await self._submit(SOL_MINT, token_id, int(quote_amount * LAMPORTS_PER_SOL), priority_fee, "buy", token_id)
        if isinstance(submitted, TradeResult):
            return submitted
        quote, signature, confirmation = submitted

        confirmed = confirmation is ConfirmationStatus.CONFIRMED
        tokens = int(quote["outAmount"]) / (10 ** decimals)
        if confirmed:
            tx = await self.rpc.get_transaction(signature)
            actual = token_balance_change(tx, self.signer.pubkey, token_id) if tx else None
            if actual is not None and actual > 0:
                tokens = actual

        logger.info("jupiter_buy", token_id=token_id, signature=signature, tokens=tokens, confirmed=confirmed)
        return TradeResult(
            success=True,
            venue=self.venue,
            signature=signature,
            tokens_received=tokens,
            fill_price=quote_amount / tokens if tokens > 0 else None,
            confirmed=confirmed
        )

    async def sell(self, token_id: str, token_amount: float, slippage_pct: float, priority_fee: float) -> TradeResult:
        decimals = await self.get_decimals(token_id)
        submitted = await self._submit(token_id, SOL_MINT, int(token_amount * (10 ** decimals)), priority_fee, "sell", token_id)
        if isinstance(submitted, TradeResult):
            return submitted
        quote, signature, confirmation = submitted

        confirmed = confirmation is ConfirmationStatus.CONFIRMED
        sol = int(quote["outAmount"]) / LAMPORTS_PER_SOL

        logger.info("jupiter_sell", token_id=token_id, signature=signature, sol_received=sol, confirmed=confirmed)
        return TradeResult(
            success=True,
            venue=self.venue,
            signature=signature,
            quote_received=sol,
            fill_price=sol / token_amount if token_amount > 0 else None,
            confirmed=confirmed
        )
