"""
PumpPortal Lightning trade client (bonding-curve venue)
"""

import asyncio
from typing import Optional

import aiohttp

from copytrader.clients.rpc_client import ConfirmationStatus, SolanaRpcClient
from copytrader.core.config import PumpPortalConfig
from copytrader.core.logger import get_logger
from copytrader.core.venues import ERROR_FAILED_ON_CHAIN, ERROR_REJECTED, ERROR_TIMEOUT, TradeResult, Venue


logger = get_logger(__name__)


class PumpPortalClient:
    """
    TradeExecutor for the relay venue

    Orders go to /trade?api-key=...; PumpPortal signs and submits with the wallet
    behind the API key. Fills are read back from the confirmed transaction when
    ``owner`` is known, otherwise left for the caller to estimate.
    """

    venue = Venue.RELAY

    def __init__(
        self,
        config: PumpPortalConfig,
        rpc: SolanaRpcClient,
        owner: Optional[str] = None,
        timeout_s: float = 30.0
    ):
        self.config = config
        self.rpc = rpc
        self.owner = owner
        self.timeout_s = timeout_s
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
                headers={"Content-Type": "application/json"}
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _trade(self, action: str, token_id: str, amount: float, in_sol: bool, slippage_pct: float, priority_fee: float) -> str:
        if not self.config.api_key:
            raise RuntimeError("pumpportal.api_key is not configured")

        payload = {
            "action": action,
            "mint": token_id,
            "amount": amount,
            "denominatedInSol": "true" if in_sol else "false",
            "slippage": slippage_pct,
            "priorityFee": priority_fee,
            "pool": "pump",
            "skipPreflight": "false",
            "jitoOnly": "false"
        }

        session = await self._get_session()
        url = f"{self.config.base_url}/trade"
        async with session.post(url, params={"api-key": self.config.api_key}, json=payload) as response:
            data = await response.json(content_type=None)
            if response.status != 200:
                raise RuntimeError(f"PumpPortal HTTP {response.status}: {data}")

        signature = (data or {}).get("signature")
        if not signature:
            errors = (data or {}).get("errors")
            raise RuntimeError(f"PumpPortal returned no signature: {errors or data}")
        return signature

    async def _submit(self, action: str, token_id: str, amount: float, in_sol: bool, slippage_pct: float, priority_fee: float):
        """
        Submit an order and wait for it to land

        Only the HTTP submission is bounded by ``timeout_s``; confirmation polling is
        bounded by the RPC client's attempt count.

        Returns:
            (signature, ConfirmationStatus), or a failed TradeResult
        """
        try:
            signature = await asyncio.wait_for(
                self._trade(action, token_id, amount, in_sol, slippage_pct, priority_fee),
                timeout=self.timeout_s
            )
        except asyncio.TimeoutError:
            logger.error("pumpportal_submit_timeout", action=action, token_id=token_id, timeout_s=self.timeout_s)
            return TradeResult.failed(self.venue, f"{action} submission timed out after {self.timeout_s}s", ERROR_TIMEOUT)
        except (aiohttp.ClientError, RuntimeError) as e:
            logger.error("pumpportal_trade_failed", action=action, token_id=token_id, error=str(e))
            return TradeResult.failed(self.venue, str(e), ERROR_REJECTED)

        confirmation = await self.rpc.wait_for_confirmation(signature)
        if confirmation is ConfirmationStatus.FAILED:
            result = TradeResult.failed(self.venue, f"{action} transaction failed on-chain", ERROR_FAILED_ON_CHAIN)
            result.signature = signature
            return result
        return signature, confirmation

    async def buy(self, token_id: str, quote_amount: float, slippage_pct: float, priority_fee: float) -> TradeResult:
        submitted = await self._submit("buy", token_id, quote_amount, True, slippage_pct, priority_fee)
        if isinstance(submitted, TradeResult):
            return submitted
        signature, confirmation = submitted

        confirmed = confirmation is ConfirmationStatus.CONFIRMED
        tokens = None
        if confirmed and self.owner:
            tokens = await self.rpc.get_token_balance_change(signature, self.owner, token_id)

        logger.info("pumpportal_buy", token_id=token_id, signature=signature, tokens=tokens, confirmed=confirmed)
        return TradeResult(
            success=True,
            venue=self.venue,
            signature=signature,
            tokens_received=tokens if tokens and tokens > 0 else None,
            fill_price=quote_amount / tokens if tokens and tokens > 0 else None,
            confirmed=confirmed
        )

    async def sell(self, token_id: str, token_amount: float, slippage_pct: float, priority_fee: float) -> TradeResult:
        submitted = await self._submit("sell", token_id, token_amount, False, slippage_pct, priority_fee)
        if isinstance(submitted, TradeResult):
            return submitted
        signature, confirmation = submitted

        confirmed = confirmation is ConfirmationStatus.CONFIRMED
        sol = None
        if confirmed and self.owner:
            change = await self.rpc.get_sol_balance_change(signature, self.owner)
            if change is not None:
                # add back the priority fee the balance delta already paid
                sol = max(0.0, change + priority_fee)

        logger.info("pumpportal_sell", token_id=token_id, signature=signature, sol_received=sol, confirmed=confirmed)
        return TradeResult(
            success=True,
            venue=self.venue,
            signature=signature,
            quote_received=sol,
            fill_price=sol / token_amount if sol and token_amount > 0 else None,
            confirmed=confirmed
        )
