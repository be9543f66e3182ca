"""
Tracked-wallet activity
Answers "did this wallet sell this token, and when?" from recent chain history,
and turns observed wallet buys/sells into queued copy and sell signals
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from copytrader.clients.rpc_client import SolanaRpcClient
from copytrader.core.logger import get_logger
from copytrader.core.signals import (
    COPY_SIGNALS_KEY,
    SELL_SIGNALS_KEY,
    CopySignal,
    SellSignal,
    buyers_key,
    sellers_key,
    wallet_sold_key
)
from copytrader.core.store import KeyValueStore


logger = get_logger(__name__)


UPVOTE_WINDOW_S = 600
SIGNAL_QUEUE_TTL_S = 60
SIGNATURE_SCAN_LIMIT = 20
TRACKED_WALLETS_KEY = "tracked_wallets"


def buy_detail_key(token_id: str, wallet: str) -> str:
    return f"upvotes:{token_id}:buy:{wallet}"


def sold_in_transaction(tx: Dict[str, Any], token_id: str) -> bool:
    """True if any token account for token_id shrank in this transaction"""
    meta = tx.get("meta") or {}
    if meta.get("err"):
        return False

    pre_by_index = {
        entry.get("accountIndex"): entry
        for entry in meta.get("preTokenBalances") or []
    }
    for post in meta.get("postTokenBalances") or []:
        if post.get("mint") != token_id:
            continue
        pre = pre_by_index.get(post.get("accountIndex"))
        if pre is None:
            continue
        post_amount = (post.get("uiTokenAmount") or {}).get("uiAmount") or 0
        pre_amount = (pre.get("uiTokenAmount") or {}).get("uiAmount") or 0
        if post_amount < pre_amount:
            return True
    return False


class WalletActivitySource:
    """
    WalletSellOracle backed by RPC signature scans

    A detected sell is cached under wallet_sold:{wallet}:{token} so later
    cycles skip the scan.
    """

    def __init__(
        self,
        rpc: SolanaRpcClient,
        store: KeyValueStore,
        lookback_s: int = 300,
        cache_ttl_s: int = 600,
        clock=None
    ):
        self.rpc = rpc
        self.store = store
        self.lookback_s = lookback_s
        self.cache_ttl_s = cache_ttl_s
        self._clock = clock or (lambda: datetime.now(timezone.utc).timestamp())

    async def get_sell_time(self, wallet: str, token_id: str) -> Optional[datetime]:
        """Time of the wallet's most recent sell of token_id within the lookback, or None"""
        cached = await self.store.get(wallet_sold_key(wallet, token_id))
        if cached is not None:
            return datetime.fromtimestamp(float(cached), tz=timezone.utc)

        cutoff = self._clock() - self.lookback_s
        signatures = await self.rpc.get_signatures_for_address(wallet, limit=SIGNATURE_SCAN_LIMIT)

        for sig in signatures:
            block_time = sig.get("blockTime")
            if block_time is None or block_time < cutoff:
                break
            if sig.get("err"):
                continue

            try:
                tx = await self.rpc.get_transaction(sig["signature"])
            except Exception as e:
                logger.debug("wallet_tx_fetch_failed", wallet=wallet, signature=sig.get("signature"), error=str(e))
                continue

            if tx and sold_in_transaction(tx, token_id):
                await self.store.setex(wallet_sold_key(wallet, token_id), self.cache_ttl_s, str(block_time))
                logger.info("tracked_wallet_sold", wallet=wallet, token_id=token_id, signature=sig["signature"])
                return datetime.fromtimestamp(block_time, tz=timezone.utc)

        return None

    async def has_sold(self, wallet: str, token_id: str) -> bool:
        return await self.get_sell_time(wallet, token_id) is not None

    async def forget_sell(self, wallet: str, token_id: str) -> None:
        await self.store.delete(wallet_sold_key(wallet, token_id))

    async def track_wallet(self, wallet: str) -> bool:
        return await self.store.sadd(TRACKED_WALLETS_KEY, wallet) > 0

    async def untrack_wallet(self, wallet: str) -> bool:
        return await self.store.srem(TRACKED_WALLETS_KEY, wallet) > 0

    async def tracked_count(self) -> int:
        return await self.store.scard(TRACKED_WALLETS_KEY)

    async def record_buy(
        self,
        wallet: str,
        token_id: str,
        sol_amount: float,
        signature: Optional[str] = None,
        wallet_name: Optional[str] = None,
        venue: Optional[str] = None,
        timestamp: Optional[float] = None
    ) -> CopySignal:
        """Register a tracked wallet's buy as an upvote and queue a copy signal"""
        timestamp = timestamp if timestamp is not None else self._clock()

        await self.store.sadd_with_expire(buyers_key(token_id), wallet, UPVOTE_WINDOW_S)
        await self.store.hset(buy_detail_key(token_id, wallet), {
            "wallet_name": wallet_name or "",
            "sol_amount": str(sol_amount),
            "timestamp": str(timestamp),
            "signature": signature or "",
            "venue": venue or ""
        })
        await self.store.expire(buy_detail_key(token_id, wallet), UPVOTE_WINDOW_S)

        buyers = sorted(await self.store.smembers(buyers_key(token_id)))
        amounts = {wallet: sol_amount}
        for buyer in buyers:
            if buyer == wallet:
                continue
            detail = await self.store.hgetall(buy_detail_key(token_id, buyer))
            if detail.get("sol_amount"):
                amounts[buyer] = float(detail["sol_amount"])

        signal = CopySignal(
            token_id=token_id,
            source_wallet=wallet,
            wallets=buyers,
            wallet_amounts=amounts,
            source_wallet_name=wallet_name,
            signature=signature,
            venue=venue,
            timestamp=timestamp
        )
        await self.store.lpush(COPY_SIGNALS_KEY, signal.to_json())
        await self.store.expire(COPY_SIGNALS_KEY, SIGNAL_QUEUE_TTL_S)

        logger.info("copy_signal_queued", token_id=token_id, wallet=wallet, upvotes=signal.upvotes)
        return signal

    async def record_sell(
        self,
        wallet: str,
        token_id: str,
        signature: Optional[str] = None,
        venue: Optional[str] = None,
        timestamp: Optional[float] = None
    ) -> SellSignal:
        """Register a tracked wallet's sell and queue a sell signal"""
        timestamp = timestamp if timestamp is not None else self._clock()

        await self.store.sadd_with_expire(sellers_key(token_id), wallet, UPVOTE_WINDOW_S)
        await self.store.setex(wallet_sold_key(wallet, token_id), self.cache_ttl_s, str(timestamp))

        sellers = sorted(await self.store.smembers(sellers_key(token_id)))
        signal = SellSignal(
            token_id=token_id,
            wallet=wallet,
            sellers=sellers,
            signature=signature,
            venue=venue,
            timestamp=timestamp
        )
        await self.store.lpush(SELL_SIGNALS_KEY, signal.to_json())
        await self.store.expire(SELL_SIGNALS_KEY, SIGNAL_QUEUE_TTL_S)

        logger.info("sell_signal_queued", token_id=token_id, wallet=wallet, sell_count=signal.sell_count)
        return signal
