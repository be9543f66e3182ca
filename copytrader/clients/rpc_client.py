"""
Solana JSON-RPC client
HTTP calls over a shared aiohttp session, with the handful of methods the worker needs
"""

import asyncio
import time
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp

from copytrader.core.config import RPCConfig
from copytrader.core.logger import get_logger
from copytrader.core.metrics import LatencyTimer, MetricsCollector


logger = get_logger(__name__)


class ConfirmationStatus(Enum):
    """Outcome of polling a submitted transaction"""
    CONFIRMED = "confirmed"
    FAILED = "failed"  # landed with an error, nothing was traded
    UNCONFIRMED = "unconfirmed"  # polling ran out, may still land


class RPCError(Exception):
    """JSON-RPC error response"""

    def __init__(self, method: str, message: str):
        super().__init__(f"RPC error on {method}: {message}")
        self.method = method
        self.message = message


class SolanaRpcClient:
    """
    Minimal async Solana RPC client

    Usage:
        rpc = SolanaRpcClient(config.rpc, metrics)
        await rpc.start()
        info = await rpc.get_account_info(address)
        await rpc.stop()
    """

    def __init__(self, config: RPCConfig, metrics: MetricsCollector):
        self.config = config
        self.metrics = metrics
        self._http_session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
            logger.info("rpc_client_started", url=self.config.url)

    async def stop(self) -> None:
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
            logger.info("rpc_client_stopped")

    async def call_http_rpc(
        self,
        method: str,
        params: List[Any],
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """
        Make a JSON-RPC call

        Returns:
            The full response dict (``result`` key holds the payload)

        Raises:
            RPCError: If the node answered with an error
            asyncio.TimeoutError: If the call exceeded the timeout
        """
        if self._http_session is None:
            raise RuntimeError("HTTP session not initialized. Call start() first.")

        payload = {
            "jsonrpc": "2.0",
            "id": int(time.time() * 1000000),
            "method": method,
            "params": params
        }

        async def _make_request():
            async with self._http_session.post(self.config.url, json=payload) as response:
                return await response.json(content_type=None)

        try:
            with LatencyTimer(self.metrics, "http_rpc_call", {"method": method}):
                result = await asyncio.wait_for(
                    _make_request(),
                    timeout=timeout if timeout is not None else self.config.timeout_s
                )
        except Exception:
            self.metrics.increment_counter("http_rpc_errors", labels={"method": method})
            raise

        if "error" in result:
            error = result["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            self.metrics.increment_counter("http_rpc_errors", labels={"method": method})
            raise RPCError(method, message)

        self.metrics.increment_counter("http_rpc_success", labels={"method": method})
        return result

    async def get_account_info(self, address: str) -> Optional[Dict[str, Any]]:
        """Account value (base64 data) or None if the account does not exist"""
        response = await self.call_http_rpc(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": "confirmed"}]
        )
        return (response.get("result") or {}).get("value")

    async def get_token_supply(self, mint: str) -> Dict[str, Any]:
        response = await self.call_http_rpc("getTokenSupply", [mint])
        return (response.get("result") or {}).get("value") or {}

    async def get_signatures_for_address(self, address: str, limit: int = 20) -> List[Dict[str, Any]]:
        response = await self.call_http_rpc(
            "getSignaturesForAddress",
            [address, {"limit": limit, "commitment": "confirmed"}]
        )
        return response.get("result") or []

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        response = await self.call_http_rpc(
            "getTransaction",
            [signature, {
                "encoding": "jsonParsed",
                "commitment": "confirmed",
                "maxSupportedTransactionVersion": 0
            }]
        )
        return response.get("result")

    async def send_transaction(self, encoded_tx: str) -> str:
        """Submit a base64 signed transaction; returns the signature"""
        response = await self.call_http_rpc(
            "sendTransaction",
            [encoded_tx, {"encoding": "base64", "skipPreflight": True, "maxRetries": 3}]
        )
        return response["result"]

    async def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        response = await self.call_http_rpc(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}]
        )
        statuses = (response.get("result") or {}).get("value") or [None]
        return statuses[0]

    async def wait_for_confirmation(self, signature: str) -> ConfirmationStatus:
        """
        Poll until the signature is confirmed or finalized

        Returns:
            CONFIRMED once landed, FAILED if the transaction landed with an error,
            UNCONFIRMED if the attempts ran out (it may still land)
        """
        for attempt in range(self.config.confirmation_attempts):
            try:
                status = await self.get_signature_status(signature)
            except Exception as e:
                logger.debug("confirmation_poll_failed", signature=signature, attempt=attempt, error=str(e))
                status = None

            if status:
                if status.get("err"):
                    logger.warning("transaction_failed_on_chain", signature=signature, error=str(status["err"]))
                    return ConfirmationStatus.FAILED
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return ConfirmationStatus.CONFIRMED

            await asyncio.sleep(self.config.confirmation_interval_s)

        logger.warning(
            "confirmation_attempts_exhausted",
            signature=signature,
            attempts=self.config.confirmation_attempts
        )
        return ConfirmationStatus.UNCONFIRMED

    async def get_token_balance_change(self, signature: str, owner: str, mint: str) -> Optional[float]:
        """Change in owner's UI balance of mint from a confirmed transaction"""
        tx = await self.get_transaction(signature)
        if not tx:
            return None
        return token_balance_change(tx, owner, mint)

    async def get_sol_balance_change(self, signature: str, owner: str) -> Optional[float]:
        """Change in owner's SOL balance from a confirmed transaction, fee included"""
        tx = await self.get_transaction(signature)
        if not tx:
            return None
        meta = tx.get("meta") or {}
        keys = (tx.get("transaction") or {}).get("message", {}).get("accountKeys", [])
        for index, key in enumerate(keys):
            pubkey = key.get("pubkey") if isinstance(key, dict) else key
            if pubkey == owner:
                pre = meta.get("preBalances", [])
                post = meta.get("postBalances", [])
                if index < len(pre) and index < len(post):
                    return (post[index] - pre[index]) / 1_000_000_000
        return None


def _ui_amount(entry: Dict[str, Any]) -> float:
    amount = entry.get("uiTokenAmount") or {}
    value = amount.get("uiAmount")
    if value is None:
        raw = amount.get("amount")
        decimals = amount.get("decimals", 0)
        return int(raw) / (10 ** decimals) if raw is not None else 0.0
    return float(value)


def token_balance_change(tx: Dict[str, Any], owner: str, mint: str) -> Optional[float]:
    """post - pre token balance for (owner, mint); None if the tx never touched it"""
    meta = tx.get("meta") or {}

    def total(entries) -> Optional[float]:
        found = None
        for entry in entries or []:
            if entry.get("owner") == owner and entry.get("mint") == mint:
                found = (found or 0.0) + _ui_amount(entry)
        return found

    pre = total(meta.get("preTokenBalances"))
    post = total(meta.get("postTokenBalances"))
    if pre is None and post is None:
        return None
    return (post or 0.0) - (pre or 0.0)
