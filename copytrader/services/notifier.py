"""
Discord webhook notifier
Trade opens/closes, live PnL updates and error alerts. Delivery failures are logged
and reported as False; they never reach the trading loops.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from copytrader.core.logger import get_logger


logger = get_logger(__name__)


EXIT_REASON_LABELS = {
    "wallet_exit_early": "⚡ Phase 1: Wallet Exit (0-3 min)",
    "wallet_exit_loss_protection": "🛡️ Phase 2: Wallet Exit + Loss Protection",
    "take_profit": "💰 Take Profit",
    "trailing_stop": "📉 Trailing Stop",
    "stop_loss": "🛑 Stop Loss",
    "max_hold_time": "⏱️ Max Hold Time",
    "force_exit": "🎓 Forced Exit (Migration)",
    "manual_sell": "👤 Manual Sell",
    "data_integrity_emergency_exit": "🚨 Emergency Exit (Corrupt Record)",
}

COLOR_GREEN = 0x10B981
COLOR_RED = 0xEF4444
COLOR_ORANGE = 0xF59E0B


def pnl_emoji(pnl_percent: float) -> str:
    if pnl_percent >= 20:
        return "🚀"
    if pnl_percent >= 10:
        return "📈"
    if pnl_percent >= 0:
        return "🟢"
    if pnl_percent >= -5:
        return "🟡"
    return "🔴"


class DiscordNotifier:
    """Handles Discord notifications via webhooks"""

    def __init__(self, webhook_url: str, username: str = "Copy Trader", client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url
        self.username = username
        self._client = client or httpx.AsyncClient(timeout=10)
        self.enabled = bool(webhook_url and webhook_url.strip())

        if not self.enabled:
            logger.warning("discord_notifications_disabled")
        else:
            logger.info("discord_notifier_initialized", webhook=f"{webhook_url[:50]}...")

    async def _post(self, payload: Dict[str, Any]) -> bool:
        """Post to the webhook; 3 attempts, honoring 429 Retry-After and retrying 5xx"""
        if not self.enabled:
            return False

        for attempt in range(3):
            try:
                resp = await self._client.post(self.webhook_url, json=payload)
                if resp.status_code in (200, 204):
                    return True

                if resp.status_code == 429:
                    retry_after = float(resp.headers.get("Retry-After", "1"))
                    logger.warning("discord_rate_limited", retry_after=retry_after)
                    await asyncio.sleep(retry_after)
                    continue

                if 500 <= resp.status_code < 600:
                    await asyncio.sleep(1 + attempt)
                    continue

                logger.error("discord_webhook_error", status=resp.status_code, body=resp.text[:200])
                return False

            except httpx.HTTPError as e:
                logger.error("discord_notification_failed", attempt=attempt + 1, error=str(e))
                if attempt < 2:
                    await asyncio.sleep(1)

        return False

    async def send_text(self, content: str) -> bool:
        if not self.enabled:
            return False
        # Discord caps content at 2000 characters
        return await self._post({"username": self.username, "content": content[:1900]})

    async def send_embed(
        self,
        title: str,
        fields: Dict[str, Any],
        color: int = 0x2B6CB0,
        description: Optional[str] = None,
        footer: Optional[str] = None
    ) -> bool:
        if not self.enabled:
            return False

        embed = {
            "title": title[:256],
            "color": color,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "fields": [
                {"name": str(name)[:256], "value": str(value)[:1024], "inline": True}
                for name, value in fields.items()
            ]
        }
        if description:
            embed["description"] = description[:2048]
        if footer:
            embed["footer"] = {"text": footer[:2048]}

        return await self._post({"username": self.username, "embeds": [embed]})

    async def send_position_opened(self, position, mode: str, upvotes: int, confidence: float) -> bool:
        prov = position.provenance
        return await self.send_embed(
            f"🟢 {mode.upper()} COPY BUY",
            {
                "Trader": prov.get("source_wallet_name") or prov.get("source_wallet", "unknown")[:8],
                "Token": f"{position.token_id[:16]}...",
                "Spent": f"{position.quote_spent:.4f} SOL",
                "Tokens": f"{position.token_amount:,.2f}",
                "Entry": f"{position.entry_price:.10f}",
                "Upvotes": upvotes,
                "Confidence": f"{confidence:.0f}%",
                "Venue": prov.get("executed_venue", "?"),
            },
            color=COLOR_GREEN,
            footer=position.signature
        )

    async def send_position_closed(self, position, reason: str, pnl, mode: str, hold_time_s: float) -> bool:
        label = EXIT_REASON_LABELS.get(reason, reason.upper())
        emoji = "✅" if pnl.pnl_amount >= 0 else "❌"
        return await self.send_embed(
            f"{emoji} {mode.upper()} EXIT: {label}",
            {
                "Trader": position.provenance.get("source_wallet_name") or "Unknown",
                "Token": f"{position.token_id[:16]}...",
                "Hold": f"{hold_time_s:.0f}s",
                "Entry": f"{pnl.entry_price:.10f}",
                "Exit": f"{pnl.exit_price:.10f}",
                "PnL": f"{pnl.pnl_percent:.2f}% ({pnl.pnl_amount:.4f} SOL)",
                "Fees": f"{pnl.breakdown.total_fees:.5f} SOL",
            },
            color=COLOR_GREEN if pnl.pnl_amount >= 0 else COLOR_RED
        )

    async def send_live_update(self, position, current_price: float, pnl, phase: Optional[str], hold_time_s: float) -> bool:
        return await self.send_text(
            f"{pnl_emoji(pnl.pnl_percent)} P&L UPDATE\n"
            f"Token: {position.token_id[:16]}...\n"
            f"Hold: {hold_time_s:.0f}s ({phase or 'n/a'})\n"
            f"Entry: {position.entry_price:.10f} | Now: {current_price:.10f} | High: {position.max_price:.10f}\n"
            f"PnL: {pnl.pnl_percent:+.2f}% ({pnl.pnl_amount:+.4f} SOL)"
        )

    async def send_error(self, title: str, message: str, context: Optional[Dict[str, Any]] = None) -> bool:
        return await self.send_embed(
            f"🚨 {title}",
            context or {},
            color=COLOR_ORANGE,
            description=message
        )

    async def close(self) -> None:
        await self._client.aclose()
