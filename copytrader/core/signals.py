"""
Copy and sell signals
Normalized wallet-activity events, their queues in the store, and the sell-signal
flagging step (informational only; exits stay with the exit policy)
"""

import json
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from copytrader.core.logger import get_logger
from copytrader.core.metrics import MetricsCollector
from copytrader.core.store import KeyValueStore


logger = get_logger(__name__)


COPY_SIGNALS_KEY = "copy_signals"
SELL_SIGNALS_KEY = "sell_signals"
MULTIPLE_SELLERS_TTL_S = 30


def buyers_key(token_id: str) -> str:
    return f"upvotes:{token_id}:buyers"


def sellers_key(token_id: str) -> str:
    return f"upvotes:{token_id}:sellers"


def multiple_sellers_key(token_id: str) -> str:
    return f"multiple_sellers:{token_id}"


def wallet_sold_key(wallet: str, token_id: str) -> str:
    return f"wallet_sold:{wallet}:{token_id}"


def _distinct(items) -> List[str]:
    seen = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return seen


@dataclass
class CopySignal:
    """One or more tracked wallets bought the same token within the upvote window"""
    token_id: str
    source_wallet: str
    wallets: List[str] = field(default_factory=list)
    wallet_amounts: Dict[str, float] = field(default_factory=dict)
    source_wallet_name: Optional[str] = None
    signature: Optional[str] = None
    venue: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.token_id:
            raise ValueError("CopySignal requires a token_id")
        if not self.source_wallet:
            raise ValueError("CopySignal requires a source_wallet")
        self.wallets = _distinct([self.source_wallet] + list(self.wallets))

    @property
    def upvotes(self) -> int:
        return len(self.wallets)

    @property
    def signal_id(self) -> str:
        """Stable id for idempotent consumption"""
        if self.signature:
            return self.signature
        return f"{self.token_id}:{self.source_wallet}:{self.timestamp}"

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "CopySignal":
        """
        Raises:
            ValueError: If the payload is not a copy signal
        """
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Copy signal payload must be an object")
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class SellSignal:
    """Tracked wallets that sold a token within the window; count is informational"""
    token_id: str
    wallet: str
    sellers: List[str] = field(default_factory=list)
    signature: Optional[str] = None
    venue: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.token_id:
            raise ValueError("SellSignal requires a token_id")
        self.sellers = _distinct([self.wallet] + list(self.sellers))

    @property
    def sell_count(self) -> int:
        return len(self.sellers)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "SellSignal":
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Sell signal payload must be an object")
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


class SellSignalFlagger:
    """
    Consumes sell signals and flags copy positions that tracked wallets are leaving

    A flag is a short-lived multiple_sellers:{token} key plus a notification.
    It never closes anything.
    """

    def __init__(
        self,
        store: KeyValueStore,
        positions,
        notifier,
        metrics: MetricsCollector,
        min_wallets_to_sell: int = 1
    ):
        self.store = store
        self.positions = positions
        self.notifier = notifier
        self.metrics = metrics
        self.min_wallets_to_sell = min_wallets_to_sell

    async def process_next(self, timeout: float = 2.0) -> Optional[bool]:
        """
        Handle one queued sell signal

        Returns:
            None if the queue was empty, otherwise whether the token was flagged
        """
        raw = await self.store.blpop(SELL_SIGNALS_KEY, timeout=timeout)
        if raw is None:
            return None

        try:
            signal = SellSignal.from_json(raw)
        except (ValueError, TypeError) as e:
            logger.warning("sell_signal_malformed", error=str(e))
            self.metrics.increment_counter("sell_signals", labels={"outcome": "malformed"})
            return False

        return await self.handle(signal)

    async def handle(self, signal: SellSignal) -> bool:
        token_id = signal.token_id

        if not await self.positions.is_open(token_id):
            logger.debug("sell_signal_no_position", token_id=token_id)
            return False

        position = await self.positions.get_position(token_id)
        if position is None or position.label != "copy":
            return False

        if signal.sell_count < self.min_wallets_to_sell:
            logger.info(
                "sell_signal_below_threshold",
                token_id=token_id,
                sell_count=signal.sell_count,
                min_wallets_to_sell=self.min_wallets_to_sell
            )
            return False

        await self.store.setex(multiple_sellers_key(token_id), MULTIPLE_SELLERS_TTL_S, str(signal.sell_count))
        logger.warning(
            "multiple_sellers_flagged",
            token_id=token_id,
            sell_count=signal.sell_count,
            sellers=signal.sellers
        )
        self.metrics.increment_counter("sell_signals", labels={"outcome": "flagged"})

        await self.notifier.send_text(
            f"⚠️ TRACKED WALLETS SELLING\n"
            f"Token: {token_id[:16]}...\n"
            f"Sellers: {signal.sell_count}/{self.min_wallets_to_sell} wallets\n"
            f"Exit policy will evaluate on the next cycle"
        )
        return True
