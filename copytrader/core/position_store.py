"""
Position Store
Open/update/close lifecycle of copy positions on top of the key-value store,
with a dated trade history for every closed lot
"""

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from copytrader.core.bonding_curve import parse_mint
from copytrader.core.errors import (
    CorruptPositionError,
    PnLInputError,
    PositionExistsError,
    PositionNotFoundError,
)
from copytrader.core.logger import get_logger
from copytrader.core.metrics import MetricsCollector
from copytrader.core.pnl import PnLCalculator, PnLResult
from copytrader.core.store import KeyValueStore
from copytrader.core.venues import Venue


logger = get_logger(__name__)


OPEN_POSITIONS_KEY = "open_positions"
TRADE_HISTORY_TTL_S = 30 * 24 * 3600

REASON_DATA_INTEGRITY = "data_integrity_emergency_exit"


def position_key(token_id: str) -> str:
    return f"position:{token_id}"


def trades_key(day: str) -> str:
    return f"trades:{day}"


def reentry_key(token_id: str) -> str:
    return f"reentry_cooldown:{token_id}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PositionStatus(Enum):
    """Position status"""
    OPEN = "open"
    CLOSED = "closed"


def parse_float(value) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _to_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Position:
    """A copy position; one per token id in the store"""
    token_id: str
    entry_price: float
    entry_time: datetime
    quote_spent: float
    token_amount: float
    max_price: float
    status: PositionStatus = PositionStatus.OPEN
    label: str = "copy"
    signature: Optional[str] = None
    confirmed: bool = True
    provenance: Dict[str, str] = field(default_factory=dict)

    # exit fields, filled on close
    exit_reason: Optional[str] = None
    exit_price: Optional[float] = None
    exit_time: Optional[datetime] = None
    exit_signature: Optional[str] = None
    quote_received: Optional[float] = None
    pnl_amount: Optional[float] = None
    pnl_percent: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN

    @property
    def source_wallet(self) -> Optional[str]:
        return self.provenance.get("source_wallet")

    def hold_time_s(self, now: datetime) -> float:
        return (now - self.entry_time).total_seconds()

    def to_record(self) -> Dict[str, str]:
        """Flat string mapping for the store hash"""
        record = {
            "token_id": self.token_id,
            "entry_price": repr(self.entry_price),
            "entry_time": self.entry_time.isoformat(),
            "quote_spent": repr(self.quote_spent),
            "token_amount": repr(self.token_amount),
            "max_price": repr(self.max_price),
            "status": self.status.value,
            "label": self.label,
            "signature": self.signature or "",
            "confirmed": "1" if self.confirmed else "0",
        }
        for key, value in self.provenance.items():
            record[f"prov_{key}"] = "" if value is None else str(value)
        return record

    @classmethod
    def from_record(cls, token_id: str, record: Dict[str, str]) -> "Position":
        """
        Rebuild a position from its hash

        Raises:
            CorruptPositionError: If an open record lacks usable numeric fields
        """
        try:
            status = PositionStatus(record.get("status", ""))
        except ValueError:
            raise CorruptPositionError(token_id, ["status"])

        entry_price = parse_float(record.get("entry_price"))
        quote_spent = parse_float(record.get("quote_spent"))
        token_amount = parse_float(record.get("token_amount"))
        entry_time = _to_datetime(record.get("entry_time"))

        bad = []
        if entry_price is None or entry_price <= 0:
            bad.append("entry_price")
        if quote_spent is None or quote_spent <= 0:
            bad.append("quote_spent")
        if token_amount is None or token_amount <= 0:
            bad.append("token_amount")
        if entry_time is None:
            bad.append("entry_time")
        if bad:
            raise CorruptPositionError(token_id, bad)

        max_price = parse_float(record.get("max_price"))
        if max_price is None or max_price < entry_price:
            max_price = entry_price

        return cls(
            token_id=token_id,
            entry_price=entry_price,
            entry_time=entry_time,
            quote_spent=quote_spent,
            token_amount=token_amount,
            max_price=max_price,
            status=status,
            label=record.get("label", "copy"),
            signature=record.get("signature") or None,
            confirmed=record.get("confirmed", "1") == "1",
            provenance={k[5:]: v for k, v in record.items() if k.startswith("prov_")},
            exit_reason=record.get("exit_reason") or None,
            exit_price=parse_float(record.get("exit_price")),
            exit_time=_to_datetime(record.get("exit_time")),
            exit_signature=record.get("exit_signature") or None,
            quote_received=parse_float(record.get("quote_received")),
            pnl_amount=parse_float(record.get("pnl_amount")),
            pnl_percent=parse_float(record.get("pnl_percent")),
        )


class PositionStore:
    """
    Lifecycle manager for copy positions

    Keys:
    - position:{token}     hash, the current (or last) lot for the token
    - open_positions       set of token ids with an open lot
    - trades:{YYYY-MM-DD}  list of JSON records, one per closed lot, kept 30 days
    - reentry_cooldown:{token}  set on close when a cooldown is configured

    Removing the token from open_positions is the close claim: of two concurrent
    closers only one sees the removal succeed, the other gets PositionNotFoundError.

    Usage:
        positions = PositionStore(store, PnLCalculator(), metrics)
        await positions.open_position(mint, "copy", 0.000001, 0.1, 100_000, sig)
        result = await positions.close_position(mint, 0.000002, 100_000, 0.196, "take_profit", sig2)
    """

    def __init__(
        self,
        store: KeyValueStore,
        calculator: PnLCalculator,
        metrics: MetricsCollector,
        reentry_cooldown_s: float = 0,
        now: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.calculator = calculator
        self.metrics = metrics
        self.reentry_cooldown_s = reentry_cooldown_s
        self._now = now

    async def open_position(
        self,
        token_id: str,
        label: str,
        entry_price: float,
        quote_spent: float,
        tokens_received: float,
        signature: Optional[str],
        provenance: Optional[Dict[str, object]] = None,
        confirmed: bool = True
    ) -> Position:
        """
        Record a new open position

        Raises:
            InvalidTokenIdError: If token_id is not a mint address
            PnLInputError: If a numeric field is missing, zero or not finite
            PositionExistsError: If the token already has an open position
        """
        parse_mint(token_id)
        for name, value in (
            ("entry_price", entry_price),
            ("quote_spent", quote_spent),
            ("tokens_received", tokens_received),
        ):
            number = parse_float(value)
            if isinstance(value, bool) or number is None or number <= 0:
                raise PnLInputError(f"{name} must be a positive finite number, got {value!r}")

        if not await self.store.sadd(OPEN_POSITIONS_KEY, token_id):
            raise PositionExistsError(f"Position already open for {token_id}")

        position = Position(
            token_id=token_id,
            entry_price=float(entry_price),
            entry_time=self._now(),
            quote_spent=float(quote_spent),
            token_amount=float(tokens_received),
            max_price=float(entry_price),
            label=label,
            signature=signature,
            confirmed=confirmed,
            provenance={k: "" if v is None else str(v) for k, v in (provenance or {}).items()},
        )

        try:
            # a previous closed lot may still sit under the key
            await self.store.delete(position_key(token_id))
            await self.store.hset(position_key(token_id), position.to_record())
        except Exception:
            await self.store.srem(OPEN_POSITIONS_KEY, token_id)
            raise

        logger.info(
            "position_opened",
            token_id=token_id,
            label=label,
            entry_price=position.entry_price,
            quote_spent=position.quote_spent,
            token_amount=position.token_amount,
            signature=signature,
            confirmed=confirmed
        )
        self.metrics.increment_counter("positions_opened", labels={"label": label})

        return position

    async def update_max_price(self, token_id: str, observed_price: float) -> bool:
        """
        Raise the high-water mark; lower or equal prices are ignored

        Returns:
            True if the stored max changed
        """
        price = parse_float(observed_price)
        if price is None or price <= 0:
            return False

        try:
            record = await self.store.hgetall(position_key(token_id))
        except Exception as e:
            logger.error("max_price_read_failed", token_id=token_id, error=str(e))
            return False

        if record.get("status") != PositionStatus.OPEN.value:
            return False

        current = parse_float(record.get("max_price")) or 0.0
        if price <= current:
            return False

        await self.store.hset(position_key(token_id), {"max_price": repr(price)})
        logger.debug("max_price_raised", token_id=token_id, previous=current, max_price=price)
        return True

    async def close_position(
        self,
        token_id: str,
        exit_price: float,
        token_amount: Optional[float],
        quote_received: Optional[float],
        reason: str,
        signature: Optional[str],
        venue: Venue = Venue.RELAY,
        slippage: float = 0.0,
        priority_fee: float = 0.0,
        confirmed: bool = True
    ) -> PnLResult:
        """
        Close the open position and archive it

        Raises:
            PositionNotFoundError: If there is no open position (or another caller closed it first)
            CorruptPositionError: If the stored record is unusable
            PnLInputError: If exit_price or token_amount is unusable
        """
        record = await self.store.hgetall(position_key(token_id))
        if not record or record.get("status") != PositionStatus.OPEN.value:
            raise PositionNotFoundError(f"No open position for {token_id}")

        position = Position.from_record(token_id, record)
        sold_amount = position.token_amount if token_amount is None else token_amount

        pnl = self.calculator.calculate_realized_pnl(
            entry_price=position.entry_price,
            exit_price=exit_price,
            token_amount=sold_amount,
            quote_spent=position.quote_spent,
            venue=venue,
            slippage=slippage,
            priority_fee=priority_fee
        )

        if not await self.store.srem(OPEN_POSITIONS_KEY, token_id):
            raise PositionNotFoundError(f"Position {token_id} already closed")

        exit_time = self._now()
        await self.store.hset(position_key(token_id), {
            "status": PositionStatus.CLOSED.value,
            "exit_reason": reason,
            "exit_price": repr(pnl.exit_price),
            "exit_time": exit_time.isoformat(),
            "exit_signature": signature or "",
            "exit_venue": pnl.breakdown.venue,
            "exit_confirmed": "1" if confirmed else "0",
            "quote_received": "" if quote_received is None else repr(float(quote_received)),
            "net_received": repr(pnl.net_received),
            "pnl_amount": repr(pnl.pnl_amount),
            "pnl_percent": repr(pnl.pnl_percent),
        })

        await self._archive(position, exit_time, {
            "exit_price": pnl.exit_price,
            "token_amount": pnl.token_amount,
            "quote_received": quote_received,
            "net_received": pnl.net_received,
            "pnl_amount": pnl.pnl_amount,
            "pnl_percent": pnl.pnl_percent,
            "price_change_percent": pnl.price_change_percent,
            "reason": reason,
            "venue": pnl.breakdown.venue,
            "exit_signature": signature,
            "confirmed": confirmed,
            "data_integrity": False,
        })

        logger.info(
            "position_closed",
            token_id=token_id,
            reason=reason,
            venue=pnl.breakdown.venue,
            pnl_amount=round(pnl.pnl_amount, 6),
            pnl_percent=round(pnl.pnl_percent, 2),
            price_change_percent=round(pnl.price_change_percent, 2),
            hold_time_s=int(position.hold_time_s(exit_time)),
            confirmed=confirmed
        )
        self.metrics.increment_counter(
            "positions_closed",
            labels={"profitable": str(pnl.is_profitable)}
        )

        return pnl

    async def force_close(
        self,
        token_id: str,
        note: str,
        exit_signature: Optional[str] = None,
        quote_received: Optional[float] = None
    ) -> bool:
        """
        Clear a position whose record cannot be priced

        The closure is archived with data_integrity=True and no PnL so it stands
        apart from strategy exits in the history.

        Returns:
            True if this call removed the token from the open index
        """
        if not await self.store.srem(OPEN_POSITIONS_KEY, token_id):
            return False

        record = await self.store.hgetall(position_key(token_id))
        exit_time = self._now()
        await self.store.hset(position_key(token_id), {
            "status": PositionStatus.CLOSED.value,
            "exit_reason": REASON_DATA_INTEGRITY,
            "exit_time": exit_time.isoformat(),
            "exit_signature": exit_signature or "",
            "quote_received": "" if quote_received is None else repr(float(quote_received)),
            "integrity_note": note,
        })

        entry = {
            "token_id": token_id,
            "label": record.get("label", "copy"),
            "entry_time": record.get("entry_time"),
            "exit_time": exit_time.isoformat(),
            "raw_record": record,
            "reason": REASON_DATA_INTEGRITY,
            "note": note,
            "exit_signature": exit_signature,
            "quote_received": quote_received,
            "pnl_amount": None,
            "data_integrity": True,
        }
        await self._append_history(exit_time, entry)
        await self._start_cooldown(token_id)

        logger.warning("position_force_closed", token_id=token_id, note=note, exit_signature=exit_signature)
        self.metrics.increment_counter("positions_force_closed")
        return True

    async def get_position(self, token_id: str) -> Optional[Position]:
        """The stored lot for a token (open or closed), None if missing or unreadable"""
        try:
            record = await self.store.hgetall(position_key(token_id))
            if not record:
                return None
            return Position.from_record(token_id, record)
        except Exception as e:
            logger.error("position_lookup_failed", token_id=token_id, error=str(e))
            return None

    async def get_open_records(self) -> List[Tuple[str, Dict[str, str]]]:
        """Raw hashes of every open position, unparsed"""
        try:
            token_ids = await self.store.smembers(OPEN_POSITIONS_KEY)
        except Exception as e:
            logger.error("open_positions_lookup_failed", error=str(e))
            return []

        records = []
        for token_id in sorted(token_ids):
            try:
                record = await self.store.hgetall(position_key(token_id))
            except Exception as e:
                logger.error("position_lookup_failed", token_id=token_id, error=str(e))
                continue
            if record.get("status") == PositionStatus.OPEN.value:
                records.append((token_id, record))
            else:
                logger.warning("open_index_drift", token_id=token_id, status=record.get("status"))
        return records

    async def get_open_positions(self) -> List[Position]:
        """Open positions whose record parses; corrupt ones are logged and skipped"""
        positions = []
        for token_id, record in await self.get_open_records():
            try:
                positions.append(Position.from_record(token_id, record))
            except CorruptPositionError as e:
                logger.error("position_record_corrupt", token_id=token_id, fields=e.fields)
        return positions

    async def count_open(self) -> int:
        """Open positions with a readable open record; index drift is not counted"""
        return len(await self.get_open_records())

    async def is_open(self, token_id: str) -> bool:
        return await self.store.sismember(OPEN_POSITIONS_KEY, token_id)

    async def in_reentry_cooldown(self, token_id: str) -> bool:
        return await self.store.exists(reentry_key(token_id))

    async def get_daily_trades(self, day: Optional[str] = None) -> List[dict]:
        """Closed-lot records for a UTC day (default today)"""
        day = day or self._now().date().isoformat()
        try:
            raw = await self.store.lrange(trades_key(day), 0, -1)
        except Exception as e:
            logger.error("trade_history_read_failed", day=day, error=str(e))
            return []

        trades = []
        for item in raw:
            try:
                trades.append(json.loads(item))
            except json.JSONDecodeError:
                logger.warning("trade_history_entry_unreadable", day=day)
        return trades

    async def get_daily_pnl(self, day: Optional[str] = None) -> float:
        """Sum of realized PnL for a day"""
        return sum(
            float(t["pnl_amount"]) for t in await self.get_daily_trades(day)
            if t.get("pnl_amount") is not None
        )

    async def get_daily_stats(self, day: Optional[str] = None) -> dict:
        """Wins, losses, win rate and PnL aggregates for a day"""
        trades = await self.get_daily_trades(day)
        pnls = [float(t["pnl_amount"]) for t in trades if t.get("pnl_amount") is not None]
        wins = sum(1 for p in pnls if p > 0)
        losses = sum(1 for p in pnls if p < 0)
        total = sum(pnls)

        return {
            "day": day or self._now().date().isoformat(),
            "total_trades": len(trades),
            "wins": wins,
            "losses": losses,
            "win_rate": (wins / len(trades) * 100) if trades else 0.0,
            "total_pnl": total,
            "avg_pnl": (total / len(trades)) if trades else 0.0,
            "biggest_win": max(pnls) if pnls else 0.0,
            "biggest_loss": min(pnls) if pnls else 0.0,
            "integrity_closures": sum(1 for t in trades if t.get("data_integrity")),
        }

    async def _archive(self, position: Position, exit_time: datetime, exit_fields: dict) -> None:
        entry = {
            "token_id": position.token_id,
            "label": position.label,
            "entry_price": position.entry_price,
            "entry_time": position.entry_time.isoformat(),
            "entry_signature": position.signature,
            "quote_spent": position.quote_spent,
            "max_price": position.max_price,
            "exit_time": exit_time.isoformat(),
            "hold_time_s": position.hold_time_s(exit_time),
            "provenance": position.provenance,
        }
        entry.update(exit_fields)
        await self._append_history(exit_time, entry)
        await self._start_cooldown(position.token_id)

    async def _append_history(self, exit_time: datetime, entry: dict) -> None:
        key = trades_key(exit_time.date().isoformat())
        await self.store.rpush(key, json.dumps(entry, default=str))
        await self.store.expire(key, TRADE_HISTORY_TTL_S)

    async def _start_cooldown(self, token_id: str) -> None:
        if self.reentry_cooldown_s > 0:
            await self.store.set(reentry_key(token_id), self._now().isoformat(), ex=self.reentry_cooldown_s)
