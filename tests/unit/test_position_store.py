"""
Unit tests for Position Store
Tests the open/update/close lifecycle, close exclusivity, history and daily stats
"""

import asyncio

import pytest
import pytest_asyncio

from copytrader.core.errors import (
    CorruptPositionError,
    InvalidTokenIdError,
    PnLInputError,
    PositionExistsError,
    PositionNotFoundError,
)
from copytrader.core.pnl import PnLCalculator
from copytrader.core.position_store import (
    OPEN_POSITIONS_KEY,
    REASON_DATA_INTEGRITY,
    Position,
    PositionStatus,
    PositionStore,
    position_key,
)
from copytrader.core.venues import Venue
from tests.conftest import MINT, OTHER_MINT, WALLET


# =============================================================================
# FIXTURES
# =============================================================================

@pytest_asyncio.fixture
async def positions(store, metrics, clock):
    return PositionStore(
        store,
        PnLCalculator(network_fee=0.0),
        metrics,
        reentry_cooldown_s=300,
        now=clock.datetime
    )


async def open_default(positions, token_id=MINT, **kwargs):
    return await positions.open_position(
        token_id,
        "copy",
        0.000001,
        0.1,
        100_000,
        "BUY_SIG",
        provenance={"source_wallet": WALLET, "upvotes": 2, "original_signature": None},
        **kwargs
    )


# =============================================================================
# OPENING
# =============================================================================

@pytest.mark.asyncio
async def test_open_position(positions, store, metrics):
    position = await open_default(positions)

    assert isinstance(position, Position)
    assert position.status is PositionStatus.OPEN
    assert position.max_price == position.entry_price
    assert position.source_wallet == WALLET
    assert position.provenance["upvotes"] == "2"
    assert position.provenance["original_signature"] == ""

    assert await positions.is_open(MINT)
    assert await positions.count_open() == 1
    assert await store.hget(position_key(MINT), "prov_source_wallet") == WALLET
    assert metrics.get_counter("positions_opened", labels={"label": "copy"}) == 1


@pytest.mark.asyncio
async def test_open_duplicate_rejected(positions):
    await open_default(positions)
    with pytest.raises(PositionExistsError):
        await open_default(positions)


@pytest.mark.asyncio
async def test_open_rejects_invalid_inputs(positions, store):
    with pytest.raises(InvalidTokenIdError):
        await positions.open_position("bad-id", "copy", 0.000001, 0.1, 100_000, "sig")
    with pytest.raises(PnLInputError):
        await positions.open_position(MINT, "copy", 0, 0.1, 100_000, "sig")
    with pytest.raises(PnLInputError):
        await positions.open_position(MINT, "copy", 0.000001, 0.1, float("nan"), "sig")

    assert await store.scard(OPEN_POSITIONS_KEY) == 0


@pytest.mark.asyncio
async def test_get_position_roundtrips_record(positions):
    opened = await open_default(positions, confirmed=False)
    loaded = await positions.get_position(MINT)

    assert loaded.entry_price == opened.entry_price
    assert loaded.entry_time == opened.entry_time
    assert loaded.token_amount == 100_000
    assert loaded.confirmed is False
    assert loaded.signature == "BUY_SIG"
    assert await positions.get_position(OTHER_MINT) is None


# =============================================================================
# HIGH-WATER MARK
# =============================================================================

@pytest.mark.asyncio
async def test_update_max_price_only_raises(positions):
    await open_default(positions)

    assert await positions.update_max_price(MINT, 0.000002) is True
    assert await positions.update_max_price(MINT, 0.0000015) is False
    assert await positions.update_max_price(MINT, 0.000002) is False
    assert await positions.update_max_price(MINT, float("nan")) is False
    assert await positions.update_max_price(MINT, -1) is False

    assert (await positions.get_position(MINT)).max_price == 0.000002


@pytest.mark.asyncio
async def test_update_max_price_ignores_closed_and_missing(positions):
    assert await positions.update_max_price(MINT, 1.0) is False

    await open_default(positions)
    await positions.close_position(MINT, 0.000001, None, 0.098, "stop_loss", "SELL")
    assert await positions.update_max_price(MINT, 1.0) is False


# =============================================================================
# CLOSING
# =============================================================================

@pytest.mark.asyncio
async def test_close_position_computes_pnl_and_archives(positions, clock):
    await open_default(positions)
    clock.advance(90)

    pnl = await positions.close_position(
        MINT, 0.000002, 100_000, 0.1965, "take_profit", "SELL_SIG", venue=Venue.RELAY
    )

    assert pnl.pnl_amount == pytest.approx(0.0965)
    assert pnl.pnl_percent == pytest.approx(96.5)
    assert not await positions.is_open(MINT)

    closed = await positions.get_position(MINT)
    assert closed.status is PositionStatus.CLOSED
    assert closed.exit_reason == "take_profit"
    assert closed.exit_signature == "SELL_SIG"
    assert closed.pnl_amount == pytest.approx(0.0965)

    trades = await positions.get_daily_trades()
    assert len(trades) == 1
    assert trades[0]["reason"] == "take_profit"
    assert trades[0]["hold_time_s"] == 90
    assert trades[0]["venue"] == "pumpportal"
    assert trades[0]["data_integrity"] is False


@pytest.mark.asyncio
async def test_close_missing_position_raises(positions):
    with pytest.raises(PositionNotFoundError):
        await positions.close_position(MINT, 0.000002, None, None, "take_profit", None)


@pytest.mark.asyncio
async def test_close_twice_raises(positions):
    await open_default(positions)
    await positions.close_position(MINT, 0.000002, None, None, "take_profit", "S1")
    with pytest.raises(PositionNotFoundError):
        await positions.close_position(MINT, 0.000002, None, None, "manual_sell", "S2")


@pytest.mark.asyncio
async def test_concurrent_close_books_once(positions):
    await open_default(positions)

    results = await asyncio.gather(
        positions.close_position(MINT, 0.000002, None, None, "take_profit", "S1"),
        positions.close_position(MINT, 0.000002, None, None, "manual_sell", "S2"),
        return_exceptions=True
    )

    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], PositionNotFoundError)
    assert len(await positions.get_daily_trades()) == 1


@pytest.mark.asyncio
async def test_close_with_bad_exit_price_leaves_position_open(positions):
    await open_default(positions)
    with pytest.raises(PnLInputError):
        await positions.close_position(MINT, 0, None, None, "take_profit", "S1")
    assert await positions.is_open(MINT)


@pytest.mark.asyncio
async def test_reentry_cooldown_and_new_lot(positions, clock):
    await open_default(positions)
    await positions.close_position(MINT, 0.000002, None, None, "take_profit", "S1")

    assert await positions.in_reentry_cooldown(MINT)
    clock.advance(301)
    assert not await positions.in_reentry_cooldown(MINT)

    second = await open_default(positions)
    assert second.is_open
    loaded = await positions.get_position(MINT)
    assert loaded.exit_reason is None
    assert len(await positions.get_daily_trades()) == 1


# =============================================================================
# CORRUPT RECORDS & FORCE CLOSE
# =============================================================================

@pytest.mark.asyncio
async def test_corrupt_record_is_reported(positions, store):
    await store.sadd(OPEN_POSITIONS_KEY, MINT)
    await store.hset(position_key(MINT), {"status": "open", "entry_price": "abc", "token_amount": "5"})

    records = await positions.get_open_records()
    assert [token for token, _ in records] == [MINT]
    with pytest.raises(CorruptPositionError) as excinfo:
        Position.from_record(MINT, records[0][1])
    assert "entry_price" in excinfo.value.fields
    assert await positions.get_open_positions() == []


@pytest.mark.asyncio
async def test_count_open_ignores_index_drift(positions, store):
    await positions.open_position(MINT, "copy", 0.000001, 0.1, 100_000, "sig")
    # index entry without a hash, and one whose hash is already closed
    await store.sadd(OPEN_POSITIONS_KEY, OTHER_MINT, "StaleMint1111111111111111111111111111111111")
    await store.hset(position_key("StaleMint1111111111111111111111111111111111"), {"status": "closed"})

    assert await store.scard(OPEN_POSITIONS_KEY) == 3
    assert await positions.count_open() == 1


@pytest.mark.asyncio
async def test_force_close_archives_without_pnl(positions, store):
    await store.sadd(OPEN_POSITIONS_KEY, MINT)
    await store.hset(position_key(MINT), {"status": "open", "entry_price": "0"})

    assert await positions.force_close(MINT, "entry_price invalid", exit_signature="SELL") is True
    assert await positions.force_close(MINT, "again") is False

    assert not await positions.is_open(MINT)
    assert await store.hget(position_key(MINT), "exit_reason") == REASON_DATA_INTEGRITY

    trades = await positions.get_daily_trades()
    assert trades[0]["data_integrity"] is True
    assert trades[0]["pnl_amount"] is None
    assert trades[0]["raw_record"]["entry_price"] == "0"


# =============================================================================
# DAILY STATISTICS
# =============================================================================

@pytest.mark.asyncio
async def test_daily_stats(positions, store):
    await open_default(positions, token_id=MINT)
    await open_default(positions, token_id=OTHER_MINT)
    await positions.close_position(MINT, 0.000002, None, None, "take_profit", "S1")
    await positions.close_position(OTHER_MINT, 0.0000005, None, None, "stop_loss", "S2")

    stats = await positions.get_daily_stats()
    assert stats["total_trades"] == 2
    assert stats["wins"] == 1
    assert stats["losses"] == 1
    assert stats["win_rate"] == 50.0
    assert stats["biggest_win"] == pytest.approx(0.0965)
    assert stats["biggest_loss"] < 0
    assert await positions.get_daily_pnl() == pytest.approx(stats["total_pnl"])


@pytest.mark.asyncio
async def test_daily_stats_empty_day(positions):
    stats = await positions.get_daily_stats("2020-01-01")
    assert stats["total_trades"] == 0
    assert stats["win_rate"] == 0.0
    assert await positions.get_daily_pnl("2020-01-01") == 0
