"""
Unit tests for tracked-wallet activity
Tests sell detection from transaction history, caching and signal queueing
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from copytrader.clients.wallet_activity import (
    WalletActivitySource,
    buy_detail_key,
    sold_in_transaction,
)
from copytrader.core.signals import (
    COPY_SIGNALS_KEY,
    SELL_SIGNALS_KEY,
    CopySignal,
    SellSignal,
    buyers_key,
    wallet_sold_key,
)
from tests.conftest import MINT, OTHER_MINT, OTHER_WALLET, WALLET


def balance(index, mint, amount):
    return {"accountIndex": index, "mint": mint, "uiTokenAmount": {"uiAmount": amount}}


def tx(pre, post, err=None):
    return {"meta": {"err": err, "preTokenBalances": pre, "postTokenBalances": post}}


SELL_TX = tx([balance(1, MINT, 1000.0)], [balance(1, MINT, 0.0)])
BUY_TX = tx([balance(1, MINT, 0.0)], [balance(1, MINT, 1000.0)])


@pytest.fixture
def rpc():
    mock = MagicMock()
    mock.get_signatures_for_address = AsyncMock(return_value=[])
    mock.get_transaction = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def activity(rpc, store, clock):
    return WalletActivitySource(rpc, store, lookback_s=300, cache_ttl_s=600, clock=clock)


# =============================================================================
# SELL DETECTION
# =============================================================================

def test_sold_in_transaction():
    assert sold_in_transaction(SELL_TX, MINT)
    assert not sold_in_transaction(BUY_TX, MINT)
    assert not sold_in_transaction(SELL_TX, OTHER_MINT)
    assert not sold_in_transaction(tx([balance(1, MINT, 10.0)], [balance(1, MINT, 0.0)], err={"x": 1}), MINT)
    # account created in this transaction has no pre balance
    assert not sold_in_transaction(tx([], [balance(2, MINT, 5.0)]), MINT)
    assert not sold_in_transaction({}, MINT)


@pytest.mark.asyncio
async def test_get_sell_time_scans_and_caches(activity, rpc, store, clock):
    block_time = int(clock.now) - 30
    rpc.get_signatures_for_address.return_value = [
        {"signature": "BUY", "blockTime": block_time - 10, "err": None},
        {"signature": "SELL", "blockTime": block_time, "err": None},
    ]
    rpc.get_transaction.side_effect = lambda sig: {"BUY": BUY_TX, "SELL": SELL_TX}[sig]

    sold_at = await activity.get_sell_time(WALLET, MINT)

    assert sold_at == datetime.fromtimestamp(block_time, tz=timezone.utc)
    assert await store.get(wallet_sold_key(WALLET, MINT)) == str(block_time)

    rpc.get_signatures_for_address.reset_mock()
    assert await activity.get_sell_time(WALLET, MINT) == sold_at
    rpc.get_signatures_for_address.assert_not_called()


@pytest.mark.asyncio
async def test_scan_stops_at_lookback(activity, rpc, clock):
    rpc.get_signatures_for_address.return_value = [
        {"signature": "OLD_SELL", "blockTime": int(clock.now) - 301, "err": None},
    ]
    rpc.get_transaction.return_value = SELL_TX

    assert await activity.get_sell_time(WALLET, MINT) is None
    rpc.get_transaction.assert_not_called()


@pytest.mark.asyncio
async def test_failed_signatures_and_fetch_errors_skipped(activity, rpc, clock):
    now = int(clock.now)
    rpc.get_signatures_for_address.return_value = [
        {"signature": "FAILED", "blockTime": now - 5, "err": {"InstructionError": []}},
        {"signature": "BROKEN", "blockTime": now - 6, "err": None},
    ]
    rpc.get_transaction.side_effect = RuntimeError("rpc down")

    assert not await activity.has_sold(WALLET, MINT)
    rpc.get_transaction.assert_awaited_once_with("BROKEN")


@pytest.mark.asyncio
async def test_forget_sell(activity, store, rpc):
    await store.set(wallet_sold_key(WALLET, MINT), "123")
    assert await activity.has_sold(WALLET, MINT)

    await activity.forget_sell(WALLET, MINT)
    assert not await activity.has_sold(WALLET, MINT)


# =============================================================================
# TRACKED WALLETS & SIGNALS
# =============================================================================

@pytest.mark.asyncio
async def test_track_wallets(activity):
    assert await activity.track_wallet(WALLET)
    assert not await activity.track_wallet(WALLET)
    assert await activity.tracked_count() == 1
    assert await activity.untrack_wallet(WALLET)
    assert await activity.tracked_count() == 0


@pytest.mark.asyncio
async def test_record_buy_builds_upvoted_signal(activity, store, clock):
    await activity.record_buy(OTHER_WALLET, MINT, 2.0, signature="S1", wallet_name="beta")
    clock.advance(30)
    signal = await activity.record_buy(WALLET, MINT, 1.5, signature="S2", wallet_name="alpha", venue="pump")

    assert signal.source_wallet == WALLET
    assert signal.wallets == [WALLET, OTHER_WALLET]
    assert signal.upvotes == 2
    assert signal.wallet_amounts == {WALLET: 1.5, OTHER_WALLET: 2.0}
    assert signal.timestamp == clock.now

    assert await store.hget(buy_detail_key(MINT, WALLET), "wallet_name") == "alpha"
    assert await store.ttl(buyers_key(MINT)) == 600
    assert await store.llen(COPY_SIGNALS_KEY) == 2

    # newest first, like the queue consumer sees it
    newest = CopySignal.from_json(await store.lpop(COPY_SIGNALS_KEY))
    assert newest.signature == "S2"


@pytest.mark.asyncio
async def test_upvote_window_expires(activity, clock):
    await activity.record_buy(OTHER_WALLET, MINT, 2.0)
    clock.advance(601)
    signal = await activity.record_buy(WALLET, MINT, 1.0)
    assert signal.upvotes == 1


@pytest.mark.asyncio
async def test_signal_queue_expires(activity, store, clock):
    await activity.record_buy(WALLET, MINT, 1.0)
    clock.advance(61)
    assert await store.llen(COPY_SIGNALS_KEY) == 0


@pytest.mark.asyncio
async def test_record_sell_marks_wallet_and_queues(activity, store, clock):
    signal = await activity.record_sell(WALLET, MINT, signature="SELL")

    assert isinstance(signal, SellSignal)
    assert signal.sell_count == 1
    assert await activity.has_sold(WALLET, MINT)
    raw = await store.lpop(SELL_SIGNALS_KEY)
    assert SellSignal.from_json(raw).signature == "SELL"
