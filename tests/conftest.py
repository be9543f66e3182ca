"""
Pytest configuration and shared fixtures
These fixtures are available to all test files
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import pytest
import pytest_asyncio

from copytrader.core.metrics import MetricsCollector
from copytrader.core.store import KeyValueStore


# Real base58 32-byte keys
MINT = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr"
OTHER_MINT = "So11111111111111111111111111111111111111112"
WALLET = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"
OTHER_WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


class FakeClock:
    """Manually advanced epoch clock"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)

    def datetime_after(self, seconds: float) -> datetime:
        return self.datetime() + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest_asyncio.fixture
async def store(tmp_path, clock):
    """KeyValueStore on a temporary database file, expiring against the fake clock"""
    kv = KeyValueStore(str(tmp_path / "test.db"), clock=clock, poll_interval_s=0.01)
    await kv.connect()
    yield kv
    await kv.close()


@pytest.fixture
def test_config_dict() -> Dict[str, Any]:
    """
    Sample configuration dictionary for testing

    Returns valid config that can be modified per test
    """
    return {
        "rpc": {
            "url": "https://api.devnet.solana.com",
            "timeout_s": 5
        },
        "trading": {
            "enabled": True,
            "dry_run": True,
            "position_size_sol": 0.1,
            "max_positions": 2
        },
        "strategy": {
            "min_upvotes": 1,
            "take_profit_pct": 200,
            "trailing_stop_pct": 15,
            "stop_loss_pct": 15
        },
        "exit": {
            "wallet_exit_window_s": 180,
            "loss_protection_window_s": 600
        },
        "notifications": {
            "webhook_url": ""
        },
        "logging": {
            "level": "DEBUG",
            "format": "json",
            "output_file": None
        }
    }


@pytest.fixture
def test_config_file(test_config_dict, tmp_path):
    """Write the sample config to a temporary YAML file"""
    import yaml

    config_file = tmp_path / "test_config.yml"
    with open(config_file, 'w') as f:
        yaml.dump(test_config_dict, f)

    return str(config_file)
