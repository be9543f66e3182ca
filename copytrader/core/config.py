"""
Configuration Manager for the copy-trading worker
Loads configuration from YAML files with environment variable support
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass
class RPCConfig:
    """Solana JSON-RPC endpoint"""
    url: str
    timeout_s: float = 10.0
    confirmation_attempts: int = 20
    confirmation_interval_s: float = 1.0


@dataclass
class WalletConfig:
    """Trading wallet (base58 secret key, only needed for live trading)"""
    private_key: Optional[str] = None


@dataclass
class TradingConfig:
    """Execution and sizing"""
    enabled: bool = False
    dry_run: bool = True
    position_size_sol: float = 0.1
    max_positions: int = 2
    copy_slippage_pct: float = 10.0
    priority_fee_sol: float = 0.0005
    aggregator_slippage_bps: int = 500
    network_fee_sol: float = 0.000005
    estimated_slippage: float = 0.02
    trade_timeout_s: float = 30.0
    reentry_cooldown_s: int = 300
    graduation_warmup_s: float = 0.0
    max_daily_loss_sol: float = 0.3

    @property
    def live(self) -> bool:
        """True when orders go on-chain"""
        return self.enabled and not self.dry_run


@dataclass
class StrategyConfig:
    """Copy acceptance and threshold exits"""
    min_upvotes: int = 1
    take_profit_pct: float = 200.0
    trailing_stop_pct: float = 15.0
    trailing_activation_pct: float = 0.0
    stop_loss_pct: float = 15.0
    max_hold_minutes: float = 0.0
    min_wallets_to_sell: int = 1


@dataclass
class ExitConfig:
    """Hybrid exit windows"""
    wallet_exit_window_s: int = 180
    loss_protection_window_s: int = 600
    wallet_sell_lookback_s: int = 300
    wallet_sell_cache_ttl_s: int = 600


@dataclass
class OracleConfig:
    """Price oracle tiers, cache and backoff"""
    cache_ttl_s: float = 5.0
    tier_ttl_s: Dict[str, float] = field(default_factory=dict)
    max_failed_attempts: int = 3
    failure_window_s: float = 60.0
    timeout_s: float = 5.0
    jupiter_quote_url: str = "https://lite-api.jup.ag/swap/v1/quote"
    jupiter_swap_url: str = "https://lite-api.jup.ag/swap/v1/swap"
    dexscreener_url: str = "https://api.dexscreener.com/latest/dex/tokens"


@dataclass
class PumpPortalConfig:
    """PumpPortal Lightning trade API"""
    api_key: Optional[str] = None
    base_url: str = "https://pumpportal.fun/api"


@dataclass
class StorageConfig:
    """SQLite key-value store"""
    db_path: str = "data/copytrader.db"


@dataclass
class NotificationConfig:
    """Discord webhook notifications"""
    webhook_url: str = ""
    username: str = "Copy Trader"
    live_updates: bool = True
    live_update_interval_s: float = 5.0


@dataclass
class SimulationConfig:
    """Paper-trading fills"""
    default_price: float = 0.000001
    min_exit_multiple: float = 0.5
    max_exit_multiple: float = 3.0


@dataclass
class LoopConfig:
    """Polling loop cadence"""
    monitor_interval_s: float = 2.0
    signal_poll_timeout_s: float = 2.0
    error_backoff_s: float = 5.0
    status_interval_s: float = 60.0


@dataclass
class LogConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "json"
    output_file: Optional[str] = None


@dataclass
class BotConfig:
    """Complete worker configuration"""
    rpc: RPCConfig
    wallet: WalletConfig = field(default_factory=WalletConfig)
    trading: TradingConfig = field(default_factory=TradingConfig)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    exit: ExitConfig = field(default_factory=ExitConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    pumpportal: PumpPortalConfig = field(default_factory=PumpPortalConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    loops: LoopConfig = field(default_factory=LoopConfig)
    logging: LogConfig = field(default_factory=LogConfig)

    def execution_timeout_s(self) -> float:
        """
        Upper bound on one venue call: submission plus the full confirmation poll

        Each poll is one RPC round trip and a sleep, with one more round trip
        for the fill readback.
        """
        rpc = self.rpc
        polling = rpc.confirmation_attempts * (rpc.confirmation_interval_s + rpc.timeout_s)
        return self.trading.trade_timeout_s + polling + rpc.timeout_s


def _section(cls, data: Optional[Dict[str, Any]]):
    """Build a section dataclass from a mapping, rejecting unknown keys"""
    data = data or {}
    if not isinstance(data, dict):
        raise ValueError(f"Section for {cls.__name__} must be a mapping")

    known = set(cls.__dataclass_fields__)
    unknown = set(data) - known
    if unknown:
        raise ValueError(
            f"Unknown keys for {cls.__name__}: {', '.join(sorted(unknown))}"
        )
    return cls(**data)


class ConfigurationManager:
    """Manages worker configuration from YAML files and environment variables"""

    def __init__(self, config_path: str):
        """
        Initialize configuration manager

        Args:
            config_path: Path to YAML configuration file
        """
        self.config_path = Path(config_path)
        self._config_data: Optional[Dict[str, Any]] = None
        self._bot_config: Optional[BotConfig] = None

    def load_config(self) -> BotConfig:
        """
        Load and validate configuration from file

        Returns:
            BotConfig: Validated configuration object

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not self.config_path.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {self.config_path}"
            )

        with open(self.config_path, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        self._config_data = self._substitute_env_vars(raw_config)
        self._bot_config = self.parse_config(self._config_data)

        return self._bot_config

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation key

        Args:
            key: Dot-notation key (e.g., "strategy.take_profit_pct")
            default: Default value if key not found
        """
        if self._config_data is None:
            raise RuntimeError("Configuration not loaded. Call load_config() first.")

        value = self._config_data
        for k in key.split('.'):
            if not isinstance(value, dict):
                return default
            value = value.get(k)
            if value is None:
                return default

        return value

    def _substitute_env_vars(self, config: Any) -> Any:
        """
        Recursively substitute ${VAR_NAME} references

        Supports both full-value substitution and embedded vars:
        - Full: "${PUMPPORTAL_API_KEY}" -> "abc123"
        - Embedded: "https://rpc.example/?api-key=${RPC_KEY}"
        """
        if isinstance(config, dict):
            return {k: self._substitute_env_vars(v) for k, v in config.items()}
        if isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        if isinstance(config, str):
            def replace_var(match):
                var_name = match.group(1)
                value = os.getenv(var_name)
                if value is None:
                    raise ValueError(f"Environment variable {var_name} not found")
                return value

            return re.sub(r'\$\{([^}]+)\}', replace_var, config)
        return config

    @staticmethod
    def parse_config(config: Dict[str, Any]) -> BotConfig:
        """
        Parse a raw configuration mapping into typed sections

        Raises:
            ValueError: If configuration is invalid
        """
        rpc_data = config.get('rpc') or {}
        if not rpc_data.get('url'):
            raise ValueError("rpc.url is required")

        bot_config = BotConfig(
            rpc=_section(RPCConfig, rpc_data),
            wallet=_section(WalletConfig, config.get('wallet')),
            trading=_section(TradingConfig, config.get('trading')),
            strategy=_section(StrategyConfig, config.get('strategy')),
            exit=_section(ExitConfig, config.get('exit')),
            oracle=_section(OracleConfig, config.get('oracle')),
            pumpportal=_section(PumpPortalConfig, config.get('pumpportal')),
            storage=_section(StorageConfig, config.get('storage')),
            notifications=_section(NotificationConfig, config.get('notifications')),
            simulation=_section(SimulationConfig, config.get('simulation')),
            loops=_section(LoopConfig, config.get('loops')),
            logging=_section(LogConfig, config.get('logging')),
        )

        if bot_config.trading.live and not bot_config.wallet.private_key:
            raise ValueError("wallet.private_key is required when live trading is enabled")

        if bot_config.exit.wallet_exit_window_s >= bot_config.exit.loss_protection_window_s:
            raise ValueError(
                "exit.wallet_exit_window_s must be shorter than exit.loss_protection_window_s"
            )

        if bot_config.simulation.min_exit_multiple > bot_config.simulation.max_exit_multiple:
            raise ValueError("simulation.min_exit_multiple must not exceed max_exit_multiple")

        if bot_config.logging.format not in ("json", "console"):
            raise ValueError("logging.format must be 'json' or 'console'")

        return bot_config


# Example usage
if __name__ == "__main__":
    config_manager = ConfigurationManager("config/config.yml")
    bot_config = config_manager.load_config()

    print(f"RPC: {bot_config.rpc.url}")
    print(f"Live trading: {bot_config.trading.live}")
    print(f"Take profit: +{bot_config.strategy.take_profit_pct}%")
    print(f"Wallet-exit window: {bot_config.exit.wallet_exit_window_s}s")
