"""Configuration loading: merges settings.toml, risk_limits.toml, and .env."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"

# Error fragments the venue returns while a freshly created asset is not yet tradable
DEFAULT_NOT_READY_SIGNATURES = [
    "Custom:3012",
    '"Custom":3012',
    "Custom:3031",
    '"Custom":3031',
]


@dataclass
class EngineConfig:
    tick_interval_seconds: float = 1.0
    error_backoff_seconds: float = 5.0
    max_tick_errors: int = 10
    price_refresh_seconds: float = 1.0
    reconcile_interval_seconds: int = 10
    status_interval_seconds: int = 60
    balance_sync_interval_seconds: int = 30
    balance_sync_tolerance: float = 0.001
    desync_tolerance: float = 0.0001


@dataclass
class ReadinessConfig:
    poll_interval_seconds: float = 0.2
    timeout_seconds: float = 120.0
    filter_timeout_seconds: float = 30.0
    pre_buy_delay_min_seconds: float = 0.05
    pre_buy_delay_max_seconds: float = 0.15


@dataclass
class RetryConfig:
    backoff_min_seconds: float = 0.8
    backoff_max_seconds: float = 1.2
    not_ready_signatures: list[str] = field(default_factory=lambda: list(DEFAULT_NOT_READY_SIGNATURES))


@dataclass
class FeeConfig:
    priority_fee: float = 0.0005
    signature_fee: float = 0.000005
    exit_slippage_max: float = 0.05
    reference_take_profit_multiplier: float = 2.0

    @property
    def entry_cost(self) -> float:
        return self.priority_fee + self.signature_fee

    @property
    def exit_cost(self) -> float:
        return self.priority_fee + self.signature_fee


@dataclass
class SanityConfig:
    max_plausible_multiplier: float = 1000.0   # above this a quote is treated as corrupt
    fallback_multiplier_cap: float = 100.0     # ceiling for estimated exit multipliers
    max_single_amount: float = 1.0             # no single size/reservation may exceed this


@dataclass
class PaperConfig:
    impact_base: float = 0.05
    impact_k: float = 0.30
    impact_threshold: float = 0.0037
    impact_power: float = 2.2
    impact_cap: float = 0.5


@dataclass
class QuoteConfig:
    base_url: str = "https://quote-api.jup.ag/v6"
    settlement_mint: str = "So11111111111111111111111111111111111111112"
    quote_amount: int = 1_000_000
    slippage_bps: int = 50
    cache_ttl_seconds: float = 2.0
    timeout_seconds: float = 5.0


@dataclass
class RpcConfig:
    url: str = "https://api.mainnet-beta.solana.com"
    commitment: str = "confirmed"
    timeout_seconds: float = 5.0
    wallet_address: str = ""


@dataclass
class NotificationConfig:
    """Which events send Telegram alerts. High-frequency ones default off."""
    position_opened: bool = True
    position_closed: bool = True
    position_abandoned: bool = True
    ledger_desync: bool = True
    system_online: bool = True
    system_shutdown: bool = True
    system_error: bool = True
    status_report: bool = True
    # High-frequency, default off for Telegram
    candidate_rejected: bool = False
    balance_synced: bool = False


@dataclass
class TelegramConfig:
    enabled: bool = False
    bot_token: str = ""
    chat_id: str = ""
    notifications: NotificationConfig = field(default_factory=NotificationConfig)


@dataclass
class RiskConfig:
    max_open_positions: int = 5
    min_position_size: float = 0.004
    max_position_size: float = 0.05


@dataclass
class Config:
    mode: str = "paper"
    initial_balance: float = 0.1
    log_level: str = "INFO"
    default_strategy: str = "ladder"
    engine: EngineConfig = field(default_factory=EngineConfig)
    readiness: ReadinessConfig = field(default_factory=ReadinessConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    fees: FeeConfig = field(default_factory=FeeConfig)
    sanity: SanityConfig = field(default_factory=SanityConfig)
    paper: PaperConfig = field(default_factory=PaperConfig)
    quotes: QuoteConfig = field(default_factory=QuoteConfig)
    rpc: RpcConfig = field(default_factory=RpcConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    strategies: dict[str, dict] = field(default_factory=dict)
    db_path: str = ""

    def is_paper(self) -> bool:
        return self.mode == "paper"


def _apply(section, values: dict) -> None:
    """Copy known keys from a TOML table onto a config dataclass."""
    for key in vars(section):
        if key in values:
            setattr(section, key, values[key])


def load_config(config_dir: Path | None = None) -> Config:
    """Load configuration from TOML files and environment variables."""
    config_dir = config_dir or CONFIG_DIR
    load_dotenv(PROJECT_ROOT / ".env")

    config = Config()
    config.db_path = str(PROJECT_ROOT / "data" / "sniper.db")

    # Load settings.toml
    settings_path = config_dir / "settings.toml"
    if settings_path.exists():
        with open(settings_path, "rb") as f:
            settings = tomllib.load(f)

        general = settings.get("general", {})
        config.mode = general.get("mode", config.mode)
        config.initial_balance = general.get("initial_balance", config.initial_balance)
        config.log_level = general.get("log_level", config.log_level)
        config.default_strategy = general.get("default_strategy", config.default_strategy)
        config.db_path = general.get("db_path", config.db_path)

        _apply(config.engine, settings.get("engine", {}))
        _apply(config.readiness, settings.get("readiness", {}))
        _apply(config.retry, settings.get("retry", {}))
        _apply(config.fees, settings.get("fees", {}))
        _apply(config.sanity, settings.get("sanity", {}))
        _apply(config.paper, settings.get("paper", {}))
        _apply(config.quotes, settings.get("quotes", {}))
        _apply(config.rpc, settings.get("rpc", {}))

        tg = settings.get("telegram", {})
        config.telegram.enabled = tg.get("enabled", config.telegram.enabled)
        _apply(config.telegram.notifications, tg.get("notifications", {}))

        config.strategies = {
            name: dict(params) for name, params in settings.get("strategies", {}).items()
        }

    # Load risk_limits.toml
    risk_path = config_dir / "risk_limits.toml"
    if risk_path.exists():
        with open(risk_path, "rb") as f:
            risk = tomllib.load(f)

        pos = risk.get("position", {})
        config.risk.max_open_positions = pos.get("max_open_positions", config.risk.max_open_positions)
        config.risk.min_position_size = pos.get("min_position_size", config.risk.min_position_size)
        config.risk.max_position_size = pos.get("max_position_size", config.risk.max_position_size)

    # Environment variables (secrets and endpoints)
    config.telegram.bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    config.telegram.chat_id = os.getenv("TELEGRAM_CHAT_ID", "")
    config.rpc.wallet_address = os.getenv("WALLET_ADDRESS", config.rpc.wallet_address)
    config.rpc.url = os.getenv("RPC_URL", config.rpc.url)

    # Validate critical values
    _validate_config(config)

    return config


def _validate_config(config: Config) -> None:
    """Validate config values are within sane ranges."""
    from sniper.strategies.router import STRATEGY_TYPES

    errors = []

    if config.mode not in ("paper", "live"):
        errors.append(f"mode must be 'paper' or 'live', got '{config.mode}'")
    if config.initial_balance <= 0:
        errors.append(f"initial_balance must be > 0, got {config.initial_balance}")
    if config.risk.max_open_positions < 1:
        errors.append(f"max_open_positions must be >= 1, got {config.risk.max_open_positions}")
    if config.risk.min_position_size <= 0:
        errors.append(f"min_position_size must be > 0, got {config.risk.min_position_size}")
    if config.risk.max_position_size < config.risk.min_position_size:
        errors.append(
            f"max_position_size ({config.risk.max_position_size}) < min_position_size ({config.risk.min_position_size})"
        )
    if config.risk.max_position_size > config.sanity.max_single_amount:
        errors.append(
            f"max_position_size ({config.risk.max_position_size}) > sanity.max_single_amount ({config.sanity.max_single_amount})"
        )
    if not (0 <= config.fees.exit_slippage_max < 1):
        errors.append(f"exit_slippage_max must be 0-1, got {config.fees.exit_slippage_max}")
    if config.fees.reference_take_profit_multiplier < 1:
        errors.append(
            f"reference_take_profit_multiplier must be >= 1, got {config.fees.reference_take_profit_multiplier}"
        )
    if config.fees.priority_fee < 0 or config.fees.signature_fee < 0:
        errors.append("fees must be non-negative")
    if config.engine.tick_interval_seconds <= 0:
        errors.append(f"tick_interval_seconds must be > 0, got {config.engine.tick_interval_seconds}")
    if config.engine.max_tick_errors < 1:
        errors.append(f"max_tick_errors must be >= 1, got {config.engine.max_tick_errors}")
    if config.readiness.poll_interval_seconds <= 0:
        errors.append(f"readiness.poll_interval_seconds must be > 0, got {config.readiness.poll_interval_seconds}")
    if config.readiness.timeout_seconds < config.readiness.filter_timeout_seconds:
        errors.append(
            f"readiness.timeout_seconds ({config.readiness.timeout_seconds}) < "
            f"filter_timeout_seconds ({config.readiness.filter_timeout_seconds})"
        )
    if config.readiness.pre_buy_delay_min_seconds > config.readiness.pre_buy_delay_max_seconds:
        errors.append("readiness pre-buy delay min > max")
    if not (0 < config.retry.backoff_min_seconds <= config.retry.backoff_max_seconds):
        errors.append(
            f"retry backoff must satisfy 0 < min <= max, got {config.retry.backoff_min_seconds}-{config.retry.backoff_max_seconds}"
        )
    if not config.retry.not_ready_signatures:
        errors.append("At least one not-ready error signature must be configured")
    if config.sanity.fallback_multiplier_cap > config.sanity.max_plausible_multiplier:
        errors.append("sanity.fallback_multiplier_cap must not exceed max_plausible_multiplier")
    if not (0 < config.paper.impact_cap < 1):
        errors.append(f"paper.impact_cap must be 0-1, got {config.paper.impact_cap}")
    if config.quotes.cache_ttl_seconds < 0:
        errors.append(f"quotes.cache_ttl_seconds must be >= 0, got {config.quotes.cache_ttl_seconds}")
    if config.default_strategy not in STRATEGY_TYPES:
        errors.append(f"default_strategy must be one of {sorted(STRATEGY_TYPES)}, got '{config.default_strategy}'")
    for name in config.strategies:
        if name not in STRATEGY_TYPES:
            errors.append(f"Unknown strategy section [strategies.{name}]")
    if config.mode == "live" and not config.rpc.wallet_address:
        errors.append("live mode requires WALLET_ADDRESS for balance reconciliation")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))
