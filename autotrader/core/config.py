"""Configuration management for the automated trading core.

Every group reads from the environment (and ``.env``); the environment
variable name is the upper-cased field name, e.g. ``MAX_DAILY_LOSS=500``.
"""

from threading import Lock
from typing import Any, List, Literal

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from autotrader.core.models import RiskLevel

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )
    app_name: str = Field(default="AutoTrader")
    app_version: str = Field(default="1.0.0")

    # Mode: 'paper' for simulated fills, 'live' for a real brokerage
    trading_mode: Literal["paper", "live"] = Field(default="paper")

    # Default symbols (stored as string, accessed as list via property)
    default_symbols_str: str = Field(default="BTC/USDT,ETH/USDT")

    @property
    def default_symbols(self) -> List[str]:
        """Parse default_symbols string into list."""
        return [s.strip() for s in self.default_symbols_str.split(",") if s.strip()]


# =============================================================================
# Risk Limits
# =============================================================================


class RiskLimitsConfig(BaseSettings):
    """Portfolio-level limits enforced by the risk gatekeeper."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Percent of portfolio value (10.0 = 10%)
    max_position_size_pct: float = Field(default=10.0)

    # Dollars
    max_daily_loss: float = Field(default=1000.0)

    max_total_positions: int = Field(default=10)

    # Fractions (0.05 = 5%)
    volatility_threshold: float = Field(default=0.05)
    emergency_drawdown_threshold: float = Field(default=0.10)

    # Protective order distances in percent
    stop_loss_pct: float = Field(default=5.0)
    take_profit_pct: float = Field(default=10.0)

    @field_validator("max_position_size_pct", "stop_loss_pct", "take_profit_pct")
    @classmethod
    def validate_percentages(cls, v):
        if v <= 0 or v > 100:
            raise ValueError("Percentage values must be between 0 and 100")
        return v

    @field_validator("volatility_threshold", "emergency_drawdown_threshold")
    @classmethod
    def validate_fraction(cls, v):
        if v <= 0 or v >= 1:
            raise ValueError("Threshold must be between 0 and 1")
        return v

    @field_validator("max_total_positions")
    @classmethod
    def validate_positions(cls, v):
        if v < 1:
            raise ValueError("max_total_positions must be at least 1")
        return v


# =============================================================================
# Position Sizing
# =============================================================================


class PositionSizingConfig(BaseSettings):
    """Caps and defaults for the sizing methods."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Caps in percent of portfolio value
    max_fixed_pct: float = Field(default=20.0)
    max_percentage_pct: float = Field(default=20.0)
    max_volatility_adjusted_pct: float = Field(default=15.0)

    default_percentage: float = Field(default=5.0)
    fallback_percentage: float = Field(default=1.0)

    # Kelly criterion
    kelly_cap: float = Field(default=0.25)
    default_win_rate: float = Field(default=0.55)
    default_avg_win: float = Field(default=0.08)
    default_avg_loss: float = Field(default=0.05)

    # Volatility targeting / risk parity
    default_volatility: float = Field(default=0.03)
    target_volatility: float = Field(default=0.02)
    risk_target: float = Field(default=0.01)
    max_risk_pct: float = Field(default=2.0)

    @field_validator("kelly_cap")
    @classmethod
    def validate_kelly(cls, v):
        if v <= 0 or v > 1:
            raise ValueError("Kelly cap must be between 0 and 1")
        return v

    @field_validator("default_win_rate")
    @classmethod
    def validate_win_rate(cls, v):
        if v < 0 or v > 1:
            raise ValueError("Win rate must be between 0 and 1")
        return v


# =============================================================================
# Runtime (auto-trading) Configuration
# =============================================================================


class RuntimeConfig(BaseSettings):
    """Gates applied to every orchestrator tick. Mutable at runtime."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    enabled: bool = Field(default=True, description="Master switch for auto trading")
    auto_execution_enabled: bool = Field(
        default=True, description="Submit orders; when off, intents are only logged"
    )
    minimum_confidence: float = Field(default=0.75)
    maximum_risk_level: RiskLevel = Field(default=RiskLevel.MEDIUM)
    max_orders_per_day: int = Field(default=50)
    cooldown_minutes: int = Field(default=15)

    @field_validator("minimum_confidence")
    @classmethod
    def validate_confidence(cls, v):
        if v < 0 or v > 1:
            raise ValueError("minimum_confidence must be between 0 and 1")
        return v

    @field_validator("max_orders_per_day")
    @classmethod
    def validate_max_orders(cls, v):
        if v < 1 or v > 1000:
            raise ValueError("max_orders_per_day must be between 1 and 1000")
        return v

    @field_validator("cooldown_minutes")
    @classmethod
    def validate_cooldown(cls, v):
        if v < 0 or v > 1440:
            raise ValueError("cooldown_minutes must be between 0 and 1440")
        return v


class RuntimeConfigStore:
    """Holds the current RuntimeConfig and swaps it atomically on update.

    Readers call ``get()`` once at the start of a tick and use that snapshot
    for the whole tick.
    """

    def __init__(self, config: RuntimeConfig = None):
        self._config = config or RuntimeConfig()
        self._lock = Lock()

    def get(self) -> RuntimeConfig:
        return self._config

    def update(self, **changes: Any) -> RuntimeConfig:
        """Validate the merged settings and replace the current config.

        Raises:
            pydantic.ValidationError: If any merged value is out of range
        """
        with self._lock:
            merged = {**self._config.model_dump(), **changes}
            self._config = RuntimeConfig(**merged)
            return self._config


# =============================================================================
# Orchestrator / Order Management
# =============================================================================


class OrchestratorConfig(BaseSettings):
    """Strategy orchestrator timing and circuit breaker."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    max_consecutive_errors: int = Field(default=5)
    tick_timeout_seconds: float = Field(default=30.0)
    health_check_interval_seconds: float = Field(default=300.0)

    @field_validator("max_consecutive_errors")
    @classmethod
    def validate_errors(cls, v):
        if v < 1:
            raise ValueError("max_consecutive_errors must be at least 1")
        return v


class OrderManagementConfig(BaseSettings):
    """Intervals for the order-management sweeps."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    fill_sweep_interval_seconds: float = Field(default=30.0)
    cleanup_interval_seconds: float = Field(default=3600.0)
    expiry_sweep_interval_seconds: float = Field(default=60.0)
    history_retention_hours: int = Field(default=24)
    default_order_ttl_minutes: int = Field(default=1440)


# =============================================================================
# Backtesting / Market Data
# =============================================================================


class BacktestConfig(BaseSettings):
    """Backtest simulation defaults."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    commission: float = Field(default=0.001, description="Commission rate per fill")
    slippage: float = Field(default=0.0005, description="Slippage rate per fill")
    initial_capital: float = Field(default=100000.0)
    trading_days_per_year: int = Field(default=252)
    var_confidence: float = Field(default=0.95)
    rsi_period: int = Field(default=14)
    volatility_window: int = Field(default=20)
    data_cache_dir: str = Field(default="data/historical")
    exchange_id: str = Field(default="binance")
    timeframe: str = Field(default="1d")

    @field_validator("commission", "slippage")
    @classmethod
    def validate_rate(cls, v):
        if v < 0 or v >= 1:
            raise ValueError("Rate must be between 0 and 1")
        return v

    @field_validator("var_confidence")
    @classmethod
    def validate_confidence(cls, v):
        if v <= 0 or v >= 1:
            raise ValueError("var_confidence must be between 0 and 1")
        return v


class MarketDataConfig(BaseSettings):
    """Market data collaborator settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    market_data_exchange_id: str = Field(default="binance")
    quote_timeout_seconds: float = Field(default=10.0)
    retry_attempts: int = Field(default=3)
    retry_base_delay: float = Field(default=1.0)
    retry_max_delay: float = Field(default=30.0)

    # Rate-limit backoff stays well under the orchestrator tick timeout
    rate_limit_base_delay: float = Field(default=2.0)
    rate_limit_max_delay: float = Field(default=8.0)


# =============================================================================
# Notifications / Database / Logging
# =============================================================================


class NotificationConfig(BaseSettings):
    """Default notification switches for new deployments."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    notifications_enabled: bool = Field(default=True)
    notify_on_trade: bool = Field(default=True)
    notify_on_error: bool = Field(default=True)
    notify_on_risk_breach: bool = Field(default=True)


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    database_url: str = Field(default="sqlite:///data/autotrader.db")


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )
    log_file: str = Field(default="logs/autotrader.log")
    json_logs: bool = Field(default=True)

    @computed_field
    @property
    def file_logging_enabled(self) -> bool:
        return bool(self.log_file)


# =============================================================================
# Aggregate Configuration
# =============================================================================


class AutoTraderConfig:
    """
    Container for all configuration groups.

    Usage:
        from autotrader.core.config import app_config

        limit = app_config.risk.max_daily_loss
        app_config.runtime.update(cooldown_minutes=5)
    """

    def __init__(self):
        self.system = SystemConfig()
        self.risk = RiskLimitsConfig()
        self.sizing = PositionSizingConfig()
        self.runtime = RuntimeConfigStore(RuntimeConfig())
        self.orchestrator = OrchestratorConfig()
        self.orders = OrderManagementConfig()
        self.backtest = BacktestConfig()
        self.market_data = MarketDataConfig()
        self.notification = NotificationConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

    @property
    def is_paper_trading(self) -> bool:
        return self.system.trading_mode == "paper"

    def validate_configuration(self) -> dict:
        """
        Cross-check settings that individual validators cannot see.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if self.risk.take_profit_pct <= self.risk.stop_loss_pct:
            issues.append("take_profit_pct should be larger than stop_loss_pct")

        if self.sizing.max_percentage_pct < self.sizing.default_percentage:
            issues.append("default_percentage exceeds max_percentage_pct")

        if self.sizing.fallback_percentage > self.sizing.default_percentage:
            issues.append("fallback_percentage should not exceed default_percentage")

        if self.system.trading_mode == "live":
            issues.append("Live trading requires a brokerage client; only paper mode ships")

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

risk_config = RiskLimitsConfig()
sizing_config = PositionSizingConfig()
orchestrator_config = OrchestratorConfig()
order_management_config = OrderManagementConfig()
backtest_config = BacktestConfig()
market_data_config = MarketDataConfig()
notification_config = NotificationConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()

app_config = AutoTraderConfig()


__all__ = [
    "AutoTraderConfig",
    "app_config",
    "risk_config",
    "sizing_config",
    "orchestrator_config",
    "order_management_config",
    "backtest_config",
    "market_data_config",
    "notification_config",
    "database_config",
    "logging_config",
    "SystemConfig",
    "RiskLimitsConfig",
    "PositionSizingConfig",
    "RuntimeConfig",
    "RuntimeConfigStore",
    "OrchestratorConfig",
    "OrderManagementConfig",
    "BacktestConfig",
    "MarketDataConfig",
    "NotificationConfig",
    "DatabaseConfig",
    "LoggingConfig",
]
