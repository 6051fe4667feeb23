"""Configuration management for the TradeGuard decision engine."""

from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="ENVIRONMENT"
    )
    app_name: str = Field(default="TradeGuard", validation_alias="APP_NAME")
    app_version: str = Field(default="0.3.0", validation_alias="APP_VERSION")

    # Paper books only until a live executor is wired in
    dry_run: bool = Field(default=True, validation_alias="DRY_RUN")


# =============================================================================
# Reasoning Provider Configuration
# =============================================================================


class ProviderConfig(BaseSettings):
    """Reasoning provider cascade configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Priority order, first entry tried first
    model_priority_str: str = Field(
        default="deepseek-v3.2:cloud,gpt-oss:120b-cloud,qwen3:235b",
        validation_alias="PROVIDER_MODEL_PRIORITY",
    )
    kind: Literal["ollama", "openai"] = Field(
        default="ollama", validation_alias="PROVIDER_KIND"
    )
    base_url: str = Field(
        default="http://localhost:11434", validation_alias="PROVIDER_BASE_URL"
    )
    api_key: Optional[str] = Field(default=None, validation_alias="PROVIDER_API_KEY")

    # Per-provider timeout, not a budget for the whole cascade
    timeout_seconds: float = Field(default=45.0, validation_alias="PROVIDER_TIMEOUT")
    temperature: float = Field(default=0.2, validation_alias="PROVIDER_TEMPERATURE")
    max_proposals: int = Field(default=10, validation_alias="PROVIDER_MAX_PROPOSALS")

    @property
    def model_priority(self) -> List[str]:
        """Parse model priority string into list."""
        return [s.strip() for s in self.model_priority_str.split(",") if s.strip()]

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v):
        """Validate that the provider timeout is positive."""
        if v <= 0:
            raise ValueError("Provider timeout must be positive")
        return v


# =============================================================================
# Trading Mode Configuration
# =============================================================================


class TradingModesConfig(BaseSettings):
    """Per-mode limits.

    Position limits are percentages of total portfolio value (10 = 10%).
    """

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    default_mode: Literal["aggressive", "normal", "conservative", "paused"] = Field(
        default="normal", validation_alias="TRADING_DEFAULT_MODE"
    )

    # AGGRESSIVE
    aggressive_max_position_pct: Decimal = Field(
        default=Decimal("25"), validation_alias="MODE_AGGRESSIVE_MAX_POSITION_PCT"
    )
    aggressive_max_trades_per_day: int = Field(
        default=20, validation_alias="MODE_AGGRESSIVE_MAX_TRADES_PER_DAY"
    )
    aggressive_requires_confluence: bool = Field(
        default=False, validation_alias="MODE_AGGRESSIVE_REQUIRES_CONFLUENCE"
    )

    # NORMAL
    normal_max_position_pct: Decimal = Field(
        default=Decimal("10"), validation_alias="MODE_NORMAL_MAX_POSITION_PCT"
    )
    normal_max_trades_per_day: int = Field(
        default=10, validation_alias="MODE_NORMAL_MAX_TRADES_PER_DAY"
    )
    normal_requires_confluence: bool = Field(
        default=False, validation_alias="MODE_NORMAL_REQUIRES_CONFLUENCE"
    )

    # CONSERVATIVE
    conservative_max_position_pct: Decimal = Field(
        default=Decimal("5"), validation_alias="MODE_CONSERVATIVE_MAX_POSITION_PCT"
    )
    conservative_max_trades_per_day: int = Field(
        default=5, validation_alias="MODE_CONSERVATIVE_MAX_TRADES_PER_DAY"
    )
    conservative_requires_confluence: bool = Field(
        default=True, validation_alias="MODE_CONSERVATIVE_REQUIRES_CONFLUENCE"
    )

    # PAUSED: exits only
    paused_max_position_pct: Decimal = Field(
        default=Decimal("0"), validation_alias="MODE_PAUSED_MAX_POSITION_PCT"
    )
    paused_max_trades_per_day: int = Field(
        default=5, validation_alias="MODE_PAUSED_MAX_TRADES_PER_DAY"
    )

    @field_validator(
        "aggressive_max_position_pct",
        "normal_max_position_pct",
        "conservative_max_position_pct",
        "paused_max_position_pct",
    )
    @classmethod
    def validate_position_pct(cls, v):
        """Validate that position limits are between 0 and 100."""
        if v < 0 or v > 100:
            raise ValueError("Position limit must be between 0 and 100")
        return v


# =============================================================================
# Guardrail Configuration
# =============================================================================


class GuardrailConfig(BaseSettings):
    """Guardrail policy settings shared by all modes."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Confluence requirements (only enforced when the mode requires it)
    min_confidence: float = Field(default=0.7, validation_alias="GUARDRAIL_MIN_CONFIDENCE")
    min_signals: int = Field(default=3, validation_alias="GUARDRAIL_MIN_SIGNALS")

    # Shrink oversized proposals to the cap instead of rejecting them
    downsize_to_cap: bool = Field(default=False, validation_alias="GUARDRAIL_DOWNSIZE_TO_CAP")

    # Sizing for proposals that carry no explicit quantity
    default_position_pct: Decimal = Field(
        default=Decimal("5"), validation_alias="GUARDRAIL_DEFAULT_POSITION_PCT"
    )
    lot_size: Decimal = Field(default=Decimal("1"), validation_alias="GUARDRAIL_LOT_SIZE")

    # Maximum override duration
    max_override_minutes: int = Field(
        default=480, validation_alias="GUARDRAIL_MAX_OVERRIDE_MINUTES"
    )

    @field_validator("min_confidence")
    @classmethod
    def validate_confidence(cls, v):
        """Validate confidence threshold is between 0 and 1."""
        if v < 0 or v > 1:
            raise ValueError("Confidence threshold must be between 0 and 1")
        return v

    @field_validator("lot_size")
    @classmethod
    def validate_lot_size(cls, v):
        if v <= 0:
            raise ValueError("Lot size must be positive")
        return v


# =============================================================================
# Circuit Breaker Configuration
# =============================================================================


class CircuitBreakerConfig(BaseSettings):
    """Circuit breaker configuration for loss protection."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Daily realized loss (% of day-start value) that forces the fallback mode
    daily_loss_threshold_pct: Decimal = Field(
        default=Decimal("10"), validation_alias="CIRCUIT_BREAKER_DAILY_LOSS_PCT"
    )
    fallback_mode: Literal["conservative", "paused"] = Field(
        default="conservative", validation_alias="CIRCUIT_BREAKER_FALLBACK_MODE"
    )

    # Consecutive losing outcomes that pause trading
    consecutive_loss_limit: int = Field(
        default=5, validation_alias="CIRCUIT_BREAKER_CONSECUTIVE_LOSSES"
    )
    pause_minutes: int = Field(default=60, validation_alias="CIRCUIT_BREAKER_PAUSE_MINUTES")

    # Trading day boundary
    day_boundary_timezone: str = Field(
        default="America/New_York", validation_alias="CIRCUIT_BREAKER_TIMEZONE"
    )

    @field_validator("daily_loss_threshold_pct")
    @classmethod
    def validate_threshold(cls, v):
        """Validate that threshold is between 0 and 100."""
        if v <= 0 or v > 100:
            raise ValueError("Threshold must be between 0 and 100")
        return v

    @field_validator("consecutive_loss_limit", "pause_minutes")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v


# =============================================================================
# Market Hours Configuration
# =============================================================================


class MarketHoursConfig(BaseSettings):
    """Exchange trading window configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    timezone: str = Field(default="America/New_York", validation_alias="MARKET_TIMEZONE")
    open_time: str = Field(default="09:30", validation_alias="MARKET_OPEN_TIME")
    close_time: str = Field(default="16:00", validation_alias="MARKET_CLOSE_TIME")

    # Monday=0 ... Sunday=6
    trading_days_str: str = Field(default="0,1,2,3,4", validation_alias="MARKET_TRADING_DAYS")

    # ISO dates, comma separated
    holidays_str: str = Field(default="", validation_alias="MARKET_HOLIDAYS")

    @property
    def trading_days(self) -> List[int]:
        """Parse trading days string into list of weekday numbers."""
        return [int(s) for s in self.trading_days_str.split(",") if s.strip()]

    @property
    def holidays(self) -> List[str]:
        """Parse holidays string into list of ISO dates."""
        return [s.strip() for s in self.holidays_str.split(",") if s.strip()]

    @field_validator("open_time", "close_time")
    @classmethod
    def validate_time(cls, v):
        """Validate HH:MM format."""
        parts = v.split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError("Time must be in HH:MM format")
        hour, minute = int(parts[0]), int(parts[1])
        if hour > 23 or minute > 59:
            raise ValueError("Time must be in HH:MM format")
        return v


# =============================================================================
# Scheduler Configuration
# =============================================================================


class SchedulerConfig(BaseSettings):
    """Background queue worker configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    tick_interval_seconds: int = Field(default=30, validation_alias="SCHEDULER_TICK_INTERVAL")
    execution_timeout_seconds: float = Field(
        default=15.0, validation_alias="SCHEDULER_EXECUTION_TIMEOUT"
    )

    # Run decision cycles from the worker as well
    auto_cycle_enabled: bool = Field(default=False, validation_alias="SCHEDULER_AUTO_CYCLE")
    cycle_interval_minutes: int = Field(
        default=60, validation_alias="SCHEDULER_CYCLE_INTERVAL_MINUTES"
    )


# =============================================================================
# Portfolio Configuration
# =============================================================================


class PortfolioConfig(BaseSettings):
    """Simulated portfolio books."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    portfolio_tags_str: str = Field(default="KALIC,DC", validation_alias="PORTFOLIO_TAGS")
    starting_capital: Decimal = Field(
        default=Decimal("1000000"), validation_alias="PORTFOLIO_STARTING_CAPITAL"
    )
    benchmark_symbol: str = Field(default="SPY", validation_alias="PORTFOLIO_BENCHMARK")
    watchlist_str: str = Field(
        default="AAPL,MSFT,NVDA,GOOGL,AMZN,META,TSLA,SPY",
        validation_alias="PORTFOLIO_WATCHLIST",
    )
    # Prices older than this are flagged as stale in the market context
    stale_price_minutes: int = Field(default=30, validation_alias="PORTFOLIO_STALE_PRICE_MINUTES")

    @property
    def portfolio_tags(self) -> List[str]:
        """Parse portfolio tags string into list."""
        return [s.strip().upper() for s in self.portfolio_tags_str.split(",") if s.strip()]

    @property
    def watchlist(self) -> List[str]:
        """Parse watchlist string into list."""
        return [s.strip().upper() for s in self.watchlist_str.split(",") if s.strip()]

    @field_validator("starting_capital")
    @classmethod
    def validate_capital(cls, v):
        if v <= 0:
            raise ValueError("Starting capital must be positive")
        return v


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    database_url: str = Field(
        default="sqlite:///./data/tradeguard.db", validation_alias="DATABASE_URL"
    )
    database_timeout: int = Field(default=30, validation_alias="DATABASE_TIMEOUT")


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: str = Field(default="logs/tradeguard.log", validation_alias="LOG_FILE")
    log_to_file: bool = Field(default=True, validation_alias="LOG_TO_FILE")


# =============================================================================
# Audit Configuration
# =============================================================================


class AuditConfig(BaseSettings):
    """Hash-chained audit trail configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    audit_file: str = Field(default="data/audit/chain.jsonl", validation_alias="AUDIT_FILE")
    verify_on_session_start: bool = Field(
        default=True, validation_alias="AUDIT_VERIFY_ON_SESSION_START"
    )
    verify_every_cycle: bool = Field(default=False, validation_alias="AUDIT_VERIFY_EVERY_CYCLE")


# =============================================================================
# Global Configuration Container
# =============================================================================


class TradeGuardConfig:
    """
    Container for all TradeGuard configurations.

    Usage:
        from tradeguard.core.config import tradeguard_config

        timeout = tradeguard_config.providers.timeout_seconds
        if tradeguard_config.audit.verify_every_cycle:
            ...
    """

    def __init__(self):
        self.system = SystemConfig()
        self.providers = ProviderConfig()
        self.modes = TradingModesConfig()
        self.guardrails = GuardrailConfig()
        self.circuit_breaker = CircuitBreakerConfig()
        self.market_hours = MarketHoursConfig()
        self.scheduler = SchedulerConfig()
        self.portfolio = PortfolioConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()
        self.audit = AuditConfig()

    @property
    def is_paper_trading(self) -> bool:
        """Check if running against simulated books only."""
        return self.system.dry_run

    def mode_limits(self) -> Dict[str, Dict[str, object]]:
        """Return the configured limits keyed by mode name."""
        m = self.modes
        return {
            "aggressive": {
                "max_position_pct": m.aggressive_max_position_pct,
                "max_trades_per_day": m.aggressive_max_trades_per_day,
                "requires_confluence": m.aggressive_requires_confluence,
                "allows_new_entries": True,
            },
            "normal": {
                "max_position_pct": m.normal_max_position_pct,
                "max_trades_per_day": m.normal_max_trades_per_day,
                "requires_confluence": m.normal_requires_confluence,
                "allows_new_entries": True,
            },
            "conservative": {
                "max_position_pct": m.conservative_max_position_pct,
                "max_trades_per_day": m.conservative_max_trades_per_day,
                "requires_confluence": m.conservative_requires_confluence,
                "allows_new_entries": True,
            },
            "paused": {
                "max_position_pct": m.paused_max_position_pct,
                "max_trades_per_day": m.paused_max_trades_per_day,
                "requires_confluence": True,
                "allows_new_entries": False,
            },
        }

    def validate_configuration(self) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if not self.providers.model_priority:
            issues.append("At least one reasoning provider must be configured")

        if not self.portfolio.portfolio_tags:
            issues.append("At least one portfolio tag must be configured")
        elif len(set(self.portfolio.portfolio_tags)) != len(self.portfolio.portfolio_tags):
            issues.append("Portfolio tags must be unique")

        # Limits should tighten from aggressive to conservative
        m = self.modes
        if not (
            m.aggressive_max_position_pct
            >= m.normal_max_position_pct
            >= m.conservative_max_position_pct
        ):
            issues.append("Mode position limits must not increase toward conservative")

        if self.market_hours.open_time >= self.market_hours.close_time:
            issues.append("Market open time must be before close time")

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

provider_config = ProviderConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()
audit_config = AuditConfig()

tradeguard_config = TradeGuardConfig()


__all__ = [
    "TradeGuardConfig",
    "tradeguard_config",
    "provider_config",
    "database_config",
    "logging_config",
    "audit_config",
    "SystemConfig",
    "ProviderConfig",
    "TradingModesConfig",
    "GuardrailConfig",
    "CircuitBreakerConfig",
    "MarketHoursConfig",
    "SchedulerConfig",
    "PortfolioConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "AuditConfig",
]
