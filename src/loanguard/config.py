"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PriceFeedSettings(BaseSettings):
    """Market price polling and fallback parameters."""

    model_config = SettingsConfigDict(env_prefix="PRICE_")

    symbol: str = "BTC"
    exchange_symbol: str = "BTC/USDT"
    poll_interval: float = 30.0  # seconds between refreshes
    fetch_timeout_seconds: float = 10.0
    fallback_price: Decimal = Decimal("31247.82")
    # Past price approximation when no 24h-old sample exists
    change_fallback_factor: Decimal = Decimal("1.044")
    max_staleness_seconds: float = 120.0


class LendingSettings(BaseSettings):
    """Loan, top-up and health factor policy."""

    model_config = SettingsConfigDict(env_prefix="LENDING_")

    default_apr: Decimal = Decimal("7.5")
    auto_topup_amount: Decimal = Decimal("1000")
    auto_topup_currency: Literal["BTC", "USDT"] = "USDT"
    trigger_cooldown_seconds: float = 10.0
    notification_limit: int = 20

    # Health thresholds (advisory only, nothing is liquidated)
    safe_threshold: Decimal = Decimal("1.5")
    warning_threshold: Decimal = Decimal("1.2")
    liquidation_threshold: Decimal = Decimal("1.0")


class DatabaseSettings(BaseSettings):
    """SQLite persistence location."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    path: str = "data/loanguard.db"


class DashboardSettings(BaseSettings):
    """Dashboard server configuration."""

    model_config = SettingsConfigDict(env_prefix="DASHBOARD_")

    host: str = "0.0.0.0"
    port: int = 5000
    enabled: bool = True
    update_interval: int = 5  # seconds between WebSocket pushes


class DemoUserSettings(BaseSettings):
    """Profile of the demo user seeded at startup when absent."""

    model_config = SettingsConfigDict(env_prefix="DEMO_")

    enabled: bool = True
    username: str = "trader.eth"
    wallet_address: str = "0x9730c4e0b01962a66b7582b7b8a7b21a329d4d4f"
    linked_wallet_balance_btc: Decimal = Decimal("0.5")
    linked_wallet_balance_usdt: Decimal = Decimal("20000")
    auto_topup_enabled: bool = True
    sms_alerts_enabled: bool = False


class RiskMonitorSettings(BaseSettings):
    """Server-side risk signal loop (off by default, clients post triggers)."""

    model_config = SettingsConfigDict(env_prefix="RISK_")

    enabled: bool = False
    interval: float = 15.0
    window: int = Field(default=24, ge=2)  # price samples fed to the signal provider


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    price_feed: PriceFeedSettings = PriceFeedSettings()
    lending: LendingSettings = LendingSettings()
    database: DatabaseSettings = DatabaseSettings()
    dashboard: DashboardSettings = DashboardSettings()
    demo_user: DemoUserSettings = DemoUserSettings()
    risk_monitor: RiskMonitorSettings = RiskMonitorSettings()
