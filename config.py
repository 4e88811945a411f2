"""
Configuration management for the trade/ad signal bot.

Two layers:
- BotConfig: process configuration loaded once from the environment (.env)
- BotSettings: operator-tunable runtime settings, an immutable versioned
  snapshot served by settings_store.SettingsStore
"""

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from models import MarketKind, Tier

# Load environment variables
load_dotenv()


class KalshiConfig(BaseModel):
    """Kalshi API configuration."""

    api_key: str = Field(..., description="Kalshi API key id")
    private_key: str = Field(..., description="Kalshi private key (PEM format)")
    use_demo: bool = Field(default=False, description="Use demo environment")

    @property
    def base_url(self) -> str:
        """Get the appropriate base URL based on environment."""
        if self.use_demo:
            return "https://demo-api.kalshi.co"
        return "https://api.elections.kalshi.com"

    @field_validator("private_key", mode="before")
    @classmethod
    def validate_private_key(cls, v: str) -> str:
        """Validate and format private key."""
        if not v or v == "your_kalshi_private_key_here":
            raise ValueError(
                "KALSHI_PRIVATE_KEY is required. Please set it in your .env file."
            )

        v = v.strip()
        if (v.startswith('"') and v.endswith('"')) or (
            v.startswith("'") and v.endswith("'")
        ):
            v = v[1:-1]

        if "\\n" in v:
            v = v.replace("\\n", "\n")

        # A path to a PEM file is accepted in place of the key itself
        if not v.startswith("-----BEGIN") and (Path(v).exists() or v.endswith(".pem")):
            try:
                with open(v, "r") as f:
                    v = f.read()
            except Exception as e:
                raise ValueError(f"Could not read private key file '{v}': {e}")

        if not v.strip().startswith("-----BEGIN") or not v.strip().endswith("-----"):
            raise ValueError(
                "Private key must be in PEM format starting with '-----BEGIN' and ending with '-----'. "
                "Make sure to include \\n for line breaks in your .env file."
            )

        return v


class LLMConfig(BaseModel):
    """OpenAI-compatible text-analysis endpoint (Groq by default)."""

    api_key: Optional[str] = Field(default=None, description="API key; unset disables LLM analysis")
    base_url: str = Field(
        default="https://api.groq.com/openai/v1", description="OpenAI-compatible base URL"
    )
    model: str = Field(default="llama-3.3-70b-versatile", description="Model name")
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(default=600, ge=50, le=8000)
    timeout_seconds: float = Field(default=20.0, ge=1.0, le=120.0)

    @field_validator("api_key", mode="before")
    @classmethod
    def blank_key_is_none(cls, v: Optional[str]) -> Optional[str]:
        if not v or v in ("your_groq_api_key_here", "your_openai_api_key_here"):
            return None
        return v

    @property
    def enabled(self) -> bool:
        return self.api_key is not None


class TwitterConfig(BaseModel):
    """Tiered timeline polling configuration."""

    bearer_token: Optional[str] = Field(default=None, description="Twitter API v2 bearer token")
    api_base: str = Field(default="https://api.twitter.com/2")
    tier1_interval_seconds: int = Field(default=5, ge=1, le=300, description="Top insiders")
    tier2_interval_seconds: int = Field(default=30, ge=5, le=600, description="National reporters")
    tier3_interval_seconds: int = Field(default=90, ge=10, le=1800, description="Beat writers and aggregators")
    max_results: int = Field(default=5, ge=5, le=100)
    backfill_minutes: int = Field(default=60, ge=1, le=1440, description="Lookback when no since_id is stored")
    backfill_max_results: int = Field(default=20, ge=5, le=100)
    save_state_interval_seconds: int = Field(default=300, ge=10, le=3600)
    timeout_seconds: float = Field(default=10.0, ge=1.0, le=60.0)

    @field_validator("bearer_token", mode="before")
    @classmethod
    def blank_token_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None

    @property
    def enabled(self) -> bool:
        return self.bearer_token is not None


class TelegramConfig(BaseModel):
    """Telegram notification sink."""

    bot_token: Optional[str] = Field(default=None)
    chat_id: Optional[str] = Field(default=None)
    max_retries: int = Field(default=3, ge=1, le=10)
    base_delay_ms: int = Field(default=500, ge=50, le=10000)
    timeout_seconds: float = Field(default=10.0, ge=1.0, le=60.0)

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)


class DatabaseConfig(BaseModel):
    """SQLite audit store configuration."""

    db_path: str = Field(default="trade_bot.db", description="SQLite database file path")
    enable_db: bool = Field(default=True, description="Enable database storage")


class SchedulerConfig(BaseModel):
    """Control-loop cadence. One tick job runs every tick_seconds; phases gate themselves."""

    tick_seconds: int = Field(default=5, ge=1, le=60, description="Seconds between ticks")
    settings_ttl_seconds: int = Field(default=60, ge=5, le=600)
    market_cache_ttl_seconds: int = Field(default=60, ge=5, le=600)
    ad_market_cache_ttl_seconds: int = Field(default=30, ge=5, le=600)
    profit_taking_interval_seconds: int = Field(default=60, ge=5, le=600)
    orderbook_interval_seconds: int = Field(default=30, ge=5, le=600)
    price_history_interval_seconds: int = Field(default=30, ge=5, le=600)
    summary_interval_minutes: int = Field(default=60, ge=5, le=1440)
    resolution_interval_minutes: int = Field(
        default=30, ge=5, le=1440, description="Minutes between settled-market prediction scoring"
    )
    max_consecutive_failures: int = Field(
        default=5, ge=1, le=20, description="Max consecutive failures before pausing"
    )
    startup_delay_seconds: int = Field(default=0, ge=0, le=60)


class ExecutionConfig(BaseModel):
    """Order execution guard thresholds (cents unless noted)."""

    dedup_cooldown_seconds: int = Field(default=300, ge=0, le=3600)
    price_sanity_threshold: int = Field(
        default=20, ge=1, le=99, description="Max orderbook vs last-trade divergence before preferring last trade"
    )
    priced_in_ceiling: int = Field(default=98, ge=50, le=99, description="Never buy at or above this")
    zero_slippage_sell_floor: int = Field(default=95, ge=50, le=99, description="Sell at reference with no slippage at or above this")
    sell_slippage: int = Field(default=1, ge=0, le=10)
    lower_tier_slippage: int = Field(default=3, ge=0, le=20)
    conflict_exit_floor: int = Field(default=5, ge=1, le=50, description="Limit used when closing an opposite leg without a reference")
    client_order_prefix: str = Field(default="nba-v2")


class ProfitTakingConfig(BaseModel):
    """Per-position exit rules, evaluated in priority order."""

    near_resolution_price: int = Field(default=95, ge=50, le=99)
    near_resolution_min_profit: int = Field(default=5, ge=0, le=50)
    near_resolution_margin: int = Field(default=3, ge=0, le=20)
    near_resolution_slippage: int = Field(default=2, ge=0, le=20)

    partial_gain_pct: float = Field(default=30.0, ge=1.0, le=500.0)
    partial_min_price: int = Field(default=60, ge=1, le=99)
    partial_fraction: float = Field(default=0.5, gt=0.0, lt=1.0)
    partial_min_lot: int = Field(default=5, ge=1, le=1000)
    partial_slippage: int = Field(default=2, ge=0, le=20)

    stop_loss_pct: float = Field(default=-40.0, ge=-100.0, le=0.0)
    stop_loss_slippage: int = Field(default=3, ge=0, le=20)

    liquidation_floor: int = Field(default=60, ge=1, le=99, description="Liquidate below this in the final window")
    liquidation_slippage: int = Field(default=5, ge=0, le=30)

    report_threshold_pct: float = Field(default=10.0, ge=0.0, le=100.0)
    pending_sell_ttl_seconds: int = Field(default=300, ge=10, le=3600)
    fills_lookback: int = Field(default=100, ge=10, le=1000)
    tracked_prefixes: tuple = Field(default=("KXNBATRADE", "KXNEXTTEAM"))


class DeadlineConfig(BaseModel):
    """Hard deadlines that drive liquidation and the deadline NO-buy."""

    trade_deadline: datetime = Field(
        default=datetime(2026, 2, 5, 20, 0, tzinfo=timezone.utc), description="NBA trade deadline (UTC)"
    )
    final_hours: float = Field(default=3.0, ge=0.25, le=48.0)
    deadline_day_hours: float = Field(default=24.0, ge=1.0, le=72.0)
    no_buy_window_minutes: int = Field(default=15, ge=1, le=240)
    no_buy_min_price: int = Field(default=50, ge=1, le=99)
    no_buy_scan_max_price: int = Field(default=90, ge=1, le=99)
    no_buy_max_price: int = Field(default=85, ge=1, le=99)
    no_buy_max_contracts: int = Field(default=50, ge=1, le=10000)
    no_buy_max_candidates: int = Field(default=10, ge=1, le=100)
    recent_signal_minutes: int = Field(default=30, ge=1, le=1440)
    super_bowl_kickoff: datetime = Field(
        default=datetime(2026, 2, 9, 23, 30, tzinfo=timezone.utc), description="Super Bowl kickoff (UTC)"
    )


class ManualTradeConfig(BaseModel):
    """Defaults for the trade-now command."""

    contract_count: int = Field(default=100, ge=1, le=10000)
    max_yes_price: int = Field(default=95, ge=1, le=99)
    slippage: int = Field(default=3, ge=0, le=20)


# =============================================================================
# Runtime settings snapshot
# =============================================================================
class FeatureFlags(BaseModel):
    """Operator feature toggles."""

    model_config = ConfigDict(frozen=True)

    twitter_monitoring: bool = True
    price_spike_trading: bool = False
    orderbook_monitoring: bool = True
    profit_taking: bool = True
    telegram_notifications: bool = True
    deadline_no_buy: bool = True
    ad_trading: bool = True


class BotSettings(BaseModel):
    """
    Immutable, versioned runtime settings. Changes produce a new snapshot via
    with_updates(); nothing mutates a snapshot in place.
    """

    model_config = ConfigDict(frozen=True)

    version: int = Field(default=0, ge=0)

    base_contract_count: int = Field(default=100, ge=0, le=100000)
    max_price_confirmed: int = Field(default=99, ge=1, le=99)
    max_price_imminent: int = Field(default=92, ge=1, le=99)
    max_price_serious: int = Field(default=80, ge=1, le=99)
    max_price_negative: int = Field(default=50, ge=1, le=99)

    min_volume_for_alert: int = Field(default=15000, ge=0)
    min_volume_for_auto_buy: int = Field(default=25000, ge=0)
    price_alert_threshold: float = Field(default=0.10, gt=0.0, le=1.0, description="Fractional move that makes a candidate alert")
    price_alert_ceiling: int = Field(default=90, ge=1, le=99, description="Oldest price must be below this")
    price_spike_threshold: float = Field(default=20.0, gt=0.0, le=500.0, description="Percent move for spike notifications/auto-buy")
    price_spike_max_entry: int = Field(default=85, ge=1, le=99)
    price_spike_min_price: int = Field(default=20, ge=1, le=99)
    price_spike_min_move_cents: int = Field(default=5, ge=1, le=99)
    price_spike_max_runup_pct: float = Field(default=40.0, ge=0.0, le=1000.0)
    price_spike_require_twitter: bool = True
    price_spike_cooldown_minutes: float = Field(default=2.0, ge=0.0, le=120.0)
    price_spike_position_limit: int = Field(default=50, ge=0, le=100000)

    ad_base_contract_count: int = Field(default=50, ge=0, le=100000)
    ad_max_price_confirmed: int = Field(default=99, ge=1, le=99)
    ad_max_price_likely: int = Field(default=90, ge=1, le=99)

    kill_switch: bool = False
    features: FeatureFlags = Field(default_factory=FeatureFlags)

    def tier_max_price(self, tier: Tier, kind: MarketKind = MarketKind.TRADE) -> int:
        """Highest price an order for this tier may pay."""
        if kind is MarketKind.AD:
            if tier is Tier.CONFIRMED:
                return self.ad_max_price_confirmed
            if tier is Tier.IMMINENT:
                return self.ad_max_price_likely
            return 0
        if tier is Tier.CONFIRMED:
            return self.max_price_confirmed
        if tier is Tier.IMMINENT:
            return self.max_price_imminent
        if tier is Tier.SERIOUS:
            return self.max_price_serious
        if tier is Tier.NEGATIVE:
            return self.max_price_negative
        return 0

    def base_count_for(self, kind: MarketKind) -> int:
        return self.ad_base_contract_count if kind is MarketKind.AD else self.base_contract_count

    def flat(self) -> Dict[str, Any]:
        """Flattened view with features as features.<name> keys."""
        data = self.model_dump(exclude={"features", "version"})
        for key, value in self.features.model_dump().items():
            data[f"features.{key}"] = value
        return data

    def diff(self, other: "BotSettings") -> Dict[str, tuple]:
        """Changed keys mapped to (old, new), self being the old snapshot."""
        old, new = self.flat(), other.flat()
        return {k: (old.get(k), new[k]) for k in new if old.get(k) != new[k]}

    def with_updates(self, **changes: Any) -> "BotSettings":
        """New validated snapshot with the given changes and the next version."""
        data = self.model_dump()
        feature_changes = {
            k.split(".", 1)[1]: v for k, v in changes.items() if k.startswith("features.")
        }
        feature_changes.update(changes.pop("features", {}) or {})
        for key in list(changes):
            if key.startswith("features."):
                changes.pop(key)
        data.update(changes)
        data["features"] = {**data["features"], **feature_changes}
        data["version"] = self.version + 1
        return BotSettings.model_validate(data)


def _clean_env_value(value: str) -> str:
    """Clean environment variable value by removing inline comments."""
    return value.split("#")[0].strip()


def _env_bool(name: str, default: str) -> bool:
    return _clean_env_value(os.getenv(name, default)).lower() == "true"


def _env_int(name: str, default: str) -> int:
    return int(_clean_env_value(os.getenv(name, default)))


def _env_float(name: str, default: str) -> float:
    return float(_clean_env_value(os.getenv(name, default)))


class BotConfig(BaseSettings):
    """Main bot configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="allow"
    )

    kalshi: KalshiConfig = Field(..., description="Kalshi configuration")
    llm: LLMConfig = Field(default_factory=LLMConfig, description="Text-analysis model")
    twitter: TwitterConfig = Field(default_factory=TwitterConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    profit_taking: ProfitTakingConfig = Field(default_factory=ProfitTakingConfig)
    deadlines: DeadlineConfig = Field(default_factory=DeadlineConfig)
    manual_trade: ManualTradeConfig = Field(default_factory=ManualTradeConfig)

    dry_run: bool = Field(
        default=True, description="Run in dry-run mode (overridden by CLI)"
    )

    def __init__(self, **data):
        # Build nested configs from environment variables
        private_key = os.getenv("KALSHI_PRIVATE_KEY", "")
        private_key_file = os.getenv("KALSHI_PRIVATE_KEY_FILE", "")

        if private_key_file and not private_key:
            private_key = private_key_file  # Will be processed by validator

        kalshi_config = KalshiConfig(
            api_key=os.getenv("KALSHI_API_KEY", ""),
            private_key=private_key,
            use_demo=_env_bool("KALSHI_USE_DEMO", "false"),
        )

        llm_config = LLMConfig(
            api_key=os.getenv("GROQ_API_KEY") or os.getenv("LLM_API_KEY") or None,
            base_url=os.getenv("LLM_BASE_URL", "https://api.groq.com/openai/v1"),
            model=os.getenv("LLM_MODEL", "llama-3.3-70b-versatile"),
            temperature=_env_float("LLM_TEMPERATURE", "0.1"),
            max_tokens=_env_int("LLM_MAX_TOKENS", "600"),
        )

        twitter_config = TwitterConfig(
            bearer_token=os.getenv("TWITTER_BEARER_TOKEN") or None,
            tier1_interval_seconds=_env_int("TWITTER_TIER1_INTERVAL", "5"),
            tier2_interval_seconds=_env_int("TWITTER_TIER2_INTERVAL", "30"),
            tier3_interval_seconds=_env_int("TWITTER_TIER3_INTERVAL", "90"),
        )

        telegram_config = TelegramConfig(
            bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
            chat_id=os.getenv("TELEGRAM_CHAT_ID") or None,
            max_retries=_env_int("TELEGRAM_MAX_RETRIES", "3"),
        )

        database_config = DatabaseConfig(
            db_path=os.getenv("DB_PATH", "trade_bot.db"),
            enable_db=_env_bool("ENABLE_DB", "true"),
        )

        scheduler_config = SchedulerConfig(
            tick_seconds=_env_int("SCHEDULER_TICK_SECONDS", "5"),
            settings_ttl_seconds=_env_int("SETTINGS_TTL_SECONDS", "60"),
            market_cache_ttl_seconds=_env_int("MARKET_CACHE_TTL_SECONDS", "60"),
            profit_taking_interval_seconds=_env_int("PROFIT_TAKING_INTERVAL", "60"),
            orderbook_interval_seconds=_env_int("ORDERBOOK_INTERVAL", "30"),
            price_history_interval_seconds=_env_int("PRICE_HISTORY_INTERVAL", "30"),
            summary_interval_minutes=_env_int("SUMMARY_INTERVAL_MINUTES", "60"),
            resolution_interval_minutes=_env_int("RESOLUTION_INTERVAL_MINUTES", "30"),
            max_consecutive_failures=_env_int("SCHEDULER_MAX_FAILURES", "5"),
        )

        execution_config = ExecutionConfig(
            dedup_cooldown_seconds=_env_int("DEDUP_COOLDOWN_SECONDS", "300"),
            price_sanity_threshold=_env_int("PRICE_SANITY_THRESHOLD", "20"),
        )

        manual_trade_config = ManualTradeConfig(
            contract_count=_env_int("TRADE_CONTRACT_COUNT", "100"),
            max_yes_price=_env_int("TRADE_MAX_YES_PRICE", "95"),
            slippage=_env_int("TRADE_SLIPPAGE", "3"),
        )

        deadline_kwargs = {}
        if os.getenv("TRADE_DEADLINE"):
            deadline_kwargs["trade_deadline"] = datetime.fromisoformat(
                _clean_env_value(os.environ["TRADE_DEADLINE"]).replace("Z", "+00:00")
            )
        deadline_config = DeadlineConfig(**deadline_kwargs)

        data.update(
            {
                "kalshi": kalshi_config,
                "llm": llm_config,
                "twitter": twitter_config,
                "telegram": telegram_config,
                "database": database_config,
                "scheduler": scheduler_config,
                "execution": execution_config,
                "deadlines": deadline_config,
                "manual_trade": manual_trade_config,
                "dry_run": data.get("dry_run", True),
            }
        )

        super().__init__(**data)


def load_config() -> BotConfig:
    """Load and validate configuration."""
    return BotConfig()
