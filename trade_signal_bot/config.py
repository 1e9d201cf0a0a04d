from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import os
import yaml


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


_INTERVAL_UNITS_MS = {"m": 60_000, "h": 3_600_000, "d": 86_400_000, "w": 604_800_000}


def interval_ms(interval: str) -> int:
    """Kline interval such as "15m" or "1h" in milliseconds."""
    raw = (interval or "").strip()
    unit = _INTERVAL_UNITS_MS.get(raw[-1:])
    if unit is None or not raw[:-1].isdigit() or int(raw[:-1]) <= 0:
        raise ValueError(f"Unsupported interval: {interval!r}")
    return int(raw[:-1]) * unit


def _split_env_list(env_key: str) -> Optional[List[str]]:
    raw = os.getenv(env_key)
    if not raw:
        return None
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass
class StrategyConfig:
    # Gates
    min_conf_show: int = 60
    min_conf_confirmed: int = 60

    # Cooldowns (minutes)
    cooldown_confirmed_min: int = 30
    cooldown_invalidated_min: int = 15

    # ATR / RR
    atr_period: int = 14
    sl_atr_mult_low: float = 2.0
    sl_atr_mult_mid: float = 2.5
    sl_atr_mult_high: float = 3.0
    rr_base: float = 1.5
    rr_high: float = 2.0
    min_sl_bps: float = 10.0
    min_tp_bps: float = 15.0

    # Liquidation adjust
    liq_thr_high: float = 8.0
    liq_thr_med: float = 6.0
    liq_thr_low: float = 4.0
    liq_penalty_high: int = 10
    liq_penalty_med: int = 7
    liq_penalty_low: int = 4
    liq_bonus_align: int = 5

    # Funding warning
    funding_warn_minutes: int = 30
    funding_rate_abs_warn: float = 0.0002

    # State TTL (seconds); bounds storage lifetime only
    ttl_cooldown_s: int = 6 * 3600
    ttl_pending_s: int = 2 * 3600
    ttl_last_signal_s: int = 6 * 3600

    # Dedupe
    dedupe_ttl_s: int = 120
    dedupe_scope_s: int = 120

    # Trend thresholds (percent)
    trend_up_pct: float = 2.0
    trend_dn_pct: float = -2.0


@dataclass
class ProviderConfig:
    type: str = "binance"
    market: str = "futures"  # futures|spot
    symbols: List[str] = None
    interval: str = "1h"
    candle_limit: int = 200
    rest_timeout_s: int = 20
    ws_heartbeat_s: int = 20
    concurrency: int = 5


@dataclass
class StateConfig:
    backend: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "sig"
    liquidation_prefix: str = "liq"


@dataclass
class SchedulerConfig:
    intrabar_interval_s: int = 300
    close_on_stream: bool = True
    # Used when close_on_stream is off: close cycle runs this long after each bar boundary.
    close_grace_s: float = 2.0


@dataclass
class TelegramConfig:
    enabled: bool = True
    token: str = ""
    chat_ids: List[str] = None
    disable_web_page_preview: bool = True


@dataclass
class WebhookConfig:
    enabled: bool = False
    url: str = ""
    secret: str = ""
    timeout_s: int = 10
    headers: Dict[str, str] = None


@dataclass
class AlertsConfig:
    parse_mode: str = "HTML"  # HTML | MarkdownV2
    footer: str = ""
    include_previews: bool = True
    include_invalidations: bool = True
    include_reasons: bool = True
    include_warnings: bool = True


@dataclass
class AppConfig:
    name: str = "Trade Signal Bot"
    log_level: str = "INFO"


@dataclass
class Config:
    app: AppConfig
    provider: ProviderConfig
    strategy: StrategyConfig
    state: StateConfig
    scheduler: SchedulerConfig
    telegram: TelegramConfig
    webhook: WebhookConfig
    alerts: AlertsConfig


def build_config(raw: Dict[str, Any]) -> Config:
    raw = raw or {}
    cfg = Config(
        app=AppConfig(**raw.get("app", {})),
        provider=ProviderConfig(**raw.get("provider", {})),
        strategy=StrategyConfig(**raw.get("strategy", {})),
        state=StateConfig(**raw.get("state", {})),
        scheduler=SchedulerConfig(**raw.get("scheduler", {})),
        telegram=TelegramConfig(**raw.get("telegram", {})),
        webhook=WebhookConfig(**raw.get("webhook", {})),
        alerts=AlertsConfig(**raw.get("alerts", {})),
    )

    # env overrides (useful on servers)
    watchlist = _split_env_list("WATCHLIST")
    if watchlist:
        cfg.provider.symbols = watchlist
    cfg.provider.symbols = [s.strip().upper() for s in (cfg.provider.symbols or []) if str(s).strip()]

    cfg.state.redis_url = _env_override(cfg.state.redis_url, "REDIS_URL")

    cfg.telegram.token = _env_override(cfg.telegram.token, "TELEGRAM_TOKEN")
    if cfg.telegram.chat_ids is None:
        cfg.telegram.chat_ids = []
    chat_env = _split_env_list("TELEGRAM_CHAT_IDS")
    if chat_env:
        cfg.telegram.chat_ids = chat_env

    cfg.webhook.secret = _env_override(cfg.webhook.secret, "WEBHOOK_SECRET")
    cfg.webhook.url = _env_override(cfg.webhook.url, "WEBHOOK_URL")
    if cfg.webhook.headers is None:
        cfg.webhook.headers = {}

    if cfg.state.backend not in ("memory", "redis"):
        raise ValueError(f"Unsupported state backend: {cfg.state.backend} (use 'memory' or 'redis')")
    if cfg.provider.type != "binance":
        raise ValueError(f"Unsupported provider: {cfg.provider.type} (only 'binance')")
    interval_ms(cfg.provider.interval)
    if cfg.provider.market not in ("futures", "spot"):
        raise ValueError(f"Unsupported market: {cfg.provider.market} (use 'futures' or 'spot')")

    return cfg


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return build_config(raw)
