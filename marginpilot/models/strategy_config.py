"""Strategy configuration dataclasses.

A strategy document is JSON with camelCase keys. Each section hydrates into
one frozen dataclass below; the JSON key of a field is its camelCase name
unless the field carries an explicit ``key`` in its metadata.

Fields without a default are required in the document.
"""

from dataclasses import MISSING, dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional


def key(name: str, default=MISSING, *, alias: str | None = None):
    """Field with an explicit JSON key (for acronyms and numeric keys)."""
    metadata = {"key": name}
    if alias:
        metadata["alias"] = alias
    return field(default=default, metadata=metadata)


# ── Meta / weights ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class StrategyMeta:
    name: str
    version: str
    description: str = ""
    type: str = "swing"  # "swing" or "breakout"
    pair: str = "XRPEUR"
    author: str = ""


@dataclass(frozen=True)
class TimeframeWeights:
    """Per-timeframe weights; a valid strategy sums them to 100."""

    d1: float = key("1d")
    h4: float = key("4h")
    h1: float = key("1h")
    m15: float = key("15m")
    m5: float = key("5m")

    def total(self) -> float:
        return self.d1 + self.h4 + self.h1 + self.m15 + self.m5


@dataclass(frozen=True)
class GradeThresholds:
    a: float = key("A", 80.0)
    b: float = key("B", 65.0)
    c: float = key("C", 50.0)
    d: float = key("D", 35.0)


@dataclass(frozen=True)
class DirectionWeights:
    """Weights of each signal in the direction-strength average."""

    trend_1d: float = key("1dTrend", 22.0)
    trend_4h: float = key("4hTrend", 20.0)
    setup_1h: float = key("1hSetup", 15.0)
    entry_15m: float = key("15mEntry", 15.0)
    volume: float = 12.0
    btc_align: float = 8.0
    macd_mom: float = 8.0
    flow: float = 4.0
    liq: float = 4.0
    candlestick: float = 4.0
    key_level_proximity: float = 0.0
    rejection: float = 0.0


# ── Signals ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SignalConfig:
    action_threshold: float
    direction_lead_threshold: float
    sit_on_hands_threshold: float
    macd_dead_zone: float = 0.00005
    maintain_threshold_gap: float = 0.0
    direction_weights: DirectionWeights = field(default_factory=DirectionWeights)
    grade_thresholds: GradeThresholds = field(default_factory=GradeThresholds)


@dataclass(frozen=True)
class SpikeConfig:
    volume_ratio_threshold: float = 2.0
    oversold_rsi: float = key("oversoldRSI", 25.0)
    overbought_rsi: float = key("overboughtRSI", 75.0)


# ── Sizing / DCA ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PositionSizingConfig:
    leverage: float
    full_entry_margin_percent: float
    cautious_entry_margin_percent: float
    min_entry_confidence: float
    full_entry_confidence: float
    max_dca_count: int = key("maxDCACount")
    dca_margin_percent: float = key("dcaMarginPercent")
    max_total_margin_percent: float = key("maxTotalMarginPercent")
    min_free_margin_percent: float = key("minFreeMarginPercent")


def _default_hours_by_level() -> Mapping[int, float]:
    return MappingProxyType({1: 2.0, 2: 4.0, 3: 8.0})


@dataclass(frozen=True)
class ExhaustionThresholds:
    rsi_oversold: float = 30.0
    rsi_overbought: float = 70.0
    volume_decline_5m: float = key("volumeDecline5m", 0.8)
    volume_fading_5m: float = key("volumeFading5m", 0.6)
    volume_decline_15m: float = key("volumeDecline15m", 0.9)
    macd_near_zero: float = 0.0001
    macd_signal_proximity: float = 0.00005
    bb_middle_low: float = key("bbMiddleLow", 0.3)
    bb_middle_high: float = key("bbMiddleHigh", 0.7)
    price_stabilizing_lookback: int = 6
    price_stabilizing_min_matches: int = 3
    min_hours_between_by_level: Mapping[int, float] = field(default_factory=_default_hours_by_level)


@dataclass(frozen=True)
class DCAConfig:
    min_drawdown_for_dca: float = key("minDrawdownForDCA")
    min_time_between_dcas_ms: float = key(
        "minTimeBetweenDCAsMs", 4 * 3600 * 1000.0, alias="minTimeBetweenDCAs"
    )
    min_exhaustion_confidence: float = 60.0
    dca_size_scale_factor: float = key("dcaSizeScaleFactor", 1.0)
    allow_dca_after_midpoint: bool = key("allowDCAAfterMidpoint", True)
    exhaustion_thresholds: ExhaustionThresholds = field(default_factory=ExhaustionThresholds)


# ── Exit / anti-greed / timebox ──────────────────────────────────────────


@dataclass(frozen=True)
class ExitConfig:
    exit_pressure_threshold: float
    min_condition_flips: int = 2
    allow_partial_exits: bool = True
    min_profit_for_exit: float = 5.0


@dataclass(frozen=True)
class AntiGreedConfig:
    enabled: bool
    drawdown_threshold_percent: float
    min_pnl_to_activate: float = key("minPnLToActivate", 10.0)
    min_hwm_to_track: float = key("minHWMToTrack", 20.0)


@dataclass(frozen=True)
class TimeboxStep:
    hours: float
    pressure: float
    label: str = ""


def _default_steps() -> tuple[TimeboxStep, ...]:
    return (
        TimeboxStep(0, 0, "fresh"),
        TimeboxStep(12, 20, "monitor"),
        TimeboxStep(24, 45, "escalating"),
        TimeboxStep(36, 70, "urgent"),
        TimeboxStep(48, 100, "overdue"),
    )


@dataclass(frozen=True)
class TimeboxConfig:
    max_hours: float
    escalation_start_hours: float = 12.0
    pressure_curve: str = "step"  # "linear", "exponential" or "step"
    steps: tuple[TimeboxStep, ...] = field(default_factory=_default_steps)


@dataclass(frozen=True)
class RiskConfig:
    use_stop_loss: bool = False
    use_fixed_tp: bool = key("useFixedTP", False)
    accept_liquidation: bool = True


# ── Optional sections ────────────────────────────────────────────────────


@dataclass(frozen=True)
class RegimeConfig:
    strong_trend_adx: float = key("strongTrendADX", 35.0)
    trending_adx: float = key("trendingADX", 20.0)
    low_vol_bb_width: float = key("lowVolBBWidth", 0.8)
    high_vol_bb_width: float = key("highVolBBWidth", 2.5)
    ranging_action_threshold: float = 75.0
    strong_trend_action_threshold: float = 60.0
    trending_action_threshold: float = 68.0
    strong_trend_max_hours: float = 72.0
    trending_max_hours: float = 48.0
    ranging_max_hours: float = 36.0
    strong_trend_timebox_weight: float = 0.05
    trending_timebox_weight: float = 0.10
    ranging_timebox_weight: float = 0.20


@dataclass(frozen=True)
class LiquidationScoring:
    magnet_aligned: float = 8.0
    magnet_opposing: float = -8.0
    wall_support: float = 5.0
    wall_block: float = -5.0
    asymmetry_aligned: float = 6.0
    asymmetry_opposing: float = -6.0
    funding_confirm: float = 5.0
    proximity_bonus: float = 3.0


@dataclass(frozen=True)
class LiquidationConfig:
    magnet_proximity_pct: float = 3.0
    magnet_min_strength: float = 0.5
    wall_proximity_pct: float = 1.5
    wall_min_density: float = 0.5
    wall_min_strength: float = 0.4
    density_norm_factor: float = 10.0
    strong_asymmetry_threshold: float = 1.5
    direction_weight: float = 4.0
    scoring: LiquidationScoring = field(default_factory=LiquidationScoring)


@dataclass(frozen=True)
class KeyLevelConfig:
    near_proximity_pct: float = 0.5
    strong_proximity_pct: float = 0.2
    min_touches: int = 2
    min_strength: str = "moderate"
    rr_min_ratio: float = key("rrMinRatio", 1.5)
    rr_warning_ratio: float = key("rrWarningRatio", 1.0)


@dataclass(frozen=True)
class RejectionConfig:
    enabled: bool = True
    proximity_pct: float = 0.5
    min_volume_ratio: float = 1.2
    min_candle_strength: float = 0.4
    min_macd_hist_magnitude: float = 0.00005
    require_macd_alignment: bool = False
    min_level_strength: str = "moderate"
    min_level_touches: int = 2
    reversal_confluence_bonus: float = 5.0


@dataclass(frozen=True)
class FibonacciConfig:
    enabled: bool = True
    ratios: tuple[float, ...] = (0.236, 0.382, 0.5, 0.618, 0.786)
    extensions: tuple[float, ...] = (1.272, 1.618)
    timeframes: tuple[int, ...] = (60, 240)  # interval minutes
    min_swing_range_atr_multiple: float = key("minSwingRangeATRMultiple", 2.0)


@dataclass(frozen=True)
class SessionConfig:
    enabled: bool = False
    asia_discount: float = 5.0
    transition_discount: float = 3.0
    weekend_discount: float = 5.0
    overlap_bonus: float = 3.0


@dataclass(frozen=True)
class SpreadGuardConfig:
    enabled: bool = False
    warn_multiplier: float = 1.5
    block_multiplier: float = 3.0
    block_penalty: float = 20.0
    warn_penalty: float = 5.0


@dataclass(frozen=True)
class DerivativesConfig:
    oi_rising_threshold_pct: float = key("oiRisingThresholdPct", 2.0)
    oi_falling_threshold_pct: float = key("oiFallingThresholdPct", 2.0)
    funding_extreme_threshold: float = 0.0005


# ── Strategy ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StrategyConfig:
    """A complete, validated trading strategy.

    Every threshold the engines read comes from here.
    """

    meta: StrategyMeta
    timeframe_weights: TimeframeWeights
    signals: SignalConfig
    position_sizing: PositionSizingConfig
    dca: DCAConfig = key("dca")
    exit: ExitConfig = key("exit")
    anti_greed: AntiGreedConfig = key("antiGreed")
    timebox: TimeboxConfig = key("timebox")
    risk: RiskConfig = key("risk")
    spike: SpikeConfig = field(default_factory=SpikeConfig)
    regime: RegimeConfig = field(default_factory=RegimeConfig)
    fibonacci: FibonacciConfig = field(default_factory=FibonacciConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    spread_guard: SpreadGuardConfig = field(default_factory=SpreadGuardConfig)
    liquidation: Optional[LiquidationConfig] = key("liquidation", None)
    key_levels: Optional[KeyLevelConfig] = key("keyLevels", None)
    rejection: Optional[RejectionConfig] = key("rejection", None)
    derivatives: Optional[DerivativesConfig] = key("derivatives", None)

    @property
    def name(self) -> str:
        return self.meta.name
