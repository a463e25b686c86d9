"""Technical indicators — SMA, EMA, RSI. Pure functions, no I/O.

Every function takes a list of closes (oldest first) and returns a series of
the same length.  Entries before the indicator is defined are
``float('nan')``.
"""

from pinebot.errors import InsufficientHistory
from pinebot.strategy.models import MAType


def _require_history(closes: list[float], period: int, name: str) -> None:
    if period < 1:
        raise ValueError(f"{name} period must be positive, got {period}")
    if len(closes) < period + 1:
        raise InsufficientHistory(period + 1, len(closes), f"{name}({period})")


def calculate_sma(closes: list[float], period: int) -> list[float]:
    """Simple trailing mean over *period* closes.

    Requires at least ``period + 1`` closes.
    """
    _require_history(closes, period, "SMA")

    sma: list[float] = [float("nan")] * len(closes)
    window_sum = sum(closes[:period])
    sma[period - 1] = window_sum / period
    for i in range(period, len(closes)):
        window_sum += closes[i] - closes[i - period]
        sma[i] = window_sum / period
    return sma


def calculate_ema(closes: list[float], period: int) -> list[float]:
    """Calculate an Exponential Moving Average series.

    Uses the standard EMA formula:
        ``EMA_today = close × k + EMA_yesterday × (1 - k)``
    where ``k = 2 / (period + 1)``.

    The first EMA value is seeded with the SMA of the first *period*
    closes and sits at index ``period - 1``.

    Requires at least ``period + 1`` closes.
    """
    _require_history(closes, period, "EMA")

    k = 2.0 / (period + 1)
    ema: list[float] = [float("nan")] * len(closes)

    # Seed: SMA of first *period* closes
    ema[period - 1] = sum(closes[:period]) / period

    for i in range(period, len(closes)):
        ema[i] = closes[i] * k + ema[i - 1] * (1 - k)

    return ema


def moving_average(closes: list[float], period: int, ma_type: MAType) -> list[float]:
    """Dispatch to SMA or EMA."""
    if ma_type is MAType.SMA:
        return calculate_sma(closes, period)
    return calculate_ema(closes, period)


# ── RSI ──────────────────────────────────────────────────────────────────


def _rsi_from_avgs(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def calculate_rsi(closes: list[float], period: int = 14) -> list[float]:
    """Calculate Wilder's Relative Strength Index.

    Algorithm (Wilder-smoothed):
        1. delta = close[i] - close[i-1]
        2. Separate gains (positive) and losses (|negative|).
        3. Seed average gain/loss = SMA of first *period* deltas.
        4. Subsequent: avg = (prev_avg × (period-1) + current) / period
        5. RSI = 100 - 100 / (1 + avg_gain / avg_loss), 100 when
           avg_loss is 0.

    Requires at least ``period + 1`` closes.  The first defined value is at
    index *period*.
    """
    _require_history(closes, period, "RSI")

    deltas = [closes[i] - closes[i - 1] for i in range(1, len(closes))]
    gains = [max(d, 0.0) for d in deltas]
    losses = [abs(min(d, 0.0)) for d in deltas]

    rsi: list[float] = [float("nan")] * len(closes)

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    rsi[period] = _rsi_from_avgs(avg_gain, avg_loss)

    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        # deltas are offset by one against closes
        rsi[i + 1] = _rsi_from_avgs(avg_gain, avg_loss)

    return rsi
