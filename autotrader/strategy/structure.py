from __future__ import annotations

from autotrader.strategy.contracts import Direction, StrategyName, TradeProposal

MAX_STRATEGY_CONFIDENCE = 95.0

_CRYPTO_PREFIXES = ("BTC", "ETH", "LTC", "XRP", "SOL")
_INDEX_SYMBOLS = ("US30", "US100", "US500", "NAS100", "SPX500", "GER40", "DE40", "UK100", "JP225")


def normalize_symbol(symbol: str) -> str:
    """Strip broker suffixes such as ``EURUSD.m`` or ``XAUUSD-pro``."""
    cleaned = str(symbol).strip().upper()
    for separator in (".", "-", "_"):
        if separator in cleaned:
            cleaned = cleaned.split(separator, 1)[0]
    return cleaned


def instrument_class(symbol: str) -> str:
    normalized = normalize_symbol(symbol)
    if normalized.startswith("XAU") or normalized.startswith("GOLD"):
        return "gold"
    if normalized.startswith("XAG") or normalized.startswith("SILVER"):
        return "silver"
    return "other"


def pip_size(symbol: str) -> float:
    normalized = normalize_symbol(symbol)
    klass = instrument_class(normalized)
    if klass == "gold":
        return 0.1
    if klass == "silver":
        return 0.01
    if normalized.startswith(_CRYPTO_PREFIXES) or normalized.startswith(_INDEX_SYMBOLS):
        return 1.0
    if "JPY" in normalized:
        return 0.01
    return 0.0001


def to_pips(symbol: str, distance: float) -> float:
    return round(abs(distance) / pip_size(symbol), 1)


def clamp_confidence(value: float, upper: float = MAX_STRATEGY_CONFIDENCE) -> float:
    return max(0.0, min(float(value), upper))


def stop_on_loss_side(direction: Direction, entry: float, stop_loss: float) -> bool:
    if direction is Direction.BUY:
        return stop_loss < entry
    return stop_loss > entry


def target_on_profit_side(direction: Direction, entry: float, take_profit: float) -> bool:
    if direction is Direction.BUY:
        return take_profit > entry
    return take_profit < entry


def finalize_proposal(
    *,
    symbol: str,
    direction: Direction,
    entry: float,
    stop_loss: float,
    take_profit: float | None,
    confidence: float,
    strategy: StrategyName,
    rationale: str,
    min_reward_risk: float,
) -> TradeProposal | None:
    """Build a proposal from structure levels, extending TP to the reward:risk floor.

    Returns None when the stop is not on the loss side of entry.
    """
    if not stop_on_loss_side(direction, entry, stop_loss):
        return None
    risk = abs(entry - stop_loss)
    if risk <= 0:
        return None
    floor_target = entry + direction.sign * risk * min_reward_risk
    if take_profit is None or not target_on_profit_side(direction, entry, take_profit):
        take_profit = floor_target
    elif abs(take_profit - entry) < risk * min_reward_risk:
        take_profit = floor_target
    return TradeProposal(
        symbol=symbol,
        direction=direction,
        entry_price=entry,
        stop_loss=stop_loss,
        take_profit=take_profit,
        confidence=clamp_confidence(confidence),
        strategy_name=strategy,
        rationale=rationale,
        sl_distance=to_pips(symbol, entry - stop_loss),
        tp_distance=to_pips(symbol, take_profit - entry),
    )
