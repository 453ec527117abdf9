from __future__ import annotations

import math

from autotrader.storage.models import Position
from autotrader.strategy.contracts import Direction
from autotrader.strategy.structure import instrument_class, normalize_symbol, pip_size

_STEP_EPSILON = 1e-9


def floor_to_step(value: float, step: float) -> float:
    if step <= 0:
        raise ValueError("step must be > 0")
    return round(math.floor(value / step + _STEP_EPSILON) * step, 8)


def pip_value_per_lot(symbol: str, table: dict[str, float]) -> float:
    """Account-currency value of one pip for one standard lot."""
    klass = instrument_class(symbol)
    if klass in table:
        return table[klass]
    if "JPY" in normalize_symbol(symbol) and "jpy" in table:
        return table["jpy"]
    return table.get("other", 10.0)


def lots_for_risk(risk_amount: float, sl_pips: float, pip_value: float) -> float:
    if sl_pips <= 0 or pip_value <= 0 or risk_amount <= 0:
        return 0.0
    return risk_amount / (sl_pips * pip_value)


def profit_in_price(position: Position, price: float | None = None) -> float:
    current = position.current_price if price is None else price
    if position.direction is Direction.BUY:
        return current - position.open_price
    return position.open_price - current


def profit_in_pips(position: Position, price: float | None = None) -> float:
    return profit_in_price(position, price) / pip_size(position.symbol)
