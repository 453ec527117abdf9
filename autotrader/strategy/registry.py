from __future__ import annotations

from autotrader.strategy.break_retest import analyze_break_and_retest
from autotrader.strategy.contracts import StrategyFunction, StrategyName
from autotrader.strategy.ema200_pullback import analyze_ema200_pullback
from autotrader.strategy.fib_continuation import analyze_fib_continuation
from autotrader.strategy.liquidity_sweep import analyze_liquidity_sweep
from autotrader.strategy.london_breakout import analyze_london_breakout
from autotrader.strategy.order_block import analyze_order_block
from autotrader.strategy.rsi_divergence import analyze_rsi_divergence
from autotrader.strategy.vwap_reversion import analyze_vwap_mean_reversion

DEFAULT_STRATEGIES: tuple[tuple[StrategyName, StrategyFunction], ...] = (
    (StrategyName.EMA200_PULLBACK, analyze_ema200_pullback),
    (StrategyName.BREAK_AND_RETEST, analyze_break_and_retest),
    (StrategyName.LIQUIDITY_SWEEP, analyze_liquidity_sweep),
    (StrategyName.LONDON_BREAKOUT, analyze_london_breakout),
    (StrategyName.ORDER_BLOCK, analyze_order_block),
    (StrategyName.VWAP_MEAN_REVERSION, analyze_vwap_mean_reversion),
    (StrategyName.FIB_CONTINUATION, analyze_fib_continuation),
    (StrategyName.RSI_DIVERGENCE, analyze_rsi_divergence),
)
