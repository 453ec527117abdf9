from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from functools import partial
from typing import Iterable

from autotrader.config import AggregatorConfig, BotConfig, StrategiesConfig, StrategyWeightsConfig
from autotrader.data.candles import Candle
from autotrader.strategy.contracts import (
    AggregatedSignal,
    Direction,
    StrategyFunction,
    StrategyName,
    TradeProposal,
)
from autotrader.strategy.indicators import atr
from autotrader.strategy.patterns import candle_pattern_boost, structure_boost
from autotrader.strategy.permissive import analyze_market
from autotrader.strategy.registry import DEFAULT_STRATEGIES
from autotrader.strategy.structure import clamp_confidence, instrument_class, normalize_symbol, pip_size, to_pips

LOGGER = logging.getLogger(__name__)

DIRECTION_ORDER = (Direction.BUY, Direction.SELL)


@dataclass(frozen=True, slots=True)
class ScoredProposal:
    proposal: TradeProposal
    confidence: float
    weighted_confidence: float
    boosts: tuple[str, ...] = ()


class SignalAggregator:
    """Turns independent strategy proposals into at most one trade decision per symbol."""

    def __init__(
        self,
        *,
        weights: StrategyWeightsConfig | None = None,
        config: AggregatorConfig | None = None,
        strategy_settings: StrategiesConfig | None = None,
        strategies: Iterable[tuple[StrategyName, StrategyFunction]] | None = None,
    ):
        self.weights = weights or StrategyWeightsConfig()
        self.config = config or AggregatorConfig()
        self.strategy_settings = strategy_settings or StrategiesConfig()
        if strategies is None:
            strategies = [
                (name, partial(function, settings=self.strategy_settings))
                for name, function in DEFAULT_STRATEGIES
            ]
        self.strategies: list[tuple[StrategyName, StrategyFunction]] = list(strategies)

    def collect(self, candles: list[Candle], symbol: str, bot: BotConfig) -> list[ScoredProposal]:
        klass = instrument_class(symbol)
        scored: list[ScoredProposal] = []
        for name, strategy in self.strategies:
            try:
                proposal = strategy(candles, symbol, bot)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Strategy failed symbol=%s strategy=%s: %s", symbol, name.value, exc)
                continue
            if proposal is None:
                continue
            pattern_points, pattern = candle_pattern_boost(candles, proposal.direction, self.config)
            structure_points = structure_boost(candles, proposal.direction, self.config)
            boosts: list[str] = []
            if pattern is not None:
                boosts.append(pattern)
            if structure_points > 0:
                boosts.append("structure")
            confidence = clamp_confidence(
                proposal.confidence + pattern_points + structure_points,
                self.config.max_confidence,
            )
            weight = self.weights.weight_for(klass, proposal.strategy_name)
            scored.append(
                ScoredProposal(
                    proposal=proposal,
                    confidence=confidence,
                    weighted_confidence=confidence * weight,
                    boosts=tuple(boosts),
                )
            )
        return scored

    def aggregate(self, candles: list[Candle], symbol: str, bot: BotConfig) -> AggregatedSignal | None:
        scored = self.collect(candles, symbol, bot)
        if not scored:
            LOGGER.debug("No strategy proposals symbol=%s", symbol)
            return None
        required, named = bot.required_alignments(self.config.default_min_agreeing)

        for direction in DIRECTION_ORDER:
            agreeing = sorted(
                (item for item in scored if item.proposal.direction is direction),
                key=lambda item: item.weighted_confidence,
                reverse=True,
            )
            if not agreeing:
                continue
            if named is None:
                aligned = len(agreeing)
            else:
                aligned = len({item.proposal.strategy_name for item in agreeing} & set(named))
            if aligned < required:
                LOGGER.debug(
                    "Alignment failed symbol=%s direction=%s aligned=%s required=%s",
                    symbol,
                    direction.value,
                    aligned,
                    required,
                )
                continue
            signal = self._build_signal(candles, symbol, agreeing, required)
            if signal is not None:
                return signal
        return None

    def _build_signal(
        self,
        candles: list[Candle],
        symbol: str,
        agreeing: list[ScoredProposal],
        required: int,
    ) -> AggregatedSignal | None:
        winner = agreeing[0]
        proposal = winner.proposal
        confluence = len(agreeing)
        extra = max(0, confluence - required)
        confidence = clamp_confidence(
            winner.confidence + extra * self.config.extra_strategy_boost,
            self.config.max_confidence,
        )

        stop_loss = proposal.stop_loss
        take_profit = proposal.take_profit
        if stop_loss is None or take_profit is None:
            atr_value = atr(candles, self.config.atr_period)
            if atr_value <= 0:
                LOGGER.info("ATR unavailable for fallback levels symbol=%s", symbol)
                return None
            sign = proposal.direction.sign
            if stop_loss is None:
                stop_loss = proposal.entry_price - sign * self.config.fallback_sl_atr * atr_value
            if take_profit is None:
                take_profit = proposal.entry_price + sign * self.config.fallback_tp_atr * atr_value

        sl_distance = proposal.sl_distance
        if sl_distance is None or proposal.stop_loss is None:
            sl_distance = to_pips(symbol, proposal.entry_price - stop_loss)
        tp_distance = proposal.tp_distance
        if tp_distance is None or proposal.take_profit is None:
            tp_distance = to_pips(symbol, take_profit - proposal.entry_price)

        names = tuple(item.proposal.strategy_name for item in agreeing)
        rationale = proposal.rationale
        if winner.boosts:
            rationale = f"{rationale} [+{', '.join(winner.boosts)}]"
        return AggregatedSignal(
            symbol=symbol,
            direction=proposal.direction,
            entry_price=proposal.entry_price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            confidence=confidence,
            strategy_name=proposal.strategy_name,
            rationale=rationale,
            sl_distance=sl_distance,
            tp_distance=tp_distance,
            weighted_confidence=winner.weighted_confidence,
            confluence_count=confluence,
            agreeing_strategies=names,
            lot_multiplier=self.config.lot_multiplier_for(confluence),
        )

    def decide(self, candles: list[Candle], symbol: str, bot: BotConfig) -> AggregatedSignal | None:
        """Run the bot's signal policy and apply its fixed SL/TP overrides."""
        if bot.signal_policy == "permissive":
            signal = analyze_market(candles, symbol, self.config)
        else:
            signal = self.aggregate(candles, symbol, bot)
        if signal is None:
            return None
        return apply_sl_tp_overrides(signal, bot)


def _override_for(table: dict[str, float], symbol: str) -> float | None:
    for key in (symbol.strip().upper(), normalize_symbol(symbol), "DEFAULT"):
        if key in table:
            return table[key]
    return None


def apply_sl_tp_overrides(signal: AggregatedSignal, bot: BotConfig) -> AggregatedSignal:
    sl_pips = _override_for(bot.sl_pips, signal.symbol)
    tp_pips = _override_for(bot.tp_pips, signal.symbol)
    if sl_pips is None and tp_pips is None:
        return signal
    pip = pip_size(signal.symbol)
    sign = signal.direction.sign
    changes: dict[str, float] = {}
    if sl_pips is not None:
        changes["stop_loss"] = signal.entry_price - sign * sl_pips * pip
        changes["sl_distance"] = sl_pips
    if tp_pips is not None:
        changes["take_profit"] = signal.entry_price + sign * tp_pips * pip
        changes["tp_distance"] = tp_pips
    return replace(signal, **changes)
