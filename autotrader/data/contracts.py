from __future__ import annotations

from typing import Protocol

from autotrader.data.candles import Candle
from autotrader.storage.models import AccountInfo, ExecutionResult, Position
from autotrader.strategy.contracts import AggregatedSignal


class MarketDataProvider(Protocol):
    def get_candles(self, account_handle: str, symbol: str, timeframe: str, count: int) -> list[Candle]:
        """Oldest-first candles.

        Raises DataUnavailableError when there is no data and RateLimitedError
        when the upstream refuses the request.
        """
        ...


class BrokerConnection(Protocol):
    def get_account_info(self) -> AccountInfo:
        ...

    def get_open_positions(self) -> list[Position]:
        ...

    def execute_trade(self, signal: AggregatedSignal, volume: float, comment: str | None = None) -> ExecutionResult:
        ...

    def modify_position(self, position_id: str, stop_loss: float | None, take_profit: float | None) -> None:
        ...

    def close_position(self, position_id: str) -> None:
        ...


class ConnectionFactory(Protocol):
    def connect(self, broker_handle: str) -> BrokerConnection:
        ...
