from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any
from urllib.parse import quote

import requests

from autotrader.config import BrokerConfig
from autotrader.data.candles import Candle, candles_from_payload, parse_timestamp, timeframe_to_api
from autotrader.errors import BrokerExecutionError, DataUnavailableError, RateLimitedError, TradingError
from autotrader.storage.models import AccountInfo, ExecutionResult, Position
from autotrader.strategy.contracts import AggregatedSignal, Direction

LOGGER = logging.getLogger(__name__)

SUCCESS_TRADE_CODES = {
    "TRADE_RETCODE_DONE",
    "TRADE_RETCODE_DONE_PARTIAL",
    "TRADE_RETCODE_PLACED",
    "TRADE_RETCODE_NO_CHANGES",
}


class RetryableBrokerError(TradingError):
    """Network error or HTTP 5xx that survived the retry budget."""


@dataclass(slots=True)
class BrokerClientMetrics:
    total_requests: int = 0
    total_retries: int = 0
    http_429_count: int = 0
    network_errors: int = 0
    invalid_json_count: int = 0


class TokenBucketLimiter:
    def __init__(self, rate_per_second: float, burst: int):
        self.rate_per_second = max(0.1, float(rate_per_second))
        self.capacity = max(1, int(burst))
        self.tokens = float(self.capacity)
        self.last_refill = time.monotonic()
        self.lock = threading.Lock()

    def acquire(self) -> None:
        while True:
            with self.lock:
                now = time.monotonic()
                elapsed = max(0.0, now - self.last_refill)
                self.tokens = min(float(self.capacity), self.tokens + elapsed * self.rate_per_second)
                self.last_refill = now
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                wait_seconds = (1.0 - self.tokens) / self.rate_per_second
            time.sleep(wait_seconds)


def _parse_retry_after(headers: Any) -> float | None:
    value = headers.get("Retry-After")
    if not value:
        return None
    try:
        parsed = float(str(value).strip())
    except ValueError:
        return None
    if parsed < 0:
        return None
    return parsed


def _direction_from_type(value: Any) -> Direction:
    text = str(value or "").upper()
    if "SELL" in text:
        return Direction.SELL
    return Direction.BUY


def position_from_payload(item: dict[str, Any]) -> Position:
    opened_raw = item.get("time")
    return Position(
        position_id=str(item["id"]),
        symbol=str(item["symbol"]).upper(),
        direction=_direction_from_type(item.get("type")),
        volume=float(item.get("volume") or 0.0),
        open_price=float(item["openPrice"]),
        current_price=float(item.get("currentPrice") or item["openPrice"]),
        stop_loss=float(item["stopLoss"]) if item.get("stopLoss") else None,
        take_profit=float(item["takeProfit"]) if item.get("takeProfit") else None,
        profit=float(item.get("profit") or 0.0),
        comment=item.get("comment"),
        opened_at=parse_timestamp(str(opened_raw)) if opened_raw else None,
    )


class RestBrokerClient:
    """REST adapter for a MetaTrader cloud bridge.

    Serves candles for any account and hands out per-account connections.
    All calls share one token bucket and retry 429/5xx with backoff.
    """

    def __init__(self, config: BrokerConfig, token: str):
        self.config = config
        self.token = token
        self.request_max_attempts = max(1, int(config.request_max_attempts))
        self.backoff_base_seconds = max(0.05, float(config.backoff_base_seconds))
        self.backoff_max_seconds = max(self.backoff_base_seconds, float(config.backoff_max_seconds))
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
                "auth-token": token,
            }
        )
        self._limiter = TokenBucketLimiter(rate_per_second=config.rate_limit_rps, burst=config.rate_limit_burst)
        self._metrics = BrokerClientMetrics()
        self._metrics_lock = threading.Lock()

    def _metric_add(self, field_name: str, value: int = 1) -> None:
        with self._metrics_lock:
            setattr(self._metrics, field_name, getattr(self._metrics, field_name) + value)

    def metrics_snapshot(self) -> dict[str, int]:
        with self._metrics_lock:
            return asdict(self._metrics)

    def _sleep_retry(self, *, endpoint: str, attempt: int, reason: str, retry_after: float | None = None) -> None:
        if retry_after is not None:
            sleep_seconds = min(self.backoff_max_seconds, max(0.0, retry_after))
        else:
            exponential = min(
                self.backoff_max_seconds,
                self.backoff_base_seconds * (2 ** max(0, attempt - 1)),
            )
            jitter = random.uniform(0.0, max(0.01, exponential * 0.2))
            sleep_seconds = min(self.backoff_max_seconds, exponential + jitter)
        self._metric_add("total_retries")
        LOGGER.warning(
            "Retrying broker call endpoint=%s attempt=%d/%d sleep=%.2fs reason=%s",
            endpoint,
            attempt,
            self.request_max_attempts,
            sleep_seconds,
            reason,
        )
        time.sleep(sleep_seconds)

    def _send_http(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json_payload: dict[str, Any] | None = None,
    ) -> requests.Response:
        self._limiter.acquire()
        self._metric_add("total_requests")
        return self.session.request(
            method=method,
            url=url,
            params=params,
            json=json_payload,
            timeout=self.config.request_timeout_seconds,
        )

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        not_found_error: type[TradingError] = BrokerExecutionError,
    ) -> Any:
        retry_after: float | None = None
        for attempt in range(1, self.request_max_attempts + 1):
            try:
                response = self._send_http(method=method, url=url, params=params, json_payload=json)
            except requests.RequestException as exc:
                self._metric_add("network_errors")
                if attempt >= self.request_max_attempts:
                    raise RetryableBrokerError(f"Network error {method} {url}: {exc}") from exc
                self._sleep_retry(endpoint=url, attempt=attempt, reason=f"network:{type(exc).__name__}")
                continue

            if response.status_code == 429:
                self._metric_add("http_429_count")
                retry_after = _parse_retry_after(response.headers)
                if attempt >= self.request_max_attempts:
                    raise RateLimitedError(
                        f"Rate limited {method} {url}: HTTP 429 {response.text}",
                        retry_after=retry_after,
                    )
                self._sleep_retry(endpoint=url, attempt=attempt, reason="http_429", retry_after=retry_after)
                continue

            if response.status_code in (500, 502, 503, 504):
                if attempt >= self.request_max_attempts:
                    raise RetryableBrokerError(
                        f"Retryable broker error: HTTP {response.status_code} {response.text}"
                    )
                self._sleep_retry(endpoint=url, attempt=attempt, reason=f"http_{response.status_code}")
                continue

            if response.status_code == 404:
                raise not_found_error(f"Not found {method} {url}: {response.text}")

            if response.status_code >= 400:
                raise BrokerExecutionError(
                    f"Broker error {method} {url}: HTTP {response.status_code} {response.text}"
                )

            if not response.text:
                return {}
            try:
                return response.json()
            except ValueError as exc:
                self._metric_add("invalid_json_count")
                error = DataUnavailableError if method == "GET" else BrokerExecutionError
                raise error(f"Invalid JSON from {method} {url}: {exc}") from exc

        raise RetryableBrokerError(f"Could not complete request {method} {url}")

    def _account_url(self, account_id: str, suffix: str) -> str:
        return f"{self.config.client_api_url}/users/current/accounts/{quote(account_id, safe='')}{suffix}"

    def get_candles(self, account_handle: str, symbol: str, timeframe: str, count: int) -> list[Candle]:
        url = (
            f"{self.config.market_data_url}/users/current/accounts/{quote(account_handle, safe='')}"
            f"/historical-market-data/symbols/{quote(symbol, safe='')}"
            f"/timeframes/{timeframe_to_api(timeframe)}/candles"
        )
        payload = self._request("GET", url, params={"limit": int(count)}, not_found_error=DataUnavailableError)
        if not isinstance(payload, list) or not payload:
            raise DataUnavailableError(f"No candles for {symbol} {timeframe}")
        candles = candles_from_payload(payload)
        if not candles:
            raise DataUnavailableError(f"Unparseable candles for {symbol} {timeframe}")
        return candles

    def connect(self, broker_handle: str) -> "AccountConnection":
        return AccountConnection(self, broker_handle)


class AccountConnection:
    def __init__(self, client: RestBrokerClient, account_id: str):
        self.client = client
        self.account_id = account_id

    def get_account_info(self) -> AccountInfo:
        payload = self.client._request(
            "GET",
            self.client._account_url(self.account_id, "/account-information"),
            not_found_error=DataUnavailableError,
        )
        if not isinstance(payload, dict) or "balance" not in payload:
            raise DataUnavailableError(f"No account information for {self.account_id}")
        return AccountInfo(
            balance=float(payload["balance"]),
            equity=float(payload.get("equity", payload["balance"])),
            margin=float(payload.get("margin") or 0.0),
            free_margin=float(payload["freeMargin"]) if payload.get("freeMargin") is not None else None,
            currency=str(payload.get("currency") or "USD"),
        )

    def get_open_positions(self) -> list[Position]:
        payload = self.client._request(
            "GET",
            self.client._account_url(self.account_id, "/positions"),
            not_found_error=DataUnavailableError,
        )
        if not isinstance(payload, list):
            return []
        positions: list[Position] = []
        for item in payload:
            try:
                positions.append(position_from_payload(item))
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Skipping malformed position account=%s: %s", self.account_id, exc)
        return positions

    def _trade(self, body: dict[str, Any]) -> dict[str, Any]:
        payload = self.client._request("POST", self.client._account_url(self.account_id, "/trade"), json=body)
        if not isinstance(payload, dict):
            raise BrokerExecutionError(f"Unexpected trade response: {payload!r}")
        code = str(payload.get("stringCode") or "")
        if code and code not in SUCCESS_TRADE_CODES:
            raise BrokerExecutionError(f"Trade rejected code={code} message={payload.get('message')}")
        return payload

    def execute_trade(self, signal: AggregatedSignal, volume: float, comment: str | None = None) -> ExecutionResult:
        action = "ORDER_TYPE_BUY" if signal.direction is Direction.BUY else "ORDER_TYPE_SELL"
        body: dict[str, Any] = {
            "actionType": action,
            "symbol": signal.symbol,
            "volume": volume,
            "stopLoss": signal.stop_loss,
            "takeProfit": signal.take_profit,
        }
        if comment:
            body["comment"] = comment[:26]
        payload = self._trade(body)
        position_id = payload.get("positionId") or payload.get("orderId")
        if not position_id:
            raise BrokerExecutionError(f"Trade response without position id: {payload!r}")
        return ExecutionResult(position_id=str(position_id), raw=payload)

    def modify_position(self, position_id: str, stop_loss: float | None, take_profit: float | None) -> None:
        body: dict[str, Any] = {"actionType": "POSITION_MODIFY", "positionId": position_id}
        if stop_loss is not None:
            body["stopLoss"] = stop_loss
        if take_profit is not None:
            body["takeProfit"] = take_profit
        self._trade(body)

    def close_position(self, position_id: str) -> None:
        self._trade({"actionType": "POSITION_CLOSE_ID", "positionId": position_id})
