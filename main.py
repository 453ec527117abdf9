from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from autotrader.config import AppConfig, load_config, parse_bot_config
from autotrader.data.broker_client import RestBrokerClient
from autotrader.errors import ConfigurationInvalidError
from autotrader.monitoring.notifications import (
    CompositeNotificationSink,
    LoggingNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
)
from autotrader.runtime.scheduler import TradingScheduler
from autotrader.storage.db import get_connection, init_db
from autotrader.storage.repository import SqliteRepository

LOGGER = logging.getLogger("autotrader")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Multi-account MetaTrader signal and execution engine")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--robots", default=None, help="YAML file with robot/account pairs to register before start")
    parser.add_argument("--once", action="store_true", help="Run a single trading cycle and exit.")
    parser.add_argument("--log-level", default=None)
    return parser.parse_args()


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def apply_env_overrides(config: AppConfig) -> AppConfig:
    broker = config.broker
    broker.token = os.getenv("AUTOTRADER_BROKER_TOKEN", broker.token or "") or None
    broker.client_api_url = os.getenv("AUTOTRADER_CLIENT_API_URL", broker.client_api_url)
    broker.market_data_url = os.getenv("AUTOTRADER_MARKET_DATA_URL", broker.market_data_url)
    broker.rate_limit_rps = float(os.getenv("AUTOTRADER_RATE_LIMIT_RPS", str(broker.rate_limit_rps)))
    broker.rate_limit_burst = int(os.getenv("AUTOTRADER_RATE_LIMIT_BURST", str(broker.rate_limit_burst)))

    notifications = config.notifications
    notifications.webhook_url = os.getenv("AUTOTRADER_WEBHOOK_URL", notifications.webhook_url or "") or None
    notifications.telegram_bot_token = (
        os.getenv("AUTOTRADER_TELEGRAM_BOT_TOKEN", notifications.telegram_bot_token or "") or None
    )
    notifications.telegram_chat_id = (
        os.getenv("AUTOTRADER_TELEGRAM_CHAT_ID", notifications.telegram_chat_id or "") or None
    )

    config.storage.db_path = os.getenv("SQLITE_PATH", config.storage.db_path)
    return config


def resolve_db_path(root: Path, raw_path: str) -> str:
    path = Path(raw_path.strip())
    if not path.is_absolute():
        path = root / path
    return str(path)


def build_notifications(config: AppConfig) -> NotificationSink:
    sinks: list[NotificationSink] = [LoggingNotificationSink()]
    if config.notifications.webhook_url or config.notifications.telegram_bot_token:
        sinks.append(WebhookNotificationSink(config.notifications))
    return CompositeNotificationSink(sinks)


def register_robots(repository: SqliteRepository, path: Path) -> int:
    with path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    count = 0
    for item in raw.get("robots", []):
        try:
            bot_config = parse_bot_config(item.get("bot_config"))
        except ConfigurationInvalidError as exc:
            LOGGER.error("Skipping robot %s: %s", item.get("robot_id"), exc)
            continue
        repository.upsert_robot_account(
            robot_id=str(item["robot_id"]),
            account_id=str(item["account_id"]),
            broker_handle=str(item.get("broker_handle") or item["account_id"]),
            bot_config=bot_config,
            owner_id=item.get("owner_id"),
            robot_name=item.get("robot_name"),
            enabled=bool(item.get("enabled", True)),
        )
        count += 1
    return count


def run() -> None:
    args = parse_args()
    load_dotenv()

    root = Path(__file__).resolve().parent
    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = root / config_path
    config = apply_env_overrides(load_config(config_path))
    setup_logging(args.log_level or os.getenv("LOG_LEVEL", config.log_level))

    if not config.broker.token:
        raise RuntimeError("Broker token missing: set AUTOTRADER_BROKER_TOKEN in .env or broker.token in config")

    db_path = resolve_db_path(root, config.storage.db_path)
    conn = get_connection(db_path)
    init_db(conn)
    repository = SqliteRepository(conn)
    LOGGER.info("SQLite state path: %s", db_path)

    if args.robots:
        registered = register_robots(repository, Path(args.robots))
        LOGGER.info("Registered %d robot/account pairs", registered)

    client = RestBrokerClient(config.broker, config.broker.token)
    scheduler = TradingScheduler.build(
        config=config,
        repository=repository,
        client=client,
        market_data_provider=client,
        notifications=build_notifications(config),
    )

    if args.once:
        report = scheduler.run_trading_cycle()
        LOGGER.info("Single cycle done executed=%d outcomes=%s", report.executed, dict(report.outcomes))
        return

    stop_event = threading.Event()

    def _stop(signum: int, _frame: object) -> None:
        LOGGER.info("Received signal %s, shutting down.", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _stop)

    scheduler.start()
    while not stop_event.wait(1.0):
        pass
    scheduler.stop()
    LOGGER.info("API metrics: %s", client.metrics_snapshot())
    LOGGER.info("Bot stopped.")


if __name__ == "__main__":
    run()
