#!/usr/bin/env python3
"""
Replay recorded price ticks through a freshly populated risk monitor.

Positions file (JSON list):
    [{"owner": "<64 hex>", "collateral": "10000", "symbol": "BTC-USD",
      "side": "LONG", "size": "0.1", "leverage": 10, "entry_price": "50000"}]

Ticks file (JSON lines):
    {"symbol": "BTC-USD", "price": "48000", "timestamp": "2025-01-01T09:15:00"}
"""
import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd

# Add project root to sys.path
ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from pms.clock import ReplayClock
from pms.errors import AccountAlreadyInitialized
from pms.fixed_point import parse_amount, parse_price, parse_size
from pms.ledger.identity import owner_from_hex
from pms.ledger.ledger import Ledger
from pms.ledger.submitter import LocalLedgerSubmitter
from pms.logging.logger import setup_logger
from pms.monitor.feeds import ReplayPriceFeed
from pms.monitor.liquidator import LiquidationExecutor
from pms.monitor.reconciliation import ReconciliationEngine
from pms.monitor.risk_monitor import RiskMonitor

logger = logging.getLogger("risk_replay")


def load_ticks(path: Path):
    with open(path) as f:
        return [json.loads(line) for line in f if line.strip()]


def populate(ledger: Ledger, positions):
    for record in positions:
        owner = owner_from_hex(record["owner"])
        try:
            ledger.initialize_user(owner)
        except AccountAlreadyInitialized:
            pass
        if record.get("collateral"):
            ledger.add_collateral(owner, parse_amount(record["collateral"]))
        ledger.open_position(
            owner,
            record["symbol"],
            record["side"],
            parse_size(record["size"]),
            int(record["leverage"]),
            parse_price(record["entry_price"]),
        )


async def settle(monitor: RiskMonitor):
    # Ledger events from liquidations reach the partitions via threadsafe handoff
    for _ in range(5):
        await asyncio.sleep(0)
    await monitor.run_until_idle()


async def replay(monitor: RiskMonitor, feed: ReplayPriceFeed, executor: Optional[LiquidationExecutor] = None):
    """
    Streams the feed through a running monitor. With an executor, alerts are
    acted on after every tick, at that tick's price and time.
    """
    await monitor.start()
    try:
        async for tick in feed.stream():
            await monitor.submit_price(tick)
            if executor is not None:
                await monitor.run_until_idle()
                executor.process_pending()
        await settle(monitor)
    finally:
        await monitor.stop()


def main():
    parser = argparse.ArgumentParser(description="Risk monitor tick replay")
    parser.add_argument("--positions", required=True, help="JSON file of positions to open")
    parser.add_argument("--ticks", required=True, help="JSON-lines file of price ticks")
    parser.add_argument("--liquidate", action="store_true", help="Execute liquidations on LIQUIDATION alerts")
    parser.add_argument("--start", type=str, default="2025-01-01T00:00:00")
    args = parser.parse_args()

    setup_logger("risk_replay")
    setup_logger("pms")

    clock = ReplayClock(datetime.fromisoformat(args.start))
    ledger = Ledger(clock=clock)
    with open(args.positions) as f:
        populate(ledger, json.load(f))

    monitor = RiskMonitor(clock=clock)
    monitor.attach(ledger)
    executor = None
    if args.liquidate:
        executor = LiquidationExecutor(LocalLedgerSubmitter(ledger), monitor.broadcaster)

    feed = ReplayPriceFeed.from_records(load_ticks(Path(args.ticks)), clock)
    asyncio.run(replay(monitor, feed, executor))

    if executor is not None:
        logger.info(f"Executed {len(executor.executed)} liquidations")

    with pd.option_context("display.max_columns", None, "display.width", 200):
        print(monitor.risk_frame().to_string(index=False))

    stats = monitor.get_statistics()
    logger.info(f"Monitor statistics: {stats}")
    logger.info(f"Ledger statistics: {ledger.get_statistics()}")

    drift = ReconciliationEngine(monitor).reconcile(ledger.all_open_positions())
    if drift:
        logger.warning(f"{len(drift)} reconciliation issues")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
