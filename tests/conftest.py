import pytest
from datetime import datetime

from pms.clock import ReplayClock
from pms.fixed_point import parse_amount
from pms.ledger.ledger import Ledger
from pms.monitor.broadcaster import UpdateBroadcaster
from pms.monitor.risk_monitor import MonitorConfig, RiskMonitor


@pytest.fixture
def replay_clock():
    return ReplayClock(datetime(2025, 1, 1, 9, 15))


@pytest.fixture
def ledger(replay_clock):
    return Ledger(clock=replay_clock)


@pytest.fixture
def owner():
    return bytes(range(32))


@pytest.fixture
def other_owner():
    return bytes([7] * 32)


@pytest.fixture
def funded_owner(ledger, owner):
    """Owner with an initialized account holding 10,000 of collateral."""
    ledger.initialize_user(owner)
    ledger.add_collateral(owner, parse_amount("10000"))
    return owner


@pytest.fixture
def broadcaster():
    return UpdateBroadcaster(queue_size=100)


@pytest.fixture
def monitor(broadcaster, replay_clock):
    config = MonitorConfig(alert_threshold_pct=50_000, subscriber_queue_size=100, partition_queue_size=100)
    return RiskMonitor(broadcaster=broadcaster, clock=replay_clock, config=config)
