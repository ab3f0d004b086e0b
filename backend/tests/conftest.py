"""
Pytest fixtures for stars relay tests. Uses an in-memory SQLite ledger and a
fake clock so polling and timeouts run without real delays.
"""

import asyncio
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

import pytest
import pytest_asyncio
from tortoise import Tortoise, connections

from stars_relay.core.clock import Clock
from stars_relay.wallet.base import WalletAccount, WalletPayment


class FakeClock(Clock):
    """Clock whose sleep() advances time instantly and records the delay."""

    def __init__(self, start: Optional[float] = None):
        # Whole seconds keep sums of fractional sleeps exact
        self._ts = float(int(start if start is not None else time.time()))
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._ts, tz=timezone.utc)

    def timestamp(self) -> float:
        return self._ts

    def advance(self, seconds: float) -> None:
        self._ts += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def account():
    return WalletAccount(
        address="UQRelayWallet",
        chain="-239",
        public_key="ab" * 32,
        wallet_state_init="te6ccgEBAQEA",
    )


@pytest.fixture
def make_payment():
    def _make(reference="tx-1", amount="10", comment="alice", timestamp=1_700_000_000):
        return WalletPayment(
            reference=reference,
            amount=Decimal(amount),
            from_address="UQSender",
            comment=comment,
            timestamp=timestamp,
        )

    return _make


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory ledger database per test."""
    await Tortoise.init(
        db_url="sqlite://:memory:",
        modules={"models": ["stars_relay.models.ledger"]},
        use_tz=True,
        timezone="UTC",
    )
    await Tortoise.generate_schemas()
    yield
    await connections.close_all()
