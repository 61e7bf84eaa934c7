import asyncio
from datetime import datetime, timedelta, timezone

import pytest_asyncio

from async_msg_scheduler.messaging import MessagingClient
from async_msg_scheduler.models import Job, Recipient
from async_msg_scheduler.persistence import Persistence
from async_msg_scheduler.recurrence import RepeatPolicy

UTC = timezone.utc
# A Monday.
NOW = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """Returns at once, records every delay and moves an optional clock forward."""

    def __init__(self, clock: FakeClock | None = None):
        self.calls: list[float] = []
        self.clock = clock

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        await asyncio.sleep(0)

    @property
    def total(self) -> float:
        return sum(self.calls)


class ParkedSleep:
    """Never returns; timers using it stay armed until cancelled."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.Event().wait()


class DummyClient(MessagingClient):
    def __init__(self, tenant_id: str = "t1", ready: bool = True):
        super().__init__(tenant_id)
        if ready:
            self._ready.set()
        self.sent: list[tuple[str, str]] = []
        self.failures: dict[str, int] = {}
        self.connects = 0
        self.logged_out = False
        self.destroyed = False

    async def connect(self) -> None:
        self.connects += 1

    async def send(self, address: str, text: str) -> bool:
        remaining = self.failures.get(address, 0)
        if remaining:
            self.failures[address] = remaining - 1
            raise RuntimeError("transport down")
        self.sent.append((address, text))
        return True

    async def logout(self) -> None:
        self.logged_out = True
        await self.set_ready(False)

    async def destroy(self) -> None:
        self.destroyed = True
        await self.set_ready(False)


def make_job(job_id: int = 1, **overrides) -> Job:
    data = {
        "id": job_id,
        "recipients": [Recipient(address="6281111", text="hello")],
        "anchor_time": NOW + timedelta(hours=1),
        "repeat": RepeatPolicy.ONCE,
    }
    data.update(overrides)
    return Job(**data)


async def settle(rounds: int = 50) -> None:
    """Let pending tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest_asyncio.fixture
async def persistence(tmp_path):
    p = Persistence(str(tmp_path / "scheduler.db"))
    await p.init_db()
    return p
