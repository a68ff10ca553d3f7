"""Shared fixtures for the MeterBox tests.

Every test gets its own SQLite file under tmp_path, a controllable clock and
fake collectors whose counters the test sets directly.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from meterbox.collectors.base import RawCounters
from meterbox.core.quota import QuotaTracker
from meterbox.core.reports import ReportEngine
from meterbox.core.retention import RetentionManager
from meterbox.db.samples import Sample, SampleStore
from meterbox.utils.config import EngineSettings, SettingsHolder

# 2025-03-15 12:00:00 UTC
T0 = int(datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc).timestamp())


class FakeClock:
	"""Callable clock returning a settable epoch second."""

	def __init__(self, now: float = T0) -> None:
		self.now = now

	def __call__(self) -> float:
		return self.now

	def advance(self, seconds: float) -> None:
		self.now += seconds


class FakeCollector:
	"""Collector whose next snapshot is whatever the test put in ``counters``."""

	def __init__(self, source: str) -> None:
		self.source = source
		self.counters: dict[str, RawCounters] = {}
		self.error: Exception | None = None
		self.delay = 0.0
		self.calls = 0

	def set(self, identity: str, uplink: int, downlink: int) -> None:
		self.counters[identity] = RawCounters(uplink, downlink)

	async def snapshot(self) -> dict[str, RawCounters]:
		self.calls += 1
		if self.delay:
			await asyncio.sleep(self.delay)
		if self.error is not None:
			raise self.error
		return dict(self.counters)


def make_sample(
	identity: str,
	ts: int,
	up: int,
	down: int,
	*,
	source: str = "proxy",
	reset: bool = False,
) -> Sample:
	return Sample(
		source=source,
		identity=identity,
		ts=ts,
		uplink_delta=up,
		downlink_delta=down,
		uplink_raw=up,
		downlink_raw=down,
		reset=reset,
	)


def sample_count(store: SampleStore) -> int:
	with store.reader() as conn:
		return conn.execute("SELECT COUNT(*) FROM samples").fetchone()[0]


@pytest.fixture()
def clock():
	return FakeClock()


@pytest.fixture()
def store(tmp_path):
	s = SampleStore(tmp_path / "meterbox.db")
	yield s
	s.close()


@pytest.fixture()
def settings():
	return SettingsHolder(EngineSettings())


@pytest.fixture()
def quota(store, clock):
	return QuotaTracker(store, clock=clock)


@pytest.fixture()
def reports(store, settings, clock):
	return ReportEngine(store, settings.current, clock=clock)


@pytest.fixture()
def retention(store, settings, clock):
	return RetentionManager(store, settings.current, clock=clock)
