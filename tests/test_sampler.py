"""Tests for one sampling tick: snapshot, normalize, write, quota, run record."""

import asyncio

import pytest

from conftest import T0, FakeCollector, sample_count
from meterbox.core.quota import PERIOD_TOTAL
from meterbox.core.retention import RetentionManager
from meterbox.core.sampler import SourceSampler
from meterbox.errors import CollectorUnavailable


@pytest.fixture()
def collector():
	return FakeCollector("wireguard")


@pytest.fixture()
def sampler(collector, store, quota, settings, clock):
	return SourceSampler(collector, store, quota, settings.current, clock=clock)


def _tick(sampler):
	return asyncio.run(sampler.run_once())


class TestTicks:

	def test_baseline_then_delta(self, sampler, collector, store, clock):
		collector.set("peer1", 1000, 2000)
		first = _tick(sampler)
		assert first.ok and first.inserted_count == 1

		clock.advance(60)
		collector.set("peer1", 1500, 2600)
		second = _tick(sampler)
		assert second.ok and second.reset_count == 0

		rows = store.query_range("wireguard", T0, T0 + 3600)
		assert [(s.uplink_delta, s.downlink_delta) for s in rows] == [(0, 0), (500, 600)]
		assert rows[1].ts == T0 + 60
		assert (rows[1].uplink_raw, rows[1].downlink_raw) == (1500, 2600)

	def test_counter_reset_is_flagged(self, sampler, collector, store, clock):
		collector.set("peer1", 1000, 2000)
		_tick(sampler)
		clock.advance(60)
		collector.set("peer1", 1500, 2600)
		_tick(sampler)
		clock.advance(60)
		collector.set("peer1", 50, 80)
		record = _tick(sampler)

		assert record.ok
		assert record.reset_count == 1
		last = store.query_range("wireguard", T0 + 120, T0 + 121)[0]
		assert (last.uplink_delta, last.downlink_delta) == (50, 80)
		assert last.reset
		assert store.list_runs("wireguard")[0].reset_count == 1

	def test_new_identity_starts_with_baseline(self, sampler, collector, store, clock):
		collector.set("peer1", 10, 10)
		_tick(sampler)
		clock.advance(60)
		collector.set("peer1", 20, 20)
		collector.set("peer2", 5000, 5000)
		_tick(sampler)
		rows = {s.identity: s for s in store.query_range("wireguard", T0 + 60, T0 + 61)}
		assert rows["peer2"].total == 0
		assert rows["peer1"].total == 20

	def test_stalled_clock_still_yields_increasing_ticks(self, sampler, collector, store):
		collector.set("peer1", 10, 10)
		_tick(sampler)
		collector.set("peer1", 20, 20)
		record = _tick(sampler)
		assert record.ok
		assert store.latest_ts("wireguard") == T0 + 1

	def test_empty_snapshot_records_a_successful_run(self, sampler, store):
		record = _tick(sampler)
		assert record.ok and record.inserted_count == 0
		assert len(store.list_runs("wireguard")) == 1

	def test_run_history_respects_limit(self, sampler, collector, store, settings, clock):
		settings.apply({"run_history_limit": 3})
		for _ in range(5):
			clock.advance(60)
			_tick(sampler)
		assert len(store.list_runs("wireguard", limit=100)) == 3


class TestFailures:

	def test_collector_failure_is_recorded_not_raised(self, sampler, collector, store):
		collector.error = CollectorUnavailable("wg: interface down")
		record = _tick(sampler)

		assert not record.ok
		assert "CollectorUnavailable" in record.error
		assert "interface down" in record.error
		assert record.inserted_count == 0
		assert store.list_runs("wireguard")[0].error == record.error

	def test_unexpected_collector_error_is_recorded(self, sampler, collector, store):
		collector.error = ConnectionResetError("peer reset")
		record = _tick(sampler)

		assert not record.ok
		assert "CollectorUnavailable" in record.error
		assert "peer reset" in record.error
		runs = store.list_runs("wireguard")
		assert len(runs) == 1 and runs[0].error == record.error

	def test_slow_collector_times_out(self, sampler, collector, settings):
		settings.apply({"collector_timeout_sec": 0.05})
		collector.delay = 1.0
		collector.set("peer1", 1, 1)
		record = _tick(sampler)
		assert "timed out" in record.error

	def test_next_tick_succeeds_after_failure(self, sampler, collector, store, clock):
		collector.error = CollectorUnavailable("down")
		_tick(sampler)
		collector.error = None
		collector.set("peer1", 1, 1)
		clock.advance(60)
		assert _tick(sampler).ok
		assert [r.ok for r in store.list_runs("wireguard")] == [True, False]

	def test_negative_counter_fails_the_tick(self, sampler, collector, store):
		from meterbox.collectors.base import RawCounters

		collector.counters["peer1"] = RawCounters(-5, 10)
		record = _tick(sampler)
		assert "CollectorUnavailable" in record.error
		assert sample_count(store) == 0

	def test_store_failure_rolls_back_samples_and_quota(self, sampler, collector, store, quota, monkeypatch):
		quota.set_limit("wireguard", "peer1", PERIOD_TOTAL, 10_000)
		collector.set("peer1", 100, 100)

		def broken(conn, samples, now):
			conn.execute("UPDATE quota_state SET consumed_bytes = 999")
			raise RuntimeError("disk full")

		monkeypatch.setattr(quota, "apply_batch", broken)
		record = _tick(sampler)

		assert "StoreWriteFailed" in record.error
		assert sample_count(store) == 0
		assert quota.get_state("wireguard", "peer1") is None


class TestQuotaIntegration:

	def test_quota_follows_written_deltas(self, sampler, collector, quota, clock):
		quota.set_limit("wireguard", "peer1", PERIOD_TOTAL, 1000)
		collector.set("peer1", 1000, 2000)
		_tick(sampler)
		clock.advance(60)
		collector.set("peer1", 1500, 2600)
		_tick(sampler)

		state = quota.get_state("wireguard", "peer1")
		assert state.consumed_bytes == 1100
		assert quota.is_exceeded("wireguard", "peer1")

	def test_bad_quota_config_keeps_traffic_data(self, sampler, collector, store, clock):
		with store.writer() as conn:
			conn.execute(
				"INSERT INTO quota_limits (source, identity, period_type, reset_day, limit_bytes, updated_at)"
				" VALUES ('wireguard', 'peer1', 'monthly', 99, 100, 0)"
			)
		collector.set("peer1", 10, 10)
		_tick(sampler)
		clock.advance(60)
		collector.set("peer1", 30, 30)
		record = _tick(sampler)

		assert record.ok
		assert sample_count(store) == 2

	def test_baseline_survives_compaction(self, sampler, collector, store, quota, settings, clock):
		quota.set_limit("wireguard", "peer1", PERIOD_TOTAL, 1_000_000)
		clock.now = T0 - 10 * 86400
		collector.set("peer1", 1000, 1000)
		_tick(sampler)

		clock.now = T0
		RetentionManager(store, settings.current, clock=clock).aggregate(7)
		assert sample_count(store) == 0

		collector.set("peer1", 5000, 5000)
		record = _tick(sampler)
		assert record.ok and record.reset_count == 0
		row = store.query_range("wireguard", T0, T0 + 1)[0]
		assert (row.uplink_delta, row.downlink_delta) == (4000, 4000)
		assert quota.get_state("wireguard", "peer1").consumed_bytes == 8000
