#!/usr/bin/env python3
#
# meterbox/core/sampler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""One sampling tick for one traffic source."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from typing import Callable

from ..collectors.base import CollectorAdapter, RawCounters
from ..db.samples import RunRecord, Sample, SampleStore
from ..errors import CollectorUnavailable, MeterBoxError
from ..utils.config import EngineSettings
from .normalizer import normalize
from .quota import QuotaTracker

_log = logging.getLogger(__name__)


class SourceSampler:
	"""Snapshot -> normalize -> write (with quota) -> run record.

	run_once() never raises for collector or store failures; they end up in
	the returned RunRecord's ``error`` and in the run history.
	"""

	def __init__(
		self,
		collector: CollectorAdapter,
		store: SampleStore,
		quota: QuotaTracker,
		settings: Callable[[], EngineSettings],
		*,
		clock: Callable[[], float] = time.time,
	) -> None:
		self.collector = collector
		self.source = collector.source
		self._store = store
		self._quota = quota
		self._settings = settings
		self._clock = clock

	async def _snapshot(self, timeout: float) -> dict[str, RawCounters]:
		try:
			return await asyncio.wait_for(self.collector.snapshot(), timeout=timeout)
		except asyncio.TimeoutError as exc:
			raise CollectorUnavailable(f"{self.source} snapshot timed out after {timeout:.1f}s") from exc
		except MeterBoxError:
			raise
		except Exception as exc:
			# Adapters may leak transport or parser errors
			raise CollectorUnavailable(f"{self.source} snapshot failed: {type(exc).__name__}: {exc}") from exc

	def _build_batch(self, snapshot: dict[str, RawCounters], ts: int) -> tuple[list[Sample], list[str]]:
		previous = self._store.last_raw_all(self.source)
		batch: list[Sample] = []
		resets: list[str] = []
		for identity in sorted(snapshot):
			current = snapshot[identity]
			prev = previous.get(identity)
			try:
				delta = normalize(
					RawCounters(prev.uplink_raw, prev.downlink_raw) if prev else None,
					current,
				)
			except ValueError as exc:
				raise CollectorUnavailable(f"malformed counters for {identity}: {exc}") from exc
			if delta.reset:
				resets.append(identity)
			batch.append(Sample(
				source=self.source,
				identity=identity,
				ts=ts,
				uplink_delta=delta.uplink,
				downlink_delta=delta.downlink,
				uplink_raw=current.uplink,
				downlink_raw=current.downlink,
				reset=delta.reset,
			))
		return batch, resets

	def _tick_ts(self) -> int:
		# Ticks of one source must be strictly increasing even if the clock stalls.
		latest = self._store.latest_ts(self.source)
		now = int(self._clock())
		return now if latest is None else max(now, latest + 1)

	def _write(self, batch: list[Sample], ts: int) -> int:
		return self._store.write_samples(
			batch,
			in_transaction=lambda conn: self._quota.apply_batch(conn, batch, ts),
		)

	async def run_once(self) -> RunRecord:
		settings = self._settings()
		started = time.monotonic()
		ts = int(self._clock())
		inserted = 0
		resets: list[str] = []
		error = ""

		try:
			snapshot = await self._snapshot(settings.collector_timeout_sec)
			ts = await asyncio.to_thread(self._tick_ts)
			batch, resets = await asyncio.to_thread(self._build_batch, snapshot, ts)
			if batch:
				inserted = await asyncio.to_thread(self._write, batch, ts)
		except (MeterBoxError, sqlite3.Error) as exc:
			error = f"{type(exc).__name__}: {exc}"
			resets = []
			_log.warning("SAMPLER %s tick failed: %s", self.source, error)
		except Exception as exc:
			error = f"{type(exc).__name__}: {exc}"
			resets = []
			_log.exception("SAMPLER %s tick failed unexpectedly", self.source)

		record = RunRecord(
			source=self.source,
			ts=ts,
			inserted_count=inserted,
			duration_ms=int((time.monotonic() - started) * 1000),
			error=error,
			reset_count=len(resets),
		)
		if resets:
			_log.info("SAMPLER %s counter reset identities=%s", self.source, ",".join(resets))
		if not error:
			_log.debug(
				"SAMPLER %s tick ts=%d inserted=%d duration_ms=%d",
				self.source, ts, inserted, record.duration_ms,
			)

		try:
			await asyncio.to_thread(self._store.append_run, record, keep=settings.run_history_limit)
		except MeterBoxError as exc:
			_log.error("SAMPLER %s could not record run: %s", self.source, exc)
		return record
