#!/usr/bin/env python3
#
# meterbox/core/retention.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Retention pruning and daily aggregation of old samples.

Aggregation compacts whole UTC days older than ``aggregation_days`` into one
bucket per (source, identity, day). Pruning drops samples older than
``retention_days``. Neither touches quota state.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from ..db.samples import RunRecord, SampleStore
from ..errors import MeterBoxError
from ..utils.config import EngineSettings
from ..utils.time import SECONDS_PER_DAY, day_of, floor_to_day

_log = logging.getLogger(__name__)

RETENTION_SOURCE = "retention"


@dataclass(frozen=True)
class PruneResult:
	deleted_count: int
	cutoff: int
	buckets_deleted: int = 0


@dataclass(frozen=True)
class AggregateResult:
	cutoff: int
	groups: int = 0
	buckets_written: int = 0
	samples_deleted: int = 0
	errors: tuple[str, ...] = field(default_factory=tuple)


class RetentionManager:
	"""Applies retention and aggregation using the current settings snapshot."""

	def __init__(
		self,
		store: SampleStore,
		settings: Callable[[], EngineSettings],
		*,
		clock: Callable[[], float] = time.time,
	) -> None:
		self._store = store
		self._settings = settings
		self._clock = clock

	def aggregate(self, cutoff_days: int) -> AggregateResult:
		"""Compact samples of whole days older than *cutoff_days*.

		Each (source, day) group is compacted in its own transaction; a failed
		group is logged and left as raw samples for the next cycle.
		"""
		if cutoff_days < 0:
			raise ValueError("cutoff_days must be >= 0")
		now = int(self._clock())
		cutoff = floor_to_day(now - cutoff_days * SECONDS_PER_DAY)

		groups = self._store.days_before(cutoff)
		buckets = deleted = 0
		errors: list[str] = []
		for source, day in groups:
			try:
				written, removed = self._store.aggregate_day(source, day)
			except MeterBoxError as exc:
				_log.error("RETENTION aggregate failed source=%s day=%s: %s", source, day, exc)
				errors.append(f"{source}/{day}: {exc}")
				continue
			buckets += written
			deleted += removed

		if groups:
			_log.info(
				"RETENTION aggregated groups=%d buckets=%d samples=%d cutoff=%d",
				len(groups), buckets, deleted, cutoff,
			)
		return AggregateResult(
			cutoff=cutoff,
			groups=len(groups),
			buckets_written=buckets,
			samples_deleted=deleted,
			errors=tuple(errors),
		)

	def prune(self, retention_days: int) -> PruneResult:
		"""Delete samples older than ``now - retention_days``.

		With ``prune_buckets`` enabled, aggregated buckets for days before the
		cutoff day go as well.
		"""
		if retention_days < 0:
			raise ValueError("retention_days must be >= 0")
		now = int(self._clock())
		cutoff = now - retention_days * SECONDS_PER_DAY

		deleted = self._store.delete_before(cutoff)
		buckets_deleted = 0
		if self._settings().prune_buckets:
			buckets_deleted = self._store.delete_buckets_before(day_of(cutoff).isoformat())

		_log.info(
			"RETENTION pruned samples=%d buckets=%d cutoff=%d (%d days)",
			deleted, buckets_deleted, cutoff, retention_days,
		)
		return PruneResult(deleted_count=deleted, cutoff=cutoff, buckets_deleted=buckets_deleted)

	def prune_now(self) -> PruneResult:
		"""Operator-triggered prune with the configured retention_days."""
		return self.prune(self._settings().retention_days)

	def run_cycle(self) -> RunRecord:
		"""Scheduled entry point: aggregate, then prune, as enabled.

		Failures are recorded in the returned run record, never raised.
		"""
		settings = self._settings()
		started = time.monotonic()
		ts = int(self._clock())
		affected = 0
		errors: list[str] = []

		if settings.aggregation_enabled:
			try:
				result = self.aggregate(settings.aggregation_days)
				affected += result.samples_deleted
				errors.extend(result.errors)
			except MeterBoxError as exc:
				_log.error("RETENTION aggregation failed: %s", exc)
				errors.append(f"aggregate: {exc}")

		if settings.retention_enabled:
			try:
				affected += self.prune(settings.retention_days).deleted_count
			except MeterBoxError as exc:
				_log.error("RETENTION prune failed: %s", exc)
				errors.append(f"prune: {exc}")

		record = RunRecord(
			source=RETENTION_SOURCE,
			ts=ts,
			inserted_count=affected,
			duration_ms=int((time.monotonic() - started) * 1000),
			error="; ".join(errors),
		)
		try:
			self._store.append_run(record, keep=settings.run_history_limit)
		except MeterBoxError as exc:
			_log.error("RETENTION could not record run: %s", exc)
		return record
