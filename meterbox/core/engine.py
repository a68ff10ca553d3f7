#!/usr/bin/env python3
#
# meterbox/core/engine.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Engine facade: wires store, samplers, quotas, reports, retention and jobs.

The HTTP layer talks only to this object. Sampling, retention and SQLite
maintenance run as scheduler jobs on the application's event loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable, Iterable

from ..collectors import ProxyStatsCollector, WireGuardCollector
from ..collectors.base import CollectorAdapter
from ..db.samples import SAMPLE_SOURCES, RunRecord, SampleStore
from ..db.sqlite_settings import load_engine_settings, save_engine_settings
from ..tasks.maintenance import sqlite_integrity_check, sqlite_maintenance
from ..utils.config import Config, EngineSettings, SettingsHolder
from ..utils.scheduler import JobStatus, Scheduler
from .quota import QuotaTracker
from .reports import ReportEngine
from .retention import RETENTION_SOURCE, PruneResult, RetentionManager
from .sampler import SourceSampler

_log = logging.getLogger(__name__)

RETENTION_JOB = RETENTION_SOURCE
MAINTENANCE_JOB = "sqlite-maintenance"
MAINTENANCE_INTERVAL_SEC = 6 * 3600
INTEGRITY_JOB = "sqlite-integrity"
INTEGRITY_INTERVAL_SEC = 7 * 86400


class Engine:
	"""Owns every component of the accounting engine for one database file."""

	def __init__(
		self,
		db_path: Path,
		collectors: Iterable[CollectorAdapter],
		*,
		clock: Callable[[], float] = time.time,
		run_on_start: bool = True,
	) -> None:
		self.store = SampleStore(db_path)
		with self.store.writer() as conn:
			initial = load_engine_settings(conn)
		self.settings = SettingsHolder(initial)
		self._clock = clock

		self.quota = QuotaTracker(self.store, clock=clock)
		self.reports = ReportEngine(self.store, self.settings.current, clock=clock)
		self.retention = RetentionManager(self.store, self.settings.current, clock=clock)

		self.samplers: dict[str, SourceSampler] = {}
		for collector in collectors:
			if collector.source not in SAMPLE_SOURCES:
				raise ValueError(f"Unsupported collector source {collector.source!r}")
			if collector.source in self.samplers:
				raise ValueError(f"Duplicate collector for source {collector.source!r}")
			self.samplers[collector.source] = SourceSampler(
				collector, self.store, self.quota, self.settings.current, clock=clock,
			)

		self.scheduler = Scheduler()
		self._register_jobs(run_on_start)

	@classmethod
	def from_config(cls, cfg: Config, **kwargs: Any) -> "Engine":
		"""Engine with the reference proxy and WireGuard collectors."""
		collectors = [
			ProxyStatsCollector(cfg.proxy_api, command=cfg.proxy_command),
			WireGuardCollector(cfg.wg_command),
		]
		return cls(cfg.db_path, collectors, **kwargs)

	def _register_jobs(self, run_on_start: bool) -> None:
		current = self.settings.current
		for source, sampler in self.samplers.items():
			self.scheduler.add(
				source,
				lambda s=source: current().interval_for(s),
				sampler.run_once,
				succeeded=lambda record: record.ok,
				run_on_start=run_on_start,
				paused=current().paused_for(source),
			)
		self.scheduler.add(
			RETENTION_JOB,
			lambda: current().retention_interval_sec,
			self._retention_cycle,
			succeeded=lambda record: record.ok,
		)
		self.scheduler.add(
			MAINTENANCE_JOB,
			MAINTENANCE_INTERVAL_SEC,
			lambda: sqlite_maintenance(self.store.db_path, write_lock=self.store.write_lock),
			timeout=600.0,
		)
		self.scheduler.add(
			INTEGRITY_JOB,
			INTEGRITY_INTERVAL_SEC,
			lambda: sqlite_integrity_check(self.store.db_path),
			succeeded=bool,
			timeout=300.0,
		)

	async def _retention_cycle(self) -> RunRecord:
		return await asyncio.to_thread(self.retention.run_cycle)

	# -- lifecycle -------------------------------------------------------------------

	async def start(self) -> None:
		await self.scheduler.start()
		_log.info("ENGINE started sources=%s", ",".join(self.samplers) or "-")

	async def stop(self, timeout: float = 15.0) -> None:
		"""Let in-flight ticks finish (bounded by *timeout*), then close the store."""
		await self.scheduler.stop_graceful(timeout=timeout)
		result = await asyncio.to_thread(self.store.close)
		_log.info("ENGINE stopped (WAL checkpoint: %s)", result)

	# -- controls --------------------------------------------------------------------

	def _sampler(self, source: str) -> SourceSampler:
		try:
			return self.samplers[source]
		except KeyError:
			raise KeyError(f"Unknown source {source!r}") from None

	async def run_now(self, source: str) -> RunRecord:
		"""Sample *source* now, coalescing with an in-flight tick."""
		sampler = self._sampler(source)
		if not self.scheduler.started:
			return await sampler.run_once()
		return await self.scheduler.run_now(source)

	async def pause(self, source: str) -> EngineSettings:
		self._sampler(source)
		return await self.update_settings(**{f"{source}_paused": True})

	async def resume(self, source: str) -> EngineSettings:
		self._sampler(source)
		return await self.update_settings(**{f"{source}_paused": False})

	async def prune_now(self) -> PruneResult:
		return await asyncio.to_thread(self.retention.prune_now)

	async def update_settings(self, **changes: Any) -> EngineSettings:
		"""Validate, persist and swap in new settings; jobs pick them up at once.

		Raises:
			ConfigValidationError: if a name or value is invalid (nothing changes).
		"""
		previous = self.settings.current()
		keys = list(changes)

		def persist(candidate: EngineSettings) -> None:
			with self.store.writer() as conn:
				save_engine_settings(conn, candidate, keys)

		updated = await asyncio.to_thread(self.settings.apply, changes, persist=persist)

		for source in self.samplers:
			was, now = previous.paused_for(source), updated.paused_for(source)
			if was != now:
				if now:
					await self.scheduler.pause(source)
				else:
					await self.scheduler.resume(source)
		self.scheduler.wake()
		return updated

	# -- reads -----------------------------------------------------------------------

	def run_history(self, source: str | None = None, limit: int | None = None) -> list[RunRecord]:
		if limit is None:
			limit = self.settings.current().run_history_limit
		return self.store.list_runs(source, limit=limit)

	def status(self) -> dict[str, Any]:
		jobs: list[JobStatus] = self.scheduler.get_status()
		return {
			"running": self.scheduler.started,
			"jobs": jobs,
			"db": self.store.get_db_stats(),
		}
