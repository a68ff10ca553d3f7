#!/usr/bin/env python3
#
# meterbox/core/reports.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Dashboard-facing read operations over the sample store."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..db.samples import SampleStore, SeriesBucket, validate_window
from ..errors import QueryRangeInvalid
from ..utils.config import EngineSettings

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityUsage:
	"""Per-identity totals over a report window."""
	source: str
	identity: str
	uplink: int
	downlink: int
	exceeded: bool = False

	@property
	def total(self) -> int:
		return self.uplink + self.downlink


@dataclass(frozen=True)
class LastSeen:
	source: str
	identity: str
	ts: int


class ReportEngine:
	"""Series, totals, top consumers, active set and usage reports.

	Every windowed call validates its arguments before touching the store and
	raises QueryRangeInvalid for inverted or negative windows.
	"""

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

	def series(self, source: str, start: int, end: int, bucket_width: int) -> list[SeriesBucket]:
		"""Chart series; empty buckets are omitted."""
		validate_window(start, end)
		if bucket_width is None or bucket_width <= 0:
			raise QueryRangeInvalid(f"bucket_width must be > 0, got {bucket_width}")
		return self._store.query_range(source, start, end, bucket_width=bucket_width)

	def totals(self, source: str, identity: str, start: int, end: int) -> IdentityUsage:
		uplink, downlink = self._store.totals(source, identity, start, end)
		return IdentityUsage(source=source, identity=identity, uplink=uplink, downlink=downlink)

	def top_consumers(self, source: str, start: int, end: int, n: int) -> list[IdentityUsage]:
		"""Top *n* identities by total bytes; ties by identity ascending."""
		validate_window(start, end)
		if n < 0:
			raise QueryRangeInvalid(f"n must be >= 0, got {n}")
		if n == 0:
			return []
		usage = self._collect(source, start, end)
		usage.sort(key=lambda u: (-u.total, u.identity))
		return usage[:n]

	def active_identities(
		self,
		source: str,
		window_seconds: int,
		threshold_bytes: Optional[int] = None,
	) -> list[IdentityUsage]:
		"""Identities whose traffic over the trailing window reaches the threshold.

		The window covers ``now - window_seconds`` up to and including ``now``.
		"""
		if window_seconds < 0:
			raise QueryRangeInvalid(f"window_seconds must be >= 0, got {window_seconds}")
		if threshold_bytes is None:
			threshold_bytes = self._settings().active_threshold_bytes
		if threshold_bytes < 0:
			raise QueryRangeInvalid(f"threshold_bytes must be >= 0, got {threshold_bytes}")

		now = int(self._clock())
		usage = self._collect(source, now - window_seconds, now + 1)
		active = [u for u in usage if u.total >= threshold_bytes]
		active.sort(key=lambda u: u.identity)
		return active

	def last_seen(self, source: str, threshold_bytes: Optional[int] = None) -> list[LastSeen]:
		"""When each identity last moved at least *threshold_bytes* in one tick.

		The threshold defaults to ``active_threshold_bytes``; 0 means any traffic.
		"""
		if threshold_bytes is None:
			threshold_bytes = self._settings().active_threshold_bytes
		seen = self._store.last_seen(source, threshold_bytes)
		return [LastSeen(source=source, identity=ident, ts=ts) for ident, ts in sorted(seen.items())]

	def usage_report(
		self,
		start: int,
		end: int,
		limit_bytes: Optional[int] = None,
		source: Optional[str] = None,
	) -> list[IdentityUsage]:
		"""Per-identity usage, flagged against an ad-hoc report limit.

		*limit_bytes* applies to this report only; persistent quota limits are
		not consulted.
		"""
		validate_window(start, end)
		if limit_bytes is not None and limit_bytes < 0:
			raise QueryRangeInvalid(f"limit_bytes must be >= 0, got {limit_bytes}")
		rows = self._collect(source, start, end)
		if limit_bytes is not None:
			rows = [
				IdentityUsage(u.source, u.identity, u.uplink, u.downlink, exceeded=u.total > limit_bytes)
				for u in rows
			]
		rows.sort(key=lambda u: (u.source, u.identity))
		return rows

	def _collect(self, source: Optional[str], start: int, end: int) -> list[IdentityUsage]:
		sums = self._store.totals_by_identity(source, start, end)
		return [
			IdentityUsage(source=src, identity=ident, uplink=up, downlink=down)
			for (src, ident), (up, down) in sums.items()
		]
