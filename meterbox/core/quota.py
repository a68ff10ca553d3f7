#!/usr/bin/env python3
#
# meterbox/core/quota.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Per-identity quota consumption against monthly or lifetime limits.

Consumption is accumulated from sample deltas as they are written and is
independent of retention: pruning old samples never lowers it.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Optional

from ..db.samples import SAMPLE_SOURCES, Sample, SampleStore
from ..db.sqlite_runtime import transaction
from ..errors import InvalidQuotaConfig, StoreWriteFailed
from ..utils.time import clamp_day, day_start, from_epoch

_log = logging.getLogger(__name__)

__all__ = [
	"PERIOD_MONTHLY",
	"PERIOD_TOTAL",
	"QuotaLimit",
	"QuotaState",
	"QuotaTracker",
	"current_period_start",
]

PERIOD_MONTHLY = "monthly"
PERIOD_TOTAL = "total"
PERIOD_TYPES = (PERIOD_MONTHLY, PERIOD_TOTAL)


@dataclass(frozen=True)
class QuotaLimit:
	"""Configured limit for one identity (0 bytes = unlimited)."""
	source: str
	identity: str
	period_type: str
	limit_bytes: int
	reset_day: int = 1

	def validate(self) -> "QuotaLimit":
		if self.source not in SAMPLE_SOURCES:
			raise InvalidQuotaConfig(f"unknown source {self.source!r}")
		if not self.identity:
			raise InvalidQuotaConfig("identity must not be empty")
		if self.period_type not in PERIOD_TYPES:
			raise InvalidQuotaConfig(
				f"{self.identity}: period_type must be one of {PERIOD_TYPES}, got {self.period_type!r}"
			)
		if isinstance(self.limit_bytes, bool) or not isinstance(self.limit_bytes, int) or self.limit_bytes < 0:
			raise InvalidQuotaConfig(f"{self.identity}: limit_bytes must be a non-negative integer")
		if self.period_type == PERIOD_MONTHLY and not (
			isinstance(self.reset_day, int) and 1 <= self.reset_day <= 31
		):
			raise InvalidQuotaConfig(f"{self.identity}: reset_day must be 1-31, got {self.reset_day!r}")
		return self


@dataclass(frozen=True)
class QuotaState:
	"""Consumption to date within the current period."""
	source: str
	identity: str
	period_type: str
	reset_day: int
	limit_bytes: int
	consumed_bytes: int
	period_start: int
	updated_at: int

	@property
	def exceeded(self) -> bool:
		return self.limit_bytes > 0 and self.consumed_bytes > self.limit_bytes

	@property
	def remaining_bytes(self) -> int | None:
		if self.limit_bytes <= 0:
			return None
		return max(0, self.limit_bytes - self.consumed_bytes)


def current_period_start(now: int, reset_day: int) -> int:
	"""Epoch second of the most recent monthly boundary at or before *now*.

	The boundary is 00:00 UTC on *reset_day*; days past a month's end clamp
	to its last day (reset_day=31 resets on Feb 28/29).
	"""
	today = from_epoch(now).date()
	boundary = clamp_day(today.year, today.month, reset_day)
	if boundary > today:
		year, month = (today.year, today.month - 1) if today.month > 1 else (today.year - 1, 12)
		boundary = clamp_day(year, month, reset_day)
	return day_start(boundary)


def _row_to_limit(row: sqlite3.Row) -> QuotaLimit:
	return QuotaLimit(
		source=row["source"],
		identity=row["identity"],
		period_type=row["period_type"],
		limit_bytes=row["limit_bytes"],
		reset_day=row["reset_day"],
	)


def _row_to_state(row: sqlite3.Row) -> QuotaState:
	return QuotaState(
		source=row["source"],
		identity=row["identity"],
		period_type=row["period_type"],
		reset_day=row["reset_day"],
		limit_bytes=row["limit_bytes"],
		consumed_bytes=row["consumed_bytes"],
		period_start=row["period_start"],
		updated_at=row["updated_at"],
	)


class QuotaTracker:
	"""Maintains QuotaState rows against configured QuotaLimits."""

	def __init__(self, store: SampleStore, *, clock: Callable[[], float] = time.time) -> None:
		self._store = store
		self._clock = clock

	def _now(self, now: Optional[int]) -> int:
		return int(self._clock()) if now is None else int(now)

	# -- limit configuration ----------------------------------------------------

	def set_limit(
		self,
		source: str,
		identity: str,
		period_type: str,
		limit_bytes: int,
		reset_day: int = 1,
	) -> QuotaLimit:
		"""Validate and store the configured limit for an identity.

		Raises:
			InvalidQuotaConfig: if the period or limit is malformed.
		"""
		limit = QuotaLimit(source, identity, period_type, limit_bytes, reset_day).validate()
		now = self._now(None)
		with self._store.writer() as conn:
			with transaction(conn, immediate=True):
				conn.execute(
					"""
					INSERT INTO quota_limits (source, identity, period_type, reset_day, limit_bytes, updated_at)
					VALUES (?, ?, ?, ?, ?, ?)
					ON CONFLICT(source, identity) DO UPDATE SET
						period_type = excluded.period_type,
						reset_day = excluded.reset_day,
						limit_bytes = excluded.limit_bytes,
						updated_at = excluded.updated_at
					""",
					(source, identity, period_type, reset_day, limit_bytes, now),
				)
				# Keep display values of an existing state in sync; consumption is untouched.
				conn.execute(
					"""
					UPDATE quota_state SET limit_bytes = ?, updated_at = ?
					WHERE source = ? AND identity = ?
					""",
					(limit_bytes, now, source, identity),
				)
		_log.info(
			"QUOTA limit set source=%s identity=%s period=%s limit=%d reset_day=%d",
			source, identity, period_type, limit_bytes, reset_day,
		)
		return limit

	def remove_limit(self, source: str, identity: str) -> bool:
		"""Drop the limit and the consumption state of an identity."""
		with self._store.writer() as conn:
			with transaction(conn, immediate=True):
				cur = conn.execute(
					"DELETE FROM quota_limits WHERE source = ? AND identity = ?", (source, identity)
				)
				conn.execute(
					"DELETE FROM quota_state WHERE source = ? AND identity = ?", (source, identity)
				)
		return cur.rowcount > 0

	def get_limit(self, source: str, identity: str) -> QuotaLimit | None:
		with self._store.reader() as conn:
			row = conn.execute(
				"SELECT * FROM quota_limits WHERE source = ? AND identity = ?", (source, identity)
			).fetchone()
		return _row_to_limit(row) if row else None

	# -- recording ---------------------------------------------------------------

	def apply(
		self,
		conn: sqlite3.Connection,
		source: str,
		identity: str,
		uplink_delta: int,
		downlink_delta: int,
		now: int,
	) -> QuotaState | None:
		"""Roll over if due, then add the deltas. Runs inside the caller's transaction.

		Returns the updated state, or None when the identity has no limit.

		Raises:
			InvalidQuotaConfig: if the stored limit is malformed.
		"""
		row = conn.execute(
			"SELECT * FROM quota_limits WHERE source = ? AND identity = ?", (source, identity)
		).fetchone()
		if row is None:
			return None
		limit = _row_to_limit(row).validate()

		state_row = conn.execute(
			"SELECT * FROM quota_state WHERE source = ? AND identity = ?", (source, identity)
		).fetchone()
		if state_row is None:
			if limit.limit_bytes == 0:
				return None
			state = QuotaState(
				source=source,
				identity=identity,
				period_type=limit.period_type,
				reset_day=limit.reset_day,
				limit_bytes=limit.limit_bytes,
				consumed_bytes=0,
				period_start=self._period_start(limit, now),
				updated_at=now,
			)
			_log.info("QUOTA tracking started source=%s identity=%s period=%s", source, identity, limit.period_type)
		else:
			state = _row_to_state(state_row)
			if state.period_type != limit.period_type or state.reset_day != limit.reset_day:
				# Period definition changed: start a fresh period under the new rules.
				state = replace(
					state,
					period_type=limit.period_type,
					reset_day=limit.reset_day,
					consumed_bytes=0,
					period_start=self._period_start(limit, now),
				)
			state = self._rolled_over(state, now)

		state = replace(
			state,
			limit_bytes=limit.limit_bytes,
			consumed_bytes=state.consumed_bytes + uplink_delta + downlink_delta,
			updated_at=now,
		)
		conn.execute(
			"""
			INSERT INTO quota_state (
				source, identity, period_type, reset_day, limit_bytes,
				consumed_bytes, period_start, updated_at
			) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
			ON CONFLICT(source, identity) DO UPDATE SET
				period_type = excluded.period_type,
				reset_day = excluded.reset_day,
				limit_bytes = excluded.limit_bytes,
				consumed_bytes = excluded.consumed_bytes,
				period_start = excluded.period_start,
				updated_at = excluded.updated_at
			""",
			(
				state.source, state.identity, state.period_type, state.reset_day,
				state.limit_bytes, state.consumed_bytes, state.period_start, state.updated_at,
			),
		)
		return state

	def apply_batch(self, conn: sqlite3.Connection, samples: Iterable[Sample], now: int) -> list[str]:
		"""Apply a tick's samples inside the write transaction.

		Identities with a malformed limit are logged and skipped; their
		samples are still written. Returns the skipped identities.
		"""
		skipped: list[str] = []
		for s in samples:
			try:
				state = self.apply(conn, s.source, s.identity, s.uplink_delta, s.downlink_delta, now)
			except InvalidQuotaConfig as exc:
				_log.warning("QUOTA skipped source=%s identity=%s: %s", s.source, s.identity, exc)
				skipped.append(s.identity)
				continue
			if state is not None and state.exceeded and s.total > 0:
				_log.info(
					"QUOTA exceeded source=%s identity=%s consumed=%d limit=%d",
					s.source, s.identity, state.consumed_bytes, state.limit_bytes,
				)
		return skipped

	def record(
		self,
		source: str,
		identity: str,
		uplink_delta: int,
		downlink_delta: int,
		now: Optional[int] = None,
	) -> QuotaState | None:
		"""Standalone variant of apply() in its own transaction."""
		if uplink_delta < 0 or downlink_delta < 0:
			raise ValueError("deltas must be non-negative")
		ts = self._now(now)
		with self._store.writer() as conn:
			try:
				with transaction(conn, immediate=True):
					return self.apply(conn, source, identity, uplink_delta, downlink_delta, ts)
			except InvalidQuotaConfig:
				raise
			except sqlite3.Error as exc:
				raise StoreWriteFailed(f"quota record failed: {exc}") from exc

	# -- reads ---------------------------------------------------------------------

	def get_state(self, source: str, identity: str, now: Optional[int] = None) -> QuotaState | None:
		"""Current state as of *now* (a due rollover shows as zero consumption)."""
		with self._store.reader() as conn:
			row = conn.execute(
				"SELECT * FROM quota_state WHERE source = ? AND identity = ?", (source, identity)
			).fetchone()
		if row is None:
			return None
		return self._rolled_over(_row_to_state(row), self._now(now))

	def list_states(self, source: str | None = None, now: Optional[int] = None) -> list[QuotaState]:
		ts = self._now(now)
		with self._store.reader() as conn:
			if source is None:
				rows = conn.execute("SELECT * FROM quota_state ORDER BY source, identity").fetchall()
			else:
				rows = conn.execute(
					"SELECT * FROM quota_state WHERE source = ? ORDER BY identity", (source,)
				).fetchall()
		return [self._rolled_over(_row_to_state(r), ts) for r in rows]

	def is_exceeded(self, source: str, identity: str, now: Optional[int] = None) -> bool:
		state = self.get_state(source, identity, now)
		return state is not None and state.exceeded

	# -- helpers ---------------------------------------------------------------------

	@staticmethod
	def _period_start(limit: QuotaLimit, now: int) -> int:
		if limit.period_type == PERIOD_MONTHLY:
			return current_period_start(now, limit.reset_day)
		return now

	@staticmethod
	def _rolled_over(state: QuotaState, now: int) -> QuotaState:
		if state.period_type != PERIOD_MONTHLY:
			return state
		boundary = current_period_start(now, state.reset_day)
		if boundary <= state.period_start:
			return state
		_log.debug(
			"QUOTA rollover source=%s identity=%s period_start=%d",
			state.source, state.identity, boundary,
		)
		return replace(state, consumed_bytes=0, period_start=boundary)
