#!/usr/bin/env python3
#
# meterbox/db/samples.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""SQLite-backed time-series store for traffic samples.

All mutations go through one writer connection serialized by a process-wide
lock. Reads open short-lived read-only connections; with WAL enabled they see
the last committed snapshot, so a half-written tick is never visible.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

from ..errors import QueryRangeInvalid, StoreWriteFailed
from ..utils.time import SECONDS_PER_DAY, day_start, floor_to_day
from .sqlite_runtime import checkpoint_wal, close_connection, connect, transaction
from .sqlite_schema import init_schema

_log = logging.getLogger(__name__)

__all__ = [
	"SAMPLE_SOURCES",
	"Sample",
	"SeriesBucket",
	"LastRaw",
	"RunRecord",
	"AggregatedBucket",
	"SampleStore",
	"validate_window",
]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SAMPLE_SOURCES = ("proxy", "wireguard")
DEFAULT_RUN_HISTORY = 50

# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Sample:
	"""One row per (source, identity, tick)."""
	source: str
	identity: str
	ts: int
	uplink_delta: int
	downlink_delta: int
	uplink_raw: int
	downlink_raw: int
	reset: bool = False

	@property
	def total(self) -> int:
		return self.uplink_delta + self.downlink_delta


@dataclass(frozen=True)
class SeriesBucket:
	"""Samples pre-summed into a fixed-width time bucket."""
	bucket: int
	uplink: int
	downlink: int
	samples: int


@dataclass(frozen=True)
class LastRaw:
	"""Most recent raw counters seen for an identity."""
	uplink_raw: int
	downlink_raw: int
	ts: int


@dataclass(frozen=True)
class RunRecord:
	"""Audit entry for one execution attempt."""
	source: str
	ts: int
	inserted_count: int
	duration_ms: int
	error: str = ""
	reset_count: int = 0
	id: Optional[int] = None

	@property
	def ok(self) -> bool:
		return not self.error


@dataclass(frozen=True)
class AggregatedBucket:
	"""Compacted daily totals for one (source, identity)."""
	source: str
	identity: str
	day: str
	uplink_total: int
	downlink_total: int
	sample_count: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def validate_window(start: int, end: int) -> None:
	"""Reject inverted windows before touching the store."""
	if start > end:
		raise QueryRangeInvalid(f"start ({start}) is after end ({end})")


def _full_day_bounds(start: int, end: int) -> tuple[str, str]:
	"""ISO day range [first, last) of UTC days lying wholly inside [start, end)."""
	first = floor_to_day(start)
	if first < start:
		first += SECONDS_PER_DAY
	last = floor_to_day(end)
	epoch = date(1970, 1, 1)
	first_day = epoch + timedelta(days=first // SECONDS_PER_DAY)
	last_day = epoch + timedelta(days=last // SECONDS_PER_DAY)
	return first_day.isoformat(), last_day.isoformat()


def _row_to_sample(row: sqlite3.Row) -> Sample:
	return Sample(
		source=row["source"],
		identity=row["identity"],
		ts=row["ts"],
		uplink_delta=row["uplink_delta"],
		downlink_delta=row["downlink_delta"],
		uplink_raw=row["uplink_raw"],
		downlink_raw=row["downlink_raw"],
		reset=bool(row["reset"]),
	)


def _row_to_run(row: sqlite3.Row) -> RunRecord:
	return RunRecord(
		id=row["id"],
		source=row["source"],
		ts=row["ts"],
		inserted_count=row["inserted_count"],
		duration_ms=row["duration_ms"],
		error=row["error"] or "",
		reset_count=row["reset_count"],
	)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SampleStore:
	"""Append-only sample writer plus range-query reader over one SQLite file."""

	def __init__(self, db_path: Path) -> None:
		self.db_path = Path(db_path)
		self._write_lock = threading.Lock()
		self._writer: sqlite3.Connection | None = connect(self.db_path)
		init_schema(self._writer)

	# -- connections ---------------------------------------------------------

	@property
	def write_lock(self) -> threading.Lock:
		"""Lock serializing every write; held by maintenance that touches the file."""
		return self._write_lock

	@contextmanager
	def writer(self) -> Iterator[sqlite3.Connection]:
		"""Exclusive access to the single writer connection."""
		with self._write_lock:
			if self._writer is None:
				raise StoreWriteFailed("store is closed")
			yield self._writer

	@contextmanager
	def reader(self) -> Iterator[sqlite3.Connection]:
		"""Short-lived read-only connection on the committed snapshot."""
		conn = connect(self.db_path, read_only=True)
		try:
			yield conn
		finally:
			close_connection(conn)

	def close(self) -> dict[str, int | str]:
		"""Close the writer (waits for an in-flight write) and checkpoint the WAL."""
		with self._write_lock:
			if self._writer is None:
				return {"mode": "TRUNCATE", "busy": -1, "log_frames": -1, "checkpointed_frames": -1}
			close_connection(self._writer)
			self._writer = None
		return checkpoint_wal(self.db_path, mode="TRUNCATE")

	# -- writes ---------------------------------------------------------------

	def write_samples(
		self,
		batch: Sequence[Sample],
		*,
		in_transaction: Callable[[sqlite3.Connection], None] | None = None,
	) -> int:
		"""Insert one tick's samples atomically.

		*in_transaction* runs inside the same transaction (quota updates), so
		either everything of the tick commits or nothing does.

		Raises:
			StoreWriteFailed: on any failure; the transaction is rolled back.
		"""
		if not batch:
			return 0

		rows = []
		tick_ts: dict[str, int] = {}
		for s in batch:
			if s.source not in SAMPLE_SOURCES:
				raise StoreWriteFailed(f"unknown sample source {s.source!r}")
			if s.uplink_delta < 0 or s.downlink_delta < 0:
				raise StoreWriteFailed(f"negative delta for {s.source}/{s.identity}")
			tick_ts[s.source] = min(s.ts, tick_ts.get(s.source, s.ts))
			rows.append((
				s.source, s.identity, s.ts,
				s.uplink_delta, s.downlink_delta,
				s.uplink_raw, s.downlink_raw,
				1 if s.reset else 0,
			))

		with self.writer() as conn:
			try:
				with transaction(conn, immediate=True):
					for source, ts in tick_ts.items():
						row = conn.execute(
							"SELECT MAX(ts) FROM samples WHERE source = ?", (source,)
						).fetchone()
						if row[0] is not None and ts <= row[0]:
							raise StoreWriteFailed(
								f"non-monotonic tick for {source}: ts={ts} <= stored {row[0]}"
							)
					conn.executemany(
						"""
						INSERT INTO samples (
							source, identity, ts, uplink_delta, downlink_delta,
							uplink_raw, downlink_raw, reset
						) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
						""",
						rows,
					)
					conn.executemany(
						"""
						INSERT INTO last_raw (source, identity, uplink_raw, downlink_raw, ts)
						VALUES (?, ?, ?, ?, ?)
						ON CONFLICT(source, identity) DO UPDATE SET
							uplink_raw = excluded.uplink_raw,
							downlink_raw = excluded.downlink_raw,
							ts = excluded.ts
						WHERE excluded.ts >= last_raw.ts
						""",
						[(s.source, s.identity, s.uplink_raw, s.downlink_raw, s.ts) for s in batch],
					)
					if in_transaction is not None:
						in_transaction(conn)
			except StoreWriteFailed:
				raise
			except Exception as exc:
				raise StoreWriteFailed(f"{type(exc).__name__}: {exc}") from exc

		_log.debug("STORE wrote %d samples", len(rows))
		return len(rows)

	def delete_before(self, cutoff: int, *, source: str | None = None) -> int:
		"""Delete all samples with ts < cutoff; return the number deleted."""
		with self.writer() as conn:
			try:
				with transaction(conn, immediate=True):
					if source is None:
						cur = conn.execute("DELETE FROM samples WHERE ts < ?", (cutoff,))
					else:
						cur = conn.execute(
							"DELETE FROM samples WHERE ts < ? AND source = ?", (cutoff, source)
						)
					return cur.rowcount
			except sqlite3.Error as exc:
				raise StoreWriteFailed(f"delete_before failed: {exc}") from exc

	def append_run(self, record: RunRecord, *, keep: int = DEFAULT_RUN_HISTORY) -> None:
		"""Append a run record and trim that source's history to *keep* rows."""
		with self.writer() as conn:
			try:
				with transaction(conn, immediate=True):
					conn.execute(
						"""
						INSERT INTO sampler_runs (source, ts, inserted_count, reset_count, duration_ms, error)
						VALUES (?, ?, ?, ?, ?, ?)
						""",
						(
							record.source, record.ts, record.inserted_count,
							record.reset_count, record.duration_ms, record.error,
						),
					)
					conn.execute(
						"""
						DELETE FROM sampler_runs
						WHERE source = ? AND id NOT IN (
							SELECT id FROM sampler_runs WHERE source = ? ORDER BY id DESC LIMIT ?
						)
						""",
						(record.source, record.source, max(1, keep)),
					)
			except sqlite3.Error as exc:
				raise StoreWriteFailed(f"append_run failed: {exc}") from exc

	# -- aggregation primitives ------------------------------------------------

	def days_before(self, cutoff: int) -> list[tuple[str, str]]:
		"""Distinct (source, day) groups having samples with ts < cutoff."""
		with self.reader() as conn:
			rows = conn.execute(
				"""
				SELECT DISTINCT source, date(ts, 'unixepoch') AS day
				FROM samples WHERE ts < ?
				ORDER BY day, source
				""",
				(cutoff,),
			).fetchall()
		return [(row["source"], row["day"]) for row in rows]

	def aggregate_day(self, source: str, day: str) -> tuple[int, int]:
		"""Compact one (source, day) group into daily buckets.

		Bucket upsert and sample delete share one transaction: after a crash
		either the samples or the buckets exist, never both and never neither.

		Returns:
			(buckets_written, samples_deleted)
		"""
		lo = day_start(date.fromisoformat(day))
		hi = lo + SECONDS_PER_DAY
		with self.writer() as conn:
			try:
				with transaction(conn, immediate=True):
					groups = conn.execute(
						"""
						SELECT identity, SUM(uplink_delta) AS up, SUM(downlink_delta) AS down, COUNT(*) AS n
						FROM samples
						WHERE source = ? AND ts >= ? AND ts < ?
						GROUP BY identity
						""",
						(source, lo, hi),
					).fetchall()
					conn.executemany(
						"""
						INSERT INTO aggregated_buckets (source, identity, day, uplink_total, downlink_total, sample_count)
						VALUES (?, ?, ?, ?, ?, ?)
						ON CONFLICT(source, identity, day) DO UPDATE SET
							uplink_total = uplink_total + excluded.uplink_total,
							downlink_total = downlink_total + excluded.downlink_total,
							sample_count = sample_count + excluded.sample_count
						""",
						[(source, g["identity"], day, g["up"], g["down"], g["n"]) for g in groups],
					)
					cur = conn.execute(
						"DELETE FROM samples WHERE source = ? AND ts >= ? AND ts < ?",
						(source, lo, hi),
					)
					return len(groups), cur.rowcount
			except sqlite3.Error as exc:
				raise StoreWriteFailed(f"aggregate_day {source}/{day} failed: {exc}") from exc

	def delete_buckets_before(self, day: str) -> int:
		"""Delete aggregated buckets for days strictly before *day* (ISO)."""
		with self.writer() as conn:
			try:
				with transaction(conn, immediate=True):
					cur = conn.execute("DELETE FROM aggregated_buckets WHERE day < ?", (day,))
					return cur.rowcount
			except sqlite3.Error as exc:
				raise StoreWriteFailed(f"delete_buckets_before failed: {exc}") from exc

	# -- reads ----------------------------------------------------------------

	def query_range(
		self,
		source: str,
		start: int,
		end: int,
		bucket_width: int | None = None,
	) -> list[Sample] | list[SeriesBucket]:
		"""Samples with start <= ts < end, raw or summed into fixed-width buckets.

		Bucket boundary is ``floor(ts / bucket_width) * bucket_width``; buckets
		without samples are omitted. Bucketed series also fold in aggregated
		days lying wholly inside the window, placed at the day's midnight.
		"""
		validate_window(start, end)
		if bucket_width is not None and bucket_width <= 0:
			raise QueryRangeInvalid(f"bucket_width must be > 0, got {bucket_width}")

		with self.reader() as conn:
			if bucket_width is None:
				rows = conn.execute(
					"""
					SELECT * FROM samples
					WHERE source = ? AND ts >= ? AND ts < ?
					ORDER BY ts, identity
					""",
					(source, start, end),
				).fetchall()
				return [_row_to_sample(r) for r in rows]

			first_day, last_day = _full_day_bounds(start, end)
			rows = conn.execute(
				"""
				SELECT (ts / ?) * ? AS bucket,
					SUM(up) AS up, SUM(down) AS down, SUM(n) AS n
				FROM (
					SELECT ts, uplink_delta AS up, downlink_delta AS down, 1 AS n
					FROM samples
					WHERE source = ? AND ts >= ? AND ts < ?
					UNION ALL
					SELECT CAST(strftime('%s', day) AS INTEGER), uplink_total, downlink_total, sample_count
					FROM aggregated_buckets
					WHERE source = ? AND day >= ? AND day < ?
				)
				GROUP BY bucket
				ORDER BY bucket
				""",
				(bucket_width, bucket_width, source, start, end, source, first_day, last_day),
			).fetchall()
		return [
			SeriesBucket(bucket=r["bucket"], uplink=r["up"], downlink=r["down"], samples=r["n"])
			for r in rows
		]

	def totals(self, source: str, identity: str, start: int, end: int) -> tuple[int, int]:
		"""Sum of (uplink, downlink) deltas for one identity over [start, end).

		Aggregated buckets count when their whole day lies inside the window.
		"""
		validate_window(start, end)
		first_day, last_day = _full_day_bounds(start, end)
		with self.reader() as conn:
			row = conn.execute(
				"""
				SELECT
					COALESCE(SUM(up), 0) AS up, COALESCE(SUM(down), 0) AS down
				FROM (
					SELECT uplink_delta AS up, downlink_delta AS down FROM samples
					WHERE source = ? AND identity = ? AND ts >= ? AND ts < ?
					UNION ALL
					SELECT uplink_total, downlink_total FROM aggregated_buckets
					WHERE source = ? AND identity = ? AND day >= ? AND day < ?
				)
				""",
				(source, identity, start, end, source, identity, first_day, last_day),
			).fetchone()
		return int(row["up"]), int(row["down"])

	def totals_by_identity(self, source: str | None, start: int, end: int) -> dict[tuple[str, str], tuple[int, int]]:
		"""Per (source, identity) sums over [start, end); all sources if *source* is None."""
		validate_window(start, end)
		first_day, last_day = _full_day_bounds(start, end)
		src_filter = "" if source is None else "AND source = ?"
		params: list = [start, end]
		if source is not None:
			params.append(source)
		params.extend([first_day, last_day])
		if source is not None:
			params.append(source)

		with self.reader() as conn:
			rows = conn.execute(
				f"""
				SELECT source, identity, SUM(up) AS up, SUM(down) AS down
				FROM (
					SELECT source, identity, uplink_delta AS up, downlink_delta AS down
					FROM samples WHERE ts >= ? AND ts < ? {src_filter}
					UNION ALL
					SELECT source, identity, uplink_total, downlink_total
					FROM aggregated_buckets WHERE day >= ? AND day < ? {src_filter}
				)
				GROUP BY source, identity
				""",
				params,
			).fetchall()
		return {(r["source"], r["identity"]): (int(r["up"]), int(r["down"])) for r in rows}

	def last_raw(self, source: str, identity: str) -> LastRaw | None:
		"""Most recent raw counters for one identity, or None if never seen."""
		with self.reader() as conn:
			row = conn.execute(
				"""
				SELECT uplink_raw, downlink_raw, ts FROM last_raw
				WHERE source = ? AND identity = ?
				""",
				(source, identity),
			).fetchone()
		if row is None:
			return None
		return LastRaw(uplink_raw=row["uplink_raw"], downlink_raw=row["downlink_raw"], ts=row["ts"])

	def last_raw_all(self, source: str) -> dict[str, LastRaw]:
		"""Most recent raw counters for every identity of *source*."""
		with self.reader() as conn:
			rows = conn.execute(
				"SELECT identity, uplink_raw, downlink_raw, ts FROM last_raw WHERE source = ?",
				(source,),
			).fetchall()
		return {
			r["identity"]: LastRaw(uplink_raw=r["uplink_raw"], downlink_raw=r["downlink_raw"], ts=r["ts"])
			for r in rows
		}

	def latest_ts(self, source: str) -> int | None:
		"""Timestamp of the newest stored tick for *source*."""
		with self.reader() as conn:
			row = conn.execute("SELECT MAX(ts) FROM samples WHERE source = ?", (source,)).fetchone()
		return row[0]

	def last_seen(self, source: str, threshold_bytes: int = 0) -> dict[str, int]:
		"""Newest tick per identity whose traffic reached *threshold_bytes*.

		With a threshold of 0 any non-zero sample counts. Compacted days are
		not considered; an identity idle since before aggregation is absent.
		"""
		if threshold_bytes < 0:
			raise QueryRangeInvalid(f"threshold_bytes must be >= 0, got {threshold_bytes}")
		with self.reader() as conn:
			rows = conn.execute(
				"""
				SELECT identity, MAX(ts) AS ts FROM samples
				WHERE source = ?
					AND uplink_delta + downlink_delta > 0
					AND uplink_delta + downlink_delta >= ?
				GROUP BY identity
				""",
				(source, threshold_bytes),
			).fetchall()
		return {r["identity"]: r["ts"] for r in rows}

	def list_runs(self, source: str | None = None, limit: int = DEFAULT_RUN_HISTORY) -> list[RunRecord]:
		"""Run records, newest first."""
		with self.reader() as conn:
			if source is None:
				rows = conn.execute(
					"SELECT * FROM sampler_runs ORDER BY id DESC LIMIT ?", (limit,)
				).fetchall()
			else:
				rows = conn.execute(
					"SELECT * FROM sampler_runs WHERE source = ? ORDER BY id DESC LIMIT ?",
					(source, limit),
				).fetchall()
		return [_row_to_run(r) for r in rows]

	def list_buckets(self, source: str | None = None, identity: str | None = None) -> list[AggregatedBucket]:
		"""Aggregated buckets ordered by day, source, identity."""
		clauses = []
		params: list = []
		if source is not None:
			clauses.append("source = ?")
			params.append(source)
		if identity is not None:
			clauses.append("identity = ?")
			params.append(identity)
		where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
		with self.reader() as conn:
			rows = conn.execute(
				f"SELECT * FROM aggregated_buckets {where} ORDER BY day, source, identity",
				params,
			).fetchall()
		return [
			AggregatedBucket(
				source=r["source"],
				identity=r["identity"],
				day=r["day"],
				uplink_total=r["uplink_total"],
				downlink_total=r["downlink_total"],
				sample_count=r["sample_count"],
			)
			for r in rows
		]

	def get_db_stats(self) -> dict[str, int | None]:
		"""Storage statistics for the dashboard."""
		with self.reader() as conn:
			samples = conn.execute("SELECT COUNT(*), MIN(ts), MAX(ts) FROM samples").fetchone()
			buckets = conn.execute("SELECT COUNT(*) FROM aggregated_buckets").fetchone()
			runs = conn.execute("SELECT COUNT(*) FROM sampler_runs").fetchone()
		try:
			size = self.db_path.stat().st_size
		except OSError:
			size = 0
		return {
			"size_bytes": size,
			"sample_count": int(samples[0]),
			"oldest_ts": samples[1],
			"newest_ts": samples[2],
			"bucket_count": int(buckets[0]),
			"run_count": int(runs[0]),
		}
