#!/usr/bin/env python3
#
# meterbox/db/sqlite_schema.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""SQLite schema initialization."""

from __future__ import annotations

import logging
import sqlite3

from .sqlite_runtime import transaction

_log = logging.getLogger(__name__)

SCHEMA_VERSION = 2


# ─────────────────────────────────────────────────────────────────────────────
# Schema Initialization
# ─────────────────────────────────────────────────────────────────────────────


def init_schema(conn: sqlite3.Connection) -> None:
	"""Create the required database schema (idempotent)."""
	with transaction(conn, immediate=True):
		# Per-tick traffic samples
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS samples (
				source TEXT NOT NULL,
				identity TEXT NOT NULL,
				ts INTEGER NOT NULL,
				uplink_delta INTEGER NOT NULL CHECK (uplink_delta >= 0),
				downlink_delta INTEGER NOT NULL CHECK (downlink_delta >= 0),
				uplink_raw INTEGER NOT NULL,
				downlink_raw INTEGER NOT NULL,
				reset INTEGER NOT NULL DEFAULT 0,
				PRIMARY KEY (source, identity, ts)
			)
			"""
		)
		conn.execute("CREATE INDEX IF NOT EXISTS idx_samples_source_ts ON samples(source, ts)")
		conn.execute("CREATE INDEX IF NOT EXISTS idx_samples_ts ON samples(ts)")

		# Daily compaction of old samples
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS aggregated_buckets (
				source TEXT NOT NULL,
				identity TEXT NOT NULL,
				day TEXT NOT NULL,
				uplink_total INTEGER NOT NULL,
				downlink_total INTEGER NOT NULL,
				sample_count INTEGER NOT NULL,
				PRIMARY KEY (source, identity, day)
			)
			"""
		)
		conn.execute("CREATE INDEX IF NOT EXISTS idx_buckets_day ON aggregated_buckets(day)")

		# Counter baseline per identity; survives compaction of its samples
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS last_raw (
				source TEXT NOT NULL,
				identity TEXT NOT NULL,
				uplink_raw INTEGER NOT NULL,
				downlink_raw INTEGER NOT NULL,
				ts INTEGER NOT NULL,
				PRIMARY KEY (source, identity)
			)
			"""
		)

		# Configured limits (owned by the user/peer forms)
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS quota_limits (
				source TEXT NOT NULL,
				identity TEXT NOT NULL,
				period_type TEXT NOT NULL,
				reset_day INTEGER NOT NULL DEFAULT 1,
				limit_bytes INTEGER NOT NULL DEFAULT 0,
				updated_at INTEGER NOT NULL,
				PRIMARY KEY (source, identity)
			)
			"""
		)

		# Consumption to date per identity
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS quota_state (
				source TEXT NOT NULL,
				identity TEXT NOT NULL,
				period_type TEXT NOT NULL,
				reset_day INTEGER NOT NULL DEFAULT 1,
				limit_bytes INTEGER NOT NULL,
				consumed_bytes INTEGER NOT NULL DEFAULT 0 CHECK (consumed_bytes >= 0),
				period_start INTEGER NOT NULL,
				updated_at INTEGER NOT NULL,
				PRIMARY KEY (source, identity)
			)
			"""
		)

		# Sampler audit trail
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS sampler_runs (
				id INTEGER PRIMARY KEY AUTOINCREMENT,
				source TEXT NOT NULL,
				ts INTEGER NOT NULL,
				inserted_count INTEGER NOT NULL DEFAULT 0,
				reset_count INTEGER NOT NULL DEFAULT 0,
				duration_ms INTEGER NOT NULL DEFAULT 0,
				error TEXT NOT NULL DEFAULT ''
			)
			"""
		)
		conn.execute("CREATE INDEX IF NOT EXISTS idx_sampler_runs_source ON sampler_runs(source, id)")

		# Runtime settings
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS settings (
				key TEXT PRIMARY KEY,
				value TEXT NOT NULL,
				updated_at INTEGER NOT NULL
			)
			"""
		)

		current = conn.execute("PRAGMA user_version").fetchone()[0]
		if current < SCHEMA_VERSION:
			if 0 < current < 2:
				_backfill_last_raw(conn)
			conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
			_log.info("SCHEMA initialized version=%d", SCHEMA_VERSION)


def _backfill_last_raw(conn: sqlite3.Connection) -> None:
	"""Seed baselines from the newest stored sample of every identity."""
	cur = conn.execute(
		"""
		INSERT OR IGNORE INTO last_raw (source, identity, uplink_raw, downlink_raw, ts)
		SELECT s.source, s.identity, s.uplink_raw, s.downlink_raw, s.ts
		FROM samples s
		JOIN (
			SELECT source, identity, MAX(ts) AS ts FROM samples GROUP BY source, identity
		) latest ON latest.source = s.source AND latest.identity = s.identity AND latest.ts = s.ts
		"""
	)
	_log.info("SCHEMA migrated to version 2, last_raw seeded=%d", cur.rowcount)
