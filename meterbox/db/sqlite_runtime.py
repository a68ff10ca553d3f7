#!/usr/bin/env python3
#
# meterbox/db/sqlite_runtime.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""SQLite runtime helpers: connections and transactions."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path

_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Connection Registry
# ---------------------------------------------------------------------------

_OPEN_CONNECTIONS: set[sqlite3.Connection] = set()
_CONNECTIONS_LOCK = threading.Lock()


def connect(db_path: Path, *, read_only: bool = False) -> sqlite3.Connection:
	"""Create a SQLite connection configured for this application.

	Retries WAL mode activation if the database is temporarily locked.
	Read-only connections skip WAL activation and refuse writes
	(``PRAGMA query_only``); in WAL mode they read the last committed
	snapshot and are never blocked by the writer.
	"""
	db_path.parent.mkdir(parents=True, exist_ok=True)
	conn = sqlite3.connect(
		str(db_path),
		check_same_thread=False,
		timeout=30.0,  # Busy timeout for concurrent access
		isolation_level=None,  # Explicit BEGIN/COMMIT via transaction()
	)
	conn.row_factory = sqlite3.Row

	if read_only:
		conn.execute("PRAGMA query_only=ON")
	else:
		max_retries = 5
		for attempt in range(max_retries):
			try:
				cursor = conn.execute("PRAGMA journal_mode")
				current_mode = cursor.fetchone()[0].upper()
				cursor.close()

				if current_mode != "WAL":
					conn.execute("PRAGMA journal_mode=WAL")
					_log.debug("Enabled WAL mode for database")
				break
			except sqlite3.OperationalError as e:
				if "locked" in str(e).lower() and attempt < max_retries - 1:
					wait = 0.1 * (2 ** attempt)  # 0.1s, 0.2s, 0.4s, 0.8s
					_log.debug(
						"Database locked during WAL activation (attempt %d/%d), retrying in %.1fs",
						attempt + 1,
						max_retries,
						wait,
					)
					time.sleep(wait)
				else:
					raise
		conn.execute("PRAGMA synchronous=NORMAL")

	with _CONNECTIONS_LOCK:
		_OPEN_CONNECTIONS.add(conn)

	return conn


def close_connection(conn: sqlite3.Connection) -> None:
	"""Close and untrack a SQLite connection."""
	with _CONNECTIONS_LOCK:
		_OPEN_CONNECTIONS.discard(conn)
	conn.close()


def close_all_connections() -> int:
	"""Close all tracked connections for graceful shutdown."""
	with _CONNECTIONS_LOCK:
		connections = list(_OPEN_CONNECTIONS)
		_OPEN_CONNECTIONS.clear()

	success_count = 0
	for conn in connections:
		try:
			conn.close()
			success_count += 1
		except Exception as e:
			_log.warning("Failed to close SQLite connection: %s", e)

	return success_count


def checkpoint_wal(db_path: Path, mode: str = "TRUNCATE") -> dict[str, int | str]:
	"""Run a WAL checkpoint using a dedicated short-lived connection.

	Returns checkpoint counters in SQLite's ``wal_checkpoint`` format:
	``busy``, ``log_frames``, ``checkpointed_frames``.
	"""
	mode_upper = mode.strip().upper()
	if mode_upper not in {"PASSIVE", "FULL", "RESTART", "TRUNCATE"}:
		mode_upper = "TRUNCATE"

	failed = {
		"mode": mode_upper,
		"busy": -1,
		"log_frames": -1,
		"checkpointed_frames": -1,
	}
	conn: sqlite3.Connection | None = None
	try:
		conn = sqlite3.connect(str(db_path), timeout=30.0, check_same_thread=False)
		conn.execute("PRAGMA busy_timeout=30000")
		row = conn.execute(f"PRAGMA wal_checkpoint({mode_upper})").fetchone()
		if not row:
			return failed
		return {
			"mode": mode_upper,
			"busy": int(row[0]),
			"log_frames": int(row[1]),
			"checkpointed_frames": int(row[2]),
		}
	except sqlite3.Error as e:
		_log.warning("WAL checkpoint failed (%s): %s", mode_upper, e)
		return failed
	finally:
		if conn is not None:
			conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection, *, immediate: bool = False):
	"""Transaction context manager that commits or rolls back on error.

	If already inside a transaction, this is a no-op (the outer transaction
	controls commit/rollback). Inner functions MUST NOT catch and suppress
	exceptions that the outer transaction needs to see for rollback.
	"""
	started_tx = False
	if not conn.in_transaction:
		conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
		started_tx = True
	try:
		yield
		if started_tx:
			conn.execute("COMMIT")
	except BaseException:
		if started_tx and conn.in_transaction:
			conn.execute("ROLLBACK")
		raise
